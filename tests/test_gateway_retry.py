from __future__ import annotations

from datetime import UTC, datetime

import pytest

from perp_trader.errors import OrderRejectedError, TransientGatewayError
from perp_trader.exec.gateway import RetryingGateway
from perp_trader.types import AccountState, ExchangePosition, Order, OrderAck


class _FlakyGateway:
    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or TransientGatewayError("rate_limited")
        self.calls = 0
        self.client_ids: list[str | None] = []

    def get_mark_price(self, symbol: str) -> float:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return 100.0

    def get_account(self) -> AccountState:
        return AccountState(1.0, 1.0, 0.0, datetime.now(UTC))

    def get_open_positions(self) -> list[ExchangePosition]:
        return []

    def place_order(self, order: Order) -> OrderAck:
        self.calls += 1
        self.client_ids.append(order.client_order_id)
        if self.calls <= self.failures:
            raise self.error
        return OrderAck(order_id="1", symbol=order.symbol, status="NEW")

    def cancel_order(self, symbol: str, order_id: str) -> None:
        return None

    def set_leverage(self, symbol: str, leverage: int) -> None:
        return None


def test_transient_errors_are_retried() -> None:
    inner = _FlakyGateway(failures=2)
    gateway = RetryingGateway(inner, max_retries=3, wait_multiplier=0.0, wait_max=0.0)
    assert gateway.get_mark_price("BTCUSDT") == 100.0
    assert inner.calls == 3


def test_retries_are_bounded() -> None:
    inner = _FlakyGateway(failures=5)
    gateway = RetryingGateway(inner, max_retries=3, wait_multiplier=0.0, wait_max=0.0)
    with pytest.raises(TransientGatewayError):
        gateway.get_mark_price("BTCUSDT")
    assert inner.calls == 3


def test_rejections_are_not_retried() -> None:
    inner = _FlakyGateway(failures=5, error=OrderRejectedError("bad_params"))
    gateway = RetryingGateway(inner, max_retries=3, wait_multiplier=0.0, wait_max=0.0)
    with pytest.raises(OrderRejectedError):
        gateway.get_mark_price("BTCUSDT")
    assert inner.calls == 1


def test_retried_order_keeps_client_order_id() -> None:
    inner = _FlakyGateway(failures=1)
    gateway = RetryingGateway(inner, max_retries=3, wait_multiplier=0.0, wait_max=0.0)
    order = Order(
        symbol="BTCUSDT",
        side="BUY",
        order_type="MARKET",
        quantity=0.01,
        client_order_id="x1",
    )
    gateway.place_order(order)
    assert inner.client_ids == ["x1", "x1"]
    assert gateway.inner is inner
