from __future__ import annotations

from pathlib import Path

import pytest

from perp_trader.errors import OrderRejectedError, TransientGatewayError
from perp_trader.exec.paper import PaperGateway
from perp_trader.types import Order, Side


class _Feed:
    def __init__(self, prices: dict[str, float]) -> None:
        self.prices = prices

    def __call__(self, symbol: str) -> float:
        return self.prices[symbol]


def _gateway(tmp_path: Path, feed: _Feed) -> PaperGateway:
    return PaperGateway(tmp_path, feed, slippage_bps=0.0, fee_rate=0.0, initial_equity=1_000.0)


def test_market_order_opens_and_closes_position(tmp_path: Path) -> None:
    feed = _Feed({"BTCUSDT": 50_000.0})
    gateway = _gateway(tmp_path, feed)
    gateway.set_leverage("BTCUSDT", 10)

    ack = gateway.place_order(
        Order(symbol="BTCUSDT", side="BUY", order_type="MARKET", quantity=0.01)
    )
    assert ack.status == "FILLED"
    assert ack.avg_price == 50_000.0

    positions = gateway.get_open_positions()
    assert len(positions) == 1
    assert positions[0].side is Side.LONG
    assert positions[0].leverage == 10

    feed.prices["BTCUSDT"] = 51_000.0
    account = gateway.get_account()
    assert account.total_unrealized_pnl == pytest.approx(10.0)
    assert account.available_cash == pytest.approx(1_000.0 + 10.0 - 50.0)

    gateway.place_order(
        Order(symbol="BTCUSDT", side="SELL", order_type="MARKET", quantity=0.01, reduce_only=True)
    )
    assert gateway.get_open_positions() == []
    assert gateway.wallet_balance == pytest.approx(1_010.0)


def test_resting_stop_triggers_on_mark(tmp_path: Path) -> None:
    feed = _Feed({"ETHUSDT": 2_000.0})
    gateway = _gateway(tmp_path, feed)
    gateway.place_order(Order(symbol="ETHUSDT", side="BUY", order_type="MARKET", quantity=1.0))
    stop = gateway.place_order(
        Order(
            symbol="ETHUSDT",
            side="SELL",
            order_type="STOP_MARKET",
            quantity=1.0,
            stop_price=1_960.0,
            reduce_only=True,
        )
    )
    assert stop.status == "NEW"
    assert len(gateway.resting_orders) == 1

    feed.prices["ETHUSDT"] = 1_950.0
    gateway.get_mark_price("ETHUSDT")

    assert gateway.get_open_positions() == []
    assert gateway.resting_orders == []
    assert gateway.wallet_balance == pytest.approx(960.0)


def test_reduce_only_without_position_is_rejected(tmp_path: Path) -> None:
    gateway = _gateway(tmp_path, _Feed({"BTCUSDT": 50_000.0}))
    with pytest.raises(OrderRejectedError):
        gateway.place_order(
            Order(
                symbol="BTCUSDT",
                side="SELL",
                order_type="MARKET",
                quantity=0.01,
                reduce_only=True,
            )
        )
    assert gateway.wallet_balance == 1_000.0


def test_cancel_unknown_order_is_rejected(tmp_path: Path) -> None:
    gateway = _gateway(tmp_path, _Feed({}))
    with pytest.raises(OrderRejectedError):
        gateway.cancel_order("BTCUSDT", "404")


def test_feed_failure_is_transient(tmp_path: Path) -> None:
    gateway = _gateway(tmp_path, _Feed({}))
    with pytest.raises(TransientGatewayError):
        gateway.get_mark_price("BTCUSDT")


def test_state_survives_restart(tmp_path: Path) -> None:
    feed = _Feed({"SOLUSDT": 20.0})
    gateway = _gateway(tmp_path, feed)
    gateway.place_order(Order(symbol="SOLUSDT", side="SELL", order_type="MARKET", quantity=5.0))

    reloaded = _gateway(tmp_path, feed)
    positions = reloaded.get_open_positions()
    assert [(p.symbol, p.side, p.quantity) for p in positions] == [("SOLUSDT", Side.SHORT, 5.0)]


def test_valuation_uses_fresh_marks_with_cached_fallback(tmp_path: Path) -> None:
    feed = _Feed({"ETHUSDT": 2_000.0})
    gateway = _gateway(tmp_path, feed)
    gateway.place_order(Order(symbol="ETHUSDT", side="BUY", order_type="MARKET", quantity=1.0))

    feed.prices["ETHUSDT"] = 2_050.0
    assert gateway.get_open_positions()[0].mark_price == 2_050.0
    assert gateway.get_account().total_unrealized_pnl == pytest.approx(50.0)

    del feed.prices["ETHUSDT"]
    assert gateway.get_open_positions()[0].mark_price == 2_050.0
    assert gateway.get_account().total_unrealized_pnl == pytest.approx(50.0)
