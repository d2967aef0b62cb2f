"""Exchange gateway protocol and bounded-retry wrapper."""

from __future__ import annotations

from typing import Any, Callable, Protocol, TypeVar

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from perp_trader.errors import TransientGatewayError
from perp_trader.types import AccountState, ExchangePosition, Order, OrderAck
from perp_trader.utils.logging import get_logger

T = TypeVar("T")


class ExchangeGateway(Protocol):
    """Synchronous exchange operations used by the engine.

    Failures surface as ``GatewayError`` subclasses.
    """

    def get_mark_price(self, symbol: str) -> float: ...

    def get_account(self) -> AccountState: ...

    def get_open_positions(self) -> list[ExchangePosition]: ...

    def place_order(self, order: Order) -> OrderAck: ...

    def cancel_order(self, symbol: str, order_id: str) -> None: ...

    def set_leverage(self, symbol: str, leverage: int) -> None: ...


class RetryingGateway:
    """Retry transient failures of any gateway up to ``max_retries`` attempts.

    Orders are retried with the same ``client_order_id`` so the exchange can
    reject a duplicate submission.
    """

    def __init__(
        self,
        inner: ExchangeGateway,
        *,
        max_retries: int = 3,
        wait_multiplier: float = 1.0,
        wait_max: float = 8.0,
    ) -> None:
        self._inner = inner
        self._max_retries = max_retries
        self._wait_multiplier = wait_multiplier
        self._wait_max = wait_max
        self._logger = get_logger("perp_trader.exec.gateway")

    @property
    def inner(self) -> ExchangeGateway:
        return self._inner

    def get_mark_price(self, symbol: str) -> float:
        return self._call(self._inner.get_mark_price, symbol)

    def get_account(self) -> AccountState:
        return self._call(self._inner.get_account)

    def get_open_positions(self) -> list[ExchangePosition]:
        return self._call(self._inner.get_open_positions)

    def place_order(self, order: Order) -> OrderAck:
        return self._call(self._inner.place_order, order)

    def cancel_order(self, symbol: str, order_id: str) -> None:
        self._call(self._inner.cancel_order, symbol, order_id)

    def set_leverage(self, symbol: str, leverage: int) -> None:
        self._call(self._inner.set_leverage, symbol, leverage)

    def _call(self, func: Callable[..., T], *args: Any) -> T:
        retrying = Retrying(
            retry=retry_if_exception_type(TransientGatewayError),
            wait=wait_exponential(
                multiplier=self._wait_multiplier,
                min=0,
                max=self._wait_max,
            ),
            stop=stop_after_attempt(self._max_retries),
            before_sleep=self._log_retry,
            reraise=True,
        )
        return retrying(func, *args)

    def _log_retry(self, retry_state: Any) -> None:
        outcome = retry_state.outcome
        self._logger.warning(
            "gateway_retry",
            call=getattr(retry_state.fn, "__name__", "unknown"),
            attempt=retry_state.attempt_number,
            error=str(outcome.exception()) if outcome is not None else None,
        )
