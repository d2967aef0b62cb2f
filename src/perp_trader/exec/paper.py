"""Paper exchange gateway with persistent local state."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from perp_trader.errors import OrderRejectedError, TransientGatewayError
from perp_trader.types import AccountState, ExchangePosition, Order, OrderAck, Side
from perp_trader.utils.logging import get_logger, log_order_execution

_STOP_TYPES = {"STOP_MARKET", "TAKE_PROFIT_MARKET"}


@dataclass(slots=True)
class _PaperPosition:
    symbol: str
    side: str
    quantity: float
    entry_price: float
    leverage: int


@dataclass(slots=True)
class _RestingOrder:
    order_id: str
    symbol: str
    side: str
    order_type: str
    quantity: float
    stop_price: float


@dataclass(slots=True)
class _PaperState:
    wallet_balance: float
    initial_equity: float
    realized_pnl: float = 0.0
    total_fees: float = 0.0
    next_order_id: int = 1
    positions: dict[str, _PaperPosition] = field(default_factory=dict)
    resting_orders: dict[str, _RestingOrder] = field(default_factory=dict)
    leverage: dict[str, int] = field(default_factory=dict)
    marks: dict[str, float] = field(default_factory=dict)


class PaperGateway:
    """Simulated one-way-mode futures exchange implementing ``ExchangeGateway``.

    Market orders fill at the feed price plus slippage. Resting
    STOP_MARKET / TAKE_PROFIT_MARKET orders trigger when a later mark
    crosses their stop price.
    """

    def __init__(
        self,
        state_dir: Path,
        price_feed: Callable[[str], float],
        *,
        slippage_bps: float = 2.0,
        fee_rate: float = 0.0005,
        initial_equity: float = 1_000.0,
    ) -> None:
        self._price_feed = price_feed
        self._slippage_bps = slippage_bps
        self._fee_rate = fee_rate
        self._logger = get_logger("perp_trader.exec.paper")
        state_dir.mkdir(parents=True, exist_ok=True)
        self._state_file = state_dir / "paper_exchange.json"
        self._state = self._load_state(initial_equity)

    @property
    def wallet_balance(self) -> float:
        return self._state.wallet_balance

    @property
    def resting_orders(self) -> list[dict[str, Any]]:
        return [asdict(order) for order in self._state.resting_orders.values()]

    def get_mark_price(self, symbol: str) -> float:
        try:
            mark = float(self._price_feed(symbol))
        except Exception as exc:  # noqa: BLE001 - any feed failure is transient.
            raise TransientGatewayError(f"price_unavailable: {symbol}") from exc
        if mark <= 0:
            raise TransientGatewayError(f"price_unavailable: {symbol}")
        self._state.marks[symbol] = mark
        self._trigger_resting_orders(symbol, mark)
        self._persist()
        return mark

    def get_account(self) -> AccountState:
        unrealized = 0.0
        margin = 0.0
        for position in self._state.positions.values():
            mark = self._fresh_mark(position.symbol, position.entry_price)
            sign = 1 if position.side == Side.LONG.value else -1
            unrealized += (mark - position.entry_price) * position.quantity * sign
            margin += position.entry_price * position.quantity / max(position.leverage, 1)
        return AccountState(
            wallet_balance=self._state.wallet_balance,
            available_cash=max(0.0, self._state.wallet_balance + unrealized - margin),
            total_unrealized_pnl=unrealized,
            fetched_at=datetime.now(timezone.utc),
        )

    def get_open_positions(self) -> list[ExchangePosition]:
        result: list[ExchangePosition] = []
        for position in self._state.positions.values():
            mark = self._fresh_mark(position.symbol, position.entry_price)
            sign = 1 if position.side == Side.LONG.value else -1
            result.append(
                ExchangePosition(
                    symbol=position.symbol,
                    side=Side(position.side),
                    quantity=position.quantity,
                    entry_price=position.entry_price,
                    mark_price=mark,
                    leverage=position.leverage,
                    unrealized_pnl=(mark - position.entry_price) * position.quantity * sign,
                )
            )
        return result

    def place_order(self, order: Order) -> OrderAck:
        if order.quantity <= 0:
            raise OrderRejectedError("quantity_must_be_positive")
        if order.side not in ("BUY", "SELL"):
            raise OrderRejectedError(f"invalid_side: {order.side}")

        order_id = self._next_order_id()
        if order.order_type in _STOP_TYPES:
            if order.stop_price is None or order.stop_price <= 0:
                raise OrderRejectedError("stop_price_required")
            self._state.resting_orders[order_id] = _RestingOrder(
                order_id=order_id,
                symbol=order.symbol,
                side=order.side,
                order_type=order.order_type,
                quantity=order.quantity,
                stop_price=order.stop_price,
            )
            self._persist()
            return OrderAck(order_id=order_id, symbol=order.symbol, status="NEW")

        if order.order_type != "MARKET":
            raise OrderRejectedError(f"unsupported_order_type: {order.order_type}")
        mark = self.get_mark_price(order.symbol)
        existing = self._state.positions.get(order.symbol)
        if order.reduce_only and (existing is None or existing.side == _side_for(order.side)):
            raise OrderRejectedError(f"reduce_only_without_position: {order.symbol}")
        fill_price = self._fill(order.symbol, order.side, order.quantity, mark)
        self._persist()
        log_order_execution(
            self._logger,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            order_type=order.order_type,
            price=fill_price,
            order_id=order_id,
            status="filled",
            mode="paper",
        )
        return OrderAck(
            order_id=order_id,
            symbol=order.symbol,
            status="FILLED",
            avg_price=fill_price,
        )

    def cancel_order(self, symbol: str, order_id: str) -> None:
        resting = self._state.resting_orders.get(order_id)
        if resting is None or resting.symbol != symbol:
            raise OrderRejectedError(f"unknown_order: {order_id}")
        del self._state.resting_orders[order_id]
        self._persist()

    def set_leverage(self, symbol: str, leverage: int) -> None:
        if not 1 <= leverage <= 125:
            raise OrderRejectedError(f"invalid_leverage: {leverage}")
        self._state.leverage[symbol] = leverage
        self._persist()

    def _fresh_mark(self, symbol: str, fallback: float) -> float:
        """Current feed price for valuation; the last known mark if the feed fails."""
        try:
            mark = float(self._price_feed(symbol))
        except Exception as exc:  # noqa: BLE001 - valuation falls back to the cached mark.
            self._logger.warning("paper_mark_stale", symbol=symbol, error=str(exc))
            return self._state.marks.get(symbol, fallback)
        if mark <= 0:
            return self._state.marks.get(symbol, fallback)
        self._state.marks[symbol] = mark
        return mark

    def _fill(self, symbol: str, side: str, quantity: float, mark: float) -> float:
        slip = self._slippage_bps / 10_000.0
        fill_price = mark * (1 + slip) if side == "BUY" else mark * (1 - slip)
        fee = fill_price * quantity * self._fee_rate
        self._state.wallet_balance -= fee
        self._state.total_fees += fee

        order_side = _side_for(side)
        existing = self._state.positions.get(symbol)
        if existing is not None and existing.side != order_side:
            closed_qty = min(quantity, existing.quantity)
            sign = 1 if existing.side == Side.LONG.value else -1
            pnl = (fill_price - existing.entry_price) * closed_qty * sign
            self._state.wallet_balance += pnl
            self._state.realized_pnl += pnl
            existing.quantity -= closed_qty
            if existing.quantity <= 1e-12:
                del self._state.positions[symbol]
                self._drop_resting_orders(symbol)
            return fill_price

        leverage = self._state.leverage.get(symbol, 1)
        if existing is None:
            self._state.positions[symbol] = _PaperPosition(
                symbol=symbol,
                side=order_side,
                quantity=quantity,
                entry_price=fill_price,
                leverage=leverage,
            )
        else:
            total = existing.quantity + quantity
            existing.entry_price = (
                existing.entry_price * existing.quantity + fill_price * quantity
            ) / total
            existing.quantity = total
            existing.leverage = leverage
        return fill_price

    def _trigger_resting_orders(self, symbol: str, mark: float) -> None:
        for order in list(self._state.resting_orders.values()):
            if order.symbol != symbol or order.order_id not in self._state.resting_orders:
                continue
            if not _is_triggered(order, mark):
                continue
            del self._state.resting_orders[order.order_id]
            position = self._state.positions.get(symbol)
            if position is None:
                continue
            quantity = min(order.quantity, position.quantity)
            fill_price = self._fill(symbol, order.side, quantity, order.stop_price)
            self._logger.info(
                "paper_order_triggered",
                symbol=symbol,
                order_type=order.order_type,
                stop_price=order.stop_price,
                fill_price=fill_price,
            )

    def _drop_resting_orders(self, symbol: str) -> None:
        stale = [oid for oid, order in self._state.resting_orders.items() if order.symbol == symbol]
        for order_id in stale:
            del self._state.resting_orders[order_id]

    def _next_order_id(self) -> str:
        order_id = str(self._state.next_order_id)
        self._state.next_order_id += 1
        return order_id

    def _load_state(self, initial_equity: float) -> _PaperState:
        if not self._state_file.exists():
            return _PaperState(wallet_balance=initial_equity, initial_equity=initial_equity)

        raw = json.loads(self._state_file.read_text(encoding="utf-8"))
        return _PaperState(
            wallet_balance=float(raw.get("wallet_balance", initial_equity)),
            initial_equity=float(raw.get("initial_equity", initial_equity)),
            realized_pnl=float(raw.get("realized_pnl", 0.0)),
            total_fees=float(raw.get("total_fees", 0.0)),
            next_order_id=int(raw.get("next_order_id", 1)),
            positions={
                key: _PaperPosition(**value) for key, value in raw.get("positions", {}).items()
            },
            resting_orders={
                key: _RestingOrder(**value) for key, value in raw.get("resting_orders", {}).items()
            },
            leverage={key: int(value) for key, value in raw.get("leverage", {}).items()},
            marks={key: float(value) for key, value in raw.get("marks", {}).items()},
        )

    def _persist(self) -> None:
        payload: dict[str, Any] = asdict(self._state)
        serialized = json.dumps(payload, ensure_ascii=True, indent=2)
        self._state_file.write_text(serialized, encoding="utf-8")


def _side_for(order_side: str) -> str:
    return Side.LONG.value if order_side == "BUY" else Side.SHORT.value


def _is_triggered(order: _RestingOrder, mark: float) -> bool:
    # SELL orders close longs, BUY orders close shorts.
    if order.order_type == "STOP_MARKET":
        return mark <= order.stop_price if order.side == "SELL" else mark >= order.stop_price
    return mark >= order.stop_price if order.side == "SELL" else mark <= order.stop_price
