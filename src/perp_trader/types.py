"""Shared domain types for the position and risk lifecycle engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum, IntEnum

from perp_trader.errors import StateInvariantViolation


class Side(str, Enum):
    """Position direction."""

    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1

    @property
    def entry_order_side(self) -> str:
        return "BUY" if self is Side.LONG else "SELL"

    @property
    def exit_order_side(self) -> str:
        return "SELL" if self is Side.LONG else "BUY"


class SignalAction(str, Enum):
    """Action suggested by the oracle or scanner."""

    LONG = "LONG"
    SHORT = "SHORT"
    HOLD = "HOLD"
    CLOSE = "CLOSE"

    @property
    def side(self) -> Side | None:
        if self is SignalAction.LONG:
            return Side.LONG
        if self is SignalAction.SHORT:
            return Side.SHORT
        return None


class Stage(IntEnum):
    """Defensive stage of a position's stop-loss. Only ever advances."""

    INITIAL = 0
    BREAK_EVEN = 1
    PROFIT_PROTECTED = 2
    TRAILING = 3

    def next(self) -> Stage | None:
        if self is Stage.TRAILING:
            return None
        return Stage(self.value + 1)

    def advance_to(self, target: Stage) -> Stage:
        """Return ``target`` if it is this stage or the one directly after it."""
        if target < self:
            raise StateInvariantViolation(f"stage_regression: {self.name} -> {target.name}")
        if target - self > 1:
            raise StateInvariantViolation(f"stage_skip: {self.name} -> {target.name}")
        return target


PositionKey = tuple[str, Side]


@dataclass(slots=True)
class Position:
    """One leveraged open trade, owned by the position store."""

    symbol: str
    side: Side
    entry_price: float
    quantity: float
    leverage: int
    opened_at: datetime
    stop_loss: float | None = None
    take_profit: float | None = None
    stage: Stage = Stage.INITIAL
    peak_favorable_excursion: float = 0.0
    is_scalper: bool = False
    in_profit_since: datetime | None = None
    last_tp_update_cycle: int = 0
    mark_price: float | None = None
    unrealized_pnl: float = 0.0

    @property
    def key(self) -> PositionKey:
        return (self.symbol, self.side)

    def price_change_percent(self, mark: float) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (mark - self.entry_price) / self.entry_price * 100.0 * self.side.sign

    def profit_percent(self, mark: float) -> float:
        """Leveraged return on margin, in percent."""
        return self.price_change_percent(mark) * self.leverage

    def pnl_usdt(self, mark: float) -> float:
        return (mark - self.entry_price) * self.quantity * self.side.sign

    def age(self, now: datetime) -> timedelta:
        return now - self.opened_at

    def is_more_protective(self, candidate: float, current: float | None) -> bool:
        """Whether ``candidate`` stop locks in more than ``current`` for this side."""
        if current is None:
            return True
        if self.side is Side.LONG:
            return candidate > current
        return candidate < current

    def is_more_rewarding(self, candidate: float, current: float | None) -> bool:
        """Whether ``candidate`` take-profit leaves more upside than ``current``."""
        if current is None:
            return True
        if self.side is Side.LONG:
            return candidate > current
        return candidate < current


@dataclass(frozen=True, slots=True)
class AccountState:
    """Wallet snapshot read fresh from the gateway each cycle."""

    wallet_balance: float
    available_cash: float
    total_unrealized_pnl: float
    fetched_at: datetime
    stale: bool = False


@dataclass(frozen=True, slots=True)
class ExchangePosition:
    """Raw open position as reported by the exchange."""

    symbol: str
    side: Side
    quantity: float
    entry_price: float
    mark_price: float
    leverage: int
    unrealized_pnl: float = 0.0


@dataclass(frozen=True, slots=True)
class TradeSignal:
    """Ephemeral trade suggestion consumed once per cycle."""

    symbol: str
    action: SignalAction
    confidence: float
    rationale: str = ""
    suggested_leverage: int | None = None
    is_scalper: bool = False
    stop_loss: float | None = None
    take_profit: float | None = None
    pullback_percent: float | None = None
    rsi: float | None = None
    score: float | None = None


@dataclass(frozen=True, slots=True)
class ScanCandidate:
    """Scanner-ranked opportunity."""

    symbol: str
    score: float
    action: SignalAction
    confidence: float
    price: float
    rsi: float | None = None
    pullback_percent: float | None = None
    is_scalper: bool = False
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PrecisionRule:
    """Per-symbol exchange order constraints."""

    quantity_decimals: int
    min_qty: float
    price_decimals: int


@dataclass(frozen=True, slots=True)
class Order:
    """Order request handed to the exchange gateway."""

    symbol: str
    side: str
    order_type: str
    quantity: float
    stop_price: float | None = None
    reduce_only: bool = False
    client_order_id: str | None = None


@dataclass(frozen=True, slots=True)
class OrderAck:
    """Exchange acknowledgement for a placed order."""

    order_id: str
    symbol: str
    status: str
    avg_price: float | None = None


@dataclass(frozen=True, slots=True)
class StopLossUpdate:
    """Request to move a position's stop-loss, optionally advancing its stage."""

    key: PositionKey
    new_stop: float
    target_stage: Stage
    reason: str


@dataclass(frozen=True, slots=True)
class StageAdvance:
    """Stage step that needs no order because the stop is already tighter."""

    key: PositionKey
    target_stage: Stage
    reason: str


@dataclass(frozen=True, slots=True)
class TakeProfitUpdate:
    """Request to widen a position's take-profit."""

    key: PositionKey
    new_take_profit: float
    cycle: int


@dataclass(frozen=True, slots=True)
class CloseIntent:
    """Request to close a position at market."""

    key: PositionKey
    reason: str


Intent = StopLossUpdate | StageAdvance | TakeProfitUpdate | CloseIntent


@dataclass(frozen=True, slots=True)
class ClosedTrade:
    """Realized trade record for the projection."""

    symbol: str
    side: Side
    entry_price: float
    exit_price: float
    quantity: float
    leverage: int
    pnl_usdt: float
    profit_percent: float
    fee: float
    reason: str
    opened_at: datetime
    closed_at: datetime


@dataclass(slots=True)
class CycleResult:
    """Outcome of one control-loop cycle."""

    status: str
    cycle: int = 0
    orders: list[dict[str, object]] = field(default_factory=list)
    intents: list[Intent] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0
    open_positions: int = 0
    next_interval_seconds: float = 0.0
