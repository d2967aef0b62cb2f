"""Authoritative in-memory record of open positions."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime

from perp_trader.errors import StateInvariantViolation
from perp_trader.types import ExchangePosition, Position, PositionKey, Stage


@dataclass(slots=True)
class ReconcileResult:
    """Differences found between the store and the exchange."""

    closed: list[Position] = field(default_factory=list)
    adopted: list[Position] = field(default_factory=list)


class PositionStore:
    """Single owner of ``Position`` objects, keyed by ``(symbol, side)``.

    Callers only ever see copies. Every mutation goes through a method here
    so the stage and stop-loss invariants are checked in one place.
    """

    def __init__(self) -> None:
        self._positions: dict[PositionKey, Position] = {}

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, key: object) -> bool:
        return key in self._positions

    def keys(self) -> list[PositionKey]:
        return list(self._positions)

    def get(self, key: PositionKey) -> Position | None:
        position = self._positions.get(key)
        return replace(position) if position is not None else None

    def snapshot(self) -> list[Position]:
        return [replace(position) for position in self._positions.values()]

    def open_count(self) -> int:
        return len(self._positions)

    def scalper_count(self) -> int:
        return sum(1 for position in self._positions.values() if position.is_scalper)

    def holds_symbol(self, symbol: str) -> bool:
        return any(key[0] == symbol for key in self._positions)

    def open(self, position: Position) -> Position:
        if position.key in self._positions:
            raise StateInvariantViolation(
                f"position_already_open: {position.symbol} {position.side.value}"
            )
        if not 1 <= position.leverage <= 18:
            raise StateInvariantViolation(f"leverage_out_of_bounds: {position.leverage}")
        stored = replace(position, stage=Stage.INITIAL, peak_favorable_excursion=0.0)
        self._positions[stored.key] = stored
        return replace(stored)

    def check_stop_loss(self, key: PositionKey, new_stop: float, stage: Stage) -> Stage:
        """Validate a stop-loss change without applying it; returns the resulting stage.

        Raises ``StateInvariantViolation`` if the stage would regress or skip,
        or if a stop at break-even or later would be less protective than the
        committed one.
        """
        position = self._require(key)
        target = position.stage.advance_to(stage)
        if new_stop <= 0:
            raise StateInvariantViolation(f"invalid_stop: {new_stop}")
        if (
            target >= Stage.BREAK_EVEN
            and position.stop_loss is not None
            and new_stop != position.stop_loss
            and not position.is_more_protective(new_stop, position.stop_loss)
        ):
            raise StateInvariantViolation(
                f"stop_loss_regression: {position.symbol} {position.stop_loss} -> {new_stop}"
            )
        return target

    def apply_stop_loss(self, key: PositionKey, new_stop: float, stage: Stage) -> Position:
        """Commit a new stop-loss together with its (same or next) stage.

        The position is left untouched when ``check_stop_loss`` rejects the change.
        """
        target = self.check_stop_loss(key, new_stop, stage)
        position = self._require(key)
        position.stop_loss = new_stop
        position.stage = target
        return replace(position)

    def advance_stage(self, key: PositionKey, stage: Stage) -> Position:
        """Advance the stage without touching the stop-loss."""
        position = self._require(key)
        position.stage = position.stage.advance_to(stage)
        return replace(position)

    def check_take_profit(self, key: PositionKey, new_take_profit: float) -> None:
        position = self._require(key)
        if new_take_profit <= 0:
            raise StateInvariantViolation(f"invalid_take_profit: {new_take_profit}")
        if position.take_profit is not None and not position.is_more_rewarding(
            new_take_profit, position.take_profit
        ):
            raise StateInvariantViolation(
                f"take_profit_regression: {position.symbol} "
                f"{position.take_profit} -> {new_take_profit}"
            )

    def apply_take_profit(self, key: PositionKey, new_take_profit: float, cycle: int) -> Position:
        self.check_take_profit(key, new_take_profit)
        position = self._require(key)
        position.take_profit = new_take_profit
        position.last_tp_update_cycle = cycle
        return replace(position)

    def set_initial_brackets(
        self,
        key: PositionKey,
        stop_loss: float | None,
        take_profit: float | None,
    ) -> Position:
        """Record the protective orders placed at entry; only valid at INITIAL."""
        position = self._require(key)
        if position.stage is not Stage.INITIAL:
            raise StateInvariantViolation(f"brackets_after_initial: {position.symbol}")
        position.stop_loss = stop_loss
        position.take_profit = take_profit
        return replace(position)

    def observe_mark(self, key: PositionKey, mark: float, now: datetime) -> Position:
        """Record a fresh mark: pnl, best-ever ROE, and the in-profit streak."""
        position = self._require(key)
        position.mark_price = mark
        position.unrealized_pnl = position.pnl_usdt(mark)
        roe = position.profit_percent(mark)
        position.peak_favorable_excursion = max(position.peak_favorable_excursion, roe)
        if position.unrealized_pnl > 0:
            if position.in_profit_since is None:
                position.in_profit_since = now
        else:
            position.in_profit_since = None
        return replace(position)

    def close(self, key: PositionKey) -> Position:
        position = self._positions.pop(key, None)
        if position is None:
            raise KeyError(key)
        return position

    def reconcile(
        self,
        exchange_positions: list[ExchangePosition],
        now: datetime,
    ) -> ReconcileResult:
        """Align the store with what the exchange reports as open.

        Tracked positions missing from the exchange are removed and returned
        as closed. Exchange positions the store does not know are adopted at
        INITIAL without brackets; the caller is expected to protect them.
        """
        result = ReconcileResult()
        live: dict[PositionKey, ExchangePosition] = {
            (item.symbol, item.side): item for item in exchange_positions if item.quantity > 0
        }

        for key in list(self._positions):
            if key not in live:
                result.closed.append(self._positions.pop(key))

        for key, item in live.items():
            tracked = self._positions.get(key)
            if tracked is not None:
                tracked.quantity = item.quantity
                continue
            adopted = Position(
                symbol=item.symbol,
                side=item.side,
                entry_price=item.entry_price,
                quantity=item.quantity,
                leverage=min(max(item.leverage, 1), 18),
                opened_at=now,
                mark_price=item.mark_price,
                unrealized_pnl=item.unrealized_pnl,
            )
            self._positions[key] = adopted
            result.adopted.append(replace(adopted))
        return result

    def _require(self, key: PositionKey) -> Position:
        position = self._positions.get(key)
        if position is None:
            raise KeyError(key)
        return position
