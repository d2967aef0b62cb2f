"""Per-position stop-loss / take-profit state machine.

Each open position is evaluated once per cycle against its mark price:

1. forced exit once the position is older than the max hold time and in profit
2. local SL/TP breach check (exchange orders normally fire first)
3. at most one forward stage step (INITIAL -> BREAK_EVEN -> PROFIT_PROTECTED
   -> TRAILING) and the stop-loss candidate for the resulting stage
4. periodic take-profit widening

The machine never mutates positions. It returns intents that the engine
submits to the exchange and then commits to the position store.
"""

from __future__ import annotations

from datetime import datetime

from perp_trader.config import RiskParameters
from perp_trader.risk.precision import PrecisionValidator
from perp_trader.risk.sizing import PositionSizer
from perp_trader.types import (
    CloseIntent,
    Intent,
    Position,
    Side,
    Stage,
    StageAdvance,
    StopLossUpdate,
    TakeProfitUpdate,
)
from perp_trader.utils.logging import get_logger, log_risk_event


class StopLossStateMachine:
    """Compute SL/TP intents for open positions."""

    def __init__(
        self,
        params: RiskParameters,
        validator: PrecisionValidator,
        sizer: PositionSizer | None = None,
    ) -> None:
        self._params = params
        self._validator = validator
        self._sizer = sizer or PositionSizer(params)
        self._logger = get_logger("perp_trader.risk.stops")

    def evaluate(self, position: Position, mark: float, now: datetime, cycle: int) -> list[Intent]:
        """Return the intents for one position at ``mark``.

        ``position`` is a store snapshot whose ``peak_favorable_excursion``
        already includes this mark.
        """
        if mark <= 0:
            return []

        forced = self._forced_exit(position, mark, now)
        if forced is not None:
            return [forced]

        breach = self._breach(position, mark)
        if breach is not None:
            return [breach]

        intents: list[Intent] = []
        stop_intent = self._stage_step(position, mark, now)
        if stop_intent is not None:
            intents.append(stop_intent)

        tp_intent = self._take_profit(position, mark, cycle)
        if tp_intent is not None:
            intents.append(tp_intent)
        return intents

    def _forced_exit(self, position: Position, mark: float, now: datetime) -> CloseIntent | None:
        age_seconds = position.age(now).total_seconds()
        if age_seconds > self._params.max_position_hold_time and position.pnl_usdt(mark) > 0:
            return CloseIntent(key=position.key, reason="max_hold_time_profit")
        return None

    def _breach(self, position: Position, mark: float) -> CloseIntent | None:
        sign = position.side.sign
        if position.stop_loss is not None and (mark - position.stop_loss) * sign <= 0:
            return CloseIntent(key=position.key, reason="stop_loss_hit")
        if position.take_profit is not None and (mark - position.take_profit) * sign >= 0:
            return CloseIntent(key=position.key, reason="take_profit_hit")
        return None

    def _stage_step(
        self,
        position: Position,
        mark: float,
        now: datetime,
    ) -> StopLossUpdate | StageAdvance | None:
        roe = position.profit_percent(mark)
        peak = max(position.peak_favorable_excursion, roe)

        target = position.stage
        next_stage = position.stage.next()
        if next_stage is not None and self._can_enter(next_stage, position, mark, roe, now):
            target = next_stage
        advancing = target is not position.stage

        candidate = self._candidate_stop(target, position, roe, peak)
        if candidate is None:
            if advancing:
                return StageAdvance(key=position.key, target_stage=target, reason="stage_entered")
            return None

        if not self._on_safe_side(position, candidate, mark):
            log_risk_event(
                self._logger,
                event_type="stop_invariant_violation",
                action="discard_update",
                symbol=position.symbol,
                side=position.side.value,
                stage=target.name,
                candidate=candidate,
                mark=mark,
            )
            return None

        blocked = self._blocked_reason(target, position, candidate)
        if blocked is None:
            return StopLossUpdate(
                key=position.key,
                new_stop=candidate,
                target_stage=target,
                reason=target.name.lower(),
            )
        if advancing:
            return StageAdvance(key=position.key, target_stage=target, reason=blocked)
        return None

    def _can_enter(
        self,
        stage: Stage,
        position: Position,
        mark: float,
        roe: float,
        now: datetime,
    ) -> bool:
        p = self._params
        if stage is Stage.BREAK_EVEN:
            if not p.break_even_enabled or position.in_profit_since is None:
                return False
            return (
                roe >= p.break_even_profit_trigger
                and self._seconds_in_profit(position, now) >= p.break_even_time_in_profit
                and position.pnl_usdt(mark) >= p.break_even_min_profit_usdt
            )
        if stage is Stage.PROFIT_PROTECTED:
            return p.profit_protection_enabled and roe >= p.profit_protection_trigger
        if stage is Stage.TRAILING:
            return p.trailing_stop_enabled and roe >= p.trailing_stop_trigger
        return False

    def _candidate_stop(
        self,
        stage: Stage,
        position: Position,
        roe: float,
        peak: float,
    ) -> float | None:
        p = self._params
        entry = position.entry_price
        sign = position.side.sign
        if stage is Stage.BREAK_EVEN:
            raw = entry
        elif stage is Stage.PROFIT_PROTECTED:
            if roe <= 0:
                return None
            locked = p.profit_protection_lock_percent / 100.0 * roe
            raw = entry * (1 + sign * locked / position.leverage / 100.0)
        elif stage is Stage.TRAILING:
            if peak <= 0:
                return None
            locked = p.trailing_stop_profit_lock * peak
            raw = entry * (1 + sign * locked / position.leverage / 100.0)
        else:
            return None
        return self._validator.round_price(position.symbol, raw)

    def _blocked_reason(self, stage: Stage, position: Position, candidate: float) -> str | None:
        """Why a candidate stop is not submitted, or None when it should be."""
        current = position.stop_loss
        if not position.is_more_protective(candidate, current):
            return "stop_already_tighter"
        if stage is Stage.PROFIT_PROTECTED and current is not None and current > 0:
            distance = abs(candidate - current) / current * 100.0
            if distance < self._params.profit_protection_min_distance:
                return "below_min_distance"
        return None

    def _take_profit(self, position: Position, mark: float, cycle: int) -> TakeProfitUpdate | None:
        p = self._params
        if not p.dynamic_tp_enabled:
            return None
        if cycle - position.last_tp_update_cycle < p.tp_update_interval:
            return None
        _, band = self._sizer.bracket_percents(position.leverage, is_scalper=position.is_scalper)
        candidate = self._validator.round_price(
            position.symbol,
            mark * (1 + position.side.sign * band / 100.0),
        )
        if not position.is_more_rewarding(candidate, position.take_profit):
            return None
        return TakeProfitUpdate(key=position.key, new_take_profit=candidate, cycle=cycle)

    @staticmethod
    def _on_safe_side(position: Position, stop: float, mark: float) -> bool:
        if position.side is Side.LONG:
            return stop < mark
        return stop > mark

    @staticmethod
    def _seconds_in_profit(position: Position, now: datetime) -> float:
        if position.in_profit_since is None:
            return 0.0
        return (now - position.in_profit_since).total_seconds()
