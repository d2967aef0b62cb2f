"""Entry sizing and leverage selection."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from perp_trader.config import RiskParameters
from perp_trader.risk.precision import PrecisionValidator
from perp_trader.types import AccountState, Side, TradeSignal


@dataclass(slots=True)
class SizingResult:
    """Outcome of sizing one entry signal.

    ``quantity`` is stepped to exchange precision only when the sizer has a validator.
    """

    accepted: bool
    quantity: float = 0.0
    leverage: int = 0
    margin_used: float = 0.0
    notional: float = 0.0
    balance_fraction: float = 0.0
    reasons: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Brackets:
    stop_loss: float
    take_profit: float


class PositionSizer:
    """Convert a signal plus account state into quantity, leverage and margin.

    Pure computation; callers decide whether to submit anything.
    """

    def __init__(
        self,
        params: RiskParameters,
        validator: PrecisionValidator | None = None,
    ) -> None:
        self._params = params
        self._validator = validator

    def select_leverage(self, signal: TradeSignal) -> tuple[int, float]:
        """Return ``(leverage, balance_fraction)`` for a signal."""
        p = self._params
        if signal.is_scalper:
            return p.scalper_max_leverage, p.risk_per_trade

        baseline = signal.suggested_leverage or p.default_leverage
        leverage = max(1, min(int(baseline), p.max_leverage))
        fraction = p.risk_per_trade

        if signal.confidence >= p.high_confidence_threshold:
            lo = p.high_confidence_min_leverage
            hi = p.high_confidence_max_leverage
            t = p.high_confidence_threshold
            scaled = lo + (hi - lo) * (signal.confidence - t) / (1.0 - t)
            leverage = min(max(int(round(scaled)), lo), hi)
            fraction = p.high_confidence_balance_usage
        return leverage, fraction

    def size(
        self,
        signal: TradeSignal,
        account: AccountState,
        price: float,
        *,
        open_positions: int,
        open_scalpers: int = 0,
    ) -> SizingResult:
        p = self._params
        if signal.action.side is None:
            return SizingResult(accepted=False, reasons=["not_an_entry_signal"])

        reasons: list[str] = []
        if open_positions >= p.max_positions:
            reasons.append("max_positions_reached")
        if account.available_cash < p.min_balance_per_position:
            reasons.append("insufficient_balance")
        if price <= 0:
            reasons.append("invalid_price")

        if signal.is_scalper:
            reasons.extend(self._scalper_gate(signal, open_scalpers))
        elif signal.confidence < p.min_confidence:
            reasons.append("confidence_below_minimum")

        if reasons:
            return SizingResult(accepted=False, reasons=reasons)

        leverage, fraction = self.select_leverage(signal)
        notional = account.available_cash * fraction * leverage
        if notional < p.min_notional_value:
            notional = p.min_notional_value
        quantity = notional / price
        if self._validator is not None:
            quantity = self._validator.entry_quantity(signal.symbol, quantity, price)
            notional = quantity * price
        margin_used = notional / leverage
        if margin_used > account.available_cash:
            return SizingResult(
                accepted=False,
                leverage=leverage,
                margin_used=margin_used,
                notional=notional,
                balance_fraction=fraction,
                reasons=["insufficient_margin"],
            )

        return SizingResult(
            accepted=True,
            quantity=quantity,
            leverage=leverage,
            margin_used=margin_used,
            notional=notional,
            balance_fraction=fraction,
        )

    def initial_brackets(
        self,
        side: Side,
        price: float,
        leverage: int,
        *,
        is_scalper: bool = False,
        suggested_stop: float | None = None,
        suggested_take_profit: float | None = None,
    ) -> Brackets:
        """INITIAL stop-loss and take-profit for a fresh entry.

        Standard bands shrink as leverage grows past the default so the
        margin at risk stays roughly constant.
        """
        stop_pct, tp_pct = self.bracket_percents(leverage, is_scalper=is_scalper)
        stop = price * (1 - side.sign * stop_pct / 100.0)
        take_profit = price * (1 + side.sign * tp_pct / 100.0)

        if suggested_stop is not None and (suggested_stop - price) * side.sign < 0:
            stop = suggested_stop
        if suggested_take_profit is not None and (suggested_take_profit - price) * side.sign > 0:
            take_profit = suggested_take_profit
        return Brackets(stop_loss=stop, take_profit=take_profit)

    def bracket_percents(self, leverage: int, *, is_scalper: bool = False) -> tuple[float, float]:
        """Stop and target distances from entry, in price percent."""
        p = self._params
        if is_scalper:
            return p.scalper_stop_loss, p.scalper_profit_target
        scale = math.sqrt(max(leverage, 1) / p.default_leverage)
        return p.standard_stop_loss_percent / scale, p.standard_take_profit_percent / scale

    def _scalper_gate(self, signal: TradeSignal, open_scalpers: int) -> list[str]:
        p = self._params
        reasons: list[str] = []
        if not p.scalper_enabled:
            return ["scalper_disabled"]
        if open_scalpers >= p.scalper_max_positions:
            reasons.append("scalper_max_positions_reached")
        pullback = signal.pullback_percent
        if pullback is None or not p.scalper_min_pullback <= pullback <= p.scalper_max_pullback:
            reasons.append("scalper_pullback_out_of_range")
        rsi = signal.rsi
        if rsi is None or not p.scalper_min_rsi <= rsi <= p.scalper_max_rsi:
            reasons.append("scalper_rsi_out_of_range")
        return reasons
