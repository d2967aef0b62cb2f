"""Order precision and notional validation against exchange constraints."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_DOWN, ROUND_HALF_UP, ROUND_UP, Decimal

from perp_trader.config import RiskParameters
from perp_trader.errors import ValidationError
from perp_trader.types import PrecisionRule


def _rule(quantity_decimals: int, min_qty: float, price_decimals: int) -> PrecisionRule:
    return PrecisionRule(
        quantity_decimals=quantity_decimals,
        min_qty=min_qty,
        price_decimals=price_decimals,
    )


# Static per-symbol lookup of AsterDex futures filters.
DEFAULT_PRECISION_RULES: dict[str, PrecisionRule] = {
    "BTCUSDT": _rule(3, 0.001, 1),
    "ETHUSDT": _rule(3, 0.001, 2),
    "SOLUSDT": _rule(2, 0.01, 2),
    "XRPUSDT": _rule(1, 0.1, 4),
    "DOGEUSDT": _rule(0, 1, 5),
    "BNBUSDT": _rule(2, 0.01, 1),
    "ASTERUSDT": _rule(1, 0.1, 4),
    "WLDUSDT": _rule(1, 0.1, 4),
    "AVAXUSDT": _rule(2, 0.01, 2),
    "ETCUSDT": _rule(1, 0.1, 2),
    "APTUSDT": _rule(2, 0.01, 3),
    "GALAUSDT": _rule(0, 10, 6),
    "LINKUSDT": _rule(2, 0.01, 2),
    "ADAUSDT": _rule(0, 1, 4),
    "MATICUSDT": _rule(1, 0.1, 4),
    "DOTUSDT": _rule(1, 0.1, 3),
    "ATOMUSDT": _rule(2, 0.01, 3),
    "UNIUSDT": _rule(0, 1, 3),
    "AAVEUSDT": _rule(2, 0.01, 2),
    "CRVUSDT": _rule(1, 0.1, 4),
    "MKRUSDT": _rule(3, 0.001, 1),
    "COMPUSDT": _rule(2, 0.01, 2),
    "SUSHIUSDT": _rule(1, 0.1, 4),
    "SNXUSDT": _rule(1, 0.1, 4),
    "1INCHUSDT": _rule(1, 0.1, 4),
    "YFIUSDT": _rule(3, 0.001, 1),
    "CAKEUSDT": _rule(1, 0.1, 4),
    "ARBUSDT": _rule(1, 0.1, 4),
    "OPUSDT": _rule(1, 0.1, 4),
    "LDOUSDT": _rule(1, 0.1, 4),
    "SUIUSDT": _rule(1, 0.1, 4),
    "AXSUSDT": _rule(2, 0.01, 3),
    "SANDUSDT": _rule(1, 0.1, 4),
    "MANAUSDT": _rule(1, 0.1, 4),
    "ENJUSDT": _rule(1, 0.1, 4),
    "IMXUSDT": _rule(1, 0.1, 4),
    "FETUSDT": _rule(1, 0.1, 4),
    "AGIXUSDT": _rule(1, 0.1, 4),
    "OCEANUSDT": _rule(1, 0.1, 4),
    "RNDRUSDT": _rule(1, 0.1, 4),
    "SHIBUSDT": _rule(0, 1000, 8),
    "PEPEUSDT": _rule(0, 1000, 8),
    "FLOKIUSDT": _rule(0, 1000, 8),
    "BONKUSDT": _rule(0, 1000, 8),
    "FTMUSDT": _rule(1, 0.1, 4),
    "GMXUSDT": _rule(2, 0.01, 2),
    "NEARUSDT": _rule(0, 1, 4),
    "ICPUSDT": _rule(2, 0.01, 3),
    "FILUSDT": _rule(2, 0.01, 3),
    "LTCUSDT": _rule(2, 0.01, 2),
    "ALGOUSDT": _rule(1, 0.1, 4),
    "HBARUSDT": _rule(1, 0.1, 5),
    "VETUSDT": _rule(0, 10, 6),
    "THETAUSDT": _rule(1, 0.1, 4),
    "EOSUSDT": _rule(1, 0.1, 4),
    "TRXUSDT": _rule(0, 100, 6),
}


@dataclass(slots=True)
class OrderCheck:
    """Validator outcome. ``quantity`` is already rounded to exchange precision."""

    valid: bool
    quantity: float = 0.0
    notional: float = 0.0
    estimated_fee: float = 0.0
    errors: list[str] = field(default_factory=list)

    def raise_for_errors(self) -> None:
        if not self.valid:
            raise ValidationError(self.errors)


class PrecisionValidator:
    """Round and validate order parameters before submission."""

    def __init__(
        self,
        params: RiskParameters,
        rules: dict[str, PrecisionRule] | None = None,
    ) -> None:
        self._params = params
        self._rules = dict(DEFAULT_PRECISION_RULES if rules is None else rules)

    def rule_for(self, symbol: str) -> PrecisionRule | None:
        return self._rules.get(symbol.upper())

    def has_rule(self, symbol: str) -> bool:
        return self.rule_for(symbol) is not None

    def round_quantity(self, symbol: str, quantity: float) -> float:
        """Truncate quantity toward zero at the symbol's step."""
        rule = self.rule_for(symbol)
        if rule is None:
            return quantity
        step = Decimal(1).scaleb(-rule.quantity_decimals)
        return float(Decimal(str(quantity)).quantize(step, rounding=ROUND_DOWN))

    def entry_quantity(self, symbol: str, quantity: float, price: float) -> float:
        """Step an entry quantity without dropping under the exchange minimums.

        Truncation is used when it still clears ``min_qty`` and the minimum
        notional; otherwise the smallest compliant quantity is rounded up to
        the next step.
        """
        rule = self.rule_for(symbol)
        if rule is None or price <= 0:
            return quantity
        rounded = self.round_quantity(symbol, quantity)
        if rounded >= rule.min_qty and rounded * price >= self._params.min_notional_value:
            return rounded

        step = Decimal(1).scaleb(-rule.quantity_decimals)
        floor = max(self._params.min_notional_value / price, rule.min_qty)
        fitted = Decimal(str(floor)).quantize(step, rounding=ROUND_UP)
        if float(fitted) * price < self._params.min_notional_value:
            fitted += step
        return float(fitted)

    def round_price(self, symbol: str, price: float) -> float:
        """Round price to the nearest tick of the symbol's price precision."""
        rule = self.rule_for(symbol)
        if rule is None:
            return price
        tick = Decimal(1).scaleb(-rule.price_decimals)
        return float(Decimal(str(price)).quantize(tick, rounding=ROUND_HALF_UP))

    def estimate_round_trip_fee(self, notional: float) -> float:
        proportional = notional * self._params.round_trip_fee_rate
        return max(proportional, 2.0 * self._params.min_order_fee_usdt)

    def validate(
        self,
        symbol: str,
        quantity: float,
        price: float,
        *,
        reduce_only: bool = False,
    ) -> OrderCheck:
        """Check a proposed order, returning every violated constraint.

        Reduce-only market closes are exempt from the notional and fee checks: an
        existing exposure must always be closable.
        """
        rule = self.rule_for(symbol)
        if rule is None:
            return OrderCheck(valid=False, errors=["no_precision_rule"])
        if price <= 0:
            return OrderCheck(valid=False, errors=["invalid_price"])

        errors: list[str] = []
        rounded = self.round_quantity(symbol, quantity)
        if rounded <= 0 or rounded < rule.min_qty:
            errors.append("below_min_qty")

        notional = rounded * price
        fee = self.estimate_round_trip_fee(notional)
        if not reduce_only:
            if notional < self._params.min_notional_value:
                errors.append("below_min_notional")
            if notional <= 0 or fee / notional > self._params.max_fee_to_notional_ratio:
                errors.append("fee_ratio_exceeded")

        return OrderCheck(
            valid=not errors,
            quantity=rounded,
            notional=notional,
            estimated_fee=fee,
            errors=errors,
        )
