from __future__ import annotations

import pytest

from perp_trader.config import RiskParameters
from perp_trader.errors import ValidationError
from perp_trader.risk.precision import DEFAULT_PRECISION_RULES, PrecisionValidator
from perp_trader.types import PrecisionRule


def _validator(**overrides: object) -> PrecisionValidator:
    return PrecisionValidator(RiskParameters(**overrides))


def test_default_table_covers_configured_pairs() -> None:
    for symbol in ("BTCUSDT", "ETHUSDT", "SOLUSDT", "XRPUSDT", "DOGEUSDT", "BNBUSDT"):
        assert symbol in DEFAULT_PRECISION_RULES


def test_round_quantity_truncates_toward_zero() -> None:
    validator = _validator()
    assert validator.round_quantity("BTCUSDT", 0.0049) == 0.004
    assert validator.round_quantity("DOGEUSDT", 123.99) == 123.0
    assert validator.round_quantity("SOLUSDT", 1.239) == 1.23


def test_entry_quantity_rounds_up_to_clear_minimums() -> None:
    validator = _validator(min_notional_value=5.5)
    assert validator.entry_quantity("BTCUSDT", 0.0047, 50_000.0) == 0.004
    assert validator.entry_quantity("SOLUSDT", 0.055, 100.0) == 0.06
    assert validator.entry_quantity("XRPUSDT", 9.0164, 0.61) == 9.1
    assert validator.entry_quantity("GALAUSDT", 3.0, 0.5) == 11.0
    assert validator.entry_quantity("FOOUSDT", 1.2345, 10.0) == 1.2345


def test_round_price_uses_symbol_tick() -> None:
    validator = _validator()
    assert validator.round_price("BTCUSDT", 50_123.46) == 50_123.5
    assert validator.round_price("XRPUSDT", 0.512345) == 0.5123


def test_unknown_symbol_is_rejected_and_left_unrounded() -> None:
    validator = _validator()
    assert validator.round_price("FOOUSDT", 1.23456) == 1.23456
    check = validator.validate("FOOUSDT", 10.0, 1.0)
    assert not check.valid
    assert check.errors == ["no_precision_rule"]


def test_notional_of_4_80_is_rejected_against_5_50_minimum() -> None:
    validator = _validator(min_notional_value=5.5)
    check = validator.validate("DOGEUSDT", 48, 0.1)
    assert check.notional == pytest.approx(4.8)
    assert not check.valid
    assert "below_min_notional" in check.errors


def test_below_min_qty_is_rejected_after_rounding() -> None:
    validator = _validator()
    check = validator.validate("BTCUSDT", 0.0009, 50_000.0)
    assert "below_min_qty" in check.errors


def test_fee_ratio_uses_minimum_fee_floor() -> None:
    validator = _validator(min_notional_value=1.0, min_order_fee_usdt=0.05)
    check = validator.validate("DOGEUSDT", 20, 0.1)
    assert check.estimated_fee == pytest.approx(0.1)
    assert "fee_ratio_exceeded" in check.errors


def test_reduce_only_skips_notional_and_fee_checks() -> None:
    validator = _validator()
    check = validator.validate("DOGEUSDT", 5, 0.1, reduce_only=True)
    assert check.valid
    assert check.quantity == 5.0


def test_valid_order_passes_and_raise_for_errors_is_silent() -> None:
    validator = _validator()
    check = validator.validate("BTCUSDT", 0.004, 50_000.0)
    assert check.valid
    assert check.notional == pytest.approx(200.0)
    check.raise_for_errors()


def test_raise_for_errors_carries_reasons() -> None:
    validator = _validator()
    check = validator.validate("BTCUSDT", 0.0001, 50_000.0)
    with pytest.raises(ValidationError) as exc_info:
        check.raise_for_errors()
    assert "below_min_qty" in exc_info.value.reasons


def test_custom_rules_replace_defaults() -> None:
    validator = PrecisionValidator(
        RiskParameters(),
        rules={"ABCUSDT": PrecisionRule(quantity_decimals=1, min_qty=0.1, price_decimals=3)},
    )
    assert validator.has_rule("abcusdt")
    assert not validator.has_rule("BTCUSDT")
