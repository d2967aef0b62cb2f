from __future__ import annotations

from datetime import UTC, datetime, timedelta

from perp_trader.config import RiskParameters
from perp_trader.risk.precision import PrecisionValidator
from perp_trader.risk.rotation import RotationPolicy
from perp_trader.types import Position, ScanCandidate, Side, SignalAction

NOW = datetime(2024, 1, 1, 12, tzinfo=UTC)


def _policy(**overrides: object) -> RotationPolicy:
    values: dict[str, object] = {"position_rotation_enabled": True}
    values.update(overrides)
    params = RiskParameters(**values)
    return RotationPolicy(params, PrecisionValidator(params))


def _position(symbol: str, age: timedelta, entry: float = 100.0) -> Position:
    return Position(
        symbol=symbol,
        side=Side.LONG,
        entry_price=entry,
        quantity=1.0,
        leverage=10,
        opened_at=NOW - age,
    )


def _candidate(symbol: str = "SOLUSDT", score: float = 99.0) -> ScanCandidate:
    return ScanCandidate(
        symbol=symbol,
        score=score,
        action=SignalAction.LONG,
        confidence=score / 100,
        price=20.0,
    )


def test_rotation_never_fires_on_young_position() -> None:
    policy = _policy(min_rotation_hold_time=3600)
    young = _position("ETHUSDT", timedelta(minutes=30))
    marks = {young.key: 99.0}
    assert policy.select([young], [_candidate(score=100.0)], marks, NOW) is None


def test_rotation_picks_weakest_eligible_position() -> None:
    policy = _policy()
    weak = _position("ETHUSDT", timedelta(hours=2))
    strong = _position("LTCUSDT", timedelta(hours=2))
    marks = {weak.key: 99.0, strong.key: 100.3}

    decision = policy.select([weak, strong], [_candidate()], marks, NOW)

    assert decision is not None
    assert decision.intent.key == weak.key
    assert decision.intent.reason == "rotation:SOLUSDT"
    assert decision.profit_percent < 0


def test_rotation_skips_positions_above_profit_threshold() -> None:
    policy = _policy(rotation_max_profit_threshold=5.0)
    winner = _position("ETHUSDT", timedelta(hours=2))
    assert policy.select([winner], [_candidate()], {winner.key: 101.0}, NOW) is None


def test_rotation_requires_high_scoring_unheld_candidate() -> None:
    policy = _policy(rotation_min_score_required=99.0)
    position = _position("ETHUSDT", timedelta(hours=2))
    marks = {position.key: 99.0}
    assert policy.select([position], [_candidate(score=95.0)], marks, NOW) is None
    assert policy.select([position], [_candidate("ETHUSDT")], marks, NOW) is None


def test_rotation_disabled_by_default() -> None:
    params = RiskParameters()
    policy = RotationPolicy(params, PrecisionValidator(params))
    position = _position("ETHUSDT", timedelta(hours=5))
    assert policy.select([position], [_candidate()], {position.key: 90.0}, NOW) is None


def test_min_age_honours_the_longer_hold_time() -> None:
    policy = _policy(min_rotation_hold_time=60, min_position_hold_time=600)
    assert policy.min_age_seconds == 600
