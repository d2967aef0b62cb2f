from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pandas as pd
import pytest

from perp_trader.config import RiskParameters
from perp_trader.features.indicators import compute_rsi, compute_scan_metrics, pullback_percent
from perp_trader.strategy.scanner import (
    OpportunityScanner,
    is_scalper_setup,
    score_opportunity,
    suggest_action,
)
from perp_trader.types import SignalAction


def _build_ohlcv(closes: list[float], volume: float = 1_000.0) -> pd.DataFrame:
    start = datetime(2024, 1, 1, tzinfo=UTC)
    times = [start + timedelta(minutes=3 * i) for i in range(len(closes))]
    return pd.DataFrame(
        {
            "open_time": times,
            "open": closes,
            "high": [c * 1.001 for c in closes],
            "low": [c * 0.999 for c in closes],
            "close": closes,
            "volume": [volume for _ in closes],
            "close_time": [t + timedelta(minutes=3) for t in times],
        }
    )


class _FakeDataClient:
    def __init__(self, frames: dict[str, pd.DataFrame]) -> None:
        self._frames = frames

    def fetch_ohlcv(self, symbol: str, interval: str = "3m", limit: int = 100) -> pd.DataFrame:
        if symbol not in self._frames:
            raise RuntimeError("empty_ohlcv_response")
        return self._frames[symbol]


def _rising(rows: int = 100) -> list[float]:
    return [100.0 + i * 0.5 for i in range(rows)]


def test_rsi_extremes() -> None:
    assert compute_rsi(pd.Series(_rising())) == 100.0
    assert compute_rsi(pd.Series(list(reversed(_rising())))) == pytest.approx(0.0)
    assert compute_rsi(pd.Series([1.0, 2.0])) is None


def test_pullback_from_recent_high() -> None:
    closes = [100.0] * 19 + [95.0]
    assert pullback_percent(pd.Series(closes)) == pytest.approx(5.0)


def test_scan_metrics_reject_unordered_frames() -> None:
    df = _build_ohlcv(_rising()).iloc[::-1]
    with pytest.raises(ValueError, match="ohlcv_timestamp_not_ascending"):
        compute_scan_metrics(df)


def test_score_is_capped_at_100() -> None:
    metrics = {
        "price": 90.0,
        "rsi": 15.0,
        "bollinger": {"upper": 110.0, "middle": 100.0, "lower": 90.0, "bandwidth": 20.0},
        "volume": {"volume_ratio": 4.0, "is_spike": True, "is_extreme_spike": True},
        "breakout": {
            "price_change": -6.0,
            "position_in_range": 0.0,
            "is_breaking_up": False,
            "is_breaking_down": True,
            "is_strong_breakup": False,
            "is_strong_breakdown": True,
        },
    }
    score, reasons = score_opportunity(metrics)
    assert score == 100.0
    assert {"rsi_extreme_oversold", "volume_extreme_spike", "strong_breakout"} <= set(reasons)
    assert "mean_reversion_long" in reasons


def test_suggest_action_follows_breakout_then_rsi() -> None:
    assert suggest_action({"price": 1.0, "breakout": {"is_breaking_up": True}}) is SignalAction.LONG
    assert suggest_action({"price": 1.0, "rsi": 85.0}) is SignalAction.SHORT
    assert suggest_action({"price": 1.0, "rsi": 50.0}) is SignalAction.HOLD


def test_scalper_setup_window() -> None:
    params = RiskParameters()
    assert is_scalper_setup({"pullback_percent": 5.0, "rsi": 75.0}, params)
    assert not is_scalper_setup({"pullback_percent": 2.0, "rsi": 75.0}, params)
    assert not is_scalper_setup(
        {"pullback_percent": 5.0, "rsi": 75.0},
        RiskParameters(scalper_enabled=False),
    )


def test_scanner_ranks_and_skips_bad_symbols() -> None:
    frames = {
        "BTCUSDT": _build_ohlcv(_rising()),
        "ETHUSDT": _build_ohlcv([2_000.0] * 100),
    }
    scanner = OpportunityScanner(
        RiskParameters(),
        _FakeDataClient(frames),  # type: ignore[arg-type]
        ["BTCUSDT", "ETHUSDT", "SOLUSDT"],
        top_n=5,
    )
    candidates = scanner.rank_candidates()

    assert [c.symbol for c in candidates] == ["BTCUSDT"]
    candidate = candidates[0]
    assert candidate.score == pytest.approx(40.0)
    assert candidate.action is SignalAction.SHORT
    assert "rsi_extreme_overbought" in candidate.reasons
    assert candidate.confidence == pytest.approx(0.4)
    assert not candidate.is_scalper


def test_scalper_candidate_is_long() -> None:
    scanner = OpportunityScanner(
        RiskParameters(),
        _FakeDataClient({}),  # type: ignore[arg-type]
        [],
    )
    candidate = scanner.build_candidate(
        "SOLUSDT",
        {"price": 20.0, "rsi": 75.0, "pullback_percent": 5.0},
    )
    assert candidate.is_scalper
    assert candidate.action is SignalAction.LONG
    assert "scalper_pullback" in candidate.reasons
