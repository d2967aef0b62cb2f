"""Opportunity scanner: score symbols 0-100 and flag scalper setups."""

from __future__ import annotations

from typing import Any, Protocol

from perp_trader.config import RiskParameters
from perp_trader.data.binance import MarketDataClient
from perp_trader.features.indicators import compute_scan_metrics
from perp_trader.types import ScanCandidate, SignalAction
from perp_trader.utils.logging import get_logger

MIN_UNIQUE_CLOSES = 10


class Scanner(Protocol):
    def rank_candidates(self) -> list[ScanCandidate]: ...


def score_opportunity(metrics: dict[str, Any]) -> tuple[float, list[str]]:
    """Weighted 0-100 opportunity score from scan metrics."""
    score = 0.0
    reasons: list[str] = []
    price = float(metrics["price"])
    rsi = metrics.get("rsi")
    bb = metrics.get("bollinger")
    volume = metrics.get("volume")
    breakout = metrics.get("breakout")

    if rsi is not None:
        if rsi < 20:
            score += 30
            reasons.append("rsi_extreme_oversold")
        elif rsi < 30:
            score += 20
            reasons.append("rsi_oversold")
        elif rsi > 80:
            score += 25
            reasons.append("rsi_extreme_overbought")
        elif rsi > 70:
            score += 15
            reasons.append("rsi_overbought")
        else:
            score += 5

    if volume:
        if volume["is_extreme_spike"]:
            score += 30
            reasons.append("volume_extreme_spike")
        elif volume["is_spike"]:
            score += 20
            reasons.append("volume_spike")
        elif volume["volume_ratio"] > 1.2:
            score += 10
            reasons.append("volume_rising")

    if breakout:
        if breakout["is_strong_breakup"] or breakout["is_strong_breakdown"]:
            score += 40
            reasons.append("strong_breakout")
        elif breakout["is_breaking_up"] or breakout["is_breaking_down"]:
            score += 25
            reasons.append("breakout")
        elif abs(breakout["price_change"]) > 1.0:
            score += 10

    if bb:
        at_lower = price <= bb["lower"] * 1.002
        at_upper = price >= bb["upper"] * 0.998
        if at_lower:
            score += 20
            reasons.append("bb_lower_touch")
        elif at_upper:
            score += 15
            reasons.append("bb_upper_touch")
        if bb["bandwidth"] > 3:
            score += 5
        if rsi is not None and rsi < 30 and at_lower:
            score += 20
            reasons.append("mean_reversion_long")
        elif rsi is not None and rsi > 70 and at_upper:
            score += 15
            reasons.append("mean_reversion_short")

    return min(score, 100.0), reasons


def suggest_action(metrics: dict[str, Any]) -> SignalAction:
    """Directional bias from RSI extremes, breakouts and the EMA20 trend."""
    rsi = metrics.get("rsi")
    breakout = metrics.get("breakout") or {}
    price = float(metrics["price"])
    ema20 = metrics.get("ema20")

    if breakout.get("is_strong_breakup") or breakout.get("is_breaking_up"):
        return SignalAction.LONG
    if breakout.get("is_strong_breakdown") or breakout.get("is_breaking_down"):
        return SignalAction.SHORT
    if rsi is not None and rsi < 30:
        return SignalAction.LONG
    if rsi is not None and rsi > 80:
        return SignalAction.SHORT
    if ema20 is not None and rsi is not None:
        if price > ema20 and rsi < 60:
            return SignalAction.LONG
        if price < ema20 and rsi > 40:
            return SignalAction.SHORT
    return SignalAction.HOLD


def is_scalper_setup(metrics: dict[str, Any], params: RiskParameters) -> bool:
    if not params.scalper_enabled:
        return False
    pullback = metrics.get("pullback_percent")
    rsi = metrics.get("rsi")
    if pullback is None or rsi is None:
        return False
    return (
        params.scalper_min_pullback <= pullback <= params.scalper_max_pullback
        and params.scalper_min_rsi <= rsi <= params.scalper_max_rsi
    )


class OpportunityScanner:
    """Rank the configured symbols by opportunity score."""

    def __init__(
        self,
        params: RiskParameters,
        data_client: MarketDataClient,
        symbols: list[str],
        *,
        top_n: int = 5,
        interval: str = "3m",
        limit: int = 100,
    ) -> None:
        self._params = params
        self._data = data_client
        self._symbols = symbols
        self._top_n = top_n
        self._interval = interval
        self._limit = limit
        self._logger = get_logger("perp_trader.strategy.scanner")

    def rank_candidates(self) -> list[ScanCandidate]:
        candidates: list[ScanCandidate] = []
        for symbol in self._symbols:
            try:
                candidate = self.scan_symbol(symbol)
            except Exception as exc:  # noqa: BLE001 - one bad symbol must not stop the scan.
                self._logger.warning("scan_symbol_failed", symbol=symbol, error=str(exc))
                continue
            if candidate is not None:
                candidates.append(candidate)
        candidates.sort(key=lambda item: item.score, reverse=True)
        return candidates[: self._top_n]

    def scan_symbol(self, symbol: str) -> ScanCandidate | None:
        df = self._data.fetch_ohlcv(symbol, self._interval, self._limit)
        metrics = compute_scan_metrics(df)
        if int(metrics["unique_closes"]) < MIN_UNIQUE_CLOSES:
            self._logger.info(
                "scan_symbol_stale",
                symbol=symbol,
                unique_closes=metrics["unique_closes"],
            )
            return None
        return self.build_candidate(symbol, metrics)

    def build_candidate(self, symbol: str, metrics: dict[str, Any]) -> ScanCandidate:
        score, reasons = score_opportunity(metrics)
        scalper = is_scalper_setup(metrics, self._params)
        action = SignalAction.LONG if scalper else suggest_action(metrics)
        if scalper:
            reasons.append("scalper_pullback")
        return ScanCandidate(
            symbol=symbol,
            score=score,
            action=action,
            confidence=score / 100.0,
            price=float(metrics["price"]),
            rsi=metrics.get("rsi"),
            pullback_percent=metrics.get("pullback_percent"),
            is_scalper=scalper,
            reasons=tuple(reasons),
        )
