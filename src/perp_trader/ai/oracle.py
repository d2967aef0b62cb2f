"""Signal oracle protocol, scanner-only fallback and failure supervision."""

from __future__ import annotations

import time
from typing import Callable, Protocol

from perp_trader.ai.schemas import MarketContext
from perp_trader.errors import OracleError
from perp_trader.types import SignalAction, TradeSignal
from perp_trader.utils.logging import get_logger, log_risk_event


class SignalOracle(Protocol):
    def request_decision(self, context: MarketContext) -> TradeSignal: ...


class ScannerOnlyOracle:
    """Rule-based oracle used while the model is unreachable.

    Only strongly ranked, oversold candidates are taken, long only.
    """

    def __init__(self, *, min_score: float = 75.0, max_rsi: float = 35.0) -> None:
        self._min_score = min_score
        self._max_rsi = max_rsi

    def request_decision(self, context: MarketContext) -> TradeSignal:
        oversold = context.rsi is not None and context.rsi < self._max_rsi
        if context.score >= self._min_score and oversold:
            return TradeSignal(
                symbol=context.symbol,
                action=SignalAction.LONG,
                confidence=min(context.score / 100.0, 1.0),
                rationale="scanner_only: high score oversold",
                rsi=context.rsi,
                score=context.score,
            )
        return TradeSignal(
            symbol=context.symbol,
            action=SignalAction.HOLD,
            confidence=0.0,
            rationale="scanner_only: criteria not met",
            rsi=context.rsi,
            score=context.score,
        )


class SupervisedOracle:
    """Route decisions to the primary oracle, falling back after repeated failures.

    After ``failure_threshold`` consecutive ``OracleError``s, decisions come from
    the fallback. The primary is retried once every ``reconnect_interval``
    seconds and resumes on the first success.
    """

    def __init__(
        self,
        primary: SignalOracle | None,
        fallback: SignalOracle,
        *,
        failure_threshold: int = 3,
        reconnect_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._failure_threshold = failure_threshold
        self._reconnect_interval = reconnect_interval
        self._clock = clock
        self._failures = 0
        self._scanner_only = primary is None
        self._last_attempt: float | None = None
        self._logger = get_logger("perp_trader.ai.oracle")

    @property
    def scanner_only(self) -> bool:
        return self._scanner_only

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def request_decision(self, context: MarketContext) -> TradeSignal:
        if self._primary is None:
            return self._fallback.request_decision(context)

        now = self._clock()
        if self._scanner_only and self._last_attempt is not None:
            if now - self._last_attempt < self._reconnect_interval:
                return self._fallback.request_decision(context)

        self._last_attempt = now
        try:
            signal = self._primary.request_decision(context)
        except OracleError as exc:
            self._failures += 1
            if self._failures >= self._failure_threshold and not self._scanner_only:
                self._scanner_only = True
                log_risk_event(
                    self._logger,
                    event_type="oracle_unavailable",
                    action="scanner_only_mode",
                    failures=self._failures,
                    error=str(exc),
                )
            if self._scanner_only:
                return self._fallback.request_decision(context)
            return TradeSignal(
                symbol=context.symbol,
                action=SignalAction.HOLD,
                confidence=0.0,
                rationale=f"oracle_error: {exc}",
            )

        if self._scanner_only:
            self._logger.info("oracle_reconnected", failures=self._failures)
        self._failures = 0
        self._scanner_only = False
        return signal
