from __future__ import annotations

from perp_trader.ai.oracle import ScannerOnlyOracle, SupervisedOracle
from perp_trader.ai.schemas import MarketContext
from perp_trader.errors import OracleError
from perp_trader.types import SignalAction, TradeSignal


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _Primary:
    def __init__(self) -> None:
        self.fail = True
        self.calls = 0

    def request_decision(self, context: MarketContext) -> TradeSignal:
        self.calls += 1
        if self.fail:
            raise OracleError("timeout")
        return TradeSignal(symbol=context.symbol, action=SignalAction.SHORT, confidence=0.9)


def _context(score: float = 90.0, rsi: float | None = 25.0) -> MarketContext:
    return MarketContext(symbol="ETHUSDT", price=2_000.0, score=score, rsi=rsi)


def test_scanner_only_oracle_takes_strong_oversold_longs() -> None:
    oracle = ScannerOnlyOracle(min_score=75, max_rsi=35)
    signal = oracle.request_decision(_context())
    assert signal.action is SignalAction.LONG
    assert signal.confidence == 0.9

    assert oracle.request_decision(_context(rsi=50.0)).action is SignalAction.HOLD
    assert oracle.request_decision(_context(score=60.0)).action is SignalAction.HOLD


def test_failures_below_threshold_hold() -> None:
    primary = _Primary()
    oracle = SupervisedOracle(primary, ScannerOnlyOracle(), failure_threshold=3, clock=_Clock())
    signal = oracle.request_decision(_context())
    assert signal.action is SignalAction.HOLD
    assert oracle.consecutive_failures == 1
    assert not oracle.scanner_only


def test_falls_back_after_threshold_and_reconnects() -> None:
    clock = _Clock()
    primary = _Primary()
    oracle = SupervisedOracle(
        primary,
        ScannerOnlyOracle(),
        failure_threshold=3,
        reconnect_interval=300,
        clock=clock,
    )
    for _ in range(3):
        clock.now += 1
        last = oracle.request_decision(_context())
    assert oracle.scanner_only
    assert last.action is SignalAction.LONG

    primary.fail = False
    clock.now += 10
    assert oracle.request_decision(_context()).action is SignalAction.LONG
    assert primary.calls == 3

    clock.now += 300
    signal = oracle.request_decision(_context())
    assert signal.action is SignalAction.SHORT
    assert not oracle.scanner_only
    assert oracle.consecutive_failures == 0


def test_without_primary_uses_fallback() -> None:
    oracle = SupervisedOracle(None, ScannerOnlyOracle())
    assert oracle.scanner_only
    assert oracle.request_decision(_context()).action is SignalAction.LONG
