"""Control loop: run cycles on an adaptive interval until asked to stop."""

from __future__ import annotations

import signal
import threading
from types import FrameType
from typing import Protocol

from perp_trader.config import RiskParameters
from perp_trader.types import CycleResult
from perp_trader.utils.logging import get_logger


class CycleRunner(Protocol):
    def run_cycle(self) -> CycleResult: ...


def select_interval(params: RiskParameters, open_count: int) -> float:
    """Poll faster while positions are open."""
    if open_count > 0:
        return params.loop_interval_with_positions
    return params.loop_interval


class ControlLoop:
    """Run ``engine.run_cycle`` repeatedly.

    A shutdown request never interrupts a cycle in progress; it only cuts
    short the wait before the next one.
    """

    def __init__(
        self,
        engine: CycleRunner,
        params: RiskParameters,
        *,
        max_cycles: int | None = None,
    ) -> None:
        self._engine = engine
        self._params = params
        self._max_cycles = max_cycles
        self._stop = threading.Event()
        self._logger = get_logger("perp_trader.scheduler")
        self.cycles_run = 0

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def run(self) -> int:
        """Loop until stopped or ``max_cycles`` is reached; returns cycles run."""
        while not self._stop.is_set():
            result = self._engine.run_cycle()
            self.cycles_run += 1
            interval = select_interval(self._params, result.open_positions)
            result.next_interval_seconds = interval
            self._logger.info(
                "cycle_completed",
                cycle=result.cycle,
                status=result.status,
                elapsed_ms=round(result.elapsed_ms, 2),
                open_positions=result.open_positions,
                orders=len(result.orders),
                warnings=result.warnings,
                errors=result.errors,
                next_interval_seconds=interval,
            )
            if self._max_cycles is not None and self.cycles_run >= self._max_cycles:
                break
            self._stop.wait(interval)

        self._logger.info("loop_stopped", total_cycles=self.cycles_run)
        return self.cycles_run

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        self._logger.info("shutdown_requested", signal=signal.Signals(signum).name)
        self._stop.set()
