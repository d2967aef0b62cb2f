"""Rotation policy: free capital from a weak position for a stronger candidate."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from perp_trader.config import RiskParameters
from perp_trader.risk.precision import PrecisionValidator
from perp_trader.types import CloseIntent, Position, PositionKey, ScanCandidate


@dataclass(frozen=True, slots=True)
class RotationDecision:
    """Close one position in favour of ``candidate``."""

    intent: CloseIntent
    candidate: ScanCandidate
    profit_percent: float


class RotationPolicy:
    """Pick at most one position to rotate out per cycle."""

    def __init__(self, params: RiskParameters, validator: PrecisionValidator) -> None:
        self._params = params
        self._validator = validator

    @property
    def min_age_seconds(self) -> float:
        return max(self._params.min_rotation_hold_time, self._params.min_position_hold_time)

    def best_candidate(
        self,
        positions: list[Position],
        candidates: list[ScanCandidate],
    ) -> ScanCandidate | None:
        """Highest-scoring candidate that qualifies and is not already held."""
        held = {position.symbol for position in positions}
        eligible = [
            candidate
            for candidate in candidates
            if candidate.symbol not in held
            and candidate.score >= self._params.rotation_min_score_required
        ]
        if not eligible:
            return None
        return max(eligible, key=lambda candidate: candidate.score)

    def select(
        self,
        positions: list[Position],
        candidates: list[ScanCandidate],
        marks: dict[PositionKey, float],
        now: datetime,
    ) -> RotationDecision | None:
        if not self._params.position_rotation_enabled or not positions:
            return None

        candidate = self.best_candidate(positions, candidates)
        if candidate is None:
            return None

        weakest: tuple[float, Position] | None = None
        for position in positions:
            mark = marks.get(position.key)
            if mark is None or mark <= 0:
                continue
            if not self._is_eligible(position, mark, now):
                continue
            roe = position.profit_percent(mark)
            if weakest is None or roe < weakest[0]:
                weakest = (roe, position)

        if weakest is None:
            return None
        roe, position = weakest
        return RotationDecision(
            intent=CloseIntent(key=position.key, reason=f"rotation:{candidate.symbol}"),
            candidate=candidate,
            profit_percent=roe,
        )

    def _is_eligible(self, position: Position, mark: float, now: datetime) -> bool:
        if position.age(now).total_seconds() < self.min_age_seconds:
            return False
        if position.profit_percent(mark) > self._params.rotation_max_profit_threshold:
            return False
        check = self._validator.validate(
            position.symbol,
            position.quantity,
            mark,
            reduce_only=True,
        )
        return check.valid
