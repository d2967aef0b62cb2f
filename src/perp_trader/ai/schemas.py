"""Oracle input/output schemas and strict parsing helpers."""

from __future__ import annotations

import json
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from perp_trader.types import SignalAction, TradeSignal


class MarketContext(BaseModel):
    """Normalized market state submitted to the signal oracle."""

    model_config = ConfigDict(extra="forbid")

    symbol: str = Field(pattern=r"^[A-Z0-9]+$")
    price: float = Field(gt=0.0)
    score: float = Field(ge=0.0, le=100.0)
    suggested_action: Literal["LONG", "SHORT", "HOLD"] = "HOLD"
    rsi: float | None = Field(default=None, ge=0.0, le=100.0)
    pullback_percent: float | None = None
    volume_ratio: float | None = None
    change_percent: float | None = None
    open_positions: list[str] = Field(default_factory=list)
    available_cash: float = Field(default=0.0, ge=0.0)
    reasons: list[str] = Field(default_factory=list)


class OracleDecision(BaseModel):
    """Strict oracle decision schema."""

    model_config = ConfigDict(extra="forbid")

    action: Literal["LONG", "SHORT", "HOLD", "CLOSE"]
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    leverage: int | None = Field(default=None, ge=1, le=18)
    stop_loss: float | None = Field(default=None, gt=0.0)
    take_profit: float | None = Field(default=None, gt=0.0)

    @classmethod
    def hold_default(cls, reason: str) -> "OracleDecision":
        """Construct a conservative no-trade decision."""
        return cls(action="HOLD", confidence=0.0, reasoning=f"INVALID_RESPONSE: {reason}")

    @classmethod
    def parse_strict(cls, payload: dict[str, Any]) -> "OracleDecision":
        """Parse a raw dict. Any violation is mapped to HOLD."""
        normalized = dict(payload)
        action = normalized.get("action")
        if isinstance(action, str):
            normalized["action"] = action.strip().upper()
        try:
            return cls.model_validate(normalized)
        except ValidationError as exc:
            return cls.hold_default(f"schema_validation_error: {exc.errors()[0]['msg']}")

    @classmethod
    def parse_response_text(cls, text: str) -> "OracleDecision":
        """Parse model text response. Non-JSON/invalid JSON is HOLD."""
        try:
            json_obj = _extract_json_obj(text)
        except ValueError as exc:
            return cls.hold_default(str(exc))
        return cls.parse_strict(json_obj)

    @property
    def is_invalid(self) -> bool:
        return self.reasoning.startswith("INVALID_RESPONSE")

    def to_signal(self, symbol: str) -> TradeSignal:
        return TradeSignal(
            symbol=symbol,
            action=SignalAction(self.action),
            confidence=self.confidence,
            rationale=self.reasoning,
            suggested_leverage=self.leverage,
            stop_loss=self.stop_loss,
            take_profit=self.take_profit,
        )


def _extract_json_obj(text: str) -> dict[str, Any]:
    """Extract the first JSON object from plain text or fenced content."""
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        decoded = json.loads(stripped)
        if isinstance(decoded, dict):
            return decoded
        raise ValueError("model_response_json_not_object")

    fenced_match = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", stripped, re.DOTALL)
    if fenced_match:
        decoded = json.loads(fenced_match.group(1))
        if isinstance(decoded, dict):
            return decoded
        raise ValueError("model_response_json_not_object")

    brace_match = re.search(r"\{.*\}", stripped, re.DOTALL)
    if brace_match:
        decoded = json.loads(brace_match.group(0))
        if isinstance(decoded, dict):
            return decoded
        raise ValueError("model_response_json_not_object")

    raise ValueError("model_response_not_json")
