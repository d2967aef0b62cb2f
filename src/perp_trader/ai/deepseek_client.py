"""DeepSeek chat-completions signal oracle."""

from __future__ import annotations

import time
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from perp_trader.ai.schemas import MarketContext, OracleDecision
from perp_trader.config import Settings
from perp_trader.errors import OracleError
from perp_trader.types import TradeSignal
from perp_trader.utils.logging import get_logger, log_llm_call

_DEEPSEEK_URL = "https://api.deepseek.com/chat/completions"

_SYSTEM_PROMPT = (
    "You are a risk-aware crypto perpetual futures trader. Return only JSON with keys: "
    "action (LONG, SHORT, HOLD or CLOSE), confidence (0-1), reasoning, and optional "
    "leverage (1-18), stop_loss, take_profit."
)


class DeepSeekOracle:
    """Thin ``SignalOracle`` over the DeepSeek chat completion endpoint."""

    def __init__(self, settings: Settings, *, transport: httpx.BaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._logger = get_logger("perp_trader.ai.deepseek_client")

    def request_decision(self, context: MarketContext) -> TradeSignal:
        """Ask the model about one market context and return a strict signal.

        Transport failures raise ``OracleError`` after retries; malformed
        replies become HOLD with zero confidence.
        """
        started = time.perf_counter()
        try:
            content = self._request_completion(context)
        except OracleError:
            elapsed_ms = (time.perf_counter() - started) * 1000
            log_llm_call(
                self._logger,
                model=self._settings.deepseek_model,
                success=False,
                latency_ms=elapsed_ms,
                reason="api_error",
                symbol=context.symbol,
            )
            raise

        decision = OracleDecision.parse_response_text(content)
        elapsed_ms = (time.perf_counter() - started) * 1000
        log_llm_call(
            self._logger,
            model=self._settings.deepseek_model,
            success=not decision.is_invalid,
            latency_ms=elapsed_ms,
            symbol=context.symbol,
            action=decision.action,
            confidence=decision.confidence,
        )
        return decision.to_signal(context.symbol)

    @retry(
        retry=retry_if_exception_type(OracleError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _request_completion(self, context: MarketContext) -> str:
        if not self._settings.deepseek_api_key:
            raise OracleError("missing_deepseek_api_key")

        headers = {
            "Authorization": f"Bearer {self._settings.deepseek_api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self._settings.deepseek_model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        "Decide whether to open a leveraged position. "
                        f"Context: {context.model_dump_json()}"
                    ),
                },
            ],
        }

        try:
            with httpx.Client(
                timeout=self._settings.deepseek_timeout,
                transport=self._transport,
            ) as client:
                response = client.post(_DEEPSEEK_URL, headers=headers, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise OracleError(str(exc)) from exc

        return _extract_message_content(response.json())


def _extract_message_content(payload: dict[str, Any]) -> str:
    """Read assistant content from a chat completion payload."""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return "{}"
    first = choices[0]
    if not isinstance(first, dict):
        return "{}"
    message = first.get("message")
    if not isinstance(message, dict):
        return "{}"
    content = message.get("content")
    if isinstance(content, str):
        return content
    return "{}"
