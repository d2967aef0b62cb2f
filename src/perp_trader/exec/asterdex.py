"""AsterDex futures REST gateway (Binance-compatible ``fapi`` endpoints)."""

from __future__ import annotations

import hashlib
import hmac
import time
from datetime import datetime, timezone
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from perp_trader.config import Settings
from perp_trader.errors import (
    GatewayAuthError,
    InsufficientMarginError,
    OrderRejectedError,
    TransientGatewayError,
)
from perp_trader.types import AccountState, ExchangePosition, Order, OrderAck, Side
from perp_trader.utils.logging import get_logger, log_order_execution

_INSUFFICIENT_MARGIN_CODE = -2019


class AsterDexGateway:
    """Signed REST client implementing ``ExchangeGateway``."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._logger = get_logger("perp_trader.exec.asterdex")
        self._client = httpx.Client(
            base_url=settings.asterdex_base_url,
            timeout=settings.http_timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def get_mark_price(self, symbol: str) -> float:
        payload = self._request("GET", "/fapi/v1/ticker/price", {"symbol": symbol}, signed=False)
        price = _to_float(payload.get("price") if isinstance(payload, dict) else None)
        if price <= 0:
            raise TransientGatewayError(f"invalid_ticker_price: {symbol}")
        return price

    def get_account(self) -> AccountState:
        account = self._request("GET", "/fapi/v2/account", {})
        balances = self._request("GET", "/fapi/v2/balance", {})
        available = 0.0
        if isinstance(balances, list):
            for row in balances:
                if isinstance(row, dict) and row.get("asset") == "USDT":
                    available = _to_float(row.get("availableBalance"))
                    break
        if not isinstance(account, dict):
            raise TransientGatewayError("invalid_account_payload")
        if available <= 0:
            available = _to_float(account.get("availableBalance"))
        return AccountState(
            wallet_balance=_to_float(account.get("totalWalletBalance")),
            available_cash=available,
            total_unrealized_pnl=_to_float(account.get("totalUnrealizedProfit")),
            fetched_at=datetime.now(timezone.utc),
        )

    def get_open_positions(self) -> list[ExchangePosition]:
        rows = self._request("GET", "/fapi/v2/positionRisk", {})
        if not isinstance(rows, list):
            raise TransientGatewayError("invalid_position_payload")
        positions: list[ExchangePosition] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            amount = _to_float(row.get("positionAmt"))
            if amount == 0:
                continue
            entry = _to_float(row.get("entryPrice"))
            positions.append(
                ExchangePosition(
                    symbol=str(row.get("symbol", "")),
                    side=Side.LONG if amount > 0 else Side.SHORT,
                    quantity=abs(amount),
                    entry_price=entry,
                    mark_price=_to_float(row.get("markPrice")) or entry,
                    leverage=int(_to_float(row.get("leverage")) or 1),
                    unrealized_pnl=_to_float(row.get("unRealizedProfit")),
                )
            )
        return positions

    def place_order(self, order: Order) -> OrderAck:
        params: dict[str, Any] = {
            "symbol": order.symbol,
            "side": order.side,
            "type": order.order_type,
            "quantity": _format_number(order.quantity),
            "positionSide": "BOTH",
        }
        if order.stop_price is not None:
            params["stopPrice"] = _format_number(order.stop_price)
        if order.reduce_only:
            params["reduceOnly"] = "true"
        if order.client_order_id:
            params["newClientOrderId"] = order.client_order_id

        payload = self._request("POST", "/fapi/v1/order", params)
        if not isinstance(payload, dict) or "orderId" not in payload:
            raise OrderRejectedError(f"order_not_acknowledged: {payload}")
        ack = OrderAck(
            order_id=str(payload["orderId"]),
            symbol=order.symbol,
            status=str(payload.get("status", "NEW")),
            avg_price=_to_float(payload.get("avgPrice")) or None,
        )
        log_order_execution(
            self._logger,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            order_type=order.order_type,
            price=order.stop_price,
            order_id=ack.order_id,
            status=ack.status,
        )
        return ack

    def cancel_order(self, symbol: str, order_id: str) -> None:
        self._request("DELETE", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id})

    def set_leverage(self, symbol: str, leverage: int) -> None:
        self._request("POST", "/fapi/v1/leverage", {"symbol": symbol, "leverage": leverage})

    def sign(self, params: dict[str, Any]) -> str:
        """Return the query string with its HMAC-SHA256 signature appended."""
        query = urlencode(sorted(params.items()))
        signature = hmac.new(
            self._settings.asterdex_api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return f"{query}&signature={signature}"

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any],
        *,
        signed: bool = True,
    ) -> Any:
        headers: dict[str, str] = {}
        if signed:
            if not self._settings.asterdex_api_key or not self._settings.asterdex_api_secret:
                raise GatewayAuthError("missing_asterdex_credentials")
            params = {**params, "timestamp": int(self._clock() * 1000)}
            query = self.sign(params)
            headers["X-MBX-APIKEY"] = self._settings.asterdex_api_key
        else:
            query = urlencode(sorted(params.items()))

        try:
            if method in ("GET", "DELETE"):
                response = self._client.request(method, f"{path}?{query}", headers=headers)
            else:
                headers["Content-Type"] = "application/x-www-form-urlencoded"
                response = self._client.request(method, path, content=query, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientGatewayError(f"timeout: {method} {path}") from exc
        except httpx.TransportError as exc:
            raise TransientGatewayError(f"transport_error: {exc}") from exc

        _raise_for_status(response, path)
        try:
            return response.json()
        except ValueError as exc:
            raise TransientGatewayError(f"invalid_json: {path}") from exc


def _raise_for_status(response: httpx.Response, path: str) -> None:
    status = response.status_code
    if status < 400:
        return
    detail = response.text[:200]
    if status in (401, 403):
        raise GatewayAuthError(f"http_{status}: {path} {detail}")
    if status == 429 or status >= 500:
        raise TransientGatewayError(f"http_{status}: {path} {detail}")
    if _error_code(response) == _INSUFFICIENT_MARGIN_CODE:
        raise InsufficientMarginError(f"http_{status}: {path} {detail}")
    raise OrderRejectedError(f"http_{status}: {path} {detail}")


def _error_code(response: httpx.Response) -> int | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    code = payload.get("code")
    return code if isinstance(code, int) else None


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _format_number(value: float) -> str:
    text = f"{value:.8f}".rstrip("0").rstrip(".")
    return text or "0"
