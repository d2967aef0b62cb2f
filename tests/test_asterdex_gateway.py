from __future__ import annotations

import hashlib
import hmac
from urllib.parse import parse_qsl

import httpx
import pytest

from perp_trader.config import Settings
from perp_trader.errors import (
    GatewayAuthError,
    InsufficientMarginError,
    OrderRejectedError,
    TransientGatewayError,
)
from perp_trader.exec.asterdex import AsterDexGateway
from perp_trader.types import Order, Side


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "asterdex_api_key": "key",
        "asterdex_api_secret": "secret",
        "_env_file": None,
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


def _gateway(handler: object, **overrides: object) -> AsterDexGateway:
    return AsterDexGateway(
        _settings(**overrides),
        transport=httpx.MockTransport(handler),  # type: ignore[arg-type]
        clock=lambda: 1_700_000_000.0,
    )


def _expected_signature(query: str) -> str:
    return hmac.new(b"secret", query.encode("utf-8"), hashlib.sha256).hexdigest()


def test_sign_appends_hmac_of_sorted_query() -> None:
    gateway = _gateway(lambda request: httpx.Response(200, json={}))
    signed = gateway.sign({"symbol": "BTCUSDT", "leverage": 10})
    query, signature = signed.split("&signature=")
    assert query == "leverage=10&symbol=BTCUSDT"
    assert signature == _expected_signature(query)


def test_mark_price_is_unsigned() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"symbol": "BTCUSDT", "price": "50123.4"})

    assert _gateway(handler).get_mark_price("BTCUSDT") == 50_123.4
    assert seen[0].url.path == "/fapi/v1/ticker/price"
    assert "signature" not in str(seen[0].url)
    assert "X-MBX-APIKEY" not in seen[0].headers


def test_place_order_sends_signed_form() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"orderId": 42, "status": "NEW", "avgPrice": "0"})

    order = Order(
        symbol="BTCUSDT",
        side="SELL",
        order_type="STOP_MARKET",
        quantity=0.004,
        stop_price=49_009.8,
        reduce_only=True,
        client_order_id="pt-abc",
    )
    ack = _gateway(handler).place_order(order)

    assert ack.order_id == "42"
    assert ack.avg_price is None
    request = seen[0]
    assert request.method == "POST"
    assert request.headers["X-MBX-APIKEY"] == "key"
    body = request.content.decode("utf-8")
    query, signature = body.split("&signature=")
    assert signature == _expected_signature(query)
    fields = dict(parse_qsl(query))
    assert fields["type"] == "STOP_MARKET"
    assert fields["stopPrice"] == "49009.8"
    assert fields["quantity"] == "0.004"
    assert fields["reduceOnly"] == "true"
    assert fields["newClientOrderId"] == "pt-abc"
    assert fields["timestamp"] == "1700000000000"


def test_position_side_comes_from_amount_sign() -> None:
    rows = [
        {"symbol": "BTCUSDT", "positionAmt": "0.010", "entryPrice": "50000", "leverage": "10"},
        {"symbol": "ETHUSDT", "positionAmt": "-2", "entryPrice": "2000", "markPrice": "1990"},
        {"symbol": "SOLUSDT", "positionAmt": "0", "entryPrice": "0"},
    ]
    gateway = _gateway(lambda request: httpx.Response(200, json=rows))
    positions = gateway.get_open_positions()
    assert [(p.symbol, p.side, p.quantity) for p in positions] == [
        ("BTCUSDT", Side.LONG, 0.01),
        ("ETHUSDT", Side.SHORT, 2.0),
    ]
    assert positions[0].mark_price == 50_000.0


@pytest.mark.parametrize(
    ("status", "error"),
    [
        (401, GatewayAuthError),
        (429, TransientGatewayError),
        (503, TransientGatewayError),
        (400, OrderRejectedError),
    ],
)
def test_http_status_maps_to_error_taxonomy(status: int, error: type[Exception]) -> None:
    gateway = _gateway(lambda request: httpx.Response(status, json={"code": -1, "msg": "nope"}))
    with pytest.raises(error):
        gateway.set_leverage("BTCUSDT", 10)


def test_insufficient_margin_code_is_distinguished() -> None:
    gateway = _gateway(
        lambda request: httpx.Response(400, json={"code": -2019, "msg": "Margin is insufficient."})
    )
    with pytest.raises(InsufficientMarginError):
        gateway.set_leverage("BTCUSDT", 10)


def test_timeout_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    with pytest.raises(TransientGatewayError):
        _gateway(handler).get_account()


def test_missing_credentials_fail_before_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    gateway = _gateway(handler, asterdex_api_key="", asterdex_api_secret="")
    with pytest.raises(GatewayAuthError):
        gateway.get_account()
    assert calls == []
