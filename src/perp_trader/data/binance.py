"""Binance futures market data used by the scanner and the paper exchange."""

from __future__ import annotations

from typing import Any

import pandas as pd  # type: ignore[import-untyped]
from binance.client import Client  # type: ignore[import-untyped]

from perp_trader.utils.logging import get_logger


class MarketDataClient:
    """Read-only client for futures klines and mark prices."""

    _INTERVAL_MAP = {
        "1m": Client.KLINE_INTERVAL_1MINUTE,
        "3m": Client.KLINE_INTERVAL_3MINUTE,
        "5m": Client.KLINE_INTERVAL_5MINUTE,
        "15m": Client.KLINE_INTERVAL_15MINUTE,
        "1h": Client.KLINE_INTERVAL_1HOUR,
        "4h": Client.KLINE_INTERVAL_4HOUR,
    }

    def __init__(self, client: Any | None = None) -> None:
        self._logger = get_logger("perp_trader.data.binance")
        self._client = client if client is not None else Client(api_key=None, api_secret=None)

    def fetch_ohlcv(self, symbol: str, interval: str = "3m", limit: int = 100) -> pd.DataFrame:
        """Fetch futures klines and return normalized dataframe."""
        resolved_interval = self._INTERVAL_MAP.get(interval.lower())
        if resolved_interval is None:
            raise ValueError(f"unsupported_interval: {interval}")

        rows = self._client.futures_klines(symbol=symbol, interval=resolved_interval, limit=limit)
        df = pd.DataFrame(
            rows,
            columns=[
                "open_time",
                "open",
                "high",
                "low",
                "close",
                "volume",
                "close_time",
                "quote_asset_volume",
                "number_of_trades",
                "taker_buy_base_asset_volume",
                "taker_buy_quote_asset_volume",
                "ignore",
            ],
        )
        if df.empty:
            raise RuntimeError("empty_ohlcv_response")

        numeric_cols = ["open", "high", "low", "close", "volume"]
        for col in numeric_cols:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df["open_time"] = pd.to_datetime(df["open_time"], unit="ms", utc=True)
        df["close_time"] = pd.to_datetime(df["close_time"], unit="ms", utc=True)
        df = df.dropna(subset=numeric_cols).reset_index(drop=True)
        return df[["open_time", "open", "high", "low", "close", "volume", "close_time"]]

    def fetch_mark_price(self, symbol: str) -> float:
        """Latest futures mark price."""
        payload: dict[str, Any] = self._client.futures_mark_price(symbol=symbol)
        value = payload.get("markPrice")
        if value is None:
            raise KeyError(f"mark_price_missing: {symbol}")
        return float(value)
