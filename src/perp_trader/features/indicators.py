"""Indicator computation for the opportunity scanner."""

from __future__ import annotations

import numpy as np
import pandas as pd  # type: ignore[import-untyped]

VOLUME_SPIKE_MULTIPLIER = 2.0
VOLUME_EXTREME_SPIKE_MULTIPLIER = 3.0
BREAKOUT_MIN_PRICE_MOVE = 2.0
BREAKOUT_STRONG_PRICE_MOVE = 5.0


def compute_rsi(close: pd.Series, period: int = 14) -> float | None:
    """Wilder RSI of the last bar, or None without enough history."""
    prices = close.astype(float)
    if len(prices) <= period:
        return None
    delta = prices.diff()
    gain = delta.clip(lower=0.0)
    loss = -delta.clip(upper=0.0)
    avg_gain = gain.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    avg_loss = loss.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    last_gain = float(avg_gain.iloc[-1])
    last_loss = float(avg_loss.iloc[-1])
    if np.isnan(last_gain) or np.isnan(last_loss):
        return None
    if last_loss == 0:
        return 100.0 if last_gain > 0 else 50.0
    rs = last_gain / last_loss
    return float(100.0 - 100.0 / (1.0 + rs))


def bollinger_bands(
    close: pd.Series,
    period: int = 20,
    std_dev: float = 2.0,
) -> dict[str, float] | None:
    """Population-std Bollinger bands with bandwidth in percent of the middle."""
    prices = close.astype(float)
    if len(prices) < period:
        return None
    window = prices.iloc[-period:]
    middle = float(window.mean())
    std = float(window.std(ddof=0))
    if middle <= 0:
        return None
    return {
        "upper": middle + std * std_dev,
        "middle": middle,
        "lower": middle - std * std_dev,
        "bandwidth": std * std_dev * 2 / middle * 100,
    }


def volume_profile(volume: pd.Series) -> dict[str, float | bool] | None:
    """Recent-vs-historical volume ratio and spike flags."""
    volumes = volume.astype(float)
    if len(volumes) < 20:
        return None
    recent = volumes.iloc[-10:]
    historical = volumes.iloc[:-10]
    avg_historical = float(historical.mean())
    ratio = float(recent.mean()) / avg_historical if avg_historical > 0 else 1.0
    current = float(volumes.iloc[-1])
    average = float(volumes.mean())
    return {
        "volume_ratio": ratio,
        "is_spike": current > average * VOLUME_SPIKE_MULTIPLIER,
        "is_extreme_spike": current > average * VOLUME_EXTREME_SPIKE_MULTIPLIER,
    }


def detect_breakout(close: pd.Series, volume: pd.Series) -> dict[str, float | bool] | None:
    """Position within the 20-bar range plus 5-bar price change."""
    prices = close.astype(float)
    if len(prices) < 20:
        return None
    current = float(prices.iloc[-1])
    window = prices.iloc[-20:]
    high = float(window.max())
    low = float(window.min())
    span = high - low
    position = (current - low) / span if span > 0 else 0.5
    reference = float(prices.iloc[-5])
    change = (current - reference) / reference * 100 if reference > 0 else 0.0
    profile = volume_profile(volume)
    confirmed = bool(profile and profile["is_spike"])
    return {
        "price_change": change,
        "position_in_range": position,
        "is_breaking_up": position > 0.9 and change > BREAKOUT_MIN_PRICE_MOVE,
        "is_breaking_down": position < 0.1 and change < -BREAKOUT_MIN_PRICE_MOVE,
        "is_strong_breakup": position > 0.95 and change > BREAKOUT_STRONG_PRICE_MOVE and confirmed,
        "is_strong_breakdown": (
            position < 0.05 and change < -BREAKOUT_STRONG_PRICE_MOVE and confirmed
        ),
    }


def pullback_percent(close: pd.Series, lookback: int = 20) -> float | None:
    """Depth below the recent high, in price percent."""
    prices = close.astype(float)
    if len(prices) < lookback:
        return None
    high = float(prices.iloc[-lookback:].max())
    if high <= 0:
        return None
    return (high - float(prices.iloc[-1])) / high * 100


def compute_scan_metrics(df: pd.DataFrame) -> dict[str, object]:
    """Compute every metric the scanner scores on from one kline frame."""
    if df.empty:
        raise ValueError("input_ohlcv_empty")
    if not _is_time_ascending(df):
        raise ValueError("ohlcv_timestamp_not_ascending")

    close = df["close"].astype(float)
    volume = df["volume"].astype(float)
    return {
        "price": float(close.iloc[-1]),
        "rsi": compute_rsi(close, 14),
        "bollinger": bollinger_bands(close),
        "volume": volume_profile(volume),
        "breakout": detect_breakout(close, volume),
        "pullback_percent": pullback_percent(close),
        "ema20": float(_ema(close, 20).iloc[-1]),
        "unique_closes": int(close.nunique()),
    }


def _is_time_ascending(df: pd.DataFrame) -> bool:
    open_time = df.get("open_time")
    if open_time is None:
        return False
    return bool(pd.Series(open_time).is_monotonic_increasing)


def _ema(series: pd.Series, period: int) -> pd.Series:
    return series.ewm(span=period, adjust=False).mean()
