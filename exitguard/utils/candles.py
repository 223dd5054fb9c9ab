"""Candle analytics on pandas frames — swings, structure breaks, plus ATR and ADX via pandas-ta.

Frames carry ``timestamp, open, high, low, close`` columns, oldest first.
The last row is the forming candle: swing levels are taken from the rows
before it and compared against its close.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import pandas as pd
import pandas_ta as ta  # noqa: F401  registers the DataFrame.ta accessor

from exitguard.utils.market_hours import IST

OHLC_COLUMNS = ["timestamp", "open", "high", "low", "close"]

ATR_FALLING_RATIO = 0.85
ATR_RISING_RATIO = 1.1


def normalize_frame(frame: pd.DataFrame) -> pd.DataFrame:
    """Lower-case columns, tz-aware timestamps, sorted oldest → newest."""
    df = frame.rename(columns=str.lower)
    missing = [c for c in OHLC_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Candle frame missing columns: {missing}")
    df = df[OHLC_COLUMNS].copy()
    ts = pd.to_datetime(df["timestamp"])
    if ts.dt.tz is None:
        ts = ts.dt.tz_localize(IST)
    df["timestamp"] = ts
    for col in ("open", "high", "low", "close"):
        df[col] = df[col].astype(float)
    return df.sort_values("timestamp").reset_index(drop=True)


def to_price(value: float | None) -> Decimal | None:
    if value is None or pd.isna(value):
        return None
    return Decimal(str(round(float(value), 4)))


def count_since(frame: pd.DataFrame, since: datetime) -> int:
    """Number of candles opened at or after ``since``."""
    ts = pd.to_datetime(frame["timestamp"])
    if ts.dt.tz is None:
        ts = ts.dt.tz_localize(IST)
    cutoff = pd.Timestamp(since)
    if cutoff.tzinfo is None:
        cutoff = cutoff.tz_localize(IST)
    return int((ts >= cutoff).sum())


def prior_high(frame: pd.DataFrame, n: int) -> float | None:
    """Highest high of the ``n`` completed candles before the forming one."""
    completed = frame.iloc[:-1].tail(n)
    return None if completed.empty else float(completed["high"].max())


def prior_low(frame: pd.DataFrame, n: int) -> float | None:
    completed = frame.iloc[:-1].tail(n)
    return None if completed.empty else float(completed["low"].min())


def swing_points(frame: pd.DataFrame) -> tuple[pd.Series, pd.Series]:
    """Three-bar fractal swing highs / lows as boolean masks."""
    high, low = frame["high"], frame["low"]
    swing_high = (high > high.shift(1)) & (high > high.shift(-1))
    swing_low = (low < low.shift(1)) & (low < low.shift(-1)) & ~swing_high
    return swing_high.fillna(False), swing_low.fillna(False)


def break_of_structure(frame: pd.DataFrame, lookback: int = 50) -> tuple[str, str | None]:
    """``("broken", direction)`` when the last close clears the latest swing, else intact/unknown."""
    window = frame.tail(lookback)
    if len(window) < 5:
        return "unknown", None
    completed = window.iloc[:-1]
    swing_high, swing_low = swing_points(completed)
    highs = completed.loc[swing_high, "high"]
    lows = completed.loc[swing_low, "low"]
    if highs.empty and lows.empty:
        return "unknown", None

    close = float(window["close"].iloc[-1])
    if not highs.empty and close > float(highs.iloc[-1]):
        return "broken", "bullish"
    if not lows.empty and close < float(lows.iloc[-1]):
        return "broken", "bearish"
    return "intact", None


def change_of_character(frame: pd.DataFrame, lookback: int = 30) -> str | None:
    """Direction of a fresh change of character, or ``None``.

    An up-structure (higher high and higher low) whose last close drops under
    the latest swing low flips bearish; the mirror case flips bullish.
    """
    window = frame.tail(lookback)
    if len(window) < 6:
        return None
    completed = window.iloc[:-1]
    swing_high, swing_low = swing_points(completed)
    highs = completed.loc[swing_high, "high"]
    lows = completed.loc[swing_low, "low"]
    if len(highs) < 2 or len(lows) < 2:
        return None

    close = float(window["close"].iloc[-1])
    up_structure = highs.iloc[-1] > highs.iloc[-2] and lows.iloc[-1] > lows.iloc[-2]
    down_structure = highs.iloc[-1] < highs.iloc[-2] and lows.iloc[-1] < lows.iloc[-2]
    if up_structure and close < float(lows.iloc[-1]):
        return "bearish"
    if down_structure and close > float(highs.iloc[-1]):
        return "bullish"
    return None


def atr_ratio(frame: pd.DataFrame, period: int = 14) -> float | None:
    """ATR(period) of the last candle over ATR(period) ``period`` candles earlier."""
    if len(frame) < period * 2 + 1:
        return None
    atr = frame.ta.atr(length=period)
    if atr is None:
        return None
    recent, prior = atr.iloc[-1], atr.iloc[-1 - period]
    if pd.isna(recent) or pd.isna(prior) or not prior:
        return None
    return float(recent / prior)


def classify_atr_trend(ratio: float) -> str:
    if ratio < ATR_FALLING_RATIO:
        return "falling"
    if ratio > ATR_RISING_RATIO:
        return "rising"
    return "flat"


def adx(frame: pd.DataFrame, period: int = 14) -> float | None:
    """ADX(period) of the last candle; ``None`` during warm-up."""
    if len(frame) < period * 2:
        return None
    result = frame.ta.adx(length=period)
    if result is None or f"ADX_{period}" not in result:
        return None
    value = result[f"ADX_{period}"].iloc[-1]
    return None if pd.isna(value) else round(float(value), 2)
