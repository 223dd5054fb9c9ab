"""Candle Structure Source — swing levels and indicators over in-memory candle frames.

The candle collector pushes frames (or single bars) per instrument and
timeframe; rules and the underlying monitor query them through the
``StructureSource`` methods.  All answers are ``None`` while a frame is
missing or still warming up.
"""

from __future__ import annotations

import threading
from decimal import Decimal
from typing import Any

import pandas as pd

from exitguard.models.position import Derivative, Instrument
from exitguard.utils.candles import (
    adx,
    atr_ratio,
    change_of_character,
    classify_atr_trend,
    normalize_frame,
    prior_high,
    prior_low,
    to_price,
)
from exitguard.utils.logger import logger

MAX_CANDLES = 500
ADX_PERIOD = 14
ATR_PERIOD = 14


def _key(instrument: Instrument | Derivative, timeframe: str) -> tuple[str, str, str]:
    return (instrument.exchange_segment.upper(), str(instrument.security_id), str(timeframe))


class CandleStructureSource:
    def __init__(self, max_candles: int = MAX_CANDLES) -> None:
        self._frames: dict[tuple[str, str, str], pd.DataFrame] = {}
        self._max_candles = max_candles
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Collector side
    # ------------------------------------------------------------------

    def update_candles(
        self,
        instrument: Instrument | Derivative,
        timeframe: str,
        frame: pd.DataFrame,
    ) -> None:
        """Replace the frame for (instrument, timeframe)."""
        df = normalize_frame(frame).tail(self._max_candles).reset_index(drop=True)
        with self._lock:
            self._frames[_key(instrument, timeframe)] = df
        logger.debug(
            "[StructureSource] %s %sm: %d candles loaded", instrument.symbol, timeframe, len(df),
        )

    def append_candle(
        self,
        instrument: Instrument | Derivative,
        timeframe: str,
        candle: dict[str, Any],
    ) -> None:
        """Append a bar, or replace the forming bar when the timestamp repeats."""
        row = normalize_frame(pd.DataFrame([candle]))
        key = _key(instrument, timeframe)
        with self._lock:
            current = self._frames.get(key)
            if current is None or current.empty:
                self._frames[key] = row
                return
            if current["timestamp"].iloc[-1] == row["timestamp"].iloc[0]:
                current = current.iloc[:-1]
            combined = pd.concat([current, row], ignore_index=True)
            self._frames[key] = combined.tail(self._max_candles).reset_index(drop=True)

    # ------------------------------------------------------------------
    # Reader side
    # ------------------------------------------------------------------

    def candles(
        self,
        instrument: Instrument | Derivative,
        timeframe: str,
        n: int | None = None,
    ) -> pd.DataFrame | None:
        with self._lock:
            frame = self._frames.get(_key(instrument, timeframe))
        if frame is None or frame.empty:
            return None
        return frame.tail(n).copy() if n else frame.copy()

    def recent_high(self, instrument: Instrument | Derivative, timeframe: str, n: int) -> Decimal | None:
        frame = self.candles(instrument, timeframe)
        if frame is None or len(frame) < 2:
            return None
        return to_price(prior_high(frame, n))

    def recent_low(self, instrument: Instrument | Derivative, timeframe: str, n: int) -> Decimal | None:
        frame = self.candles(instrument, timeframe)
        if frame is None or len(frame) < 2:
            return None
        return to_price(prior_low(frame, n))

    def last_close(self, instrument: Instrument | Derivative, timeframe: str) -> Decimal | None:
        frame = self.candles(instrument, timeframe, 1)
        if frame is None:
            return None
        return to_price(frame["close"].iloc[-1])

    def change_of_character(
        self,
        instrument: Instrument | Derivative,
        timeframe: str,
        lookback: int = 30,
    ) -> str | None:
        frame = self.candles(instrument, timeframe)
        if frame is None:
            return None
        return change_of_character(frame, lookback)

    def trend_score(self, instrument: Instrument | Derivative, timeframe: str = "5") -> Decimal | None:
        """ADX(14) of the latest candle."""
        frame = self.candles(instrument, timeframe)
        if frame is None:
            return None
        return to_price(adx(frame, ADX_PERIOD))

    def atr_trend(
        self,
        instrument: Instrument | Derivative,
        timeframe: str = "5",
    ) -> tuple[str, Decimal] | None:
        frame = self.candles(instrument, timeframe)
        if frame is None:
            return None
        ratio = atr_ratio(frame, ATR_PERIOD)
        if ratio is None:
            return None
        return classify_atr_trend(ratio), to_price(ratio)
