"""Underlying Monitor — structural health of the index a position is written on."""

from __future__ import annotations

import threading
import time

from exitguard.interfaces import Clock, StructureSource
from exitguard.models.market import UnderlyingState
from exitguard.models.position import Derivative, Instrument, Position
from exitguard.utils.candles import break_of_structure
from exitguard.utils.logger import logger

STATE_TTL_SECONDS = 0.25
TREND_TIMEFRAME = "5"
CONFIRM_TIMEFRAME = "1"
BOS_LOOKBACK = 50


class UnderlyingMonitor:
    """Derives ``UnderlyingState`` from the structure source, cached briefly per instrument.

    Several positions on the same index share one computation per cycle.
    """

    def __init__(
        self,
        structure: StructureSource,
        clock: Clock,
        ttl_seconds: float = STATE_TTL_SECONDS,
    ) -> None:
        self._structure = structure
        self._clock = clock
        self._ttl = ttl_seconds
        self._cache: dict[tuple[str, str], tuple[float, UnderlyingState | None]] = {}
        self._lock = threading.Lock()

    def evaluate(self, position: Position) -> UnderlyingState | None:
        instrument = position.reference_instrument()
        key = (instrument.exchange_segment.upper(), str(instrument.security_id))
        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None and now - cached[0] < self._ttl:
                return cached[1]

        try:
            state = self.compute(instrument)
        except Exception as exc:
            logger.warning(
                "[UnderlyingMonitor] %s state unavailable: %s - %s",
                instrument.symbol, type(exc).__name__, exc,
            )
            state = None

        with self._lock:
            self._cache[key] = (now, state)
        return state

    def compute(self, instrument: Instrument | Derivative) -> UnderlyingState | None:
        frame = self._structure.candles(instrument, TREND_TIMEFRAME, BOS_LOOKBACK)
        if frame is None:
            return None

        bos_state, bos_direction = break_of_structure(frame, BOS_LOOKBACK)
        atr = self._structure.atr_trend(instrument, TREND_TIMEFRAME)
        atr_trend, ratio = atr if atr is not None else (None, None)

        mtf_confirm = None
        fast = self._structure.candles(instrument, CONFIRM_TIMEFRAME, BOS_LOOKBACK)
        if fast is not None and bos_state == "broken":
            fast_state, fast_direction = break_of_structure(fast, BOS_LOOKBACK)
            mtf_confirm = fast_state == "broken" and fast_direction == bos_direction

        ltp = self._structure.last_close(instrument, CONFIRM_TIMEFRAME)
        if ltp is None:
            ltp = self._structure.last_close(instrument, TREND_TIMEFRAME)

        return UnderlyingState(
            trend_score=self._structure.trend_score(instrument, TREND_TIMEFRAME),
            bos_state=bos_state,
            bos_direction=bos_direction,
            atr_trend=atr_trend,
            atr_ratio=ratio,
            mtf_confirm=mtf_confirm,
            ltp=ltp,
            computed_at=self._clock.now(),
        )

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
