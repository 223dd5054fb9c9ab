"""Market hours utilities — timezone-aware NSE/BSE session helpers.

Provides functions to check whether the Indian equity-derivatives session is
open, plus ``MarketClock``, the injectable clock/session oracle used by the
monitor loop and the rules.  Uses stdlib zoneinfo (no pytz dependency).
"""

from __future__ import annotations

from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

IST = ZoneInfo("Asia/Kolkata")
MARKET_OPEN = time(9, 15)
MARKET_CLOSE = time(15, 30)


def now_ist() -> datetime:
    """Current time in India Standard Time."""
    return datetime.now(IST)


def parse_hhmm(value: str | time | None) -> time | None:
    """Parse ``"HH:MM"`` into a ``time``; ``None`` / blank → ``None``.

    Raises ValueError on a malformed string.
    """
    if value is None or isinstance(value, time):
        return value
    text = str(value).strip()
    if not text:
        return None
    hour, _, minute = text.partition(":")
    return time(int(hour), int(minute or 0))


def is_market_open(dt: datetime | None = None) -> bool:
    """Check if the session is open (Mon-Fri 09:15-15:30 IST).

    Does NOT account for exchange holidays.
    """
    now = dt or now_ist()
    if now.weekday() > 4:  # Saturday=5, Sunday=6
        return False
    return MARKET_OPEN <= now.time() < MARKET_CLOSE


def next_market_open(dt: datetime | None = None) -> datetime:
    """Return the next session open in IST."""
    now = dt or now_ist()
    candidate = now.replace(
        hour=MARKET_OPEN.hour,
        minute=MARKET_OPEN.minute,
        second=0,
        microsecond=0,
    )
    if now.time() < MARKET_OPEN and now.weekday() <= 4:
        return candidate

    candidate += timedelta(days=1)
    while candidate.weekday() > 4:
        candidate += timedelta(days=1)
    return candidate


class MarketClock:
    """Clock and session oracle: ``now()`` and ``market_closed()``."""

    def __init__(self, tz: ZoneInfo = IST) -> None:
        self._tz = tz

    def now(self) -> datetime:
        return datetime.now(self._tz)

    def market_closed(self) -> bool:
        return not is_market_open(self.now())

    def session_status(self) -> dict:
        """Session summary for logs and health checks."""
        now = self.now()
        is_open = is_market_open(now)
        return {
            "is_open": is_open,
            "current_time_ist": now.strftime("%Y-%m-%d %H:%M:%S IST"),
            "next_open": None if is_open else next_market_open(now).strftime("%Y-%m-%d %H:%M IST"),
            "day_of_week": now.strftime("%A"),
        }
