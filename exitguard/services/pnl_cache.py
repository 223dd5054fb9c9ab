"""PnL Cache — short-lived, per-position PnL snapshots shared across threads.

Entries expire after ``ttl_seconds`` (6 hours by default) so a crashed
session never leaves stale PnL behind.  Freshness for decision making is a
much shorter window and is judged by the reader, not the cache.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime

from exitguard.config import settings
from exitguard.models.pnl import PnlSnapshot
from exitguard.utils.logger import logger


class PnlCache:
    """In-process TTL store keyed by position id."""

    def __init__(self, ttl_seconds: float | None = None) -> None:
        self._ttl = settings.PNL_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._entries: dict[int, tuple[PnlSnapshot, float, datetime]] = {}
        self._lock = threading.Lock()

    def store(self, position_id: int, snapshot: PnlSnapshot, updated_at: datetime | None = None) -> None:
        expires = time.monotonic() + self._ttl
        with self._lock:
            self._entries[position_id] = (snapshot, expires, updated_at or snapshot.observed_at)

    def fetch(self, position_id: int) -> PnlSnapshot | None:
        with self._lock:
            entry = self._entries.get(position_id)
            if entry is None:
                return None
            snapshot, expires, _ = entry
            if time.monotonic() >= expires:
                del self._entries[position_id]
                return None
            return snapshot

    def clear(self, position_id: int) -> bool:
        with self._lock:
            return self._entries.pop(position_id, None) is not None

    def clear_all(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("[PnlCache] Cleared %d entries", count)
        return count

    def position_ids(self) -> list[int]:
        with self._lock:
            return list(self._entries)

    def fetch_all(self) -> dict[int, PnlSnapshot]:
        now = time.monotonic()
        with self._lock:
            expired = [pid for pid, (_, exp, _) in self._entries.items() if now >= exp]
            for pid in expired:
                del self._entries[pid]
            return {pid: snap for pid, (snap, _, _) in self._entries.items()}

    def health_check(self) -> dict:
        with self._lock:
            size = len(self._entries)
        return {"healthy": True, "entries": size, "ttl_seconds": self._ttl}
