"""PnL Resolver — one answer to "what is this position's PnL right now?".

Active positions:
  1. a fresh snapshot from the cache, else
  2. recomputed from the latest price (net of execution costs) and written
     back to the cache.

Exited / cancelled positions read the durable final value only; the cache is
never consulted once a position is terminal.

Also owns the orphan sweep (cache entries whose position is no longer
active), rate limited to once per ``sweep_interval_seconds``.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal

from exitguard.config import settings
from exitguard.errors import PositionNotFound
from exitguard.interfaces import Clock, PriceSource
from exitguard.models.pnl import ExecutionCosts, PnlSnapshot
from exitguard.models.position import Position
from exitguard.services.pnl_cache import PnlCache
from exitguard.services.position_store import PositionStore
from exitguard.utils.logger import logger
from exitguard.utils.money import ZERO

LTP_HISTORY_SIZE = 10


class PnlResolver:
    def __init__(
        self,
        store: PositionStore,
        cache: PnlCache,
        prices: PriceSource,
        clock: Clock,
        costs: ExecutionCosts | None = None,
        *,
        freshness_seconds: float | None = None,
        sweep_interval_seconds: float | None = None,
        persist_interval_seconds: float | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._prices = prices
        self._clock = clock
        self._costs = costs or ExecutionCosts(fee_per_order=settings.FEE_PER_ORDER)
        self._freshness = settings.PNL_FRESHNESS_SECONDS if freshness_seconds is None else freshness_seconds
        self._sweep_interval = (
            settings.ORPHAN_SWEEP_SECONDS if sweep_interval_seconds is None else sweep_interval_seconds
        )
        self._persist_interval = (
            settings.PNL_PERSIST_SECONDS if persist_interval_seconds is None else persist_interval_seconds
        )
        self._last_sweep_at: datetime | None = None
        self._last_persist_at: datetime | None = None
        self._ltp_history: dict[int, deque[Decimal]] = {}

    @property
    def costs(self) -> ExecutionCosts:
        return self._costs

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, position: Position) -> PnlSnapshot | None:
        if position.is_terminal:
            try:
                return self._store.final_snapshot(position.id)
            except PositionNotFound:
                logger.warning("[PnlResolver] %s has no durable record", position.order_no)
                return None
        if not position.is_active:
            return None

        now = self._clock.now()
        cached = self._cache.fetch(position.id)
        if cached is not None and cached.is_fresh(now, self._freshness):
            return cached
        return self.recompute(position, prior=cached, now=now)

    def recompute(
        self,
        position: Position,
        prior: PnlSnapshot | None = None,
        now: datetime | None = None,
    ) -> PnlSnapshot | None:
        """Price-derived snapshot written back to the cache.

        Without a price the previous snapshot (possibly stale) is returned.
        """
        ltp = self._prices.current_price(position)
        if ltp is None:
            logger.debug("[PnlResolver] No price for %s; keeping previous snapshot", position.order_no)
            return prior
        snapshot = self._costs.snapshot_for(
            position,
            ltp,
            now or self._clock.now(),
            prior_hwm=prior.hwm if prior else None,
        )
        if snapshot is None:
            return prior
        self._cache.store(position.id, snapshot)
        return snapshot

    def refresh(self, positions: Iterable[Position]) -> dict[int, PnlSnapshot]:
        """Resolve every active position and apply the result to the entity."""
        snapshots: dict[int, PnlSnapshot] = {}
        for position in positions:
            if not position.is_active:
                continue
            try:
                snapshot = self.resolve(position)
            except Exception as exc:
                logger.error(
                    "[PnlResolver] Refresh failed for %s: %s - %s",
                    position.order_no, type(exc).__name__, exc,
                )
                continue
            if snapshot is None:
                continue
            position.apply_pnl(snapshot.pnl, snapshot.pnl_pct, snapshot.hwm)
            if snapshot.ltp is not None:
                self._ltp_history.setdefault(position.id, deque(maxlen=LTP_HISTORY_SIZE)).append(snapshot.ltp)
            snapshots[position.id] = snapshot
        return snapshots

    def seed(self, position: Position) -> PnlSnapshot:
        """Zero-PnL snapshot for a freshly filled position."""
        entry = position.effective_entry
        snapshot = PnlSnapshot(
            pnl=ZERO,
            pnl_pct=ZERO,
            hwm=position.high_water_mark_pnl,
            hwm_pct=ZERO,
            ltp=entry,
            observed_at=self._clock.now(),
        )
        self._cache.store(position.id, snapshot)
        return snapshot

    def ltp_history(self, position_id: int) -> list[Decimal]:
        return list(self._ltp_history.get(position_id, ()))

    def forget(self, position_id: int) -> None:
        """Drop the cache entry and sampled prices of a closed position."""
        self._cache.clear(position_id)
        self._ltp_history.pop(position_id, None)

    # ------------------------------------------------------------------
    # Periodic housekeeping
    # ------------------------------------------------------------------

    def persist_if_due(self, positions: Iterable[Position]) -> int:
        now = self._clock.now()
        if (
            self._last_persist_at is not None
            and (now - self._last_persist_at).total_seconds() < self._persist_interval
        ):
            return 0
        self._last_persist_at = now
        written = 0
        for position in positions:
            if not position.is_active or position.last_pnl_rupees is None:
                continue
            try:
                if self._store.update_pnl(position):
                    written += 1
            except Exception as exc:
                logger.error(
                    "[PnlResolver] PnL persist failed for %s: %s - %s",
                    position.order_no, type(exc).__name__, exc,
                )
        if written:
            logger.debug("[PnlResolver] Persisted PnL for %d positions", written)
        return written

    def sweep_orphans(self, active_ids: set[int]) -> list[int]:
        """Clear cache entries for positions outside ``active_ids`` (rate limited)."""
        now = self._clock.now()
        if (
            self._last_sweep_at is not None
            and (now - self._last_sweep_at).total_seconds() < self._sweep_interval
        ):
            return []
        self._last_sweep_at = now

        orphans = [pid for pid in self._cache.position_ids() if pid not in active_ids]
        for pid in orphans:
            self.forget(pid)
        if orphans:
            logger.info("[PnlResolver] Cleared %d orphan cache entries: %s", len(orphans), orphans)
        return orphans
