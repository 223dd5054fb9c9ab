"""Price Book — latest traded price per instrument, fed by the market-data feed.

The feed transport lives elsewhere; it calls ``record_tick`` and this book
answers ``current_price(position)`` for the resolver and the dispatcher.
Subscriptions are tracked so the feed knows which instruments to stream.

Every accepted tick also writes a fresh PnL snapshot for each active position
subscribed to that instrument, so the cache never lags the feed.
"""

from __future__ import annotations

import threading
from datetime import datetime
from decimal import Decimal

from exitguard.config import settings
from exitguard.interfaces import Clock
from exitguard.models.pnl import ExecutionCosts, PnlSnapshot
from exitguard.models.position import Position
from exitguard.services.pnl_cache import PnlCache
from exitguard.utils.logger import logger
from exitguard.utils.market_hours import now_ist
from exitguard.utils.money import ZERO, to_decimal


def _key(security_id: str, exchange_segment: str) -> tuple[str, str]:
    return (exchange_segment.upper(), str(security_id))


class PriceBook:
    """Thread-safe last-price store plus feed subscription registry."""

    def __init__(
        self,
        cache: PnlCache,
        costs: ExecutionCosts | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._cache = cache
        self._costs = costs or ExecutionCosts(fee_per_order=settings.FEE_PER_ORDER)
        self._clock = clock
        self._ticks: dict[tuple[str, str], tuple[Decimal, datetime]] = {}
        self._subscriptions: dict[tuple[str, str], dict[str, Position]] = {}
        self._lock = threading.Lock()

    def _now(self) -> datetime:
        return self._clock.now() if self._clock is not None else now_ist()

    # ------------------------------------------------------------------
    # Feed side
    # ------------------------------------------------------------------

    def record_tick(
        self,
        security_id: str,
        exchange_segment: str,
        ltp: Decimal | float | str,
        at: datetime | None = None,
    ) -> int:
        """Keep the tick and refresh subscribers' snapshots.  Returns how many were written."""
        price = to_decimal(ltp)
        if price is None or price <= ZERO:
            logger.debug("[PriceBook] Ignoring bad tick %s:%s → %r", exchange_segment, security_id, ltp)
            return 0
        observed_at = at or self._now()
        key = _key(security_id, exchange_segment)
        with self._lock:
            self._ticks[key] = (price, observed_at)
            holders = list(self._subscriptions.get(key, {}).values())

        written = 0
        for position in holders:
            if position.id is None or not position.is_active:
                continue
            prior = self._cache.fetch(position.id)
            snapshot = self._costs.snapshot_for(
                position, price, observed_at, prior_hwm=prior.hwm if prior else None,
            )
            if snapshot is None:
                continue
            self._cache.store(position.id, snapshot)
            written += 1
        return written

    def subscribe(self, position: Position) -> None:
        inst = position.instrument
        with self._lock:
            self._subscriptions.setdefault(_key(inst.security_id, inst.exchange_segment), {})[
                position.order_no
            ] = position
        logger.debug("[PriceBook] Subscribed %s for %s", inst.symbol, position.order_no)

    def unsubscribe(self, position: Position) -> None:
        inst = position.instrument
        key = _key(inst.security_id, inst.exchange_segment)
        with self._lock:
            holders = self._subscriptions.get(key)
            if holders is None:
                return
            holders.pop(position.order_no, None)
            if not holders:
                del self._subscriptions[key]
        logger.debug("[PriceBook] Unsubscribed %s for %s", inst.symbol, position.order_no)

    def is_subscribed(self, position: Position) -> bool:
        inst = position.instrument
        with self._lock:
            return bool(self._subscriptions.get(_key(inst.security_id, inst.exchange_segment)))

    # ------------------------------------------------------------------
    # Reader side
    # ------------------------------------------------------------------

    def current_price(self, position: Position) -> Decimal | None:
        inst = position.instrument
        with self._lock:
            tick = self._ticks.get(_key(inst.security_id, inst.exchange_segment))
        return tick[0] if tick else None

    def last_tick_at(self, position: Position) -> datetime | None:
        inst = position.instrument
        with self._lock:
            tick = self._ticks.get(_key(inst.security_id, inst.exchange_segment))
        return tick[1] if tick else None

    def pnl_snapshot(self, position_id: int) -> PnlSnapshot | None:
        return self._cache.fetch(position_id)
