"""Tests for the PnL cache, price book and resolver precedence."""

from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import make_position
from exitguard.models.pnl import ExecutionCosts, PnlSnapshot
from exitguard.services.pnl_cache import PnlCache
from exitguard.services.pnl_resolver import PnlResolver
from exitguard.services.price_book import PriceBook


def tick(book: PriceBook, position, ltp: str) -> None:
    inst = position.instrument
    book.record_tick(inst.security_id, inst.exchange_segment, ltp)


@pytest.fixture
def book(cache, clock) -> PriceBook:
    return PriceBook(cache, clock=clock)


@pytest.fixture
def resolver(store, cache, book, clock) -> PnlResolver:
    return PnlResolver(
        store, cache, book, clock, ExecutionCosts(),
        freshness_seconds=10, sweep_interval_seconds=60, persist_interval_seconds=60,
    )


class TestPnlCache:
    def test_store_and_fetch(self, cache, clock):
        snap = PnlSnapshot(pnl=Decimal("10"), observed_at=clock.now())
        cache.store(1, snap)
        assert cache.fetch(1) == snap
        assert cache.position_ids() == [1]
        assert cache.health_check()["entries"] == 1

    def test_expired_entries_dropped(self, clock):
        cache = PnlCache(ttl_seconds=0)
        cache.store(1, PnlSnapshot(pnl=Decimal("10"), observed_at=clock.now()))
        assert cache.fetch(1) is None
        assert cache.fetch_all() == {}

    def test_clear(self, cache, clock):
        cache.store(1, PnlSnapshot(pnl=Decimal("10"), observed_at=clock.now()))
        assert cache.clear(1)
        assert not cache.clear(1)
        cache.store(2, PnlSnapshot(pnl=Decimal("10"), observed_at=clock.now()))
        assert cache.clear_all() == 1


class TestPriceBook:
    def test_latest_tick_wins(self, book):
        p = make_position()
        tick(book, p, "101")
        tick(book, p, "102.5")
        assert book.current_price(p) == Decimal("102.5")

    def test_bad_ticks_ignored(self, book):
        p = make_position()
        tick(book, p, "101")
        tick(book, p, "0")
        tick(book, p, "garbage")
        assert book.current_price(p) == Decimal("101")

    def test_tick_writes_snapshot_for_subscribers(self, store, cache, book, clock):
        p = store.add(make_position(position_id=None))
        book.subscribe(p)
        cache.store(p.id, PnlSnapshot(pnl=Decimal("0"), hwm=Decimal("600"), observed_at=clock.now()))

        assert book.record_tick(p.instrument.security_id, p.instrument.exchange_segment, "79") == 1

        snap = cache.fetch(p.id)
        assert snap.pnl == Decimal("-1070")
        assert snap.ltp == Decimal("79")
        assert snap.hwm == Decimal("600")
        assert snap.observed_at == clock.now()

    def test_tick_skips_unsubscribed_and_pending(self, store, cache, book):
        pending = store.add(make_position("PENDING", position_id=None, status="pending"))
        book.subscribe(pending)
        loose = store.add(make_position("LOOSE", position_id=None))
        assert book.record_tick(loose.instrument.security_id, loose.instrument.exchange_segment, "110") == 0
        assert cache.fetch(pending.id) is None
        assert cache.fetch(loose.id) is None

    def test_subscriptions(self, book):
        a = make_position("A")
        b = make_position("B", position_id=2)
        book.subscribe(a)
        book.subscribe(b)
        book.unsubscribe(a)
        assert book.is_subscribed(b)
        book.unsubscribe(b)
        assert not book.is_subscribed(b)


# ══════════════════════════════════════════════════════════════════════
# Resolver
# ══════════════════════════════════════════════════════════════════════


class TestResolverPrecedence:
    def test_fresh_cache_wins_over_recompute(self, store, cache, book, clock, resolver):
        p = store.add(make_position(position_id=None))
        cached = PnlSnapshot(pnl=Decimal("500"), pnl_pct=Decimal("10"), observed_at=clock.now())
        cache.store(p.id, cached)
        tick(book, p, "130")

        assert resolver.resolve(p).pnl == Decimal("500")

    def test_stale_cache_recomputed_and_written_back(self, store, cache, book, clock, resolver):
        p = store.add(make_position(position_id=None))
        cache.store(p.id, PnlSnapshot(pnl=Decimal("500"), hwm=Decimal("500"), observed_at=clock.now()))
        tick(book, p, "130")
        clock.advance(seconds=11)

        snap = resolver.resolve(p)
        assert snap.pnl == Decimal("1480")
        assert snap.hwm == Decimal("1480")
        assert cache.fetch(p.id) == snap

    def test_exited_reads_durable_value_only(self, store, cache, book, clock, resolver):
        p = store.add(make_position(position_id=None))
        p.mark_exited(Decimal("110"), Decimal("460"), Decimal("10"), at=clock.now())
        store.finalize_exit(p)
        cache.store(p.id, PnlSnapshot(pnl=Decimal("9999"), observed_at=clock.now()))
        tick(book, p, "200")

        assert resolver.resolve(p).pnl == Decimal("460")

    def test_no_price_keeps_previous(self, store, cache, clock, resolver):
        p = store.add(make_position(position_id=None))
        stale = PnlSnapshot(pnl=Decimal("42"), observed_at=clock.now())
        cache.store(p.id, stale)
        clock.advance(seconds=30)
        assert resolver.resolve(p) == stale

    def test_pending_has_no_pnl(self, store, resolver):
        p = store.add(make_position(position_id=None, status="pending"))
        assert resolver.resolve(p) is None


class TestResolverRefresh:
    def test_refresh_applies_and_samples(self, store, book, clock, resolver):
        p = store.add(make_position(position_id=None))
        for ltp in ("110", "130", "120"):
            tick(book, p, ltp)
            resolver.refresh([p])
            clock.advance(seconds=11)
        assert p.last_pnl_rupees == Decimal("980")
        assert p.high_water_mark_pnl == Decimal("1480")
        assert resolver.ltp_history(p.id) == [Decimal("110"), Decimal("130"), Decimal("120")]

    def test_refresh_skips_inactive(self, book, resolver):
        p = make_position(status="pending")
        tick(book, p, "110")
        assert resolver.refresh([p]) == {}

    def test_persist_rate_limited(self, store, book, clock, resolver):
        p = store.add(make_position(position_id=None))
        tick(book, p, "110")
        resolver.refresh([p])
        assert resolver.persist_if_due([p]) == 1
        assert resolver.persist_if_due([p]) == 0
        assert store.get(p.id).last_pnl_rupees == Decimal("480")

    def test_seed_is_zero_pnl(self, cache, resolver):
        p = make_position()
        snap = resolver.seed(p)
        assert snap.pnl == Decimal("0")
        assert snap.pnl_pct == Decimal("0")
        assert cache.fetch(p.id) == snap


class TestOrphanSweep:
    def test_sweep_removes_orphans_after_interval(self, cache, clock, resolver):
        snap = PnlSnapshot(pnl=Decimal("1"), observed_at=clock.now())
        cache.store(1, snap)
        cache.store(2, snap)

        assert resolver.sweep_orphans({1}) == [2]
        assert cache.position_ids() == [1]

        cache.store(3, snap)
        clock.advance(seconds=30)
        assert resolver.sweep_orphans({1}) == []
        assert cache.fetch(3) == snap

        clock.advance(seconds=31)
        assert resolver.sweep_orphans({1}) == [3]
        assert cache.fetch(3) is None
