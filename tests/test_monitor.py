"""Tests for the monitor loop, its watchdog and the wired service."""

from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from conftest import make_position
from exitguard.config import RiskConfig
from exitguard.engine.rules.factory import RuleFactory
from exitguard.service import ExitGuardService
from exitguard.services.exit_dispatcher import ExitDispatcher
from exitguard.services.pnl_resolver import PnlResolver
from exitguard.services.position_lifecycle import PositionLifecycle
from exitguard.services.price_book import PriceBook
from exitguard.services.risk_monitor import MonitorLoop, Watchdog

MONITOR_CONFIG = {
    "risk": {"stop_loss_pct": 20},
    "pipeline": {"mode": "first_exit", "rules": ["session_end", "stop_loss"]},
    "profit_floor": {"enabled": False},
}


class ExplodingDispatcher:
    """Raises for one order number, records the rest."""

    def __init__(self, bad_order_no: str):
        self.bad_order_no = bad_order_no
        self.dispatched = []

    def dispatch(self, position, reason, metadata=None):
        if position.order_no == self.bad_order_no:
            raise RuntimeError("broker timeout")
        self.dispatched.append(position.order_no)
        return True


@pytest.fixture
def book(cache, costs, clock) -> PriceBook:
    return PriceBook(cache, costs, clock)


def build_monitor(store, cache, book, clock, costs, dispatcher=None, config=None) -> MonitorLoop:
    cfg = RiskConfig(config or MONITOR_CONFIG)
    resolver = PnlResolver(store, cache, book, clock, costs)
    lifecycle = PositionLifecycle(store, resolver, book, clock, cfg, costs)
    dispatcher = dispatcher or ExitDispatcher(store, cache, book, clock, costs)
    return MonitorLoop(
        store,
        resolver,
        lifecycle,
        RuleFactory.create_enforcement_engine(cfg),
        dispatcher,
        clock,
        cfg,
        costs=costs,
        interval_seconds=60,
    )


def add_with_tick(store, book, order_no="ORD-1", ltp="79", **fields):
    p = store.add(make_position(order_no, position_id=None, **fields))
    book.subscribe(p)
    book.record_tick(p.instrument.security_id, p.instrument.exchange_segment, ltp)
    return p


# ══════════════════════════════════════════════════════════════════════
# Cycle
# ══════════════════════════════════════════════════════════════════════


class TestRunCycle:
    def test_stop_loss_position_exited(self, store, cache, book, clock, costs):
        p = add_with_tick(store, book)
        monitor = build_monitor(store, cache, book, clock, costs)

        summary = monitor.run_cycle()

        assert summary == {"skipped": False, "positions": 1, "exits": 1}
        loaded = store.get(p.id)
        assert loaded.status == "exited"
        assert loaded.exit_reason == "SL HIT -21.00%"
        assert loaded.last_pnl_rupees == Decimal("-1090")
        assert loaded.meta["exit_metadata"]["rule"] == "stop_loss"
        assert cache.fetch(p.id) is None

    def test_healthy_position_left_alone(self, store, cache, book, clock, costs):
        p = add_with_tick(store, book, ltp="105")
        monitor = build_monitor(store, cache, book, clock, costs)
        assert monitor.run_cycle()["exits"] == 0
        assert store.get(p.id).status == "active"
        assert cache.fetch(p.id).pnl == Decimal("230")

    def test_failure_isolated_per_position(self, store, cache, book, clock, costs):
        add_with_tick(store, book, "BAD")
        add_with_tick(store, book, "GOOD")
        dispatcher = ExplodingDispatcher("BAD")
        monitor = build_monitor(store, cache, book, clock, costs, dispatcher=dispatcher)

        summary = monitor.run_cycle()

        assert dispatcher.dispatched == ["GOOD"]
        assert summary["exits"] == 1

    def test_pending_positions_not_evaluated(self, store, cache, book, clock, costs):
        add_with_tick(store, book, "PENDING", status="pending")
        dispatcher = ExplodingDispatcher("none")
        monitor = build_monitor(store, cache, book, clock, costs, dispatcher=dispatcher)
        assert monitor.run_cycle()["positions"] == 0
        assert dispatcher.dispatched == []


class TestMarketClosedIdle:
    def test_idles_until_woken(self, store, cache, book, clock, costs):
        clock.closed = True
        monitor = build_monitor(store, cache, book, clock, costs)

        assert monitor.run_cycle() == {"skipped": True, "reason": "market_closed"}
        assert monitor.idle

        p = add_with_tick(store, book)
        assert monitor.run_cycle()["skipped"]
        assert store.get(p.id).status == "active"

        monitor.wake()
        assert not monitor.idle
        assert monitor.run_cycle()["exits"] == 1
        assert store.get(p.id).status == "exited"

    def test_market_open_rearms(self, store, cache, book, clock, costs):
        clock.closed = True
        monitor = build_monitor(store, cache, book, clock, costs)
        monitor.run_cycle()
        assert monitor.idle

        clock.closed = False
        assert monitor.run_cycle()["skipped"] is False
        assert not monitor.idle


# ══════════════════════════════════════════════════════════════════════
# Thread and watchdog
# ══════════════════════════════════════════════════════════════════════


class TestWatchdog:
    def test_restarts_dead_monitor(self, store, cache, book, clock, costs):
        monitor = build_monitor(store, cache, book, clock, costs)
        watchdog = Watchdog(monitor, interval_seconds=60)
        assert monitor.start()
        assert not monitor.start()
        try:
            # Thread exits while the loop is still expected to run
            monitor._stop_event.set()
            monitor._thread.join(timeout=5)
            assert monitor.should_run and not monitor.alive

            assert watchdog.check()
            assert watchdog.restarts == 1
            assert monitor.alive
            assert not watchdog.check()
        finally:
            monitor.stop(timeout=5)
        assert not monitor.alive
        assert monitor.cycles >= 1

    def test_stop_timeout_keeps_running_thread(self, store, cache, book, clock, costs, monkeypatch):
        monitor = build_monitor(store, cache, book, clock, costs)
        entered, release = threading.Event(), threading.Event()

        def slow_cycle():
            entered.set()
            release.wait(timeout=5)
            return {"skipped": False, "positions": 0, "exits": 0}

        monkeypatch.setattr(monitor, "run_cycle", slow_cycle)
        assert monitor.start()
        assert entered.wait(timeout=5)
        try:
            monitor.stop(timeout=0.05)
            assert monitor.alive
            assert not monitor.start()
        finally:
            release.set()
        monitor._thread.join(timeout=5)
        assert not monitor.alive
        assert monitor.start()
        monitor.stop(timeout=5)
        assert not monitor.alive

    def test_stopped_monitor_not_restarted(self, store, cache, book, clock, costs):
        monitor = build_monitor(store, cache, book, clock, costs)
        assert not Watchdog(monitor, interval_seconds=60).check()

    def test_scheduler_start_stop(self, store, cache, book, clock, costs):
        watchdog = Watchdog(build_monitor(store, cache, book, clock, costs), interval_seconds=60)
        watchdog.start()
        try:
            assert watchdog.is_running
            assert watchdog._scheduler.get_job(Watchdog.JOB_ID) is not None
        finally:
            watchdog.stop()
        assert not watchdog.is_running


# ══════════════════════════════════════════════════════════════════════
# Service wiring
# ══════════════════════════════════════════════════════════════════════


class TestExitGuardService:
    @pytest.fixture
    def service(self, db, clock):
        config = RiskConfig({
            "hard_rupee_sl": {"enabled": True, "max_loss_rupees": 1000},
            "post_profit_zone": {"enabled": False},
        })
        svc = ExitGuardService(db=db, config=config, clock=clock, monitor_interval=60, watchdog_interval=60)
        yield svc
        svc.stop(timeout=5)

    def test_fill_to_hard_stop_exit(self, service, clock):
        p = service.open_position(make_position(position_id=None, status="pending"))
        service.confirm_fill(p, Decimal("100"))
        assert service.store.get(p.id).status == "active"
        assert service.cache.fetch(p.id).pnl == Decimal("0")

        service.prices.record_tick(p.instrument.security_id, p.instrument.exchange_segment, "79")
        clock.advance(seconds=30)
        assert service.monitor.run_cycle()["exits"] == 1

        loaded = service.store.get(p.id)
        assert loaded.status == "exited"
        assert loaded.exit_reason.startswith("HARD_RUPEE_SL")
        assert [e["event_type"] for e in service.events.events_for(p.order_no)] == [
            "position_opened", "position_activated", "exit_triggered", "exit_executed",
        ]

    def test_tick_after_fill_seen_by_next_cycle(self, service, clock):
        p = service.open_position(make_position(position_id=None, status="pending"))
        service.confirm_fill(p, Decimal("100"))
        service.prices.record_tick(p.instrument.security_id, p.instrument.exchange_segment, "79")
        clock.advance(seconds=5)

        assert service.monitor.run_cycle()["exits"] == 1
        assert service.store.get(p.id).status == "exited"

    def test_manual_exit(self, service):
        p = service.open_position(make_position(position_id=None, status="pending"))
        service.confirm_fill(p, Decimal("100"))
        service.prices.record_tick(p.instrument.security_id, p.instrument.exchange_segment, "110")
        assert service.exit_now(p)
        assert service.store.get(p.id).last_pnl_rupees == Decimal("460")
        assert not service.exit_now(p)

    def test_start_and_stop(self, service):
        service.start()
        assert service.monitor.alive
        assert service.watchdog.is_running
        service.stop(timeout=5)
        assert not service.monitor.alive
        assert not service.watchdog.is_running
