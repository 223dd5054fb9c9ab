"""Tests for the DuckDB position store and exit event log."""

from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import SESSION_NOW, make_position
from exitguard.errors import PositionNotFound
from exitguard.models.position import Derivative
from exitguard.services.event_logger import EventLog


def add_active(store, order_no="ORD-1", **fields):
    return store.add(make_position(order_no, position_id=None, **fields))


class TestPositionStore:
    def test_add_assigns_id_and_round_trips(self, store):
        p = add_active(store, meta={"direction": "bullish", "premium_stop_price": "90"})
        assert p.id is not None
        loaded = store.get(p.id)
        assert loaded.order_no == "ORD-1"
        assert isinstance(loaded.instrument, Derivative)
        assert loaded.entry_price == Decimal("100")
        assert loaded.meta["premium_stop_price"] == "90"
        assert loaded.activated_at == p.activated_at
        assert store.get_by_order_no("ORD-1").id == p.id

    def test_get_missing(self, store):
        assert store.get(999) is None

    def test_active_iteration_in_batches(self, store):
        for i in range(5):
            add_active(store, f"ORD-{i}")
        add_active(store, "ORD-P", status="pending")
        ids = [p.id for p in store.iter_active(batch_size=2)]
        assert len(ids) == 5
        assert ids == sorted(ids)
        assert store.count_active() == 5
        assert store.active_ids() == set(ids)

    def test_update_pnl_keeps_high_water_mark(self, store):
        p = add_active(store)
        p.apply_pnl(Decimal("500"), Decimal("10"))
        store.update_pnl(p)
        p.last_pnl_rupees = Decimal("200")
        p.high_water_mark_pnl = Decimal("200")
        store.update_pnl(p)
        loaded = store.get(p.id)
        assert loaded.last_pnl_rupees == Decimal("200")
        assert loaded.high_water_mark_pnl == Decimal("500")

    def test_profit_floor_arms_once(self, store):
        p = add_active(store)
        assert store.arm_profit_floor(p.id, Decimal("1000"), SESSION_NOW)
        assert not store.arm_profit_floor(p.id, Decimal("500"), SESSION_NOW)
        assert store.get(p.id).profit_floor_rupees == Decimal("1000")

    def test_profit_floor_only_raises(self, store):
        p = add_active(store)
        store.arm_profit_floor(p.id, Decimal("1000"), SESSION_NOW)
        assert store.raise_profit_floor(p.id, Decimal("1500"))
        assert not store.raise_profit_floor(p.id, Decimal("1200"))
        assert store.get(p.id).profit_floor_rupees == Decimal("1500")

    def test_profit_zone_entered_once(self, store):
        p = add_active(store)
        p.meta["profit_zone_state"] = "secured_profit_zone"
        assert store.enter_profit_zone(p, "secured_profit_zone")
        assert not store.enter_profit_zone(p, "secured_profit_zone")
        assert store.enter_profit_zone(p, "runner_zone")

    def test_finalize_exit_only_once(self, store):
        p = add_active(store)
        p.mark_exited(Decimal("110"), Decimal("460"), Decimal("10"), at=SESSION_NOW)
        assert store.finalize_exit(p)
        assert not store.finalize_exit(p)
        assert store.count_active() == 0

    def test_final_snapshot(self, store):
        p = add_active(store)
        assert store.final_snapshot(p.id) is None
        p.mark_exited(Decimal("110"), Decimal("460"), Decimal("10"), at=SESSION_NOW)
        store.finalize_exit(p)
        snap = store.final_snapshot(p.id)
        assert snap.pnl == Decimal("460")
        assert snap.ltp == Decimal("110")

    def test_final_snapshot_unknown_position(self, store):
        with pytest.raises(PositionNotFound):
            store.final_snapshot(12345)

    def test_save_requires_id(self, store):
        with pytest.raises(PositionNotFound):
            store.save(make_position(position_id=None))

    def test_pnl_update_refused_after_exit(self, store):
        p = add_active(store)
        p.mark_exited(Decimal("110"), Decimal("460"), Decimal("10"), at=SESSION_NOW)
        store.finalize_exit(p)
        p.last_pnl_rupees = Decimal("9999")
        assert not store.update_pnl(p)
        assert store.get(p.id).last_pnl_rupees == Decimal("460")


class TestEventLog:
    def test_record_and_read(self, db):
        events = EventLog(db)
        events.record("exit_triggered", "SL HIT -21.00%", order_no="ORD-1", metadata={"pnl": Decimal("-1070")})
        events.record("exit_executed", "SL HIT -21.00%", order_no="ORD-1")
        rows = events.events_for("ORD-1")
        assert [r["event_type"] for r in rows] == ["exit_triggered", "exit_executed"]
        assert '"-1070"' in rows[0]["metadata"]

    def test_record_failure_is_swallowed(self, db):
        events = EventLog(db)
        db.close()
        events.record("exit_failed", "db gone", order_no="ORD-1")
