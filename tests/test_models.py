"""Tests for the position entity, its state machines and the PnL models."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError

from conftest import SESSION_NOW, make_position, nifty_call
from exitguard.errors import InvalidStateTransition
from exitguard.models.market import UnderlyingState
from exitguard.models.pnl import ExecutionCosts, PnlSnapshot
from exitguard.models.position import (
    Derivative,
    Instrument,
    Position,
    classify_profit_zone,
    is_terminal_status,
    is_valid_transition,
)


# ══════════════════════════════════════════════════════════════════════
# 1.  Status state machine
# ══════════════════════════════════════════════════════════════════════


class TestStatusMachine:
    def test_allowed_transitions(self):
        assert is_valid_transition("pending", "active")
        assert is_valid_transition("pending", "cancelled")
        assert is_valid_transition("active", "exited")

    def test_forbidden_transitions(self):
        assert not is_valid_transition("active", "pending")
        assert not is_valid_transition("exited", "active")
        assert not is_valid_transition("cancelled", "active")
        assert not is_valid_transition("pending", "exited")

    def test_terminal_statuses(self):
        assert is_terminal_status("exited")
        assert is_terminal_status("cancelled")
        assert not is_terminal_status("active")

    def test_activate_sets_fill(self):
        p = make_position(status="pending", entry="100")
        p.activate(Decimal("101.5"), at=SESSION_NOW)
        assert p.status == "active"
        assert p.avg_price == Decimal("101.5")
        assert p.entry_price == Decimal("100")
        assert p.last_pnl_rupees == Decimal("0")
        assert p.activated_at == SESSION_NOW

    def test_activate_requires_quantity(self):
        p = make_position(status="pending", quantity=0)
        with pytest.raises(ValueError):
            p.activate(Decimal("100"))
        assert p.status == "pending"

    def test_activate_rejects_bad_price(self):
        p = make_position(status="pending")
        with pytest.raises(ValueError):
            p.activate(Decimal("0"))

    def test_exited_cannot_reactivate(self):
        p = make_position()
        p.mark_exited(Decimal("110"), Decimal("480"), Decimal("10"))
        with pytest.raises(InvalidStateTransition) as info:
            p.transition_to("active")
        assert info.value.from_status == "exited"
        assert info.value.order_no == "ORD-1"

    def test_cancel_records_reason(self):
        p = make_position(status="pending")
        p.cancel("order rejected")
        assert p.status == "cancelled"
        assert p.meta["cancel_reason"] == "order rejected"

    def test_negative_quantity_rejected(self):
        with pytest.raises(ValidationError):
            make_position(quantity=-1)


# ══════════════════════════════════════════════════════════════════════
# 2.  PnL application and trade state
# ══════════════════════════════════════════════════════════════════════


class TestPnlAndTradeState:
    def test_high_water_mark_never_decreases(self):
        p = make_position()
        marks = []
        for pnl in ("100", "300", "200", "-50", "250"):
            p.apply_pnl(Decimal(pnl), None)
            marks.append(p.high_water_mark_pnl)
        assert marks == [Decimal(v) for v in ("100", "300", "300", "300", "300")]

    def test_apply_pnl_ignored_when_not_active(self):
        p = make_position()
        p.mark_exited(Decimal("105"), Decimal("210"), Decimal("5"))
        assert p.apply_pnl(Decimal("999"), Decimal("20")) is False
        assert p.last_pnl_rupees == Decimal("210")

    def test_trade_state_moves_forward_only(self):
        p = make_position()
        assert p.advance_trade_state(Decimal("1.2"), at=SESSION_NOW)
        assert p.trade_state == "validated"
        assert p.advance_trade_state(Decimal("2.5"))
        assert p.trade_state == "expansion"
        assert not p.advance_trade_state(Decimal("0.1"))
        assert p.trade_state == "expansion"
        assert p.trade_state_reached("validated")

    def test_trade_state_can_jump_two_levels(self):
        p = make_position()
        p.advance_trade_state(Decimal("3"))
        assert p.trade_state == "expansion"
        assert p.validated_at is not None


# ══════════════════════════════════════════════════════════════════════
# 3.  Watchable instruments
# ══════════════════════════════════════════════════════════════════════


class TestInstruments:
    def test_discriminator_resolves_derivative(self):
        p = Position.model_validate({
            "order_no": "X",
            "quantity": 10,
            "instrument": {
                "kind": "derivative",
                "security_id": "1",
                "exchange_segment": "NSE_FNO",
                "symbol": "BANKNIFTY 52000 PE",
                "underlying_symbol": "banknifty",
                "option_type": "PE",
            },
        })
        assert isinstance(p.instrument, Derivative)
        assert p.index_key == "BANKNIFTY"
        assert p.resolved_direction() == "bearish"

    def test_discriminator_resolves_instrument(self):
        p = Position.model_validate({
            "order_no": "Y",
            "quantity": 10,
            "instrument": {"kind": "instrument", "security_id": "13", "exchange_segment": "IDX_I", "symbol": "nifty"},
        })
        assert isinstance(p.instrument, Instrument)
        assert p.reference_instrument() is p.instrument
        assert p.resolved_direction() is None

    def test_reference_instrument_is_underlying(self):
        p = make_position()
        ref = p.reference_instrument()
        assert isinstance(ref, Instrument)
        assert ref.security_id == "13"
        assert ref.exchange_segment == "IDX_I"

    def test_reference_instrument_without_ids(self):
        inst = nifty_call(underlying_security_id=None)
        p = make_position(instrument=inst)
        assert p.reference_instrument() is inst

    def test_direction_from_meta_wins(self):
        p = make_position(meta={"direction": "LONG_PE"})
        assert p.resolved_direction() == "bearish"


# ══════════════════════════════════════════════════════════════════════
# 4.  PnL models
# ══════════════════════════════════════════════════════════════════════


class TestPnlModels:
    def test_stop_loss_scenario_numbers(self):
        p = make_position(entry="100", quantity=50)
        snap = ExecutionCosts().snapshot_for(p, Decimal("79"), SESSION_NOW)
        assert snap.pnl_pct == Decimal("-21")
        assert snap.pnl == Decimal("-1070")

    def test_exited_pays_both_legs(self):
        costs = ExecutionCosts()
        assert costs.net_pnl(Decimal("1000")) == Decimal("980")
        assert costs.net_pnl(Decimal("1000"), exited=True) == Decimal("960")

    def test_snapshot_keeps_prior_hwm(self):
        p = make_position()
        snap = ExecutionCosts().snapshot_for(p, Decimal("101"), SESSION_NOW, prior_hwm=Decimal("700"))
        assert snap.hwm == Decimal("700")

    def test_snapshot_needs_entry(self):
        p = make_position(entry="100")
        p.avg_price = None
        p.entry_price = None
        assert ExecutionCosts().snapshot_for(p, Decimal("101"), SESSION_NOW) is None

    def test_freshness(self):
        snap = PnlSnapshot(pnl=Decimal("1"), observed_at=SESSION_NOW)
        assert snap.is_fresh(SESSION_NOW + timedelta(seconds=5), 10)
        assert not snap.is_fresh(SESSION_NOW + timedelta(seconds=10), 10)

    def test_profit_zone_bands(self):
        secured, runner = Decimal("2000"), Decimal("4000")
        assert classify_profit_zone(None, secured, runner) == "entry"
        assert classify_profit_zone(Decimal("1999"), secured, runner) == "entry"
        assert classify_profit_zone(Decimal("2000"), secured, runner) == "secured_profit_zone"
        assert classify_profit_zone(Decimal("4500"), secured, runner) == "runner_zone"

    def test_underlying_state_helpers(self):
        state = UnderlyingState(bos_state="broken", bos_direction="bearish",
                                atr_trend="falling", atr_ratio=Decimal("0.5"))
        assert state.structure_broken_against("bullish")
        assert not state.structure_broken_against("bearish")
        assert state.atr_collapsing
