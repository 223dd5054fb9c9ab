"""Tests for RiskConfig lookup and RuleContext config access."""

from __future__ import annotations

import logging
from datetime import datetime, time
from decimal import Decimal

import pytest

from conftest import make_position, snapshot_at
from exitguard.config import RiskConfig, settings
from exitguard.engine.rules.context import RuleContext
from exitguard.errors import ConfigError
from exitguard.utils.logger import logger, position_context
from exitguard.utils.market_hours import IST, MarketClock, is_market_open, next_market_open, parse_hhmm


class TestRiskConfig:
    def test_legacy_position_sizing_merged(self):
        cfg = RiskConfig({"position_sizing": {"sl_pct": 15, "tp_pct": 25}, "risk": {"tp_pct": 40}})
        assert cfg.risk["stop_loss_pct"] == 15
        assert cfg.risk["take_profit_pct"] == 40
        assert cfg.risk["tp_pct"] == 40

    def test_canonical_key_wins_over_alias(self):
        cfg = RiskConfig({"risk": {"stop_loss_pct": 10, "sl_pct": 30}})
        assert cfg.risk["sl_pct"] == 10

    def test_section_lookup_order(self):
        cfg = RiskConfig({"risk": {"trailing": {"activation_pct": 5}}, "trailing": {"activation_pct": 50}})
        assert cfg.section("trailing")["activation_pct"] == 5
        assert cfg.section("missing") == {}

    def test_feature_flags(self):
        cfg = RiskConfig({"feature_flags": {"a": True, "b": "yes"}})
        assert cfg.feature("a")
        assert not cfg.feature("b")
        assert not cfg.feature("c")

    def test_dig(self):
        cfg = RiskConfig({"pipeline": {"mode": "first_exit"}})
        assert cfg.dig("pipeline", "mode") == "first_exit"
        assert cfg.dig("pipeline", "rules", default=[]) == []

    def test_non_mapping_rejected(self):
        with pytest.raises(ConfigError):
            RiskConfig(["not", "a", "mapping"])

    def test_bad_section_rejected(self):
        with pytest.raises(ConfigError):
            RiskConfig({"risk": 5})

    def test_unreadable_file(self, tmp_path):
        bad = tmp_path / "risk.json"
        bad.write_text("{not json")
        with pytest.raises(ConfigError):
            settings.load_risk_config(bad)

    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = settings.load_risk_config(tmp_path / "absent.json")
        assert cfg.risk == {}


class TestContextConfig:
    def _ctx(self, config):
        p = make_position()
        return RuleContext(p, snapshot_at(p, "112"), config)

    def test_plain_mapping_is_flat_risk(self):
        ctx = self._ctx({"sl_pct": 20})
        assert ctx.config_decimal("sl_pct") == Decimal("20")
        assert ctx.config_decimal("stop_loss_pct") == Decimal("20")

    def test_defaults_and_times(self):
        ctx = self._ctx({"session_end_hhmm": "bad"})
        assert ctx.config_value("nope", 7) == 7
        assert ctx.config_time("session_end_hhmm", "15:15") == time(15, 15)

    def test_nested_trailing_activation_wins(self):
        cfg = RiskConfig({"risk": {"trailing_activation_pct": 30}, "trailing": {"activation_pct": 10}})
        ctx = self._ctx(cfg)
        assert ctx.trailing_activation_pct == Decimal("10")
        assert ctx.trailing_activated  # 12% ≥ 10%

    def test_flat_trailing_activation(self):
        ctx = self._ctx({"trailing_activation_pct": 30})
        assert not ctx.trailing_activated

    def test_zero_activation_never_activates(self):
        ctx = self._ctx({"trailing_activation_pct": 0})
        assert not ctx.trailing_activated


# ══════════════════════════════════════════════════════════════════════
# Market hours
# ══════════════════════════════════════════════════════════════════════


class TestMarketHours:
    def test_session_window(self):
        assert is_market_open(datetime(2026, 10, 14, 9, 15, tzinfo=IST))
        assert not is_market_open(datetime(2026, 10, 14, 9, 14, tzinfo=IST))
        assert not is_market_open(datetime(2026, 10, 14, 15, 30, tzinfo=IST))
        assert not is_market_open(datetime(2026, 10, 17, 11, 0, tzinfo=IST))  # Saturday

    def test_next_open_skips_weekend(self):
        friday_evening = datetime(2026, 10, 16, 16, 0, tzinfo=IST)
        assert next_market_open(friday_evening) == datetime(2026, 10, 19, 9, 15, tzinfo=IST)
        early = datetime(2026, 10, 14, 8, 0, tzinfo=IST)
        assert next_market_open(early) == datetime(2026, 10, 14, 9, 15, tzinfo=IST)

    def test_parse_hhmm(self):
        assert parse_hhmm("15:15") == time(15, 15)
        assert parse_hhmm("9") == time(9, 0)
        assert parse_hhmm("  ") is None
        with pytest.raises(ValueError):
            parse_hhmm("late")

    def test_clock_status_shape(self):
        status = MarketClock().session_status()
        assert set(status) == {"is_open", "current_time_ist", "next_open", "day_of_week"}
        assert (status["next_open"] is None) == status["is_open"]


class TestLogging:
    def test_position_context_tags_records(self, caplog):
        with caplog.at_level(logging.INFO, logger="exitguard"):
            with position_context("ORD-7"):
                logger.info("[Monitor] inside")
            logger.info("[Monitor] outside")
        inside, outside = caplog.records[-2:]
        assert inside.order_no == "ORD-7"
        assert outside.order_no == "-"
