"""RuleFactory — builds rule engines from the risk configuration.

Per-rule overrides live under ``rules.<name>`` (``enabled``, ``priority`` and
rule-specific keys).  The production pipeline is described by ``pipeline``::

    "pipeline": {"mode": "first_exit", "rules": ["premium_r_stop", "hard_rupee_stop", ...]}
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from exitguard.config import RiskConfig
from exitguard.engine.rules.base import BaseRule
from exitguard.engine.rules.engine import EvaluationMode, RuleEngine
from exitguard.engine.rules.price_rules import (
    BracketLimitRule,
    HardRupeeStopRule,
    HardRupeeTargetRule,
    PremiumRStopRule,
    StopLossRule,
    TakeProfitRule,
)
from exitguard.engine.rules.profit_zone import PostProfitZoneRule
from exitguard.engine.rules.structure_rules import (
    PremiumMomentumFailureRule,
    StructureInvalidationRule,
    UnderlyingExitRule,
)
from exitguard.engine.rules.time_rules import SessionEndRule, TimeBasedExitRule, TimeStopRule
from exitguard.engine.rules.trailing_rules import (
    PeakDrawdownRule,
    ProfitFloorRule,
    SecureProfitRule,
    TrailingStopRule,
)
from exitguard.errors import ConfigError
from exitguard.utils.logger import logger

# Catalog order doubles as the tie-break for equal priorities.
CATALOG: tuple[type[BaseRule], ...] = (
    SessionEndRule,
    PremiumRStopRule,
    HardRupeeStopRule,
    StopLossRule,
    StructureInvalidationRule,
    ProfitFloorRule,
    BracketLimitRule,
    PostProfitZoneRule,
    HardRupeeTargetRule,
    TakeProfitRule,
    PremiumMomentumFailureRule,
    SecureProfitRule,
    TimeBasedExitRule,
    TimeStopRule,
    PeakDrawdownRule,
    TrailingStopRule,
    UnderlyingExitRule,
)

RULES_BY_NAME: dict[str, type[BaseRule]] = {cls().name: cls for cls in CATALOG}

# Layers run by the monitor loop, in order.
DEFAULT_ENFORCEMENT_LAYERS: tuple[str, ...] = (
    "session_end",
    "premium_r_stop",
    "hard_rupee_stop",
    "structure_invalidation",
    "profit_floor",
    "post_profit_zone",
    "hard_rupee_target",
    "premium_momentum_failure",
    "time_based_exit",
    "time_stop",
)


def _as_config(config: RiskConfig | Mapping[str, Any] | None) -> RiskConfig:
    if isinstance(config, RiskConfig):
        return config
    return RiskConfig(config or {})


class RuleFactory:
    """Assembles engines; holds no state of its own."""

    @staticmethod
    def build_rule(name: str, config: RiskConfig | Mapping[str, Any] | None = None) -> BaseRule:
        cfg = _as_config(config)
        try:
            rule_cls = RULES_BY_NAME[name]
        except KeyError:
            raise ConfigError(f"Unknown exit rule {name!r}; known: {sorted(RULES_BY_NAME)}") from None
        overrides = cfg.section("rules").get(name) or {}
        return rule_cls(overrides)

    @classmethod
    def default_rules(cls, config: RiskConfig | Mapping[str, Any] | None = None) -> list[BaseRule]:
        cfg = _as_config(config)
        return [cls.build_rule(rule_cls().name, cfg) for rule_cls in CATALOG]

    @classmethod
    def create_engine(
        cls,
        config: RiskConfig | Mapping[str, Any] | None = None,
        mode: EvaluationMode = "first_applicable",
    ) -> RuleEngine:
        """The full catalog, evaluated first-applicable-wins unless told otherwise."""
        engine = RuleEngine(cls.default_rules(config), mode=mode)
        logger.info(
            "[RuleFactory] Catalog engine: %d rules (%d enabled), mode=%s",
            len(engine.rules), len(engine.enabled_rules), mode,
        )
        return engine

    @classmethod
    def create_enforcement_engine(cls, config: RiskConfig | Mapping[str, Any] | None = None) -> RuleEngine:
        """The monitor loop's layered pipeline, driven by the ``pipeline`` section."""
        cfg = _as_config(config)
        pipeline = cfg.section("pipeline")
        names = pipeline.get("rules") or list(DEFAULT_ENFORCEMENT_LAYERS)
        mode = pipeline.get("mode", "first_exit")
        if mode not in ("first_applicable", "first_exit"):
            raise ConfigError(f"Unknown pipeline mode {mode!r}")
        engine = RuleEngine([cls.build_rule(name, cfg) for name in names], mode=mode)
        logger.info(
            "[RuleFactory] Enforcement pipeline: %s (mode=%s)",
            ", ".join(r.name for r in engine.rules), mode,
        )
        return engine

    @classmethod
    def create_custom_engine(
        cls,
        rules: list[BaseRule],
        include_defaults: bool = True,
        config: RiskConfig | Mapping[str, Any] | None = None,
        mode: EvaluationMode = "first_applicable",
    ) -> RuleEngine:
        base = cls.default_rules(config) if include_defaults else []
        return RuleEngine([*base, *rules], mode=mode)
