"""RuleEngine — evaluates exit rules in priority order.

Two evaluation modes:

``first_applicable`` (default)
    The first rule returning anything other than ``skip`` decides the cycle,
    ``no_action`` included.  Lower-priority rules are consulted only while
    every rule above them is inapplicable.

``first_exit``
    ``no_action`` does not stop the scan; the first ``exit`` wins.  This is
    how the production enforcement pipeline runs its independent layers.

A rule that raises is logged and treated as ``skip``.  If nothing decides,
the answer is ``no_action``.
"""

from __future__ import annotations

from typing import Literal

from exitguard.engine.rules.base import BaseRule
from exitguard.engine.rules.context import RuleContext
from exitguard.engine.rules.result import RuleResult
from exitguard.utils.logger import logger

EvaluationMode = Literal["first_applicable", "first_exit"]


class RuleEngine:
    """Holds rules sorted by ascending priority (stable for equal priorities)."""

    def __init__(
        self,
        rules: list[BaseRule] | None = None,
        mode: EvaluationMode = "first_applicable",
    ) -> None:
        if mode not in ("first_applicable", "first_exit"):
            raise ValueError(f"Unknown evaluation mode: {mode!r}")
        self.mode: EvaluationMode = mode
        self._rules: list[BaseRule] = sorted(rules or [], key=lambda r: r.priority)

    @property
    def rules(self) -> list[BaseRule]:
        return list(self._rules)

    def add_rule(self, rule: BaseRule) -> RuleEngine:
        self._rules.append(rule)
        self._rules.sort(key=lambda r: r.priority)
        return self

    def remove_rule(self, rule_class: type[BaseRule]) -> RuleEngine:
        self._rules = [r for r in self._rules if not isinstance(r, rule_class)]
        return self

    def find_rule(self, rule_class: type[BaseRule]) -> BaseRule | None:
        return next((r for r in self._rules if isinstance(r, rule_class)), None)

    @property
    def enabled_rules(self) -> list[BaseRule]:
        return [r for r in self._rules if r.enabled]

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()

        decided: RuleResult | None = None
        for rule in self._rules:
            if not rule.enabled:
                continue
            try:
                result = rule.evaluate(context)
            except Exception as exc:
                logger.error(
                    "[RuleEngine] Error evaluating rule %s for %s: %s - %s",
                    rule.name, context.position.order_no, type(exc).__name__, exc,
                    exc_info=True,
                )
                continue

            if result.is_skip:
                continue
            result = result.from_rule(rule.name)
            if result.is_exit or self.mode == "first_applicable":
                return result
            if decided is None:
                decided = result

        return decided or RuleResult.no_action()
