"""BaseRule — shared plumbing for every exit rule."""

from __future__ import annotations

import re
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from exitguard.engine.rules.context import RuleContext
from exitguard.engine.rules.result import RuleResult
from exitguard.utils.money import to_decimal


class BaseRule:
    """Subclasses set ``PRIORITY`` (lower runs first) and implement ``evaluate``.

    ``config`` is the rule's own override map.  ``enabled`` and ``priority``
    come from it; thresholds fall through to the shared risk config.
    """

    PRIORITY: int = 100

    def __init__(self, config: Mapping[str, Any] | None = None) -> None:
        self.config: dict[str, Any] = dict(config or {})

    @property
    def priority(self) -> int:
        return int(self.config.get("priority", self.PRIORITY))

    @property
    def enabled(self) -> bool:
        return self.config.get("enabled", True) is not False

    @property
    def name(self) -> str:
        snake = re.sub(r"(?<!^)(?=[A-Z])", "_", type(self).__name__).lower()
        return snake.removesuffix("_rule")

    def evaluate(self, context: RuleContext) -> RuleResult:
        raise NotImplementedError

    def setting(self, context: RuleContext, key: str, default: Any = None) -> Any:
        value = self.config.get(key)
        if value is None:
            value = context.config_value(key, default)
        return value

    def setting_decimal(self, context: RuleContext, key: str, default: Decimal | int | str | None = None) -> Decimal | None:
        return to_decimal(self.setting(context, key), to_decimal(default))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} priority={self.priority} enabled={self.enabled}>"
