"""RuleResult — the three-valued verdict every exit rule returns."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

RuleAction = Literal["exit", "no_action", "skip"]


class RuleResult(BaseModel):
    """``exit`` (condition met), ``no_action`` (applies, not met) or ``skip`` (not applicable)."""

    model_config = ConfigDict(frozen=True)

    action: RuleAction
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    rule: str | None = None

    @classmethod
    def exit(cls, reason: str, metadata: dict[str, Any] | None = None) -> RuleResult:
        return cls(action="exit", reason=reason, metadata=metadata or {})

    @classmethod
    def no_action(cls, metadata: dict[str, Any] | None = None) -> RuleResult:
        return cls(action="no_action", metadata=metadata or {})

    @classmethod
    def skip(cls) -> RuleResult:
        return cls(action="skip")

    @property
    def is_exit(self) -> bool:
        return self.action == "exit"

    @property
    def is_no_action(self) -> bool:
        return self.action == "no_action"

    @property
    def is_skip(self) -> bool:
        return self.action == "skip"

    def from_rule(self, name: str) -> RuleResult:
        """Copy stamped with the producing rule's name."""
        return self.model_copy(update={"rule": name})
