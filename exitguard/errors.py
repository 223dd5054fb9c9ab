"""Exception types raised by the exit core.

Only construction-time problems escape to callers; everything raised inside
the monitoring path is caught, logged and retried on the next cycle.
"""

from __future__ import annotations


class ExitGuardError(Exception):
    """Base class for all exitguard errors."""


class ConfigError(ExitGuardError):
    """The risk configuration document is malformed."""


class PositionNotFound(ExitGuardError):
    """No durable record exists for the requested position."""


class InvalidStateTransition(ExitGuardError, ValueError):
    """A lifecycle transition that the state machine does not allow."""

    def __init__(self, from_status: str, to_status: str, order_no: str | None = None) -> None:
        self.from_status = from_status
        self.to_status = to_status
        self.order_no = order_no
        who = f" for {order_no}" if order_no else ""
        super().__init__(f"Invalid transition {from_status} → {to_status}{who}")
