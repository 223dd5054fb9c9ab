"""Default notification sink — writes exit notices to the application log."""

from __future__ import annotations

from decimal import Decimal

from exitguard.models.position import Position
from exitguard.utils.logger import logger
from exitguard.utils.money import fmt_rupees


class LogNotifier:
    """Fire-and-forget; never raises into the dispatcher."""

    def notify_exit(
        self,
        position: Position,
        reason: str,
        exit_price: Decimal | None,
        pnl: Decimal | None,
    ) -> None:
        try:
            logger.info(
                "[Notify] %s %s exited @ %s | PnL %s | %s%s",
                position.instrument.symbol,
                position.order_no,
                fmt_rupees(exit_price),
                fmt_rupees(pnl),
                reason,
                " (paper)" if position.paper else "",
            )
        except Exception as exc:
            logger.warning("[Notify] Could not format exit notice for %s: %s", position.order_no, exc)
