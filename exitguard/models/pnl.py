"""PnL models — the cached snapshot and execution-cost arithmetic."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from exitguard.models.position import Position
from exitguard.utils.money import HUNDRED, ZERO


class PnlSnapshot(BaseModel):
    """Point-in-time PnL for one active position.

    ``pnl`` is net of execution costs; ``pnl_pct`` is price based
    (ltp against entry, in percent).
    """

    model_config = ConfigDict(frozen=True)

    pnl: Decimal
    pnl_pct: Decimal | None = None
    hwm: Decimal = ZERO
    hwm_pct: Decimal | None = None
    ltp: Decimal | None = None
    observed_at: datetime

    def age_seconds(self, now: datetime) -> float:
        return (now - self.observed_at).total_seconds()

    def is_fresh(self, now: datetime, max_age_seconds: float) -> bool:
        return self.age_seconds(now) < max_age_seconds


class ExecutionCosts(BaseModel):
    """Flat per-order brokerage.

    Active positions have paid the entry order; exited positions have paid
    both legs.  Rupee thresholds add one ``exit_fee`` so the *post-exit* net
    lands on the configured level.
    """

    model_config = ConfigDict(frozen=True)

    fee_per_order: Decimal = Decimal("20")

    @property
    def exit_fee(self) -> Decimal:
        return self.fee_per_order

    def net_pnl(self, gross: Decimal, exited: bool = False) -> Decimal:
        orders = 2 if exited else 1
        return gross - self.fee_per_order * orders

    @staticmethod
    def gross_pnl(entry: Decimal, ltp: Decimal, quantity: int) -> Decimal:
        return (ltp - entry) * quantity

    @staticmethod
    def pnl_pct(entry: Decimal, ltp: Decimal) -> Decimal | None:
        if not entry:
            return None
        return (ltp - entry) / entry * HUNDRED

    def snapshot_for(
        self,
        position: Position,
        ltp: Decimal,
        observed_at: datetime,
        exited: bool = False,
        prior_hwm: Decimal | None = None,
    ) -> PnlSnapshot | None:
        """Recompute PnL from a price; ``None`` when entry or quantity is unknown."""
        entry = position.effective_entry
        if entry is None or entry <= ZERO or position.quantity <= 0:
            return None
        pnl = self.net_pnl(self.gross_pnl(entry, ltp, position.quantity), exited=exited)
        hwm = max(position.high_water_mark_pnl, pnl, prior_hwm if prior_hwm is not None else pnl)
        basis = entry * position.quantity
        return PnlSnapshot(
            pnl=pnl,
            pnl_pct=self.pnl_pct(entry, ltp),
            hwm=hwm,
            hwm_pct=hwm / basis * HUNDRED,
            ltp=ltp,
            observed_at=observed_at,
        )
