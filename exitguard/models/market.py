"""Market-side models — gateway replies and underlying index state."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict

Timeframe = Literal["1", "5", "15"]


class FlattenResult(BaseModel):
    """Reply from the order gateway (or the paper fallback) for one exit."""

    success: bool
    exit_price: Decimal | None = None
    error: str | None = None


class UnderlyingState(BaseModel):
    """Structural view of a derivative's underlying index."""

    model_config = ConfigDict(frozen=True)

    trend_score: Decimal | None = None
    bos_state: Literal["broken", "intact", "unknown"] = "unknown"
    bos_direction: Literal["bullish", "bearish"] | None = None
    atr_trend: Literal["rising", "falling", "flat"] | None = None
    atr_ratio: Decimal | None = None
    mtf_confirm: bool | None = None
    ltp: Decimal | None = None
    computed_at: datetime | None = None

    @property
    def atr_collapsing(self) -> bool:
        return (
            self.atr_trend == "falling"
            and self.atr_ratio is not None
            and self.atr_ratio < Decimal("0.65")
        )

    def structure_broken_against(self, direction: str | None) -> bool:
        """A break of structure opposite to the position direction."""
        if self.bos_state != "broken" or direction is None or self.bos_direction is None:
            return False
        return self.bos_direction != direction
