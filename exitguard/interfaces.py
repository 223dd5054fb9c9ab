"""Collaborator contracts the exit core is written against.

Feed transport, broker connectivity, candle collection and notification
delivery live outside this package; anything with these methods plugs in.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    import pandas as pd

    from exitguard.models.market import FlattenResult
    from exitguard.models.pnl import PnlSnapshot
    from exitguard.models.position import Instrument, Derivative, Position


class Clock(Protocol):
    def now(self) -> datetime: ...

    def market_closed(self) -> bool: ...


class PriceSource(Protocol):
    def current_price(self, position: Position) -> Decimal | None: ...

    def pnl_snapshot(self, position_id: int) -> PnlSnapshot | None: ...

    def subscribe(self, position: Position) -> None: ...

    def unsubscribe(self, position: Position) -> None: ...


class OrderGateway(Protocol):
    def flatten(self, position: Position) -> FlattenResult: ...


class StructureSource(Protocol):
    def candles(
        self, instrument: Instrument | Derivative, timeframe: str, n: int | None = None
    ) -> pd.DataFrame | None: ...

    def recent_high(self, instrument: Instrument | Derivative, timeframe: str, n: int) -> Decimal | None: ...

    def recent_low(self, instrument: Instrument | Derivative, timeframe: str, n: int) -> Decimal | None: ...

    def last_close(self, instrument: Instrument | Derivative, timeframe: str) -> Decimal | None: ...

    def change_of_character(
        self, instrument: Instrument | Derivative, timeframe: str, lookback: int = 30
    ) -> str | None: ...

    def trend_score(self, instrument: Instrument | Derivative, timeframe: str = "5") -> Decimal | None: ...

    def atr_trend(
        self, instrument: Instrument | Derivative, timeframe: str = "5"
    ) -> tuple[str, Decimal] | None: ...


class NotificationSink(Protocol):
    def notify_exit(
        self,
        position: Position,
        reason: str,
        exit_price: Decimal | None,
        pnl: Decimal | None,
    ) -> None: ...


class ExitExecutor(Protocol):
    def execute_exit(self, position: Position, reason: str) -> bool: ...
