"""ExitGuardService — wires the exit core together and owns its start/stop.

Collaborators that live outside this package (order gateway, notifier,
external executor, candle feed) are passed in; everything else is built here.
Construct as many instances as needed; nothing is process-global.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from exitguard.config import RiskConfig, settings
from exitguard.database import Database
from exitguard.engine.rules.factory import RuleFactory
from exitguard.interfaces import Clock, ExitExecutor, NotificationSink, OrderGateway
from exitguard.models.pnl import ExecutionCosts
from exitguard.models.position import Position
from exitguard.services.event_logger import EventLog
from exitguard.services.exit_dispatcher import ExitDispatcher
from exitguard.services.notifier import LogNotifier
from exitguard.services.pnl_cache import PnlCache
from exitguard.services.pnl_resolver import PnlResolver
from exitguard.services.position_lifecycle import PositionLifecycle
from exitguard.services.position_store import PositionStore
from exitguard.services.price_book import PriceBook
from exitguard.services.risk_monitor import MonitorLoop, Watchdog
from exitguard.services.structure_source import CandleStructureSource
from exitguard.services.underlying_monitor import UnderlyingMonitor
from exitguard.utils.logger import logger, position_context
from exitguard.utils.market_hours import MarketClock


class ExitGuardService:
    def __init__(
        self,
        *,
        db: Database | None = None,
        config: RiskConfig | None = None,
        clock: Clock | None = None,
        gateway: OrderGateway | None = None,
        notifier: NotificationSink | None = None,
        executor: ExitExecutor | None = None,
        structure: CandleStructureSource | None = None,
        monitor_interval: float | None = None,
        watchdog_interval: float | None = None,
    ) -> None:
        self.config = config or settings.load_risk_config()
        self.clock = clock or MarketClock()
        self.db = db or Database()
        self.costs = ExecutionCosts(fee_per_order=settings.FEE_PER_ORDER)

        self.store = PositionStore(self.db)
        self.events = EventLog(self.db)
        self.cache = PnlCache()
        self.prices = PriceBook(self.cache, self.costs, self.clock)
        self.structure = structure or CandleStructureSource()
        self.underlying = UnderlyingMonitor(self.structure, self.clock)

        self.resolver = PnlResolver(self.store, self.cache, self.prices, self.clock, self.costs)
        self.lifecycle = PositionLifecycle(
            self.store, self.resolver, self.prices, self.clock, self.config, self.costs, self.events,
        )
        self.dispatcher = ExitDispatcher(
            self.store,
            self.cache,
            self.prices,
            self.clock,
            self.costs,
            gateway=gateway,
            notifier=notifier or LogNotifier(),
            executor=executor,
            events=self.events,
        )
        self.engine = RuleFactory.create_enforcement_engine(self.config)
        self.monitor = MonitorLoop(
            self.store,
            self.resolver,
            self.lifecycle,
            self.engine,
            self.dispatcher,
            self.clock,
            self.config,
            costs=self.costs,
            structure=self.structure,
            underlying=self.underlying,
            interval_seconds=monitor_interval,
        )
        self.watchdog = Watchdog(self.monitor, interval_seconds=watchdog_interval)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.monitor.start()
        self.watchdog.start()
        logger.info(
            "[ExitGuard] Running: %d active positions, pipeline=%s",
            self.store.count_active(), [r.name for r in self.engine.rules],
        )

    def stop(self, timeout: float | None = None) -> None:
        self.watchdog.stop()
        self.monitor.stop(timeout)
        logger.info("[ExitGuard] Stopped")

    def close(self) -> None:
        self.stop()
        self.db.close()

    # ------------------------------------------------------------------
    # Position entry points
    # ------------------------------------------------------------------

    def open_position(self, position: Position) -> Position:
        return self.lifecycle.open_pending(position)

    def confirm_fill(
        self,
        position: Position,
        avg_price: Decimal,
        quantity: int | None = None,
        at: datetime | None = None,
    ) -> Position:
        self.lifecycle.confirm_fill(position, avg_price, quantity=quantity, at=at)
        self.monitor.wake()
        return position

    def cancel(self, position: Position, reason: str | None = None) -> Position:
        return self.lifecycle.cancel(position, reason)

    def exit_now(self, position: Position, reason: str = "MANUAL_EXIT") -> bool:
        with position_context(position.order_no):
            return self.dispatcher.dispatch(position, reason)
