"""Risk Monitor — the supervisory exit loop and its watchdog.

One background thread runs ``run_cycle`` with at least ``interval`` seconds
between cycle starts:

  1. market closed and nothing active → idle (no store or cache work)
  2. refresh PnL for every active position, persist when due
  3. trade states, profit floors, profit zones
  4. enforcement engine per position → dispatch on ``exit``
  5. orphan cache sweep

A second, APScheduler-driven watchdog restarts the loop thread if it dies.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from exitguard.config import RiskConfig, settings
from exitguard.engine.rules.context import RuleContext
from exitguard.engine.rules.engine import RuleEngine
from exitguard.interfaces import Clock, StructureSource
from exitguard.models.pnl import ExecutionCosts
from exitguard.models.position import Position
from exitguard.services.exit_dispatcher import ExitDispatcher
from exitguard.services.pnl_resolver import PnlResolver
from exitguard.services.position_lifecycle import PositionLifecycle
from exitguard.services.position_store import PositionStore
from exitguard.services.underlying_monitor import UnderlyingMonitor
from exitguard.utils.logger import logger, position_context


class MonitorLoop:
    def __init__(
        self,
        store: PositionStore,
        resolver: PnlResolver,
        lifecycle: PositionLifecycle,
        engine: RuleEngine,
        dispatcher: ExitDispatcher,
        clock: Clock,
        config: RiskConfig,
        *,
        costs: ExecutionCosts | None = None,
        structure: StructureSource | None = None,
        underlying: UnderlyingMonitor | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._lifecycle = lifecycle
        self._engine = engine
        self._dispatcher = dispatcher
        self._clock = clock
        self._config = config
        self._costs = costs or resolver.costs
        self._structure = structure
        self._underlying = underlying
        self.interval = settings.MONITOR_INTERVAL_SECONDS if interval_seconds is None else interval_seconds

        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._idle = False
        self.should_run = False
        self.cycles = 0
        self.last_cycle_at = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def idle(self) -> bool:
        return self._idle

    def start(self) -> bool:
        if self.alive:
            return False
        self._stop_event.clear()
        self.should_run = True
        self._thread = threading.Thread(target=self._run, name="exitguard-monitor", daemon=True)
        self._thread.start()
        logger.info("[Monitor] Started (interval=%ss)", self.interval)
        return True

    def stop(self, timeout: float | None = None) -> None:
        self.should_run = False
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=settings.STOP_JOIN_TIMEOUT_SECONDS if timeout is None else timeout)
            if self._thread.is_alive():
                # still finishing its cycle; start() refuses until it exits
                logger.warning("[Monitor] Thread did not stop within timeout")
            else:
                self._thread = None
        logger.info("[Monitor] Stopped after %d cycles", self.cycles)

    def reset(self) -> None:
        """Forget run state so a fresh thread starts cleanly."""
        self._thread = None
        self._stop_event.clear()
        self._idle = False

    def wake(self) -> None:
        """Leave the market-closed idle state (a position just appeared)."""
        if self._idle:
            logger.info("[Monitor] Woken: re-arming full checks")
        self._idle = False

    def _run(self) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_cycle()
            except Exception as exc:
                logger.error("[Monitor] Cycle failed: %s - %s", type(exc).__name__, exc, exc_info=True)
            elapsed = time.monotonic() - started
            self._stop_event.wait(max(0.0, self.interval - elapsed))

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> dict[str, Any]:
        self.cycles += 1
        self.last_cycle_at = self._clock.now()

        market_closed = self._clock.market_closed()
        if market_closed and self._idle:
            return {"skipped": True, "reason": "market_closed"}
        if not market_closed and self._idle:
            logger.info("[Monitor] Market open: re-arming full checks")
            self._idle = False

        positions = self._store.active_positions()
        if market_closed and not positions:
            logger.info("[Monitor] Market closed and no active positions; idling")
            self._idle = True
            return {"skipped": True, "reason": "market_closed"}

        snapshots = self._resolver.refresh(positions)
        self._stage("persist_pnl", self._resolver.persist_if_due, positions)
        self._stage("trade_states", self._lifecycle.advance_trade_states, positions)
        self._stage("profit_floors", self._lifecycle.update_profit_floors, positions)
        self._stage("profit_zones", self._lifecycle.update_profit_zones, positions)

        exits = 0
        for position in positions:
            if not position.is_active:
                continue
            with position_context(position.order_no):
                try:
                    if self._enforce(position, snapshots):
                        exits += 1
                except Exception as exc:
                    logger.error(
                        "[Monitor] Enforcement failed for %s: %s - %s",
                        position.order_no, type(exc).__name__, exc,
                    )

        active_ids = {p.id for p in positions if p.is_active}
        self._stage("orphan_sweep", self._resolver.sweep_orphans, active_ids)
        return {"skipped": False, "positions": len(positions), "exits": exits}

    def _enforce(self, position: Position, snapshots: dict) -> bool:
        context = RuleContext(
            position,
            snapshots.get(position.id),
            self._config,
            now=self._clock.now(),
            costs=self._costs,
            structure=self._structure,
            underlying=self._underlying,
            ltp_history=self._resolver.ltp_history(position.id),
        )
        result = self._engine.evaluate(context)
        if not result.is_exit:
            return False
        return self._dispatcher.dispatch(position, result.reason, {**result.metadata, "rule": result.rule})

    @staticmethod
    def _stage(name: str, step: Callable[..., Any], *args: Any) -> Any:
        try:
            return step(*args)
        except Exception as exc:
            logger.error("[Monitor] %s failed: %s - %s", name, type(exc).__name__, exc)
            return None


class Watchdog:
    """Restarts the monitor thread when it should be running but is not."""

    JOB_ID = "exitguard_watchdog"

    def __init__(self, monitor: MonitorLoop, interval_seconds: float | None = None) -> None:
        self._monitor = monitor
        self.interval = settings.WATCHDOG_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self._scheduler: BackgroundScheduler | None = None
        self.restarts = 0

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        if self._scheduler is not None:
            return
        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self.check,
            IntervalTrigger(seconds=self.interval),
            id=self.JOB_ID,
            name="Exit monitor watchdog",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("[Watchdog] Started (interval=%ss)", self.interval)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("[Watchdog] Stopped")

    def check(self) -> bool:
        """Restart a dead monitor.  Returns True when a restart happened."""
        if not self._monitor.should_run or self._monitor.alive:
            return False
        logger.warning("[Watchdog] Monitor thread is dead; restarting")
        self._monitor.reset()
        self._monitor.start()
        self.restarts += 1
        return True
