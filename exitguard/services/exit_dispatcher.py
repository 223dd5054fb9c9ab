"""Exit Dispatcher — turns an exit decision into a closed position.

Order of work for one dispatch:

  1. Refuse unless the position is active (idempotence guard).
  2. Stamp the reason onto ``position.meta`` and persist it, so the audit
     trail survives a failed execution.
  3. Delegate to an external executor when one was supplied; otherwise run
     the built-in path (paper → last price, live → ``gateway.flatten``).
     A live fill price is recorded in meta so a retry never flattens twice.
  4. Build the exited state on a copy and write it with a guarded update.
     The caller's entity changes only once the store accepts it; then the
     subscription and cache entry are dropped and the exit is notified.

Failures at any step are logged and leave the position ``active`` so the
next monitor cycle re-evaluates it.
"""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Any

from exitguard.interfaces import Clock, ExitExecutor, NotificationSink, OrderGateway, PriceSource
from exitguard.models.pnl import ExecutionCosts
from exitguard.models.position import Position
from exitguard.services.event_logger import EventLog
from exitguard.services.pnl_cache import PnlCache
from exitguard.services.position_store import PositionStore
from exitguard.utils.logger import logger
from exitguard.utils.money import fmt_pct, fmt_rupees, round2, to_decimal

FLATTENED_PRICE_KEY = "flattened_exit_price"
_PCT_REASON = re.compile(r"^((?:SL|TP) HIT )[-+]?\d+(?:\.\d+)?%")


def restate_reason(reason: str, final_pnl_pct: Decimal | None) -> str:
    """``SL HIT -21.00%`` / ``TP HIT 31.00%`` restated with the realized PnL%."""
    if final_pnl_pct is None:
        return reason
    return _PCT_REASON.sub(lambda m: m.group(1) + fmt_pct(final_pnl_pct), reason, count=1)


class ExitDispatcher:
    def __init__(
        self,
        store: PositionStore,
        cache: PnlCache,
        prices: PriceSource,
        clock: Clock,
        costs: ExecutionCosts,
        *,
        gateway: OrderGateway | None = None,
        notifier: NotificationSink | None = None,
        executor: ExitExecutor | None = None,
        events: EventLog | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._prices = prices
        self._clock = clock
        self._costs = costs
        self._gateway = gateway
        self._notifier = notifier
        self._executor = executor
        self._events = events

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def dispatch(
        self,
        position: Position,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Exit ``position`` for ``reason``.  Returns True once it is exited."""
        if not position.is_active:
            logger.debug(
                "[ExitDispatcher] %s is %s; not dispatching", position.order_no, position.status,
            )
            return False

        logger.info("[ExitDispatcher] EXIT %s: %s", position.order_no, reason)
        position.meta["exit_reason"] = reason
        position.meta["exit_triggered_at"] = self._clock.now().isoformat()
        if metadata:
            position.meta["exit_metadata"] = metadata
        try:
            self._store.update_meta(position)
        except Exception as exc:
            logger.error(
                "[ExitDispatcher] Could not record exit reason for %s: %s - %s",
                position.order_no, type(exc).__name__, exc,
            )
        self._record("exit_triggered", reason, position, metadata or {})

        if self._executor is not None and self._executor is not self:
            try:
                done = bool(self._executor.execute_exit(position, reason))
            except Exception as exc:
                logger.error(
                    "[ExitDispatcher] Executor failed for %s: %s - %s",
                    position.order_no, type(exc).__name__, exc,
                )
                self._record("exit_failed", str(exc), position, {}, status="error")
                return False
            if not done:
                self._record("exit_failed", "executor declined", position, {}, status="warning")
            return done

        return self.execute_exit(position, reason)

    # ------------------------------------------------------------------
    # Built-in execution path
    # ------------------------------------------------------------------

    def execute_exit(self, position: Position, reason: str) -> bool:
        if not position.is_active:
            return False
        try:
            if position.paper:
                exit_price = self._prices.current_price(position)
                if exit_price is None:
                    cached = self._cache.fetch(position.id)
                    exit_price = cached.ltp if cached else None
            else:
                exit_price = self._flatten(position)
        except Exception as exc:
            logger.error(
                "[ExitDispatcher] Execution failed for %s: %s - %s",
                position.order_no, type(exc).__name__, exc,
            )
            self._record("exit_failed", str(exc), position, {}, status="error")
            return False

        if exit_price is None:
            logger.warning("[ExitDispatcher] No exit price for %s; will retry", position.order_no)
            self._record("exit_failed", "no exit price", position, {}, status="warning")
            return False

        return self._finalize(position, reason, exit_price)

    def _flatten(self, position: Position) -> Decimal | None:
        """Realized exit price of a live position.  A recorded fill is reused, never re-flattened."""
        filled = to_decimal(position.meta.get(FLATTENED_PRICE_KEY))
        if filled is not None:
            logger.info("[ExitDispatcher] %s already flattened @ %s; finalizing", position.order_no, filled)
            return filled
        if self._gateway is None:
            logger.error("[ExitDispatcher] Live position %s but no order gateway", position.order_no)
            return None
        result = self._gateway.flatten(position)
        if not result.success:
            logger.warning(
                "[ExitDispatcher] Gateway refused flatten for %s: %s", position.order_no, result.error,
            )
            return None
        price = result.exit_price if result.exit_price is not None else self._prices.current_price(position)
        if price is not None:
            position.meta[FLATTENED_PRICE_KEY] = str(price)
            try:
                self._store.update_meta(position)
            except Exception as exc:
                logger.error(
                    "[ExitDispatcher] Could not record fill for %s: %s - %s",
                    position.order_no, type(exc).__name__, exc,
                )
        return price

    def _finalize(self, position: Position, reason: str, exit_price: Decimal) -> bool:
        now = self._clock.now()
        final = self._costs.snapshot_for(position, exit_price, now, exited=True)
        cached = self._cache.fetch(position.id)
        final_pnl = final.pnl if final else (cached.pnl if cached else position.last_pnl_rupees)
        final_pct = final.pnl_pct if final else (cached.pnl_pct if cached else position.last_pnl_pct)

        exited = position.model_copy(deep=True)
        if cached is not None:
            exited.apply_pnl(cached.pnl, cached.pnl_pct, cached.hwm)
        final_reason = restate_reason(reason, final_pct)
        exited.mark_exited(exit_price, final_pnl, final_pct, at=now)
        exited.exit_reason = final_reason
        exited.meta["exit_reason"] = final_reason

        try:
            written = self._store.finalize_exit(exited)
        except Exception as exc:
            logger.error(
                "[ExitDispatcher] Could not record exit of %s: %s - %s",
                position.order_no, type(exc).__name__, exc,
            )
            self._record("exit_failed", str(exc), position, {"exit_price": exit_price}, status="error")
            return False
        if not written:
            logger.warning(
                "[ExitDispatcher] %s was no longer active in the store; exit not recorded twice",
                position.order_no,
            )
            return False

        for field in type(position).model_fields:
            setattr(position, field, getattr(exited, field))

        try:
            self._prices.unsubscribe(position)
        except Exception as exc:
            logger.warning("[ExitDispatcher] Unsubscribe failed for %s: %s", position.order_no, exc)
        self._cache.clear(position.id)

        logger.info(
            "[ExitDispatcher] %s exited @ %s | PnL %s (%s) | %s",
            position.order_no,
            round2(exit_price),
            fmt_rupees(final_pnl),
            fmt_pct(final_pct),
            final_reason,
        )
        self._record(
            "exit_executed",
            final_reason,
            position,
            {"exit_price": exit_price, "pnl": final_pnl, "pnl_pct": final_pct, "paper": position.paper},
        )
        self._notify(position, final_reason, exit_price, final_pnl)
        return True

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _notify(
        self,
        position: Position,
        reason: str,
        exit_price: Decimal | None,
        pnl: Decimal | None,
    ) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify_exit(position, reason, exit_price, pnl)
        except Exception as exc:
            logger.warning("[ExitDispatcher] Notification failed for %s: %s", position.order_no, exc)

    def _record(
        self,
        event_type: str,
        detail: str,
        position: Position,
        metadata: dict[str, Any],
        status: str = "success",
    ) -> None:
        if self._events is not None:
            self._events.record(
                event_type, detail, order_no=position.order_no, metadata=metadata, status=status,
            )
