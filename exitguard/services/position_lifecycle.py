"""Position Lifecycle — fills, cancellations and the per-cycle state updates.

Entry side::

    open_pending ─► confirm_fill ─► (active)      or      cancel

Per monitor cycle, for every active position:

  * ``advance_trade_states``  init → validated (≥1R) → expansion (≥2R)
  * ``update_profit_floors``  arm the rupee floor once, ratchet it upwards
  * ``update_profit_zones``   entry → secured_profit_zone → runner_zone

Every one of these writes is forward-only and carries a store-side guard,
so a repeated cycle never re-arms a floor lower or re-enters a zone.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal

from exitguard.config import RiskConfig
from exitguard.interfaces import Clock, PriceSource
from exitguard.models.pnl import ExecutionCosts
from exitguard.models.position import Position, ProfitZone, classify_profit_zone
from exitguard.services.event_logger import EventLog
from exitguard.services.pnl_resolver import PnlResolver
from exitguard.services.position_store import PositionStore
from exitguard.utils.logger import logger
from exitguard.utils.money import ZERO, fmt_rupees, round2, to_decimal

DEFAULT_LOCK_RUPEES = Decimal("1000")
DEFAULT_SECURED_THRESHOLD = Decimal("2000")
DEFAULT_RUNNER_THRESHOLD = Decimal("4000")
DEFAULT_SECURED_SL_RUPEES = Decimal("800")

_ZONE_RANK: dict[str, int] = {"entry": 0, "secured_profit_zone": 1, "runner_zone": 2}


class PositionLifecycle:
    def __init__(
        self,
        store: PositionStore,
        resolver: PnlResolver,
        prices: PriceSource,
        clock: Clock,
        config: RiskConfig,
        costs: ExecutionCosts,
        events: EventLog | None = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._prices = prices
        self._clock = clock
        self._config = config
        self._costs = costs
        self._events = events

    # ------------------------------------------------------------------
    # Entry side
    # ------------------------------------------------------------------

    def open_pending(self, position: Position) -> Position:
        if position.status != "pending":
            raise ValueError(f"New position {position.order_no} must start pending, got {position.status}")
        self._store.add(position)
        self._record("position_opened", position, f"pending {position.instrument.symbol} x{position.quantity}")
        return position

    def confirm_fill(
        self,
        position: Position,
        avg_price: Decimal,
        quantity: int | None = None,
        at: datetime | None = None,
    ) -> Position:
        """Activate on a confirmed fill, subscribe the feed and seed a zero-PnL snapshot."""
        position.activate(avg_price, quantity=quantity, at=at or self._clock.now())
        self._store.save(position)
        try:
            self._prices.subscribe(position)
        except Exception as exc:
            logger.warning("[Lifecycle] Feed subscribe failed for %s: %s", position.order_no, exc)
        self._resolver.seed(position)
        logger.info(
            "[Lifecycle] %s active: %s x%d @ %s",
            position.order_no, position.instrument.symbol, position.quantity, position.avg_price,
        )
        self._record("position_activated", position, f"filled @ {position.avg_price}")
        return position

    def cancel(self, position: Position, reason: str | None = None) -> Position:
        position.cancel(reason)
        self._store.save(position)
        logger.info("[Lifecycle] %s cancelled: %s", position.order_no, reason or "no reason")
        self._record("position_cancelled", position, reason or "")
        return position

    # ------------------------------------------------------------------
    # Trade state
    # ------------------------------------------------------------------

    def r_multiple(self, position: Position) -> Decimal | None:
        """Net PnL over the initial risk; ``None`` when the risk is unknown."""
        net = position.last_pnl_rupees
        if net is None:
            return None
        risk = to_decimal(position.meta.get("entry_risk_rupees"))
        if risk is None:
            entry = position.effective_entry
            stop = to_decimal(position.meta.get("premium_stop_price"))
            if entry is not None and stop is not None and entry > stop:
                risk = (entry - stop) * position.quantity
        if not risk or risk <= ZERO:
            return None
        return net / risk

    def advance_trade_states(self, positions: Iterable[Position]) -> int:
        moved = 0
        now = self._clock.now()
        for position in positions:
            if not position.is_active:
                continue
            before = position.trade_state
            if not position.advance_trade_state(self.r_multiple(position), at=now):
                continue
            self._store.update_trade_state(position)
            moved += 1
            logger.info("[Lifecycle] %s trade state %s → %s", position.order_no, before, position.trade_state)
        return moved

    # ------------------------------------------------------------------
    # Profit floor
    # ------------------------------------------------------------------

    def update_profit_floors(self, positions: Iterable[Position]) -> int:
        cfg = self._config.section("profit_floor")
        if cfg.get("enabled") is not True:
            return 0
        lock = to_decimal(cfg.get("lock_rupees"), DEFAULT_LOCK_RUPEES)
        step = to_decimal(cfg.get("trail_step_rupees"))
        breakeven_at = to_decimal(cfg.get("breakeven_at_rupees"))
        now = self._clock.now()

        changed = 0
        for position in positions:
            if not position.is_active or position.last_pnl_rupees is None:
                continue
            net = position.last_pnl_rupees

            if breakeven_at is not None and net >= breakeven_at and not position.meta.get("be_set"):
                self._set_breakeven(position, now)

            if position.profit_floor_rupees is None:
                if net >= lock and self._store.arm_profit_floor(position.id, lock, now):
                    position.profit_floor_rupees = lock
                    position.profit_floor_set_at = now
                    changed += 1
                    logger.info(
                        "[Lifecycle] %s profit floor armed at %s (net %s)",
                        position.order_no, fmt_rupees(lock), fmt_rupees(net),
                    )
                    self._record("profit_floor_armed", position, fmt_rupees(lock), {"net_pnl": net})
                continue

            if step and step > ZERO:
                candidate = position.high_water_mark_pnl - step
                if candidate > position.profit_floor_rupees and candidate >= lock:
                    if self._store.raise_profit_floor(position.id, candidate):
                        logger.info(
                            "[Lifecycle] %s profit floor raised %s → %s",
                            position.order_no,
                            fmt_rupees(position.profit_floor_rupees),
                            fmt_rupees(candidate),
                        )
                        position.profit_floor_rupees = candidate
                        changed += 1
        return changed

    def _set_breakeven(self, position: Position, now: datetime) -> None:
        entry = position.effective_entry
        if entry is None:
            return
        current_sl = to_decimal(position.meta.get("sl_price"))
        if current_sl is None or current_sl < entry:
            position.meta["sl_price"] = str(entry)
        position.meta["be_set"] = True
        position.meta["be_set_at"] = now.isoformat()
        self._store.update_meta(position)
        logger.info("[Lifecycle] %s stop moved to breakeven %s", position.order_no, entry)

    # ------------------------------------------------------------------
    # Profit zones
    # ------------------------------------------------------------------

    def update_profit_zones(self, positions: Iterable[Position]) -> int:
        cfg = self._config.section("post_profit_zone")
        if cfg.get("enabled") is False:
            return 0
        secured = to_decimal(cfg.get("secured_profit_threshold_rupees"), DEFAULT_SECURED_THRESHOLD)
        runner = to_decimal(cfg.get("runner_zone_threshold_rupees"), DEFAULT_RUNNER_THRESHOLD)
        secured_sl = to_decimal(cfg.get("secured_sl_rupees"), DEFAULT_SECURED_SL_RUPEES)
        now = self._clock.now()

        entered = 0
        for position in positions:
            if not position.is_active:
                continue
            zone = classify_profit_zone(position.last_pnl_rupees, secured, runner)
            current = position.meta.get("profit_zone_state") or "entry"
            if _ZONE_RANK[zone] <= _ZONE_RANK.get(current, 0):
                continue
            if self._enter_zone(position, zone, secured_sl, now):
                entered += 1
        return entered

    def _enter_zone(
        self,
        position: Position,
        zone: ProfitZone,
        secured_sl: Decimal,
        now: datetime,
    ) -> bool:
        previous = dict(position.meta)
        position.meta["profit_zone_state"] = zone
        position.meta["profit_zone_entered_at"] = now.isoformat()
        entry = position.effective_entry
        if entry is not None and position.quantity > 0 and "secured_sl_price" not in position.meta:
            stop = entry + (secured_sl + self._costs.exit_fee) / position.quantity
            position.meta["secured_sl_price"] = str(round2(stop))

        if not self._store.enter_profit_zone(position, zone):
            position.meta = previous
            return False
        logger.info(
            "[Lifecycle] %s entered %s (net %s, green stop %s)",
            position.order_no, zone, fmt_rupees(position.last_pnl_rupees), fmt_rupees(secured_sl),
        )
        self._record("profit_zone_entered", position, zone, {"net_pnl": position.last_pnl_rupees})
        return True

    # ------------------------------------------------------------------

    def _record(self, event_type: str, position: Position, detail: str, metadata: dict | None = None) -> None:
        if self._events is not None:
            self._events.record(event_type, detail, order_no=position.order_no, metadata=metadata)
