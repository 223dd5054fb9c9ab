"""Profit-protection rules — profit floor, secure profit, peak drawdown, trailing stop."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from exitguard.engine.rules.base import BaseRule
from exitguard.engine.rules.context import RuleContext
from exitguard.engine.rules.result import RuleResult
from exitguard.utils.logger import logger
from exitguard.utils.money import HUNDRED, ZERO, fmt_pct, fmt_rupees, round2, to_decimal

DEFAULT_PEAK_DRAWDOWN_PCT = Decimal("5")
DEFAULT_ACTIVATION_PROFIT_PCT = Decimal("25")
DEFAULT_ACTIVATION_SL_OFFSET_PCT = Decimal("10")

# (profit % reached, stop offset % from entry)
DEFAULT_SL_OFFSET_TIERS: tuple[tuple[Decimal, Decimal], ...] = tuple(
    (Decimal(a), Decimal(b))
    for a, b in (
        ("5", "-15"), ("10", "-5"), ("15", "0"), ("25", "10"),
        ("40", "20"), ("60", "30"), ("80", "40"), ("120", "60"),
    )
)


def _requires_expansion(context: RuleContext) -> bool:
    return context.section("trailing").get("require_expansion") is True


def sl_offset_for(profit_pct: Decimal | None, tiers=DEFAULT_SL_OFFSET_TIERS) -> Decimal | None:
    """Stop offset from entry for the highest tier ``profit_pct`` has reached."""
    if profit_pct is None:
        return None
    for threshold, offset in reversed(tiers):
        if profit_pct >= threshold:
            return offset
    return None


class ProfitFloorRule(BaseRule):
    """Exit once net PnL falls back to the armed floor, or the floor has been armed too long.

    Arming happens in ``PositionLifecycle.update_profit_floors``; this rule
    only reads ``profit_floor_rupees`` / ``profit_floor_set_at``.
    """

    PRIORITY = 22

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        cfg = context.section("profit_floor")
        if cfg.get("enabled") is not True:
            return RuleResult.skip()
        position = context.position
        floor = position.profit_floor_rupees
        net = context.pnl_rupees
        if floor is None or net is None:
            return RuleResult.skip()

        kill_minutes = to_decimal(cfg.get("time_kill_minutes"))
        set_at = position.profit_floor_set_at
        if kill_minutes and kill_minutes > ZERO and set_at is not None:
            held = context.now - set_at
            if held >= timedelta(minutes=float(kill_minutes)):
                return RuleResult.exit(
                    f"PROFIT_FLOOR_TIME_KILL (armed {int(held.total_seconds() // 60)}m ago, "
                    f"floor: {fmt_rupees(floor)}, net: {fmt_rupees(net)})",
                    {"floor": floor, "net_pnl": net, "time_kill_minutes": kill_minutes},
                )

        threshold = floor + context.exit_fee
        if net <= threshold:
            return RuleResult.exit(
                f"PROFIT_FLOOR_LOCK (net: {fmt_rupees(net)}, floor: {fmt_rupees(floor)})",
                {"floor": floor, "net_pnl": net, "threshold": threshold},
            )
        return RuleResult.no_action()


class SecureProfitRule(BaseRule):
    """Tighter peak-drawdown exit once rupee profit clears the secure threshold."""

    PRIORITY = 35

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        pnl = context.pnl_rupees
        if pnl is None or pnl <= ZERO:
            return RuleResult.skip()
        threshold = context.config_decimal("secure_profit_threshold_rupees", Decimal("1000"))
        if not threshold:
            return RuleResult.skip()
        if pnl < threshold:
            return RuleResult.no_action()

        peak = context.peak_profit_pct
        current = context.pnl_pct
        if peak is None or current is None:
            return RuleResult.skip()
        tight = context.config_decimal("secure_profit_drawdown_pct", Decimal("3"))
        drawdown = peak - current
        if drawdown < tight:
            return RuleResult.no_action()

        logger.info(
            "[SecureProfitRule] Securing profit for %s: current=%s, peak=%s, drawdown=%s",
            context.position.order_no, fmt_rupees(pnl), fmt_pct(peak), fmt_pct(drawdown),
        )
        return RuleResult.exit(
            f"secure_profit_exit (profit: {fmt_rupees(pnl)}, drawdown: {fmt_pct(drawdown)} "
            f"from peak {fmt_pct(peak)})",
            {
                "pnl_rupees": pnl,
                "peak_profit_pct": peak,
                "current_profit_pct": current,
                "drawdown": drawdown,
                "tight_drawdown_pct": tight,
            },
        )


class PeakDrawdownRule(BaseRule):
    """Exit when profit % gives back more than the peak's drawdown allowance."""

    PRIORITY = 45

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        if _requires_expansion(context) and not context.position.trade_state_reached("expansion"):
            return RuleResult.skip()
        if not context.trailing_activated:
            return RuleResult.skip()

        peak = context.peak_profit_pct
        current = context.pnl_pct
        if peak is None or current is None or peak <= ZERO:
            return RuleResult.skip()

        threshold = self.drawdown_threshold(context, peak)
        drawdown = peak - current
        if drawdown < threshold:
            return RuleResult.no_action()

        if context.feature("enable_peak_drawdown_activation"):
            min_peak = context.config_decimal("peak_drawdown_activation_profit_pct", DEFAULT_ACTIVATION_PROFIT_PCT)
            min_offset = context.config_decimal(
                "peak_drawdown_activation_sl_offset_pct", DEFAULT_ACTIVATION_SL_OFFSET_PCT
            )
            offset = self.current_sl_offset_pct(context, peak)
            if peak < min_peak or offset is None or offset < min_offset:
                logger.debug(
                    "[PeakDrawdownRule] %s gated: peak=%s offset=%s",
                    context.position.order_no, fmt_pct(peak), offset,
                )
                return RuleResult.no_action()

        return RuleResult.exit(
            f"peak_drawdown_exit (drawdown: {fmt_pct(drawdown)}, peak: {fmt_pct(peak)})",
            {
                "peak_profit_pct": peak,
                "current_profit_pct": current,
                "drawdown": drawdown,
                "threshold": threshold,
                "trailing_activation_pct": context.trailing_activation_pct,
            },
        )

    @staticmethod
    def drawdown_threshold(context: RuleContext, peak: Decimal) -> Decimal:
        """Allowance from ``peak_drawdown_tiers`` (widening with the peak), else the flat pct."""
        flat = context.config_decimal("peak_drawdown_exit_pct", DEFAULT_PEAK_DRAWDOWN_PCT)
        tiers = context.config_value("peak_drawdown_tiers") or []
        parsed = sorted(
            (to_decimal(t.get("peak_pct")), to_decimal(t.get("drawdown_pct")))
            for t in tiers
            if isinstance(t, dict)
            and to_decimal(t.get("peak_pct")) is not None
            and to_decimal(t.get("drawdown_pct")) is not None
        )
        chosen = flat
        for peak_min, allowance in parsed:
            if peak >= peak_min:
                chosen = allowance
        return chosen

    @staticmethod
    def current_sl_offset_pct(context: RuleContext, peak: Decimal) -> Decimal | None:
        meta = context.position.meta
        explicit = to_decimal(meta.get("sl_offset_pct"))
        if explicit is not None:
            return explicit
        entry = context.entry_price
        sl_price = to_decimal(meta.get("sl_price"))
        if entry and sl_price and entry > ZERO and sl_price > ZERO:
            return (sl_price - entry) / entry * HUNDRED
        return sl_offset_for(peak)


class TrailingStopRule(BaseRule):
    """Legacy trailing stop: PnL drop from the HWM as a fraction of the HWM."""

    PRIORITY = 50

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        if _requires_expansion(context) and not context.position.trade_state_reached("expansion"):
            return RuleResult.skip()
        if not context.trailing_activated:
            return RuleResult.skip()

        pnl = context.pnl_rupees
        hwm = context.high_water_mark
        if pnl is None or hwm is None or hwm <= ZERO:
            return RuleResult.skip()
        exit_drop_pct = context.config_decimal("exit_drop_pct")
        if not exit_drop_pct:
            return RuleResult.skip()

        drop = (hwm - pnl) / hwm
        if drop >= exit_drop_pct / HUNDRED:
            return RuleResult.exit(
                f"TRAILING STOP drop={fmt_pct(drop * HUNDRED)} "
                f"(pnl: {fmt_rupees(pnl)}, hwm: {fmt_rupees(hwm)})",
                {"pnl": pnl, "hwm": hwm, "drop_pct": round2(drop * HUNDRED)},
            )
        return RuleResult.no_action()
