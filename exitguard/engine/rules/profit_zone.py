"""PostProfitZoneRule — trend/momentum-driven holding once profit is secured.

Zones by net PnL::

    entry                 0 … secured threshold (₹2000)
    secured_profit_zone   secured … runner threshold (₹4000)
    runner_zone           above runner threshold

In the secured zone the position is held only while the underlying trend is
favourable *and* option momentum is intact.  The runner zone repeats the
check only when ``runner_zone_momentum_check`` is on.  After the lifecycle has
recorded a zone entry, the green stop (``secured_sl_rupees``) also applies.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from exitguard.engine.rules.base import BaseRule
from exitguard.engine.rules.context import RuleContext
from exitguard.engine.rules.result import RuleResult
from exitguard.models.position import classify_profit_zone
from exitguard.utils.logger import logger
from exitguard.utils.money import HUNDRED, ZERO, fmt_rupees, to_decimal

SECURED_THRESHOLD = Decimal("2000")
RUNNER_THRESHOLD = Decimal("4000")
SECURED_SL_RUPEES = Decimal("800")
UNDERLYING_ADX_MIN = Decimal("18")
ATR_COLLAPSE_THRESHOLD = Decimal("0.65")
OPTION_PULLBACK_MAX_PCT = Decimal("35")
HIGHER_HIGH_MARGIN = Decimal("1.05")
MIN_HISTORY_POINTS = 3
RECENT_WINDOW = 5


def zone_settings(context: RuleContext, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
    """``post_profit_zone`` section with rule-level overrides applied on top."""
    return {**context.section("post_profit_zone"), **(overrides or {})}


class PostProfitZoneRule(BaseRule):
    PRIORITY = 25

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        cfg = zone_settings(context, self.config)
        pnl = context.pnl_rupees
        if pnl is None:
            return RuleResult.skip()

        green_stop = self._green_stop(context, cfg, pnl)
        if green_stop is not None:
            return green_stop
        if pnl <= ZERO:
            return RuleResult.skip()

        secured = to_decimal(cfg.get("secured_profit_threshold_rupees"), SECURED_THRESHOLD)
        runner = to_decimal(cfg.get("runner_zone_threshold_rupees"), RUNNER_THRESHOLD)
        zone = classify_profit_zone(pnl, secured, runner)
        if zone == "entry":
            return RuleResult.no_action()
        if zone == "runner_zone" and cfg.get("runner_zone_momentum_check") is not True:
            return RuleResult.no_action()

        underlying_ok = self.underlying_trend_favorable(context, cfg)
        momentum_ok = self.option_momentum_intact(context, cfg)
        if underlying_ok and momentum_ok:
            return RuleResult.no_action()

        parts = []
        if not underlying_ok:
            parts.append("underlying_trend_weak")
        if not momentum_ok:
            parts.append("option_momentum_stalled")
        label = "POST_TP_EXIT" if zone == "secured_profit_zone" else "RUNNER_ZONE_EXIT"
        return RuleResult.exit(
            f"{label} ({', '.join(parts)}) - Profit: {fmt_rupees(pnl)}",
            {
                "zone": zone,
                "pnl_rupees": pnl,
                "underlying_favorable": underlying_ok,
                "option_momentum_intact": momentum_ok,
                "secured_threshold": secured,
                "runner_threshold": runner,
            },
        )

    # ------------------------------------------------------------------

    @staticmethod
    def _green_stop(context: RuleContext, cfg: dict[str, Any], net: Decimal) -> RuleResult | None:
        state = context.position.meta.get("profit_zone_state")
        if state not in ("secured_profit_zone", "runner_zone"):
            return None
        secured_sl = to_decimal(cfg.get("secured_sl_rupees"), SECURED_SL_RUPEES)
        threshold = secured_sl + context.exit_fee
        if net >= threshold:
            return None
        return RuleResult.exit(
            f"SECURED_PROFIT_SL (Current net: {fmt_rupees(net)}, Net after exit: "
            f"{fmt_rupees(net - context.exit_fee)}, secured SL: {fmt_rupees(secured_sl)})",
            {"zone": state, "net_pnl": net, "secured_sl_rupees": secured_sl},
        )

    @staticmethod
    def underlying_trend_favorable(context: RuleContext, cfg: dict[str, Any]) -> bool:
        """False unless an underlying reading exists and passes every check."""
        if context.underlying is None:
            return False
        state = context.underlying.evaluate(context.position)
        if state is None:
            return False

        adx_min = to_decimal(cfg.get("underlying_adx_min"), UNDERLYING_ADX_MIN)
        if state.trend_score is not None and state.trend_score < adx_min:
            return False
        if state.structure_broken_against(context.direction):
            return False
        atr_floor = to_decimal(cfg.get("underlying_atr_collapse_threshold"), ATR_COLLAPSE_THRESHOLD)
        if state.atr_trend == "falling" and state.atr_ratio is not None and state.atr_ratio < atr_floor:
            return False
        return True

    @staticmethod
    def option_momentum_intact(context: RuleContext, cfg: dict[str, Any]) -> bool:
        """Pullback limits against recent and peak premium plus a higher-high check."""
        ltp = context.current_price
        entry = context.entry_price
        history = context.ltp_history
        if ltp is None or entry is None or entry <= ZERO or len(history) < MIN_HISTORY_POINTS:
            return False

        pullback_max = to_decimal(cfg.get("option_pullback_max_pct"), OPTION_PULLBACK_MAX_PCT)

        recent_high = max(history[-RECENT_WINDOW:])
        if recent_high > ltp and (recent_high - ltp) / recent_high * HUNDRED > pullback_max:
            return False

        older = history[:-RECENT_WINDOW]
        if older and ltp < max(older) * HIGHER_HIGH_MARGIN:
            logger.debug(
                "[PostProfitZoneRule] %s no higher high: ltp=%s older_high=%s",
                context.position.order_no, ltp, max(older),
            )
            return False

        hwm = context.high_water_mark
        if hwm and hwm > ZERO and context.quantity > 0:
            peak_ltp = hwm / context.quantity + entry
            if peak_ltp > ltp and (peak_ltp - ltp) / peak_ltp * HUNDRED > pullback_max:
                return False
        return True
