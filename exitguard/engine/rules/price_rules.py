"""Price and rupee threshold rules — stop loss, take profit, brackets, hard limits."""

from __future__ import annotations

from decimal import Decimal

from exitguard.engine.rules.base import BaseRule
from exitguard.engine.rules.context import RuleContext
from exitguard.engine.rules.result import RuleResult
from exitguard.utils.money import ZERO, fmt_pct, fmt_rupees, to_decimal


class PremiumRStopRule(BaseRule):
    """Exit when the option premium trades through the armed ``premium_stop_price``."""

    PRIORITY = 12

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        stop = to_decimal(context.position.meta.get("premium_stop_price"))
        ltp = context.current_price
        if stop is None or stop <= ZERO or ltp is None or ltp <= ZERO:
            return RuleResult.skip()
        if ltp <= stop:
            return RuleResult.exit(
                f"PREMIUM_R_STOP (ltp: {ltp}, stop: {stop})",
                {"ltp": ltp, "premium_stop_price": stop},
            )
        return RuleResult.no_action()


class HardRupeeStopRule(BaseRule):
    """Absolute rupee loss cap, net of the exit order's fee."""

    PRIORITY = 15

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        cfg = context.section("hard_rupee_sl")
        if cfg.get("enabled") is not True:
            return RuleResult.skip()
        net = context.pnl_rupees
        if net is None:
            return RuleResult.skip()

        max_loss = to_decimal(cfg.get("max_loss_rupees"), Decimal("1000"))
        threshold = -max_loss + context.exit_fee
        if net <= threshold:
            final_net = net - context.exit_fee
            return RuleResult.exit(
                f"HARD_RUPEE_SL (Current net: {fmt_rupees(net)}, Net after exit: "
                f"{fmt_rupees(final_net)}, limit: -{fmt_rupees(max_loss)})",
                {"net_pnl": net, "max_loss_rupees": max_loss, "threshold": threshold},
            )
        return RuleResult.no_action()


class StopLossRule(BaseRule):
    """Percentage stop: ``pnl_pct <= -sl_pct``."""

    PRIORITY = 20

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        pnl_pct = context.pnl_pct
        if pnl_pct is None:
            return RuleResult.skip()
        sl_pct = self.setting_decimal(context, "sl_pct")
        if sl_pct is None or sl_pct == ZERO:
            return RuleResult.skip()

        if pnl_pct <= -abs(sl_pct):
            return RuleResult.exit(
                f"SL HIT {fmt_pct(pnl_pct)}",
                {"pnl_pct": pnl_pct, "sl_pct": sl_pct},
            )
        return RuleResult.no_action()


class BracketLimitRule(BaseRule):
    """Broker-side bracket legs: flags set by the order feed, or LTP through the levels."""

    PRIORITY = 25

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        ltp = context.current_price
        if ltp is None or ltp <= ZERO:
            return RuleResult.skip()

        meta = context.position.meta
        sl_price = to_decimal(meta.get("sl_price"))
        tp_price = to_decimal(meta.get("tp_price"))
        sl_flag = meta.get("bracket_sl_hit") is True
        tp_flag = meta.get("bracket_tp_hit") is True
        if sl_price is None and tp_price is None and not (sl_flag or tp_flag):
            return RuleResult.skip()

        if sl_flag or (sl_price is not None and sl_price > ZERO and ltp <= sl_price):
            return RuleResult.exit(
                f"SL HIT (bracket {sl_price}, ltp {ltp})",
                {"limit_type": "stop_loss", "sl_price": sl_price, "ltp": ltp},
            )
        if tp_flag or (tp_price is not None and tp_price > ZERO and ltp >= tp_price):
            return RuleResult.exit(
                f"TP HIT (bracket {tp_price}, ltp {ltp})",
                {"limit_type": "take_profit", "tp_price": tp_price, "ltp": ltp},
            )
        return RuleResult.no_action()


class HardRupeeTargetRule(BaseRule):
    """Absolute rupee profit target, net of the exit order's fee."""

    PRIORITY = 28

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        cfg = context.section("hard_rupee_tp")
        if cfg.get("enabled") is not True:
            return RuleResult.skip()
        net = context.pnl_rupees
        target = to_decimal(cfg.get("target_profit_rupees"))
        if net is None or target is None or target <= ZERO:
            return RuleResult.skip()

        threshold = target + context.exit_fee
        if net >= threshold:
            return RuleResult.exit(
                f"HARD_RUPEE_TP (Current net: {fmt_rupees(net)}, Net after exit: "
                f"{fmt_rupees(net - context.exit_fee)}, target: {fmt_rupees(target)})",
                {"net_pnl": net, "target_profit_rupees": target},
            )
        return RuleResult.no_action()


class TakeProfitRule(BaseRule):
    """Percentage target: ``pnl_pct >= tp_pct``."""

    PRIORITY = 30

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        pnl_pct = context.pnl_pct
        if pnl_pct is None:
            return RuleResult.skip()
        tp_pct = self.setting_decimal(context, "tp_pct")
        if tp_pct is None or tp_pct <= ZERO:
            return RuleResult.skip()

        if pnl_pct >= tp_pct:
            return RuleResult.exit(
                f"TP HIT {fmt_pct(pnl_pct)}",
                {"pnl_pct": pnl_pct, "tp_pct": tp_pct},
            )
        return RuleResult.no_action()
