"""Clock-driven rules — session end, absolute time exit, holding-time stop."""

from __future__ import annotations

from datetime import time
from decimal import Decimal

from exitguard.engine.rules.base import BaseRule
from exitguard.engine.rules.context import RuleContext
from exitguard.engine.rules.result import RuleResult
from exitguard.utils.candles import count_since
from exitguard.utils.logger import logger
from exitguard.utils.money import ZERO, to_decimal

DEFAULT_SESSION_END = "15:15"
DEFAULT_MARKET_CLOSE = "15:30"

SCALP_MAX_MINUTES = 3
SCALP_MAX_CANDLES = 2
TREND_MAX_MINUTES = {
    "NIFTY": 45,
    "BANKNIFTY": 45,
    "SENSEX": 90,
}


class SessionEndRule(BaseRule):
    """Force-flatten everything once the session's exit window opens.

    Returns ``skip`` before the window so lower-priority rules still get a say.
    """

    PRIORITY = 10

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        flatten_at = context.config_time("session_end_hhmm", DEFAULT_SESSION_END)
        if flatten_at is None:
            return RuleResult.skip()
        if context.now.time() < flatten_at:
            return RuleResult.skip()
        label = flatten_at.strftime("%H:%M")
        return RuleResult.exit(
            f"session end ({label})",
            {"session_end": label, "pnl_rupees": context.pnl_rupees},
        )


class TimeBasedExitRule(BaseRule):
    """Exit at ``time_exit_hhmm`` unless a small profit is still below ``min_profit_rupees``."""

    PRIORITY = 40

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        exit_time = context.config_time("time_exit_hhmm")
        if exit_time is None:
            return RuleResult.skip()
        market_close = context.config_time("market_close_hhmm", DEFAULT_MARKET_CLOSE) or time(15, 30)

        now = context.now.time()
        if now < exit_time or now >= market_close:
            return RuleResult.no_action()

        pnl = context.pnl_rupees
        min_profit = context.config_decimal("min_profit_rupees", ZERO)
        if min_profit > ZERO and pnl is not None and ZERO < pnl < min_profit:
            logger.debug(
                "[TimeBasedExitRule] %s holding past %s: pnl %s below min profit %s",
                context.position.order_no, exit_time, pnl, min_profit,
            )
            return RuleResult.no_action()

        label = exit_time.strftime("%H:%M")
        return RuleResult.exit(
            f"time-based exit ({label})",
            {"exit_time": label, "pnl_rupees": pnl},
        )


class TimeStopRule(BaseRule):
    """Holding-time ceiling by trade type.

    Scalps (entry path tagged ``1m`` or ``scalp``) get a few minutes or a
    couple of 1m candles; trend trades get an index-specific ceiling.
    """

    PRIORITY = 40

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        cfg = context.section("time_stop")
        if cfg.get("enabled") is False:
            return RuleResult.skip()

        position = context.position
        entered_at = position.activated_at or position.created_at
        if entered_at is None:
            return RuleResult.skip()

        trade_type = self.trade_type(position.meta)
        limit = self.time_limit(trade_type, context.index_key, cfg)
        if limit is None:
            return RuleResult.skip()

        elapsed = Decimal(str(round((context.now - entered_at).total_seconds() / 60, 2)))
        if elapsed >= limit:
            return RuleResult.exit(
                f"TIME_STOP ({trade_type} trade exceeded {limit} minutes, elapsed: {elapsed} min)",
                {"trade_type": trade_type, "time_limit": limit, "elapsed_minutes": elapsed},
            )

        if trade_type == "scalp" and context.structure is not None:
            max_candles = int(cfg.get("scalp_max_candles", SCALP_MAX_CANDLES))
            frame = context.structure.candles(position.instrument, "1")
            if frame is not None and count_since(frame, entered_at) > max_candles:
                return RuleResult.exit(
                    f"TIME_STOP (scalp exceeded {max_candles} candles)",
                    {"trade_type": "scalp", "candle_limit": max_candles},
                )
        return RuleResult.no_action()

    @staticmethod
    def trade_type(meta: dict) -> str:
        entry_meta = meta.get("entry_metadata") if isinstance(meta.get("entry_metadata"), dict) else {}
        path = str(entry_meta.get("entry_path") or meta.get("entry_path") or "")
        return "scalp" if ("1m" in path or "scalp" in path) else "trend"

    @staticmethod
    def time_limit(trade_type: str, index_key: str, cfg: dict) -> Decimal | None:
        if trade_type == "scalp":
            return to_decimal(cfg.get("scalp_max_minutes"), Decimal(SCALP_MAX_MINUTES))
        limits = {**TREND_MAX_MINUTES, **(cfg.get("trend_max_minutes") or {})}
        return to_decimal(limits.get(index_key, limits["NIFTY"]))
