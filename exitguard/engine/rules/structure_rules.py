"""Structure-driven rules — swing breaks, stalled momentum, underlying index health.

These read candles through the structural source and never look at PnL, so
they can cut a trade that is still green once the chart stops agreeing with it.
"""

from __future__ import annotations

from decimal import Decimal

from exitguard.engine.rules.base import BaseRule
from exitguard.engine.rules.context import RuleContext
from exitguard.engine.rules.result import RuleResult
from exitguard.utils.candles import to_price
from exitguard.utils.logger import logger
from exitguard.utils.money import to_decimal

STRUCTURE_TIMEFRAMES = ("1", "5")

MOMENTUM_THRESHOLDS: dict[str, dict[str, int]] = {
    "NIFTY": {"1": 2, "5": 1},
    "BANKNIFTY": {"1": 2, "5": 1},
    "SENSEX": {"1": 3, "5": 2},
}
DEFAULT_MOMENTUM_THRESHOLDS = {"1": 2, "5": 1}
MOMENTUM_TOLERANCE = Decimal("0.001")

DEFAULT_TREND_SCORE_THRESHOLD = Decimal("10")
DEFAULT_ATR_COLLAPSE_RATIO = Decimal("0.65")


class StructureInvalidationRule(BaseRule):
    """Exit when 1m or 5m structure breaks against the position direction."""

    PRIORITY = 20

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active or context.structure is None:
            return RuleResult.skip()
        direction = context.direction
        if direction is None:
            return RuleResult.skip()

        source = context.structure
        instrument = context.position.reference_instrument()
        swing_n = int(self.setting(context, "structure_swing_lookback", 10))
        choch_lookback = int(self.setting(context, "structure_choch_lookback", 30))

        seen_data = False
        for timeframe in STRUCTURE_TIMEFRAMES:
            close = source.last_close(instrument, timeframe)
            if close is None:
                continue
            seen_data = True
            trigger = None
            if direction == "bullish":
                swing_low = source.recent_low(instrument, timeframe, swing_n)
                if swing_low is not None and close < swing_low:
                    trigger = f"close {close} below swing low {swing_low}"
            else:
                swing_high = source.recent_high(instrument, timeframe, swing_n)
                if swing_high is not None and close > swing_high:
                    trigger = f"close {close} above swing high {swing_high}"

            if trigger is None:
                choch = source.change_of_character(instrument, timeframe, choch_lookback)
                if choch is not None and choch != direction:
                    trigger = f"{choch} change of character"

            if trigger:
                logger.debug(
                    "[StructureInvalidationRule] %s %sm structure broken: %s",
                    context.position.order_no, timeframe, trigger,
                )
                return RuleResult.exit(
                    f"STRUCTURE_INVALIDATION ({direction} structure broken on {timeframe}m)",
                    {"direction": direction, "timeframe": f"{timeframe}m", "trigger": trigger},
                )

        if not seen_data:
            return RuleResult.skip()
        return RuleResult.no_action()


class PremiumMomentumFailureRule(BaseRule):
    """Exit when price makes no progress in the position's favour within N candles."""

    PRIORITY = 30

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active or context.structure is None:
            return RuleResult.skip()
        direction = context.direction
        if direction is None:
            return RuleResult.skip()

        cfg = context.section("premium_momentum")
        if cfg.get("enabled") is False:
            return RuleResult.skip()
        thresholds = self.thresholds_for(context.index_key, cfg)
        instrument = context.position.reference_instrument()

        seen_data = False
        for timeframe in STRUCTURE_TIMEFRAMES:
            max_candles = int(thresholds.get(timeframe, DEFAULT_MOMENTUM_THRESHOLDS[timeframe]))
            frame = context.structure.candles(instrument, timeframe, max_candles + 1)
            if frame is None or len(frame) < max_candles + 1:
                continue
            seen_data = True
            if self._stalled(frame, direction, max_candles):
                return RuleResult.exit(
                    f"PREMIUM_MOMENTUM_FAILURE ({timeframe}m: no progress in {max_candles} candles)",
                    {"timeframe": f"{timeframe}m", "candles": max_candles, "direction": direction},
                )

        if not seen_data:
            return RuleResult.skip()
        return RuleResult.no_action()

    @staticmethod
    def thresholds_for(index_key: str, cfg: dict) -> dict[str, int]:
        overrides = cfg.get("thresholds") or {}
        if index_key in overrides:
            return {**DEFAULT_MOMENTUM_THRESHOLDS, **overrides[index_key]}
        return MOMENTUM_THRESHOLDS.get(index_key, DEFAULT_MOMENTUM_THRESHOLDS)

    @staticmethod
    def _stalled(frame, direction: str, max_candles: int) -> bool:
        recent = frame.tail(max_candles + 1)
        current = to_price(recent["close"].iloc[-1])
        previous = recent.iloc[:-1]
        if direction == "bullish":
            prev_high = to_price(previous["high"].max())
            if current is None or prev_high is None:
                return False
            return current <= prev_high * (1 + MOMENTUM_TOLERANCE)
        prev_low = to_price(previous["low"].min())
        if current is None or prev_low is None:
            return False
        return current >= prev_low * (1 - MOMENTUM_TOLERANCE)


class UnderlyingExitRule(BaseRule):
    """Exit when the underlying index turns against the position (feature-flagged)."""

    PRIORITY = 60

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return RuleResult.skip()
        if not context.feature("enable_underlying_aware_exits") or context.underlying is None:
            return RuleResult.skip()

        state = context.underlying.evaluate(context.position)
        if state is None:
            return RuleResult.no_action()
        snapshot = state.model_dump(mode="json")

        direction = context.direction
        if state.structure_broken_against(direction):
            return RuleResult.exit(
                "underlying_structure_break",
                {"underlying_state": snapshot, "position_direction": direction},
            )

        threshold = self.setting_decimal(context, "underlying_trend_score_threshold", DEFAULT_TREND_SCORE_THRESHOLD)
        if threshold is None or threshold <= 0:
            threshold = DEFAULT_TREND_SCORE_THRESHOLD
        if state.trend_score is not None and state.trend_score < threshold:
            return RuleResult.exit(
                "underlying_trend_weak",
                {"underlying_state": snapshot, "trend_score": state.trend_score, "threshold": threshold},
            )

        atr_threshold = to_decimal(
            self.setting(context, "underlying_atr_collapse_multiplier"), DEFAULT_ATR_COLLAPSE_RATIO
        )
        if state.atr_trend == "falling" and state.atr_ratio is not None and state.atr_ratio < atr_threshold:
            return RuleResult.exit(
                "underlying_atr_collapse",
                {"underlying_state": snapshot, "atr_ratio": state.atr_ratio, "threshold": atr_threshold},
            )
        return RuleResult.no_action()
