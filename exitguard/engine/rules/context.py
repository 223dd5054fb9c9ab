"""RuleContext — normalized decision inputs for one position at one instant.

Built fresh for every (position, cycle) pair and never persisted.  Rules read
PnL, prices and thresholds through it instead of touching the position, the
cache or the config document directly.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime, time
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from exitguard.config import RiskConfig
from exitguard.models.pnl import ExecutionCosts, PnlSnapshot
from exitguard.models.position import Direction, Position
from exitguard.utils.market_hours import now_ist, parse_hhmm
from exitguard.utils.money import HUNDRED, ZERO, to_decimal

if TYPE_CHECKING:
    from exitguard.interfaces import StructureSource
    from exitguard.services.underlying_monitor import UnderlyingMonitor

DEFAULT_TRAILING_ACTIVATION_PCT = Decimal("10")


class RuleContext:
    """Read-only adapter over a position, its PnL snapshot and the risk config."""

    def __init__(
        self,
        position: Position,
        snapshot: PnlSnapshot | None,
        config: RiskConfig | Mapping[str, Any] | None = None,
        *,
        now: datetime | None = None,
        costs: ExecutionCosts | None = None,
        structure: StructureSource | None = None,
        underlying: UnderlyingMonitor | None = None,
        ltp_history: Sequence[Decimal] | None = None,
    ) -> None:
        if config is None:
            config = RiskConfig({})
        elif not isinstance(config, RiskConfig):
            config = RiskConfig({"risk": dict(config)})
        self.position = position
        self.snapshot = snapshot
        self.risk_config = config
        self.now = now or now_ist()
        self.costs = costs or ExecutionCosts()
        self.structure = structure
        self.underlying = underlying
        self.ltp_history: list[Decimal] = list(ltp_history or [])

    # ------------------------------------------------------------------
    # PnL and prices
    # ------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return self.position.is_active and self.snapshot is not None

    @property
    def pnl_pct(self) -> Decimal | None:
        return self.snapshot.pnl_pct if self.snapshot else None

    @property
    def pnl_rupees(self) -> Decimal | None:
        return self.snapshot.pnl if self.snapshot else None

    @property
    def high_water_mark(self) -> Decimal | None:
        if self.snapshot is None:
            return None
        return max(self.snapshot.hwm, self.position.high_water_mark_pnl)

    @property
    def peak_profit_pct(self) -> Decimal | None:
        """HWM as a percentage of cost basis."""
        hwm = self.high_water_mark
        basis = self.position.cost_basis
        if hwm is None or not basis:
            return self.snapshot.hwm_pct if self.snapshot else None
        return hwm / basis * HUNDRED

    @property
    def current_price(self) -> Decimal | None:
        return self.snapshot.ltp if self.snapshot else None

    @property
    def entry_price(self) -> Decimal | None:
        return self.position.effective_entry

    @property
    def quantity(self) -> int:
        return self.position.quantity

    @property
    def exit_fee(self) -> Decimal:
        return self.costs.exit_fee

    @property
    def direction(self) -> Direction | None:
        return self.position.resolved_direction()

    @property
    def index_key(self) -> str:
        return self.position.index_key

    # ------------------------------------------------------------------
    # Config lookup
    # ------------------------------------------------------------------

    def config_value(self, key: Any, default: Any = None) -> Any:
        """Exact key, then its string form, then ``default``."""
        risk = self.risk_config.risk
        value = risk.get(key)
        if value is None and not isinstance(key, str):
            value = risk.get(str(key))
        return default if value is None else value

    def config_decimal(self, key: Any, default: Decimal | int | str | None = None) -> Decimal | None:
        fallback = to_decimal(default)
        return to_decimal(self.config_value(key), fallback)

    def config_time(self, key: Any, default: str | None = None) -> time | None:
        """``"HH:MM"`` setting as a ``time``; malformed values fall back to ``default``."""
        raw = self.config_value(key, default)
        try:
            return parse_hhmm(raw)
        except (TypeError, ValueError):
            return parse_hhmm(default)

    def section(self, name: str) -> dict[str, Any]:
        return self.risk_config.section(name)

    def feature(self, name: str) -> bool:
        return self.risk_config.feature(name)

    # ------------------------------------------------------------------
    # Trailing gate
    # ------------------------------------------------------------------

    @property
    def trailing_activation_pct(self) -> Decimal:
        """``trailing.activation_pct`` wins over the flat ``trailing_activation_pct``."""
        nested = to_decimal(self.section("trailing").get("activation_pct"))
        if nested is not None:
            return nested
        return self.config_decimal("trailing_activation_pct", DEFAULT_TRAILING_ACTIVATION_PCT)

    @property
    def trailing_activated(self) -> bool:
        pnl_pct = self.pnl_pct
        activation = self.trailing_activation_pct
        if pnl_pct is None or activation == ZERO:
            return False
        return pnl_pct >= activation
