"""Position models — the watched instrument, the position entity and its state machines.

A position references either an outright instrument (an index or stock) or a
derivative written on one.  Both share ``security_id``, ``exchange_segment``
and ``symbol``; the ``kind`` tag picks the variant when a record is loaded.

Lifecycle (``status``)::

    pending ──► active ──► exited
       │
       └──────► cancelled

``trade_state`` is independent and only moves forward:
init ─(≥1R)─► validated ─(≥2R)─► expansion.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from exitguard.config import settings
from exitguard.errors import InvalidStateTransition
from exitguard.utils.market_hours import now_ist
from exitguard.utils.money import HUNDRED, ZERO, to_decimal

PositionStatus = Literal["pending", "active", "exited", "cancelled"]
TradeState = Literal["init", "validated", "expansion"]
Direction = Literal["bullish", "bearish"]
ProfitZone = Literal["entry", "secured_profit_zone", "runner_zone"]

VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"active", "cancelled"}),
    "active": frozenset({"exited"}),
    "exited": frozenset(),
    "cancelled": frozenset(),
}

STATUS_LABELS = {
    "pending": "Pending fill",
    "active": "Active",
    "exited": "Exited",
    "cancelled": "Cancelled",
}

_TRADE_STATE_ORDER: tuple[str, ...] = ("init", "validated", "expansion")


def valid_transitions_from(status: str) -> frozenset[str]:
    return VALID_TRANSITIONS.get(status, frozenset())


def is_valid_transition(from_status: str, to_status: str) -> bool:
    return to_status in valid_transitions_from(from_status)


def is_terminal_status(status: str) -> bool:
    return status in VALID_TRANSITIONS and not VALID_TRANSITIONS[status]


def classify_profit_zone(
    net_pnl: Decimal | None,
    secured_threshold: Decimal,
    runner_threshold: Decimal,
) -> ProfitZone:
    """Bucket net PnL into entry / secured / runner bands."""
    if net_pnl is None or net_pnl < secured_threshold:
        return "entry"
    if net_pnl < runner_threshold:
        return "secured_profit_zone"
    return "runner_zone"


# ══════════════════════════════════════════════════════════════════════
# Watchable instruments
# ══════════════════════════════════════════════════════════════════════


class Instrument(BaseModel):
    """An outright instrument — index, stock or future traded as-is."""

    kind: Literal["instrument"] = "instrument"
    security_id: str
    exchange_segment: str
    symbol: str

    @property
    def index_key(self) -> str:
        return self.symbol.upper()

    @property
    def option_type(self) -> str | None:
        return None

    def underlying(self) -> Instrument | None:
        return None


class Derivative(BaseModel):
    """An option contract; carries a pointer to its underlying index."""

    kind: Literal["derivative"] = "derivative"
    security_id: str
    exchange_segment: str
    symbol: str
    underlying_symbol: str
    underlying_security_id: str | None = None
    underlying_segment: str | None = None
    option_type: Literal["CE", "PE"] | None = None
    strike: Decimal | None = None
    expiry: date | None = None

    @property
    def index_key(self) -> str:
        return self.underlying_symbol.upper()

    def underlying(self) -> Instrument | None:
        if not self.underlying_security_id or not self.underlying_segment:
            return None
        return Instrument(
            security_id=self.underlying_security_id,
            exchange_segment=self.underlying_segment,
            symbol=self.underlying_symbol,
        )


Watchable = Annotated[Instrument | Derivative, Field(discriminator="kind")]


# ══════════════════════════════════════════════════════════════════════
# Position entity
# ══════════════════════════════════════════════════════════════════════


class Position(BaseModel):
    """One order-backed position under exit management."""

    id: int | None = None
    order_no: str
    instrument: Watchable
    quantity: int = Field(ge=0)
    entry_price: Decimal | None = None
    avg_price: Decimal | None = None
    exit_price: Decimal | None = None
    last_pnl_rupees: Decimal | None = None
    last_pnl_pct: Decimal | None = None
    high_water_mark_pnl: Decimal = ZERO
    status: PositionStatus = "pending"
    trade_state: TradeState = "init"
    paper: bool = Field(default_factory=lambda: settings.PAPER_TRADING)
    exit_reason: str | None = None
    profit_floor_rupees: Decimal | None = None
    profit_floor_set_at: datetime | None = None
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=now_ist)
    activated_at: datetime | None = None
    exited_at: datetime | None = None
    validated_at: datetime | None = None
    expansion_at: datetime | None = None

    # ── Derived views ───────────────────────────────────────────────

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.status)

    @property
    def effective_entry(self) -> Decimal | None:
        """Fill price when known, else the submitted entry price."""
        return self.avg_price if self.avg_price is not None else self.entry_price

    @property
    def cost_basis(self) -> Decimal | None:
        entry = self.effective_entry
        if entry is None or self.quantity <= 0:
            return None
        return entry * self.quantity

    @property
    def high_water_mark_pct(self) -> Decimal | None:
        basis = self.cost_basis
        if not basis:
            return None
        return self.high_water_mark_pnl / basis * HUNDRED

    @property
    def index_key(self) -> str:
        return str(self.meta.get("index_key") or self.instrument.index_key).upper()

    def reference_instrument(self) -> Instrument | Derivative:
        """The index a derivative is written on, else the instrument itself."""
        return self.instrument.underlying() or self.instrument

    def display_status(self) -> str:
        return STATUS_LABELS.get(self.status, self.status)

    def resolved_direction(self) -> Direction | None:
        """Direction from meta, then option type, then the entry signal metadata."""
        value = _normalize_direction(self.meta.get("direction"))
        if value:
            return value
        if self.instrument.option_type == "CE":
            return "bullish"
        if self.instrument.option_type == "PE":
            return "bearish"
        entry_meta = self.meta.get("entry_metadata")
        if isinstance(entry_meta, dict):
            return _normalize_direction(entry_meta.get("direction"))
        return None

    # ── Status state machine ────────────────────────────────────────

    def can_transition_to(self, status: str) -> bool:
        return is_valid_transition(self.status, status)

    def transition_to(self, status: PositionStatus) -> None:
        if not self.can_transition_to(status):
            raise InvalidStateTransition(self.status, status, self.order_no)
        self.status = status

    def activate(
        self,
        avg_price: Decimal,
        quantity: int | None = None,
        at: datetime | None = None,
    ) -> None:
        """Fill confirmed: capture the fill price and go active."""
        qty = self.quantity if quantity is None else quantity
        price = to_decimal(avg_price)
        if qty <= 0:
            raise ValueError(f"Active position {self.order_no} needs quantity > 0, got {qty}")
        if price is None or price <= ZERO:
            raise ValueError(f"Invalid fill price for {self.order_no}: {avg_price!r}")
        self.transition_to("active")
        self.quantity = qty
        self.avg_price = price
        if self.entry_price is None:
            self.entry_price = price
        self.activated_at = at or now_ist()
        self.last_pnl_rupees = ZERO
        self.last_pnl_pct = ZERO

    def cancel(self, reason: str | None = None) -> None:
        self.transition_to("cancelled")
        if reason:
            self.meta["cancel_reason"] = reason

    def mark_exited(
        self,
        exit_price: Decimal | None,
        final_pnl: Decimal | None,
        final_pnl_pct: Decimal | None,
        at: datetime | None = None,
    ) -> None:
        """Terminal transition; PnL fields are frozen from here on."""
        self.transition_to("exited")
        self.exit_price = exit_price
        if final_pnl is not None:
            self.last_pnl_rupees = final_pnl
            self.high_water_mark_pnl = max(self.high_water_mark_pnl, final_pnl)
        if final_pnl_pct is not None:
            self.last_pnl_pct = final_pnl_pct
        self.exited_at = at or now_ist()

    # ── PnL ─────────────────────────────────────────────────────────

    def apply_pnl(
        self,
        pnl: Decimal,
        pnl_pct: Decimal | None,
        hwm: Decimal | None = None,
    ) -> bool:
        """Record live PnL.  Ignored unless active; the HWM never decreases."""
        if not self.is_active:
            return False
        self.last_pnl_rupees = pnl
        self.last_pnl_pct = pnl_pct
        candidates = [self.high_water_mark_pnl, pnl]
        if hwm is not None:
            candidates.append(hwm)
        self.high_water_mark_pnl = max(candidates)
        return True

    def advance_trade_state(self, r_multiple: Decimal | None, at: datetime | None = None) -> bool:
        """Move init→validated at ≥1R and validated→expansion at ≥2R.  Never backwards."""
        if not self.is_active or r_multiple is None:
            return False
        moved = False
        when = at or now_ist()
        if self.trade_state == "init" and r_multiple >= 1:
            self.trade_state = "validated"
            self.validated_at = when
            moved = True
        if self.trade_state == "validated" and r_multiple >= 2:
            self.trade_state = "expansion"
            self.expansion_at = when
            moved = True
        return moved

    def trade_state_reached(self, state: TradeState) -> bool:
        return _TRADE_STATE_ORDER.index(self.trade_state) >= _TRADE_STATE_ORDER.index(state)


def _normalize_direction(value: Any) -> Direction | None:
    if value is None:
        return None
    text = str(value).strip().lower()
    if text in ("bullish", "long", "long_ce", "ce", "buy"):
        return "bullish"
    if text in ("bearish", "short", "long_pe", "pe", "sell"):
        return "bearish"
    return None
