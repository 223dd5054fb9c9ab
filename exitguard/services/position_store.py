"""Position Store — durable position records in DuckDB.

The monitor reads active positions in id-ordered batches and writes single
rows; there are no cross-row transactions.  Writes that must happen at most
once (arming a profit floor, entering a profit zone, finalizing an exit)
carry a ``WHERE`` guard and report whether they won.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from datetime import datetime
from decimal import Decimal
from typing import Any

from exitguard.database import Database
from exitguard.errors import PositionNotFound
from exitguard.models.pnl import PnlSnapshot
from exitguard.models.position import Position
from exitguard.utils.logger import logger
from exitguard.utils.market_hours import now_ist
from exitguard.utils.money import HUNDRED

_TIMESTAMP_FIELDS = (
    "created_at",
    "activated_at",
    "exited_at",
    "validated_at",
    "expansion_at",
    "profit_floor_set_at",
)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    raise TypeError(f"Not JSON serializable: {type(value).__name__}")


def dump_json(data: Any) -> str:
    return json.dumps(data, default=_json_default)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class PositionStore:
    """CRUD plus guarded single-row updates over the ``positions`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, position_id: int) -> Position | None:
        rows = self._db.fetch_dicts("SELECT * FROM positions WHERE id = ?", [position_id])
        return self._to_position(rows[0]) if rows else None

    def get_by_order_no(self, order_no: str) -> Position | None:
        rows = self._db.fetch_dicts("SELECT * FROM positions WHERE order_no = ?", [order_no])
        return self._to_position(rows[0]) if rows else None

    def iter_active(self, batch_size: int = 100) -> Iterator[Position]:
        """Active positions in id order, fetched ``batch_size`` rows at a time."""
        last_id = 0
        while True:
            rows = self._db.fetch_dicts(
                "SELECT * FROM positions WHERE status = 'active' AND id > ? ORDER BY id LIMIT ?",
                [last_id, batch_size],
            )
            if not rows:
                return
            for row in rows:
                yield self._to_position(row)
            last_id = rows[-1]["id"]

    def active_positions(self) -> list[Position]:
        return list(self.iter_active())

    def active_ids(self) -> set[int]:
        return {row[0] for row in self._db.execute("SELECT id FROM positions WHERE status = 'active'")}

    def count_active(self) -> int:
        return int(self._db.execute("SELECT COUNT(*) FROM positions WHERE status = 'active'")[0][0])

    def final_snapshot(self, position_id: int) -> PnlSnapshot | None:
        """Durable PnL of a closed position; ``None`` while it is still live."""
        position = self.get(position_id)
        if position is None:
            raise PositionNotFound(f"No position with id {position_id}")
        if not position.is_terminal or position.last_pnl_rupees is None:
            return None
        basis = position.cost_basis
        return PnlSnapshot(
            pnl=position.last_pnl_rupees,
            pnl_pct=position.last_pnl_pct,
            hwm=position.high_water_mark_pnl,
            hwm_pct=(position.high_water_mark_pnl / basis * HUNDRED) if basis else None,
            ltp=position.exit_price,
            observed_at=position.exited_at or position.created_at,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, position: Position) -> Position:
        row = self._to_row(position)
        columns = [c for c in row if c != "id"]
        placeholders = ", ".join("?" for _ in columns)
        result = self._db.execute(
            f"INSERT INTO positions ({', '.join(columns)}) VALUES ({placeholders}) RETURNING id",
            [row[c] for c in columns],
        )
        position.id = int(result[0][0])
        logger.info("[PositionStore] Added %s (id=%d, status=%s)", position.order_no, position.id, position.status)
        return position

    def save(self, position: Position) -> None:
        if position.id is None:
            raise PositionNotFound(f"Position {position.order_no} has not been added")
        row = self._to_row(position)
        columns = [c for c in row if c not in ("id", "order_no")]
        assignments = ", ".join(f"{c} = ?" for c in columns)
        self._db.execute(
            f"UPDATE positions SET {assignments} WHERE id = ?",
            [row[c] for c in columns] + [position.id],
        )

    def update_pnl(self, position: Position) -> bool:
        """Persist live PnL.  A no-op once the row has left ``active``."""
        rows = self._db.execute(
            """
            UPDATE positions
            SET last_pnl_rupees = ?, last_pnl_pct = ?,
                high_water_mark_pnl = GREATEST(COALESCE(high_water_mark_pnl, 0), ?)
            WHERE id = ? AND status = 'active'
            RETURNING id
            """,
            [position.last_pnl_rupees, position.last_pnl_pct, position.high_water_mark_pnl, position.id],
        )
        return bool(rows)

    def update_meta(self, position: Position) -> bool:
        """Persist meta.  Terminal rows keep the meta they were closed with."""
        rows = self._db.execute(
            "UPDATE positions SET meta = ? WHERE id = ? AND status IN ('pending', 'active') RETURNING id",
            [dump_json(position.meta), position.id],
        )
        return bool(rows)

    def update_trade_state(self, position: Position) -> None:
        self._db.execute(
            "UPDATE positions SET trade_state = ?, validated_at = ?, expansion_at = ? WHERE id = ?",
            [position.trade_state, _iso(position.validated_at), _iso(position.expansion_at), position.id],
        )

    def arm_profit_floor(self, position_id: int, floor: Decimal, at: datetime) -> bool:
        rows = self._db.execute(
            """
            UPDATE positions SET profit_floor_rupees = ?, profit_floor_set_at = ?
            WHERE id = ? AND status = 'active' AND profit_floor_rupees IS NULL
            RETURNING id
            """,
            [floor, at.isoformat(), position_id],
        )
        return bool(rows)

    def raise_profit_floor(self, position_id: int, floor: Decimal) -> bool:
        rows = self._db.execute(
            """
            UPDATE positions SET profit_floor_rupees = ?
            WHERE id = ? AND status = 'active' AND profit_floor_rupees < ?
            RETURNING id
            """,
            [floor, position_id, floor],
        )
        return bool(rows)

    def enter_profit_zone(self, position: Position, zone: str) -> bool:
        """Record a zone entry (with meta) unless that zone is already recorded."""
        rows = self._db.execute(
            """
            UPDATE positions SET profit_zone = ?, meta = ?
            WHERE id = ? AND status = 'active' AND profit_zone IS DISTINCT FROM ?
            RETURNING id
            """,
            [zone, dump_json(position.meta), position.id, zone],
        )
        return bool(rows)

    def finalize_exit(self, position: Position) -> bool:
        """Write the exited row.  Refuses if the stored row is no longer active."""
        row = self._to_row(position)
        columns = [c for c in row if c not in ("id", "order_no")]
        assignments = ", ".join(f"{c} = ?" for c in columns)
        rows = self._db.execute(
            f"UPDATE positions SET {assignments} WHERE id = ? AND status = 'active' RETURNING id",
            [row[c] for c in columns] + [position.id],
        )
        return bool(rows)

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _to_row(position: Position) -> dict[str, Any]:
        return {
            "id": position.id,
            "order_no": position.order_no,
            "instrument": position.instrument.model_dump_json(),
            "direction": position.resolved_direction(),
            "quantity": position.quantity,
            "entry_price": position.entry_price,
            "avg_price": position.avg_price,
            "exit_price": position.exit_price,
            "last_pnl_rupees": position.last_pnl_rupees,
            "last_pnl_pct": position.last_pnl_pct,
            "high_water_mark_pnl": position.high_water_mark_pnl,
            "status": position.status,
            "trade_state": position.trade_state,
            "profit_zone": position.meta.get("profit_zone_state"),
            "paper": position.paper,
            "exit_reason": position.exit_reason,
            "profit_floor_rupees": position.profit_floor_rupees,
            "profit_floor_set_at": _iso(position.profit_floor_set_at),
            "meta": dump_json(position.meta),
            "created_at": _iso(position.created_at),
            "activated_at": _iso(position.activated_at),
            "exited_at": _iso(position.exited_at),
            "validated_at": _iso(position.validated_at),
            "expansion_at": _iso(position.expansion_at),
        }

    @staticmethod
    def _to_position(row: dict[str, Any]) -> Position:
        data = dict(row)
        data.pop("direction", None)
        data.pop("profit_zone", None)
        data["instrument"] = json.loads(data["instrument"])
        data["meta"] = json.loads(data.get("meta") or "{}")
        if data.get("high_water_mark_pnl") is None:
            data.pop("high_water_mark_pnl", None)
        if not data.get("created_at"):
            data["created_at"] = now_ist()
        for field in _TIMESTAMP_FIELDS:
            if data.get(field) is None:
                data.pop(field, None)
        return Position.model_validate(data)
