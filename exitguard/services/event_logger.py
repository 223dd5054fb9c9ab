"""Exit Event Logger — persistent audit trail for exit decisions.

``EventLog.record()`` writes one row per decision, dispatch outcome or
lifecycle change to the ``exit_events`` DuckDB table.  A failing audit write
is logged and never propagates into the monitoring path.
"""

from __future__ import annotations

import uuid
from typing import Any

from exitguard.database import Database
from exitguard.services.position_store import dump_json
from exitguard.utils.logger import logger
from exitguard.utils.market_hours import now_ist


class EventLog:
    def __init__(self, db: Database) -> None:
        self._db = db

    def record(
        self,
        event_type: str,
        detail: str,
        *,
        order_no: str | None = None,
        metadata: dict[str, Any] | None = None,
        status: str = "success",
    ) -> None:
        """Write one event row.

        Parameters
        ----------
        event_type : str
            Short event name, e.g. ``exit_triggered``, ``exit_executed``,
            ``exit_failed``, ``profit_floor_armed``, ``position_activated``.
        detail : str
            Human-readable summary (usually the exit reason).
        order_no : str | None
            Position order reference (``None`` for loop-level events).
        metadata : dict | None
            Rule diagnostics or gateway reply.
        status : str
            ``success`` | ``error`` | ``warning`` | ``skipped``.
        """
        try:
            self._db.execute(
                """
                INSERT INTO exit_events
                    (id, timestamp, order_no, event_type, detail, metadata, status)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    uuid.uuid4().hex,
                    now_ist().isoformat(),
                    order_no,
                    event_type,
                    detail,
                    dump_json(metadata or {}),
                    status,
                ],
            )
        except Exception as exc:
            logger.warning("[EventLog] Failed to record %s for %s: %s", event_type, order_no, exc)

    def events_for(self, order_no: str) -> list[dict[str, Any]]:
        return self._db.fetch_dicts(
            "SELECT * FROM exit_events WHERE order_no = ? ORDER BY timestamp, rowid",
            [order_no],
        )
