"""DuckDB session management and table initialization."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import duckdb

from exitguard.config import settings
from exitguard.utils.logger import logger


class Database:
    """One DuckDB connection shared by the store and the audit log.

    DuckDB connections are not safe for concurrent use, so every statement
    runs under a re-entrant lock.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = str(path or settings.DB_PATH)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        logger.info("Opening DuckDB at %s", self.path)
        self._conn = duckdb.connect(self.path)
        self._lock = threading.RLock()
        self._closed = False
        _init_tables(self._conn)

    def execute(self, sql: str, params: list[Any] | None = None) -> list[tuple]:
        with self._lock:
            return self._conn.execute(sql, params or []).fetchall()

    def fetch_dicts(self, sql: str, params: list[Any] | None = None) -> list[dict[str, Any]]:
        with self._lock:
            cursor = self._conn.execute(sql, params or [])
            columns = [d[0] for d in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True


def _init_tables(conn: duckdb.DuckDBPyConnection) -> None:
    """Create tables if they don't exist."""
    conn.execute("CREATE SEQUENCE IF NOT EXISTS positions_id_seq START 1;")

    # Timestamps are ISO-8601 strings with offset, money is fixed-point.
    conn.execute("""
        CREATE TABLE IF NOT EXISTS positions (
            id                   BIGINT PRIMARY KEY DEFAULT nextval('positions_id_seq'),
            order_no             VARCHAR NOT NULL UNIQUE,
            instrument           VARCHAR NOT NULL,
            direction            VARCHAR,
            quantity             INTEGER NOT NULL,
            entry_price          DECIMAL(18, 4),
            avg_price            DECIMAL(18, 4),
            exit_price           DECIMAL(18, 4),
            last_pnl_rupees      DECIMAL(18, 4),
            last_pnl_pct         DECIMAL(18, 4),
            high_water_mark_pnl  DECIMAL(18, 4) DEFAULT 0,
            status               VARCHAR NOT NULL,
            trade_state          VARCHAR NOT NULL DEFAULT 'init',
            profit_zone          VARCHAR,
            paper                BOOLEAN DEFAULT TRUE,
            exit_reason          VARCHAR,
            profit_floor_rupees  DECIMAL(18, 4),
            profit_floor_set_at  VARCHAR,
            meta                 VARCHAR DEFAULT '{}',
            created_at           VARCHAR,
            activated_at         VARCHAR,
            exited_at            VARCHAR,
            validated_at         VARCHAR,
            expansion_at         VARCHAR
        );
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS exit_events (
            id          VARCHAR PRIMARY KEY,
            timestamp   VARCHAR NOT NULL,
            order_no    VARCHAR,
            event_type  VARCHAR NOT NULL,
            detail      VARCHAR,
            metadata    VARCHAR,
            status      VARCHAR DEFAULT 'success'
        );
    """)
