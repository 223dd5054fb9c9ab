"""Logging for the exit core.

Every line carries the thread and, while a position is being evaluated or
exited, its order number::

    [2026-10-14 10:00:05] WARNING  exitguard-monitor ORD-1 | [ExitDispatcher] ...

Wrap per-position work in ``position_context(order_no)`` to get the tag.
The console level follows ``EXITGUARD_LOG_LEVEL``; each process also writes
a DEBUG-level session file under ``LOGS_DIR``.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path

from exitguard.config import settings

SESSION_FILES_KEPT = 10
NOISY_LOGGERS = ("apscheduler", "duckdb")

_order_no: ContextVar[str] = ContextVar("exitguard_order_no", default="-")


@contextmanager
def position_context(order_no: str) -> Iterator[None]:
    """Tag log lines emitted inside the block with ``order_no``."""
    token = _order_no.set(order_no)
    try:
        yield
    finally:
        _order_no.reset(token)


class _OrderNoFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.order_no = _order_no.get()
        return True


def _session_file(logs_dir: Path) -> Path:
    """New session file; the oldest beyond ``SESSION_FILES_KEPT`` are removed."""
    logs_dir.mkdir(parents=True, exist_ok=True)
    sessions = sorted(logs_dir.glob("exitguard_*.log"))
    for old in sessions[: max(len(sessions) - SESSION_FILES_KEPT + 1, 0)]:
        old.unlink(missing_ok=True)
    return logs_dir / f"exitguard_{datetime.now():%Y%m%d_%H%M%S}.log"


def _setup_logger(name: str = "exitguard") -> logging.Logger:
    log = logging.getLogger(name)
    log.setLevel(logging.DEBUG)
    if log.handlers:
        return log

    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(threadName)s %(order_no)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    log.addFilter(_OrderNoFilter())

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    console.setFormatter(fmt)
    log.addHandler(console)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    try:
        session = _session_file(settings.LOGS_DIR)
        file_h = logging.FileHandler(session, encoding="utf-8")
    except OSError as exc:
        log.warning("Session log disabled (%s); console only", exc)
        return log
    file_h.setLevel(logging.DEBUG)
    file_h.setFormatter(fmt)
    log.addHandler(file_h)
    log.debug("Session log: %s", session.name)
    return log


logger = _setup_logger()
