from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from exitguard.config import RiskConfig, settings
from exitguard.database import Database
from exitguard.models.pnl import ExecutionCosts, PnlSnapshot
from exitguard.models.position import Derivative, Instrument, Position
from exitguard.services.pnl_cache import PnlCache
from exitguard.services.position_store import PositionStore
from exitguard.utils.market_hours import IST

# Wednesday, mid-session
SESSION_NOW = datetime(2026, 10, 14, 10, 0, tzinfo=IST)


@pytest.fixture(autouse=True, scope="session")
def use_test_db(tmp_path_factory):
    # Route all database operations in tests to a temporary DuckDB file
    temp_dir = tmp_path_factory.mktemp("test_db")
    settings.DB_PATH = temp_dir / "test_exitguard.duckdb"
    yield


class FakeClock:
    """Settable clock / session oracle."""

    def __init__(self, now: datetime = SESSION_NOW, closed: bool = False) -> None:
        self.current = now
        self.closed = closed

    def now(self) -> datetime:
        return self.current

    def market_closed(self) -> bool:
        return self.closed

    def advance(self, seconds: float = 0, minutes: float = 0) -> datetime:
        self.current += timedelta(seconds=seconds, minutes=minutes)
        return self.current


def nifty_call(**overrides) -> Derivative:
    data = {
        "security_id": "43210",
        "exchange_segment": "NSE_FNO",
        "symbol": "NIFTY 25000 CE",
        "underlying_symbol": "NIFTY",
        "underlying_security_id": "13",
        "underlying_segment": "IDX_I",
        "option_type": "CE",
        "strike": Decimal("25000"),
    }
    data.update(overrides)
    return Derivative(**data)


def make_position(
    order_no: str = "ORD-1",
    *,
    entry: str | Decimal = "100",
    quantity: int = 50,
    status: str = "active",
    position_id: int | None = 1,
    instrument: Instrument | Derivative | None = None,
    **fields,
) -> Position:
    price = Decimal(str(entry))
    data = {
        "id": position_id,
        "order_no": order_no,
        "instrument": instrument or nifty_call(),
        "quantity": quantity,
        "entry_price": price,
        "avg_price": price if status != "pending" else None,
        "status": status,
        "created_at": SESSION_NOW - timedelta(minutes=5),
        "activated_at": SESSION_NOW - timedelta(minutes=5) if status != "pending" else None,
    }
    data.update(fields)
    return Position(**data)


def snapshot_at(position: Position, ltp: str | Decimal, observed_at: datetime = SESSION_NOW) -> PnlSnapshot:
    return ExecutionCosts().snapshot_for(position, Decimal(str(ltp)), observed_at)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def costs() -> ExecutionCosts:
    return ExecutionCosts()


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "exitguard_test.duckdb")
    yield database
    database.close()


@pytest.fixture
def store(db) -> PositionStore:
    return PositionStore(db)


@pytest.fixture
def cache() -> PnlCache:
    return PnlCache()


@pytest.fixture
def risk_config() -> RiskConfig:
    return RiskConfig({
        "risk": {"stop_loss_pct": 20, "take_profit_pct": 30},
        "profit_floor": {"enabled": True, "lock_rupees": 1000},
    })
