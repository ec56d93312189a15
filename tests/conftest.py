"""Shared pytest fixtures for all test suites."""

import os
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from prometheus_client import REGISTRY
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from backend.app.db.binder import SessionBindError, SessionBinder
from backend.app.db.models import Base
from backend.app.utils.metrics import instrument_pool


class RecordingBinder(SessionBinder):
    """Binder for databases without ``set_config``.

    Issues a harmless statement as the first statement of the transaction
    and remembers which subject each connection was bound to.
    """

    def __init__(self) -> None:
        super().__init__("request.jwt.claim.sub")
        self.fail_for: set[str] = set()
        self.calls: list[str] = []
        self.bound: dict[AsyncConnection, str] = {}

    async def bind(self, connection: AsyncConnection, subject_id: str) -> None:
        self.calls.append(subject_id)
        if subject_id in self.fail_for:
            raise SessionBindError("bind refused")
        await connection.execute(text("SELECT 1"))
        self.bound[connection] = subject_id


def sample(name: str, labels: dict[str, str] | None = None) -> float:
    """Current value of a Prometheus sample (0 when never observed)."""
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class PoolCounter:
    """Snapshot of pool checkouts/checkins for delta assertions."""

    def __init__(self) -> None:
        self._checkouts = sample("db_pool_checkouts_total")
        self._checkins = sample("db_pool_checkins_total")

    @property
    def checkouts(self) -> float:
        return sample("db_pool_checkouts_total") - self._checkouts

    @property
    def checkins(self) -> float:
        return sample("db_pool_checkins_total") - self._checkins

    @property
    def balanced(self) -> bool:
        return self.checkouts == self.checkins


class OutcomeCounter:
    """Snapshot of finalized scopes by outcome."""

    def __init__(self) -> None:
        self._success = sample("request_scope_finalized_total", {"outcome": "success"})
        self._failure = sample("request_scope_finalized_total", {"outcome": "failure"})

    @property
    def commits(self) -> float:
        return sample("request_scope_finalized_total", {"outcome": "success"}) - self._success

    @property
    def rollbacks(self) -> float:
        return sample("request_scope_finalized_total", {"outcome": "failure"}) - self._failure


@pytest.fixture
def recording_binder() -> RecordingBinder:
    return RecordingBinder()


@pytest.fixture
def pool_counter() -> PoolCounter:
    return PoolCounter()


@pytest.fixture
def outcome_counter() -> OutcomeCounter:
    return OutcomeCounter()


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with real BEGIN/SAVEPOINT semantics.

    The driver's implicit transaction handling is turned off so that
    SQLAlchemy emits BEGIN itself and SAVEPOINTs nest inside it.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN")

    instrument_pool(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def postgres_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create async engine for PostgreSQL integration tests.

    Requires DATABASE_URL to be set to a real PostgreSQL connection string.
    Tests using this fixture should be marked with @pytest.mark.postgres.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set - skipping postgres test")

    if not database_url.startswith(("postgresql://", "postgresql+asyncpg://")):
        pytest.skip(f"DATABASE_URL is not PostgreSQL: {database_url}")

    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    engine = create_async_engine(database_url, poolclass=NullPool, echo=False)
    instrument_pool(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()
