"""Ambient data access: prefer the request's bound transaction over the pool.

Every data-access call goes through ``ambient_connection`` or
``ambient_session``. Inside a request scope they hand out the scope's
connection, so queries run under the bound identity; outside one they use
the default pool.
"""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession

from backend.app.db.context import current_scope
from backend.app.db.engine import get_async_engine


@asynccontextmanager
async def ambient_connection(engine: AsyncEngine | None = None) -> AsyncIterator[AsyncConnection]:
    """Yield the scope's connection, or a pooled one inside its own transaction.

    The scope's connection is neither committed nor closed here; the
    request's coordinator owns it.
    """
    scope = current_scope()
    if scope is not None:
        yield scope.connection
        return

    async with (engine or get_async_engine()).begin() as connection:
        yield connection


@asynccontextmanager
async def ambient_session(engine: AsyncEngine | None = None) -> AsyncIterator[AsyncSession]:
    """Yield an ORM session on the scope's connection, or on the default pool.

    A scoped session works inside a SAVEPOINT of the request transaction:
    ``commit()`` releases the savepoint and ``rollback()`` undoes only the
    session's own work, so the identity bind stays in force and the outer
    transaction is left to the coordinator.
    """
    scope = current_scope()
    if scope is not None:
        async with AsyncSession(
            bind=scope.connection,
            expire_on_commit=False,
            join_transaction_mode="create_savepoint",
        ) as session:
            yield session
        return

    async with AsyncSession(engine or get_async_engine(), expire_on_commit=False) as session:
        yield session


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for an ambient async database session.

    Yields:
        AsyncSession instance
    """
    async with ambient_session() as session:
        yield session
