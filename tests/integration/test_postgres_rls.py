"""PostgreSQL tests for the transaction-local security context.

Run with DATABASE_URL pointing at a real PostgreSQL database.
"""

import asyncio

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.db.ambient import ambient_connection
from backend.app.db.binder import SessionBinder
from backend.app.db.lifecycle import run_with_identity

pytestmark = pytest.mark.postgres

CLAIM_QUERY = text("SELECT current_setting('request.jwt.claim.sub', true)")


@pytest.mark.asyncio
async def test_concurrent_scopes_see_only_their_own_claim(postgres_engine: AsyncEngine) -> None:
    """Test interleaved bound transactions each observe only their own subject."""
    binder = SessionBinder("request.jwt.claim.sub")
    both_bound = asyncio.Event()
    arrived: list[str] = []

    async def observe(subject_id: str) -> list[str | None]:
        async def body() -> list[str | None]:
            seen = []
            arrived.append(subject_id)
            if len(arrived) == 2:
                both_bound.set()
            await asyncio.wait_for(both_bound.wait(), timeout=5)
            for _ in range(3):
                async with ambient_connection(postgres_engine) as connection:
                    seen.append(await connection.scalar(CLAIM_QUERY))
                await asyncio.sleep(0)
            return seen

        return await run_with_identity(subject_id, body, engine=postgres_engine, binder=binder)

    seen_1, seen_2 = await asyncio.gather(observe("u1"), observe("u2"))

    assert seen_1 == ["u1"] * 3
    assert seen_2 == ["u2"] * 3


@pytest.mark.asyncio
async def test_claim_does_not_outlive_transaction(postgres_engine: AsyncEngine) -> None:
    """Test unbound queries after a scope never observe its subject."""
    binder = SessionBinder("request.jwt.claim.sub")

    async def body() -> None:
        async with ambient_connection(postgres_engine) as connection:
            assert await connection.scalar(CLAIM_QUERY) == "u1"

    await run_with_identity("u1", body, engine=postgres_engine, binder=binder)

    async with ambient_connection(postgres_engine) as connection:
        assert await connection.scalar(CLAIM_QUERY) in (None, "")


@pytest.mark.asyncio
async def test_rollback_clears_claim(postgres_engine: AsyncEngine) -> None:
    """Test a rolled-back scope leaves no claim behind either."""
    binder = SessionBinder("request.jwt.claim.sub")

    async def body() -> None:
        raise RuntimeError("request failed")

    with pytest.raises(RuntimeError):
        await run_with_identity("u3", body, engine=postgres_engine, binder=binder)

    async with ambient_connection(postgres_engine) as connection:
        assert await connection.scalar(CLAIM_QUERY) in (None, "")


@pytest.mark.asyncio
async def test_gated_view_shows_each_subject_only_its_rows(postgres_engine: AsyncEngine) -> None:
    """Test concurrent subjects reading a claim-gated view see only their own rows."""
    binder = SessionBinder("request.jwt.claim.sub")
    async with postgres_engine.begin() as connection:
        await connection.execute(text("CREATE TABLE rls_probe (owner text, note text)"))
        await connection.execute(
            text(
                "CREATE VIEW rls_probe_visible AS SELECT note FROM rls_probe "
                "WHERE owner = current_setting('request.jwt.claim.sub', true)"
            )
        )
        await connection.execute(
            text(
                "INSERT INTO rls_probe VALUES "
                "('u1', 'u1-a'), ('u1', 'u1-b'), ('u2', 'u2-a'), ('u3', 'u3-a')"
            )
        )

    async def visible_notes(subject_id: str) -> list[str]:
        async def body() -> list[str]:
            async with ambient_connection(postgres_engine) as connection:
                await asyncio.sleep(0)
                result = await connection.scalars(
                    text("SELECT note FROM rls_probe_visible ORDER BY note")
                )
                return list(result)

        return await run_with_identity(subject_id, body, engine=postgres_engine, binder=binder)

    try:
        notes_1, notes_2 = await asyncio.gather(visible_notes("u1"), visible_notes("u2"))
        async with ambient_connection(postgres_engine) as connection:
            anonymous = list(await connection.scalars(text("SELECT note FROM rls_probe_visible")))
    finally:
        async with postgres_engine.begin() as connection:
            await connection.execute(text("DROP VIEW IF EXISTS rls_probe_visible"))
            await connection.execute(text("DROP TABLE IF EXISTS rls_probe"))

    assert notes_1 == ["u1-a", "u1-b"]
    assert notes_2 == ["u2-a"]
    assert anonymous == []
