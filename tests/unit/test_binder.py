"""Unit tests for the security-context binder."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from backend.app.db.binder import BIND_STATEMENT, SessionBindError, SessionBinder


@pytest.mark.asyncio
async def test_bind_issues_transaction_local_set_config() -> None:
    """Test the bind is a parameterised, transaction-local set_config."""
    connection = AsyncMock()
    binder = SessionBinder("request.jwt.claim.sub")

    await binder.bind(connection, "u1")

    connection.execute.assert_awaited_once()
    statement, params = connection.execute.await_args.args
    assert statement is BIND_STATEMENT
    assert "set_config" in str(statement)
    assert str(statement).rstrip(")").endswith("true")
    assert params == {"setting": "request.jwt.claim.sub", "subject_id": "u1"}


@pytest.mark.asyncio
async def test_bind_never_interpolates_subject() -> None:
    """Test a hostile subject travels as a parameter, not as SQL text."""
    connection = AsyncMock()
    hostile = "u1'; RESET ALL; --"

    await SessionBinder("app.current_user_id").bind(connection, hostile)

    statement, params = connection.execute.await_args.args
    assert hostile not in str(statement)
    assert params["subject_id"] == hostile


def test_binder_defaults_to_configured_setting() -> None:
    """Test the setting name comes from settings when not given."""
    assert SessionBinder().setting == "request.jwt.claim.sub"


@pytest.mark.parametrize(
    "setting",
    ["claim_sub", "request.jwt.claim.sub; DROP TABLE x", "1app.user", "app..user"],
)
def test_binder_rejects_invalid_setting_names(setting: str) -> None:
    """Test setting names must be namespaced identifiers."""
    with pytest.raises(ValueError):
        SessionBinder(setting)


@pytest.mark.asyncio
async def test_bind_failure_raises_session_bind_error() -> None:
    """Test a failing statement surfaces as SessionBindError."""
    connection = AsyncMock()
    cause = OperationalError("SELECT set_config", {}, Exception("server closed"))
    connection.execute.side_effect = cause

    with pytest.raises(SessionBindError) as exc_info:
        await SessionBinder().bind(connection, "u1")

    assert exc_info.value.__cause__ is cause
    assert "set_config" not in str(exc_info.value)
