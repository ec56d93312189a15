"""Transaction-local identity binding for row-level security.

The bind is issued with ``set_config(name, value, is_local => true)``,
PostgreSQL's parameterised form of ``SET LOCAL name = 'value'``: the value
reverts when the transaction ends, so a pooled connection never carries
one request's identity into the next.
"""

import re

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from backend.app.config import get_settings

# Custom settings must be namespaced ("prefix.name")
_SETTING_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)+$")

BIND_STATEMENT = text("SELECT set_config(:setting, :subject_id, true)")


class SessionBindError(Exception):
    """Raised when the security-context bind statement fails."""


class SessionBinder:
    """Binds a subject identifier to the open transaction of a connection."""

    def __init__(self, setting: str | None = None) -> None:
        """Initialize binder.

        Args:
            setting: Name of the setting read by RLS policies. Defaults to
                ``Settings.rls_claim_setting``.

        Raises:
            ValueError: If the setting name is not a namespaced identifier.
        """
        setting = setting or get_settings().rls_claim_setting
        if not _SETTING_NAME.match(setting):
            raise ValueError(f"Invalid security setting name: {setting!r}")
        self.setting = setting

    async def bind(self, connection: AsyncConnection, subject_id: str) -> None:
        """Issue the bind statement on ``connection``.

        Must be the first statement of the transaction.

        Raises:
            SessionBindError: If the statement fails.
        """
        try:
            await connection.execute(
                BIND_STATEMENT, {"setting": self.setting, "subject_id": subject_id}
            )
        except Exception as e:
            raise SessionBindError(f"Failed to bind security context: {type(e).__name__}") from e
