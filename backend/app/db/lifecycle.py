"""Lifecycle of request-scoped, identity-bound transactions.

State machine per scope::

    idle --(subject present)--> bound --success--> committing --+
                                      --failure--> rolling_back -+--> released

``finalize`` leaves ``bound`` synchronously, before its first await, so on
a single event loop only the first caller commits or rolls back; every
later caller (completion racing a disconnect or a timeout) is a no-op.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from backend.app.db.binder import SessionBindError, SessionBinder
from backend.app.db.context import RequestScope, current_scope, run_detached, run_in_scope
from backend.app.db.engine import get_async_engine
from backend.app.utils.logging import ScopeLifecycleLogger
from backend.app.utils.metrics import PrometheusScopeMetrics

T = TypeVar("T")


class Outcome(str, Enum):
    """Terminal outcome of a request, decides commit vs rollback."""

    success = "success"
    failure = "failure"

    @classmethod
    def from_status(cls, status_code: int) -> "Outcome":
        """Map an HTTP status code to an outcome (< 400 commits)."""
        return cls.success if status_code < 400 else cls.failure


class ScopeState(str, Enum):
    """Lifecycle state of a request scope."""

    idle = "idle"
    bound = "bound"
    committing = "committing"
    rolling_back = "rolling_back"
    released = "released"


async def _discard(connection: AsyncConnection) -> None:
    try:
        await connection.rollback()
    finally:
        await connection.close()


class ScopeTransaction:
    """Owns the pooled connection of one request scope until release."""

    def __init__(
        self,
        scope: RequestScope,
        *,
        metrics: PrometheusScopeMetrics | None = None,
        lifecycle_logger: ScopeLifecycleLogger | None = None,
    ) -> None:
        self.scope = scope
        self._state = ScopeState.bound
        self._metrics = metrics or PrometheusScopeMetrics()
        self._log = lifecycle_logger or ScopeLifecycleLogger()
        self._opened_at = time.monotonic()

    @property
    def state(self) -> ScopeState:
        return self._state

    @classmethod
    async def open(
        cls,
        engine: AsyncEngine,
        subject_id: str,
        binder: SessionBinder | None = None,
        *,
        metrics: PrometheusScopeMetrics | None = None,
        lifecycle_logger: ScopeLifecycleLogger | None = None,
    ) -> "ScopeTransaction":
        """Check out a connection, begin a transaction and bind ``subject_id``.

        The bind is the first statement on the transaction. On any failure
        the connection is rolled back and released before the error is
        raised, so no unbound transaction is ever handed out.

        Raises:
            SessionBindError: If BEGIN or the bind statement fails.
        """
        binder = binder or SessionBinder()
        metrics = metrics or PrometheusScopeMetrics()
        lifecycle_logger = lifecycle_logger or ScopeLifecycleLogger()

        connection = await engine.connect()
        try:
            await connection.begin()
            await binder.bind(connection, subject_id)
        except Exception as e:
            metrics.inc_bind_failure()
            reason = type(e.__cause__ or e).__name__
            lifecycle_logger.log_bind_failure(subject_id, reason)
            try:
                await asyncio.shield(_discard(connection))
            except Exception as discard_error:
                # A dropped connection fails the rollback too; the bind error wins
                lifecycle_logger.log_discard_failure(subject_id, type(discard_error).__name__)
            if isinstance(e, SessionBindError):
                raise
            raise SessionBindError(f"Failed to open security context: {reason}") from e
        except asyncio.CancelledError:
            await asyncio.shield(_discard(connection))
            raise

        transaction = cls(
            RequestScope(subject_id=subject_id, connection=connection),
            metrics=metrics,
            lifecycle_logger=lifecycle_logger,
        )
        lifecycle_logger.log_bound(transaction.scope)
        return transaction

    async def finalize(self, outcome: Outcome) -> bool:
        """Commit or roll back, then release the connection.

        Returns:
            True if this call finalized the scope, False if it had already
            been finalized (the call is then a no-op).

        Raises:
            Exception: Whatever the commit raised; the connection is still
                released and the transaction rolled back.
        """
        if self._state is not ScopeState.bound:
            self._log.log_duplicate_finalize(self.scope, self._state.value)
            return False

        commit = outcome is Outcome.success
        self._state = ScopeState.committing if commit else ScopeState.rolling_back
        self.scope.finalized = True
        connection = self.scope.connection

        try:
            if commit:
                try:
                    await connection.commit()
                except Exception as e:
                    outcome = Outcome.failure
                    self._log.log_commit_failure(self.scope, type(e).__name__)
                    raise
            else:
                await connection.rollback()
        finally:
            try:
                # Closing a connection with a failed transaction rolls it back
                await connection.close()
            finally:
                self._state = ScopeState.released
                duration_ms = (time.monotonic() - self._opened_at) * 1000
                self._metrics.record_finalized(outcome.value, duration_ms)
                self._log.log_finalized(self.scope, outcome.value, duration_ms)

        return True

    def report_detached_finalize(self, task: "asyncio.Future[bool]") -> None:
        """Retrieve the error of a finalize whose caller was cancelled."""
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._log.log_detached_finalize_failure(self.scope, type(error).__name__)


async def run_with_identity(
    subject_id: str | None,
    body: Callable[[], Awaitable[T]],
    *,
    engine: AsyncEngine | None = None,
    binder: SessionBinder | None = None,
    judge: Callable[[T], Outcome] | None = None,
    timeout: float | None = None,
) -> T:
    """Run ``body`` inside a transaction bound to ``subject_id``.

    Without a subject, ``body`` runs unbound against the default pool, even
    inside another request scope. When a scope for the same subject is
    already attached, ``body`` joins it instead of opening a second
    transaction; a scope for a different subject is shadowed by a new,
    separately bound transaction for the extent of ``body``.

    Args:
        subject_id: Identity hint for the security context, or None
        body: Unit of work to run with the scope attached
        engine: Engine whose pool provides the connection
        binder: Binder issuing the security-context statement
        judge: Maps the body's result to an outcome (default: success)
        timeout: Seconds before the body is cancelled and rolled back

    Returns:
        Whatever ``body`` returns.

    Raises:
        SessionBindError: If the identity could not be bound.
    """
    enclosing = current_scope()
    if subject_id is None:
        if enclosing is None:
            return await body()
        return await run_detached(body)
    if enclosing is not None and enclosing.subject_id == subject_id:
        return await body()

    transaction = await ScopeTransaction.open(engine or get_async_engine(), subject_id, binder)

    outcome = Outcome.failure
    try:
        work: Awaitable[Any] = run_in_scope(transaction.scope, body)
        if timeout is not None:
            work = asyncio.wait_for(work, timeout)
        result: T = await work
        outcome = judge(result) if judge is not None else Outcome.success
        return result
    finally:
        finalizing = asyncio.ensure_future(transaction.finalize(outcome))
        try:
            await asyncio.shield(finalizing)
        except asyncio.CancelledError:
            # Finalize keeps running; its error must still be retrieved
            finalizing.add_done_callback(transaction.report_detached_finalize)
            raise
