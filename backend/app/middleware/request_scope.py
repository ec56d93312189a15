"""Request-scope middleware: binds the caller's identity to a transaction."""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine
from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from backend.app.api.identity import peek_subject
from backend.app.config import get_settings
from backend.app.db.binder import SessionBindError, SessionBinder
from backend.app.db.lifecycle import Outcome, run_with_identity

logger = logging.getLogger(__name__)


class ResponseTracker:
    """Observes the ASGI message stream to learn a request's terminal outcome."""

    def __init__(self) -> None:
        self.status_code: int | None = None
        self.completed = False
        self.disconnected = False

    @property
    def started(self) -> bool:
        return self.status_code is not None

    def observe_send(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self.status_code = message["status"]
        elif message["type"] == "http.response.body" and not message.get("more_body", False):
            self.completed = True

    def observe_receive(self, message: Message) -> None:
        if message["type"] == "http.disconnect" and not self.completed:
            self.disconnected = True

    def outcome(self, _result: Any = None) -> Outcome:
        """Success only for a fully sent response with a non-error status."""
        if self.disconnected or not self.completed or self.status_code is None:
            return Outcome.failure
        return Outcome.from_status(self.status_code)


class RequestScopeMiddleware:
    """ASGI middleware running each identified request in a bound transaction.

    Wraps the whole downstream app and awaits it directly, so the commit or
    rollback happens exactly once after the response has been produced:
    - no bearer subject: the request runs unbound on the default pool
    - status < 400 with the body fully sent: commit
    - status >= 400, exception, disconnect, timeout or cancellation: rollback
    - bind failure: generic 500, the request never reaches the app
    """

    def __init__(
        self,
        app: ASGIApp,
        engine: AsyncEngine | None = None,
        binder: SessionBinder | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        """Initialize request-scope middleware.

        Args:
            app: Downstream ASGI application
            engine: Engine providing connections (default: global engine)
            binder: Security-context binder (default: from settings)
            timeout_seconds: Bound on a request transaction (default: from settings)
        """
        self.app = app
        self._engine = engine
        self._binder = binder
        self._timeout_seconds = timeout_seconds

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        subject_id = peek_subject(Headers(scope=scope).get("authorization"))
        if subject_id is None:
            await self.app(scope, receive, send)
            return

        tracker = ResponseTracker()

        async def tracked_receive() -> Message:
            message = await receive()
            tracker.observe_receive(message)
            return message

        async def tracked_send(message: Message) -> None:
            tracker.observe_send(message)
            await send(message)

        async def handle() -> None:
            await self.app(scope, tracked_receive, tracked_send)

        timeout = self._timeout_seconds
        if timeout is None:
            timeout = get_settings().request_scope_timeout_seconds

        try:
            await run_with_identity(
                subject_id,
                handle,
                engine=self._engine,
                binder=self._binder or SessionBinder(),
                judge=tracker.outcome,
                timeout=timeout,
            )
        except SessionBindError:
            logger.error("Rejecting request: security context could not be bound")
            if tracker.started:
                raise
            response = JSONResponse({"detail": "Internal Server Error"}, status_code=500)
            await response(scope, receive, send)
