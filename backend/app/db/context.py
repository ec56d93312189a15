"""Request scope carried ambiently through a request's call graph.

The scope lives in a ``ContextVar`` so every asyncio task sees its own
value: two interleaved requests on the same event loop never observe each
other's scope, and tasks spawned inside a request inherit a copy of it.
"""

import uuid
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncConnection

T = TypeVar("T")


@dataclass(eq=False)
class RequestScope:
    """Identity and transaction bound to a single request.

    Owned by the request that created it. ``connection`` is in an open
    transaction whose first statement bound ``subject_id``.
    """

    subject_id: str | None
    connection: AsyncConnection
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    scope_id: uuid.UUID = field(default_factory=uuid.uuid4)
    finalized: bool = False

    @property
    def is_active(self) -> bool:
        return not self.finalized


_current_scope: ContextVar[RequestScope | None] = ContextVar("request_scope", default=None)


def current_scope() -> RequestScope | None:
    """Return the live scope attached to the running task, if any.

    A finalized scope reads as no scope, so work that outlives its
    request falls back to the default pool.
    """
    scope = _current_scope.get()
    if scope is None or not scope.is_active:
        return None
    return scope


@contextmanager
def attached_scope(scope: RequestScope) -> Iterator[RequestScope]:
    """Attach ``scope`` for the duration of the ``with`` block.

    Nested blocks shadow the outer scope and restore it on exit.
    """
    token = _current_scope.set(scope)
    try:
        yield scope
    finally:
        _current_scope.reset(token)


async def run_in_scope(scope: RequestScope, body: Callable[[], Awaitable[T]]) -> T:
    """Await ``body()`` with ``scope`` attached across all its suspension points."""
    with attached_scope(scope):
        return await body()


async def run_detached(body: Callable[[], Awaitable[T]]) -> T:
    """Await ``body()`` with no scope attached, restoring the outer one after."""
    token = _current_scope.set(None)
    try:
        return await body()
    finally:
        _current_scope.reset(token)
