"""Prometheus metrics for request scopes and the connection pool."""

from typing import Any

from prometheus_client import Counter, Histogram
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine

# Request-scope metrics
request_scope_finalized_total = Counter(
    "request_scope_finalized_total",
    "Total request scopes finalized",
    ["outcome"],
)

request_scope_bind_failures_total = Counter(
    "request_scope_bind_failures_total",
    "Total failed security-context binds",
)

request_scope_duration_ms = Histogram(
    "request_scope_duration_ms",
    "Lifetime of a bound request transaction in milliseconds",
    ["outcome"],
    buckets=[5, 10, 50, 100, 250, 500, 1000, 2500, 5000, 10000],
)

# Pool metrics
db_pool_checkouts_total = Counter(
    "db_pool_checkouts_total",
    "Total connections checked out of the pool",
)

db_pool_checkins_total = Counter(
    "db_pool_checkins_total",
    "Total connections returned to the pool",
)


class PrometheusScopeMetrics:
    """Prometheus-based request-scope metrics implementation."""

    def record_finalized(self, outcome: str, duration_ms: float) -> None:
        """Record a finalized scope and its lifetime."""
        request_scope_finalized_total.labels(outcome=outcome).inc()
        request_scope_duration_ms.labels(outcome=outcome).observe(duration_ms)

    def inc_bind_failure(self) -> None:
        """Increment bind failure counter."""
        request_scope_bind_failures_total.inc()


def _on_checkout(dbapi_connection: Any, connection_record: Any, connection_proxy: Any) -> None:
    db_pool_checkouts_total.inc()


def _on_checkin(dbapi_connection: Any, connection_record: Any) -> None:
    db_pool_checkins_total.inc()


def instrument_pool(engine: AsyncEngine) -> None:
    """Count pool checkouts and checkins for ``engine``. Safe to call twice."""
    pool = engine.sync_engine.pool
    if not event.contains(pool, "checkout", _on_checkout):
        event.listen(pool, "checkout", _on_checkout)
    if not event.contains(pool, "checkin", _on_checkin):
        event.listen(pool, "checkin", _on_checkin)
