"""Repository protocol interfaces for data access.

Implementations resolve their connection ambiently (see ``db.ambient``);
no method takes a session or transaction parameter.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, Literal, Protocol, TypeVar
from uuid import UUID

RecordT = TypeVar("RecordT")


class NotFoundError(Exception):
    """Raised when an entity expected to exist is missing."""

    def __init__(self, entity_name: str, identifier: object) -> None:
        super().__init__(f"{entity_name} with identifier {identifier} not found")
        self.entity_name = entity_name
        self.identifier = identifier


@dataclass
class FindOptions:
    """Paging, ordering and equality filters for list queries."""

    skip: int = 0
    take: int = 10
    order_by: dict[str, Literal["asc", "desc"]] = field(default_factory=dict)
    where: dict[str, Any] = field(default_factory=dict)


@dataclass
class PaginatedResult(Generic[RecordT]):
    """One page of records plus paging metadata."""

    data: list[RecordT]
    total: int
    page: int
    limit: int
    total_pages: int


@dataclass
class OrganizationRecord:
    """Organization data record."""

    id: UUID
    name: str
    slug: str
    is_active: bool
    created_at: datetime | None
    updated_at: datetime | None
    deleted_at: datetime | None


@dataclass
class AuditLogRecord:
    """Audit log data record."""

    id: UUID
    action: str
    user_id: UUID
    organization_id: UUID | None
    performed_by: UUID | None
    details: dict[str, Any]
    ip_address: str | None
    user_agent: str | None
    created_at: datetime | None


class OrganizationRepository(Protocol):
    """Repository for organization operations."""

    async def find_by_id(self, entity_id: UUID) -> OrganizationRecord | None:
        """Get organization by ID, or None if missing or hidden by RLS."""
        ...

    async def find_by_slug(self, slug: str) -> OrganizationRecord | None:
        """Get organization by slug."""
        ...

    async def find_all(self, options: FindOptions | None = None) -> PaginatedResult[OrganizationRecord]:
        """List organizations visible to the current identity."""
        ...

    async def create(self, values: dict[str, Any]) -> OrganizationRecord:
        """Create an organization."""
        ...

    async def update(self, entity_id: UUID, values: dict[str, Any]) -> OrganizationRecord:
        """Update an organization.

        Raises:
            NotFoundError: If the organization does not exist.
        """
        ...

    async def soft_delete(self, entity_id: UUID) -> None:
        """Mark an organization deleted."""
        ...


class AuditLogRepository(Protocol):
    """Repository for audit log operations."""

    async def record(
        self,
        action: str,
        user_id: UUID,
        *,
        organization_id: UUID | None = None,
        performed_by: UUID | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditLogRecord:
        """Append an audit log entry."""
        ...

    async def find_by_user(
        self, user_id: UUID, *, limit: int = 100, offset: int = 0
    ) -> tuple[list[AuditLogRecord], int]:
        """List a user's entries, newest first, with the total count."""
        ...
