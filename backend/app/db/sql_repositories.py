"""SQL implementations of repository interfaces."""

import math
import uuid
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, delete, func, inspect, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from backend.app.db.ambient import ambient_session
from backend.app.db.models import AuditLog, Base, Organization
from backend.app.db.repositories import (
    AuditLogRecord,
    FindOptions,
    NotFoundError,
    OrganizationRecord,
    PaginatedResult,
    RecordT,
)

ModelT = TypeVar("ModelT", bound=Base)


class SqlBaseRepository(ABC, Generic[ModelT, RecordT]):
    """Generic CRUD over one mapped model.

    Every method opens its session through ``ambient_session``: inside a
    request scope it runs in the bound transaction, otherwise on the
    default pool. Models with a ``deleted_at`` column are soft-deletable
    and soft-deleted rows are hidden.
    """

    model: type[ModelT]
    entity_name: str = "Entity"

    def __init__(self, engine: AsyncEngine | None = None) -> None:
        self._engine = engine

    def _session(self) -> AbstractAsyncContextManager[AsyncSession]:
        return ambient_session(self._engine)

    @abstractmethod
    def _to_record(self, row: ModelT) -> RecordT:
        """Convert a mapped row to its record dataclass."""

    @property
    def _soft_deletable(self) -> bool:
        return "deleted_at" in inspect(self.model).columns

    def _column(self, name: str) -> InstrumentedAttribute[Any]:
        if name not in inspect(self.model).columns:
            raise ValueError(f"Unknown column for {self.entity_name}: {name}")
        return getattr(self.model, name)

    def _base_query(self) -> Select[tuple[ModelT]]:
        stmt = select(self.model)
        if self._soft_deletable:
            stmt = stmt.where(self._column("deleted_at").is_(None))
        return stmt

    async def find_by_id(self, entity_id: uuid.UUID) -> RecordT | None:
        async with self._session() as session:
            row = await session.scalar(
                self._base_query().where(self._column("id") == entity_id)
            )
            return self._to_record(row) if row is not None else None

    async def find_all(self, options: FindOptions | None = None) -> PaginatedResult[RecordT]:
        """List rows one page at a time.

        Args:
            options: Paging, ordering and equality filters

        Returns:
            Page of records with total count and page arithmetic
        """
        options = options or FindOptions()
        limit = options.take if options.take > 0 else 10
        skip = max(options.skip, 0)

        stmt = self._base_query()
        for name, value in options.where.items():
            stmt = stmt.where(self._column(name) == value)

        async with self._session() as session:
            total = await session.scalar(select(func.count()).select_from(stmt.subquery())) or 0

            for name, direction in options.order_by.items():
                column = self._column(name)
                stmt = stmt.order_by(column.desc() if direction == "desc" else column.asc())

            rows = (await session.scalars(stmt.offset(skip).limit(limit))).all()

        return PaginatedResult(
            data=[self._to_record(row) for row in rows],
            total=total,
            page=skip // limit + 1,
            limit=limit,
            total_pages=math.ceil(total / limit),
        )

    async def create(self, values: dict[str, Any]) -> RecordT:
        async with self._session() as session:
            row = self.model(**values)
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return self._to_record(row)

    async def update(self, entity_id: uuid.UUID, values: dict[str, Any]) -> RecordT:
        """Apply ``values`` to an existing row.

        Raises:
            NotFoundError: If no visible row has ``entity_id``.
        """
        async with self._session() as session:
            row = await session.scalar(
                self._base_query().where(self._column("id") == entity_id)
            )
            if row is None:
                raise NotFoundError(self.entity_name, entity_id)

            for name, value in values.items():
                self._column(name)
                setattr(row, name, value)

            await session.commit()
            await session.refresh(row)
            return self._to_record(row)

    async def delete(self, entity_id: uuid.UUID) -> None:
        async with self._session() as session:
            await session.execute(delete(self.model).where(self._column("id") == entity_id))
            await session.commit()

    async def soft_delete(self, entity_id: uuid.UUID) -> None:
        if not self._soft_deletable:
            raise TypeError(f"{self.entity_name} does not support soft delete")

        async with self._session() as session:
            await session.execute(
                update(self.model)
                .where(self._column("id") == entity_id)
                .values(deleted_at=func.now())
            )
            await session.commit()


class SqlOrganizationRepository(SqlBaseRepository[Organization, OrganizationRecord]):
    """SQL implementation of OrganizationRepository."""

    model = Organization
    entity_name = "Organization"

    def _to_record(self, row: Organization) -> OrganizationRecord:
        return OrganizationRecord(
            id=row.id,
            name=row.name,
            slug=row.slug,
            is_active=row.is_active,
            created_at=row.created_at,
            updated_at=row.updated_at,
            deleted_at=row.deleted_at,
        )

    async def find_by_slug(self, slug: str) -> OrganizationRecord | None:
        async with self._session() as session:
            row = await session.scalar(self._base_query().where(Organization.slug == slug))
            return self._to_record(row) if row is not None else None


class SqlAuditLogRepository(SqlBaseRepository[AuditLog, AuditLogRecord]):
    """SQL implementation of AuditLogRepository."""

    model = AuditLog
    entity_name = "AuditLog"

    DEFAULT_LIMIT = 100

    def _to_record(self, row: AuditLog) -> AuditLogRecord:
        return AuditLogRecord(
            id=row.id,
            action=row.action,
            user_id=row.user_id,
            organization_id=row.organization_id,
            performed_by=row.performed_by,
            details=dict(row.details or {}),
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            created_at=row.created_at,
        )

    async def record(
        self,
        action: str,
        user_id: uuid.UUID,
        *,
        organization_id: uuid.UUID | None = None,
        performed_by: uuid.UUID | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditLogRecord:
        """Append an audit log entry."""
        return await self.create(
            {
                "action": action,
                "user_id": user_id,
                "organization_id": organization_id,
                "performed_by": performed_by,
                "details": details or {},
                "ip_address": ip_address,
                "user_agent": user_agent,
            }
        )

    async def find_by_user(
        self, user_id: uuid.UUID, *, limit: int = DEFAULT_LIMIT, offset: int = 0
    ) -> tuple[list[AuditLogRecord], int]:
        """List a user's entries, newest first, with the total count."""
        stmt = self._base_query().where(AuditLog.user_id == user_id)

        async with self._session() as session:
            total = await session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
            rows = (
                await session.scalars(
                    stmt.order_by(AuditLog.created_at.desc()).offset(offset).limit(limit)
                )
            ).all()

        return ([self._to_record(row) for row in rows], total)
