"""Organization endpoints - list, get, create and update organizations.

Data access is ambient: inside an identified request the repository runs
in the RLS-bound transaction, so rows hidden by policy are simply absent.
"""

import uuid
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from backend.app.db.repositories import (
    FindOptions,
    NotFoundError,
    OrganizationRecord,
    OrganizationRepository,
)
from backend.app.db.sql_repositories import SqlOrganizationRepository

router = APIRouter(prefix="/organizations", tags=["organizations"])


def get_organization_repository() -> OrganizationRepository:
    """FastAPI dependency for the organization repository."""
    return SqlOrganizationRepository()


class CreateOrganizationRequest(BaseModel):
    """Request body for POST /organizations."""

    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9-]+$")


class UpdateOrganizationRequest(BaseModel):
    """Request body for PATCH /organizations/{id}. Omitted fields are left unchanged."""

    name: str | None = Field(None, min_length=1, max_length=255)
    is_active: bool | None = None


class OrganizationResponse(BaseModel):
    """Response for a single organization."""

    id: str
    name: str
    slug: str
    is_active: bool
    created_at: datetime | None

    @classmethod
    def from_record(cls, record: OrganizationRecord) -> "OrganizationResponse":
        return cls(
            id=str(record.id),
            name=record.name,
            slug=record.slug,
            is_active=record.is_active,
            created_at=record.created_at,
        )


class OrganizationPageResponse(BaseModel):
    """Response for GET /organizations."""

    data: list[OrganizationResponse]
    total: int
    page: int
    limit: int
    total_pages: int


@router.get("", response_model=OrganizationPageResponse)
async def list_organizations(
    repo: Annotated[OrganizationRepository, Depends(get_organization_repository)],
    skip: Annotated[int, Query(ge=0)] = 0,
    take: Annotated[int, Query(ge=1, le=100)] = 10,
) -> OrganizationPageResponse:
    """List organizations visible to the caller, by name."""
    result = await repo.find_all(FindOptions(skip=skip, take=take, order_by={"name": "asc"}))

    return OrganizationPageResponse(
        data=[OrganizationResponse.from_record(r) for r in result.data],
        total=result.total,
        page=result.page,
        limit=result.limit,
        total_pages=result.total_pages,
    )


@router.get("/{organization_id}", response_model=OrganizationResponse)
async def get_organization(
    organization_id: uuid.UUID,
    repo: Annotated[OrganizationRepository, Depends(get_organization_repository)],
) -> OrganizationResponse:
    """Get one organization.

    Raises:
        HTTPException: 404 if missing or not visible to the caller
    """
    record = await repo.find_by_id(organization_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")

    return OrganizationResponse.from_record(record)


@router.post("", response_model=OrganizationResponse, status_code=status.HTTP_201_CREATED)
async def create_organization(
    request: CreateOrganizationRequest,
    repo: Annotated[OrganizationRepository, Depends(get_organization_repository)],
) -> OrganizationResponse:
    """Create an organization.

    Raises:
        HTTPException: 409 if the slug is taken
    """
    if await repo.find_by_slug(request.slug) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Slug already in use")

    record = await repo.create({"name": request.name, "slug": request.slug})
    return OrganizationResponse.from_record(record)


@router.patch("/{organization_id}", response_model=OrganizationResponse)
async def update_organization(
    organization_id: uuid.UUID,
    request: UpdateOrganizationRequest,
    repo: Annotated[OrganizationRepository, Depends(get_organization_repository)],
) -> OrganizationResponse:
    """Update an organization's name or active flag.

    Raises:
        HTTPException: 404 if missing or not visible to the caller
    """
    try:
        values = request.model_dump(exclude_unset=True, exclude_none=True)
        record = await repo.update(organization_id, values)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found"
        ) from None

    return OrganizationResponse.from_record(record)
