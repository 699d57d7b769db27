"""Read-only lookups against the size/container and location catalogs."""

from dataclasses import dataclass

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from nursery.exceptions import NotFoundError
from nursery.models.catalog import NurseryLocation, PlantSize


@dataclass(frozen=True)
class SizeSpec:
    id: str
    name: str
    container_kind: str
    cell_multiplicity: int


async def get_size(db: AsyncSession, org_id: str, size_id: str) -> SizeSpec:
    """Resolve a size visible to ``org_id`` (its own or a shared one)."""
    size = (
        await db.execute(
            select(PlantSize).where(
                PlantSize.id == size_id,
                or_(PlantSize.org_id == org_id, PlantSize.org_id.is_(None)),
            )
        )
    ).scalar_one_or_none()
    if not size:
        raise NotFoundError("Size", size_id)
    return SizeSpec(
        id=size.id,
        name=size.name,
        container_kind=size.container_type,
        cell_multiplicity=size.cell_multiple,
    )


async def require_location(
    db: AsyncSession, org_id: str, location_id: str
) -> NurseryLocation:
    location = (
        await db.execute(
            select(NurseryLocation).where(
                NurseryLocation.id == location_id,
                NurseryLocation.org_id == org_id,
                NurseryLocation.is_active == True,  # noqa: E712
            )
        )
    ).scalar_one_or_none()
    if not location:
        raise NotFoundError("Location", location_id)
    return location
