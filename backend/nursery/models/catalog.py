"""Reference catalogs consumed by the mutation engine.

PlantSize supplies the container kind and cell multiplicity the phase
classifier needs; NurseryLocation is only ever checked for existence.
Both are maintained elsewhere; the engine only reads them.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from nursery.database import Base


class PlantSize(Base):
    __tablename__ = "plant_sizes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # NULL = shared size available to every organization
    org_id: Mapped[str | None] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # pot | tray | plug | ...
    container_type: Mapped[str] = mapped_column(String(30), nullable=False)
    # Cells per container (1 for a single pot, 104 for a 104-cell tray)
    cell_multiple: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class NurseryLocation(Base):
    __tablename__ = "nursery_locations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
