"""Batch — a tracked quantity of one plant variety at one size and location.

A Batch is created either by intake (a root batch with no parents) or as
the child of a Split / Merge.  Its ``quantity`` only ever moves through the
quantity ledger; ``initial_quantity`` is fixed at creation.

Lifecycle:  growing → available → archived
"""

import enum
import uuid
from datetime import date, datetime

from sqlalchemy import (
    CheckConstraint, Date, DateTime, ForeignKey, Integer, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from nursery.database import Base


class Phase(str, enum.Enum):
    PROPAGATION = "propagation"
    INTERMEDIATE = "intermediate"
    FINISHED = "finished"


class BatchStatus(str, enum.Enum):
    GROWING = "growing"
    AVAILABLE = "available"
    ARCHIVED = "archived"


class Batch(Base):
    __tablename__ = "batches"
    __table_args__ = (
        UniqueConstraint("org_id", "batch_number", name="uq_batches_org_number"),
        CheckConstraint("quantity >= 0", name="ck_batches_quantity_non_negative"),
        CheckConstraint(
            "quantity <= initial_quantity", name="ck_batches_quantity_le_initial"
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    # Human-readable, unique per organization, immutable once assigned
    batch_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    # ── What and where ───────────────────────────────────────
    plant_variety_id: Mapped[str] = mapped_column(String(36), nullable=False)
    size_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("plant_sizes.id"), nullable=False
    )
    location_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("nursery_locations.id"), nullable=False, index=True
    )
    supplier_id: Mapped[str | None] = mapped_column(String(36))

    phase: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=BatchStatus.GROWING.value, nullable=False, index=True
    )

    # ── Quantities ───────────────────────────────────────────
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    initial_quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    planted_at: Mapped[date | None] = mapped_column(Date)
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(36))  # user_id
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
    archived_at: Mapped[datetime | None] = mapped_column(DateTime)

    size = relationship("PlantSize")
    location = relationship("NurseryLocation")

    @property
    def is_archived(self) -> bool:
        return self.status == BatchStatus.ARCHIVED.value
