"""BatchAncestry — append-only lineage edges (parent batch → child batch).

For any child, the proportions of its incoming edges sum to 1: a split
writes a single edge with proportion 1, a merge writes one edge per
contributing parent weighted by the units it supplied.  Rows are never
updated or deleted.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint, DateTime, Float, ForeignKey, Integer, String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from nursery.database import Base


class BatchAncestry(Base):
    __tablename__ = "batch_ancestry"
    __table_args__ = (
        UniqueConstraint(
            "parent_batch_id", "child_batch_id", name="uq_batch_ancestry_edge"
        ),
        CheckConstraint(
            "proportion > 0 AND proportion <= 1", name="ck_batch_ancestry_proportion"
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    parent_batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    child_batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    proportion: Mapped[float] = mapped_column(Float, nullable=False)
    # Units the parent contributed (informational; proportion is authoritative)
    units: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
