"""QuantityMovement — one row per ledger debit or compensating credit.

The unique (batch, request, kind) key is what makes compensation safe to
run blindly: a credit only applies when the matching debit row exists, and
at most one credit row can ever be written for it.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from nursery.database import Base

DEBIT = "debit"
CREDIT = "credit"


class QuantityMovement(Base):
    __tablename__ = "quantity_movements"
    __table_args__ = (
        UniqueConstraint(
            "batch_id", "request_id", "kind", name="uq_quantity_movements_request"
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    request_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    # debit | credit
    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    # Signed: negative for debits
    units: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_after: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
