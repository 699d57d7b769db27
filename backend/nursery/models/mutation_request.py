"""MutationRequest — idempotency claim and saga journal for one request id.

The primary key is the caller-supplied request id, so claiming is a plain
insert that fails on duplicates.  While the saga runs, ``step`` and
``journal`` record how far it got (child created, sources planned and
debited); on success ``result`` holds the serialized response returned to
duplicate callers.  A compensated failure deletes the row so the caller
can retry with the same id.

Lifecycle:  in_progress → completed | failed
"""

import enum
from datetime import datetime

from sqlalchemy import DateTime, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from nursery.database import Base


class ClaimState(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    # Terminal: compensation failed, needs manual reconciliation
    FAILED = "failed"


class MutationRequest(Base):
    __tablename__ = "mutation_requests"

    request_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    actor_id: Mapped[str | None] = mapped_column(String(36))
    # split | merge | intake
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    state: Mapped[str] = mapped_column(
        String(20), default=ClaimState.IN_PROGRESS.value, nullable=False, index=True
    )

    # ── Saga journal ─────────────────────────────────────────
    step: Mapped[str] = mapped_column(String(30), nullable=False, default="start")
    child_batch_id: Mapped[str | None] = mapped_column(String(36))
    # {"sources": [{"batch_id": ..., "units": ...}], "debited": [batch_id, ...]}
    journal: Mapped[dict | None] = mapped_column(JSON)

    result: Mapped[dict | None] = mapped_column(JSON)
    error_code: Mapped[str | None] = mapped_column(String(50))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, index=True
    )
