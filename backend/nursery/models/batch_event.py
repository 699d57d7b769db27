"""BatchEvent — immutable event log for batch state changes.

Every split, merge, archive and compensation writes one row per affected
batch, tagged with the request id that caused it.  A compensation is
recorded as its own COMPENSATED event rather than by erasing earlier rows,
so the log shows the full corrective history.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from nursery.database import Base


class EventType(str, enum.Enum):
    CHECK_IN = "CHECK_IN"
    SPLIT_OUT = "SPLIT_OUT"
    SPLIT_IN = "SPLIT_IN"
    MERGE_OUT = "MERGE_OUT"
    MERGE_IN = "MERGE_IN"
    ARCHIVE = "ARCHIVE"
    COMPENSATED = "COMPENSATED"


class BatchEvent(Base):
    __tablename__ = "batch_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)

    # Flexible payload, structure depends on event_type:
    #   CHECK_IN:    {"units", "supplier_id", "notes"}
    #   SPLIT_OUT:   {"child_batch_id", "child_batch_number", "units", "remaining_quantity", "notes"}
    #   SPLIT_IN:    {"parent_batch_id", "parent_batch_number", "units", "notes"}
    #   MERGE_OUT:   {"child_batch_id", "child_batch_number", "units", "remaining_quantity", "notes"}
    #   MERGE_IN:    {"sources": [{"batch_id", "batch_number", "units", "proportion"}], "units", "notes"}
    #   ARCHIVE:     {"reason", ...}
    #   COMPENSATED: {"credited_units", "restored_quantity", "discarded_child_batch_id", "reason"}
    payload: Mapped[dict | None] = mapped_column(JSON)

    actor_id: Mapped[str | None] = mapped_column(String(36))  # user_id
    request_id: Mapped[str | None] = mapped_column(String(100), index=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )
