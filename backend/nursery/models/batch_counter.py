"""Per-organization, per-phase, per-week ordinal counters."""

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from nursery.database import Base


class BatchCounter(Base):
    __tablename__ = "batch_counters"

    org_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    phase: Mapped[str] = mapped_column(String(20), primary_key=True)
    # ISO year-week, e.g. "2642"
    period: Mapped[str] = mapped_column(String(4), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
