"""Pydantic schemas for batch mutations (intake, split, merge)."""

from datetime import date, datetime

from pydantic import BaseModel, Field, model_validator


# ── Intake (root batch) ──────────────────────────────────────

class IntakeRequest(BaseModel):
    plant_variety_id: str
    size_id: str
    location_id: str
    quantity: int = Field(..., ge=1)

    supplier_id: str | None = None
    planted_at: date | None = None
    notes: str | None = Field(None, max_length=1000)


# ── Split (1 parent → 1 child) ───────────────────────────────

class SplitRequest(BaseModel):
    """A transplant of part (or all) of one batch into a new container spec.

    Quantity is ``containers × units_per_container`` unless ``units`` is
    given, in which case ``units`` wins.
    """
    parent_batch_id: str
    target_size_id: str
    target_location_id: str
    containers: int = Field(1, ge=1)
    units_per_container: int = Field(1, ge=1)
    units: int | None = Field(None, ge=1)
    auto_archive_parent_if_empty: bool = False

    planted_at: date | None = None
    notes: str | None = Field(None, max_length=1000)

    @property
    def total_units(self) -> int:
        if self.units is not None:
            return self.units
        return self.containers * self.units_per_container


# ── Merge (N parents → 1 child) ──────────────────────────────

class MergeSource(BaseModel):
    batch_id: str
    units: int = Field(..., ge=1)
    auto_archive_if_empty: bool = False


class MergeRequest(BaseModel):
    target_size_id: str
    target_location_id: str
    target_variety_id: str
    required_units: int = Field(..., ge=1)
    sources: list[MergeSource] = Field(..., min_length=1)

    planted_at: date | None = None
    notes: str | None = Field(None, max_length=1000)

    @model_validator(mode="after")
    def sources_distinct(self):
        seen: set[str] = set()
        for source in self.sources:
            if source.batch_id in seen:
                raise ValueError(f"Source batch listed twice: {source.batch_id}")
            seen.add(source.batch_id)
        return self

    @property
    def contributed_units(self) -> int:
        return sum(source.units for source in self.sources)


# ── Response ─────────────────────────────────────────────────

class BatchOut(BaseModel):
    id: str
    org_id: str
    batch_number: str
    plant_variety_id: str
    size_id: str
    location_id: str
    phase: str
    status: str
    quantity: int
    initial_quantity: int
    planted_at: date | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class IntakeResult(BaseModel):
    request_id: str | None = None
    batch: BatchOut
    replayed: bool = False


class SplitResult(BaseModel):
    request_id: str
    child_batch: BatchOut
    parent_batch_id: str
    parent_remaining_quantity: int
    parent_archived: bool = False
    replayed: bool = False


class MergeSourceOutcome(BaseModel):
    batch_id: str
    batch_number: str
    units: int
    remaining_quantity: int
    archived: bool = False


class MergeResult(BaseModel):
    request_id: str
    child_batch: BatchOut
    sources: list[MergeSourceOutcome]
    replayed: bool = False
