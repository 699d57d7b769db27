"""Idempotency guard and saga journal.

``claim`` inserts a MutationRequest row keyed by the caller's request id.
The insert is the atomic "insert if absent": two racing retries cannot both
see ``first_use=True`` because the second insert fails on the primary key.

After a successful claim the orchestrator journals its progress on the
same row (``record_step``), stores the final result (``complete``), or
gives the id back (``release``) when the saga was fully compensated so
that the caller may retry.  ``mark_failed`` is reserved for compensation
failures, which need a human before the id can be reused.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from fastapi import status
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nursery.exceptions import (
    ConflictError,
    LineageError,
    LineageValidationError,
    RequestInProgressError,
)
from nursery.models.mutation_request import ClaimState, MutationRequest


@dataclass
class Claim:
    first_use: bool
    record: MutationRequest


async def claim(
    db: AsyncSession,
    request_id: str,
    *,
    org_id: str,
    actor_id: str | None,
    operation: str,
    sources: list[dict] | None = None,
) -> Claim:
    """Claim a request id.  ``first_use`` is False if it was already claimed."""
    if not request_id or not request_id.strip():
        raise LineageValidationError("A request id is required")

    row = MutationRequest(
        request_id=request_id,
        org_id=org_id,
        actor_id=actor_id,
        operation=operation,
        state=ClaimState.IN_PROGRESS.value,
        step="start",
        journal={"sources": sources or [], "debited": []},
    )
    db.add(row)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        existing = await db.get(MutationRequest, request_id)
        if existing is None:
            # Released by a concurrent failure between our insert and read
            raise ConflictError(f"Request {request_id} changed state, retry")
        if existing.org_id != org_id or existing.operation != operation:
            raise LineageValidationError(
                f"Request id {request_id} was already used for a different "
                f"{existing.operation} request"
            )
        previous = (existing.journal or {}).get("sources") or []
        if _units_by_batch(previous) != _units_by_batch(sources or []):
            raise LineageValidationError(
                f"Request id {request_id} was already used with different arguments",
                details={"request_id": request_id},
            )
        return Claim(first_use=False, record=existing)

    return Claim(first_use=True, record=row)


def _units_by_batch(sources: list[dict]) -> list[tuple[str, int]]:
    return [(s["batch_id"], s["units"]) for s in sources]


async def get_claim(db: AsyncSession, request_id: str) -> MutationRequest | None:
    return await db.get(MutationRequest, request_id)


async def record_step(
    db: AsyncSession,
    request_id: str,
    step: str,
    *,
    child_batch_id: str | None = None,
    journal: dict | None = None,
) -> None:
    """Journal how far the saga for ``request_id`` has progressed."""
    values: dict = {"step": step, "updated_at": datetime.utcnow()}
    if child_batch_id is not None:
        values["child_batch_id"] = child_batch_id
    if journal is not None:
        values["journal"] = journal
    await db.execute(
        update(MutationRequest)
        .where(MutationRequest.request_id == request_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def complete(
    db: AsyncSession, request_id: str, result: dict | None, *, step: str = "done"
) -> None:
    """Mark the request applied and cache the result for duplicate callers.

    A ``step`` short of "done" flags follow-up work for the recovery sweep.
    """
    await db.execute(
        update(MutationRequest)
        .where(MutationRequest.request_id == request_id)
        .values(
            state=ClaimState.COMPLETED.value,
            step=step,
            result=result,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )


async def release(db: AsyncSession, request_id: str) -> bool:
    """Give an in-progress claim back so the request can be retried."""
    result = await db.execute(
        delete(MutationRequest)
        .where(
            MutationRequest.request_id == request_id,
            MutationRequest.state == ClaimState.IN_PROGRESS.value,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def mark_failed(db: AsyncSession, request_id: str, error_code: str) -> None:
    await db.execute(
        update(MutationRequest)
        .where(MutationRequest.request_id == request_id)
        .values(
            state=ClaimState.FAILED.value,
            step="failed",
            error_code=error_code,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )


async def stale_claims(db: AsyncSession, older_than: datetime) -> list[MutationRequest]:
    """In-progress claims that have not been touched since ``older_than``."""
    result = await db.execute(
        select(MutationRequest)
        .where(
            MutationRequest.state == ClaimState.IN_PROGRESS.value,
            MutationRequest.updated_at < older_than,
        )
        .order_by(MutationRequest.updated_at)
    )
    return list(result.scalars().all())


async def claims_missing_events(
    db: AsyncSession, older_than: datetime
) -> list[MutationRequest]:
    """Completed claims whose mutation events were never written."""
    result = await db.execute(
        select(MutationRequest)
        .where(
            MutationRequest.state == ClaimState.COMPLETED.value,
            MutationRequest.step == "ancestry_linked",
            MutationRequest.updated_at < older_than,
        )
        .order_by(MutationRequest.updated_at)
    )
    return list(result.scalars().all())


def previous_outcome(record: MutationRequest) -> dict | None:
    """Result to hand back to a duplicate caller of an already-claimed id.

    Raises while the first attempt is still running, and for claims left
    failed by an unrecoverable compensation.
    """
    if record.state == ClaimState.COMPLETED.value:
        return record.result
    if record.state == ClaimState.IN_PROGRESS.value:
        raise RequestInProgressError(record.request_id)
    raise LineageError(
        f"Request {record.request_id} failed and needs manual reconciliation",
        status_code=status.HTTP_409_CONFLICT,
        error_code="REQUEST_FAILED",
        details={"error_code": record.error_code},
    )
