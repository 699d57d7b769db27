"""Quantity ledger — the only code path that changes a batch's unit count.

``debit`` is a single conditional UPDATE (``WHERE quantity >= :units``)
rather than a read-then-write, so two concurrent debits against the same
batch can never both succeed when only one of them fits.  Each debit also
writes a QuantityMovement row keyed by request id in the same transaction.

``credit`` exists only for compensation.  It applies only if a debit for
the same (batch, request) is on record and has not already been credited,
which makes it safe to run when it is unknown whether the debit landed.
"""

import logging
from datetime import datetime

from sqlalchemy import case, delete, exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nursery.exceptions import (
    InsufficientQuantityError,
    LineageValidationError,
    NotFoundError,
)
from nursery.models.batch import Batch, BatchStatus
from nursery.models.batch_ancestry import BatchAncestry
from nursery.models.quantity_movement import CREDIT, DEBIT, QuantityMovement

logger = logging.getLogger(__name__)


async def get_batch(db: AsyncSession, org_id: str, batch_id: str) -> Batch:
    """Load a batch scoped to an organization or raise NotFoundError."""
    batch = (
        await db.execute(
            select(Batch).where(Batch.id == batch_id, Batch.org_id == org_id)
        )
    ).scalar_one_or_none()
    if not batch:
        raise NotFoundError("Batch", batch_id)
    return batch


async def open_batch(db: AsyncSession, batch: Batch) -> Batch:
    """Insert a new batch row.  ``initial_quantity`` defaults to ``quantity``."""
    if batch.initial_quantity is None:
        batch.initial_quantity = batch.quantity
    db.add(batch)
    await db.flush()  # populate batch.id
    return batch


async def discard_batch(db: AsyncSession, org_id: str, batch_id: str) -> bool:
    """Delete a child batch created earlier in a failed saga.

    Refuses to delete a batch that already has ancestry edges (those are
    append-only).  Returns False when there was nothing to delete.
    """
    has_edges = exists().where(BatchAncestry.child_batch_id == batch_id)
    result = await db.execute(
        delete(Batch)
        .where(Batch.id == batch_id, Batch.org_id == org_id, ~has_edges)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def debit(
    db: AsyncSession,
    org_id: str,
    batch_id: str,
    units: int,
    request_id: str,
) -> int:
    """Atomically take ``units`` out of a batch and return the new quantity.

    Raises:
        NotFoundError: the batch does not exist in this organization.
        InsufficientQuantityError: the batch holds fewer than ``units``.
    """
    if units <= 0:
        raise LineageValidationError(f"Debit units must be positive, got {units}")

    new_quantity = (
        await db.execute(
            update(Batch)
            .where(
                Batch.id == batch_id,
                Batch.org_id == org_id,
                Batch.status != BatchStatus.ARCHIVED.value,
                Batch.quantity >= units,
            )
            .values(quantity=Batch.quantity - units, updated_at=datetime.utcnow())
            .returning(Batch.quantity)
            .execution_options(synchronize_session=False)
        )
    ).scalar_one_or_none()

    if new_quantity is None:
        row = (
            await db.execute(
                select(Batch.quantity, Batch.batch_number, Batch.status).where(
                    Batch.id == batch_id, Batch.org_id == org_id
                )
            )
        ).one_or_none()
        if row is None:
            raise NotFoundError("Batch", batch_id)
        available = 0 if row.status == BatchStatus.ARCHIVED.value else row.quantity
        raise InsufficientQuantityError(
            batch_id=batch_id,
            requested=units,
            available=available,
            batch_number=row.batch_number,
        )

    db.add(QuantityMovement(
        org_id=org_id,
        batch_id=batch_id,
        request_id=request_id,
        kind=DEBIT,
        units=-units,
        quantity_after=new_quantity,
    ))
    await db.flush()
    return new_quantity


async def credit(
    db: AsyncSession,
    org_id: str,
    batch_id: str,
    units: int,
    request_id: str,
) -> int | None:
    """Undo a debit made under ``request_id``.  Returns the new quantity.

    Returns None (and changes nothing) when no such debit is on record,
    when it was already credited, or when the batch no longer exists.
    Never raises the quantity above ``initial_quantity``.
    """
    movements = (
        await db.execute(
            select(QuantityMovement).where(
                QuantityMovement.batch_id == batch_id,
                QuantityMovement.request_id == request_id,
            )
        )
    ).scalars().all()
    debits = [m for m in movements if m.kind == DEBIT]
    if not debits:
        logger.info(
            "No debit of batch %s under request %s; credit skipped",
            batch_id, request_id,
        )
        return None
    if any(m.kind == CREDIT for m in movements):
        logger.info(
            "Debit of batch %s under request %s already credited",
            batch_id, request_id,
        )
        return None

    debited = -debits[0].units
    if units > debited:
        raise LineageValidationError(
            f"Cannot credit {units} units to batch {batch_id}: "
            f"only {debited} were debited under request {request_id}"
        )

    restored = Batch.quantity + units
    new_quantity = (
        await db.execute(
            update(Batch)
            .where(Batch.id == batch_id, Batch.org_id == org_id)
            .values(
                quantity=case(
                    (restored > Batch.initial_quantity, Batch.initial_quantity),
                    else_=restored,
                ),
                updated_at=datetime.utcnow(),
            )
            .returning(Batch.quantity)
            .execution_options(synchronize_session=False)
        )
    ).scalar_one_or_none()

    if new_quantity is None:
        logger.warning("Batch %s vanished before credit of %d units", batch_id, units)
        return None

    db.add(QuantityMovement(
        org_id=org_id,
        batch_id=batch_id,
        request_id=request_id,
        kind=CREDIT,
        units=units,
        quantity_after=new_quantity,
    ))
    await db.flush()
    return new_quantity


async def archive(
    db: AsyncSession,
    org_id: str,
    batch_id: str,
    *,
    require_empty: bool = True,
) -> bool:
    """Mark a batch archived.  Returns False if it was not eligible.

    With ``require_empty`` the update only applies while quantity is 0,
    so a concurrent credit cannot leave stock in an archived batch.
    """
    conditions = [
        Batch.id == batch_id,
        Batch.org_id == org_id,
        Batch.status != BatchStatus.ARCHIVED.value,
    ]
    if require_empty:
        conditions.append(Batch.quantity == 0)

    now = datetime.utcnow()
    archived_id = (
        await db.execute(
            update(Batch)
            .where(*conditions)
            .values(status=BatchStatus.ARCHIVED.value, archived_at=now, updated_at=now)
            .returning(Batch.id)
            .execution_options(synchronize_session=False)
        )
    ).scalar_one_or_none()
    return archived_id is not None


async def movements_for_request(
    db: AsyncSession, request_id: str
) -> list[QuantityMovement]:
    result = await db.execute(
        select(QuantityMovement)
        .where(QuantityMovement.request_id == request_id)
        .order_by(QuantityMovement.created_at)
    )
    return list(result.scalars().all())
