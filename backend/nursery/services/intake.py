"""Intake and close: the batch mutations that need no saga.

Intake creates a root batch (no parents), including:
  - Classifying its phase from the size/container catalog
  - Allocating its batch number from the sequencer
  - Recording a CHECK_IN event
  - Optionally claiming a request id so a retried intake is not doubled

Everything after number allocation is one transaction, so there is nothing
to compensate: the batch, its event and the completed claim land together.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nursery.config import Settings, settings as default_settings
from nursery.context import ActorContext
from nursery.database import session_scope
from nursery.exceptions import LineageValidationError
from nursery.models.batch import Batch, BatchStatus
from nursery.models.batch_event import EventType
from nursery.models.mutation_request import MutationRequest
from nursery.schemas.batch import BatchOut, IntakeRequest, IntakeResult
from nursery.services import catalog, events, idempotency, ledger, phase
from nursery.services.events import EventDraft
from nursery.services.mutations import parse_request
from nursery.services.sequencer import build_sequencer

logger = logging.getLogger(__name__)


async def intake_batch(
    ctx: ActorContext,
    request: IntakeRequest | dict,
    *,
    request_id: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    sequencer=None,
    config: Settings | None = None,
) -> IntakeResult:
    """Create a root batch and return it.

    Raises:
        LineageValidationError: malformed request.
        NotFoundError: unknown size or location.
    """
    body = parse_request(IntakeRequest, request)
    config = config or default_settings
    sequencer = sequencer or build_sequencer(session_factory, config)

    # ── Replay a completed intake without burning a number ────
    if request_id:
        async with session_scope(session_factory) as db:
            existing = await idempotency.get_claim(db, request_id)
        if existing is not None:
            return _replayed(ctx, existing)

    # ── Validate catalog references ───────────────────────────
    async with session_scope(session_factory) as db:
        size = await catalog.get_size(db, ctx.org_id, body.size_id)
        await catalog.require_location(db, ctx.org_id, body.location_id)
    batch_phase = phase.classify(
        size.container_kind, size.cell_multiplicity, config.many_cells_threshold
    )
    batch_number = await sequencer.next(ctx.org_id, batch_phase)

    # ── Claim, create, log, complete: one transaction ─────────
    async with session_scope(session_factory) as db:
        if request_id:
            claim = await idempotency.claim(
                db, request_id,
                org_id=ctx.org_id, actor_id=ctx.user_id, operation="intake",
            )
            if not claim.first_use:
                return _replayed(ctx, claim.record)

        batch = await ledger.open_batch(db, Batch(
            org_id=ctx.org_id,
            batch_number=batch_number,
            plant_variety_id=body.plant_variety_id,
            size_id=size.id,
            location_id=body.location_id,
            supplier_id=body.supplier_id,
            phase=batch_phase.value,
            status=BatchStatus.GROWING.value,
            quantity=body.quantity,
            initial_quantity=body.quantity,
            planted_at=body.planted_at,
            notes=body.notes,
            created_by=ctx.user_id,
        ))
        await events.append_events(
            db,
            org_id=ctx.org_id,
            actor_id=ctx.user_id,
            request_id=request_id,
            events=[EventDraft(batch.id, EventType.CHECK_IN, {
                "units": body.quantity,
                "supplier_id": body.supplier_id,
                "notes": body.notes,
            })],
        )
        result = IntakeResult(request_id=request_id, batch=BatchOut.model_validate(batch))
        if request_id:
            await idempotency.complete(db, request_id, result.model_dump(mode="json"))

    logger.info(
        "Intake %s: %d units as %s (%s)",
        request_id or "-", body.quantity, batch.batch_number, batch.phase,
    )
    return result


def _replayed(ctx: ActorContext, record: MutationRequest) -> IntakeResult:
    if record.org_id != ctx.org_id or record.operation != "intake":
        raise LineageValidationError(
            f"Request id {record.request_id} was already used for a different "
            f"{record.operation} request"
        )
    previous = idempotency.previous_outcome(record)
    return IntakeResult.model_validate(previous).model_copy(update={"replayed": True})


async def close_batch(
    ctx: ActorContext,
    batch_id: str,
    reason: str | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> bool:
    """Archive a batch explicitly, whatever it still holds.

    Returns False (and logs nothing) if the batch was already archived.
    """
    async with session_scope(session_factory) as db:
        batch = await ledger.get_batch(db, ctx.org_id, batch_id)
        if batch.is_archived:
            return False
        archived = await ledger.archive(db, ctx.org_id, batch_id, require_empty=False)
        if not archived:
            # Archived concurrently
            return False
        await events.append_events(
            db,
            org_id=ctx.org_id,
            actor_id=ctx.user_id,
            request_id=None,
            events=[EventDraft(batch_id, EventType.ARCHIVE, {
                "reason": reason or "closed",
                "quantity_at_close": batch.quantity,
            })],
        )

    logger.info("Closed batch %s (%d units left)", batch.batch_number, batch.quantity)
    return True
