"""Crash recovery for sagas left in progress.

A claim still ``in_progress`` long after it was last touched belongs to a
process that died mid-saga.  Its journal says how far it got:

  - ancestry linked (journaled, or edges found on the child): the lineage
    is consistent, so the saga is rolled forward.  Missing events are
    written, journaled auto-archives are applied and the claim is completed
    with a result rebuilt from the store.
  - anything earlier: the saga is unwound.  Every planned source is
    credited (a no-op for sources never debited), the child is deleted,
    COMPENSATED events are written and the claim is released.

Completed claims left at ``ancestry_linked`` finished without their events;
the sweep writes those events too.

Run it from the CLI (``python -m nursery.cli recover-claims``) or let the
background sweep in ``nursery.services.scheduler`` call it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nursery.config import settings
from nursery.context import ActorContext
from nursery.database import session_scope
from nursery.models.batch_event import EventType
from nursery.models.mutation_request import ClaimState, MutationRequest
from nursery.models.quantity_movement import DEBIT
from nursery.schemas.batch import BatchOut, MergeResult, MergeSourceOutcome, SplitResult
from nursery.services import ancestry, events, idempotency, ledger
from nursery.services.events import EventDraft
from nursery.services.mutations import (
    COMMITTED_STEPS,
    SagaState,
    compensate_steps,
    lineage_linked,
    mark_unrecoverable,
    merge_event_drafts,
    split_event_drafts,
)

logger = logging.getLogger(__name__)

# Steps at which the mutation's own events are already in the log
_EVENTS_WRITTEN = {
    SagaState.EVENTS_LOGGED.value,
    SagaState.PARENT_ARCHIVED.value,
    SagaState.SOURCES_ARCHIVED.value,
    SagaState.DONE.value,
}


@dataclass
class RecoveryReport:
    rolled_forward: list[str] = field(default_factory=list)
    compensated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    relogged: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return (
            len(self.rolled_forward) + len(self.compensated)
            + len(self.failed) + len(self.relogged)
        )


async def recover_stale_claims(
    older_than: timedelta | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    now: datetime | None = None,
) -> RecoveryReport:
    """Finish or unwind every saga whose claim is older than ``older_than``."""
    if older_than is None:
        older_than = timedelta(minutes=settings.stale_claim_minutes)
    cutoff = (now or datetime.utcnow()) - older_than

    async with session_scope(session_factory) as db:
        claims = await idempotency.stale_claims(db, cutoff)
        unlogged = await idempotency.claims_missing_events(db, cutoff)

    report = RecoveryReport()
    for record in claims:
        try:
            if record.step in COMMITTED_STEPS or (
                record.child_batch_id
                and await lineage_linked(session_factory, record.child_batch_id)
            ):
                await _roll_forward(session_factory, record)
                report.rolled_forward.append(record.request_id)
            elif await _unwind(session_factory, record):
                report.compensated.append(record.request_id)
            else:
                report.failed.append(record.request_id)
        except Exception:
            logger.exception("Recovery of request %s failed", record.request_id)
            report.failed.append(record.request_id)

    for record in unlogged:
        try:
            await _roll_forward(session_factory, record)
            report.relogged.append(record.request_id)
        except Exception:
            logger.exception("Events for request %s still not recorded", record.request_id)
            report.failed.append(record.request_id)

    if claims or unlogged:
        logger.info(
            "Recovered %d claim(s): %d rolled forward, %d compensated, "
            "%d re-logged, %d failed",
            report.total, len(report.rolled_forward), len(report.compensated),
            len(report.relogged), len(report.failed),
        )
    return report


async def _unwind(
    session_factory: async_sessionmaker[AsyncSession] | None,
    record: MutationRequest,
) -> bool:
    ctx = ActorContext(record.org_id, record.actor_id)
    planned = [
        (source["batch_id"], source["units"])
        for source in (record.journal or {}).get("sources", [])
    ]
    logger.warning(
        "Unwinding %s request %s stuck at %s",
        record.operation, record.request_id, record.step,
    )
    errors = await compensate_steps(
        session_factory,
        ctx,
        record.request_id,
        credits=planned,
        child_batch_id=record.child_batch_id,
        reason="STALE_CLAIM",
    )
    if errors:
        await mark_unrecoverable(
            session_factory, record.request_id,
            RuntimeError(f"saga abandoned at {record.step}"), errors,
        )
        return False

    async with session_scope(session_factory) as db:
        await idempotency.release(db, record.request_id)
    return True


async def _roll_forward(
    session_factory: async_sessionmaker[AsyncSession] | None,
    record: MutationRequest,
) -> None:
    ctx = ActorContext(record.org_id, record.actor_id)
    journal = record.journal or {}
    flagged = {s["batch_id"] for s in journal.get("sources", []) if s.get("auto_archive")}
    finished = record.state == ClaimState.COMPLETED.value

    async with session_scope(session_factory) as db:
        child = await ledger.get_batch(db, ctx.org_id, record.child_batch_id)
        edges = await ancestry.parents_of(db, child.id)
        debits = {
            m.batch_id: m
            for m in await ledger.movements_for_request(db, record.request_id)
            if m.kind == DEBIT
        }
        parents = {
            edge.parent_batch_id: await ledger.get_batch(db, ctx.org_id, edge.parent_batch_id)
            for edge in edges
        }

        # Auto-archive the live saga never reached
        archived = {batch_id: batch.is_archived for batch_id, batch in parents.items()}
        archive_drafts: list[EventDraft] = []
        if not finished:
            for batch_id in flagged:
                if archived.get(batch_id) or debits[batch_id].quantity_after != 0:
                    continue
                if await ledger.archive(db, ctx.org_id, batch_id):
                    archived[batch_id] = True
                    archive_drafts.append(EventDraft(batch_id, EventType.ARCHIVE, {
                        "reason": "emptied",
                        "child_batch_id": child.id,
                    }))

        if record.operation == "split":
            (parent,) = parents.values()
            movement = debits[parent.id]
            result = SplitResult(
                request_id=record.request_id,
                child_batch=BatchOut.model_validate(child),
                parent_batch_id=parent.id,
                parent_remaining_quantity=movement.quantity_after,
                parent_archived=archived[parent.id],
            )
            drafts = split_event_drafts(
                parent, child, -movement.units, movement.quantity_after, journal.get("notes")
            )
        else:
            # Request order, as journaled
            order = [s["batch_id"] for s in journal["sources"]]
            outcomes = [
                MergeSourceOutcome(
                    batch_id=batch_id,
                    batch_number=parents[batch_id].batch_number,
                    units=-debits[batch_id].units,
                    remaining_quantity=debits[batch_id].quantity_after,
                    archived=archived[batch_id],
                )
                for batch_id in order
            ]
            result = MergeResult(
                request_id=record.request_id,
                child_batch=BatchOut.model_validate(child),
                sources=outcomes,
            )
            drafts = merge_event_drafts(child, outcomes, journal.get("notes"))

        if record.step in _EVENTS_WRITTEN:
            drafts = []
        if drafts or archive_drafts:
            await events.append_events(
                db,
                org_id=ctx.org_id,
                actor_id=ctx.user_id,
                request_id=record.request_id,
                events=drafts + archive_drafts,
            )
        if finished:
            await idempotency.record_step(db, record.request_id, SagaState.DONE.value)
        else:
            await idempotency.complete(db, record.request_id, result.model_dump(mode="json"))

    logger.info(
        "Rolled %s request %s forward from %s (%d event(s) written)",
        record.operation, record.request_id, record.step,
        len(drafts) + len(archive_drafts),
    )
