"""Split and Merge, run as explicit sagas.

Split (1 parent → 1 child):
  START → CHILD_CREATED → PARENT_DEBITED → ANCESTRY_LINKED → EVENTS_LOGGED
        → (PARENT_ARCHIVED) → DONE

Merge (N sources → 1 child):
  START → CHILD_CREATED → SOURCES_DEBITED → ANCESTRY_LINKED → EVENTS_LOGGED
        → (SOURCES_ARCHIVED) → DONE

Any failure after CHILD_CREATED and before ANCESTRY_LINKED enters
COMPENSATING: every debit that may have applied is credited back (credits
are idempotent per request id, so an in-flight debit of unknown outcome is
credited too), the child row is deleted, a COMPENSATED event is written on
each restored batch and the idempotency claim is released so the caller can
retry with the same request id.  If a compensating action itself fails the
claim is marked failed and UnrecoverableError is raised (FAILED).  A link
error whose edges did commit is not compensated: the saga rolls forward.

Event logging and auto-archive run after the lineage is already consistent
and are best-effort: their failures are logged, never compensated.  A claim
whose events failed completes at ANCESTRY_LINKED so the recovery sweep can
write them later.

Each step commits in its own short transaction and journals its progress on
the claim row, so ``nursery.services.recovery`` can finish or unwind a saga
interrupted by a crash.

Usage:
    orchestrator = build_orchestrator()
    result = await orchestrator.split(
        ActorContext(org_id, user_id), request_id,
        {"parent_batch_id": ..., "target_size_id": ..., "target_location_id": ...,
         "containers": 2, "units_per_container": 5},
    )
"""

import enum
import logging
from dataclasses import dataclass, field

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nursery.config import Settings, settings as default_settings
from nursery.context import ActorContext
from nursery.database import session_scope
from nursery.exceptions import (
    InsufficientQuantityError,
    LineageError,
    LineageValidationError,
    NotFoundError,
    UnrecoverableError,
)
from nursery.models.batch import Batch, BatchStatus
from nursery.models.batch_event import EventType
from nursery.schemas.batch import (
    BatchOut,
    MergeRequest,
    MergeResult,
    MergeSourceOutcome,
    SplitRequest,
    SplitResult,
)
from nursery.services import ancestry, catalog, events, idempotency, ledger, phase
from nursery.services.ancestry import AncestryLink
from nursery.services.events import EventDraft
from nursery.services.sequencer import build_sequencer

logger = logging.getLogger(__name__)

# Errors that prove a debit did not apply; anything else leaves it uncertain
_DEFINITIVE_REJECTIONS = (InsufficientQuantityError, NotFoundError, LineageValidationError)


class SagaState(str, enum.Enum):
    START = "start"
    CHILD_CREATED = "child_created"
    PARENT_DEBITED = "parent_debited"
    SOURCES_DEBITED = "sources_debited"
    ANCESTRY_LINKED = "ancestry_linked"
    EVENTS_LOGGED = "events_logged"
    PARENT_ARCHIVED = "parent_archived"
    SOURCES_ARCHIVED = "sources_archived"
    DONE = "done"
    COMPENSATING = "compensating"
    FAILED = "failed"


# Steps after which the lineage is consistent and the saga rolls forward
COMMITTED_STEPS = {
    SagaState.ANCESTRY_LINKED.value,
    SagaState.EVENTS_LOGGED.value,
    SagaState.PARENT_ARCHIVED.value,
    SagaState.SOURCES_ARCHIVED.value,
    SagaState.DONE.value,
}


@dataclass
class _Saga:
    """In-memory progress of one request, mirrored to the claim journal."""
    ctx: ActorContext
    request_id: str
    operation: str
    planned: list[tuple[str, int]]
    auto_archive: set[str] = field(default_factory=set)
    notes: str | None = None
    state: SagaState = SagaState.START
    child: Batch | None = None
    debited: list[tuple[str, int]] = field(default_factory=list)
    events_logged: bool = False

    def journal(self) -> dict:
        return {
            "sources": [
                {"batch_id": b, "units": u, "auto_archive": b in self.auto_archive}
                for b, u in self.planned
            ],
            "debited": [b for b, _ in self.debited],
            "notes": self.notes,
        }


# ── Event payloads ───────────────────────────────────────────

def split_event_drafts(
    parent: Batch, child: Batch, units: int, remaining: int, notes: str | None = None
) -> list[EventDraft]:
    return [
        EventDraft(parent.id, EventType.SPLIT_OUT, {
            "child_batch_id": child.id,
            "child_batch_number": child.batch_number,
            "units": units,
            "remaining_quantity": remaining,
            "notes": notes,
        }),
        EventDraft(child.id, EventType.SPLIT_IN, {
            "parent_batch_id": parent.id,
            "parent_batch_number": parent.batch_number,
            "units": units,
            "notes": notes,
        }),
    ]


def merge_event_drafts(
    child: Batch, outcomes: list[MergeSourceOutcome], notes: str | None = None
) -> list[EventDraft]:
    total = sum(o.units for o in outcomes)
    drafts = [
        EventDraft(o.batch_id, EventType.MERGE_OUT, {
            "child_batch_id": child.id,
            "child_batch_number": child.batch_number,
            "units": o.units,
            "remaining_quantity": o.remaining_quantity,
            "notes": notes,
        })
        for o in outcomes
    ]
    drafts.append(EventDraft(child.id, EventType.MERGE_IN, {
        "sources": [
            {
                "batch_id": o.batch_id,
                "batch_number": o.batch_number,
                "units": o.units,
                "proportion": o.units / total,
            }
            for o in outcomes
        ],
        "units": total,
        "notes": notes,
    }))
    return drafts


class MutationOrchestrator:
    """Runs Split and Merge requests against the ledger, sequencer and recorder."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        sequencer=None,
        config: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._config = config or default_settings
        self._sequencer = sequencer or build_sequencer(session_factory, self._config)

    def _session(self):
        return session_scope(self._session_factory)

    # ── Split ────────────────────────────────────────────────

    async def split(
        self, ctx: ActorContext, request_id: str, request: SplitRequest | dict
    ) -> SplitResult:
        """Move part (or all) of one batch into a new child batch."""
        body = parse_request(SplitRequest, request)
        units = body.total_units
        saga = _Saga(
            ctx, request_id, "split", [(body.parent_batch_id, units)],
            auto_archive={body.parent_batch_id} if body.auto_archive_parent_if_empty else set(),
            notes=body.notes,
        )

        previous = await self._claim(saga)
        if previous is not None:
            return SplitResult.model_validate(previous).model_copy(update={"replayed": True})

        # START: validate, classify, number.  No writes yet besides the claim.
        try:
            async with self._session() as db:
                parent = await ledger.get_batch(db, ctx.org_id, body.parent_batch_id)
                if parent.is_archived:
                    raise LineageValidationError(
                        f"Batch {parent.batch_number} is archived",
                        details={"batch_id": parent.id},
                    )
                size = await catalog.get_size(db, ctx.org_id, body.target_size_id)
                await catalog.require_location(db, ctx.org_id, body.target_location_id)
            target_phase = phase.classify(
                size.container_kind, size.cell_multiplicity,
                self._config.many_cells_threshold,
            )
            batch_number = await self._sequencer.next(ctx.org_id, target_phase)
        except Exception as exc:
            await self._release(saga, exc)
            raise

        await self._create_child(saga, Batch(
            org_id=ctx.org_id,
            batch_number=batch_number,
            plant_variety_id=parent.plant_variety_id,
            size_id=size.id,
            location_id=body.target_location_id,
            supplier_id=parent.supplier_id,
            phase=target_phase.value,
            status=BatchStatus.GROWING.value,
            quantity=units,
            initial_quantity=units,
            planted_at=body.planted_at,
            notes=body.notes,
            created_by=ctx.user_id,
        ))
        child = saga.child

        # CHILD_CREATED → PARENT_DEBITED
        remaining = await self._debit(saga, parent.id, units, SagaState.PARENT_DEBITED)

        # PARENT_DEBITED → ANCESTRY_LINKED
        await self._link(saga, [AncestryLink(parent.id, child.id, 1.0, units)])

        # ANCESTRY_LINKED → EVENTS_LOGGED (non-fatal)
        await self._log_events(
            saga, split_event_drafts(parent, child, units, remaining, body.notes)
        )

        parent_archived = False
        if body.auto_archive_parent_if_empty and remaining == 0:
            parent_archived = await self._auto_archive(saga, parent, SagaState.PARENT_ARCHIVED)

        result = SplitResult(
            request_id=request_id,
            child_batch=BatchOut.model_validate(child),
            parent_batch_id=parent.id,
            parent_remaining_quantity=remaining,
            parent_archived=parent_archived,
        )
        await self._complete(saga, result)
        logger.info(
            "Split %s: %d units %s → %s (%s), parent now %d",
            request_id, units, parent.batch_number, child.batch_number,
            child.phase, remaining,
        )
        return result

    # ── Merge ────────────────────────────────────────────────

    async def merge(
        self, ctx: ActorContext, request_id: str, request: MergeRequest | dict
    ) -> MergeResult:
        """Combine units from several source batches into one new child batch."""
        body = parse_request(MergeRequest, request)
        if body.contributed_units != body.required_units:
            raise LineageValidationError(
                f"Source units ({body.contributed_units}) must equal the "
                f"required total ({body.required_units})",
                details={
                    "required_units": body.required_units,
                    "contributed_units": body.contributed_units,
                },
            )
        saga = _Saga(
            ctx, request_id, "merge", [(s.batch_id, s.units) for s in body.sources],
            auto_archive={s.batch_id for s in body.sources if s.auto_archive_if_empty},
            notes=body.notes,
        )

        previous = await self._claim(saga)
        if previous is not None:
            return MergeResult.model_validate(previous).model_copy(update={"replayed": True})

        try:
            async with self._session() as db:
                sources: dict[str, Batch] = {}
                for item in body.sources:
                    source = await db.get(Batch, item.batch_id)
                    if source is None:
                        raise NotFoundError("Batch", item.batch_id)
                    if source.org_id != ctx.org_id:
                        raise LineageValidationError(
                            f"Batch {item.batch_id} belongs to a different organization",
                            details={"batch_id": item.batch_id},
                        )
                    if source.is_archived:
                        raise LineageValidationError(
                            f"Batch {source.batch_number} is archived",
                            details={"batch_id": source.id},
                        )
                    sources[source.id] = source
                size = await catalog.get_size(db, ctx.org_id, body.target_size_id)
                await catalog.require_location(db, ctx.org_id, body.target_location_id)
            target_phase = phase.classify(
                size.container_kind, size.cell_multiplicity,
                self._config.many_cells_threshold,
            )
            batch_number = await self._sequencer.next(ctx.org_id, target_phase)
        except Exception as exc:
            await self._release(saga, exc)
            raise

        await self._create_child(saga, Batch(
            org_id=ctx.org_id,
            batch_number=batch_number,
            plant_variety_id=body.target_variety_id,
            size_id=size.id,
            location_id=body.target_location_id,
            phase=target_phase.value,
            status=BatchStatus.GROWING.value,
            quantity=body.required_units,
            initial_quantity=body.required_units,
            planted_at=body.planted_at,
            notes=body.notes,
            created_by=ctx.user_id,
        ))
        child = saga.child

        # CHILD_CREATED → SOURCES_DEBITED, one source at a time in request order
        outcomes: list[MergeSourceOutcome] = []
        last = len(body.sources) - 1
        for index, item in enumerate(body.sources):
            step = SagaState.SOURCES_DEBITED if index == last else SagaState.CHILD_CREATED
            remaining = await self._debit(saga, item.batch_id, item.units, step)
            outcomes.append(MergeSourceOutcome(
                batch_id=item.batch_id,
                batch_number=sources[item.batch_id].batch_number,
                units=item.units,
                remaining_quantity=remaining,
            ))

        # SOURCES_DEBITED → ANCESTRY_LINKED
        proportions = ancestry.proportions_for([(o.batch_id, o.units) for o in outcomes])
        await self._link(saga, [
            AncestryLink(batch_id, child.id, share, outcome.units)
            for (batch_id, share), outcome in zip(proportions, outcomes)
        ])

        await self._log_events(saga, merge_event_drafts(child, outcomes, body.notes))

        # Auto-archive is independent per source
        for item, outcome in zip(body.sources, outcomes):
            if item.auto_archive_if_empty and outcome.remaining_quantity == 0:
                outcome.archived = await self._auto_archive(
                    saga, sources[item.batch_id], SagaState.SOURCES_ARCHIVED
                )

        result = MergeResult(
            request_id=request_id,
            child_batch=BatchOut.model_validate(child),
            sources=outcomes,
        )
        await self._complete(saga, result)
        logger.info(
            "Merge %s: %d sources → %s (%d units, %s)",
            request_id, len(outcomes), child.batch_number, child.quantity, child.phase,
        )
        return result

    # ── Steps ────────────────────────────────────────────────

    async def _claim(self, saga: _Saga) -> dict | None:
        """Claim the request id; return the recorded result of a prior run."""
        async with self._session() as db:
            claim = await idempotency.claim(
                db,
                saga.request_id,
                org_id=saga.ctx.org_id,
                actor_id=saga.ctx.user_id,
                operation=saga.operation,
                sources=saga.journal()["sources"],
            )
        if claim.first_use:
            return None
        logger.info("Duplicate %s request %s", saga.operation, saga.request_id)
        return idempotency.previous_outcome(claim.record)

    async def _release(self, saga: _Saga, cause: BaseException) -> None:
        """Give the claim back after a failure that left nothing to undo."""
        logger.warning(
            "%s request %s rejected: %s", saga.operation.capitalize(),
            saga.request_id, cause,
        )
        try:
            async with self._session() as db:
                await idempotency.release(db, saga.request_id)
        except Exception:
            logger.exception("Could not release claim %s", saga.request_id)

    async def _create_child(self, saga: _Saga, child: Batch) -> None:
        try:
            async with self._session() as db:
                await ledger.open_batch(db, child)
                await idempotency.record_step(
                    db, saga.request_id, SagaState.CHILD_CREATED.value,
                    child_batch_id=child.id,
                )
        except Exception as exc:
            await self._release(saga, exc)
            raise
        saga.child = child
        saga.state = SagaState.CHILD_CREATED

    async def _debit(
        self, saga: _Saga, batch_id: str, units: int, step: SagaState
    ) -> int:
        try:
            async with self._session() as db:
                remaining = await ledger.debit(
                    db, saga.ctx.org_id, batch_id, units, saga.request_id
                )
                journal = saga.journal()
                journal["debited"].append(batch_id)
                await idempotency.record_step(db, saga.request_id, step.value, journal=journal)
        except Exception as exc:
            in_flight = None if isinstance(exc, _DEFINITIVE_REJECTIONS) else (batch_id, units)
            await self._compensate(saga, exc, in_flight)
            raise
        saga.debited.append((batch_id, units))
        saga.state = step
        return remaining

    async def _link(self, saga: _Saga, links: list[AncestryLink]) -> None:
        try:
            total = sum(edge.proportion for edge in links)
            if abs(total - 1.0) > self._config.ancestry_tolerance:
                raise LineageValidationError(
                    f"Ancestry proportions for {saga.child.batch_number} sum to {total}, not 1"
                )
            async with self._session() as db:
                await ancestry.link_many(db, saga.ctx.org_id, links)
                await idempotency.record_step(
                    db, saga.request_id, SagaState.ANCESTRY_LINKED.value
                )
        except Exception as exc:
            if not isinstance(exc, LineageValidationError) and await self._edges_landed(saga):
                logger.warning(
                    "Ancestry for %s request %s was written despite %s; rolling forward",
                    saga.operation, saga.request_id, exc,
                )
            else:
                await self._compensate(saga, exc)
                raise
        saga.state = SagaState.ANCESTRY_LINKED

    async def _edges_landed(self, saga: _Saga) -> bool:
        """After a link error of unknown outcome, adopt edges that did commit."""
        try:
            if not await lineage_linked(self._session_factory, saga.child.id):
                return False
            async with self._session() as db:
                await idempotency.record_step(
                    db, saga.request_id, SagaState.ANCESTRY_LINKED.value
                )
        except Exception:
            # Compensation re-checks the edges before crediting anything
            logger.exception("Could not verify ancestry of request %s", saga.request_id)
            return False
        return True

    async def _log_events(self, saga: _Saga, drafts: list[EventDraft]) -> None:
        try:
            async with self._session() as db:
                await events.append_events(
                    db,
                    org_id=saga.ctx.org_id,
                    actor_id=saga.ctx.user_id,
                    request_id=saga.request_id,
                    events=drafts,
                )
                await idempotency.record_step(
                    db, saga.request_id, SagaState.EVENTS_LOGGED.value
                )
        except Exception:
            # Ledger and ancestry are consistent; the claim completes at
            # ANCESTRY_LINKED and the recovery sweep writes these events later
            logger.exception(
                "Events for %s request %s were not recorded",
                saga.operation, saga.request_id,
            )
            return
        saga.events_logged = True
        saga.state = SagaState.EVENTS_LOGGED

    async def _auto_archive(self, saga: _Saga, batch: Batch, step: SagaState) -> bool:
        """Best-effort archive of an emptied batch.  Never raises."""
        try:
            async with self._session() as db:
                archived = await ledger.archive(db, saga.ctx.org_id, batch.id)
                if archived:
                    await events.append_events(
                        db,
                        org_id=saga.ctx.org_id,
                        actor_id=saga.ctx.user_id,
                        request_id=saga.request_id,
                        events=[EventDraft(batch.id, EventType.ARCHIVE, {
                            "reason": "emptied",
                            "child_batch_id": saga.child.id,
                        })],
                    )
                    if saga.events_logged:
                        await idempotency.record_step(db, saga.request_id, step.value)
        except Exception:
            logger.exception("Auto-archive of batch %s failed", batch.batch_number)
            return False
        if archived:
            saga.state = step
        return archived

    async def _complete(self, saga: _Saga, result: BaseModel) -> None:
        step = SagaState.DONE if saga.events_logged else SagaState.ANCESTRY_LINKED
        try:
            async with self._session() as db:
                await idempotency.complete(
                    db, saga.request_id, result.model_dump(mode="json"), step=step.value
                )
        except Exception:
            # Still in progress past ANCESTRY_LINKED: recovery rolls it forward
            logger.exception(
                "Request %s applied but its claim could not be completed",
                saga.request_id,
            )
            return
        if not saga.events_logged:
            logger.warning(
                "Request %s completed without its events; left for the recovery sweep",
                saga.request_id,
            )
        saga.state = SagaState.DONE

    async def _compensate(
        self,
        saga: _Saga,
        cause: BaseException,
        in_flight: tuple[str, int] | None = None,
    ) -> None:
        """Undo every applied step.  Raises UnrecoverableError if that fails."""
        failed_at = saga.state
        saga.state = SagaState.COMPENSATING
        logger.warning(
            "%s request %s failed after %s: %s; compensating",
            saga.operation.capitalize(), saga.request_id, failed_at.value, cause,
        )

        to_credit = list(saga.debited)
        if in_flight is not None:
            to_credit.append(in_flight)
        errors = await compensate_steps(
            self._session_factory,
            saga.ctx,
            saga.request_id,
            credits=to_credit,
            child_batch_id=saga.child.id if saga.child else None,
            reason=getattr(cause, "error_code", type(cause).__name__),
        )

        if errors:
            saga.state = SagaState.FAILED
            await mark_unrecoverable(self._session_factory, saga.request_id, cause, errors)
            raise UnrecoverableError(saga.request_id, cause, errors) from cause

        try:
            async with self._session() as db:
                await idempotency.release(db, saga.request_id)
        except Exception:
            logger.exception(
                "Request %s compensated but its claim could not be released",
                saga.request_id,
            )


async def compensate_steps(
    session_factory: async_sessionmaker[AsyncSession] | None,
    ctx: ActorContext,
    request_id: str,
    *,
    credits: list[tuple[str, int]],
    child_batch_id: str | None,
    reason: str,
) -> list[BaseException]:
    """Credit debited batches back, delete the child, log COMPENSATED events.

    Every action is safe to repeat.  Returns the errors of the actions that
    failed; an empty list means the request left no trace in the ledger.
    """
    errors: list[BaseException] = []
    restored: list[tuple[str, int, int]] = []

    # Once the child has parents its units are accounted for; crediting the
    # sources as well would create stock
    if child_batch_id:
        try:
            linked = await lineage_linked(session_factory, child_batch_id)
        except Exception as exc:
            logger.exception("Could not check ancestry of child batch %s", child_batch_id)
            return [exc]
        if linked:
            logger.error(
                "Child batch %s of request %s is already linked; credits withheld",
                child_batch_id, request_id,
            )
            return [LineageError(
                f"Child batch {child_batch_id} already has ancestry edges",
                error_code="LINEAGE_COMMITTED",
            )]

    for batch_id, units in reversed(credits):
        try:
            async with session_scope(session_factory) as db:
                quantity = await ledger.credit(db, ctx.org_id, batch_id, units, request_id)
        except Exception as exc:
            logger.exception("Credit of %d units to batch %s failed", units, batch_id)
            errors.append(exc)
            continue
        if quantity is not None:
            restored.append((batch_id, units, quantity))

    if child_batch_id:
        try:
            async with session_scope(session_factory) as db:
                discarded = await ledger.discard_batch(db, ctx.org_id, child_batch_id)
                if not discarded and await db.get(Batch, child_batch_id) is not None:
                    raise LineageError(
                        f"Child batch {child_batch_id} could not be discarded",
                        error_code="CHILD_NOT_DISCARDED",
                    )
        except Exception as exc:
            logger.exception("Discarding child batch %s failed", child_batch_id)
            errors.append(exc)

    if restored:
        try:
            async with session_scope(session_factory) as db:
                await events.append_events(
                    db,
                    org_id=ctx.org_id,
                    actor_id=ctx.user_id,
                    request_id=request_id,
                    events=[
                        EventDraft(batch_id, EventType.COMPENSATED, {
                            "credited_units": units,
                            "restored_quantity": quantity,
                            "discarded_child_batch_id": child_batch_id,
                            "reason": reason,
                        })
                        for batch_id, units, quantity in restored
                    ],
                )
        except Exception:
            logger.exception("COMPENSATED events for request %s not recorded", request_id)

    return errors


async def lineage_linked(
    session_factory: async_sessionmaker[AsyncSession] | None, child_batch_id: str
) -> bool:
    """True once any ancestry edge into ``child_batch_id`` has committed."""
    async with session_scope(session_factory) as db:
        return bool(await ancestry.parents_of(db, child_batch_id))


async def mark_unrecoverable(
    session_factory: async_sessionmaker[AsyncSession] | None,
    request_id: str,
    cause: BaseException,
    errors: list[BaseException],
) -> None:
    logger.critical(
        "Compensation failed for request %s (cause: %s); %d action(s) did not "
        "apply, ledger needs manual reconciliation: %s",
        request_id, cause, len(errors), "; ".join(str(e) for e in errors),
    )
    try:
        async with session_scope(session_factory) as db:
            await idempotency.mark_failed(db, request_id, "COMPENSATION_FAILED")
    except Exception:
        logger.exception("Could not mark request %s failed", request_id)


def parse_request(model: type[BaseModel], request):
    if isinstance(request, model):
        return request
    try:
        return model.model_validate(request)
    except ValidationError as exc:
        errors = [
            {
                "field": " -> ".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
            }
            for error in exc.errors()
        ]
        raise LineageValidationError(
            f"Invalid {model.__name__}", details={"errors": errors}
        ) from exc


def build_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    config: Settings | None = None,
) -> MutationOrchestrator:
    config = config or default_settings
    return MutationOrchestrator(
        session_factory, build_sequencer(session_factory, config), config
    )
