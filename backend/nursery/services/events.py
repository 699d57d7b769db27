"""Append-only BatchEvent rows tagged with a request id.

Usage:
    await append_events(
        db, org_id=ctx.org_id, actor_id=ctx.user_id, request_id=request_id,
        events=[EventDraft(parent.id, EventType.SPLIT_OUT, {...})],
    )

Rows are added to the current session and committed with the enclosing
transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nursery.models.batch_event import BatchEvent, EventType


@dataclass
class EventDraft:
    batch_id: str
    event_type: EventType
    payload: dict = field(default_factory=dict)


async def append_events(
    db: AsyncSession,
    *,
    org_id: str,
    actor_id: str | None,
    request_id: str | None,
    events: list[EventDraft],
) -> list[BatchEvent]:
    """Append one BatchEvent per draft to the current DB session."""
    rows = [
        BatchEvent(
            org_id=org_id,
            batch_id=draft.batch_id,
            event_type=draft.event_type.value,
            payload=draft.payload,
            actor_id=actor_id,
            request_id=request_id,
        )
        for draft in events
    ]
    db.add_all(rows)
    await db.flush()
    return rows


async def events_for_batch(db: AsyncSession, batch_id: str) -> list[BatchEvent]:
    result = await db.execute(
        select(BatchEvent)
        .where(BatchEvent.batch_id == batch_id)
        .order_by(BatchEvent.recorded_at)
    )
    return list(result.scalars().all())


async def events_for_request(db: AsyncSession, request_id: str) -> list[BatchEvent]:
    result = await db.execute(
        select(BatchEvent)
        .where(BatchEvent.request_id == request_id)
        .order_by(BatchEvent.recorded_at)
    )
    return list(result.scalars().all())
