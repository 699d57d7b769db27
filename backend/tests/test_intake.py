"""Tests for root batch intake and explicit close."""

import pytest
from sqlalchemy import select

from conftest import OTHER_ORG_ID
from nursery.config import settings
from nursery.context import ActorContext
from nursery.database import session_scope
from nursery.exceptions import (
    InsufficientQuantityError,
    LineageValidationError,
    NotFoundError,
)
from nursery.models import Batch, BatchCounter, BatchStatus, EventType, Phase
from nursery.services import ancestry, events, ledger
from nursery.services.intake import close_batch, intake_batch


def intake_body(catalog, **overrides):
    body = {
        "plant_variety_id": "variety-lavender",
        "size_id": catalog.tray,
        "location_id": catalog.location,
        "quantity": 208,
        "supplier_id": "supplier-seeds",
    }
    body.update(overrides)
    return body


@pytest.fixture
def intake(ctx, session_factory, sequencer):
    async def _intake(body, request_id=None, actor=None):
        return await intake_batch(
            actor or ctx, body,
            request_id=request_id,
            session_factory=session_factory,
            sequencer=sequencer,
            config=settings,
        )

    return _intake


@pytest.mark.integration
@pytest.mark.asyncio
class TestIntake:
    """Creating root batches."""

    async def test_creates_root_batch(self, intake, catalog, session_factory):
        result = await intake(intake_body(catalog))

        batch = result.batch
        assert batch.batch_number == "1-2642-00001"
        assert batch.phase == Phase.PROPAGATION.value
        assert batch.status == BatchStatus.GROWING.value
        assert batch.quantity == batch.initial_quantity == 208
        assert result.replayed is False

        async with session_scope(session_factory) as db:
            assert await ancestry.proportion_sum(db, batch.id) == 0.0
            (event,) = await events.events_for_batch(db, batch.id)
        assert event.event_type == EventType.CHECK_IN.value
        assert event.payload["units"] == 208
        assert event.payload["supplier_id"] == "supplier-seeds"

    @pytest.mark.parametrize("size_attr,phase", [
        ("pot", Phase.FINISHED),
        ("pack", Phase.INTERMEDIATE),
        ("tray", Phase.PROPAGATION),
    ])
    async def test_phase_follows_container(self, intake, catalog, size_attr, phase):
        result = await intake(intake_body(catalog, size_id=getattr(catalog, size_attr)))
        assert result.batch.phase == phase.value

    async def test_numbers_increase_per_phase(self, intake, catalog):
        first = await intake(intake_body(catalog))
        second = await intake(intake_body(catalog))
        pot = await intake(intake_body(catalog, size_id=catalog.pot))

        assert first.batch.batch_number == "1-2642-00001"
        assert second.batch.batch_number == "1-2642-00002"
        assert pot.batch.batch_number == "3-2642-00001"

    async def test_replay_with_request_id(
        self, intake, catalog, count_rows, session_factory
    ):
        """A retried intake returns the first batch and burns no number."""
        first = await intake(intake_body(catalog), request_id="intake-1")
        second = await intake(intake_body(catalog), request_id="intake-1")

        assert second.replayed is True
        assert second.batch.id == first.batch.id
        assert await count_rows(Batch) == 1
        async with session_scope(session_factory) as db:
            counter = (await db.execute(select(BatchCounter))).scalar_one()
        assert counter.value == 1

    async def test_request_id_from_other_org(self, intake, catalog):
        await intake(intake_body(catalog), request_id="intake-1")

        with pytest.raises(LineageValidationError):
            await intake(
                intake_body(catalog), request_id="intake-1",
                actor=ActorContext(org_id=OTHER_ORG_ID),
            )

    async def test_unknown_size(self, intake, catalog, count_rows):
        with pytest.raises(NotFoundError) as exc_info:
            await intake(intake_body(catalog, size_id="no-such-size"))

        assert exc_info.value.resource == "Size"
        assert await count_rows(Batch) == 0

    async def test_size_private_to_other_org(self, intake, catalog):
        with pytest.raises(NotFoundError):
            await intake(intake_body(catalog, size_id=catalog.private_size))

    async def test_inactive_location(self, intake, catalog):
        with pytest.raises(NotFoundError) as exc_info:
            await intake(intake_body(catalog, location_id=catalog.inactive_location))

        assert exc_info.value.resource == "Location"

    async def test_zero_quantity(self, intake, catalog, count_rows):
        with pytest.raises(LineageValidationError) as exc_info:
            await intake(intake_body(catalog, quantity=0))

        fields = [e["field"] for e in exc_info.value.details["errors"]]
        assert fields == ["quantity"]
        assert await count_rows(BatchCounter) == 0


@pytest.mark.integration
@pytest.mark.asyncio
class TestCloseBatch:
    """Explicit archive, whatever the batch still holds."""

    async def test_close_archives_with_event(
        self, ctx, make_batch, reload, session_factory
    ):
        batch = await make_batch(40)

        closed = await close_batch(
            ctx, batch.id, "frost damage", session_factory=session_factory
        )

        assert closed is True
        stored = await reload(batch.id)
        assert stored.status == BatchStatus.ARCHIVED.value
        assert stored.archived_at is not None
        async with session_scope(session_factory) as db:
            (event,) = await events.events_for_batch(db, batch.id)
        assert event.event_type == EventType.ARCHIVE.value
        assert event.payload == {"reason": "frost damage", "quantity_at_close": 40}

    async def test_second_close_is_a_no_op(self, ctx, make_batch, session_factory):
        batch = await make_batch(40)

        assert await close_batch(ctx, batch.id, session_factory=session_factory)
        assert not await close_batch(ctx, batch.id, session_factory=session_factory)

        async with session_scope(session_factory) as db:
            assert len(await events.events_for_batch(db, batch.id)) == 1

    async def test_missing_batch(self, ctx, catalog, session_factory):
        with pytest.raises(NotFoundError):
            await close_batch(ctx, "no-such-batch", session_factory=session_factory)

    async def test_closed_batch_cannot_be_debited(self, ctx, make_batch, session_factory):
        batch = await make_batch(40)
        await close_batch(ctx, batch.id, session_factory=session_factory)

        with pytest.raises(InsufficientQuantityError) as exc_info:
            async with session_scope(session_factory) as db:
                await ledger.debit(db, ctx.org_id, batch.id, 5, "req-after-close")

        assert exc_info.value.available == 0
        assert exc_info.value.shortfall == 5
