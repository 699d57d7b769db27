"""Quantity ledger tests: atomic debits, idempotent credits, archiving."""

import asyncio

import pytest
from sqlalchemy import update

from nursery.database import session_scope
from nursery.exceptions import (
    InsufficientQuantityError,
    LineageValidationError,
    NotFoundError,
)
from nursery.models import Batch, BatchStatus, QuantityMovement
from nursery.services import ancestry, ledger

from conftest import ORG_ID, OTHER_ORG_ID


@pytest.mark.integration
@pytest.mark.asyncio
class TestDebit:
    """Conditional debits."""

    async def test_debit_returns_new_quantity(self, session_factory, make_batch, reload):
        """A debit that fits lowers the quantity and records a movement."""
        batch = await make_batch(100)

        async with session_scope(session_factory) as db:
            remaining = await ledger.debit(db, ORG_ID, batch.id, 30, "req-1")

        assert remaining == 70
        assert (await reload(batch.id)).quantity == 70
        async with session_scope(session_factory) as db:
            (movement,) = await ledger.movements_for_request(db, "req-1")
        assert movement.kind == "debit"
        assert movement.units == -30
        assert movement.quantity_after == 70

    async def test_debit_to_zero(self, session_factory, make_batch):
        """Taking every unit is allowed."""
        batch = await make_batch(10)
        async with session_scope(session_factory) as db:
            assert await ledger.debit(db, ORG_ID, batch.id, 10, "req-1") == 0

    async def test_insufficient_reports_shortfall(self, session_factory, make_batch, reload):
        """An underflowing debit changes nothing and names the shortfall."""
        batch = await make_batch(10)

        with pytest.raises(InsufficientQuantityError) as exc_info:
            async with session_scope(session_factory) as db:
                await ledger.debit(db, ORG_ID, batch.id, 25, "req-1")

        err = exc_info.value
        assert err.batch_id == batch.id
        assert err.batch_number == batch.batch_number
        assert err.available == 10
        assert err.shortfall == 15
        assert (await reload(batch.id)).quantity == 10

    async def test_unknown_batch(self, session_factory):
        with pytest.raises(NotFoundError):
            async with session_scope(session_factory) as db:
                await ledger.debit(db, ORG_ID, "missing", 1, "req-1")

    async def test_other_org_batch_is_not_found(self, session_factory, make_batch):
        """Debits are scoped to the acting organization."""
        batch = await make_batch(10, org_id=OTHER_ORG_ID)
        with pytest.raises(NotFoundError):
            async with session_scope(session_factory) as db:
                await ledger.debit(db, ORG_ID, batch.id, 1, "req-1")

    async def test_archived_batch_has_nothing_available(self, session_factory, make_batch):
        """Archived stock cannot be debited."""
        batch = await make_batch(10, status=BatchStatus.ARCHIVED.value)
        with pytest.raises(InsufficientQuantityError) as exc_info:
            async with session_scope(session_factory) as db:
                await ledger.debit(db, ORG_ID, batch.id, 1, "req-1")
        assert exc_info.value.available == 0

    @pytest.mark.parametrize("units", [0, -5])
    async def test_non_positive_units(self, session_factory, make_batch, units):
        batch = await make_batch(10)
        with pytest.raises(LineageValidationError):
            async with session_scope(session_factory) as db:
                await ledger.debit(db, ORG_ID, batch.id, units, "req-1")

    async def test_concurrent_debits_only_one_fits(self, session_factory, make_batch, reload):
        """Two racing debits for more than half the stock: exactly one wins."""
        batch = await make_batch(10)

        async def attempt(request_id):
            async with session_scope(session_factory) as db:
                return await ledger.debit(db, ORG_ID, batch.id, 7, request_id)

        results = await asyncio.gather(
            attempt("req-a"), attempt("req-b"), return_exceptions=True
        )

        successes = [r for r in results if isinstance(r, int)]
        failures = [r for r in results if isinstance(r, InsufficientQuantityError)]
        assert successes == [3]
        assert len(failures) == 1
        assert failures[0].available == 3
        assert (await reload(batch.id)).quantity == 3


@pytest.mark.integration
@pytest.mark.asyncio
class TestCredit:
    """Compensating credits."""

    async def test_credit_restores_debit(self, session_factory, make_batch, reload):
        batch = await make_batch(100)
        async with session_scope(session_factory) as db:
            await ledger.debit(db, ORG_ID, batch.id, 30, "req-1")
        async with session_scope(session_factory) as db:
            restored = await ledger.credit(db, ORG_ID, batch.id, 30, "req-1")

        assert restored == 100
        assert (await reload(batch.id)).quantity == 100

    async def test_credit_is_idempotent(self, session_factory, make_batch, reload, count_rows):
        """Repeating a credit for the same request is a no-op."""
        batch = await make_batch(100)
        async with session_scope(session_factory) as db:
            await ledger.debit(db, ORG_ID, batch.id, 30, "req-1")
        for _ in range(3):
            async with session_scope(session_factory) as db:
                await ledger.credit(db, ORG_ID, batch.id, 30, "req-1")

        assert (await reload(batch.id)).quantity == 100
        assert await count_rows(
            QuantityMovement, QuantityMovement.kind == "credit"
        ) == 1

    async def test_credit_without_debit_is_noop(self, session_factory, make_batch, reload):
        """Safe to run when the debit it undoes never applied."""
        batch = await make_batch(100)
        async with session_scope(session_factory) as db:
            await ledger.debit(db, ORG_ID, batch.id, 30, "req-1")
        async with session_scope(session_factory) as db:
            assert await ledger.credit(db, ORG_ID, batch.id, 30, "req-other") is None
        assert (await reload(batch.id)).quantity == 70

    async def test_credit_never_exceeds_initial_quantity(
        self, session_factory, make_batch, reload
    ):
        """The restored quantity is capped at initial_quantity."""
        batch = await make_batch(100)
        async with session_scope(session_factory) as db:
            await ledger.debit(db, ORG_ID, batch.id, 10, "req-1")
        async with session_scope(session_factory) as db:
            await db.execute(
                update(Batch).where(Batch.id == batch.id).values(quantity=95)
            )
        async with session_scope(session_factory) as db:
            assert await ledger.credit(db, ORG_ID, batch.id, 10, "req-1") == 100
        assert (await reload(batch.id)).quantity == 100

    async def test_credit_more_than_debited(self, session_factory, make_batch):
        batch = await make_batch(100)
        async with session_scope(session_factory) as db:
            await ledger.debit(db, ORG_ID, batch.id, 10, "req-1")
        with pytest.raises(LineageValidationError):
            async with session_scope(session_factory) as db:
                await ledger.credit(db, ORG_ID, batch.id, 11, "req-1")


@pytest.mark.integration
@pytest.mark.asyncio
class TestArchiveAndDiscard:
    """Archiving emptied batches and discarding saga children."""

    async def test_archive_requires_empty(self, session_factory, make_batch, reload):
        batch = await make_batch(5)
        async with session_scope(session_factory) as db:
            assert await ledger.archive(db, ORG_ID, batch.id) is False
        assert (await reload(batch.id)).status == BatchStatus.GROWING.value

    async def test_archive_empty_batch_once(self, session_factory, make_batch, reload):
        """An emptied batch archives once; a second attempt is a no-op."""
        batch = await make_batch(5)
        async with session_scope(session_factory) as db:
            await ledger.debit(db, ORG_ID, batch.id, 5, "req-1")
        async with session_scope(session_factory) as db:
            assert await ledger.archive(db, ORG_ID, batch.id) is True
        async with session_scope(session_factory) as db:
            assert await ledger.archive(db, ORG_ID, batch.id) is False

        archived = await reload(batch.id)
        assert archived.status == BatchStatus.ARCHIVED.value
        assert archived.archived_at is not None

    async def test_discard_batch_without_lineage(self, session_factory, make_batch, reload):
        batch = await make_batch(5)
        async with session_scope(session_factory) as db:
            assert await ledger.discard_batch(db, ORG_ID, batch.id) is True
        assert await reload(batch.id) is None

    async def test_discard_refuses_linked_child(self, session_factory, make_batch, reload):
        """Ancestry is append-only, so a linked child is never deleted."""
        parent = await make_batch(10)
        child = await make_batch(10)
        async with session_scope(session_factory) as db:
            await ancestry.link(db, ORG_ID, parent.id, child.id, 1.0)
        async with session_scope(session_factory) as db:
            assert await ledger.discard_batch(db, ORG_ID, child.id) is False
        assert await reload(child.id) is not None
