"""Pytest configuration and fixtures for the lineage engine tests.

Every test gets a fresh SQLite file database with all tables created from
the model metadata.  Each saga step opens its own connection (NullPool),
and every transaction starts with BEGIN IMMEDIATE so concurrent writers
queue on SQLite's write lock instead of failing on upgrade.
"""

import uuid
from datetime import date
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from nursery.config import settings
from nursery.context import ActorContext
from nursery.database import Base, session_scope
from nursery.models import (
    Batch,
    BatchStatus,
    NurseryLocation,
    Phase,
    PlantSize,
)
from nursery.services import ledger
from nursery.services.mutations import MutationOrchestrator
from nursery.services.sequencer import DatabaseBatchSequencer

ORG_ID = "org-greenhouse"
OTHER_ORG_ID = "org-elsewhere"
USER_ID = "user-grower"

# Thursday of ISO week 42, 2026
TODAY = date(2026, 10, 15)


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create a throwaway SQLite database with every table."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'nursery.db'}",
        poolclass=NullPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def ctx():
    return ActorContext(org_id=ORG_ID, user_id=USER_ID)


@pytest.fixture
def sequencer(session_factory):
    return DatabaseBatchSequencer(session_factory, width=5, today=lambda: TODAY)


@pytest.fixture
def orchestrator(session_factory, sequencer):
    return MutationOrchestrator(session_factory, sequencer, settings)


# ── Seed data ────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def catalog(session_factory):
    """Shared sizes plus one active location per organization."""
    pot = PlantSize(name="2L pot", container_type="pot", cell_multiple=1)
    tray = PlantSize(name="104-cell tray", container_type="tray", cell_multiple=104)
    pack = PlantSize(name="6-pack", container_type="pack", cell_multiple=6)
    private = PlantSize(
        org_id=OTHER_ORG_ID, name="Other org pot", container_type="pot", cell_multiple=1
    )
    bench = NurseryLocation(org_id=ORG_ID, name="Bench A")
    closed = NurseryLocation(org_id=ORG_ID, name="Old tunnel", is_active=False)
    foreign = NurseryLocation(org_id=OTHER_ORG_ID, name="Their bench")

    async with session_scope(session_factory) as db:
        db.add_all([pot, tray, pack, private, bench, closed, foreign])

    return SimpleNamespace(
        pot=pot.id,
        tray=tray.id,
        pack=pack.id,
        private_size=private.id,
        location=bench.id,
        inactive_location=closed.id,
        foreign_location=foreign.id,
    )


@pytest.fixture
def make_batch(session_factory, catalog):
    """Factory for root batches, bypassing the sequencer."""

    async def _make(quantity: int, org_id: str = ORG_ID, **overrides) -> Batch:
        values = dict(
            org_id=org_id,
            batch_number=f"T-{uuid.uuid4().hex[:10]}",
            plant_variety_id="variety-lavender",
            size_id=catalog.tray,
            location_id=catalog.location,
            supplier_id="supplier-seeds",
            phase=Phase.PROPAGATION.value,
            status=BatchStatus.GROWING.value,
            quantity=quantity,
            initial_quantity=quantity,
        )
        values.update(overrides)
        async with session_scope(session_factory) as db:
            batch = await ledger.open_batch(db, Batch(**values))
        return batch

    return _make


@pytest.fixture
def reload(session_factory):
    """Fresh copy of a batch from the database, or None if it is gone."""

    async def _reload(batch_id: str) -> Batch | None:
        async with session_scope(session_factory) as db:
            return await db.get(Batch, batch_id)

    return _reload


@pytest.fixture
def count_rows(session_factory):
    async def _count(model, *where) -> int:
        async with session_scope(session_factory) as db:
            stmt = select(func.count()).select_from(model)
            if where:
                stmt = stmt.where(*where)
            return (await db.execute(stmt)).scalar_one()

    return _count
