"""Batch number sequencer.

Format:
  {phase}-{yy}{ww}-{seq:N}

  phase   → 1 propagation, 2 intermediate, 3 finished
  yy, ww  → ISO year (two digits) and ISO week of allocation
  seq     → zero-padded ordinal, N = settings.batch_number_width,
            restarts every week per (organization, phase)

e.g. "3-2642-00017" is the 17th finished batch allocated in ISO week 42
of 2026.

Allocation is an atomic increment-and-read on a per-phase counter, never
"read max, add one", so concurrent callers cannot receive the same number.
Two backends are provided:
  - DatabaseBatchSequencer  INSERT … ON CONFLICT DO UPDATE … RETURNING
  - RedisBatchSequencer     INCR on batchseq:{org}:{phase}:{yyww}
"""

import logging
from datetime import date
from typing import Callable

import redis.asyncio as redis
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nursery.config import Settings, settings as default_settings
from nursery.database import session_scope
from nursery.exceptions import LineageError, TransientStoreError
from nursery.models.batch import Phase
from nursery.models.batch_counter import BatchCounter
from nursery.services.phase import PHASE_COUNTER
from nursery.utils.redis_client import get_redis

logger = logging.getLogger(__name__)

# Dialects with a native atomic upsert
_UPSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def current_period(today: date) -> str:
    """ISO year-week of ``today`` as "yyww"."""
    iso_year, iso_week, _ = today.isocalendar()
    return f"{iso_year % 100:02d}{iso_week:02d}"


def format_batch_number(phase: Phase, period: str, ordinal: int, width: int) -> str:
    return f"{PHASE_COUNTER[phase]}-{period}-{ordinal:0{width}d}"


async def increment_counter(
    db: AsyncSession, org_id: str, phase: Phase, period: str
) -> int:
    """Atomically bump the (org, phase, period) counter and return its value."""
    dialect = db.bind.dialect.name
    insert_fn = _UPSERTS.get(dialect)
    if insert_fn is None:
        raise LineageError(f"Batch sequencing not supported on dialect {dialect!r}")

    stmt = (
        insert_fn(BatchCounter)
        .values(org_id=org_id, phase=phase.value, period=period, value=1)
        .on_conflict_do_update(
            index_elements=["org_id", "phase", "period"],
            set_={"value": BatchCounter.value + 1},
        )
        .returning(BatchCounter.value)
    )
    return (await db.execute(stmt)).scalar_one()


class DatabaseBatchSequencer:
    """Counters kept in the ``batch_counters`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        width: int | None = None,
        today: Callable[[], date] = date.today,
    ):
        self._session_factory = session_factory
        self._width = width or default_settings.batch_number_width
        self._today = today

    async def next(self, org_id: str, phase: Phase) -> str:
        period = current_period(self._today())
        async with session_scope(self._session_factory) as db:
            ordinal = await increment_counter(db, org_id, phase, period)
        return format_batch_number(phase, period, ordinal, self._width)


class RedisBatchSequencer:
    """Counters kept in Redis, for deployments where numbering lives outside
    the relational store."""

    def __init__(
        self,
        client: redis.Redis | None = None,
        width: int | None = None,
        today: Callable[[], date] = date.today,
    ):
        self._client = client
        self._width = width or default_settings.batch_number_width
        self._today = today

    async def next(self, org_id: str, phase: Phase) -> str:
        period = current_period(self._today())
        key = f"batchseq:{org_id}:{phase.value}:{period}"
        client = self._client or await get_redis()
        try:
            ordinal = await client.incr(key)
        except redis.RedisError as exc:
            logger.warning("Redis sequencer unavailable: %s", exc)
            raise TransientStoreError(f"Batch sequencer unavailable: {exc}") from exc
        return format_batch_number(phase, period, int(ordinal), self._width)


def build_sequencer(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    config: Settings | None = None,
):
    """Pick the sequencer backend named by ``sequencer_backend``."""
    config = config or default_settings
    if config.sequencer_backend == "redis":
        return RedisBatchSequencer(width=config.batch_number_width)
    if config.sequencer_backend == "database":
        return DatabaseBatchSequencer(session_factory, width=config.batch_number_width)
    raise ValueError(f"Unknown sequencer backend: {config.sequencer_backend!r}")
