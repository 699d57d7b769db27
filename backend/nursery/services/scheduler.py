"""Background sweep — recovers stale saga claims on a fixed interval.

Uses FastAPI's lifespan context to start/stop an asyncio background loop.
A plain asyncio.sleep loop; no job queue.

Usage:
    In the host app:

        from nursery.services.scheduler import lifespan
        app = FastAPI(lifespan=lifespan, ...)

Configuration:
    STALE_CLAIM_MINUTES=15   (claim age that counts as abandoned, and the
                              sweep interval, via .env)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI

from nursery.config import settings
from nursery.services.recovery import RecoveryReport, recover_stale_claims
from nursery.utils.redis_client import close_redis

logger = logging.getLogger("nursery.scheduler")


async def run_recovery_sweep(session_factory=None) -> RecoveryReport | None:
    """One pass over stale claims.  Never raises."""
    try:
        return await recover_stale_claims(
            timedelta(minutes=settings.stale_claim_minutes),
            session_factory=session_factory,
        )
    except Exception:
        logger.exception("Unhandled error in stale claim recovery")
        return None


async def _scheduler_loop(interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        report = await run_recovery_sweep()
        if report and report.failed:
            logger.critical(
                "Stale claims need manual reconciliation: %s",
                ", ".join(report.failed),
            )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: start the sweep on startup, cancel on shutdown."""
    task = asyncio.create_task(_scheduler_loop(settings.stale_claim_minutes * 60))
    logger.info("Stale claim sweep started")
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await close_redis()
        logger.info("Stale claim sweep stopped")
