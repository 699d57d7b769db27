"""Management CLI for the lineage engine.

Usage:
    python -m nursery.cli init-db                 # Create all tables (dev/test)
    python -m nursery.cli recover-claims [MIN]    # Finish or unwind stale sagas
"""

import asyncio
import logging
import sys
from datetime import timedelta

from sqlalchemy import create_engine

from nursery.config import settings
from nursery.database import Base
from nursery.models import *  # noqa: F401,F403


def init_db():
    """Create every table on the sync URL.  Production schemas use Alembic."""
    engine = create_engine(settings.database_url_sync)
    Base.metadata.create_all(engine)
    print(f"  Created {len(Base.metadata.tables)} table(s)")


def recover_claims(minutes: int):
    from nursery.services.recovery import recover_stale_claims

    report = asyncio.run(recover_stale_claims(timedelta(minutes=minutes)))
    for request_id in report.rolled_forward:
        print(f"  {request_id}: rolled forward")
    for request_id in report.compensated:
        print(f"  {request_id}: compensated, claim released")
    for request_id in report.relogged:
        print(f"  {request_id}: missing events written")
    for request_id in report.failed:
        print(f"  {request_id}: FAILED, needs manual reconciliation")
    print(f"\n{report.total} stale claim(s)")
    if report.failed:
        sys.exit(1)


if __name__ == "__main__":
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    if cmd == "init-db":
        init_db()
    elif cmd == "recover-claims":
        minutes = int(sys.argv[2]) if len(sys.argv) > 2 else settings.stale_claim_minutes
        recover_claims(minutes)
    else:
        print("Usage: python -m nursery.cli [init-db|recover-claims [MINUTES]]")
