"""Ancestry recorder — appends lineage edges and answers lineage queries.

Callers are responsible for the sum law: the proportions handed to
``link_many`` for one child must already add up to 1.  The recorder only
rejects proportions outside (0, 1] and writes the batch of edges in one
transaction, so a merge's edges land all together or not at all.
"""

from collections import defaultdict
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from nursery.exceptions import LineageValidationError
from nursery.models.batch_ancestry import BatchAncestry


@dataclass(frozen=True)
class AncestryLink:
    parent_id: str
    child_id: str
    proportion: float
    units: int | None = None


def proportions_for(contributions: list[tuple[str, int]]) -> list[tuple[str, float]]:
    """Proportion of the total contributed by each (batch_id, units) pair."""
    total = sum(units for _, units in contributions)
    if total <= 0:
        raise LineageValidationError("Total contributed units must be positive")
    return [(batch_id, units / total) for batch_id, units in contributions]


async def link(
    db: AsyncSession,
    org_id: str,
    parent_id: str,
    child_id: str,
    proportion: float,
    units: int | None = None,
) -> BatchAncestry:
    """Record a single parent → child edge."""
    edges = await link_many(
        db, org_id, [AncestryLink(parent_id, child_id, proportion, units)]
    )
    return edges[0]


async def link_many(
    db: AsyncSession, org_id: str, links: list[AncestryLink]
) -> list[BatchAncestry]:
    """Insert every edge or none (single flush inside the caller's transaction)."""
    if not links:
        raise LineageValidationError("At least one ancestry edge is required")
    for edge in links:
        if not 0 < edge.proportion <= 1:
            raise LineageValidationError(
                f"Ancestry proportion must be in (0, 1], got {edge.proportion} "
                f"for {edge.parent_id} → {edge.child_id}"
            )

    rows = [
        BatchAncestry(
            org_id=org_id,
            parent_batch_id=edge.parent_id,
            child_batch_id=edge.child_id,
            proportion=edge.proportion,
            units=edge.units,
        )
        for edge in links
    ]
    db.add_all(rows)
    await db.flush()
    return rows


async def parents_of(db: AsyncSession, child_id: str) -> list[BatchAncestry]:
    result = await db.execute(
        select(BatchAncestry)
        .where(BatchAncestry.child_batch_id == child_id)
        .order_by(BatchAncestry.created_at)
    )
    return list(result.scalars().all())


async def children_of(db: AsyncSession, parent_id: str) -> list[BatchAncestry]:
    result = await db.execute(
        select(BatchAncestry)
        .where(BatchAncestry.parent_batch_id == parent_id)
        .order_by(BatchAncestry.created_at)
    )
    return list(result.scalars().all())


async def proportion_sum(db: AsyncSession, child_id: str) -> float:
    """Sum of incoming edge proportions (0.0 for a root batch)."""
    result = await db.execute(
        select(func.coalesce(func.sum(BatchAncestry.proportion), 0.0)).where(
            BatchAncestry.child_batch_id == child_id
        )
    )
    return float(result.scalar_one())


async def trace_origins(db: AsyncSession, batch_id: str) -> dict[str, float]:
    """Root batches this batch descends from, with the share of its units
    that originated from each.

    Walks the graph upward one generation at a time, multiplying edge
    proportions along each path and summing over paths.  A root batch
    traces to itself with share 1.0.
    """
    origins: dict[str, float] = defaultdict(float)
    frontier: dict[str, float] = {batch_id: 1.0}

    while frontier:
        result = await db.execute(
            select(BatchAncestry).where(
                BatchAncestry.child_batch_id.in_(list(frontier))
            )
        )
        edges_by_child: dict[str, list[BatchAncestry]] = defaultdict(list)
        for edge in result.scalars().all():
            edges_by_child[edge.child_batch_id].append(edge)

        next_frontier: dict[str, float] = defaultdict(float)
        for node, share in frontier.items():
            edges = edges_by_child.get(node)
            if not edges:
                origins[node] += share
                continue
            for edge in edges:
                next_frontier[edge.parent_batch_id] += share * edge.proportion
        frontier = dict(next_frontier)

    return dict(origins)
