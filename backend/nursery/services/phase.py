"""Phase classification from container attributes.

Policy:
  - a "pot", or any container with a single cell  → finished
  - cell multiplicity >= MANY_CELLS threshold     → propagation
  - everything else (plugs, liners, small trays)  → intermediate

Pure function, no I/O.  Invalid input raises LineageValidationError.
"""

from nursery.config import settings
from nursery.exceptions import LineageValidationError
from nursery.models.batch import Phase

FINISHED_CONTAINER_KINDS = {"pot"}

# Leading digit of batch numbers, per phase
PHASE_COUNTER = {
    Phase.PROPAGATION: 1,
    Phase.INTERMEDIATE: 2,
    Phase.FINISHED: 3,
}


def classify(
    container_kind: str,
    cell_multiplicity: int,
    many_cells_threshold: int | None = None,
) -> Phase:
    """Map a target container spec to its production phase."""
    if not isinstance(container_kind, str) or not container_kind.strip():
        raise LineageValidationError("Container kind is required")
    if isinstance(cell_multiplicity, bool) or not isinstance(cell_multiplicity, int):
        raise LineageValidationError(
            f"Cell multiplicity must be an integer, got {cell_multiplicity!r}"
        )
    if cell_multiplicity < 1:
        raise LineageValidationError(
            f"Cell multiplicity must be at least 1, got {cell_multiplicity}"
        )

    threshold = many_cells_threshold or settings.many_cells_threshold
    kind = container_kind.strip().lower()

    if kind in FINISHED_CONTAINER_KINDS or cell_multiplicity == 1:
        return Phase.FINISHED
    if cell_multiplicity >= threshold:
        return Phase.PROPAGATION
    return Phase.INTERMEDIATE
