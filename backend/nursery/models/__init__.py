"""Aggregate model imports for Alembic auto-detection."""

# Reference catalogs
from nursery.models.catalog import NurseryLocation, PlantSize  # noqa: F401

# Core lineage models
from nursery.models.batch import Batch, BatchStatus, Phase  # noqa: F401
from nursery.models.batch_ancestry import BatchAncestry  # noqa: F401
from nursery.models.batch_event import BatchEvent, EventType  # noqa: F401
from nursery.models.quantity_movement import QuantityMovement  # noqa: F401

# Sequencing and idempotency
from nursery.models.batch_counter import BatchCounter  # noqa: F401
from nursery.models.mutation_request import ClaimState, MutationRequest  # noqa: F401
