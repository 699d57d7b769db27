"""Initial lineage schema: catalogs, batches, ancestry, events, ledger, claims.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa


def upgrade() -> None:
    # ── Catalogs ─────────────────────────────────────────────
    op.create_table(
        "plant_sizes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36)),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("container_type", sa.String(30), nullable=False),
        sa.Column("cell_multiple", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_plant_sizes_org_id", "plant_sizes", ["org_id"])

    op.create_table(
        "nursery_locations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_nursery_locations_org_id", "nursery_locations", ["org_id"])

    # ── Batches ──────────────────────────────────────────────
    op.create_table(
        "batches",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column("batch_number", sa.String(32), nullable=False),
        sa.Column("plant_variety_id", sa.String(36), nullable=False),
        sa.Column("size_id", sa.String(36), sa.ForeignKey("plant_sizes.id"), nullable=False),
        sa.Column(
            "location_id", sa.String(36),
            sa.ForeignKey("nursery_locations.id"), nullable=False,
        ),
        sa.Column("supplier_id", sa.String(36)),
        sa.Column("phase", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="growing"),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("initial_quantity", sa.Integer(), nullable=False),
        sa.Column("planted_at", sa.Date()),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.String(36)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("archived_at", sa.DateTime()),
        sa.UniqueConstraint("org_id", "batch_number", name="uq_batches_org_number"),
        sa.CheckConstraint("quantity >= 0", name="ck_batches_quantity_non_negative"),
        sa.CheckConstraint(
            "quantity <= initial_quantity", name="ck_batches_quantity_le_initial"
        ),
    )
    op.create_index("ix_batches_org_id", "batches", ["org_id"])
    op.create_index("ix_batches_batch_number", "batches", ["batch_number"])
    op.create_index("ix_batches_location_id", "batches", ["location_id"])
    op.create_index("ix_batches_status", "batches", ["status"])

    # ── Lineage ──────────────────────────────────────────────
    op.create_table(
        "batch_ancestry",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column(
            "parent_batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False
        ),
        sa.Column(
            "child_batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False
        ),
        sa.Column("proportion", sa.Float(), nullable=False),
        sa.Column("units", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "parent_batch_id", "child_batch_id", name="uq_batch_ancestry_edge"
        ),
        sa.CheckConstraint(
            "proportion > 0 AND proportion <= 1", name="ck_batch_ancestry_proportion"
        ),
    )
    op.create_index("ix_batch_ancestry_org_id", "batch_ancestry", ["org_id"])
    op.create_index("ix_batch_ancestry_parent_batch_id", "batch_ancestry", ["parent_batch_id"])
    op.create_index("ix_batch_ancestry_child_batch_id", "batch_ancestry", ["child_batch_id"])

    op.create_table(
        "batch_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("event_type", sa.String(30), nullable=False),
        sa.Column("payload", sa.JSON()),
        sa.Column("actor_id", sa.String(36)),
        sa.Column("request_id", sa.String(100)),
        sa.Column("recorded_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_batch_events_org_id", "batch_events", ["org_id"])
    op.create_index("ix_batch_events_batch_id", "batch_events", ["batch_id"])
    op.create_index("ix_batch_events_event_type", "batch_events", ["event_type"])
    op.create_index("ix_batch_events_request_id", "batch_events", ["request_id"])
    op.create_index("ix_batch_events_recorded_at", "batch_events", ["recorded_at"])

    # ── Ledger, sequencing, idempotency ──────────────────────
    op.create_table(
        "quantity_movements",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("request_id", sa.String(100), nullable=False),
        sa.Column("kind", sa.String(10), nullable=False),
        sa.Column("units", sa.Integer(), nullable=False),
        sa.Column("quantity_after", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "batch_id", "request_id", "kind", name="uq_quantity_movements_request"
        ),
    )
    op.create_index("ix_quantity_movements_org_id", "quantity_movements", ["org_id"])
    op.create_index("ix_quantity_movements_batch_id", "quantity_movements", ["batch_id"])
    op.create_index("ix_quantity_movements_request_id", "quantity_movements", ["request_id"])

    op.create_table(
        "batch_counters",
        sa.Column("org_id", sa.String(36), primary_key=True),
        sa.Column("phase", sa.String(20), primary_key=True),
        sa.Column("period", sa.String(4), primary_key=True),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "mutation_requests",
        sa.Column("request_id", sa.String(100), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column("actor_id", sa.String(36)),
        sa.Column("operation", sa.String(20), nullable=False),
        sa.Column("state", sa.String(20), nullable=False, server_default="in_progress"),
        sa.Column("step", sa.String(30), nullable=False, server_default="start"),
        sa.Column("child_batch_id", sa.String(36)),
        sa.Column("journal", sa.JSON()),
        sa.Column("result", sa.JSON()),
        sa.Column("error_code", sa.String(50)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_mutation_requests_org_id", "mutation_requests", ["org_id"])
    op.create_index("ix_mutation_requests_state", "mutation_requests", ["state"])
    op.create_index("ix_mutation_requests_updated_at", "mutation_requests", ["updated_at"])


def downgrade() -> None:
    op.drop_table("mutation_requests")
    op.drop_table("batch_counters")
    op.drop_table("quantity_movements")
    op.drop_table("batch_events")
    op.drop_table("batch_ancestry")
    op.drop_table("batches")
    op.drop_table("nursery_locations")
    op.drop_table("plant_sizes")
