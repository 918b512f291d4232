"""tank sync backlog for deferred packaging bookkeeping

Revision ID: 0004_tank_sync_backlog
Revises: 0003_code_counters
Create Date: 2026-10-12
"""
from alembic import op
import sqlalchemy as sa

revision = "0004_tank_sync_backlog"
down_revision = "0003_code_counters"
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "tank_sync_backlog",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("operation", sa.String(length=32), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status in ('PENDING','RESOLVED')", name="ck_tank_sync_backlog_status"),
    )
    op.create_index("ix_tank_sync_backlog_tenant_id", "tank_sync_backlog", ["tenant_id"])
    op.create_index("ix_tank_sync_backlog_status", "tank_sync_backlog", ["status"])

    # At most one open assignment per tank.
    op.create_index(
        "uq_tank_assignments_open_per_tank",
        "tank_assignments",
        ["tank_id"],
        unique=True,
        postgresql_where=sa.text("status in ('PLANNED','ACTIVE')"),
    )

def downgrade():
    op.drop_index("uq_tank_assignments_open_per_tank", table_name="tank_assignments")
    op.drop_table("tank_sync_backlog")
