"""per-tenant code counters (atomic numbering)

Revision ID: 0003_code_counters
Revises: 0002_inventory_ledger
Create Date: 2026-10-08
"""
from alembic import op
import sqlalchemy as sa

revision = "0003_code_counters"
down_revision = "0002_inventory_ledger"
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "code_counters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("prefix", sa.String(length=16), nullable=False),
        sa.Column("period", sa.String(length=8), nullable=False),
        sa.Column("last_seq", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )
    op.create_index("ix_code_counters_tenant_id", "code_counters", ["tenant_id"])
    op.create_unique_constraint(
        "uq_code_counters_tenant_prefix_period", "code_counters", ["tenant_id", "prefix", "period"]
    )

def downgrade():
    op.drop_constraint("uq_code_counters_tenant_prefix_period", "code_counters", type_="unique")
    op.drop_table("code_counters")
