"""inventory items + append-only ledger

Revision ID: 0002_inventory_ledger
Revises: 0001_brewery_core
Create Date: 2026-10-06
"""
from alembic import op
import sqlalchemy as sa

revision = "0002_inventory_ledger"
down_revision = "0001_brewery_core"
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "inventory_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("sku", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("unit", sa.String(length=16), nullable=False, server_default="kg"),
        sa.Column("category", sa.String(length=32), nullable=True),
        sa.Column("cached_balance", sa.Numeric(14, 3), nullable=False, server_default=sa.text("0")),
        sa.Column("reorder_point", sa.Numeric(14, 3), nullable=True),
        sa.Column("cost_per_unit", sa.Numeric(12, 4), nullable=True),
        sa.Column("supplier", sa.String(length=255), nullable=True),
        sa.Column("balance_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "sku", name="uq_item_tenant_sku"),
    )
    op.create_index("ix_inventory_items_tenant_id", "inventory_items", ["tenant_id"])
    op.create_index("ix_inventory_items_sku", "inventory_items", ["sku"])

    op.create_table(
        "inventory_ledger",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("inventory_items.id"), nullable=False),
        sa.Column("quantity", sa.Numeric(14, 3), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=True),
        sa.Column("order_id", sa.String(length=64), nullable=True),
        sa.Column("reversal_of_id", sa.Integer(), sa.ForeignKey("inventory_ledger.id"), nullable=True),
        sa.Column("notes", sa.String(length=500), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("reversal_of_id", name="uq_inventory_ledger_reversal_of_id"),
        sa.CheckConstraint(
            "type in ('PURCHASE','PRODUCTION','CONSUMPTION','WASTE','ADJUSTMENT_ADD',"
            "'ADJUSTMENT_REMOVE','SALE','RETURN','REVERSAL')",
            name="ck_ledger_type",
        ),
        sa.CheckConstraint("quantity <> 0", name="ck_ledger_qty_nonzero"),
    )
    op.create_index("ix_inventory_ledger_tenant_id", "inventory_ledger", ["tenant_id"])
    op.create_index("ix_inventory_ledger_item_id", "inventory_ledger", ["item_id"])
    op.create_index("ix_inventory_ledger_type", "inventory_ledger", ["type"])
    op.create_index("ix_inventory_ledger_batch_id", "inventory_ledger", ["batch_id"])
    op.create_index("ix_inventory_ledger_created_at", "inventory_ledger", ["created_at"])

    # Ledger rows are append-only; corrections are new REVERSAL/ADJUSTMENT rows.
    op.execute("""
    CREATE OR REPLACE FUNCTION inventory_ledger_append_only()
    RETURNS trigger AS $$
    BEGIN
      RAISE EXCEPTION 'inventory_ledger rows are append-only';
    END;
    $$ LANGUAGE plpgsql;
    """)
    op.execute("""
    CREATE TRIGGER trg_inventory_ledger_append_only
    BEFORE UPDATE OR DELETE ON inventory_ledger
    FOR EACH ROW EXECUTE FUNCTION inventory_ledger_append_only();
    """)

def downgrade():
    op.execute("DROP TRIGGER IF EXISTS trg_inventory_ledger_append_only ON inventory_ledger;")
    op.execute("DROP FUNCTION IF EXISTS inventory_ledger_append_only();")
    op.drop_table("inventory_ledger")
    op.drop_table("inventory_items")
