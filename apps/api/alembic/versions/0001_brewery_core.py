"""brewery core production tables

Revision ID: 0001_brewery_core
Revises:
Create Date: 2026-10-05
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_brewery_core"
down_revision = None
branch_labels = None
depends_on = None

def _tenant():
    return sa.Column("tenant_id", sa.String(length=64), nullable=False)

def upgrade():
    op.create_table(
        "recipes",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("style", sa.String(length=128), nullable=True),
        sa.Column("target_og", sa.Numeric(6, 4), nullable=True),
        sa.Column("target_fg", sa.Numeric(6, 4), nullable=True),
    )
    op.create_index("ix_recipes_tenant_id", "recipes", ["tenant_id"])

    op.create_table(
        "batches",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant(),
        sa.Column("batch_number", sa.String(length=64), nullable=False),
        sa.Column("recipe_id", sa.Integer(), sa.ForeignKey("recipes.id"), nullable=True),
        sa.Column("volume", sa.Numeric(12, 2), nullable=False),
        sa.Column("original_gravity", sa.Numeric(6, 4), nullable=True),
        sa.Column("current_gravity", sa.Numeric(6, 4), nullable=True),
        sa.Column("final_gravity", sa.Numeric(6, 4), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("brewed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("tenant_id", "batch_number", name="uq_batch_tenant_number"),
        sa.CheckConstraint(
            "status in ('BREWING','FERMENTING','CONDITIONING','READY','PACKAGING','COMPLETED')",
            name="ck_batch_status",
        ),
    )
    op.create_index("ix_batches_tenant_id", "batches", ["tenant_id"])
    op.create_index("ix_batches_batch_number", "batches", ["batch_number"])
    op.create_index("ix_batches_recipe_id", "batches", ["recipe_id"])
    op.create_index("ix_batches_status", "batches", ["status"])

    op.create_table(
        "lots",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant(),
        sa.Column("lot_code", sa.String(length=64), nullable=False),
        sa.Column("phase", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="ACTIVE"),
        sa.Column("planned_volume", sa.Numeric(12, 2), nullable=True),
        sa.Column("actual_volume", sa.Numeric(12, 2), nullable=True),
        sa.Column("is_blend_result", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_blend_target", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("parent_lot_id", sa.Integer(), sa.ForeignKey("lots.id"), nullable=True),
        sa.Column("blended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("tenant_id", "lot_code", name="uq_lot_tenant_code"),
        sa.CheckConstraint("phase in ('FERMENTATION','CONDITIONING','BRIGHT','PACKAGING')", name="ck_lot_phase"),
        sa.CheckConstraint("status in ('ACTIVE','COMPLETED')", name="ck_lot_status"),
    )
    op.create_index("ix_lots_tenant_id", "lots", ["tenant_id"])
    op.create_index("ix_lots_lot_code", "lots", ["lot_code"])
    op.create_index("ix_lots_phase", "lots", ["phase"])
    op.create_index("ix_lots_status", "lots", ["status"])
    op.create_index("ix_lots_parent_lot_id", "lots", ["parent_lot_id"])

    op.create_table(
        "tanks",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant(),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False, server_default="FERMENTER"),
        sa.Column("capacity", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="AVAILABLE"),
        sa.Column("current_lot_id", sa.Integer(), sa.ForeignKey("lots.id"), nullable=True),
        sa.Column("current_phase", sa.String(length=32), nullable=True),
        sa.UniqueConstraint("tenant_id", "name", name="uq_tank_tenant_name"),
        sa.CheckConstraint("status in ('AVAILABLE','IN_USE','NEEDS_CIP','MAINTENANCE')", name="ck_tank_status"),
        sa.CheckConstraint("capacity > 0", name="ck_tank_capacity_positive"),
    )
    op.create_index("ix_tanks_tenant_id", "tanks", ["tenant_id"])
    op.create_index("ix_tanks_status", "tanks", ["status"])

    op.create_table(
        "equipment",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant(),
        sa.Column("tank_id", sa.Integer(), sa.ForeignKey("tanks.id"), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="OPERATIONAL"),
        sa.Column("current_batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=True),
        sa.Column("current_batch_number", sa.String(length=64), nullable=True),
        sa.Column("cip_interval_days", sa.Integer(), nullable=False, server_default=sa.text("14")),
        sa.Column("last_cip_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_cip_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status in ('OPERATIONAL','NEEDS_CIP','MAINTENANCE')", name="ck_equipment_status"),
    )
    op.create_index("ix_equipment_tenant_id", "equipment", ["tenant_id"])
    op.create_index("ix_equipment_tank_id", "equipment", ["tank_id"], unique=True)

    op.create_table(
        "lot_batches",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant(),
        sa.Column("lot_id", sa.Integer(), sa.ForeignKey("lots.id", ondelete="CASCADE"), nullable=False),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id", ondelete="CASCADE"), nullable=False),
        sa.Column("batch_percentage", sa.Numeric(6, 2), nullable=False, server_default=sa.text("100")),
        sa.Column("volume_contribution", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.UniqueConstraint("lot_id", "batch_id", name="uq_lot_batch"),
    )
    op.create_index("ix_lot_batches_tenant_id", "lot_batches", ["tenant_id"])
    op.create_index("ix_lot_batches_lot_id", "lot_batches", ["lot_id"])
    op.create_index("ix_lot_batches_batch_id", "lot_batches", ["batch_id"])

    op.create_table(
        "tank_assignments",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant(),
        sa.Column("lot_id", sa.Integer(), sa.ForeignKey("lots.id"), nullable=False),
        sa.Column("tank_id", sa.Integer(), sa.ForeignKey("tanks.id"), nullable=False),
        sa.Column("phase", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("planned_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("planned_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("planned_volume", sa.Numeric(12, 2), nullable=True),
        sa.Column("actual_volume", sa.Numeric(12, 2), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("status in ('PLANNED','ACTIVE','COMPLETED')", name="ck_assignment_status"),
    )
    op.create_index("ix_tank_assignments_tenant_id", "tank_assignments", ["tenant_id"])
    op.create_index("ix_tank_assignments_lot_id", "tank_assignments", ["lot_id"])
    op.create_index("ix_tank_assignments_tank_id", "tank_assignments", ["tank_id"])
    op.create_index("ix_tank_assignments_status", "tank_assignments", ["status"])

    op.create_table(
        "packaging_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant(),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("lot_code", sa.String(length=64), nullable=True),
        sa.Column("package_type", sa.String(length=32), nullable=False),
        sa.Column("package_size", sa.Numeric(8, 3), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("volume_total", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("performed_by", sa.String(length=64), nullable=True),
        sa.Column("performed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.CheckConstraint("quantity > 0", name="ck_packaging_qty_positive"),
    )
    op.create_index("ix_packaging_runs_tenant_id", "packaging_runs", ["tenant_id"])
    op.create_index("ix_packaging_runs_batch_id", "packaging_runs", ["batch_id"])
    op.create_index("ix_packaging_runs_lot_code", "packaging_runs", ["lot_code"])

    op.create_table(
        "batch_timeline",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant(),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_batch_timeline_tenant_id", "batch_timeline", ["tenant_id"])
    op.create_index("ix_batch_timeline_batch_id", "batch_timeline", ["batch_id"])
    op.create_index("ix_batch_timeline_event_type", "batch_timeline", ["event_type"])

    op.create_table(
        "lot_phase_changes",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant(),
        sa.Column("lot_id", sa.Integer(), sa.ForeignKey("lots.id"), nullable=False),
        sa.Column("from_phase", sa.String(length=32), nullable=True),
        sa.Column("to_phase", sa.String(length=32), nullable=False),
        sa.Column("changed_by", sa.String(length=64), nullable=True),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_lot_phase_changes_tenant_id", "lot_phase_changes", ["tenant_id"])
    op.create_index("ix_lot_phase_changes_lot_id", "lot_phase_changes", ["lot_id"])

def downgrade():
    for table in (
        "lot_phase_changes", "batch_timeline", "packaging_runs", "tank_assignments",
        "lot_batches", "equipment", "tanks", "lots", "batches", "recipes",
    ):
        op.drop_table(table)
