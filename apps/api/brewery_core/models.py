from __future__ import annotations

from datetime import datetime, timezone
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, ForeignKey,
    Integer, JSON, Numeric, String, Text, UniqueConstraint
)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class Base(DeclarativeBase):
    pass

class TenantScoped:
    """Rows owned by one tenant; filtered and stamped by the session listeners in db.py."""
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

class Recipe(TenantScoped, Base):
    # Read-only here; recipes are authored by the catalog.
    __tablename__ = "recipes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    style: Mapped[str | None] = mapped_column(String(128), nullable=True)
    target_og: Mapped[float | None] = mapped_column(Numeric(6, 4), nullable=True)
    target_fg: Mapped[float | None] = mapped_column(Numeric(6, 4), nullable=True)

class Tank(TenantScoped, Base):
    __tablename__ = "tanks"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, default="FERMENTER")
    capacity: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="AVAILABLE", index=True)
    current_lot_id: Mapped[int | None] = mapped_column(ForeignKey("lots.id"), nullable=True)
    current_phase: Mapped[str | None] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_tank_tenant_name"),
        CheckConstraint(
            "status in ('AVAILABLE','IN_USE','NEEDS_CIP','MAINTENANCE')",
            name="ck_tank_status",
        ),
        CheckConstraint("capacity > 0", name="ck_tank_capacity_positive"),
    )

class Equipment(TenantScoped, Base):
    """Maintenance view of a tank: cleanliness and what was brewed in it last."""
    __tablename__ = "equipment"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tank_id: Mapped[int] = mapped_column(ForeignKey("tanks.id"), unique=True, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="OPERATIONAL")
    current_batch_id: Mapped[int | None] = mapped_column(ForeignKey("batches.id"), nullable=True)
    current_batch_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cip_interval_days: Mapped[int] = mapped_column(Integer, nullable=False, default=14)
    last_cip_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_cip_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status in ('OPERATIONAL','NEEDS_CIP','MAINTENANCE')",
            name="ck_equipment_status",
        ),
    )

class Batch(TenantScoped, Base):
    __tablename__ = "batches"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_number: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    recipe_id: Mapped[int | None] = mapped_column(ForeignKey("recipes.id"), nullable=True, index=True)
    volume: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    original_gravity: Mapped[float | None] = mapped_column(Numeric(6, 4), nullable=True)
    current_gravity: Mapped[float | None] = mapped_column(Numeric(6, 4), nullable=True)
    final_gravity: Mapped[float | None] = mapped_column(Numeric(6, 4), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    brewed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "batch_number", name="uq_batch_tenant_number"),
        CheckConstraint(
            "status in ('BREWING','FERMENTING','CONDITIONING','READY','PACKAGING','COMPLETED')",
            name="ck_batch_status",
        ),
    )

class Lot(TenantScoped, Base):
    __tablename__ = "lots"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lot_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    phase: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="ACTIVE", index=True)

    planned_volume: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    actual_volume: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)

    is_blend_result: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_blend_target: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Lineage only: set once a lot is absorbed into a blend or split off a parent.
    parent_lot_id: Mapped[int | None] = mapped_column(ForeignKey("lots.id"), nullable=True, index=True)
    blended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "lot_code", name="uq_lot_tenant_code"),
        CheckConstraint(
            "phase in ('FERMENTATION','CONDITIONING','BRIGHT','PACKAGING')",
            name="ck_lot_phase",
        ),
        CheckConstraint("status in ('ACTIVE','COMPLETED')", name="ck_lot_status"),
    )

class LotBatch(TenantScoped, Base):
    __tablename__ = "lot_batches"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lot_id: Mapped[int] = mapped_column(ForeignKey("lots.id", ondelete="CASCADE"), index=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id", ondelete="CASCADE"), index=True)
    batch_percentage: Mapped[float] = mapped_column(Numeric(6, 2), nullable=False, default=100)
    volume_contribution: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False, default=0)

    __table_args__ = (UniqueConstraint("lot_id", "batch_id", name="uq_lot_batch"),)

class TankAssignment(TenantScoped, Base):
    __tablename__ = "tank_assignments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lot_id: Mapped[int] = mapped_column(ForeignKey("lots.id"), index=True)
    tank_id: Mapped[int] = mapped_column(ForeignKey("tanks.id"), index=True)
    phase: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    planned_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    planned_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    planned_volume: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    actual_volume: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("status in ('PLANNED','ACTIVE','COMPLETED')", name="ck_assignment_status"),
    )

class PackagingRun(TenantScoped, Base):
    __tablename__ = "packaging_runs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id"), index=True)
    lot_code: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    package_type: Mapped[str] = mapped_column(String(32), nullable=False)
    package_size: Mapped[float | None] = mapped_column(Numeric(8, 3), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    volume_total: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    performed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    performed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_packaging_qty_positive"),)

class BatchTimeline(TenantScoped, Base):
    __tablename__ = "batch_timeline"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id"), index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

class LotPhaseChange(TenantScoped, Base):
    __tablename__ = "lot_phase_changes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lot_id: Mapped[int] = mapped_column(ForeignKey("lots.id"), index=True)
    from_phase: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_phase: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

class InventoryItem(TenantScoped, Base):
    __tablename__ = "inventory_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(16), nullable=False, default="kg")
    category: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # Derived from the ledger; see ledger.recompute_balance.
    cached_balance: Mapped[float] = mapped_column(Numeric(14, 3), nullable=False, default=0)
    reorder_point: Mapped[float | None] = mapped_column(Numeric(14, 3), nullable=True)
    cost_per_unit: Mapped[float | None] = mapped_column(Numeric(12, 4), nullable=True)
    supplier: Mapped[str | None] = mapped_column(String(255), nullable=True)
    balance_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (UniqueConstraint("tenant_id", "sku", name="uq_item_tenant_sku"),)

class InventoryLedgerEntry(TenantScoped, Base):
    __tablename__ = "inventory_ledger"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("inventory_items.id"), index=True)
    quantity: Mapped[float] = mapped_column(Numeric(14, 3), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    batch_id: Mapped[int | None] = mapped_column(ForeignKey("batches.id"), nullable=True, index=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reversal_of_id: Mapped[int | None] = mapped_column(ForeignKey("inventory_ledger.id"), nullable=True, unique=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    __table_args__ = (
        CheckConstraint(
            "type in ('PURCHASE','PRODUCTION','CONSUMPTION','WASTE','ADJUSTMENT_ADD',"
            "'ADJUSTMENT_REMOVE','SALE','RETURN','REVERSAL')",
            name="ck_ledger_type",
        ),
        CheckConstraint("quantity <> 0", name="ck_ledger_qty_nonzero"),
    )

class CodeCounter(TenantScoped, Base):
    __tablename__ = "code_counters"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    period: Mapped[str] = mapped_column(String(8), nullable=False)
    last_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("tenant_id", "prefix", "period", name="uq_code_counters_tenant_prefix_period"),
    )

class TankSyncBacklog(TenantScoped, Base):
    __tablename__ = "tank_sync_backlog"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operation: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING", index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("status in ('PENDING','RESOLVED')", name="ck_tank_sync_backlog_status"),
    )
