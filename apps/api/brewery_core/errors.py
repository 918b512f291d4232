"""
Typed errors for the brewery core.

Every error carries a machine-readable ``code``, the HTTP status it maps to
and a ``details`` dict with the structured state a client needs to decide
whether to retry (current vs. required phase, missing ids, ...).

    BreweryCoreError
    |
    +-- NotFoundError
    |   +-- LotNotFound
    |   +-- BatchNotFound
    |   +-- TankNotFound
    |   +-- ItemNotFound
    |   +-- LedgerEntryNotFound
    |   +-- AssignmentNotFound
    |   +-- RecipeNotFound
    |
    +-- InvalidPhaseTransition
    +-- InvalidBatchStatus
    +-- InsufficientSources
    +-- TankUnavailable
    +-- InvalidMovement
    +-- InvalidAllocation
    +-- BatchNotInLot
    +-- TenantRequired
    +-- DegradedSubsystemFailure   (recorded, never returned to the caller)
"""

from __future__ import annotations

from typing import Any


class BreweryCoreError(Exception):
    code: str = "BREWERY_CORE_ERROR"
    status_code: int = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(BreweryCoreError):
    code = "NOT_FOUND"
    status_code = 404
    entity = "record"

    def __init__(self, entity_id: Any):
        super().__init__(f"{self.entity} not found: {entity_id}", {"id": entity_id})
        self.entity_id = entity_id


class LotNotFound(NotFoundError):
    code = "LOT_NOT_FOUND"
    entity = "Lot"


class BatchNotFound(NotFoundError):
    code = "BATCH_NOT_FOUND"
    entity = "Batch"


class TankNotFound(NotFoundError):
    code = "TANK_NOT_FOUND"
    entity = "Tank"


class ItemNotFound(NotFoundError):
    code = "ITEM_NOT_FOUND"
    entity = "Inventory item"


class LedgerEntryNotFound(NotFoundError):
    code = "LEDGER_ENTRY_NOT_FOUND"
    entity = "Ledger entry"


class AssignmentNotFound(NotFoundError):
    code = "ASSIGNMENT_NOT_FOUND"
    entity = "Tank assignment"


class RecipeNotFound(NotFoundError):
    code = "RECIPE_NOT_FOUND"
    entity = "Recipe"


class InvalidPhaseTransition(BreweryCoreError):
    code = "INVALID_PHASE_TRANSITION"
    status_code = 409

    def __init__(self, current: str, required: list[str] | str, *, lot_id: int | None = None,
                 reason: str | None = None):
        required_list = [required] if isinstance(required, str) else list(required)
        message = reason or f"Lot phase {current} cannot move here; required one of {required_list}"
        super().__init__(message, {"lot_id": lot_id, "current": current, "required": required_list})
        self.current = current
        self.required = required_list


class InvalidBatchStatus(BreweryCoreError):
    code = "INVALID_BATCH_STATUS"
    status_code = 409

    def __init__(self, current: str, required: list[str], *, batch_id: int | None = None):
        super().__init__(
            f"Batch must be one of {required} for this operation. Current: {current}",
            {"batch_id": batch_id, "current": current, "required": list(required)},
        )
        self.current = current
        self.required = list(required)


class InsufficientSources(BreweryCoreError):
    code = "INSUFFICIENT_SOURCES"
    status_code = 400

    def __init__(self, found: int, source_type: str):
        super().__init__(
            f"A blend needs at least 2 distinct active lots; resolved {found} from {source_type}",
            {"resolved_lots": found, "source_type": source_type},
        )
        self.found = found


class TankUnavailable(BreweryCoreError):
    code = "TANK_UNAVAILABLE"
    status_code = 409

    def __init__(self, tank_id: int, reason: str, occupying_lot_id: int | None = None):
        super().__init__(
            f"Tank {tank_id} is not available: {reason}",
            {"tank_id": tank_id, "reason": reason, "occupying_lot_id": occupying_lot_id},
        )


class InvalidMovement(BreweryCoreError):
    code = "INVALID_MOVEMENT"
    status_code = 400


class InvalidAllocation(BreweryCoreError):
    code = "INVALID_ALLOCATION"
    status_code = 400


class BatchNotInLot(BreweryCoreError):
    code = "BATCH_NOT_IN_LOT"
    status_code = 400

    def __init__(self, batch_id: int, lot_id: int):
        super().__init__(f"Batch {batch_id} is not part of lot {lot_id}", {"batch_id": batch_id, "lot_id": lot_id})


class TenantRequired(BreweryCoreError):
    code = "TENANT_REQUIRED"
    status_code = 401

    def __init__(self):
        super().__init__("X-Tenant-ID header is required")


class DegradedSubsystemFailure(BreweryCoreError):
    code = "DEGRADED_SUBSYSTEM"
    status_code = 500
