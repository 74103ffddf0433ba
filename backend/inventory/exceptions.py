"""
Typed failures raised by the inventory core.

Every error carries a stable ``code`` and a human-readable ``message`` so the
API layer can translate it without inspecting the exception type.
"""
from __future__ import annotations

from typing import Any, Dict


class InventoryError(Exception):
    """Base class for domain-rule violations."""

    code = "inventory_error"
    http_status = 400

    def __init__(self, message: str, field: str | None = None):
        self.message = message
        self.field = field
        super().__init__(message)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "errors": {self.field or self.code: self.message},
            "code": self.code,
        }


class ValidationError(InventoryError):
    """Malformed, missing or out-of-range input; raised before any mutation."""

    code = "validation_error"
    http_status = 400


class NotFoundError(InventoryError):
    code = "not_found"
    http_status = 404


class ConflictError(InventoryError):
    """Illegal or lost status transition. Carries the status actually observed."""

    code = "conflict"
    http_status = 409

    def __init__(self, message: str, current_status: str | None = None, field: str | None = "status"):
        self.current_status = current_status
        super().__init__(message, field=field)

    def as_dict(self) -> Dict[str, Any]:
        payload = super().as_dict()
        payload["current_status"] = self.current_status
        return payload


class InsufficientStockError(InventoryError):
    """Allocation shortfall; the caller may accept a partial allocation or reject."""

    code = "insufficient_stock"
    http_status = 409

    def __init__(self, blood_type: str, requested: int, available: int):
        self.blood_type = blood_type
        self.requested = requested
        self.available = available
        self.shortfall = max(requested - available, 0)
        super().__init__(
            f"Insufficient {blood_type} stock. Only {available} of {requested} units available.",
            field="units",
        )

    def as_dict(self) -> Dict[str, Any]:
        payload = super().as_dict()
        payload.update(
            {
                "blood_type": self.blood_type,
                "requested": self.requested,
                "available": self.available,
                "shortfall": self.shortfall,
            }
        )
        return payload


class IntegrityError(InventoryError):
    """Cross-record inconsistency, e.g. a unit typed differently from its donor."""

    code = "integrity_error"
    http_status = 400
