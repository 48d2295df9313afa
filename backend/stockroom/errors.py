# Overview: Single tagged error type shared by every inventory workflow.

"""
Error model.

Every failure the core can report is one InventoryError carrying an
ErrorCode, a human-readable message and a context mapping. Adapters map
the code to a transport status via ErrorCode.http_status; nothing in the
core inspects messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    INVALID_QUANTITY = "invalid_quantity"
    INSUFFICIENT_STOCK = "insufficient_stock"
    INVENTORY_RECORD_NOT_FOUND = "inventory_record_not_found"
    INVENTORY_OPERATION_FAILED = "inventory_operation_failed"
    RETRY_EXHAUSTED = "retry_exhausted"
    INVALID_STATUS_TRANSITION = "invalid_status_transition"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    ErrorCode.INVALID_QUANTITY: 422,
    ErrorCode.INSUFFICIENT_STOCK: 409,
    ErrorCode.INVENTORY_RECORD_NOT_FOUND: 404,
    ErrorCode.INVENTORY_OPERATION_FAILED: 409,
    ErrorCode.RETRY_EXHAUSTED: 503,
    ErrorCode.INVALID_STATUS_TRANSITION: 409,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.NOT_FOUND: 404,
}


class InventoryError(Exception):
    """Raised by ledger and workflow operations; see ErrorCode for the kinds."""

    def __init__(self, code: ErrorCode, message: str, **context: Any):
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = context

    @property
    def http_status(self) -> int:
        return self.code.http_status

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "context": dict(self.context),
        }

    def __repr__(self) -> str:
        return f"<InventoryError code={self.code.value} message={self.message!r}>"


def invalid_quantity(quantity: Any, **context: Any) -> InventoryError:
    return InventoryError(
        ErrorCode.INVALID_QUANTITY,
        f"Quantity must be a positive integer, got {quantity!r}",
        quantity=quantity,
        **context,
    )


def validation_error(message: str, **context: Any) -> InventoryError:
    return InventoryError(ErrorCode.VALIDATION_ERROR, message, **context)


def not_found(entity: str, entity_id: Any) -> InventoryError:
    return InventoryError(
        ErrorCode.NOT_FOUND,
        f"{entity} {entity_id} not found",
        entity=entity,
        entity_id=entity_id,
    )


def invalid_transition(entity: str, from_status: str, to_status: str, **context: Any) -> InventoryError:
    return InventoryError(
        ErrorCode.INVALID_STATUS_TRANSITION,
        f"Cannot move {entity} from {from_status} to {to_status}",
        entity=entity,
        from_status=from_status,
        to_status=to_status,
        **context,
    )
