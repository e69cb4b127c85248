"""Error taxonomy for the picking engine.

Backend failures arrive as a message (sometimes prefixed with a tag such as
``TRANSACTION_ROLLED_BACK:``) plus an optional machine code. `classify_error`
maps both onto an `ErrorKind`, which decides how the coordinator recovers.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    CONCURRENCY_TRANSIENT = "concurrency_transient"
    TRANSACTION_SAFE = "transaction_safe"
    TRANSACTION_CRITICAL = "transaction_critical"
    INSUFFICIENT_QUANTITY = "insufficient_quantity"
    ALREADY_PRINT = "already_print"
    NETWORK_UNKNOWN = "network_unknown"


class PickingError(Exception):
    kind = ErrorKind.NETWORK_UNKNOWN


class PickValidationError(PickingError):
    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        max_pickable_bags: float | None = None,
        max_pickable_weight: float | None = None,
    ):
        super().__init__(message)
        self.max_pickable_bags = max_pickable_bags
        self.max_pickable_weight = max_pickable_weight


class BackendError(PickingError):
    """Any failure reported by (or while talking to) the remote picking service."""

    def __init__(self, message: str, *, code: str | None = None, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return classify_error(self.code, self.message)


def classify_error(code: str | None, message: str | None) -> ErrorKind:
    text = f"{code or ''} {message or ''}"
    upper = text.upper()

    # Order matters: a rolled-back transaction may wrap BATCH_ALREADY_COMPLETED.
    if "TRANSACTION_FAILED" in upper and "ROLLBACK_ALSO_FAILED" in upper:
        return ErrorKind.TRANSACTION_CRITICAL
    if "TRANSACTION_ROLLED_BACK" in upper:
        return ErrorKind.TRANSACTION_SAFE
    if "BATCH_ALREADY_COMPLETED" in upper or "this batch is already completed" in text.lower():
        return ErrorKind.CONCURRENCY_TRANSIENT
    if (
        "DATABASE_RECORD_NOT_FOUND" in upper
        or "data synchronization issue" in text.lower()
        or "QTY REQUIRED 0" in upper
    ):
        return ErrorKind.CONCURRENCY_TRANSIENT
    if (
        "INSUFFICIENT_BATCH_QUANTITY" in upper
        or "INSUFFICIENT LOT AVAILABILITY" in upper
        or "INSUFFICIENT_QUANTITY" in upper
    ):
        return ErrorKind.INSUFFICIENT_QUANTITY
    if "QUANTITY_VALIDATION_FAILED" in upper or "MORE THAN QTY REQUIRED" in upper:
        return ErrorKind.VALIDATION
    if "ALREADY" in upper and "PRINT" in upper:
        return ErrorKind.ALREADY_PRINT
    return ErrorKind.NETWORK_UNKNOWN


def is_batch_already_completed(error: BackendError) -> bool:
    text = f"{error.code or ''} {error.message}"
    return "BATCH_ALREADY_COMPLETED" in text.upper() or "this batch is already completed" in text.lower()


def user_message(kind: ErrorKind, message: str) -> str:
    """Operator-facing text for an error of the given kind."""
    if kind is ErrorKind.TRANSACTION_SAFE:
        detail = message.replace("TRANSACTION_ROLLED_BACK:", "").strip()
        return f"Transaction was safely rolled back ({detail}). The database is consistent, safe to try again."
    if kind is ErrorKind.TRANSACTION_CRITICAL:
        # Verbatim: the operator must report exactly what the backend said.
        return message
    if kind is ErrorKind.CONCURRENCY_TRANSIENT:
        return "This batch was already completed or the data was out of date. Reloaded the current picking data."
    if kind is ErrorKind.INSUFFICIENT_QUANTITY:
        return "Not enough quantity available. Reduce the quantity or choose a different lot/bin."
    if kind is ErrorKind.ALREADY_PRINT:
        return "Run status was already PRINT."
    return message
