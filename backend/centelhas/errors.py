"""Exception classes for ledger and table errors.

Every engine error carries a code, a user-facing message and structured
details so a client can tell "bet too large" from "table not open" from
"try again".
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standard error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    CONFLICT = "CONFLICT"
    INTEGRITY_FAULT = "INTEGRITY_FAULT"
    NOT_FOUND = "NOT_FOUND"
    APPEND_ONLY_VIOLATION = "APPEND_ONLY_VIOLATION"


class CentelhasError(Exception):
    """Base exception for engine errors.

    Attributes:
        code: Error code for programmatic handling
        message: User-friendly error message
        details: Additional error details
        recoverable: Whether the caller can fix the input or retry
    """

    def __init__(
        self,
        code: ErrorCode | str,
        message: str,
        details: dict[str, Any] | None = None,
        recoverable: bool = True,
    ):
        self.code = code if isinstance(code, str) else code.value
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "errorCode": self.code,
            "errorMessage": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


class ValidationError(CentelhasError):
    """Raised on malformed input (non-positive bet, zero delta, ...)."""

    def __init__(
        self,
        message: str = "Invalid input",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            details=details,
            recoverable=True,
        )


class InsufficientBalanceError(CentelhasError):
    """Raised when a debit would drive a balance negative."""

    def __init__(
        self,
        event_player_id: int,
        balance: int,
        required: int,
    ):
        super().__init__(
            code=ErrorCode.INSUFFICIENT_BALANCE,
            message=f"Insufficient balance: {balance}, required: {required}",
            details={
                "eventPlayerId": event_player_id,
                "balance": balance,
                "required": required,
            },
            recoverable=True,
        )


class InvalidStateTransitionError(CentelhasError):
    """Raised when a table lifecycle rule is violated."""

    def __init__(
        self,
        message: str,
        current: str | None = None,
        requested: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        merged = {"current": current, "requested": requested}
        merged.update(details or {})
        super().__init__(
            code=ErrorCode.INVALID_STATE_TRANSITION,
            message=message,
            details=merged,
            recoverable=True,
        )


class ConflictError(CentelhasError):
    """Raised on a concurrent modification. Retryable."""

    def __init__(
        self,
        message: str = "Concurrent modification detected, try again",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            code=ErrorCode.CONFLICT,
            message=message,
            details=details,
            recoverable=True,
        )


class IntegrityFaultError(CentelhasError):
    """Raised when cached balances or table totals diverge from the ledger.

    Not retryable: requires operator intervention.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            code=ErrorCode.INTEGRITY_FAULT,
            message=message,
            details=details,
            recoverable=False,
        )


class NotFoundError(CentelhasError):
    """Raised when a referenced event, player, membership or table is absent."""

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{entity} not found: {entity_id}",
            details={"entity": entity, "entityId": entity_id},
            recoverable=False,
        )


class AppendOnlyViolationError(CentelhasError):
    """Raised when something tries to modify or remove a committed ledger/audit row."""

    def __init__(self, table_name: str | None = None, operation: str = "UPDATE or DELETE"):
        target = f"append-only table {table_name}" if table_name else "an append-only table"
        super().__init__(
            code=ErrorCode.APPEND_ONLY_VIOLATION,
            message=f"{operation} is not allowed on {target}",
            details={"table": table_name, "operation": operation},
            recoverable=False,
        )
