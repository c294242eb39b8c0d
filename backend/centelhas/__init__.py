"""Centelhas: ledger-backed event economy with a table lifecycle state machine."""

from centelhas.engine import CentelhasEngine
from centelhas.errors import (
    AppendOnlyViolationError,
    CentelhasError,
    ConflictError,
    ErrorCode,
    InsufficientBalanceError,
    IntegrityFaultError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "CentelhasEngine",
    "CentelhasError",
    "ErrorCode",
    "ValidationError",
    "InsufficientBalanceError",
    "InvalidStateTransitionError",
    "ConflictError",
    "IntegrityFaultError",
    "NotFoundError",
    "AppendOnlyViolationError",
]
