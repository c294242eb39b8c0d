"""Database models."""

from centelhas.models.audit import AuditLog
from centelhas.models.base import Base, TimestampMixin
from centelhas.models.event import Event
from centelhas.models.ledger import (
    EXTERNAL_SOURCE_TYPES,
    TABLE_SOURCE_TYPES,
    LedgerEntry,
    LedgerSourceType,
)
from centelhas.models.player import EventPlayer, Player
from centelhas.models.table import TERMINAL_STATUSES, Table, TablePlayer, TableStatus

# Registers the append-only storage triggers and ORM guards
from centelhas.models import guards  # noqa: E402,F401

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # Event & membership
    "Event",
    "Player",
    "EventPlayer",
    # Table
    "Table",
    "TablePlayer",
    "TableStatus",
    "TERMINAL_STATUSES",
    # Ledger
    "LedgerEntry",
    "LedgerSourceType",
    "TABLE_SOURCE_TYPES",
    "EXTERNAL_SOURCE_TYPES",
    # Audit
    "AuditLog",
]
