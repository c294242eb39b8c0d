"""Business logic services."""

from centelhas.services.audit import AuditAction, AuditRecorder
from centelhas.services.balance import BalanceCache, BalanceDrift, BalanceReport
from centelhas.services.ledger import SOURCE_SIGNS, LedgerEngine, Posting
from centelhas.services.membership import EventMembershipService, PlayerRegistry
from centelhas.services.table_lifecycle import (
    TRANSITIONS,
    ReversalSummary,
    TableLifecycle,
    can_transition,
)
from centelhas.services.table_session import (
    EliminationResult,
    ScoopResult,
    TableSessionService,
)

__all__ = [
    # Ledger
    "LedgerEngine",
    "Posting",
    "SOURCE_SIGNS",
    # Balance
    "BalanceCache",
    "BalanceDrift",
    "BalanceReport",
    # Membership
    "PlayerRegistry",
    "EventMembershipService",
    # Table
    "TableLifecycle",
    "TRANSITIONS",
    "can_transition",
    "ReversalSummary",
    "TableSessionService",
    "EliminationResult",
    "ScoopResult",
    # Audit
    "AuditRecorder",
    "AuditAction",
]
