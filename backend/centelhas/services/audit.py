"""Audit recorder for privileged (admin) actions.

Append-only side channel: it never gates, and is never gated by, ledger
operations. Rows share the ledger's storage-level append-only guard.
"""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from centelhas.errors import ValidationError
from centelhas.models.audit import AuditLog

logger = logging.getLogger(__name__)


class AuditAction:
    """Known action names."""

    EVENT_CREATE = "event.create"
    MEMBERSHIP_DEACTIVATE = "membership.deactivate"
    MEMBERSHIP_REACTIVATE = "membership.reactivate"
    LEDGER_ADJUST = "ledger.adjust"
    LEDGER_WITHDRAW_PRIZE = "ledger.withdraw_prize"
    TABLE_LOCK_BETS = "table.lock_bets"
    TABLE_START = "table.start"
    TABLE_FINISH = "table.finish"
    TABLE_ROLLBACK = "table.rollback"
    TABLE_VOID = "table.void"


class AuditRecorder:
    """Writes AuditLog rows in the caller's transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(
        self,
        admin_id: int,
        action: str,
        entity_type: str,
        *,
        event_id: int | None = None,
        entity_id: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditLog:
        if admin_id is None:
            raise ValidationError("Audit records require an acting admin")
        if not action or not entity_type:
            raise ValidationError("Audit records require an action and an entity type")

        log = AuditLog(
            admin_id=admin_id,
            event_id=event_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details_json=details,
        )
        self.session.add(log)
        await self.session.flush()

        logger.info(
            "Audit: %s %s:%s by admin=%s",
            action,
            entity_type,
            entity_id,
            admin_id,
        )
        return log

    async def get_event_log(
        self,
        event_id: int,
        *,
        limit: int = 100,
        action: str | None = None,
    ) -> list[AuditLog]:
        """Most recent audit rows for an event."""
        query = (
            select(AuditLog)
            .where(AuditLog.event_id == event_id)
            .order_by(AuditLog.id.desc())
            .limit(limit)
        )
        if action:
            query = query.where(AuditLog.action == action)

        result = await self.session.execute(query)
        return list(result.scalars().all())
