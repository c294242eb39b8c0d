"""Ledger engine: the append-only log every balance derives from.

Features:
- Atomic appends: read balance, compute balance_after, insert entry and
  swap the cached balance in the caller's transaction
- Insufficient balance is a rejected precondition, never a negative balance
- Multi-membership postings lock rows in ascending id order
- Per-source-type sign and actor rules
"""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from centelhas.errors import InsufficientBalanceError, ValidationError
from centelhas.models.ledger import TABLE_SOURCE_TYPES, LedgerEntry, LedgerSourceType
from centelhas.models.player import EventPlayer
from centelhas.services.balance import BalanceCache, sum_ledger_deltas

logger = logging.getLogger(__name__)

# Required sign per source type (None = either sign)
SOURCE_SIGNS: dict[LedgerSourceType, int | None] = {
    LedgerSourceType.EVENT_INITIAL_BALANCE: 1,
    LedgerSourceType.TABLE_BUY_IN: -1,
    LedgerSourceType.ELIMINATION_TRANSFER: 1,
    LedgerSourceType.SCOOP_TRANSFER: 1,
    LedgerSourceType.TABLE_ROLLBACK: None,
    LedgerSourceType.BANK_PURCHASE: 1,
    LedgerSourceType.ADMIN_ADJUSTMENT: None,
    LedgerSourceType.PRIZE_WITHDRAWAL: -1,
}


@dataclass(frozen=True)
class Posting:
    """One pending ledger movement inside a multi-entry operation."""

    event_player_id: int
    source_type: LedgerSourceType
    delta: int
    source_id: int | None = None


class LedgerEngine:
    """Append-only ledger over event memberships."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.balances = BalanceCache(session)

    @staticmethod
    def validate(
        source_type: LedgerSourceType,
        delta: int,
        admin_id: int | None = None,
    ) -> None:
        """Check a movement against the source-type rules.

        Raises:
            ValidationError: On zero delta, wrong sign or missing admin
        """
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError("Delta must be an integer", details={"delta": delta})
        if delta == 0:
            raise ValidationError("Delta cannot be zero", details={"sourceType": source_type.value})

        sign = SOURCE_SIGNS[source_type]
        if sign is not None and (delta > 0) != (sign > 0):
            expected = "positive" if sign > 0 else "negative"
            raise ValidationError(
                f"{source_type.value} entries must be {expected}",
                details={"sourceType": source_type.value, "delta": delta},
            )

        if source_type == LedgerSourceType.ADMIN_ADJUSTMENT and admin_id is None:
            raise ValidationError("Administrative adjustments require an acting admin")

    async def append(
        self,
        event_id: int,
        event_player_id: int,
        source_type: LedgerSourceType,
        delta: int,
        *,
        source_id: int | None = None,
        admin_id: int | None = None,
        membership: EventPlayer | None = None,
    ) -> LedgerEntry:
        """Append one entry and update the cached balance.

        Args:
            event_id: Event the membership belongs to
            event_player_id: Membership to move
            source_type: What caused the movement
            delta: Signed amount (+credit/-debit), never zero
            source_id: Originating row (table_players.id for table entries)
            admin_id: Acting admin, required for adjustments
            membership: Already-locked membership row, skips the lock query

        Returns:
            The persisted LedgerEntry (id assigned)

        Raises:
            ValidationError: Zero delta, wrong sign, wrong event or missing admin
            InsufficientBalanceError: If the balance would go negative
            ConflictError: If a concurrent writer changed the balance first
        """
        self.validate(source_type, delta, admin_id)

        if membership is None:
            locked = await self.balances.lock_memberships([event_player_id])
            membership = locked[event_player_id]

        if membership.event_id != event_id:
            raise ValidationError(
                "Membership does not belong to this event",
                details={"eventId": event_id, "eventPlayerId": event_player_id},
            )

        balance_before = membership.current_balance
        balance = balance_before or 0
        balance_after = balance + delta
        if balance_after < 0:
            raise InsufficientBalanceError(
                event_player_id=event_player_id,
                balance=balance,
                required=-delta,
            )

        entry = LedgerEntry(
            event_id=event_id,
            event_player_id=event_player_id,
            source_type=source_type,
            source_id=source_id,
            delta_centelhas=delta,
            balance_after=balance_after,
            created_by_admin_id=admin_id,
        )
        self.session.add(entry)

        await self.balances.apply(membership, balance_before, balance_after)
        await self.session.flush()

        logger.info(
            "Ledger append: entry=%s member=%s type=%s delta=%+d balance=%d -> %d",
            entry.id,
            event_player_id,
            source_type.value,
            delta,
            balance,
            balance_after,
        )
        return entry

    async def append_many(
        self,
        event_id: int,
        postings: Sequence[Posting],
        *,
        admin_id: int | None = None,
    ) -> list[LedgerEntry]:
        """Append several entries as one unit, in the given order.

        All affected memberships are locked up front in ascending id order;
        any failing posting aborts the whole transaction.
        """
        for posting in postings:
            self.validate(posting.source_type, posting.delta, admin_id)

        memberships = await self.balances.lock_memberships(
            p.event_player_id for p in postings
        )
        entries = []
        for posting in postings:
            entries.append(
                await self.append(
                    event_id,
                    posting.event_player_id,
                    posting.source_type,
                    posting.delta,
                    source_id=posting.source_id,
                    admin_id=admin_id,
                    membership=memberships[posting.event_player_id],
                )
            )
        return entries

    async def recompute_balance(self, event_player_id: int) -> int:
        """Re-derive a membership's balance by summing all its entries."""
        totals = await sum_ledger_deltas(self.session, [event_player_id])
        return totals[event_player_id]

    async def has_entry(
        self,
        event_player_id: int,
        source_type: LedgerSourceType,
        source_id: int | None = None,
    ) -> bool:
        query = select(func.count(LedgerEntry.id)).where(
            LedgerEntry.event_player_id == event_player_id,
            LedgerEntry.source_type == source_type,
        )
        if source_id is not None:
            query = query.where(LedgerEntry.source_id == source_id)
        return (await self.session.scalar(query)) > 0

    async def get_entries(
        self,
        event_player_id: int,
        *,
        limit: int = 50,
        offset: int = 0,
        source_type: LedgerSourceType | None = None,
    ) -> list[LedgerEntry]:
        """Membership history, newest first."""
        query = (
            select(LedgerEntry)
            .where(LedgerEntry.event_player_id == event_player_id)
            .order_by(LedgerEntry.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if source_type:
            query = query.where(LedgerEntry.source_type == source_type)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_table_entries(self, table_player_ids: Iterable[int]) -> list[LedgerEntry]:
        """Every table-sourced entry for the given table sessions, oldest first."""
        ids = list(table_player_ids)
        if not ids:
            return []
        result = await self.session.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.source_type.in_(TABLE_SOURCE_TYPES),
                LedgerEntry.source_id.in_(ids),
            )
            .order_by(LedgerEntry.id)
        )
        return list(result.scalars().all())

    async def event_totals(self, event_id: int) -> dict[LedgerSourceType, int]:
        """Sum of deltas per source type across the whole event."""
        result = await self.session.execute(
            select(LedgerEntry.source_type, func.sum(LedgerEntry.delta_centelhas))
            .where(LedgerEntry.event_id == event_id)
            .group_by(LedgerEntry.source_type)
        )
        return {source_type: int(total) for source_type, total in result.all()}
