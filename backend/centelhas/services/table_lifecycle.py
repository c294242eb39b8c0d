"""Table lifecycle state machine.

    draft ──► started ──► finished
      │          ├──────► rolled_back
      └──────────┴──────► void

- draft: joins and leaves allowed until bets are locked
- draft -> started: bets locked and enough active participants
- started -> finished: sole survivor has scooped and the pot is empty
- started -> rolled_back: every table entry reversed by compensating entries
- draft|started -> void: administrative abort, same reversal as rollback

Every other transition raises InvalidStateTransitionError; nothing is ever a
silent no-op. Status changes are compare-and-swap updates on the table row.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from centelhas.errors import (
    ConflictError,
    IntegrityFaultError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from centelhas.models.event import Event
from centelhas.models.ledger import LedgerEntry, LedgerSourceType
from centelhas.models.player import EventPlayer
from centelhas.models.table import Table, TablePlayer, TableStatus
from centelhas.services.audit import AuditAction, AuditRecorder
from centelhas.services.ledger import LedgerEngine, Posting
from centelhas.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

TRANSITIONS: dict[TableStatus, frozenset[TableStatus]] = {
    TableStatus.DRAFT: frozenset({TableStatus.STARTED, TableStatus.VOID}),
    TableStatus.STARTED: frozenset(
        {TableStatus.FINISHED, TableStatus.ROLLED_BACK, TableStatus.VOID}
    ),
    TableStatus.FINISHED: frozenset(),
    TableStatus.ROLLED_BACK: frozenset(),
    TableStatus.VOID: frozenset(),
}

# Timestamp column set when entering a status
STATUS_TIMESTAMPS: dict[TableStatus, str] = {
    TableStatus.STARTED: "started_at",
    TableStatus.FINISHED: "finished_at",
    TableStatus.ROLLED_BACK: "rolled_back_at",
}


def can_transition(current: TableStatus, target: TableStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass
class ReversalSummary:
    """Compensating entries written by a rollback or void."""

    table_id: int
    status: TableStatus
    entries: list[LedgerEntry] = field(default_factory=list)

    @property
    def refunded(self) -> int:
        return sum(e.delta_centelhas for e in self.entries if e.delta_centelhas > 0)

    @property
    def clawed_back(self) -> int:
        return -sum(e.delta_centelhas for e in self.entries if e.delta_centelhas < 0)

    @property
    def total(self) -> int:
        return sum(e.delta_centelhas for e in self.entries)


class TableLifecycle:
    """Drives a table through its states and gates ledger-affecting operations."""

    def __init__(self, session: AsyncSession, min_players: int = 2) -> None:
        self.session = session
        self.min_players = min_players
        self.ledger = LedgerEngine(session)
        self.audit = AuditRecorder(session)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def get_table(self, table_id: int, *, for_update: bool = False) -> Table:
        query = select(Table).where(Table.id == table_id).execution_options(
            populate_existing=True
        )
        if for_update:
            query = query.with_for_update()
        table = (await self.session.execute(query)).scalar_one_or_none()
        if table is None:
            raise NotFoundError("Table", table_id)
        return table

    async def get_participants(self, table_id: int) -> list[TablePlayer]:
        result = await self.session.execute(
            select(TablePlayer)
            .where(TablePlayer.table_id == table_id)
            .order_by(TablePlayer.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_active_participants(self, table_id: int) -> list[TablePlayer]:
        return [p for p in await self.get_participants(table_id) if p.is_active]

    @staticmethod
    def require_status(table: Table, *allowed: TableStatus, action: str) -> None:
        if table.status not in allowed:
            raise InvalidStateTransitionError(
                f"Cannot {action} a {table.status.value} table",
                current=table.status.value,
                details={"tableId": table.id, "allowed": [s.value for s in allowed]},
            )

    # ------------------------------------------------------------------
    # Pot accounting
    # ------------------------------------------------------------------

    async def get_table_entries(self, participants: list[TablePlayer]) -> list[LedgerEntry]:
        return await self.ledger.get_table_entries(p.id for p in participants)

    async def stakes_in_pot(self, table_id: int) -> dict[int, int]:
        """Centelhas each participant's buy-in still has in the pot.

        Table entries are sourced on the table session whose stake they move,
        so a stake is the negated sum of the entries sourced on it.
        """
        participants = await self.get_participants(table_id)
        stakes = {p.id: 0 for p in participants}
        for entry in await self.get_table_entries(participants):
            stakes[entry.source_id] -= entry.delta_centelhas
        return stakes

    async def pot_total(self, table_id: int) -> int:
        return sum((await self.stakes_in_pot(table_id)).values())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def create_table(self, event_id: int, player_id: int) -> Table:
        """Open a draft table; the creator must be an active member of the event."""
        event = await self.session.get(Event, event_id)
        if event is None:
            raise NotFoundError("Event", event_id)

        ends_at = as_utc(event.ends_at)
        if ends_at is not None and utcnow() > ends_at:
            raise ValidationError("Event has ended", details={"eventId": event_id})

        result = await self.session.execute(
            select(EventPlayer).where(
                EventPlayer.event_id == event_id,
                EventPlayer.player_id == player_id,
            )
        )
        membership = result.scalar_one_or_none()
        if membership is None or not membership.is_active:
            raise ValidationError(
                "Only active event members can create tables",
                details={"eventId": event_id, "playerId": player_id},
            )

        table = Table(
            event_id=event_id,
            created_by_player_id=player_id,
            status=TableStatus.DRAFT,
        )
        self.session.add(table)
        await self.session.flush()

        logger.info("Table created: table=%s event=%s by=%s", table.id, event_id, player_id)
        return table

    async def _swap_status(
        self,
        table: Table,
        target: TableStatus,
        when: datetime,
    ) -> None:
        if not can_transition(table.status, target):
            raise InvalidStateTransitionError(
                f"Cannot move table from {table.status.value} to {target.value}",
                current=table.status.value,
                requested=target.value,
                details={"tableId": table.id},
            )

        values: dict = {"status": target, "updated_at": when}
        timestamp_column = STATUS_TIMESTAMPS.get(target)
        if timestamp_column:
            values[timestamp_column] = when

        result = await self.session.execute(
            update(Table)
            .where(Table.id == table.id, Table.status == table.status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                "Table changed state concurrently",
                details={"tableId": table.id, "expected": table.status.value},
            )

        previous = table.status
        for key, value in values.items():
            set_committed_value(table, key, value)

        logger.info("Table %s: %s -> %s", table.id, previous.value, target.value)

    async def lock_bets(self, table_id: int, *, admin_id: int | None = None) -> Table:
        """Freeze the roster: no joins or leaves after this."""
        table = await self.get_table(table_id, for_update=True)
        self.require_status(table, TableStatus.DRAFT, action="lock bets on")
        if table.is_bet_locked:
            raise InvalidStateTransitionError(
                "Bets are already locked",
                current=table.status.value,
                details={"tableId": table.id},
            )

        now = utcnow()
        result = await self.session.execute(
            update(Table)
            .where(
                Table.id == table.id,
                Table.status == TableStatus.DRAFT,
                Table.bet_locked_at.is_(None),
            )
            .values(bet_locked_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Table changed concurrently", details={"tableId": table.id})
        set_committed_value(table, "bet_locked_at", now)
        set_committed_value(table, "updated_at", now)

        if admin_id is not None:
            await self.audit.record(
                admin_id,
                AuditAction.TABLE_LOCK_BETS,
                "table",
                event_id=table.event_id,
                entity_id=table.id,
            )

        logger.info("Table %s bets locked", table.id)
        return table

    async def start(self, table_id: int, *, admin_id: int | None = None) -> Table:
        table = await self.get_table(table_id, for_update=True)
        self.require_status(table, TableStatus.DRAFT, action="start")

        if not table.is_bet_locked:
            raise InvalidStateTransitionError(
                "Bets must be locked before starting",
                current=table.status.value,
                requested=TableStatus.STARTED.value,
                details={"tableId": table.id},
            )

        active = await self.get_active_participants(table.id)
        if len(active) < self.min_players:
            raise InvalidStateTransitionError(
                f"Not enough players: {len(active)}/{self.min_players}",
                current=table.status.value,
                requested=TableStatus.STARTED.value,
                details={"tableId": table.id, "active": len(active), "required": self.min_players},
            )

        await self._swap_status(table, TableStatus.STARTED, utcnow())

        if admin_id is not None:
            await self.audit.record(
                admin_id,
                AuditAction.TABLE_START,
                "table",
                event_id=table.event_id,
                entity_id=table.id,
                details={"participants": [p.id for p in active]},
            )
        return table

    async def finish(self, table_id: int, *, admin_id: int | None = None) -> Table:
        """Close a resolved table after reconciling its payouts."""
        table = await self.get_table(table_id, for_update=True)
        self.require_status(table, TableStatus.STARTED, action="finish")

        participants = await self.get_participants(table.id)
        active = [p for p in participants if p.is_active]
        if len(active) != 1 or not active[0].is_scoop:
            raise InvalidStateTransitionError(
                "Table is not resolved: the sole survivor must scoop before finishing",
                current=table.status.value,
                requested=TableStatus.FINISHED.value,
                details={"tableId": table.id, "active": len(active)},
            )

        await self._reconcile_payouts(table, participants)
        await self._swap_status(table, TableStatus.FINISHED, utcnow())

        if admin_id is not None:
            await self.audit.record(
                admin_id,
                AuditAction.TABLE_FINISH,
                "table",
                event_id=table.event_id,
                entity_id=table.id,
                details={"winner": active[0].id},
            )
        return table

    async def _reconcile_payouts(self, table: Table, participants: list[TablePlayer]) -> None:
        """Every centelha bought in must have been paid back out.

        Raises:
            IntegrityFaultError: If the pot is not empty or a balance drifted
        """
        entries = await self.get_table_entries(participants)
        pot = -sum(e.delta_centelhas for e in entries)
        if pot != 0:
            logger.error("Table %s pot not empty at finish: %d", table.id, pot)
            raise IntegrityFaultError(
                f"Table {table.id} ledger does not balance at finish",
                details={"tableId": table.id, "pot": pot},
            )

        drifts = await self.ledger.balances.find_drift(
            {p.event_player_id for p in participants}
        )
        if drifts:
            raise IntegrityFaultError(
                f"Balances of table {table.id} participants diverge from ledger",
                details={"tableId": table.id, "drifts": [d.to_dict() for d in drifts]},
            )

    async def rollback(self, table_id: int, *, admin_id: int, reason: str | None = None) -> ReversalSummary:
        """Reverse every table entry of a started table."""
        if admin_id is None:
            raise ValidationError("Rollback requires an acting admin")

        table = await self.get_table(table_id, for_update=True)
        self.require_status(table, TableStatus.STARTED, action="roll back")

        summary = await self._reverse_table(table, TableStatus.ROLLED_BACK, admin_id)
        await self._swap_status(table, TableStatus.ROLLED_BACK, utcnow())

        await self.audit.record(
            admin_id,
            AuditAction.TABLE_ROLLBACK,
            "table",
            event_id=table.event_id,
            entity_id=table.id,
            details={
                "reason": reason,
                "refunded": summary.refunded,
                "clawed_back": summary.clawed_back,
                "entries": [e.id for e in summary.entries],
            },
        )
        return summary

    async def void(self, table_id: int, *, admin_id: int, reason: str | None = None) -> ReversalSummary:
        """Administrative abort of a draft or started table."""
        if admin_id is None:
            raise ValidationError("Voiding a table requires an acting admin")

        table = await self.get_table(table_id, for_update=True)
        self.require_status(table, TableStatus.DRAFT, TableStatus.STARTED, action="void")

        summary = await self._reverse_table(table, TableStatus.VOID, admin_id)
        await self._swap_status(table, TableStatus.VOID, utcnow())

        await self.audit.record(
            admin_id,
            AuditAction.TABLE_VOID,
            "table",
            event_id=table.event_id,
            entity_id=table.id,
            details={
                "reason": reason,
                "refunded": summary.refunded,
                "clawed_back": summary.clawed_back,
                "entries": [e.id for e in summary.entries],
            },
        )
        return summary

    async def _reverse_table(
        self,
        table: Table,
        target: TableStatus,
        admin_id: int,
    ) -> ReversalSummary:
        """Write compensating entries so every (membership, stake) pair nets to zero.

        Credits (buy-in refunds) are applied before debits (claw-backs of
        elimination and scoop credits). Originals are never touched.
        """
        participants = await self.get_participants(table.id)
        entries = await self.get_table_entries(participants)

        nets: dict[tuple[int, int], int] = defaultdict(int)
        for entry in entries:
            nets[(entry.event_player_id, entry.source_id)] += entry.delta_centelhas

        postings = [
            Posting(
                event_player_id=event_player_id,
                source_type=LedgerSourceType.TABLE_ROLLBACK,
                delta=-net,
                source_id=source_id,
            )
            for (event_player_id, source_id), net in sorted(nets.items())
            if net != 0
        ]
        postings.sort(key=lambda p: p.delta < 0)

        summary = ReversalSummary(table_id=table.id, status=target)
        if postings:
            summary.entries = await self.ledger.append_many(
                table.event_id, postings, admin_id=admin_id
            )

        logger.info(
            "Table %s reversed: refunded=%d clawed_back=%d entries=%d",
            table.id,
            summary.refunded,
            summary.clawed_back,
            len(summary.entries),
        )
        return summary
