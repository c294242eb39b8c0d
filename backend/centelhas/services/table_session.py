"""Table sessions: joining, leaving, eliminations and the scoop.

Pot accounting follows the full original bet:

- buy-in debits the bet from the joining membership into the table pot
- an elimination moves the eliminated participant's whole bet from the pot
  to the eliminator (one ``elimination_transfer`` credit); the eliminated
  side of the transfer is the stake it already lost at buy-in, recorded on
  the session row instead of as a zero entry
- the scoop pays the survivor every stake still in the pot, its own included

Every table entry is sourced on the table session (``table_players.id``)
whose stake it moves, which is what lets reversals net each stake to zero.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from centelhas.errors import (
    ConflictError,
    IntegrityFaultError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from centelhas.models.ledger import LedgerEntry, LedgerSourceType
from centelhas.models.player import EventPlayer
from centelhas.models.table import Table, TablePlayer, TableStatus
from centelhas.services.ledger import Posting
from centelhas.services.table_lifecycle import TableLifecycle
from centelhas.utils.clock import utcnow

logger = logging.getLogger(__name__)

MAX_COMMANDER_NAME_LENGTH = 255


@dataclass
class EliminationResult:
    eliminated: TablePlayer
    eliminator: TablePlayer
    entry: LedgerEntry

    @property
    def amount(self) -> int:
        return self.entry.delta_centelhas


@dataclass
class ScoopResult:
    winner: TablePlayer
    entries: list[LedgerEntry] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(e.delta_centelhas for e in self.entries)


class TableSessionService:
    """Participant-level table operations; status gating comes from TableLifecycle."""

    def __init__(self, session: AsyncSession, lifecycle: TableLifecycle | None = None) -> None:
        self.session = session
        self.lifecycle = lifecycle or TableLifecycle(session)
        self.ledger = self.lifecycle.ledger

    async def get_participant(self, table: Table, table_player_id: int) -> TablePlayer:
        participant = await self.session.get(
            TablePlayer,
            table_player_id,
            populate_existing=True,
        )
        if participant is None or participant.table_id != table.id:
            raise NotFoundError("TablePlayer", table_player_id)
        return participant

    async def join(
        self,
        table_id: int,
        event_player_id: int,
        bet_centelhas: int,
        commander_name: str,
    ) -> TablePlayer:
        """Join a draft table and debit the bet as a buy-in.

        Raises:
            InvalidStateTransitionError: Table is not draft or bets are locked
            ValidationError: Bad bet, bad commander, foreign or inactive membership, duplicate join
            InsufficientBalanceError: Bet exceeds the membership's balance
        """
        if isinstance(bet_centelhas, bool) or not isinstance(bet_centelhas, int) or bet_centelhas <= 0:
            raise ValidationError("Bet must be a positive integer", details={"bet": bet_centelhas})

        commander_name = (commander_name or "").strip()
        if not commander_name:
            raise ValidationError("Commander name is required")
        if len(commander_name) > MAX_COMMANDER_NAME_LENGTH:
            raise ValidationError(
                f"Commander name exceeds {MAX_COMMANDER_NAME_LENGTH} characters"
            )

        table = await self.lifecycle.get_table(table_id, for_update=True)
        self.lifecycle.require_status(table, TableStatus.DRAFT, action="join")
        if table.is_bet_locked:
            raise InvalidStateTransitionError(
                "Bets are locked; the table no longer accepts players",
                current=table.status.value,
                details={"tableId": table.id},
            )

        membership = await self.session.get(EventPlayer, event_player_id)
        if membership is None:
            raise NotFoundError("EventPlayer", event_player_id)
        if membership.event_id != table.event_id:
            raise ValidationError(
                "Membership belongs to another event",
                details={"tableId": table.id, "eventPlayerId": event_player_id},
            )
        if not membership.is_active:
            raise ValidationError("Membership is inactive", details={"eventPlayerId": event_player_id})

        for existing in await self.lifecycle.get_participants(table.id):
            if existing.event_player_id == event_player_id:
                raise ValidationError(
                    "Membership already joined this table",
                    details={"tableId": table.id, "eventPlayerId": event_player_id},
                )

        participant = TablePlayer(
            table_id=table.id,
            event_player_id=event_player_id,
            commander_name=commander_name,
            bet_centelhas=bet_centelhas,
        )
        self.session.add(participant)
        await self.session.flush()

        await self.ledger.append(
            table.event_id,
            event_player_id,
            LedgerSourceType.TABLE_BUY_IN,
            -bet_centelhas,
            source_id=participant.id,
        )

        logger.info(
            "Table join: table=%s session=%s member=%s bet=%d",
            table.id,
            participant.id,
            event_player_id,
            bet_centelhas,
        )
        return participant

    async def leave(self, table_id: int, table_player_id: int) -> LedgerEntry:
        """Withdraw from a draft table before bets lock; the bet is refunded.

        The session row stays (marked out) so the buy-in and its refund keep
        a source to point at.
        """
        table = await self.lifecycle.get_table(table_id, for_update=True)
        self.lifecycle.require_status(table, TableStatus.DRAFT, action="leave")
        if table.is_bet_locked:
            raise InvalidStateTransitionError(
                "Bets are locked; players can no longer leave",
                current=table.status.value,
                details={"tableId": table.id},
            )

        participant = await self.get_participant(table, table_player_id)
        if not participant.is_active:
            raise ValidationError(
                "Participant already left the table",
                details={"tablePlayerId": table_player_id},
            )

        stake = (await self.lifecycle.stakes_in_pot(table.id))[participant.id]
        if stake <= 0:
            raise IntegrityFaultError(
                f"Table session {participant.id} has no stake to refund",
                details={"tableId": table.id, "tablePlayerId": participant.id, "stake": stake},
            )

        await self._mark_out(participant, eliminator_id=None)
        refund = await self.ledger.append(
            table.event_id,
            participant.event_player_id,
            LedgerSourceType.TABLE_ROLLBACK,
            stake,
            source_id=participant.id,
        )

        logger.info("Table leave: table=%s session=%s refund=%d", table.id, participant.id, stake)
        return refund

    async def eliminate(
        self,
        table_id: int,
        eliminator_id: int,
        eliminated_id: int,
    ) -> EliminationResult:
        """Record that one participant knocked out another on a started table."""
        if eliminator_id == eliminated_id:
            raise ValidationError(
                "A participant cannot eliminate themselves",
                details={"tablePlayerId": eliminator_id},
            )

        table = await self.lifecycle.get_table(table_id, for_update=True)
        self.lifecycle.require_status(table, TableStatus.STARTED, action="record an elimination on")

        eliminator = await self.get_participant(table, eliminator_id)
        eliminated = await self.get_participant(table, eliminated_id)
        for participant in (eliminator, eliminated):
            if not participant.is_active:
                raise ValidationError(
                    "Participant is already out",
                    details={"tablePlayerId": participant.id},
                )

        stake = (await self.lifecycle.stakes_in_pot(table.id))[eliminated.id]
        if stake <= 0:
            raise IntegrityFaultError(
                f"Table session {eliminated.id} has no stake in the pot",
                details={"tableId": table.id, "tablePlayerId": eliminated.id, "stake": stake},
            )

        await self._mark_out(eliminated, eliminator_id=eliminator.id)
        [entry] = await self.ledger.append_many(
            table.event_id,
            [
                Posting(
                    event_player_id=eliminator.event_player_id,
                    source_type=LedgerSourceType.ELIMINATION_TRANSFER,
                    delta=stake,
                    source_id=eliminated.id,
                )
            ],
        )

        logger.info(
            "Elimination: table=%s %s -> %s amount=%d",
            table.id,
            eliminated.id,
            eliminator.id,
            stake,
        )
        return EliminationResult(eliminated=eliminated, eliminator=eliminator, entry=entry)

    async def forfeit(self, table_id: int, table_player_id: int) -> TablePlayer:
        """Drop a participant without an eliminator; the stake stays in the pot."""
        table = await self.lifecycle.get_table(table_id, for_update=True)
        self.lifecycle.require_status(table, TableStatus.STARTED, action="forfeit on")

        participant = await self.get_participant(table, table_player_id)
        if not participant.is_active:
            raise ValidationError(
                "Participant is already out",
                details={"tablePlayerId": table_player_id},
            )

        active = await self.lifecycle.get_active_participants(table.id)
        if len(active) <= 1:
            raise InvalidStateTransitionError(
                "The last participant scoops instead of forfeiting",
                current=table.status.value,
                details={"tableId": table.id},
            )

        await self._mark_out(participant, eliminator_id=None)
        logger.info("Forfeit: table=%s session=%s", table.id, participant.id)
        return participant

    async def scoop(self, table_id: int, winner_id: int) -> ScoopResult:
        """Pay the sole surviving participant every stake left in the pot."""
        table = await self.lifecycle.get_table(table_id, for_update=True)
        self.lifecycle.require_status(table, TableStatus.STARTED, action="scoop")

        winner = await self.get_participant(table, winner_id)
        active = await self.lifecycle.get_active_participants(table.id)
        if len(active) != 1 or active[0].id != winner.id:
            raise InvalidStateTransitionError(
                "Scoop requires the winner to be the only active participant",
                current=table.status.value,
                details={"tableId": table.id, "active": [p.id for p in active]},
            )
        if winner.is_scoop:
            raise InvalidStateTransitionError(
                "Table was already scooped",
                current=table.status.value,
                details={"tableId": table.id},
            )

        stakes = await self.lifecycle.stakes_in_pot(table.id)
        if any(amount < 0 for amount in stakes.values()):
            raise IntegrityFaultError(
                f"Table {table.id} paid out more than a stake",
                details={"tableId": table.id, "stakes": stakes},
            )

        postings = [
            Posting(
                event_player_id=winner.event_player_id,
                source_type=LedgerSourceType.SCOOP_TRANSFER,
                delta=amount,
                source_id=table_player_id,
            )
            for table_player_id, amount in sorted(stakes.items())
            if amount > 0
        ]

        result = await self.session.execute(
            update(TablePlayer)
            .where(
                TablePlayer.id == winner.id,
                TablePlayer.is_scoop.is_(False),
                TablePlayer.eliminated_at.is_(None),
            )
            .values(is_scoop=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Table session changed concurrently", details={"tablePlayerId": winner.id})
        set_committed_value(winner, "is_scoop", True)

        scoop = ScoopResult(winner=winner)
        if postings:
            scoop.entries = await self.ledger.append_many(table.event_id, postings)

        logger.info(
            "Scoop: table=%s winner=%s total=%d stakes=%d",
            table.id,
            winner.id,
            scoop.total,
            len(scoop.entries),
        )
        return scoop

    async def _mark_out(self, participant: TablePlayer, *, eliminator_id: int | None) -> None:
        now = utcnow()
        result = await self.session.execute(
            update(TablePlayer)
            .where(TablePlayer.id == participant.id, TablePlayer.eliminated_at.is_(None))
            .values(eliminated_at=now, eliminator_table_player_id=eliminator_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                "Table session changed concurrently",
                details={"tablePlayerId": participant.id},
            )
        set_committed_value(participant, "eliminated_at", now)
        set_committed_value(participant, "eliminator_table_player_id", eliminator_id)
