"""Player registry and event membership.

Covers who belongs to which event and with what status, plus the ledger
operations that happen outside tables: the initial allotment on join, bank
purchases, administrative adjustments and prize withdrawals.
"""

import logging
from datetime import datetime

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from centelhas.errors import NotFoundError, ValidationError
from centelhas.models.event import Event
from centelhas.models.ledger import LedgerEntry, LedgerSourceType
from centelhas.models.player import EventPlayer, Player
from centelhas.models.table import Table, TablePlayer, TableStatus
from centelhas.services.audit import AuditAction, AuditRecorder
from centelhas.services.ledger import LedgerEngine
from centelhas.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)


class PlayerRegistry:
    """Players that may join events."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def register(self, display_name: str, email: str | None = None) -> Player:
        display_name = (display_name or "").strip()
        if not display_name:
            raise ValidationError("Display name is required")

        if email is not None:
            email = email.strip().lower() or None
        if email and await self.find_by_email(email):
            raise ValidationError("Email already registered", details={"email": email})

        player = Player(display_name=display_name, email=email)
        self.session.add(player)
        await self.session.flush()

        logger.info("Player registered: id=%s name=%s", player.id, display_name)
        return player

    async def get(self, player_id: int) -> Player:
        player = await self.session.get(Player, player_id)
        if player is None:
            raise NotFoundError("Player", player_id)
        return player

    async def find_by_email(self, email: str) -> Player | None:
        result = await self.session.execute(
            select(Player).where(Player.email == email.strip().lower())
        )
        return result.scalar_one_or_none()


class EventMembershipService:
    """Events, their memberships, and membership-level ledger operations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.ledger = LedgerEngine(session)
        self.audit = AuditRecorder(session)
        self.players = PlayerRegistry(session)

    async def create_event(
        self,
        name: str,
        starts_at: datetime,
        initial_centelhas: int,
        admin_id: int,
        *,
        ends_at: datetime | None = None,
        player_ids: list[int] | None = None,
    ) -> Event:
        """Create an event and seed the initial roster.

        Each roster player joins immediately and receives the initial allotment.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Event name is required")
        if isinstance(initial_centelhas, bool) or not isinstance(initial_centelhas, int):
            raise ValidationError("Initial centelhas must be an integer")
        if initial_centelhas < 0:
            raise ValidationError(
                "Initial centelhas cannot be negative",
                details={"initialCentelhas": initial_centelhas},
            )
        if admin_id is None:
            raise ValidationError("Events are created by an admin")

        starts_at = as_utc(starts_at)
        ends_at = as_utc(ends_at)
        if ends_at is not None and ends_at < starts_at:
            raise ValidationError("Event cannot end before it starts")

        event = Event(
            name=name,
            starts_at=starts_at,
            ends_at=ends_at,
            initial_centelhas=initial_centelhas,
            created_by_admin_id=admin_id,
        )
        self.session.add(event)
        await self.session.flush()

        roster = list(dict.fromkeys(player_ids or []))
        await self.audit.record(
            admin_id,
            AuditAction.EVENT_CREATE,
            "event",
            event_id=event.id,
            entity_id=event.id,
            details={
                "name": name,
                "initial_centelhas": initial_centelhas,
                "roster": roster,
            },
        )

        for player_id in roster:
            await self.join_event(event.id, player_id)

        logger.info(
            "Event created: id=%s name=%s initial=%d roster=%d",
            event.id,
            name,
            initial_centelhas,
            len(roster),
        )
        return event

    async def get_event(self, event_id: int) -> Event:
        event = await self.session.get(Event, event_id)
        if event is None:
            raise NotFoundError("Event", event_id)
        return event

    async def join_event(self, event_id: int, player_id: int) -> EventPlayer:
        """Join a player to an event and credit the initial allotment once."""
        event = await self.get_event(event_id)
        await self.players.get(player_id)

        ends_at = as_utc(event.ends_at)
        if ends_at is not None and utcnow() > ends_at:
            raise ValidationError("Event has ended", details={"eventId": event_id})

        if await self.find_membership(event_id, player_id) is not None:
            raise ValidationError(
                "Player already joined this event",
                details={"eventId": event_id, "playerId": player_id},
            )

        membership = EventPlayer(
            event_id=event_id,
            player_id=player_id,
            is_active=True,
            current_balance=0,
        )
        self.session.add(membership)
        await self.session.flush()

        if event.initial_centelhas > 0:
            await self.ledger.append(
                event_id,
                membership.id,
                LedgerSourceType.EVENT_INITIAL_BALANCE,
                event.initial_centelhas,
                source_id=event_id,
                membership=membership,
            )

        logger.info(
            "Player joined event: event=%s player=%s member=%s",
            event_id,
            player_id,
            membership.id,
        )
        return membership

    async def find_membership(self, event_id: int, player_id: int) -> EventPlayer | None:
        result = await self.session.execute(
            select(EventPlayer).where(
                EventPlayer.event_id == event_id,
                EventPlayer.player_id == player_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_membership(self, event_player_id: int, event_id: int | None = None) -> EventPlayer:
        membership = await self.session.get(EventPlayer, event_player_id)
        if membership is None or (event_id is not None and membership.event_id != event_id):
            raise NotFoundError("EventPlayer", event_player_id)
        return membership

    async def list_members(self, event_id: int, *, active_only: bool = False) -> list[EventPlayer]:
        query = (
            select(EventPlayer)
            .where(EventPlayer.event_id == event_id)
            .order_by(EventPlayer.id)
        )
        if active_only:
            query = query.where(EventPlayer.is_active.is_(True))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def has_open_stakes(self, event_player_id: int) -> bool:
        """Whether a rollback or void could still move this membership's centelhas.

        Any session on a started table counts; on a draft table only sessions
        that have not left.
        """
        result = await self.session.execute(
            select(TablePlayer.id)
            .join(Table, Table.id == TablePlayer.table_id)
            .where(
                TablePlayer.event_player_id == event_player_id,
                or_(
                    Table.status == TableStatus.STARTED,
                    and_(Table.status == TableStatus.DRAFT, TablePlayer.eliminated_at.is_(None)),
                ),
            )
            .limit(1)
        )
        return result.first() is not None

    async def set_active(
        self,
        event_player_id: int,
        is_active: bool,
        admin_id: int,
    ) -> EventPlayer:
        membership = await self.get_membership(event_player_id)
        if membership.is_active == is_active:
            return membership
        if is_active and await self.ledger.has_entry(
            membership.id, LedgerSourceType.PRIZE_WITHDRAWAL
        ):
            raise ValidationError(
                "Membership withdrew its prize and cannot be reactivated",
                details={"eventPlayerId": event_player_id},
            )

        membership.is_active = is_active
        await self.session.flush()

        await self.audit.record(
            admin_id,
            AuditAction.MEMBERSHIP_REACTIVATE if is_active else AuditAction.MEMBERSHIP_DEACTIVATE,
            "event_player",
            event_id=membership.event_id,
            entity_id=membership.id,
        )
        return membership

    async def purchase(
        self,
        event_player_id: int,
        amount: int,
        *,
        source_id: int | None = None,
    ) -> LedgerEntry:
        """Credit centelhas bought from the bank (external purchase)."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Purchase amount must be positive", details={"amount": amount})

        membership = await self.get_membership(event_player_id)
        if not membership.is_active:
            raise ValidationError("Membership is inactive", details={"eventPlayerId": event_player_id})

        return await self.ledger.append(
            membership.event_id,
            membership.id,
            LedgerSourceType.BANK_PURCHASE,
            amount,
            source_id=source_id,
        )

    async def adjust(
        self,
        event_player_id: int,
        delta: int,
        admin_id: int,
        *,
        reason: str | None = None,
    ) -> LedgerEntry:
        """Administrative correction of either sign; audited."""
        membership = await self.get_membership(event_player_id)
        entry = await self.ledger.append(
            membership.event_id,
            membership.id,
            LedgerSourceType.ADMIN_ADJUSTMENT,
            delta,
            admin_id=admin_id,
        )
        await self.audit.record(
            admin_id,
            AuditAction.LEDGER_ADJUST,
            "ledger_entry",
            event_id=membership.event_id,
            entity_id=entry.id,
            details={"event_player_id": membership.id, "delta": delta, "reason": reason},
        )
        return entry

    async def withdraw_prize(
        self,
        event_player_id: int,
        amount: int,
        *,
        admin_id: int | None = None,
    ) -> LedgerEntry:
        """Cash out centelhas as a prize. Terminal: the membership is deactivated."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Withdrawal amount must be positive", details={"amount": amount})

        membership = await self.get_membership(event_player_id)
        if not membership.is_active:
            raise ValidationError("Membership is inactive", details={"eventPlayerId": event_player_id})
        if await self.has_open_stakes(membership.id):
            raise ValidationError(
                "Membership still has stakes on open tables",
                details={"eventPlayerId": event_player_id},
            )

        entry = await self.ledger.append(
            membership.event_id,
            membership.id,
            LedgerSourceType.PRIZE_WITHDRAWAL,
            -amount,
            admin_id=admin_id,
        )
        membership.is_active = False
        await self.session.flush()

        if admin_id is not None:
            await self.audit.record(
                admin_id,
                AuditAction.LEDGER_WITHDRAW_PRIZE,
                "ledger_entry",
                event_id=membership.event_id,
                entity_id=entry.id,
                details={"event_player_id": membership.id, "amount": amount},
            )

        logger.info("Prize withdrawn: member=%s amount=%d", membership.id, amount)
        return entry
