"""Player registry and event membership tests."""

from datetime import timedelta

import pytest

from centelhas.errors import InsufficientBalanceError, NotFoundError, ValidationError
from centelhas.models import LedgerSourceType
from centelhas.services.audit import AuditAction, AuditRecorder
from centelhas.services.ledger import LedgerEngine
from centelhas.services.membership import EventMembershipService
from centelhas.services.table_lifecycle import TableLifecycle
from centelhas.services.table_session import TableSessionService
from centelhas.utils.clock import utcnow

from helpers import open_table

ADMIN_ID = 7


async def make_event(service, initial=200, *, ends_at=None, players=("Ana", "Bia")):
    registered = [await service.players.register(name) for name in players]
    event = await service.create_event(
        "Membership Night",
        utcnow() - timedelta(hours=2),
        initial,
        ADMIN_ID,
        ends_at=ends_at,
        player_ids=[p.id for p in registered],
    )
    return event, registered


class TestPlayerRegistry:
    @pytest.mark.asyncio
    async def test_register_normalizes_email(self, db_session):
        service = EventMembershipService(db_session)

        player = await service.players.register("  Ana  ", email=" Ana@Example.COM ")

        assert player.display_name == "Ana"
        assert player.email == "ana@example.com"
        assert (await service.players.find_by_email("ANA@example.com")).id == player.id

    @pytest.mark.asyncio
    async def test_duplicate_email_rejected(self, db_session):
        service = EventMembershipService(db_session)
        await service.players.register("Ana", email="ana@example.com")

        with pytest.raises(ValidationError, match="Email"):
            await service.players.register("Other Ana", email="ana@example.com")

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, db_session):
        service = EventMembershipService(db_session)

        with pytest.raises(ValidationError):
            await service.players.register("   ")

    @pytest.mark.asyncio
    async def test_unknown_player(self, db_session):
        with pytest.raises(NotFoundError):
            await EventMembershipService(db_session).players.get(99)


class TestEventCreation:
    @pytest.mark.asyncio
    async def test_roster_receives_initial_allotment(self, db_session):
        service = EventMembershipService(db_session)

        event, _ = await make_event(service, initial=200)
        members = await service.list_members(event.id)

        assert len(members) == 2
        assert all(m.current_balance == 200 for m in members)
        assert all(m.is_active for m in members)

    @pytest.mark.asyncio
    async def test_zero_allotment_writes_no_entry(self, db_session):
        service = EventMembershipService(db_session)

        event, _ = await make_event(service, initial=0)
        members = await service.list_members(event.id)

        assert members[0].current_balance == 0
        assert await LedgerEngine(db_session).get_entries(members[0].id) == []

    @pytest.mark.asyncio
    async def test_creation_is_audited(self, db_session):
        service = EventMembershipService(db_session)

        event, players = await make_event(service)
        logs = await AuditRecorder(db_session).get_event_log(event.id)

        assert [log.action for log in logs] == [AuditAction.EVENT_CREATE]
        assert logs[0].admin_id == ADMIN_ID
        assert logs[0].details_json["roster"] == [p.id for p in players]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("initial", [-1, 1.5, None])
    async def test_invalid_allotment_rejected(self, db_session, initial):
        service = EventMembershipService(db_session)

        with pytest.raises(ValidationError):
            await service.create_event("Bad", utcnow(), initial, ADMIN_ID)

    @pytest.mark.asyncio
    async def test_end_before_start_rejected(self, db_session):
        service = EventMembershipService(db_session)
        starts_at = utcnow()

        with pytest.raises(ValidationError, match="end"):
            await service.create_event(
                "Backwards", starts_at, 100, ADMIN_ID, ends_at=starts_at - timedelta(days=1)
            )


class TestJoinEvent:
    @pytest.mark.asyncio
    async def test_initial_allotment_exactly_once(self, db_session):
        service = EventMembershipService(db_session)
        event, players = await make_event(service)

        with pytest.raises(ValidationError, match="already joined"):
            await service.join_event(event.id, players[0].id)

        membership = await service.find_membership(event.id, players[0].id)
        initial_entries = await LedgerEngine(db_session).get_entries(
            membership.id, source_type=LedgerSourceType.EVENT_INITIAL_BALANCE
        )
        assert len(initial_entries) == 1
        assert initial_entries[0].source_id == event.id

    @pytest.mark.asyncio
    async def test_join_after_event_ended_rejected(self, db_session):
        service = EventMembershipService(db_session)
        event, _ = await make_event(service, ends_at=utcnow() - timedelta(minutes=1), players=())
        late = await service.players.register("Late")

        with pytest.raises(ValidationError, match="ended"):
            await service.join_event(event.id, late.id)

    @pytest.mark.asyncio
    async def test_join_unknown_event(self, db_session):
        service = EventMembershipService(db_session)
        player = await service.players.register("Ana")

        with pytest.raises(NotFoundError):
            await service.join_event(12345, player.id)


class TestMembershipLedgerOperations:
    @pytest.mark.asyncio
    async def test_purchase_credits_balance(self, db_session):
        service = EventMembershipService(db_session)
        event, _ = await make_event(service)
        member = (await service.list_members(event.id))[0]

        entry = await service.purchase(member.id, 75, source_id=555)

        assert entry.source_type == LedgerSourceType.BANK_PURCHASE
        assert entry.source_id == 555
        assert entry.balance_after == 275

    @pytest.mark.asyncio
    async def test_purchase_rejects_non_positive(self, db_session):
        service = EventMembershipService(db_session)
        event, _ = await make_event(service)
        member = (await service.list_members(event.id))[0]

        with pytest.raises(ValidationError):
            await service.purchase(member.id, 0)

    @pytest.mark.asyncio
    async def test_adjustment_either_sign_and_audited(self, db_session):
        service = EventMembershipService(db_session)
        event, _ = await make_event(service)
        member = (await service.list_members(event.id))[0]

        await service.adjust(member.id, -50, ADMIN_ID, reason="duplicate purchase")
        entry = await service.adjust(member.id, 20, ADMIN_ID)

        assert entry.created_by_admin_id == ADMIN_ID
        assert entry.balance_after == 170
        logs = await AuditRecorder(db_session).get_event_log(
            event.id, action=AuditAction.LEDGER_ADJUST
        )
        assert len(logs) == 2
        assert logs[-1].details_json["reason"] == "duplicate purchase"

    @pytest.mark.asyncio
    async def test_adjustment_cannot_overdraw(self, db_session):
        service = EventMembershipService(db_session)
        event, _ = await make_event(service)
        member = (await service.list_members(event.id))[0]

        with pytest.raises(InsufficientBalanceError):
            await service.adjust(member.id, -201, ADMIN_ID)

    @pytest.mark.asyncio
    async def test_prize_withdrawal_deactivates(self, db_session):
        service = EventMembershipService(db_session)
        event, _ = await make_event(service)
        member = (await service.list_members(event.id))[0]

        entry = await service.withdraw_prize(member.id, 150, admin_id=ADMIN_ID)

        assert entry.delta_centelhas == -150
        assert entry.balance_after == 50
        assert member.is_active is False
        with pytest.raises(ValidationError, match="inactive"):
            await service.purchase(member.id, 10)

    @pytest.mark.asyncio
    async def test_withdrawal_blocked_by_open_stakes(self, db_session):
        service = EventMembershipService(db_session)
        event, players = await make_event(service)
        member = (await service.list_members(event.id))[0]
        lifecycle = TableLifecycle(db_session)
        table = await lifecycle.create_table(event.id, players[0].id)
        await TableSessionService(db_session, lifecycle).join(table.id, member.id, 50, "Atraxa")

        assert await service.has_open_stakes(member.id)
        with pytest.raises(ValidationError, match="open tables"):
            await service.withdraw_prize(member.id, 100)

    @pytest.mark.asyncio
    async def test_withdrawal_allowed_after_leaving_draft_table(self, db_session):
        service = EventMembershipService(db_session)
        event, players = await make_event(service)
        member = (await service.list_members(event.id))[0]
        lifecycle = TableLifecycle(db_session)
        sessions = TableSessionService(db_session, lifecycle)
        table = await lifecycle.create_table(event.id, players[0].id)
        seat = await sessions.join(table.id, member.id, 50, "Atraxa")
        await sessions.leave(table.id, seat.id)

        assert await lifecycle.stakes_in_pot(table.id) == {seat.id: 0}
        assert not await service.has_open_stakes(member.id)
        entry = await service.withdraw_prize(member.id, 100)
        assert entry.balance_after == 100

    @pytest.mark.asyncio
    async def test_withdrawn_membership_cannot_be_reactivated(self, db_session):
        service = EventMembershipService(db_session)
        event, _ = await make_event(service)
        member = (await service.list_members(event.id))[0]
        await service.withdraw_prize(member.id, 100)

        with pytest.raises(ValidationError, match="reactivated"):
            await service.set_active(member.id, True, ADMIN_ID)

        assert member.is_active is False
        assert member.id not in [m.id for m in await service.list_members(event.id, active_only=True)]

    @pytest.mark.asyncio
    async def test_set_active_audited(self, db_session):
        service = EventMembershipService(db_session)
        event, _ = await make_event(service)
        member = (await service.list_members(event.id))[0]

        await service.set_active(member.id, False, ADMIN_ID)
        await service.set_active(member.id, False, ADMIN_ID)
        await service.set_active(member.id, True, ADMIN_ID)

        actions = [log.action for log in await AuditRecorder(db_session).get_event_log(event.id)]
        assert actions == [
            AuditAction.MEMBERSHIP_REACTIVATE,
            AuditAction.MEMBERSHIP_DEACTIVATE,
            AuditAction.EVENT_CREATE,
        ]
        assert await service.list_members(event.id, active_only=True) != []


class TestOpenStakesOnStartedTables:
    @pytest.mark.asyncio
    async def test_eliminated_player_blocked_until_table_closes(self, engine, seeded):
        table, (a, b) = await open_table(engine, seeded)
        await engine.eliminate(table.id, a.id, b.id)

        with pytest.raises(ValidationError, match="open tables"):
            await engine.withdraw_prize(b.event_player_id, 100)

        await engine.scoop(table.id, a.id)
        await engine.finish_table(table.id)
        entry = await engine.withdraw_prize(b.event_player_id, 100)
        assert entry.delta_centelhas == -100
