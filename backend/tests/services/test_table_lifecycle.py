"""Table lifecycle state machine tests.

draft -> started -> finished | rolled_back | void, draft -> void.
Every illegal transition raises InvalidStateTransitionError and leaves
the table untouched.
"""

import pytest
from sqlalchemy import update

from centelhas.errors import (
    InsufficientBalanceError,
    IntegrityFaultError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from centelhas.models import EventPlayer, LedgerSourceType, TableStatus
from centelhas.services.table_lifecycle import TRANSITIONS, TableLifecycle, can_transition

from helpers import ADMIN_ID, INITIAL_CENTELHAS, open_table


class TestTransitionTable:
    """The static transition map."""

    def test_terminal_states_have_no_exits(self):
        for status in (TableStatus.FINISHED, TableStatus.ROLLED_BACK, TableStatus.VOID):
            assert status.is_terminal
            assert TRANSITIONS[status] == frozenset()

    def test_allowed_transitions(self):
        assert can_transition(TableStatus.DRAFT, TableStatus.STARTED)
        assert can_transition(TableStatus.DRAFT, TableStatus.VOID)
        assert can_transition(TableStatus.STARTED, TableStatus.ROLLED_BACK)
        assert not can_transition(TableStatus.DRAFT, TableStatus.FINISHED)
        assert not can_transition(TableStatus.DRAFT, TableStatus.ROLLED_BACK)
        assert not can_transition(TableStatus.STARTED, TableStatus.DRAFT)


class TestCreateAndStart:
    @pytest.mark.asyncio
    async def test_new_table_is_draft(self, engine, seeded):
        table = await engine.create_table(seeded.event_id, seeded.players[0].id)

        assert table.status == TableStatus.DRAFT
        assert table.bet_locked_at is None
        assert table.started_at is None

    @pytest.mark.asyncio
    async def test_creator_must_be_member(self, engine, seeded):
        outsider = await engine.register_player("Outsider")

        with pytest.raises(ValidationError, match="members"):
            await engine.create_table(seeded.event_id, outsider.id)

    @pytest.mark.asyncio
    async def test_start_requires_locked_bets(self, engine, seeded):
        table, _ = await open_table(engine, seeded, lock=False, start=False)

        with pytest.raises(InvalidStateTransitionError, match="locked"):
            await engine.start_table(table.id)

        assert (await engine.get_table(table.id)).status == TableStatus.DRAFT

    @pytest.mark.asyncio
    async def test_start_requires_two_active_players(self, engine, seeded):
        table, _ = await open_table(engine, seeded, bets=(100,), start=False)

        with pytest.raises(InvalidStateTransitionError, match="Not enough players"):
            await engine.start_table(table.id)

    @pytest.mark.asyncio
    async def test_start_sets_started_at(self, engine, seeded):
        table, _ = await open_table(engine, seeded)

        assert table.status == TableStatus.STARTED
        assert table.started_at is not None
        assert table.is_bet_locked

    @pytest.mark.asyncio
    async def test_lock_bets_only_once(self, engine, seeded):
        table, _ = await open_table(engine, seeded, start=False)

        with pytest.raises(InvalidStateTransitionError, match="already locked"):
            await engine.lock_bets(table.id)

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, engine, seeded):
        table, _ = await open_table(engine, seeded)

        with pytest.raises(InvalidStateTransitionError):
            await engine.start_table(table.id)

    @pytest.mark.asyncio
    async def test_unknown_table(self, engine, seeded):
        with pytest.raises(NotFoundError):
            await engine.start_table(987654)


class TestFinish:
    @pytest.mark.asyncio
    async def test_finish_requires_scoop(self, engine, seeded):
        table, (a, b) = await open_table(engine, seeded)
        await engine.eliminate(table.id, a.id, b.id)

        with pytest.raises(InvalidStateTransitionError, match="scoop"):
            await engine.finish_table(table.id)

    @pytest.mark.asyncio
    async def test_finish_with_two_active_rejected(self, engine, seeded):
        table, _ = await open_table(engine, seeded)

        with pytest.raises(InvalidStateTransitionError):
            await engine.finish_table(table.id)

    @pytest.mark.asyncio
    async def test_finish_draft_rejected(self, engine, seeded):
        table, _ = await open_table(engine, seeded, start=False)

        with pytest.raises(InvalidStateTransitionError):
            await engine.finish_table(table.id)

    @pytest.mark.asyncio
    async def test_full_game_finishes(self, engine, seeded):
        table, (a, b) = await open_table(engine, seeded, bets=(100, 150))
        await engine.eliminate(table.id, a.id, b.id)
        await engine.scoop(table.id, a.id)

        finished = await engine.finish_table(table.id, admin_id=ADMIN_ID)

        assert finished.status == TableStatus.FINISHED
        assert finished.finished_at is not None
        assert await engine.get_balance(seeded.member_ids[0]) == INITIAL_CENTELHAS + 150
        assert await engine.get_balance(seeded.member_ids[1]) == INITIAL_CENTELHAS - 150
        history = await engine.get_table_history(table.id)
        assert sum(e.delta_centelhas for e in history) == 0

    @pytest.mark.asyncio
    async def test_finished_is_terminal(self, engine, seeded):
        table, (a, b) = await open_table(engine, seeded)
        await engine.eliminate(table.id, a.id, b.id)
        await engine.scoop(table.id, a.id)
        await engine.finish_table(table.id)

        with pytest.raises(InvalidStateTransitionError):
            await engine.rollback_table(table.id, ADMIN_ID)
        with pytest.raises(InvalidStateTransitionError):
            await engine.void_table(table.id, ADMIN_ID)
        with pytest.raises(InvalidStateTransitionError):
            await engine.finish_table(table.id)


class TestRollbackAndVoid:
    @pytest.mark.asyncio
    async def test_rollback_refunds_buy_ins(self, engine, seeded):
        table, _ = await open_table(engine, seeded, bets=(100, 200, 300))

        summary = await engine.rollback_table(table.id, ADMIN_ID, reason="misdeal")

        assert summary.status == TableStatus.ROLLED_BACK
        assert summary.total == 600
        assert summary.clawed_back == 0
        assert all(e.source_type == LedgerSourceType.TABLE_ROLLBACK for e in summary.entries)
        for member_id in seeded.member_ids[:3]:
            assert await engine.get_balance(member_id) == INITIAL_CENTELHAS
        rolled_back = await engine.get_table(table.id)
        assert rolled_back.status == TableStatus.ROLLED_BACK
        assert rolled_back.rolled_back_at is not None

    @pytest.mark.asyncio
    async def test_rollback_claws_back_elimination(self, engine, seeded):
        table, (a, b, c) = await open_table(engine, seeded, bets=(100, 200, 300))
        await engine.eliminate(table.id, a.id, c.id)

        summary = await engine.rollback_table(table.id, ADMIN_ID)

        assert summary.clawed_back == 300
        assert summary.refunded == 600
        assert summary.total == 300
        # Refunds come before claw-backs
        deltas = [e.delta_centelhas for e in summary.entries]
        assert deltas == sorted(deltas, key=lambda d: d < 0)
        for member_id in seeded.member_ids[:3]:
            assert await engine.get_balance(member_id) == INITIAL_CENTELHAS
        history = await engine.get_table_history(table.id)
        assert sum(e.delta_centelhas for e in history) == 0

    @pytest.mark.asyncio
    async def test_rollback_after_scoop_clawback_uses_refund(self, engine, seeded):
        """Elimination and scoop credits are clawed back after the refunds."""
        table, (a, b) = await open_table(engine, seeded, bets=(1000, 1000))
        await engine.eliminate(table.id, a.id, b.id)
        await engine.scoop(table.id, a.id)

        await engine.rollback_table(table.id, ADMIN_ID)

        assert await engine.get_balance(seeded.member_ids[0]) == INITIAL_CENTELHAS
        assert await engine.get_balance(seeded.member_ids[1]) == INITIAL_CENTELHAS

    @pytest.mark.asyncio
    async def test_rollback_rejected_when_winnings_spent(self, engine, seeded):
        table, (a, b) = await open_table(engine, seeded, bets=(100, 500))
        await engine.eliminate(table.id, a.id, b.id)
        # Winner spends the elimination credit outside the table
        await engine.adjust(seeded.member_ids[0], -1400, ADMIN_ID, reason="spent")
        history_before = await engine.get_table_history(table.id)

        with pytest.raises(InsufficientBalanceError):
            await engine.rollback_table(table.id, ADMIN_ID)

        assert (await engine.get_table(table.id)).status == TableStatus.STARTED
        assert len(await engine.get_table_history(table.id)) == len(history_before)
        assert await engine.get_balance(seeded.member_ids[1]) == INITIAL_CENTELHAS - 500

    @pytest.mark.asyncio
    async def test_rollback_of_draft_rejected(self, engine, seeded):
        table, _ = await open_table(engine, seeded, start=False)

        with pytest.raises(InvalidStateTransitionError):
            await engine.rollback_table(table.id, ADMIN_ID)

    @pytest.mark.asyncio
    async def test_void_draft_refunds(self, engine, seeded):
        table, _ = await open_table(engine, seeded, bets=(250, 50), lock=False, start=False)

        summary = await engine.void_table(table.id, ADMIN_ID, reason="nobody showed up")

        assert summary.refunded == 300
        voided = await engine.get_table(table.id)
        assert voided.status == TableStatus.VOID
        assert await engine.get_balance(seeded.member_ids[0]) == INITIAL_CENTELHAS

    @pytest.mark.asyncio
    async def test_void_is_audited(self, engine, seeded):
        table, _ = await open_table(engine, seeded)

        await engine.void_table(table.id, ADMIN_ID, reason="dispute")

        logs = await engine.get_audit_log(seeded.event_id, action="table.void")
        assert len(logs) == 1
        assert logs[0].entity_id == table.id
        assert logs[0].details_json["reason"] == "dispute"
        assert logs[0].details_json["refunded"] == 200

    @pytest.mark.asyncio
    async def test_void_twice_rejected(self, engine, seeded):
        table, _ = await open_table(engine, seeded)
        await engine.void_table(table.id, ADMIN_ID)

        with pytest.raises(InvalidStateTransitionError):
            await engine.void_table(table.id, ADMIN_ID)

    @pytest.mark.asyncio
    async def test_reversal_requires_admin(self, engine, seeded):
        table, _ = await open_table(engine, seeded)

        with pytest.raises(ValidationError):
            await engine.rollback_table(table.id, None)

    @pytest.mark.asyncio
    async def test_event_verifies_after_reversal(self, engine, seeded):
        table, (a, b, c) = await open_table(engine, seeded, bets=(100, 100, 100))
        await engine.eliminate(table.id, b.id, a.id)
        await engine.forfeit(table.id, c.id)
        await engine.rollback_table(table.id, ADMIN_ID)

        report = await engine.verify_event(seeded.event_id)

        assert report.is_consistent
        assert report.total_ledger == INITIAL_CENTELHAS * len(seeded.members)


class TestFinishReconciliation:
    @pytest.mark.asyncio
    async def test_drifted_balance_blocks_finish(self, engine, seeded, session_factory):
        table, (a, b) = await open_table(engine, seeded)
        await engine.eliminate(table.id, a.id, b.id)
        await engine.scoop(table.id, a.id)

        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(EventPlayer)
                    .where(EventPlayer.id == seeded.member_ids[0])
                    .values(current_balance=5)
                )

        with pytest.raises(IntegrityFaultError):
            await engine.finish_table(table.id)
        assert (await engine.get_table(table.id)).status == TableStatus.STARTED


class TestPot:
    @pytest.mark.asyncio
    async def test_pot_follows_stakes(self, engine, seeded, db_session):
        table, (a, b, c) = await open_table(engine, seeded, bets=(100, 200, 300))
        await engine.eliminate(table.id, a.id, c.id)
        await engine.forfeit(table.id, b.id)

        lifecycle = TableLifecycle(db_session)

        assert await lifecycle.stakes_in_pot(table.id) == {a.id: 100, b.id: 200, c.id: 0}
        assert await lifecycle.pot_total(table.id) == 300
