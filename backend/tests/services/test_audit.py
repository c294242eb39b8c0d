"""Audit recorder tests."""

import pytest

from centelhas.errors import ValidationError
from centelhas.services.audit import AuditAction, AuditRecorder

from helpers import ADMIN_ID, open_table


class TestAuditRecorder:
    @pytest.mark.asyncio
    async def test_record_and_query(self, db_session):
        recorder = AuditRecorder(db_session)

        log = await recorder.record(
            ADMIN_ID,
            "event.note",
            "event",
            entity_id=3,
            details={"note": "opening ceremony"},
        )

        assert log.id is not None
        assert log.created_at is not None
        assert log.details_json == {"note": "opening ceremony"}

    @pytest.mark.asyncio
    async def test_admin_required(self, db_session):
        with pytest.raises(ValidationError):
            await AuditRecorder(db_session).record(None, "event.note", "event")

    @pytest.mark.asyncio
    async def test_action_required(self, db_session):
        with pytest.raises(ValidationError):
            await AuditRecorder(db_session).record(ADMIN_ID, "", "event")


class TestPrivilegedOperationsAudited:
    @pytest.mark.asyncio
    async def test_table_lifecycle_trail(self, engine, seeded):
        table, (a, b) = await open_table(engine, seeded, start=False)
        await engine.start_table(table.id, admin_id=ADMIN_ID)
        await engine.rollback_table(table.id, ADMIN_ID, reason="wrong seating")

        logs = await engine.get_audit_log(seeded.event_id)
        actions = [log.action for log in logs]

        assert actions[:2] == [AuditAction.TABLE_ROLLBACK, AuditAction.TABLE_START]
        assert actions[-1] == AuditAction.EVENT_CREATE
        rollback = logs[0]
        assert rollback.entity_type == "table"
        assert rollback.details_json["refunded"] == 200
        assert rollback.details_json["reason"] == "wrong seating"

    @pytest.mark.asyncio
    async def test_withdrawal_audited_with_admin(self, engine, seeded):
        entry = await engine.withdraw_prize(seeded.member_ids[0], 100, admin_id=ADMIN_ID)

        [log] = await engine.get_audit_log(
            seeded.event_id, action=AuditAction.LEDGER_WITHDRAW_PRIZE
        )
        assert log.entity_id == entry.id
        assert log.details_json == {"event_player_id": seeded.member_ids[0], "amount": 100}
