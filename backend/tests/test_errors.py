"""Error taxonomy tests."""

import pytest

from centelhas.errors import (
    AppendOnlyViolationError,
    CentelhasError,
    ConflictError,
    ErrorCode,
    InsufficientBalanceError,
    IntegrityFaultError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)


class TestErrorCodes:
    @pytest.mark.parametrize(
        "error, code, recoverable",
        [
            (ValidationError("bad"), ErrorCode.VALIDATION_ERROR, True),
            (InsufficientBalanceError(1, 10, 20), ErrorCode.INSUFFICIENT_BALANCE, True),
            (InvalidStateTransitionError("no"), ErrorCode.INVALID_STATE_TRANSITION, True),
            (ConflictError(), ErrorCode.CONFLICT, True),
            (IntegrityFaultError("drift"), ErrorCode.INTEGRITY_FAULT, False),
            (NotFoundError("Table", 3), ErrorCode.NOT_FOUND, False),
            (AppendOnlyViolationError("ledger_entries"), ErrorCode.APPEND_ONLY_VIOLATION, False),
        ],
    )
    def test_code_and_recoverability(self, error, code, recoverable):
        assert isinstance(error, CentelhasError)
        assert error.code == code.value
        assert error.recoverable is recoverable

    def test_to_dict(self):
        error = InsufficientBalanceError(event_player_id=4, balance=50, required=80)

        assert error.to_dict() == {
            "errorCode": "INSUFFICIENT_BALANCE",
            "errorMessage": "Insufficient balance: 50, required: 80",
            "details": {"eventPlayerId": 4, "balance": 50, "required": 80},
            "recoverable": True,
        }

    def test_state_transition_details_merge(self):
        error = InvalidStateTransitionError(
            "Cannot finish",
            current="draft",
            requested="finished",
            details={"tableId": 9},
        )

        assert error.details == {"current": "draft", "requested": "finished", "tableId": 9}
        assert str(error) == "Cannot finish"

    def test_append_only_without_table(self):
        error = AppendOnlyViolationError()

        assert "an append-only table" in error.message
        assert error.details["table"] is None
