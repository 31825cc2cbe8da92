"""
Unit tests for the error taxonomy and driver error translation.
"""
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from core.database.connection import translate_db_error
from core.utils.exceptions import (
    BalanceGuardViolation,
    ConflictError,
    ErrorKind,
    FailedPreconditionError,
    InternalError,
    NotFoundError,
    create_error_context,
    get_retry_delay,
    is_retryable_error,
    to_error_payload,
)


class TestErrorTaxonomy:

    def test_reason_defaults_to_kind(self):
        error = NotFoundError("Account not found")
        assert error.kind == ErrorKind.NOT_FOUND
        assert error.reason == "not_found"

    def test_only_conflicts_are_retryable(self):
        assert is_retryable_error(ConflictError("race"))
        assert not is_retryable_error(FailedPreconditionError("no", reason="insufficient_funds"))
        assert not is_retryable_error(ValueError("boom"))

    def test_conflict_stops_being_retryable_after_max_retries(self):
        error = ConflictError("race", retry_count=3, max_retries=3)
        assert not error.retryable

    def test_retry_delay_is_exponential(self):
        assert get_retry_delay(ConflictError("race", retry_count=0), base_delay=0.5) == 0.5
        assert get_retry_delay(ConflictError("race", retry_count=3), base_delay=0.5) == 4.0

    def test_guard_violation_is_a_failed_precondition(self):
        error = BalanceGuardViolation("negative", reason="negative_cash_balance",
                                      entity="account", entity_id="acc-1")
        assert isinstance(error, FailedPreconditionError)
        assert error.kind == ErrorKind.FAILED_PRECONDITION

        context = create_error_context(error, "apply_fill", {"account_id": "acc-1"})
        assert context["error_kind"] == "failed_precondition"
        assert context["entity"] == "account"
        assert context["retryable"] is False
        assert context["account_id"] == "acc-1"

    def test_error_payload_for_transport(self):
        payload = to_error_payload(FailedPreconditionError(
            "Insufficient buying power", reason="insufficient_buying_power",
            details={"required": "500.00"}))
        assert payload == {
            "kind": "failed_precondition",
            "reason": "insufficient_buying_power",
            "message": "Insufficient buying power",
            "details": {"required": "500.00"},
        }


class _PgError(Exception):
    def __init__(self, message, sqlstate):
        super().__init__(message)
        self.sqlstate = sqlstate


class TestDriverErrorTranslation:

    def test_stale_version_is_conflict(self):
        translated = translate_db_error(StaleDataError("version mismatch"), "place_order")
        assert isinstance(translated, ConflictError)
        assert translated.reason == "stale_version"

    def test_sqlite_busy_is_conflict(self):
        error = OperationalError("UPDATE accounts", {}, Exception("database is locked"))
        assert isinstance(translate_db_error(error), ConflictError)

    @pytest.mark.parametrize("sqlstate", ["40001", "40P01"])
    def test_serialization_failure_and_deadlock_are_conflicts(self, sqlstate):
        error = OperationalError("UPDATE accounts", {}, _PgError("could not serialize", sqlstate))
        translated = translate_db_error(error)
        assert isinstance(translated, ConflictError)
        assert translated.details["sqlstate"] == sqlstate

    def test_check_constraint_is_guard_violation(self):
        error = IntegrityError("UPDATE accounts", {},
                               Exception("CHECK constraint failed: ck_accounts_cash_non_negative"))
        assert isinstance(translate_db_error(error), BalanceGuardViolation)

    def test_unique_violation_is_conflict(self):
        error = IntegrityError("INSERT INTO executions", {},
                               Exception("UNIQUE constraint failed: executions.fill_id"))
        translated = translate_db_error(error)
        assert isinstance(translated, ConflictError)
        assert translated.reason == "duplicate_key"

    def test_everything_else_is_internal(self):
        error = OperationalError("SELECT 1", {}, Exception("connection refused"))
        translated = translate_db_error(error, "get_account")
        assert isinstance(translated, InternalError)
        assert translated.operation == "get_account"
