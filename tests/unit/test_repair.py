"""
Tests for the repair state machine and the concrete repairs.

Validates:
  - Checking -> Applying -> Verifying -> Done on success
  - Missing targets fail in Checking without attempting a write
  - Verification catches drift between intent and re-read state
  - Field, enum, text and column repairs against a real SQLite store
"""
from datetime import datetime
from decimal import Decimal
from unittest import mock

import pytest

import dbrepair.repair.operation as operation_module
from dbrepair.domain.models import ReadRequest
from dbrepair.exceptions import (
    InvariantError,
    NotFoundError,
    QueryError,
    ValidationError,
    VerificationMismatch,
)
from dbrepair.repair import (
    EnsureColumnRepair,
    RepairState,
    ReplaceTextRepair,
    SetFieldRepair,
    migrate_enum_value,
    set_active,
)
from dbrepair.monitoring.redaction import REDACTED
from dbrepair.storage.executor import execute
from dbrepair.storage.introspection import column_names

FULL_RUN = [RepairState.CHECKING, RepairState.APPLYING, RepairState.VERIFYING, RepairState.DONE]


def _row(handle, table, **key):
    return execute(handle, ReadRequest(table, filter=key, required=True)).rows[0]


def _ddl(handle, *statements):
    with handle.transaction():
        for statement in statements:
            handle.execute(statement)


@pytest.fixture()
def prices(handle):
    _ddl(
        handle,
        "CREATE TABLE prices (id INTEGER PRIMARY KEY, amount NUMERIC(10, 2), due DATETIME)",
        "INSERT INTO prices (id, amount, due) VALUES (1, 4.25, '2024-01-01 00:00:00.000000')",
    )
    return handle


class TestStateMachine:
    def test_disable_leaked_key(self, handle):
        """Record k1 with isActive=true is disabled and verified."""
        report = set_active("api_keys", {"id": "k1"}, False).run(handle)

        assert report.state == RepairState.DONE
        assert report.before is True
        assert report.after is False
        assert report.count == 1
        assert report.history == FULL_RUN
        assert _row(handle, "api_keys", id="k1")["isActive"] is False

    def test_missing_record_fails_without_applying(self, handle, monkeypatch):
        repair = set_active("api_keys", {"id": "missing"}, False)
        applied = []
        monkeypatch.setattr(repair, "apply", lambda h: applied.append(h) or 0)

        with pytest.raises(NotFoundError):
            repair.run(handle)

        assert repair.report.state == RepairState.FAILED
        assert repair.report.history == [RepairState.CHECKING, RepairState.FAILED]
        assert repair.report.error
        assert applied == []

    def test_already_in_target_state_still_reports_matched_count(self, handle):
        report = set_active("api_keys", {"id": "k3"}, False).run(handle)

        assert report.state == RepairState.DONE
        assert report.count == 1
        assert report.before is False

    def test_disable_then_enable_restores_original_row(self, handle):
        original = _row(handle, "api_keys", id="k2")

        set_active("api_keys", {"id": "k2"}, False).run(handle)
        set_active("api_keys", {"id": "k2"}, True).run(handle)

        assert _row(handle, "api_keys", id="k2") == original

    def test_verification_mismatch_moves_to_failed(self, handle, monkeypatch):
        repair = set_active("api_keys", {"id": "k1"}, False)
        monkeypatch.setattr(repair, "reread", lambda h: {})

        with pytest.raises(VerificationMismatch) as excinfo:
            repair.run(handle)

        assert repair.report.state == RepairState.FAILED
        assert repair.report.history[-2:] == [RepairState.VERIFYING, RepairState.FAILED]
        assert excinfo.value.mismatches == [{"key": ["k1"], "reason": "row disappeared"}]

    def test_verification_detects_other_column_drift(self, handle, monkeypatch):
        repair = set_active("api_keys", {"id": "k1"}, False)
        real_reread = repair.reread

        def drifted(h):
            rows = real_reread(h)
            for row in rows.values():
                row["name"] = "changed concurrently"
            return rows

        monkeypatch.setattr(repair, "reread", drifted)

        with pytest.raises(VerificationMismatch) as excinfo:
            repair.run(handle)
        assert excinfo.value.mismatches[0]["field"] == "name"

    def test_ignored_fields_are_not_verified(self, handle, monkeypatch):
        repair = set_active("api_keys", {"id": "k1"}, False, ignore_fields=("name",))
        real_reread = repair.reread

        def touched(h):
            rows = real_reread(h)
            for row in rows.values():
                row["name"] = "rewritten by trigger"
            return rows

        monkeypatch.setattr(repair, "reread", touched)

        assert repair.run(handle).state == RepairState.DONE

    def test_illegal_transition_raises_invariant_error(self):
        repair = set_active("api_keys", {"id": "k1"}, False)
        with pytest.raises(InvariantError):
            repair.transition(RepairState.VERIFYING)
        assert repair.state == RepairState.CHECKING

    def test_repair_cannot_run_twice(self, handle):
        repair = set_active("api_keys", {"id": "k1"}, False)
        repair.run(handle)
        with pytest.raises(InvariantError):
            repair.run(handle)

    def test_unfiltered_repair_is_rejected(self):
        with pytest.raises(ValidationError):
            SetFieldRepair("api_keys", None, "isActive", False)


class TestSetField:
    def test_multiple_prior_values_are_listed(self, handle):
        report = SetFieldRepair("api_keys", {"provider": ["openai", "gemini"]}, "note", "rotated").run(handle)

        assert report.count == 3
        assert report.before == ["leaked", None, None]
        assert report.after == "rotated"

    def test_string_value_is_coerced_to_column_type(self, handle):
        report = SetFieldRepair("companies", {"id": "2"}, "name", "Globex Corp").run(handle)

        assert report.count == 1
        assert _row(handle, "companies", id=2)["name"] == "Globex Corp"

    def test_table_without_primary_key_is_verified_by_remaining_columns(self, handle):
        report = SetFieldRepair("events", {"kind": "logout"}, "payload", "b").run(handle)

        assert report.state == RepairState.DONE
        assert report.count == 1

    def test_numeric_value_is_verified_as_a_decimal(self, prices):
        report = SetFieldRepair("prices", {"id": "1"}, "amount", "9.50").run(prices)

        assert report.state == RepairState.DONE
        assert report.before == Decimal("4.25")
        assert report.after == Decimal("9.50")
        assert _row(prices, "prices", id=1)["amount"] == Decimal("9.50")

    def test_timestamp_value_is_parsed_from_iso_8601(self, prices):
        report = SetFieldRepair("prices", {"id": "1"}, "due", "2024-05-01T12:30:00").run(prices)

        assert report.state == RepairState.DONE
        assert _row(prices, "prices", id=1)["due"] == datetime(2024, 5, 1, 12, 30)

    def test_unparseable_timestamp_fails_before_writing(self, prices):
        repair = SetFieldRepair("prices", {"id": "1"}, "due", "next tuesday")

        with pytest.raises(ValidationError):
            repair.run(prices)

        assert repair.report.history == [RepairState.CHECKING, RepairState.FAILED]
        assert _row(prices, "prices", id=1)["due"] == datetime(2024, 1, 1)


class TestApplyFailure:
    def test_store_error_while_applying_moves_to_failed(self, handle):
        repair = SetFieldRepair("api_keys", {"id": "k1"}, "name", None)

        with pytest.raises(QueryError):
            repair.run(handle)

        assert repair.report.history == [RepairState.CHECKING, RepairState.APPLYING, RepairState.FAILED]
        assert repair.report.error
        assert _row(handle, "api_keys", id="k1")["name"] == "OpenAI prod"

    def test_failed_row_rolls_back_rows_already_written(self, handle):
        _ddl(
            handle,
            "CREATE TRIGGER companies_locked BEFORE UPDATE ON companies "
            "WHEN OLD.id = 3 BEGIN SELECT RAISE(ABORT, 'company 3 is locked'); END",
        )
        repair = ReplaceTextRepair("companies", "relation", "users[]", "User[]")

        with pytest.raises(QueryError) as excinfo:
            repair.run(handle)

        assert "company 3 is locked" in excinfo.value.describe()
        assert repair.report.history == [RepairState.CHECKING, RepairState.APPLYING, RepairState.FAILED]
        assert _row(handle, "companies", id=1)["relation"] == "users[]"
        assert _row(handle, "companies", id=3)["relation"] == "users[] orders[]"


class TestSecretColumns:
    @pytest.fixture()
    def keyed(self, handle):
        _ddl(handle, 'ALTER TABLE api_keys ADD COLUMN "apiKey" TEXT')
        return handle

    def test_mismatch_on_secret_column_hides_values(self, keyed, monkeypatch):
        repair = SetFieldRepair("api_keys", {"id": "k1"}, "apiKey", "sk-live-new")
        real_reread = repair.reread

        def rotated_elsewhere(h):
            rows = real_reread(h)
            for row in rows.values():
                row["apiKey"] = "sk-live-other"
            return rows

        monkeypatch.setattr(repair, "reread", rotated_elsewhere)

        with pytest.raises(VerificationMismatch) as excinfo:
            repair.run(keyed)

        mismatch = excinfo.value.mismatches[0]
        assert mismatch["field"] == "apiKey"
        assert mismatch["expected"] == mismatch["actual"] == REDACTED
        assert "sk-live" not in repr(excinfo.value.mismatches)

    def test_done_log_hides_values_of_secret_column(self, keyed, monkeypatch):
        logger = mock.MagicMock()
        monkeypatch.setattr(operation_module, "logger", logger)

        report = SetFieldRepair("api_keys", {"id": "k1"}, "apiKey", "sk-live-new").run(keyed)

        done = [c for c in logger.info.call_args_list if c.args[0] == "REPAIR_DONE"]
        assert done[0].kwargs["before"] == REDACTED
        assert done[0].kwargs["after"] == REDACTED
        assert report.after == "sk-live-new"

    def test_done_log_keeps_values_of_ordinary_columns(self, handle, monkeypatch):
        logger = mock.MagicMock()
        monkeypatch.setattr(operation_module, "logger", logger)

        set_active("api_keys", {"id": "k1"}, False).run(handle)

        done = [c for c in logger.info.call_args_list if c.args[0] == "REPAIR_DONE"]
        assert done[0].kwargs["before"] is True
        assert done[0].kwargs["after"] is False


class TestMigrateEnum:
    def test_moves_every_row_holding_the_old_value(self, handle):
        report = migrate_enum_value("companies", "plan", "basic_legacy", "basic").run(handle)

        assert report.state == RepairState.DONE
        assert report.count == 2
        assert report.before == "basic_legacy"
        assert report.after == "basic"
        rows = execute(handle, ReadRequest("companies", filter={"plan": "basic_legacy"})).rows
        assert rows == []

    def test_rerun_is_a_successful_no_op(self, handle):
        migrate_enum_value("companies", "plan", "basic_legacy", "basic").run(handle)

        report = migrate_enum_value("companies", "plan", "basic_legacy", "basic").run(handle)

        assert report.state == RepairState.DONE
        assert report.count == 0
        assert report.history == [RepairState.CHECKING, RepairState.DONE]

    def test_scoped_by_extra_filter(self, handle):
        report = migrate_enum_value("companies", "plan", "basic_legacy", "basic", filter={"id": 1}).run(handle)

        assert report.count == 1
        assert _row(handle, "companies", id=2)["plan"] == "basic_legacy"


class TestReplaceText:
    def test_replaces_substring_row_by_row(self, handle):
        report = ReplaceTextRepair("companies", "relation", "users[]", "User[]").run(handle)

        assert report.state == RepairState.DONE
        assert report.count == 2
        assert report.before == ["users[]", "users[] orders[]"]
        assert report.after == ["User[]", "User[] orders[]"]
        assert _row(handle, "companies", id=3)["relation"] == "User[] orders[]"
        assert _row(handle, "companies", id=2)["relation"] == "orders"

    def test_nothing_to_replace_is_done_with_zero_count(self, handle):
        report = ReplaceTextRepair("companies", "relation", "missing[]", "x").run(handle)

        assert report.state == RepairState.DONE
        assert report.count == 0

    def test_identical_texts_are_rejected(self):
        with pytest.raises(ValidationError):
            ReplaceTextRepair("companies", "relation", "a", "a")


class TestEnsureColumn:
    def test_renames_legacy_column(self, handle):
        repair = EnsureColumnRepair("hr_leave_requests", "userId", legacy_name="employeeId")

        report = repair.run(handle)

        assert report.state == RepairState.DONE
        assert report.before == "legacy:employeeId"
        assert report.after == "present"
        assert report.count == 1
        columns = column_names(handle, "hr_leave_requests")
        assert "userId" in columns
        assert "employeeId" not in columns
        assert _row(handle, "hr_leave_requests", id=1)["userId"] == "u-1"

    def test_adds_missing_column(self, handle):
        report = EnsureColumnRepair("companies", "userId", legacy_name="employeeId").run(handle)

        assert report.before == "missing"
        assert report.count == 1
        assert "userId" in column_names(handle, "companies")
        assert _row(handle, "companies", id=1)["userId"] is None

    def test_present_column_is_a_no_op(self, handle):
        report = EnsureColumnRepair("companies", "name").run(handle)

        assert report.state == RepairState.DONE
        assert report.count == 0
        assert report.history == [RepairState.CHECKING, RepairState.DONE]

    def test_unsupported_column_type_is_rejected(self):
        with pytest.raises(ValidationError):
            EnsureColumnRepair("companies", "userId", column_type="TEXT; DROP TABLE companies")

    def test_missing_table_fails(self, handle):
        repair = EnsureColumnRepair("no_such_table", "userId")
        with pytest.raises(QueryError):
            repair.run(handle)
        assert repair.report.state == RepairState.FAILED
