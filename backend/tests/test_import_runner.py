import json
import math
from unittest import mock

import pytest
from sqlalchemy import func, select, text

from conftest import BASIC_MAPPING, OPERATOR, contacts_csv
from dbimport.core.config import get_settings
from dbimport.core.errors import (
    FatalBatchError,
    ImportFileError,
    InsufficientMemoryError,
    LockContentionError,
    MissingImportDataError,
)
from dbimport.db.models.import_log import ImportLog
from dbimport.services.import_runner import BatchRunner
from dbimport.services.progress_store import ProgressStore, batch_guard_key, lock_key
from dbimport.services.reconciliation import ReconciliationStore


def _contacts(session):
    return session.execute(text("SELECT name, email, city FROM contacts ORDER BY id")).all()


def _run_until_complete(runner, limit=50):
    calls = []
    for index in range(limit):
        result = runner.process_batch(index)
        calls.append(result)
        if result.completed:
            return calls
    raise AssertionError("import never completed")


def test_three_row_file_imports_in_one_batch(store, session, write_file, configure_run):
    path = write_file(
        "people.csv",
        "id,name,email\n1,Ada,ADA@Example.com\n2,Bob,Bob@EXAMPLE.com\n3,Cy,cy@example.COM\n",
    )
    configure_run(path, BASIC_MAPPING, import_mode="insert", key_columns=["id"])

    result = BatchRunner(OPERATOR, store, session).process_batch(0)

    assert result.processed == 3
    assert result.inserted == 3
    assert result.completed is True
    assert result.totals["processed"] == 3
    assert [row.email for row in _contacts(session)] == [
        "ada@example.com",
        "bob@example.com",
        "cy@example.com",
    ]


def test_completion_writes_log_and_cleans_up(store, session, write_file, configure_run):
    path = write_file("people.csv", contacts_csv(3))
    configure_run(path, BASIC_MAPPING)

    result = BatchRunner(OPERATOR, store, session).process_batch(0)

    log = session.get(ImportLog, result.log_id)
    assert log.status == "completed"
    assert (log.total_rows, log.inserted, log.failed) == (3, 3, 0)
    assert log.file_name == "people.csv"
    assert log.table_name == "contacts"
    assert json.loads(log.error_log) == []
    assert not path.exists()
    assert not store.is_locked(lock_key(OPERATOR))
    assert not store.is_locked(batch_guard_key(OPERATOR))
    run_data = store.get_run_data(OPERATOR)
    assert "mapping" not in run_data and "file" not in run_data
    assert run_data["import_stats"]["inserted"] == 3
    assert run_data["last_log_id"] == log.id


def test_seek_past_end_completes_immediately(store, session, write_file, configure_run):
    path = write_file("people.csv", contacts_csv(3))
    configure_run(path, BASIC_MAPPING)

    result = BatchRunner(OPERATOR, store, session).process_batch(1)

    assert result.processed == 0
    assert result.completed is True
    assert _contacts(session) == []


@pytest.mark.parametrize("rows", [250, 200, 99, 1])
def test_batches_needed_to_complete(store, session, write_file, configure_run, rows):
    path = write_file("people.csv", contacts_csv(rows))
    configure_run(path, BASIC_MAPPING, total_records=rows)

    calls = _run_until_complete(BatchRunner(OPERATOR, store, session))

    expected = math.ceil(rows / 100) + (1 if rows % 100 == 0 else 0)
    assert len(calls) == expected
    assert sum(call.processed for call in calls) == rows
    assert calls[-1].totals["processed"] == rows
    assert len(_contacts(session)) == rows


def test_lock_is_held_between_batches_and_released_at_end(store, session, write_file, configure_run):
    path = write_file("people.csv", contacts_csv(5))
    configure_run(path, BASIC_MAPPING)
    runner = BatchRunner(OPERATOR, store, session, batch_size=2)

    first = runner.process_batch(0)

    assert first.completed is False
    assert first.totals is None
    assert store.is_locked(lock_key(OPERATOR))
    assert not store.is_locked(batch_guard_key(OPERATOR))
    assert runner.status()["is_running"] is True

    runner.process_batch(1)
    last = runner.process_batch(2)

    assert last.completed is True
    assert not store.is_locked(lock_key(OPERATOR))


def test_rerunning_a_batch_in_insert_mode_skips_existing_rows(store, session, write_file, configure_run):
    path = write_file("people.csv", contacts_csv(3))
    configure_run(path, BASIC_MAPPING, import_mode="insert", key_columns=["email"])
    runner = BatchRunner(OPERATOR, store, session, batch_size=2)

    first = runner.process_batch(0)
    again = runner.process_batch(0)
    last = runner.process_batch(1)

    assert (first.inserted, first.skipped) == (2, 0)
    assert (again.inserted, again.skipped) == (0, 2)
    assert [m["message"] for m in again.messages] == ["Record already exists"] * 2
    assert last.totals["processed"] == 3
    assert len(_contacts(session)) == 3


@pytest.mark.parametrize(
    "mode, forbidden",
    [("insert", "updated"), ("update", "inserted"), ("upsert", "skipped")],
)
def test_modes_never_produce_the_wrong_outcome(store, session, write_file, configure_run, mode, forbidden):
    session.execute(
        text("INSERT INTO contacts (name, email) VALUES ('Old', 'person2@example.com')")
    )
    session.commit()
    path = write_file("people.csv", contacts_csv(4) + "9,No Email,\n")
    configure_run(path, BASIC_MAPPING, import_mode=mode, key_columns=["email"])

    result = BatchRunner(OPERATOR, store, session).process_batch(0)

    assert result.processed == 5
    assert getattr(result, forbidden) == 0
    if mode == "upsert":
        assert result.inserted + result.updated + result.failed == 5


def test_update_mode_reports_missing_key_with_row_number(store, session, write_file, configure_run):
    path = write_file("people.csv", "id,name,email\n1,Ann,\n")
    mapping = {"name": {"source_field": "name"}, "email": {"source_field": "email", "allow_null": True}}
    configure_run(path, mapping, import_mode="update", key_columns=["email"], allow_null=True)

    result = BatchRunner(OPERATOR, store, session).process_batch(0)

    assert result.failed == 1
    assert result.messages == [{"type": "error", "row": 2, "message": "Missing key column email"}]
    log = session.get(ImportLog, result.log_id)
    assert log.status == "completed_with_errors"
    assert json.loads(log.error_log) == [{"row": 2, "message": "Missing key column email"}]


def test_absent_source_field_gives_empty_string(store, session, write_file, configure_run):
    path = write_file("people.csv", contacts_csv(1))
    mapping = dict(BASIC_MAPPING, city={"source_field": "town"})
    configure_run(path, mapping)

    result = BatchRunner(OPERATOR, store, session).process_batch(0)

    assert result.inserted == 1
    assert _contacts(session)[0].city == ""


def test_absent_source_field_fails_not_null_column(store, session, write_file, configure_run):
    path = write_file("people.csv", contacts_csv(1))
    mapping = {"name": {"source_field": "full_name", "allow_null": True}}
    configure_run(path, mapping, allow_null=True)

    result = BatchRunner(OPERATOR, store, session).process_batch(0)

    assert result.failed == 1
    assert result.messages[0]["message"].startswith("Database error:")


def test_dry_run_rolls_back(store, session, write_file, configure_run):
    path = write_file("people.csv", contacts_csv(3))
    configure_run(path, BASIC_MAPPING, dry_run=True)

    result = BatchRunner(OPERATOR, store, session).process_batch(0)

    assert result.inserted == 3
    assert _contacts(session) == []
    assert session.scalar(select(ImportLog.status)) == "completed"


def test_abort_policy_rolls_back_whole_batch(store, session, write_file, configure_run):
    path = write_file(
        "people.csv", "id,name,email\n1,Ann,a@example.com\n2,Dup,a@example.com\n"
    )
    configure_run(path, BASIC_MAPPING)
    settings = get_settings().model_copy(update={"abort_batch_on_row_failure": True})

    result = BatchRunner(OPERATOR, store, session, settings=settings).process_batch(0)

    assert (result.inserted, result.failed) == (0, 2)
    assert {"type": "error", "row": 2, "message": "rolled back"} in result.messages
    assert _contacts(session) == []


def test_missing_run_data_takes_no_lock(store, session):
    with pytest.raises(MissingImportDataError, match="Missing required import data"):
        BatchRunner(OPERATOR, store, session).process_batch(0)
    assert not store.is_locked(lock_key(OPERATOR))


def test_missing_file_is_a_precondition_error(store, session, tmp_path, configure_run, write_file):
    path = write_file("people.csv", contacts_csv(1))
    configure_run(path, BASIC_MAPPING)
    path.unlink()

    with pytest.raises(ImportFileError):
        BatchRunner(OPERATOR, store, session).process_batch(0)
    assert not store.is_locked(lock_key(OPERATOR))


def test_insufficient_memory_leaves_state_untouched(store, session, write_file, configure_run):
    path = write_file("people.csv", contacts_csv(3))
    configure_run(path, BASIC_MAPPING)

    with mock.patch(
        "dbimport.services.import_runner.check_memory_headroom",
        return_value=(False, "Insufficient memory available. Required: 32.00MB, Available: 1.00MB."),
    ):
        with pytest.raises(InsufficientMemoryError):
            BatchRunner(OPERATOR, store, session).process_batch(0)

    assert not store.is_locked(lock_key(OPERATOR))
    assert path.exists()
    assert store.get_run_data(OPERATOR, "mapping") == BASIC_MAPPING


def test_lock_held_by_another_run_is_contention(store, session, write_file, configure_run, redis_client):
    path = write_file("people.csv", contacts_csv(3))
    configure_run(path, BASIC_MAPPING)
    store.set_run_data(OPERATOR, "run_id", "current-run")
    ProgressStore(redis_client).acquire_lock(lock_key(OPERATOR), 60, token="older-run")

    with pytest.raises(LockContentionError, match="already in progress"):
        BatchRunner(OPERATOR, store, session).process_batch(0)

    assert path.exists()
    assert store.cumulative_stats(OPERATOR)["processed"] == 0


def test_concurrent_batch_of_same_run_is_contention(store, session, write_file, configure_run):
    path = write_file("people.csv", contacts_csv(3))
    configure_run(path, BASIC_MAPPING)
    store.acquire_lock(batch_guard_key(OPERATOR), 60)

    with pytest.raises(LockContentionError):
        BatchRunner(OPERATOR, store, session).process_batch(0)


def test_fatal_error_releases_lock_and_keeps_run_resumable(store, session, write_file, configure_run):
    path = write_file("people.csv", contacts_csv(5))
    configure_run(path, BASIC_MAPPING)
    runner = BatchRunner(OPERATOR, store, session, batch_size=2)
    runner.process_batch(0)

    with mock.patch.object(ReconciliationStore, "write", side_effect=RuntimeError("connection lost")):
        with pytest.raises(FatalBatchError, match="connection lost"):
            runner.process_batch(1)

    assert not store.is_locked(lock_key(OPERATOR))
    assert not store.is_locked(batch_guard_key(OPERATOR))
    assert path.exists()
    assert store.get_run_data(OPERATOR, "mapping") == BASIC_MAPPING
    assert session.scalar(select(func.count()).select_from(ImportLog)) == 0
    assert session.execute(text("SELECT COUNT(*) FROM contacts")).scalar() == 2

    retried = runner.process_batch(1)
    assert retried.inserted == 2
    assert store.cumulative_stats(OPERATOR)["inserted"] == 4


def test_cancel_is_idempotent(store, session, write_file, configure_run):
    runner = BatchRunner(OPERATOR, store, session)
    runner.cancel()

    path = write_file("people.csv", contacts_csv(5))
    configure_run(path, BASIC_MAPPING, import_mode="upsert", key_columns=["email"])
    BatchRunner(OPERATOR, store, session, batch_size=2).process_batch(0)

    runner.cancel()
    runner.cancel()

    assert not path.exists()
    assert not store.is_locked(lock_key(OPERATOR))
    run_data = store.get_run_data(OPERATOR)
    for field in ("import_mode", "key_columns", "allow_null", "file"):
        assert field not in run_data


def test_start_and_status(store, session, write_file, configure_run):
    path = write_file("people.csv", contacts_csv(4))
    configure_run(path, BASIC_MAPPING, total_records=4)
    runner = BatchRunner(OPERATOR, store, session, batch_size=2)

    started = runner.start()
    runner.process_batch(0)
    status = runner.status()

    assert started["total_records"] == 4
    assert status["progress"] == 50.0
    assert status["stats"]["inserted"] == 2

    runner.process_batch(1)
    runner.process_batch(2)
    status = runner.status()
    assert status["is_running"] is False
    assert status["stats"]["inserted"] == 4
    assert status["progress"] == 100.0


def test_cancelling_a_partial_run_records_a_failed_log(store, session, write_file, configure_run):
    path = write_file("people.csv", contacts_csv(5))
    configure_run(path, BASIC_MAPPING)
    runner = BatchRunner(OPERATOR, store, session, batch_size=2)
    runner.process_batch(0)

    runner.cancel()

    log = session.scalars(select(ImportLog)).one()
    assert (log.status, log.inserted, log.file_name) == ("failed", 2, "people.csv")
    assert json.loads(log.error_log)[-1]["message"] == "Import cancelled before completion"
    assert session.execute(text("SELECT COUNT(*) FROM contacts")).scalar() == 2
