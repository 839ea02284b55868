"""Batch runner: one stateless invocation processes one slice of an import run.

Run configuration, progress and locks live in the :class:`ProgressStore`;
the only other state shared between invocations is the uploaded file.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dbimport.core.config import Settings, get_settings
from dbimport.core.errors import (
    FatalBatchError,
    ImportFileError,
    InsufficientMemoryError,
    LockContentionError,
    MappingValidationError,
    MissingImportDataError,
    ProgressStoreError,
)
from dbimport.db.models.import_log import (
    STATUS_COMPLETED,
    STATUS_COMPLETED_WITH_ERRORS,
    STATUS_FAILED,
)
from dbimport.services.import_logs import write_import_log
from dbimport.services.mapping import ColumnMapping, build_raw_row, map_row, parse_mapping
from dbimport.services.progress_store import (
    ProgressStore,
    batch_guard_key,
    empty_stats,
    lock_key,
)
from dbimport.services.reconciliation import OutcomeStatus, ReconciliationStore
from dbimport.services.row_source import open_row_source
from dbimport.storage.uploads import delete_upload
from dbimport.utils.memory_monitor import check_memory_headroom, log_memory_status

logger = logging.getLogger(__name__)

BATCH_SIZE = 100

# Fields that describe an in-progress run; cleared once the run ends.
RUN_CONFIG_FIELDS = (
    "file",
    "headers",
    "target_table",
    "mapping",
    "import_mode",
    "key_columns",
    "allow_null",
    "dry_run",
    "start_time",
    "total_records",
    "run_id",
)
OPTION_FIELDS = ("import_mode", "key_columns", "allow_null", "dry_run")
COUNTERS = ("processed", "inserted", "updated", "skipped", "failed")


@dataclass
class ImportRun:
    file: dict[str, Any]
    target_table: str
    mapping: ColumnMapping
    headers: list[str] = field(default_factory=list)
    import_mode: str = "insert"
    key_columns: list[str] = field(default_factory=list)
    allow_null: bool = False
    dry_run: bool = False
    start_time: float | None = None
    total_records: int = 0
    run_id: str | None = None

    @property
    def path(self) -> Path:
        return Path(self.file["path"])

    @classmethod
    def from_run_data(cls, data: dict[str, Any]) -> "ImportRun":
        if not data.get("file") or not data.get("mapping") or not data.get("target_table"):
            raise MissingImportDataError()
        if not data["file"].get("path"):
            raise MissingImportDataError()
        try:
            mapping = parse_mapping(data["mapping"])
        except MappingValidationError as e:
            raise MissingImportDataError(f"Stored mapping is invalid: {e}") from e
        return cls(
            file=data["file"],
            target_table=data["target_table"],
            mapping=mapping,
            headers=data.get("headers") or [],
            import_mode=data.get("import_mode") or "insert",
            key_columns=list(data.get("key_columns") or []),
            allow_null=bool(data.get("allow_null", False)),
            dry_run=bool(data.get("dry_run", False)),
            start_time=data.get("start_time"),
            total_records=int(data.get("total_records") or 0),
            run_id=data.get("run_id"),
        )


@dataclass
class BatchResult:
    """Counters are for this batch only; ``totals`` is set once the run completes."""

    batch_index: int
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    completed: bool = False
    messages: list[dict[str, Any]] = field(default_factory=list)
    totals: dict[str, Any] | None = None
    log_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class BatchRunner:
    """Drives an import run for one operator, one batch per call.

    Args:
        operator_id: identity that scopes the lock and all run state.
        store: shared progress & lock store.
        session: database session for the target table and the import log.
        settings: optional override of application settings.
        batch_size: rows per batch.
    """

    def __init__(
        self,
        operator_id: str,
        store: ProgressStore,
        session: Session,
        settings: Settings | None = None,
        batch_size: int = BATCH_SIZE,
    ) -> None:
        self.operator_id = operator_id
        self.store = store
        self.session = session
        self.settings = settings or get_settings()
        self.batch_size = batch_size

    # -- run lifecycle -------------------------------------------------

    def load_run(self) -> ImportRun:
        return ImportRun.from_run_data(self.store.get_run_data(self.operator_id))

    def start(self) -> dict[str, Any]:
        """Mark the start of a run; progress from an earlier attempt is discarded."""
        run = self.load_run()
        if self.store.is_locked(lock_key(self.operator_id)):
            raise LockContentionError()
        start_time = time.time()
        self.store.set_run_data(self.operator_id, "start_time", start_time)
        self.store.set_run_data_if_absent(self.operator_id, "run_id", uuid.uuid4().hex)
        self.store.clear_progress(self.operator_id)
        logger.info(
            f"Import started for {self.operator_id}: {run.file.get('name')} -> "
            f"{run.target_table} ({run.total_records} rows, mode={run.import_mode})"
        )
        return {"start_time": start_time, "total_records": run.total_records}

    def cancel(self) -> None:
        """Abandon the current run. Safe to call with no run in progress."""
        run_data = self.store.get_run_data(self.operator_id)
        file_info = run_data.get("file") or {}
        totals = self.store.cumulative_stats(self.operator_id)
        if totals["processed"] and not run_data.get("dry_run"):
            # committed batches stay in the table; keep a record of them
            self._log_abandoned_run(run_data, totals)
        delete_upload(file_info.get("path"))
        self.store.delete_run_data(self.operator_id, *OPTION_FIELDS, "file", "start_time")
        self.store.clear_progress(self.operator_id)
        self._release_locks()
        logger.info(f"Import cancelled for {self.operator_id}")

    def _log_abandoned_run(self, run_data: dict[str, Any], totals: dict[str, Any]) -> None:
        errors = _error_entries(totals["messages"])
        errors.append({"row": 0, "message": "Import cancelled before completion"})
        start_time = run_data.get("start_time") or time.time()
        write_import_log(
            self.session,
            user_id=self.operator_id,
            file_name=(run_data.get("file") or {}).get("name", ""),
            table_name=run_data.get("target_table") or "",
            stats=totals,
            errors=errors,
            status=STATUS_FAILED,
            duration=time.time() - start_time,
        )

    def status(self) -> dict[str, Any]:
        run_data = self.store.get_run_data(self.operator_id)
        stats = self.store.cumulative_stats(self.operator_id)
        total = int(run_data.get("total_records") or 0)
        if not stats["processed"] and run_data.get("import_stats"):
            # last run finished; its run configuration is already gone
            stats = {**empty_stats(), **run_data["import_stats"]}
            progress = 100.0
        elif total:
            progress = round(min(100.0, stats["processed"] / total * 100), 2)
        else:
            progress = 0.0
        return {
            "is_running": self.store.is_locked(lock_key(self.operator_id)),
            "progress": progress,
            "total_records": total,
            "stats": stats,
        }

    def error_log(self) -> list[dict[str, Any]]:
        """Errors of the last completed run, or of the run in progress."""
        completed = self.store.get_run_data(self.operator_id, "error_log")
        if completed is not None:
            return completed
        return _error_entries(self.store.cumulative_stats(self.operator_id)["messages"])

    # -- batch processing ----------------------------------------------

    def process_batch(self, batch_index: int) -> BatchResult:
        if batch_index < 0:
            raise ValueError("batch_index must be a non-negative integer")

        run = self.load_run()
        self._check_preconditions(run)
        self._acquire_locks(run)
        try:
            return self._process(run, batch_index)
        except Exception as e:
            logger.error(
                f"Fatal error in batch {batch_index} for {self.operator_id}: {e}", exc_info=True
            )
            self._abort(batch_index)
            raise FatalBatchError(f"Import failed: {e}") from e
        finally:
            self.store.release_lock(batch_guard_key(self.operator_id))

    def _check_preconditions(self, run: ImportRun) -> None:
        if not run.path.exists():
            raise ImportFileError("Import file not found. Please upload the file again.")
        if not os.access(run.path, os.R_OK):
            raise ImportFileError("Import file is not readable. Check file permissions.")
        ok, message = check_memory_headroom(self.settings.memory_floor_bytes)
        if not ok:
            raise InsufficientMemoryError(message)

    def _acquire_locks(self, run: ImportRun) -> None:
        run_id = run.run_id or self.store.set_run_data_if_absent(
            self.operator_id, "run_id", uuid.uuid4().hex
        )
        ttl = self.settings.lock_ttl_seconds
        if not self.store.acquire_lock(lock_key(self.operator_id), ttl, token=run_id):
            logger.info(f"Run lock held by another import for {self.operator_id}")
            raise LockContentionError()
        if not self.store.acquire_lock(batch_guard_key(self.operator_id), ttl):
            logger.info(f"Batch already running for {self.operator_id}")
            raise LockContentionError()

    def _process(self, run: ImportRun, batch_index: int) -> BatchResult:
        if run.start_time is None:
            run.start_time = self.store.set_run_data_if_absent(
                self.operator_id, "start_time", time.time()
            )

        offset = batch_index * self.batch_size
        stats = empty_stats()
        written: list[tuple[int, str]] = []
        completed = False

        with open_row_source(
            run.path, run.file.get("extension"), run.file.get("encoding")
        ) as source:
            if not source.seek_to_row(offset):
                completed = True
                logger.info(f"Batch {batch_index} starts past end of file, run complete")
            else:
                store = ReconciliationStore(self.session, run.target_table)
                for i in range(self.batch_size):
                    fields = source.next_row()
                    if fields is None:
                        completed = True
                        break
                    row_number = offset + i + 2
                    values = map_row(build_raw_row(source.headers, fields), run.mapping, run.allow_null)
                    outcome = store.write(values, run.import_mode, run.key_columns)
                    stats["processed"] += 1
                    stats[outcome.status.value] += 1
                    if outcome.status is OutcomeStatus.FAILED:
                        stats["messages"].append(
                            {"type": "error", "row": row_number, "message": outcome.detail}
                        )
                    elif outcome.status is OutcomeStatus.SKIPPED:
                        stats["messages"].append(
                            {"type": "info", "row": row_number, "message": outcome.detail}
                        )
                    else:
                        written.append((row_number, outcome.status.value))

        self._end_transaction(run, stats, written)
        self.store.record_batch(self.operator_id, batch_index, stats)
        logger.info(
            f"Batch {batch_index} for {self.operator_id}: "
            + ", ".join(f"{name}={stats[name]}" for name in COUNTERS)
        )

        result = BatchResult(
            batch_index=batch_index,
            completed=completed,
            messages=stats["messages"],
            **{name: stats[name] for name in COUNTERS},
        )
        if completed:
            result.totals, result.log_id = self._finalize(run)
        else:
            log_memory_status(f"after batch {batch_index}")
        return result

    def _end_transaction(
        self, run: ImportRun, stats: dict[str, Any], written: list[tuple[int, str]]
    ) -> None:
        if run.dry_run:
            self.session.rollback()
            return
        if stats["failed"] and self.settings.abort_batch_on_row_failure:
            self.session.rollback()
            for row_number, status in written:
                stats[status] -= 1
                stats["failed"] += 1
                stats["messages"].append(
                    {"type": "error", "row": row_number, "message": "rolled back"}
                )
            stats["messages"].sort(key=lambda m: m["row"])
            logger.warning(f"Batch rolled back for {self.operator_id}: {len(written)} rows reverted")
            return
        self.session.commit()

    def _finalize(self, run: ImportRun) -> tuple[dict[str, Any], int]:
        totals = self.store.cumulative_stats(self.operator_id)
        errors = _error_entries(totals["messages"])
        status = STATUS_COMPLETED_WITH_ERRORS if totals["failed"] else STATUS_COMPLETED
        log = write_import_log(
            self.session,
            user_id=self.operator_id,
            file_name=run.file.get("name") or run.path.name,
            table_name=run.target_table,
            stats=totals,
            errors=errors,
            status=status,
            duration=time.time() - (run.start_time or time.time()),
        )
        self.store.set_run_data(
            self.operator_id, "import_stats", {name: totals[name] for name in COUNTERS}
        )
        self.store.set_run_data(self.operator_id, "error_log", errors)
        self.store.set_run_data(self.operator_id, "last_log_id", log.id)
        self._cleanup(run)
        logger.info(f"Import completed for {self.operator_id} with status {status}")
        return totals, log.id

    def _abort(self, batch_index: int) -> None:
        """Undo the failed batch and free the run lock.

        Earlier batches stay committed; the file and run configuration are
        kept so the same batch can be retried, or the run cancelled.
        """
        try:
            self.session.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Rollback failed during abort: {e}")

        try:
            self._release_locks()
        except ProgressStoreError as e:
            logger.error(f"Could not release locks after failed batch {batch_index}: {e}")

    def _cleanup(self, run: ImportRun) -> None:
        delete_upload(run.path)
        self._release_locks()
        self.store.delete_run_data(self.operator_id, *RUN_CONFIG_FIELDS)
        self.store.clear_progress(self.operator_id)

    def _release_locks(self) -> None:
        self.store.release_lock(lock_key(self.operator_id))
        self.store.release_lock(batch_guard_key(self.operator_id))


def _error_entries(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {"row": message["row"], "message": message["message"]}
        for message in messages
        if message.get("type") == "error"
    ]
