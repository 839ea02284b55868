"""Per-row insert/update/upsert against the live target table."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from sqlalchemy import MetaData, Table, and_, insert, literal, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dbimport.core.errors import MappingValidationError

logger = logging.getLogger(__name__)


class ImportMode(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"


class OutcomeStatus(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class Outcome:
    status: OutcomeStatus
    detail: str = ""


class ReconciliationStore:
    """Writes mapped records into one table, one SAVEPOINT per row.

    The table is reflected through the session's own connection so the
    reflection runs inside the batch transaction. Every value is bound as a
    parameter.
    """

    def __init__(self, session: Session, table_name: str, schema: str | None = None) -> None:
        self.session = session
        self.table = Table(
            table_name, MetaData(), schema=schema, autoload_with=session.connection()
        )

    def _match_clause(self, values: dict[str, Any], key_columns: Iterable[str]):
        return and_(*(self.table.c[column] == values[column] for column in key_columns))

    def record_exists(self, values: dict[str, Any], key_columns: list[str]) -> bool:
        """True iff a row matches every key column; never true without keys."""
        if not key_columns:
            return False
        if any(values.get(column) is None for column in key_columns):
            return False
        stmt = (
            select(literal(1))
            .select_from(self.table)
            .where(self._match_clause(values, key_columns))
            .limit(1)
        )
        return self.session.execute(stmt).first() is not None

    def write(self, values: dict[str, Any], mode: str, key_columns: list[str]) -> Outcome:
        try:
            mode = ImportMode(mode)
        except ValueError:
            return Outcome(OutcomeStatus.FAILED, f"Invalid import mode: {mode}")

        unknown = [column for column in key_columns if column not in self.table.c]
        if unknown:
            return Outcome(OutcomeStatus.FAILED, f"Unknown key column {unknown[0]}")

        if mode is not ImportMode.INSERT:
            for column in key_columns:
                if values.get(column) is None:
                    return Outcome(OutcomeStatus.FAILED, f"Missing key column {column}")

        try:
            with self.session.begin_nested():
                return self._write(values, mode, key_columns)
        except SQLAlchemyError as e:
            detail = str(getattr(e, "orig", None) or e).splitlines()[0]
            logger.warning(f"Row write failed on {self.table.name}: {detail}")
            return Outcome(OutcomeStatus.FAILED, f"Database error: {detail}")

    def _write(self, values: dict[str, Any], mode: ImportMode, key_columns: list[str]) -> Outcome:
        exists = self.record_exists(values, key_columns)

        if mode is ImportMode.INSERT:
            if exists:
                return Outcome(OutcomeStatus.SKIPPED, "Record already exists")
            self.session.execute(insert(self.table).values(values))
            return Outcome(OutcomeStatus.INSERTED)

        if not exists:
            if mode is ImportMode.UPDATE:
                return Outcome(OutcomeStatus.SKIPPED, "Record not found for update")
            self.session.execute(insert(self.table).values(values))
            return Outcome(OutcomeStatus.INSERTED)

        # key columns identify the row and are never overwritten
        changes = {column: value for column, value in values.items() if column not in key_columns}
        if changes:
            self.session.execute(
                update(self.table).where(self._match_clause(values, key_columns)).values(changes)
            )
        return Outcome(OutcomeStatus.UPDATED)


def validate_import_options(mode: str, key_columns: list[str], column_names: list[str]) -> ImportMode:
    """Check mode and key columns against the target table before a run starts."""
    try:
        import_mode = ImportMode(mode)
    except ValueError:
        raise MappingValidationError(f"Invalid import mode: {mode}") from None
    unknown = [column for column in key_columns if column not in column_names]
    if unknown:
        raise MappingValidationError([f'Key column "{column}" does not exist' for column in unknown])
    if import_mode is not ImportMode.INSERT and not key_columns:
        raise MappingValidationError(f"Key columns are required for {import_mode.value} mode")
    return import_mode
