"""Target-table metadata: table whitelist and column descriptions."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from dbimport.core.errors import MappingValidationError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 3600

# (database url without password, schema, table) -> (expires_at, columns)
_column_cache: dict[tuple[str, str | None, str], tuple[float, list["ColumnInfo"]]] = {}


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    sql_type: str
    nullable: bool
    has_default: bool
    is_key: bool
    is_auto_increment: bool

    @property
    def is_required(self) -> bool:
        """NOT NULL, no default and not generated by the database."""
        return not self.nullable and not self.has_default and not self.is_auto_increment

    def to_dict(self) -> dict:
        return asdict(self)


def _cache_key(engine: Engine, schema: str | None, table: str) -> tuple[str, str | None, str]:
    return (engine.url.render_as_string(hide_password=True), schema, table)


def clear_cache() -> None:
    _column_cache.clear()


class TableInspector:
    """Reads live table structure through SQLAlchemy's inspector."""

    def __init__(self, engine: Engine, schema: str | None = None, cache_ttl: int = DEFAULT_CACHE_TTL) -> None:
        self.engine = engine
        self.schema = schema
        self.cache_ttl = cache_ttl

    def list_tables(self) -> list[str]:
        return sorted(inspect(self.engine).get_table_names(schema=self.schema))

    def validate_table(self, table: str) -> str:
        """Whitelist check against the real tables of the database."""
        if table not in self.list_tables():
            logger.warning(f"Invalid table selected: {table}")
            raise MappingValidationError(
                "Invalid table selected. Table does not exist in database."
            )
        return table

    def get_columns(self, table: str) -> list[ColumnInfo]:
        key = _cache_key(self.engine, self.schema, table)
        cached = _column_cache.get(key)
        if cached and cached[0] > time.monotonic():
            return cached[1]

        try:
            inspector = inspect(self.engine)
            raw_columns = inspector.get_columns(table, schema=self.schema)
            pk = inspector.get_pk_constraint(table, schema=self.schema) or {}
            uniques = inspector.get_unique_constraints(table, schema=self.schema)
        except NoSuchTableError as e:
            raise MappingValidationError(f"Table {table} does not exist") from e
        except SQLAlchemyError as e:
            logger.error(f"Failed to get table structure for {table}: {e}", exc_info=True)
            raise

        pk_columns = set(pk.get("constrained_columns") or [])
        key_columns = set(pk_columns)
        for unique in uniques:
            key_columns.update(unique.get("column_names") or [])

        columns = []
        for raw in raw_columns:
            sql_type = str(raw["type"])
            auto_increment = raw.get("autoincrement") is True or bool(raw.get("identity"))
            if (
                not auto_increment
                and self.engine.dialect.name == "sqlite"
                and pk_columns == {raw["name"]}
                and sql_type.upper() == "INTEGER"
            ):
                # INTEGER PRIMARY KEY is the rowid alias in SQLite
                auto_increment = True
            columns.append(
                ColumnInfo(
                    name=raw["name"],
                    sql_type=sql_type,
                    nullable=bool(raw.get("nullable", True)),
                    has_default=raw.get("default") is not None,
                    is_key=raw["name"] in key_columns,
                    is_auto_increment=auto_increment,
                )
            )

        _column_cache[key] = (time.monotonic() + self.cache_ttl, columns)
        return columns

    def column_names(self, table: str) -> list[str]:
        return [column.name for column in self.get_columns(table)]
