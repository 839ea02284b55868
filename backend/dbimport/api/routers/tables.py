"""Target table discovery and selection."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from dbimport.api.dependencies.importer import (
    ensure_run_idle,
    get_inspector,
    get_operator_id,
    get_progress_store,
)
from dbimport.api.http_errors import to_http_exception
from dbimport.api.schemas.mapping import TableSelection
from dbimport.core.errors import ImporterError
from dbimport.services.progress_store import ProgressStore
from dbimport.services.table_inspector import TableInspector

logger = logging.getLogger(__name__)
router = APIRouter()


def _describe(inspector: TableInspector, table: str) -> list[dict[str, Any]]:
    try:
        inspector.validate_table(table)
        return [column.to_dict() for column in inspector.get_columns(table)]
    except ImporterError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        logger.error(f"Database error reading table {table}: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to read table structure",
        ) from exc


@router.get("/", summary="List tables available as import targets")
async def list_tables(inspector: TableInspector = Depends(get_inspector)) -> dict[str, list[str]]:
    try:
        return {"tables": inspector.list_tables()}
    except SQLAlchemyError as exc:
        logger.error(f"Database error listing tables: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list tables",
        ) from exc


@router.get("/{table}/columns", summary="Describe the columns of a table")
async def table_columns(
    table: str, inspector: TableInspector = Depends(get_inspector)
) -> dict[str, Any]:
    return {"table": table, "columns": _describe(inspector, table)}


@router.post("/select", summary="Choose the target table for the current run")
async def select_table(
    payload: TableSelection,
    operator_id: str = Depends(get_operator_id),
    store: ProgressStore = Depends(get_progress_store),
    inspector: TableInspector = Depends(get_inspector),
) -> dict[str, Any]:
    """Remember the table; a mapping for another table is dropped."""
    columns = _describe(inspector, payload.table)
    try:
        ensure_run_idle(store, operator_id)
        if store.get_run_data(operator_id, "target_table") != payload.table:
            store.delete_run_data(operator_id, "mapping", "key_columns")
        store.set_run_data(operator_id, "target_table", payload.table)
    except ImporterError as exc:
        raise to_http_exception(exc) from exc
    logger.info(f"Operator {operator_id} selected table {payload.table}")
    return {"table": payload.table, "columns": columns}
