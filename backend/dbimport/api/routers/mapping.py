"""Column mapping, preview, import options and mapping templates."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dbimport.api.dependencies.db import get_session
from dbimport.api.dependencies.importer import (
    ensure_run_idle,
    get_inspector,
    get_operator_id,
    get_progress_store,
)
from dbimport.api.http_errors import to_http_exception
from dbimport.api.schemas.mapping import (
    ImportOptions,
    MappingPayload,
    SuggestRequest,
    TemplateCreate,
    TemplateRead,
    ValidationReport,
)
from dbimport.core.errors import ImporterError, MissingImportDataError
from dbimport.services import mapping_templates
from dbimport.services.mapping import (
    ColumnMapping,
    dump_mapping,
    generate_preview,
    parse_mapping,
    suggest_mapping,
    validate_import_data,
    validate_mapping,
)
from dbimport.services.progress_store import ProgressStore
from dbimport.services.reconciliation import validate_import_options
from dbimport.services.row_source import open_row_source
from dbimport.services.table_inspector import TableInspector

logger = logging.getLogger(__name__)
router = APIRouter()


def _require(run_data: dict[str, Any], *fields: str) -> None:
    missing = [name for name in fields if not run_data.get(name)]
    if missing:
        raise MissingImportDataError(f"Missing required import data: {', '.join(missing)}")


def _preview_rows(run_data: dict[str, Any], mapping: ColumnMapping) -> list[dict[str, Any]]:
    file_info = run_data["file"]
    with open_row_source(
        file_info["path"], file_info.get("extension"), file_info.get("encoding")
    ) as source:
        return generate_preview(source, mapping, allow_null=bool(run_data.get("allow_null", True)))


@router.post("/", summary="Save the column mapping for the current run")
async def save_mapping(
    payload: MappingPayload,
    operator_id: str = Depends(get_operator_id),
    store: ProgressStore = Depends(get_progress_store),
    inspector: TableInspector = Depends(get_inspector),
) -> dict[str, Any]:
    try:
        ensure_run_idle(store, operator_id)
        run_data = store.get_run_data(operator_id)
        _require(run_data, "file", "target_table")
        mapping = parse_mapping(payload.mapping)
        validate_mapping(mapping, inspector.get_columns(run_data["target_table"]))
        store.set_run_data(operator_id, "mapping", dump_mapping(mapping))
    except ImporterError as exc:
        raise to_http_exception(exc) from exc
    logger.info(f"Mapping saved for {operator_id}: {len(mapping)} columns")
    return {"mapping": dump_mapping(mapping)}


@router.post("/suggest", summary="Suggest source headers for each target column")
async def suggest(
    payload: SuggestRequest,
    operator_id: str = Depends(get_operator_id),
    store: ProgressStore = Depends(get_progress_store),
    inspector: TableInspector = Depends(get_inspector),
) -> dict[str, dict[str, str | None]]:
    try:
        run_data = store.get_run_data(operator_id)
        headers = payload.headers if payload.headers is not None else run_data.get("headers")
        table = payload.table or run_data.get("target_table")
        if not headers or not table:
            raise MissingImportDataError()
        inspector.validate_table(table)
        columns = inspector.column_names(table)
    except ImporterError as exc:
        raise to_http_exception(exc) from exc
    return {"suggestions": suggest_mapping(headers, columns)}


@router.get("/preview", summary="First rows of the file as they would be imported")
async def preview(
    operator_id: str = Depends(get_operator_id),
    store: ProgressStore = Depends(get_progress_store),
) -> dict[str, list[dict[str, Any]]]:
    try:
        run_data = store.get_run_data(operator_id)
        _require(run_data, "file", "mapping")
        rows = _preview_rows(run_data, parse_mapping(run_data["mapping"]))
    except ImporterError as exc:
        raise to_http_exception(exc) from exc
    return {"preview": rows}


@router.post("/validate", summary="Check mapping coverage and preview values", response_model=ValidationReport)
async def validate(
    operator_id: str = Depends(get_operator_id),
    store: ProgressStore = Depends(get_progress_store),
    inspector: TableInspector = Depends(get_inspector),
) -> ValidationReport:
    try:
        run_data = store.get_run_data(operator_id)
        _require(run_data, "file", "mapping", "target_table")
        mapping = parse_mapping(run_data["mapping"])
        rows = _preview_rows(run_data, mapping)
        report = validate_import_data(mapping, inspector.get_columns(run_data["target_table"]), rows)
    except ImporterError as exc:
        raise to_http_exception(exc) from exc
    return ValidationReport(errors=report["errors"], warnings=report["warnings"], preview=rows)


@router.post("/options", summary="Set import mode, key columns and null handling")
async def set_options(
    payload: ImportOptions,
    operator_id: str = Depends(get_operator_id),
    store: ProgressStore = Depends(get_progress_store),
    inspector: TableInspector = Depends(get_inspector),
) -> dict[str, Any]:
    try:
        ensure_run_idle(store, operator_id)
        run_data = store.get_run_data(operator_id)
        _require(run_data, "target_table")
        mode = validate_import_options(
            payload.import_mode,
            payload.key_columns,
            inspector.column_names(run_data["target_table"]),
        )
        store.set_run_data(operator_id, "import_mode", mode.value)
        store.set_run_data(operator_id, "key_columns", payload.key_columns)
        store.set_run_data(operator_id, "allow_null", payload.allow_null)
        store.set_run_data(operator_id, "dry_run", payload.dry_run)
    except ImporterError as exc:
        raise to_http_exception(exc) from exc
    return payload.model_dump() | {"import_mode": mode.value}


# -- templates -------------------------------------------------------------


@router.get("/templates", summary="List mapping templates", response_model=list[TemplateRead])
async def list_templates(
    table: str | None = None, db: Session = Depends(get_session)
) -> list[dict[str, Any]]:
    return mapping_templates.list_templates(db, table)


@router.post(
    "/templates",
    summary="Save a mapping template",
    status_code=status.HTTP_201_CREATED,
    response_model=TemplateRead,
)
async def create_template(
    payload: TemplateCreate,
    operator_id: str = Depends(get_operator_id),
    store: ProgressStore = Depends(get_progress_store),
    db: Session = Depends(get_session),
) -> dict[str, Any]:
    try:
        run_data = store.get_run_data(operator_id)
        raw_mapping = payload.mapping if payload.mapping is not None else run_data.get("mapping")
        table = payload.table or run_data.get("target_table")
        if not raw_mapping or not table:
            raise MissingImportDataError("A mapping and a table are required to save a template")
        mapping = parse_mapping(raw_mapping)
        return mapping_templates.save_template(db, payload.name, mapping, table)
    except ImporterError as exc:
        raise to_http_exception(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except SQLAlchemyError as exc:
        logger.error(f"Database error saving template: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save template",
        ) from exc


@router.get("/templates/{name}", summary="Load a mapping template", response_model=TemplateRead)
async def get_template(name: str, db: Session = Depends(get_session)) -> dict[str, Any]:
    template = mapping_templates.load_template(db, name)
    if template is None:
        raise HTTPException(status_code=404, detail="Template not found")
    return template


@router.delete(
    "/templates/{name}",
    summary="Delete a mapping template",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_template(name: str, db: Session = Depends(get_session)) -> Response:
    if not mapping_templates.delete_template(db, name):
        raise HTTPException(status_code=404, detail="Template not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
