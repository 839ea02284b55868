"""Import history."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dbimport.api.dependencies.db import get_session
from dbimport.db.models.import_log import ImportLog
from dbimport.services.import_logs import MAX_PER_PAGE, errors_to_csv, list_logs, parse_error_log

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", summary="List import logs, newest first")
async def get_logs(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=MAX_PER_PAGE),
    db: Session = Depends(get_session),
) -> dict[str, Any]:
    try:
        return list_logs(db, page=page, per_page=per_page)
    except SQLAlchemyError as exc:
        logger.error(f"Database error listing import logs: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve import logs",
        ) from exc


@router.get("/{log_id}/errors.csv", summary="Export the errors of one import as CSV")
async def export_errors(log_id: int, db: Session = Depends(get_session)) -> Response:
    log = db.get(ImportLog, log_id)
    if log is None:
        raise HTTPException(status_code=404, detail="Import log not found")
    return Response(
        content=errors_to_csv(parse_error_log(log.error_log)),
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="import-{log_id}-errors.csv"'
        },
    )
