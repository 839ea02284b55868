"""Run control: start, per-batch trigger, status, cancel and async driver."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.exc import SQLAlchemyError

from dbimport.api.dependencies.importer import get_operator_id, get_runner
from dbimport.api.http_errors import to_http_exception
from dbimport.api.schemas.imports import (
    AsyncRunResponse,
    BatchRequest,
    BatchResponse,
    RunStatus,
    StartResponse,
)
from dbimport.core.errors import ImporterError
from dbimport.services.import_logs import errors_to_csv
from dbimport.services.import_runner import BatchRunner
from dbimport.workers.tasks.import_batches import process_import_batch

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/start", summary="Mark the start of the import run", response_model=StartResponse)
async def start_import(runner: BatchRunner = Depends(get_runner)) -> dict[str, Any]:
    try:
        return runner.start()
    except ImporterError as exc:
        raise to_http_exception(exc) from exc


@router.post("/batch", summary="Process one batch of rows", response_model=BatchResponse)
async def process_batch(
    payload: BatchRequest, runner: BatchRunner = Depends(get_runner)
) -> dict[str, Any]:
    """Run batch ``batch_index``; call again with the next index until ``completed``."""
    try:
        return runner.process_batch(payload.batch_index).to_dict()
    except ImporterError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        logger.error(f"Database error processing batch: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database error while processing batch",
        ) from exc


@router.get("/status", summary="Progress of the current run", response_model=RunStatus)
async def import_status(runner: BatchRunner = Depends(get_runner)) -> dict[str, Any]:
    try:
        return runner.status()
    except ImporterError as exc:
        raise to_http_exception(exc) from exc


@router.post("/cancel", summary="Cancel the current run")
async def cancel_import(runner: BatchRunner = Depends(get_runner)) -> dict[str, Any]:
    try:
        runner.cancel()
    except ImporterError as exc:
        raise to_http_exception(exc) from exc
    return {"success": True, "message": "Import cancelled"}


@router.get("/error-log", summary="Download the error log of the last run as CSV")
async def download_error_log(runner: BatchRunner = Depends(get_runner)) -> Response:
    try:
        errors = runner.error_log()
    except ImporterError as exc:
        raise to_http_exception(exc) from exc
    return Response(
        content=errors_to_csv(errors),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="import-errors.csv"'},
    )


@router.post(
    "/run-async",
    summary="Process the whole run in the background",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=AsyncRunResponse,
)
async def run_async(
    operator_id: str = Depends(get_operator_id),
    runner: BatchRunner = Depends(get_runner),
) -> AsyncRunResponse:
    """Start the run and hand the batch chain to the Celery worker."""
    try:
        runner.start()
    except ImporterError as exc:
        raise to_http_exception(exc) from exc
    try:
        result = process_import_batch.apply_async(args=(operator_id, 0), queue="imports")
    except Exception as exc:
        logger.error(f"Error enqueueing import task: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start import process",
        ) from exc
    logger.info(f"Queued background import for {operator_id}: task {result.id}")
    return AsyncRunResponse(task_id=result.id)
