"""Endpoints for receiving the file to import."""

from __future__ import annotations

import logging
import os
import uuid

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status

from dbimport.api.dependencies.importer import get_operator_id, get_progress_store
from dbimport.api.http_errors import to_http_exception
from dbimport.api.schemas.upload import SupportedFormats, UploadResult
from dbimport.core.config import get_settings
from dbimport.core.errors import ImporterError, RowSourceError
from dbimport.services.import_runner import RUN_CONFIG_FIELDS
from dbimport.services.progress_store import ProgressStore, lock_key
from dbimport.services.row_source import SUPPORTED_EXTENSIONS, open_row_source
from dbimport.storage.uploads import delete_upload, free_disk_space, save_upload

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/formats", summary="Accepted file types", response_model=SupportedFormats)
async def supported_formats() -> SupportedFormats:
    return SupportedFormats(
        extensions=sorted(SUPPORTED_EXTENSIONS),
        max_upload_size=get_settings().max_upload_size,
    )


@router.post(
    "/",
    summary="Upload a file to import",
    status_code=status.HTTP_201_CREATED,
    response_model=UploadResult,
)
async def upload_file(
    file: UploadFile = File(...),
    operator_id: str = Depends(get_operator_id),
    store: ProgressStore = Depends(get_progress_store),
) -> UploadResult:
    """Store the file, read its headers and start a fresh run configuration.

    Any earlier upload of the same operator is discarded.
    """
    settings = get_settings()
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Filename is required")
    extension = os.path.splitext(file.filename)[1].lstrip(".").lower()
    if extension not in SUPPORTED_EXTENSIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid file type. Allowed: {', '.join(sorted(SUPPORTED_EXTENSIONS))}",
        )

    file.file.seek(0, os.SEEK_END)
    size = file.file.tell()
    if size == 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File is empty")
    if size > settings.max_upload_size:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds maximum upload size of {settings.max_upload_size} bytes",
        )
    if free_disk_space() < size * 2:
        raise HTTPException(
            status_code=status.HTTP_507_INSUFFICIENT_STORAGE,
            detail="Insufficient disk space to store the upload",
        )

    try:
        if store.is_locked(lock_key(operator_id)):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="An import is in progress. Cancel it before uploading a new file.",
            )
        previous = store.get_run_data(operator_id, "file")
    except ImporterError as exc:
        raise to_http_exception(exc) from exc
    if previous:
        delete_upload(previous.get("path"))

    try:
        stored_path = save_upload(file.file, file.filename)
    except OSError as exc:
        logger.error(f"OS error saving uploaded file: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save uploaded file",
        ) from exc
    if stored_path.stat().st_size != size:
        delete_upload(stored_path)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stored file is incomplete",
        )

    try:
        with open_row_source(stored_path, extension) as source:
            headers = list(source.headers)
            total_records = source.count_rows()
            encoding = getattr(source, "encoding", None)
    except RowSourceError as exc:
        delete_upload(stored_path)
        logger.info(f"Rejected upload {file.filename}: {exc.code}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    run_id = uuid.uuid4().hex
    file_info = {
        "name": file.filename,
        "path": str(stored_path),
        "extension": extension,
        "size": size,
        "encoding": encoding,
    }
    try:
        store.delete_run_data(operator_id, *RUN_CONFIG_FIELDS, "import_stats", "error_log")
        store.clear_progress(operator_id)
        store.set_run_data(operator_id, "file", file_info)
        store.set_run_data(operator_id, "headers", headers)
        store.set_run_data(operator_id, "total_records", total_records)
        store.set_run_data(operator_id, "run_id", run_id)
    except ImporterError as exc:
        delete_upload(stored_path)
        raise to_http_exception(exc) from exc

    logger.info(
        f"Upload accepted for {operator_id}: {file.filename} "
        f"({size} bytes, {len(headers)} columns, {total_records} rows)"
    )
    return UploadResult(
        file_name=file.filename,
        extension=extension,
        size=size,
        headers=headers,
        total_records=total_records,
        run_id=run_id,
    )
