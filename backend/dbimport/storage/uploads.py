"""Local-disk persistence for uploaded import files."""

from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO

from dbimport.core.config import get_settings

logger = logging.getLogger(__name__)


def uploads_dir() -> Path:
    # Config validator resolves and creates the directory
    return Path(get_settings().uploads_dir).resolve()


def save_upload(file_obj: BinaryIO, original_name: str | None = None) -> Path:
    """Copy the upload under a unique name and return the absolute path."""
    suffix = Path(original_name or "upload.csv").suffix.lower() or ".csv"
    target_path = (uploads_dir() / f"dbimport-{uuid.uuid4()}{suffix}").resolve()
    file_obj.seek(0)
    with target_path.open("wb") as destination:
        shutil.copyfileobj(file_obj, destination)
    logger.info(f"Stored upload {original_name!r} at {target_path}")
    return target_path


def free_disk_space() -> int:
    return shutil.disk_usage(uploads_dir()).free


def delete_upload(uri: str | Path | None) -> None:
    """Remove a stored upload; a file that is already gone is not an error."""
    if not uri:
        return
    path = Path(uri)
    if not path.is_absolute():
        path = path.resolve()
    try:
        path.unlink(missing_ok=True)
        logger.debug(f"Deleted upload {path}")
    except OSError as e:
        logger.warning(f"Could not delete upload {path}: {e}")
