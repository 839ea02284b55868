"""Durable import log records: write, list and export."""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dbimport.db.models.import_log import ImportLog

logger = logging.getLogger(__name__)

MAX_PER_PAGE = 100


def write_import_log(
    db: Session,
    *,
    user_id: str,
    file_name: str,
    table_name: str,
    stats: dict[str, Any],
    errors: list[dict[str, Any]],
    status: str,
    duration: float,
) -> ImportLog:
    """Insert and commit one log record; records are never updated afterwards."""
    log = ImportLog(
        user_id=user_id,
        import_date=datetime.now(timezone.utc),
        file_name=file_name,
        table_name=table_name,
        total_rows=stats.get("processed", 0),
        inserted=stats.get("inserted", 0),
        updated=stats.get("updated", 0),
        skipped=stats.get("skipped", 0),
        failed=stats.get("failed", 0),
        error_log=json.dumps(errors),
        status=status,
        duration=max(0, int(round(duration))),
    )
    db.add(log)
    db.commit()
    db.refresh(log)
    logger.info(
        f"Import log {log.id} written: {file_name} -> {table_name}, status={status}, "
        f"inserted={log.inserted} updated={log.updated} skipped={log.skipped} failed={log.failed}"
    )
    return log


def serialize_log(log: ImportLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "user_id": log.user_id,
        "import_date": log.import_date.isoformat() if log.import_date else None,
        "file_name": log.file_name,
        "table_name": log.table_name,
        "total_rows": log.total_rows,
        "inserted": log.inserted,
        "updated": log.updated,
        "skipped": log.skipped,
        "failed": log.failed,
        "status": log.status,
        "duration": log.duration,
        "error_count": len(parse_error_log(log.error_log)),
    }


def list_logs(db: Session, page: int = 1, per_page: int = 20) -> dict[str, Any]:
    """Newest-first page of log records."""
    page = max(1, page)
    per_page = max(1, min(per_page, MAX_PER_PAGE))
    total = db.scalar(select(func.count()).select_from(ImportLog)) or 0
    logs = db.scalars(
        select(ImportLog)
        .order_by(ImportLog.import_date.desc(), ImportLog.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    ).all()
    return {
        "items": [serialize_log(log) for log in logs],
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": (total + per_page - 1) // per_page,
    }


def parse_error_log(raw: str | None) -> list[dict[str, Any]]:
    if not raw:
        return []
    try:
        entries = json.loads(raw)
    except ValueError:
        logger.warning("Stored error log is not valid JSON")
        return []
    return entries if isinstance(entries, list) else []


def errors_to_csv(errors: list[dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["Row", "Error Message"])
    for entry in errors:
        writer.writerow([entry.get("row", ""), entry.get("message", "")])
    return buffer.getvalue()
