"""Dependencies shared by the import routers."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from dbimport.api.dependencies.db import get_session
from dbimport.core.config import get_settings
from dbimport.core.errors import LockContentionError
from dbimport.services.import_runner import BatchRunner
from dbimport.services.progress_store import ProgressStore, lock_key
from dbimport.services.table_inspector import TableInspector
from dbimport.utils.redis_client import get_redis


def get_operator_id(x_operator_id: str | None = Header(default=None)) -> str:
    """Operator identity; authentication happens in front of this service."""
    operator_id = (x_operator_id or "").strip()
    if not operator_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Operator-Id header",
        )
    return operator_id


def get_progress_store() -> ProgressStore:
    return ProgressStore(get_redis(), ttl=get_settings().run_state_ttl_seconds)


def ensure_run_idle(store: ProgressStore, operator_id: str) -> None:
    """Run configuration is frozen while the run lock is held."""
    if store.is_locked(lock_key(operator_id)):
        raise LockContentionError(
            "An import is in progress. Cancel it before changing the import configuration."
        )


def get_inspector(db: Session = Depends(get_session)) -> TableInspector:
    return TableInspector(db.get_bind(), cache_ttl=get_settings().table_cache_ttl_seconds)


def get_runner(
    operator_id: str = Depends(get_operator_id),
    store: ProgressStore = Depends(get_progress_store),
    db: Session = Depends(get_session),
) -> BatchRunner:
    return BatchRunner(operator_id, store, db)
