"""Background driver that runs an import one batch per task."""

from __future__ import annotations

import logging
from typing import Any

from dbimport.core.config import get_settings
from dbimport.core.errors import (
    FatalBatchError,
    InsufficientMemoryError,
    LockContentionError,
    PreconditionError,
)
from dbimport.db.session import get_fresh_session
from dbimport.services.import_runner import BatchRunner
from dbimport.services.progress_store import ProgressStore
from dbimport.utils.redis_client import get_redis
from dbimport.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

RETRY_COUNTDOWN = 30
MAX_RETRIES = 20


def enqueue_next(operator_id: str, batch_index: int) -> None:
    process_import_batch.apply_async(args=(operator_id, batch_index), queue="imports")


@celery_app.task(
    bind=True,
    name="dbimport.workers.tasks.process_import_batch",
    max_retries=MAX_RETRIES,
)
def process_import_batch(self, operator_id: str, batch_index: int) -> dict[str, Any]:
    """Process one batch and queue the next until the run completes.

    Lock contention, memory pressure and failed batches are retried later;
    any other precondition failure (cancelled run, file gone) ends the chain.
    """
    settings = get_settings()
    session = get_fresh_session()
    store = ProgressStore(get_redis(), ttl=settings.run_state_ttl_seconds)
    runner = BatchRunner(operator_id, store, session, settings=settings)
    try:
        result = runner.process_batch(batch_index)
    except (LockContentionError, InsufficientMemoryError, FatalBatchError) as exc:
        logger.info(f"Batch {batch_index} for {operator_id} deferred: {exc}")
        raise self.retry(exc=exc, countdown=RETRY_COUNTDOWN)
    except PreconditionError as exc:
        logger.warning(f"Import chain for {operator_id} stopped at batch {batch_index}: {exc}")
        return {"batch_index": batch_index, "stopped": True, "error": str(exc)}
    finally:
        session.close()

    if not result.completed:
        enqueue_next(operator_id, batch_index + 1)
    return result.to_dict()
