"""Redis-backed run state, batch progress and import locks.

Every batch call may run in a fresh process, so nothing about a run lives
in memory between calls. All keys are scoped per operator and expire so an
abandoned run cannot grow the store forever.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from redis import Redis
from redis.exceptions import RedisError, WatchError

from dbimport.core.errors import ProgressStoreError

logger = logging.getLogger(__name__)

KEY_PREFIX = "dbimport:"
DEFAULT_TTL = 3600


def lock_key(operator_id: str) -> str:
    return f"{KEY_PREFIX}lock:{operator_id}"


def batch_guard_key(operator_id: str) -> str:
    return f"{KEY_PREFIX}lock:{operator_id}:batch"


def _run_key(operator_id: str) -> str:
    return f"{KEY_PREFIX}run:{operator_id}"


def _progress_key(operator_id: str) -> str:
    return f"{KEY_PREFIX}progress:{operator_id}"


def empty_stats() -> dict[str, Any]:
    return {
        "processed": 0,
        "inserted": 0,
        "updated": 0,
        "skipped": 0,
        "failed": 0,
        "messages": [],
    }


class ProgressStore:
    """Shared TTL'd key-value store used by the batch runner.

    Args:
        client: Redis client created with ``decode_responses=True``.
        ttl: lifetime in seconds of run state and progress entries.
    """

    def __init__(self, client: Redis, ttl: int = DEFAULT_TTL) -> None:
        self.client = client
        self.ttl = ttl

    # -- locks ---------------------------------------------------------

    def acquire_lock(self, key: str, ttl: int, token: str | None = None) -> bool:
        """Atomically take ``key`` unless someone else holds it.

        A plain ``SET NX EX`` does the test-and-set. When ``token`` is given
        and the current holder wrote the same token, the lock is re-entered
        and its TTL refreshed through a WATCH/MULTI compare-and-set.
        """
        value = f"{token or ''}:{int(time.time())}"
        try:
            if self.client.set(key, value, nx=True, ex=ttl):
                logger.debug(f"Lock acquired: {key}")
                return True
            if token is None:
                return False
            return self._reenter_lock(key, value, token, ttl)
        except RedisError as e:
            raise ProgressStoreError(f"Lock store unavailable: {e}") from e

    def _reenter_lock(self, key: str, value: str, token: str, ttl: int) -> bool:
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    current = pipe.get(key)
                    if current is not None and current.rsplit(":", 1)[0] != token:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.set(key, value, ex=ttl)
                    pipe.execute()
                    logger.debug(f"Lock re-entered: {key}")
                    return True
                except WatchError:
                    continue

    def release_lock(self, key: str) -> None:
        try:
            self.client.delete(key)
        except RedisError as e:
            raise ProgressStoreError(f"Lock store unavailable: {e}") from e
        logger.debug(f"Lock released: {key}")

    def is_locked(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except RedisError as e:
            raise ProgressStoreError(f"Lock store unavailable: {e}") from e

    # -- plain keys ----------------------------------------------------

    def get(self, key: str) -> Any | None:
        try:
            raw = self.client.get(key)
        except RedisError as e:
            raise ProgressStoreError(f"Progress store unavailable: {e}") from e
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        try:
            self.client.set(key, json.dumps(value), ex=ttl or self.ttl)
        except RedisError as e:
            raise ProgressStoreError(f"Progress store unavailable: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except RedisError as e:
            raise ProgressStoreError(f"Progress store unavailable: {e}") from e

    # -- run configuration ---------------------------------------------

    def get_run_data(self, operator_id: str, field: str | None = None) -> Any:
        """Return one run field, or the whole run configuration as a dict."""
        key = _run_key(operator_id)
        try:
            if field is not None:
                raw = self.client.hget(key, field)
                return None if raw is None else json.loads(raw)
            raw_map = self.client.hgetall(key)
        except RedisError as e:
            raise ProgressStoreError(f"Progress store unavailable: {e}") from e
        return {name: json.loads(raw) for name, raw in raw_map.items()}

    def set_run_data(self, operator_id: str, field: str, value: Any) -> None:
        """Write one field; ``None`` removes it."""
        key = _run_key(operator_id)
        try:
            if value is None:
                self.client.hdel(key, field)
            else:
                self.client.hset(key, field, json.dumps(value))
            self.client.expire(key, self.ttl)
        except RedisError as e:
            raise ProgressStoreError(f"Progress store unavailable: {e}") from e

    def set_run_data_if_absent(self, operator_id: str, field: str, value: Any) -> Any:
        """Write ``value`` unless the field exists; return the stored value."""
        key = _run_key(operator_id)
        try:
            self.client.hsetnx(key, field, json.dumps(value))
            self.client.expire(key, self.ttl)
            return json.loads(self.client.hget(key, field))
        except RedisError as e:
            raise ProgressStoreError(f"Progress store unavailable: {e}") from e

    def delete_run_data(self, operator_id: str, *fields: str) -> None:
        """Delete the given fields, or the whole run configuration."""
        key = _run_key(operator_id)
        try:
            if fields:
                self.client.hdel(key, *fields)
            else:
                self.client.delete(key)
        except RedisError as e:
            raise ProgressStoreError(f"Progress store unavailable: {e}") from e

    # -- batch progress ------------------------------------------------

    def record_batch(self, operator_id: str, batch_index: int, stats: dict[str, Any]) -> None:
        """Store one batch's stats; re-running a batch replaces its entry."""
        key = _progress_key(operator_id)
        try:
            self.client.hset(key, str(batch_index), json.dumps(stats))
            self.client.expire(key, self.ttl)
        except RedisError as e:
            raise ProgressStoreError(f"Progress store unavailable: {e}") from e

    def cumulative_stats(self, operator_id: str) -> dict[str, Any]:
        """Sum every recorded batch, messages ordered by batch index."""
        try:
            raw_map = self.client.hgetall(_progress_key(operator_id))
        except RedisError as e:
            raise ProgressStoreError(f"Progress store unavailable: {e}") from e

        totals = empty_stats()
        for index in sorted(raw_map, key=int):
            batch = json.loads(raw_map[index])
            for counter in ("processed", "inserted", "updated", "skipped", "failed"):
                totals[counter] += batch.get(counter, 0)
            totals["messages"].extend(batch.get("messages", []))
        return totals

    def clear_progress(self, operator_id: str) -> None:
        try:
            self.client.delete(_progress_key(operator_id))
        except RedisError as e:
            raise ProgressStoreError(f"Progress store unavailable: {e}") from e
