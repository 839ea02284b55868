#!/usr/bin/env python3
"""Inspect and clear an operator's import lock and run state.

A crashed batch leaves its lock until the TTL expires; this clears it
right away. Usage: ``python clear_stale_lock.py <operator_id>``
"""

import sys

from dbimport.core.config import get_settings
from dbimport.services.import_runner import BatchRunner
from dbimport.services.progress_store import ProgressStore, batch_guard_key, lock_key
from dbimport.db.session import get_fresh_session
from dbimport.utils.redis_client import get_redis

if len(sys.argv) != 2:
    print(__doc__)
    sys.exit(1)

operator_id = sys.argv[1]
settings = get_settings()
store = ProgressStore(get_redis(), ttl=settings.run_state_ttl_seconds)

print(f"Operator: {operator_id}")
for key in (lock_key(operator_id), batch_guard_key(operator_id)):
    holder = store.client.get(key)
    ttl = store.client.ttl(key)
    print(f"  {key}: {holder or '-'}" + (f" (expires in {ttl}s)" if holder else ""))

progress = store.cumulative_stats(operator_id)
print(f"  processed so far: {progress['processed']}")

if not store.is_locked(lock_key(operator_id)) and not store.is_locked(batch_guard_key(operator_id)):
    print("No lock held.")
    sys.exit(0)

response = input("\nCancel this run and release its lock? (yes/no): ")
if response.lower() == "yes":
    session = get_fresh_session()
    try:
        BatchRunner(operator_id, store, session, settings=settings).cancel()
    finally:
        session.close()
    print("Run cancelled, lock released")
else:
    print("Left untouched.")
