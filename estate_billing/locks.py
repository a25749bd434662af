import logging
import threading
import weakref
from contextlib import contextmanager

from estate_billing import extensions

logger = logging.getLogger(__name__)

# Entries disappear once no caller holds a reference to the lock
_local_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
_registry_lock = threading.Lock()


class TenantLockTimeout(RuntimeError):
    """Raised when the per-tenant critical section cannot be entered in time."""


def _local_lock(key: str) -> threading.Lock:
    with _registry_lock:
        lock = _local_locks.get(key)
        if lock is None:
            lock = _local_locks[key] = threading.Lock()
        return lock


@contextmanager
def tenant_lock(tenant_id: str, timeout: int = 30):
    """
    Serialize subscription writes for one tenant.

    Uses a Redis lock when Redis is configured so that every worker process
    shares the critical section; otherwise a process-local lock is used.
    """
    key = f"billing:tenant-lock:{tenant_id}"
    client = extensions.redis_client

    if client is not None:
        lock = client.lock(key, timeout=timeout, blocking_timeout=timeout)
        if not lock.acquire(blocking=True):
            raise TenantLockTimeout(f"Could not lock tenant {tenant_id}")
        try:
            yield
        finally:
            lock.release()
        return

    lock = _local_lock(key)
    if not lock.acquire(timeout=timeout):
        raise TenantLockTimeout(f"Could not lock tenant {tenant_id}")
    try:
        yield
    finally:
        lock.release()
