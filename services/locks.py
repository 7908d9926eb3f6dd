"""Per-tenant critical sections."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Optional

from flask import current_app, has_app_context

from errors import StateConflictError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

_registry_lock = threading.Lock()
_tenant_locks: dict[int, threading.RLock] = {}


def _lock_for(tenant_id: int) -> threading.RLock:
    with _registry_lock:
        lock = _tenant_locks.get(tenant_id)
        if lock is None:
            lock = threading.RLock()
            _tenant_locks[tenant_id] = lock
        return lock


def _configured_timeout() -> float:
    if has_app_context():
        billing_cfg = current_app.config.get("BILLING_CONFIG")
        if billing_cfg is not None:
            return billing_cfg.tenant_lock_timeout
    return DEFAULT_TIMEOUT


@contextmanager
def tenant_lock(tenant_id: int, timeout: Optional[float] = None):
    """Hold the mutation lock of *tenant_id* for the duration of the block.

    Raises :class:`StateConflictError` when another operation keeps the
    tenant busy for longer than *timeout* seconds.
    """
    wait = _configured_timeout() if timeout is None else timeout
    lock = _lock_for(tenant_id)
    if not lock.acquire(timeout=wait):
        logger.warning("Tenant %s is busy; gave up after %.1fs", tenant_id, wait)
        raise StateConflictError(
            f"Another operation is in progress for tenant {tenant_id}; try again later."
        )
    try:
        yield
    finally:
        lock.release()
