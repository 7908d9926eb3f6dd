"""Per-tenant status and usage monitoring loops.

A :class:`TenantMonitor` keeps two cancellable :class:`PeriodicTask` threads
per observed tenant.  Ticks never overlap; a failing tick is logged and the
last known value is kept until the next successful one.
"""

from __future__ import annotations

import datetime
import logging
from threading import Event, Lock, RLock, Thread, current_thread
from typing import Callable, Optional

from config_models import MonitoringConfig
from errors import NotFoundError
from extensions import db
from models import Tenant
from utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run *func* every *interval* seconds inside an application context."""

    def __init__(self, name: str, interval: float, func: Callable[[], None], app):
        self.name = name
        self.interval = interval
        self._func = func
        self._app = app
        self._stop = Event()
        self._in_flight = Lock()
        self._thread: Optional[Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not current_thread():
            thread.join(timeout)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()

    def run_once(self) -> bool:
        """Run one tick.  Returns False when the previous tick is still in flight."""
        if not self._in_flight.acquire(blocking=False):
            logger.debug("%s: previous tick still running, skipped", self.name)
            return False
        try:
            with self._app.app_context():
                try:
                    self._func()
                finally:
                    db.session.remove()
        except Exception:
            logger.warning("%s: tick failed; keeping last known value", self.name, exc_info=True)
        finally:
            self._in_flight.release()
        return True


class TenantMonitor:
    """Status and usage observation, keyed by tenant id."""

    def __init__(self, app, config: Optional[MonitoringConfig] = None):
        self._app = app
        self.config = config or MonitoringConfig()
        self._lock = RLock()
        self._tasks: dict[int, tuple[PeriodicTask, PeriodicTask]] = {}
        self._last_status: dict[int, dict] = {}
        self._last_usage: dict[int, dict] = {}

    # -- availability ---------------------------------------------------

    def is_available(self, tenant: Tenant, now: Optional[datetime.datetime] = None) -> bool:
        """A tenant is observable once its creation-protection window has passed."""
        if tenant.created_at is None:
            return True
        moment = ensure_utc(now or utc_now())
        protection = datetime.timedelta(seconds=self.config.creation_protection_seconds)
        return ensure_utc(tenant.created_at) + protection <= moment

    # -- lifecycle -------------------------------------------------------

    def start_observing(self, tenant_id: int, now: Optional[datetime.datetime] = None) -> bool:
        """Start both loops for *tenant_id*.

        Returns False when monitoring is disabled or the tenant is still in
        its creation-protection window.  Raises :class:`NotFoundError` for
        unknown tenants.
        """
        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant {tenant_id} not found.")
        if not self.config.enabled or not self.is_available(tenant, now):
            return False

        with self._lock:
            if tenant_id in self._tasks:
                return True
            status_task = PeriodicTask(
                f"tenant-{tenant_id}-status",
                self.config.status_check_interval,
                lambda: self.check_status(tenant_id),
                self._app,
            )
            usage_task = PeriodicTask(
                f"tenant-{tenant_id}-usage",
                self.config.usage_check_interval,
                lambda: self.check_usage(tenant_id),
                self._app,
            )
            self._tasks[tenant_id] = (status_task, usage_task)

        self._refresh_now(tenant_id)
        status_task.start()
        usage_task.start()
        logger.info("Observing tenant %s", tenant_id)
        return True

    def _refresh_now(self, tenant_id: int) -> None:
        # first values are fetched in the caller's context, the loops take over afterwards
        for check in (self.check_status, self.check_usage):
            try:
                check(tenant_id)
            except Exception:
                logger.warning("Initial check failed for tenant %s", tenant_id, exc_info=True)

    def stop_observing(self, tenant_id: int) -> bool:
        with self._lock:
            tasks = self._tasks.pop(tenant_id, None)
        if tasks is None:
            return False
        for task in tasks:
            task.stop()
        logger.info("Stopped observing tenant %s", tenant_id)
        return True

    def stop_all(self) -> None:
        with self._lock:
            tenant_ids = list(self._tasks)
        for tenant_id in tenant_ids:
            self.stop_observing(tenant_id)

    def is_observing(self, tenant_id: int) -> bool:
        with self._lock:
            return tenant_id in self._tasks

    def tasks_for(self, tenant_id: int) -> Optional[tuple[PeriodicTask, PeriodicTask]]:
        with self._lock:
            return self._tasks.get(tenant_id)

    # -- checks ------------------------------------------------------------

    def check_status(self, tenant_id: int) -> Optional[dict]:
        from services.subscription import get_tenant_status

        try:
            status = get_tenant_status(tenant_id)
        except NotFoundError:
            logger.info("Tenant %s is gone; stopping its monitors", tenant_id)
            self.stop_observing(tenant_id)
            return None
        with self._lock:
            self._last_status[tenant_id] = status
        return status

    def check_usage(self, tenant_id: int) -> Optional[dict]:
        from services.usage import get_tenant_usage

        try:
            snapshot = get_tenant_usage(tenant_id).to_dict()
        except NotFoundError:
            self.stop_observing(tenant_id)
            return None
        with self._lock:
            self._last_usage[tenant_id] = snapshot
        return snapshot

    def last_status(self, tenant_id: int) -> Optional[dict]:
        with self._lock:
            return self._last_status.get(tenant_id)

    def last_usage(self, tenant_id: int) -> Optional[dict]:
        with self._lock:
            return self._last_usage.get(tenant_id)
