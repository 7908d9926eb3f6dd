"""Periodic billing tasks."""

from __future__ import annotations

import logging
from typing import Optional

from celery_app import celery
from errors import StateConflictError
from services.renewal import process_expiring_tenants

logger = logging.getLogger(__name__)


@celery.task(name="tasks.process_expiring_tenants_task")
def process_expiring_tenants_task() -> Optional[dict]:
    """Renew, grace or expire every tenant whose plan has run out."""
    try:
        result = process_expiring_tenants()
    except StateConflictError as exc:
        logger.warning("Sweep skipped: %s", exc.message)
        return None
    return result.to_dict()
