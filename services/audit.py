"""Audit logging service."""

from __future__ import annotations

from typing import Optional

from extensions import db
from models import AuditLog
from services.auth import actor_name


def log_action(
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    details: str = "",
    tenant_id: Optional[int] = None,
) -> None:
    """Record an audit log entry.

    NOTE: This does NOT commit; the caller commits together with the change
    being audited.
    """
    db.session.add(
        AuditLog(
            tenant_id=tenant_id,
            actor=actor_name(),
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
        )
    )
