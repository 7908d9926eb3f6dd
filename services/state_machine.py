"""Tenant status state machine.

:func:`transition` is the only code path that writes ``Tenant.status``.  Each
call validates the move against :data:`ALLOWED_TRANSITIONS`, applies the
status side effects and appends exactly one :class:`StatusHistoryEntry`.
Nothing is written when validation fails.
"""

from __future__ import annotations

import datetime
import logging
from typing import Iterable, Optional

from errors import StateConflictError, ValidationError
from extensions import db
from models import StatusHistoryEntry, Tenant, TenantStatus, TenantUser
from utils import utc_now

logger = logging.getLogger(__name__)

S = TenantStatus

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    S.ACTIVE.value: {
        S.SUSPENDED.value,
        S.GRACE_PERIOD.value,
        S.READ_ONLY.value,
        S.EMERGENCY_ACCESS.value,
        S.EXPIRED.value,
    },
    S.SUSPENDED.value: {S.ACTIVE.value, S.GRACE_PERIOD.value, S.EXPIRED.value},
    S.GRACE_PERIOD.value: {S.ACTIVE.value, S.EXPIRED.value},
    S.READ_ONLY.value: {S.ACTIVE.value, S.EXPIRED.value},
    S.EMERGENCY_ACCESS.value: {S.ACTIVE.value, S.EXPIRED.value},
    S.EXPIRED.value: {S.ACTIVE.value},
}

REASON_REQUIRED = {S.SUSPENDED.value, S.READ_ONLY.value, S.EMERGENCY_ACCESS.value}

# Target status -> access mode given to the scoped users
USER_SCOPED_ACCESS = {
    S.READ_ONLY.value: "READ_ONLY",
    S.EMERGENCY_ACCESS.value: "EMERGENCY",
}

DEFAULT_REACTIVATION_REASON = "Tenant reactivated"


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def _scoped_users(tenant: Tenant, user_ids: Optional[Iterable[int]]) -> list[TenantUser]:
    ids = sorted({int(uid) for uid in (user_ids or [])})
    if not ids:
        raise ValidationError({"userIds": "At least one user must be selected"})
    users = TenantUser.query.filter(
        TenantUser.tenant_id == tenant.id, TenantUser.id.in_(ids)
    ).all()
    missing = set(ids) - {u.id for u in users}
    if missing:
        raise ValidationError(
            {"userIds": f"Users {sorted(missing)} do not belong to tenant {tenant.id}"}
        )
    return users


def record_initial_status(tenant: Tenant, actor: str) -> StatusHistoryEntry:
    """Open the status ledger of a freshly created tenant."""
    tenant.status = S.ACTIVE.value
    entry = StatusHistoryEntry(
        tenant_id=tenant.id,
        previous_status=None,
        new_status=tenant.status,
        reason="Tenant created",
        changed_by=actor,
    )
    db.session.add(entry)
    return entry


def transition(
    tenant: Tenant,
    target: str,
    actor: str,
    reason: Optional[str] = None,
    user_ids: Optional[Iterable[int]] = None,
    grace_end: Optional[datetime.datetime] = None,
    now: Optional[datetime.datetime] = None,
) -> StatusHistoryEntry:
    """Move *tenant* to *target*.  Does NOT commit.

    Raises :class:`StateConflictError` for moves outside the table (including
    same-state moves) and :class:`ValidationError` for missing reasons or
    user scopes.
    """
    try:
        target = TenantStatus(target).value
    except ValueError:
        raise ValidationError({"status": f"Unknown tenant status: {target}"}) from None
    current = tenant.status
    if not can_transition(current, target):
        raise StateConflictError(
            f"Tenant {tenant.id} cannot move from {current} to {target}."
        )
    reason = (reason or "").strip() or None
    if target in REASON_REQUIRED and not reason:
        raise ValidationError({"reason": f"A reason is required to move a tenant to {target}"})

    scoped: list[TenantUser] = []
    if target in USER_SCOPED_ACCESS:
        scoped = _scoped_users(tenant, user_ids)
    if target == S.GRACE_PERIOD.value and grace_end is None:
        raise ValidationError({"gracePeriod": "Grace period end date is required"})

    moment = now or utc_now()
    if target == S.ACTIVE.value:
        reason = reason or DEFAULT_REACTIVATION_REASON
        tenant.suspension_date = None
        tenant.suspension_reason = None
        tenant.is_in_grace_period = False
        tenant.grace_period_start_date = None
        tenant.grace_period_end_date = None
        for user in tenant.users:
            user.access_mode = "NORMAL"
    elif target == S.SUSPENDED.value:
        tenant.suspension_date = moment
        tenant.suspension_reason = reason
    elif target == S.GRACE_PERIOD.value:
        tenant.is_in_grace_period = True
        tenant.grace_period_start_date = moment
        tenant.grace_period_end_date = grace_end
    elif target == S.EXPIRED.value:
        tenant.is_in_grace_period = False
    for user in scoped:
        user.access_mode = USER_SCOPED_ACCESS[target]

    tenant.status = target
    entry = StatusHistoryEntry(
        tenant_id=tenant.id,
        previous_status=current,
        new_status=target,
        reason=reason,
        changed_by=actor,
        user_ids=",".join(str(u.id) for u in scoped) or None,
        created_at=moment,
    )
    db.session.add(entry)
    logger.info("Tenant %s: %s -> %s (%s) by %s", tenant.id, current, target, reason, actor)
    return entry
