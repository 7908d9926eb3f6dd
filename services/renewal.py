"""Renewal / expiry sweep over tenants whose plan has run out."""

from __future__ import annotations

import datetime
import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from errors import StateConflictError
from extensions import commit_session, db
from models import Invoice, InvoiceKind, InvoiceType, Tenant, TenantStatus
from services.assignment import WorkflowMode, apply_field, build_assignment_request, initial_state
from services.grace_period import grace_window, is_grace_eligible
from services.locks import tenant_lock
from services.plan_catalog import plan_terms
from services.state_machine import can_transition, transition
from services.subscription import apply_assignment, billing_config, get_tenant
from utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

SWEEP_ACTOR = "renewal-sweep"
RENEWABLE_METHODS = {"MONTHLY", "YEARLY"}

_sweep_lock = threading.Lock()


@dataclass
class SweepResult:
    processed_count: int = 0
    renewed: int = 0
    graced: int = 0
    expired: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {
            "processedCount": self.processed_count,
            "renewed": self.renewed,
            "graced": self.graced,
            "expired": self.expired,
            "failed": self.failed,
        }


def renewal_key(tenant: Tenant) -> str:
    return f"{tenant.id}:{ensure_utc(tenant.plan_expiry_date).isoformat()}"


def can_auto_renew(tenant: Tenant) -> bool:
    plan = tenant.plan
    return bool(
        tenant.auto_renewal_enabled
        and tenant.status != TenantStatus.SUSPENDED.value
        and tenant.billing_method in RENEWABLE_METHODS
        and plan is not None
        and plan.is_active
        and tenant.payment_method
    )


def _renew(tenant: Tenant, actor: str, now: datetime.datetime) -> Optional[Invoice]:
    """Issue the next period's invoice.  Returns ``None`` if already renewed."""
    key = renewal_key(tenant)
    if Invoice.query.filter_by(renewal_key=key).first():
        return None
    cfg = billing_config()
    tax_rate = tenant.tax_rate if tenant.tax_rate is not None else Decimal(str(cfg.default_tax_rate))
    state = initial_state(WorkflowMode.EXTEND, tax_rate)
    state = apply_field(state, "plan", plan_terms(tenant.plan), now)
    state = apply_field(state, "invoice_type", InvoiceType.STANDARD.value, now)
    state = apply_field(state, "billing_method", tenant.billing_method, now)
    state = apply_field(state, "start_date", ensure_utc(tenant.plan_expiry_date), now)
    if tenant.custom_price is not None:
        state = apply_field(state, "custom_price", tenant.custom_price, now)
    state = apply_field(state, "auto_renewal", True, now)
    state = apply_field(state, "payment_method", tenant.payment_method, now)
    grace = tenant.grace_period
    if grace.mode == "manual":
        state = apply_field(state, "manual_grace_days", grace.days, now)
    request = build_assignment_request(state, tenant.id)
    return apply_assignment(
        tenant, request, tenant.plan, InvoiceKind.RENEWAL.value, actor,
        renewal_key=key, now=now,
    )


def _renew_through(tenant: Tenant, actor: str, now: datetime.datetime) -> int:
    """Renew period after period until the plan runs past *now*.

    One RENEWAL invoice per missed period.  Returns how many were issued.
    """
    issued = 0
    while ensure_utc(tenant.plan_expiry_date) <= now:
        if _renew(tenant, actor, now) is None:
            break
        issued += 1
    return issued


def process_tenant(tenant_id: int, actor: str = SWEEP_ACTOR, now: Optional[datetime.datetime] = None) -> str:
    """Evaluate one expired tenant.

    Returns ``renewed``, ``graced``, ``expired`` or ``skipped``.  Commits.
    A tenant several periods behind is renewed up to the current period in
    one pass.
    """
    moment = ensure_utc(now or utc_now())
    with tenant_lock(tenant_id):
        tenant = Tenant.query.filter_by(id=tenant_id).with_for_update().first()
        if (
            tenant is None
            or tenant.plan_id is None
            or tenant.plan_expiry_date is None
            or ensure_utc(tenant.plan_expiry_date) > moment
            or tenant.status == TenantStatus.EXPIRED.value
        ):
            return "skipped"

        if can_auto_renew(tenant):
            issued = _renew_through(tenant, actor, moment)
            if not issued:
                return "skipped"
            commit_session("auto-renew tenant")
            logger.info(
                "Auto-renewed tenant %s for %d period(s) until %s",
                tenant.id, issued, tenant.plan_expiry_date,
            )
            return "renewed"

        plan_days = tenant.plan.grace_period_days if tenant.plan else 0
        if tenant.status == TenantStatus.GRACE_PERIOD.value:
            end = tenant.grace_period_end_date
            if end is not None and moment < ensure_utc(end):
                return "skipped"
        elif is_grace_eligible(tenant.grace_period, plan_days, tenant.plan_expiry_date, moment):
            window_end = grace_window(tenant.grace_period, plan_days, tenant.plan_expiry_date)
            if not can_transition(tenant.status, TenantStatus.GRACE_PERIOD.value):
                logger.info(
                    "Tenant %s is %s with an open grace window; leaving for a later sweep",
                    tenant.id, tenant.status,
                )
                return "skipped"
            transition(
                tenant, TenantStatus.GRACE_PERIOD.value, actor,
                "Plan expired; grace period started", grace_end=window_end, now=moment,
            )
            commit_session("start grace period")
            return "graced"

        transition(tenant, TenantStatus.EXPIRED.value, actor, "Plan expired", now=moment)
        commit_session("expire tenant")
        return "expired"


def process_expiring_tenants(
    actor: str = SWEEP_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> SweepResult:
    """Renew, grace or expire every tenant whose plan has run out.

    Only one sweep runs at a time per process; a concurrent call raises
    :class:`StateConflictError`.  A failing tenant is logged and counted but
    does not stop the sweep.
    """
    if not _sweep_lock.acquire(blocking=False):
        raise StateConflictError("A renewal sweep is already running.")
    try:
        moment = ensure_utc(now or utc_now())
        # SQLite keeps naive UTC values; compare in the same form
        cutoff = moment.replace(tzinfo=None)
        candidates = [
            tid for (tid,) in db.session.query(Tenant.id)
            .filter(Tenant.plan_id.isnot(None))
            .filter(Tenant.plan_expiry_date <= cutoff)
            .filter(Tenant.status != TenantStatus.EXPIRED.value)
            .order_by(Tenant.id)
            .all()
        ]
        result = SweepResult()
        for tenant_id in candidates:
            try:
                outcome = process_tenant(tenant_id, actor, moment)
            except Exception:
                db.session.rollback()
                logger.exception("Renewal sweep failed for tenant %s", tenant_id)
                result.failed += 1
                continue
            if outcome == "skipped":
                continue
            result.processed_count += 1
            setattr(result, outcome, getattr(result, outcome) + 1)
        logger.info("Renewal sweep finished: %s", result.to_dict())
        return result
    finally:
        _sweep_lock.release()


def auto_renew_tenant(tenant_id: int, actor: str, now: Optional[datetime.datetime] = None) -> Invoice:
    """Renew one tenant on demand, even before its plan has expired."""
    moment = ensure_utc(now or utc_now())
    get_tenant(tenant_id)
    with tenant_lock(tenant_id):
        tenant = Tenant.query.filter_by(id=tenant_id).with_for_update().first()
        if not can_auto_renew(tenant):
            raise StateConflictError(
                f"Tenant {tenant_id} cannot be renewed automatically "
                "(needs auto-renewal, a monthly or yearly plan and a payment method)."
            )
        invoice = _renew(tenant, actor, moment)
        if invoice is None:
            raise StateConflictError(f"Tenant {tenant_id} was already renewed for this period.")
        commit_session("auto-renew tenant")
    logger.info("Manually renewed tenant %s until %s", tenant_id, tenant.plan_expiry_date)
    return invoice
