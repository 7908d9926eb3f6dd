"""Tenant subscription operations.

Every mutating operation runs inside :func:`services.locks.tenant_lock`,
loads the tenant row ``with_for_update()`` and commits once at the end, so
a rejected operation leaves neither the tenant nor its invoices half-written.
"""

from __future__ import annotations

import datetime
import logging
import re
from decimal import Decimal
from typing import Iterable, Optional

from flask import current_app, has_app_context

from config_models import BillingConfig
from errors import NotFoundError, PermissionDenied, StateConflictError, ValidationError
from extensions import commit_session, db
from models import (
    PROTECTED_TENANT_ROLES,
    VALID_PAYMENT_METHODS,
    Invoice,
    InvoiceKind,
    StatusHistoryEntry,
    SubscriptionPlan,
    Tenant,
    TenantStatus,
    TenantUser,
)
from services.assignment import (
    AssignmentRequest,
    WorkflowMode,
    build_assignment_request,
    form_state_from_payload,
)
from services.audit import log_action
from services.grace_period import GracePeriod, grace_days, grace_to_dict, grace_window
from services.invoice import create_invoice
from services.locks import tenant_lock
from services.plan_catalog import get_plan, plan_terms
from services.state_machine import record_initial_status, transition
from utils import ensure_utc, to_millis, utc_now

logger = logging.getLogger(__name__)

# Statuses a plan assignment or extension lifts back to ACTIVE
_REVIVED_BY_ASSIGNMENT = {TenantStatus.GRACE_PERIOD.value, TenantStatus.EXPIRED.value}


def billing_config() -> BillingConfig:
    if has_app_context():
        cfg = current_app.config.get("BILLING_CONFIG")
        if cfg is not None:
            return cfg
    return BillingConfig()


# ---------------------------------------------------------------------------
# Tenants and tenant users
# ---------------------------------------------------------------------------

def get_tenant(tenant_id: int) -> Tenant:
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError(f"Tenant {tenant_id} not found.")
    return tenant


def _locked_tenant(tenant_id: int) -> Tenant:
    tenant = Tenant.query.filter_by(id=tenant_id).with_for_update().first()
    if tenant is None:
        raise NotFoundError(f"Tenant {tenant_id} not found.")
    return tenant


def create_tenant(
    name: str,
    actor: str,
    slug: Optional[str] = None,
    grace: Optional[GracePeriod] = None,
    auto_renewal: bool = True,
    payment_method: Optional[str] = None,
) -> Tenant:
    """Create a tenant in ACTIVE status without a plan."""
    name = (name or "").strip()
    if not name:
        raise ValidationError({"name": "Tenant name is required"})
    slug = slug or re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    if Tenant.query.filter_by(slug=slug).first():
        raise ValidationError({"slug": f"Tenant slug '{slug}' already exists"})
    if payment_method and payment_method not in VALID_PAYMENT_METHODS:
        raise ValidationError({"paymentMethod": f"Unknown payment method: {payment_method}"})

    tenant = Tenant(
        name=name,
        slug=slug,
        auto_renewal_enabled=auto_renewal,
        payment_method=payment_method,
    )
    if grace is not None:
        tenant.grace_period = grace
    db.session.add(tenant)
    db.session.flush()
    record_initial_status(tenant, actor)
    log_action("create_tenant", "tenant", tenant.id, f"Created tenant {name}", tenant_id=tenant.id)
    commit_session("create tenant")
    logger.info("Created tenant %s (%s)", tenant.id, slug)
    return tenant


def add_tenant_user(tenant_id: int, email: str, role: str = "TENANT_USER") -> TenantUser:
    tenant = get_tenant(tenant_id)
    email = (email or "").strip().lower()
    if not email:
        raise ValidationError({"email": "E-mail is required"})
    if TenantUser.query.filter_by(tenant_id=tenant.id, email=email).first():
        raise ValidationError({"email": f"{email} already belongs to tenant {tenant.id}"})
    user = TenantUser(tenant_id=tenant.id, email=email, role=(role or "TENANT_USER").upper())
    db.session.add(user)
    commit_session("add tenant user")
    return user


def _tenant_user(tenant: Tenant, user_id: int) -> TenantUser:
    user = db.session.get(TenantUser, user_id)
    if user is None or user.tenant_id != tenant.id:
        raise NotFoundError(f"User {user_id} not found in tenant {tenant.id}.")
    return user


def _guard_protected(user: TenantUser) -> None:
    if user.role in PROTECTED_TENANT_ROLES:
        raise PermissionDenied(
            f"User {user.email} is the tenant's administrator and cannot be suspended or reactivated."
        )


def suspend_tenant_user(tenant_id: int, user_id: int, reason: str, actor: str) -> TenantUser:
    with tenant_lock(tenant_id):
        tenant = _locked_tenant(tenant_id)
        user = _tenant_user(tenant, user_id)
        _guard_protected(user)
        if not (reason or "").strip():
            raise ValidationError({"reason": "A reason is required to suspend a user"})
        if user.status == "SUSPENDED":
            raise StateConflictError(f"User {user.email} is already suspended.")
        user.status = "SUSPENDED"
        log_action("suspend_user", "tenant_user", user.id, reason, tenant_id=tenant.id)
        commit_session("suspend tenant user")
    logger.info("Suspended user %s of tenant %s by %s", user.id, tenant_id, actor)
    return user


def reactivate_tenant_user(tenant_id: int, user_id: int, actor: str, reason: Optional[str] = None) -> TenantUser:
    with tenant_lock(tenant_id):
        tenant = _locked_tenant(tenant_id)
        user = _tenant_user(tenant, user_id)
        _guard_protected(user)
        if user.status != "SUSPENDED":
            raise StateConflictError(f"User {user.email} is not suspended.")
        user.status = "ACTIVE"
        log_action("reactivate_user", "tenant_user", user.id, reason or "", tenant_id=tenant.id)
        commit_session("reactivate tenant user")
    logger.info("Reactivated user %s of tenant %s by %s", user.id, tenant_id, actor)
    return user


# ---------------------------------------------------------------------------
# Plan assignment / extension
# ---------------------------------------------------------------------------

def apply_assignment(
    tenant: Tenant,
    request: AssignmentRequest,
    plan: SubscriptionPlan,
    kind: str,
    actor: str,
    renewal_key: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> Invoice:
    """Write an accepted request to the tenant and issue its invoice.

    Caller holds the tenant lock and commits.
    """
    moment = now or utc_now()
    cfg = billing_config()
    invoice = create_invoice(
        request, tenant, kind, actor,
        currency=plan.currency,
        renewal_key=renewal_key,
        due_days=cfg.invoice_due_days,
        now=moment,
    )

    same_plan = tenant.plan_id == plan.id
    tenant.plan_id = plan.id
    if kind == InvoiceKind.ASSIGNMENT.value or not same_plan or tenant.plan_start_date is None:
        tenant.plan_start_date = request.start_date
    tenant.plan_expiry_date = request.end_date
    tenant.next_billing_date = request.end_date if request.auto_renewal else None
    if request.pricing is not None:
        tenant.current_plan_price = request.pricing.base_price
    elif request.custom_price is not None:
        tenant.current_plan_price = request.custom_price
    tenant.currency = plan.currency
    tenant.billing_method = request.billing_method
    tenant.custom_price = request.custom_price
    tenant.tax_rate = request.tax_rate
    tenant.auto_renewal_enabled = request.auto_renewal
    tenant.grace_period = request.grace
    if request.payment_method:
        tenant.payment_method = request.payment_method

    if tenant.status in _REVIVED_BY_ASSIGNMENT:
        reasons = {
            InvoiceKind.ASSIGNMENT.value: "Plan assigned",
            InvoiceKind.EXTENSION.value: "Plan extended",
            InvoiceKind.RENEWAL.value: "Plan renewed",
        }
        transition(tenant, TenantStatus.ACTIVE.value, actor, reasons.get(kind), now=moment)

    log_action(
        kind.lower(), "tenant", tenant.id,
        f"Plan {plan.name} until {request.end_date.isoformat()} (invoice {invoice.invoice_number})",
        tenant_id=tenant.id,
    )
    return invoice


def _submit(
    tenant_id: int,
    payload: dict,
    actor: str,
    mode: WorkflowMode,
    receipt_handle: Optional[str],
    now: Optional[datetime.datetime],
) -> tuple[Invoice, Tenant]:
    cfg = billing_config()
    with tenant_lock(tenant_id):
        tenant = _locked_tenant(tenant_id)
        anchor = None
        if mode == WorkflowMode.EXTEND:
            if tenant.plan_id is None:
                raise StateConflictError(f"Tenant {tenant_id} has no plan to extend.")
            anchor = ensure_utc(tenant.plan_expiry_date)
        plan_id = payload.get("planId")
        if plan_id in (None, "") and mode == WorkflowMode.EXTEND:
            plan_id = tenant.plan_id
        plan = None
        if plan_id not in (None, ""):
            plan = get_plan(plan_id)
            if not plan.is_active:
                raise ValidationError({"planId": f"Plan {plan.name} is not active"})

        state = form_state_from_payload(
            payload,
            plan_terms(plan) if plan else None,
            mode=mode,
            default_tax_rate=Decimal(str(cfg.default_tax_rate)),
            anchor=anchor,
            receipt_handle=receipt_handle,
            now=now,
        )
        request = build_assignment_request(state, tenant.id)
        kind = InvoiceKind.ASSIGNMENT if mode == WorkflowMode.ASSIGN else InvoiceKind.EXTENSION
        invoice = apply_assignment(tenant, request, plan, kind.value, actor, now=now)
        commit_session(f"{mode.value.lower()} plan")
    return invoice, tenant


def assign_plan(
    tenant_id: int,
    payload: dict,
    actor: str,
    receipt_handle: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> tuple[Invoice, Tenant]:
    """Assign a plan to a tenant; returns the new invoice and the updated tenant."""
    return _submit(tenant_id, payload, actor, WorkflowMode.ASSIGN, receipt_handle, now)


def extend_plan(
    tenant_id: int,
    payload: dict,
    actor: str,
    receipt_handle: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> tuple[Invoice, Tenant]:
    """Extend the tenant's current plan from its expiry (or now, if already past)."""
    return _submit(tenant_id, payload, actor, WorkflowMode.EXTEND, receipt_handle, now)


def change_plan(
    tenant_id: int,
    new_plan_id: int,
    reason: str,
    actor: str,
    payment_reference: Optional[str] = None,
) -> Tenant:
    """Switch the tenant to another plan within its current window."""
    if not (reason or "").strip():
        raise ValidationError({"reason": "A reason is required to change the plan"})
    with tenant_lock(tenant_id):
        tenant = _locked_tenant(tenant_id)
        if tenant.plan_id is None:
            raise StateConflictError(f"Tenant {tenant_id} has no plan to change; assign one first.")
        plan = get_plan(new_plan_id)
        if not plan.is_active:
            raise ValidationError({"planId": f"Plan {plan.name} is not active"})
        if plan.id == tenant.plan_id:
            raise StateConflictError(f"Tenant {tenant_id} is already on plan {plan.name}.")

        old_name = tenant.plan.name if tenant.plan else tenant.plan_id
        tenant.plan_id = plan.id
        tenant.currency = plan.currency
        if tenant.billing_method == "YEARLY":
            tenant.current_plan_price = plan.price_yearly
            tenant.custom_price = None
        elif tenant.billing_method == "MONTHLY":
            tenant.current_plan_price = plan.price_monthly
            tenant.custom_price = None
        tenant.plan_change_reason = reason
        details = f"{old_name} -> {plan.name}: {reason}"
        if payment_reference:
            details += f" (payment {payment_reference})"
        log_action("change_plan", "tenant", tenant.id, details, tenant_id=tenant.id)
        commit_session("change plan")
    logger.info("Tenant %s changed plan to %s by %s", tenant_id, plan.slug, actor)
    return tenant


# ---------------------------------------------------------------------------
# Status operations
# ---------------------------------------------------------------------------

def _transition_locked(
    tenant_id: int,
    target: str,
    actor: str,
    reason: Optional[str] = None,
    user_ids: Optional[Iterable[int]] = None,
    grace_end: Optional[datetime.datetime] = None,
    now: Optional[datetime.datetime] = None,
) -> StatusHistoryEntry:
    with tenant_lock(tenant_id):
        tenant = _locked_tenant(tenant_id)
        entry = transition(
            tenant, target, actor, reason,
            user_ids=user_ids, grace_end=grace_end, now=now,
        )
        commit_session(f"move tenant to {target}")
    return entry


def suspend_tenant(tenant_id: int, reason: str, actor: str) -> StatusHistoryEntry:
    return _transition_locked(tenant_id, TenantStatus.SUSPENDED.value, actor, reason)


def reactivate_tenant(tenant_id: int, actor: str, reason: Optional[str] = None) -> StatusHistoryEntry:
    return _transition_locked(tenant_id, TenantStatus.ACTIVE.value, actor, reason)


def set_read_only(tenant_id: int, reason: str, user_ids: Iterable[int], actor: str) -> StatusHistoryEntry:
    return _transition_locked(tenant_id, TenantStatus.READ_ONLY.value, actor, reason, user_ids)


def set_emergency_access(
    tenant_id: int, reason: str, user_ids: Iterable[int], actor: str
) -> StatusHistoryEntry:
    return _transition_locked(tenant_id, TenantStatus.EMERGENCY_ACCESS.value, actor, reason, user_ids)


def activate_grace_period(
    tenant_id: int,
    actor: str,
    reason: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> StatusHistoryEntry:
    """Put the tenant into its configured grace window right away."""
    moment = now or utc_now()
    tenant = get_tenant(tenant_id)
    plan_days = tenant.plan.grace_period_days if tenant.plan else billing_config().default_grace_period_days
    if grace_days(tenant.grace_period, plan_days) <= 0:
        raise ValidationError({"gracePeriod": "Tenant has no grace period configured"})
    anchor = moment
    if tenant.plan_expiry_date and ensure_utc(tenant.plan_expiry_date) < moment:
        anchor = ensure_utc(tenant.plan_expiry_date)
    window_end = grace_window(tenant.grace_period, plan_days, anchor)
    if window_end <= moment:
        raise StateConflictError(f"Tenant {tenant_id}'s grace window has already closed.")
    return _transition_locked(
        tenant_id, TenantStatus.GRACE_PERIOD.value, actor,
        reason or "Grace period granted", grace_end=window_end, now=moment,
    )


def update_auto_renewal(tenant_id: int, enabled: bool, actor: str) -> Tenant:
    with tenant_lock(tenant_id):
        tenant = _locked_tenant(tenant_id)
        tenant.auto_renewal_enabled = bool(enabled)
        tenant.next_billing_date = tenant.plan_expiry_date if enabled else None
        log_action(
            "auto_renewal", "tenant", tenant.id,
            "enabled" if enabled else "disabled", tenant_id=tenant.id,
        )
        commit_session("update auto-renewal")
    return tenant


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

def get_tenant_status(tenant_id: int, now: Optional[datetime.datetime] = None) -> dict:
    tenant = get_tenant(tenant_id)
    moment = now or utc_now()
    days_left = None
    if tenant.plan_expiry_date:
        days_left = (ensure_utc(tenant.plan_expiry_date) - moment).days
    result = {
        "tenantId": tenant.id,
        "status": tenant.status,
        "checkedAt": to_millis(moment),
        "planId": tenant.plan_id,
        "planName": tenant.plan.name if tenant.plan else None,
        "planExpiryDate": to_millis(tenant.plan_expiry_date),
        "daysUntilExpiry": days_left,
        "autoRenewalEnabled": bool(tenant.auto_renewal_enabled),
        "isInGracePeriod": bool(tenant.is_in_grace_period),
        "gracePeriodEndDate": to_millis(tenant.grace_period_end_date),
    }
    result.update(grace_to_dict(tenant.grace_period))
    return result


def get_status_history(tenant_id: int) -> list[StatusHistoryEntry]:
    get_tenant(tenant_id)
    return (
        StatusHistoryEntry.query.filter_by(tenant_id=tenant_id)
        .order_by(StatusHistoryEntry.created_at.asc(), StatusHistoryEntry.id.asc())
        .all()
    )
