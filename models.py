"""SQLAlchemy models, enumerations and role-permission mapping."""

from __future__ import annotations

from enum import Enum

from extensions import db
from services.grace_period import AutoGracePeriod, GracePeriod, ManualGracePeriod
from utils import utc_now

# ---------------------------------------------------------------------------
# Role / Permission mapping
# ---------------------------------------------------------------------------

ROLE_PERMISSIONS: dict[str, set[str]] = {
    "SUPER_ADMIN": {"manage_all"},
    "BILLING_ADMIN": {"manage_billing", "view_billing"},
    "SUPPORT": {"view_billing"},
}

# Tenant-side roles that user-scoped suspend/reactivate actions may never target.
PROTECTED_TENANT_ROLES = {"TENANT_ADMIN"}


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class TenantStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    GRACE_PERIOD = "GRACE_PERIOD"
    READ_ONLY = "READ_ONLY"
    EMERGENCY_ACCESS = "EMERGENCY_ACCESS"
    EXPIRED = "EXPIRED"


class InvoiceType(str, Enum):
    STANDARD = "STANDARD"
    PREPAID = "PREPAID"


class BillingMethod(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"
    CUSTOM = "CUSTOM"


class BillingType(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"
    PRORATA = "PRORATA"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    PARTIAL = "PARTIAL"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"
    CREDIT = "CREDIT"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class InvoiceKind(str, Enum):
    ASSIGNMENT = "ASSIGNMENT"
    EXTENSION = "EXTENSION"
    RENEWAL = "RENEWAL"
    GENERATED = "GENERATED"


VALID_PLAN_CATEGORIES = {"BASIC", "PREMIUM", "ENTERPRISE"}
VALID_PAYMENT_METHODS = {"BANK_TRANSFER", "CREDIT_CARD", "PAYPAL", "CHECK", "CASH"}
VALID_INVOICE_TEMPLATES = {"standard", "premium", "custom"}
UNPAID_INVOICE_STATUSES = {
    InvoiceStatus.SENT.value,
    InvoiceStatus.PARTIAL.value,
    InvoiceStatus.OVERDUE.value,
}


# ---------------------------------------------------------------------------
# Plan catalog
# ---------------------------------------------------------------------------

class SubscriptionPlan(db.Model):
    """A subscription tier.  Price fields are frozen once invoiced."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(60), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    description = db.Column(db.Text)
    category = db.Column(db.String(20), nullable=False, default="BASIC")
    price_monthly = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    price_yearly = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    currency = db.Column(db.String(10), nullable=False, default="EUR")
    max_users = db.Column(db.Integer, default=0)  # 0 = unlimited
    max_employees = db.Column(db.Integer, default=0)
    max_database_storage_mb = db.Column(db.Integer, default=0)
    max_s3_storage_mb = db.Column(db.Integer, default=0)
    grace_period_days = db.Column(db.Integer, nullable=False, default=7)
    is_public = db.Column(db.Boolean, default=True)
    is_recommended = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    sort_order = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=utc_now)

    def to_dict(self) -> dict:
        return {
            "planId": self.id,
            "planName": self.name,
            "slug": self.slug,
            "description": self.description,
            "category": self.category,
            "monthlyPrice": float(self.price_monthly or 0),
            "yearlyPrice": float(self.price_yearly or 0),
            "currency": self.currency,
            "maxUsers": self.max_users,
            "maxEmployees": self.max_employees,
            "maxDatabaseStorageMB": self.max_database_storage_mb,
            "maxS3StorageMB": self.max_s3_storage_mb,
            "gracePeriodDays": self.grace_period_days,
            "isPublic": 1 if self.is_public else 0,
            "isRecommended": 1 if self.is_recommended else 0,
            "status": "ACTIVE" if self.is_active else "INACTIVE",
        }


# ---------------------------------------------------------------------------
# Tenant
# ---------------------------------------------------------------------------

class Tenant(db.Model):
    """A billed organization.  ``status`` is written only by the state machine."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    status = db.Column(db.String(30), nullable=False, default=TenantStatus.ACTIVE.value)

    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"))
    plan_start_date = db.Column(db.DateTime)
    plan_expiry_date = db.Column(db.DateTime, index=True)
    next_billing_date = db.Column(db.DateTime)
    current_plan_price = db.Column(db.Numeric(12, 2, asdecimal=True))
    currency = db.Column(db.String(10))
    billing_method = db.Column(db.String(20))
    custom_price = db.Column(db.Numeric(12, 2, asdecimal=True))
    tax_rate = db.Column(db.Numeric(6, 4, asdecimal=True))
    payment_method = db.Column(db.String(30))
    auto_renewal_enabled = db.Column(db.Boolean, default=True)

    grace_mode = db.Column(db.String(10), nullable=False, default="AUTO")
    manual_grace_days = db.Column(db.Integer)
    is_in_grace_period = db.Column(db.Boolean, default=False)
    grace_period_start_date = db.Column(db.DateTime)
    grace_period_end_date = db.Column(db.DateTime)

    suspension_date = db.Column(db.DateTime)
    suspension_reason = db.Column(db.Text)
    plan_change_reason = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    plan = db.relationship("SubscriptionPlan")
    users = db.relationship("TenantUser", backref="tenant", cascade="all, delete-orphan")

    __table_args__ = (
        db.CheckConstraint(
            "(grace_mode = 'AUTO' AND manual_grace_days IS NULL) OR grace_mode = 'MANUAL'",
            name="ck_tenant_grace_mode",
        ),
        db.Index("ix_tenant_status", "status"),
    )

    @property
    def grace_period(self) -> GracePeriod:
        if self.grace_mode == "MANUAL":
            return ManualGracePeriod(days=self.manual_grace_days)
        return AutoGracePeriod()

    @grace_period.setter
    def grace_period(self, value: GracePeriod) -> None:
        if isinstance(value, ManualGracePeriod):
            self.grace_mode = "MANUAL"
            self.manual_grace_days = value.days
        else:
            self.grace_mode = "AUTO"
            self.manual_grace_days = None

    def to_dict(self) -> dict:
        from utils import decimal_to_float, to_millis

        return {
            "tenantId": self.id,
            "name": self.name,
            "slug": self.slug,
            "status": self.status,
            "planId": self.plan_id,
            "planName": self.plan.name if self.plan else None,
            "planStartDate": to_millis(self.plan_start_date),
            "planExpiryDate": to_millis(self.plan_expiry_date),
            "nextBillingDate": to_millis(self.next_billing_date),
            "currentPlanPrice": decimal_to_float(self.current_plan_price),
            "currency": self.currency,
            "billingMethod": self.billing_method,
            "customPrice": decimal_to_float(self.custom_price),
            "taxRate": decimal_to_float(self.tax_rate),
            "paymentMethod": self.payment_method,
            "autoRenewalEnabled": bool(self.auto_renewal_enabled),
            "gracePeriodMode": self.grace_period.mode,
            "manualGracePeriod": self.manual_grace_days,
            "isInGracePeriod": bool(self.is_in_grace_period),
            "gracePeriodStartDate": to_millis(self.grace_period_start_date),
            "gracePeriodEndDate": to_millis(self.grace_period_end_date),
            "suspensionDate": to_millis(self.suspension_date),
            "suspensionReason": self.suspension_reason,
            "createdAt": to_millis(self.created_at),
        }


class TenantUser(db.Model):
    """Read model of a tenant's users, as far as billing actions need it."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    email = db.Column(db.String(120), nullable=False)
    role = db.Column(db.String(30), nullable=False, default="TENANT_USER")
    status = db.Column(db.String(20), nullable=False, default="ACTIVE")
    access_mode = db.Column(db.String(20), nullable=False, default="NORMAL")
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "email", name="uq_tenant_user_email"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "status": self.status,
            "accessMode": self.access_mode,
        }


class TenantResourceUsage(db.Model):
    """Latest counters reported by the platform's metering."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), unique=True, nullable=False)
    database_mb = db.Column(db.Float, default=0.0)
    s3_mb = db.Column(db.Float, default=0.0)
    employees_count = db.Column(db.Integer, default=0)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)


# ---------------------------------------------------------------------------
# Status history
# ---------------------------------------------------------------------------

class StatusHistoryEntry(db.Model):
    """Append-only ledger of tenant status transitions."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    previous_status = db.Column(db.String(30))
    new_status = db.Column(db.String(30), nullable=False)
    reason = db.Column(db.Text)
    changed_by = db.Column(db.String(120), nullable=False)
    user_ids = db.Column(db.Text)  # comma-separated, for user-scoped transitions
    created_at = db.Column(db.DateTime, default=utc_now, nullable=False)

    def to_dict(self) -> dict:
        from utils import to_millis

        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "previousStatus": self.previous_status,
            "newStatus": self.new_status,
            "reason": self.reason,
            "changedBy": self.changed_by,
            "userIds": [int(u) for u in self.user_ids.split(",")] if self.user_ids else [],
            "timestamp": to_millis(self.created_at),
        }


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

class Invoice(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(30), unique=True, nullable=False)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"), nullable=False)
    kind = db.Column(db.String(20), nullable=False)
    invoice_type = db.Column(db.String(20), nullable=False, default=InvoiceType.STANDARD.value)
    prepayment_accounted = db.Column(db.Integer)
    prepayment_reason = db.Column(db.Text)
    billing_type = db.Column(db.String(20))
    template = db.Column(db.String(20), default="standard")
    period_start = db.Column(db.DateTime)
    period_end = db.Column(db.DateTime)
    issue_date = db.Column(db.DateTime, default=utc_now, nullable=False)
    due_date = db.Column(db.DateTime)
    paid_date = db.Column(db.DateTime)

    # False means amounts are deliberately absent (e.g. unaccounted prepayment)
    pricing_applicable = db.Column(db.Boolean, nullable=False, default=True)
    subtotal_amount = db.Column(db.Numeric(12, 2, asdecimal=True))
    tax_rate = db.Column(db.Numeric(6, 4, asdecimal=True))
    tax_amount = db.Column(db.Numeric(12, 2, asdecimal=True))
    total_amount = db.Column(db.Numeric(12, 2, asdecimal=True))
    paid_amount = db.Column(db.Numeric(12, 2, asdecimal=True))
    remaining_amount = db.Column(db.Numeric(12, 2, asdecimal=True))
    currency = db.Column(db.String(10), nullable=False, default="EUR")

    status = db.Column(db.String(20), nullable=False, default=InvoiceStatus.DRAFT.value)
    payment_status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_method = db.Column(db.String(30))
    payment_reference = db.Column(db.String(120))
    receipt_handle = db.Column(db.String(255))
    renewal_key = db.Column(db.String(80), unique=True)
    reminders_sent = db.Column(db.Integer, default=0)
    last_reminder_date = db.Column(db.DateTime)
    generated_by = db.Column(db.String(120))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    tenant = db.relationship("Tenant", backref=db.backref("invoices", lazy="dynamic"))
    plan = db.relationship("SubscriptionPlan")
    events = db.relationship(
        "InvoiceEvent",
        backref="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceEvent.id",
    )

    __table_args__ = (
        db.Index("ix_invoice_status", "status"),
        db.CheckConstraint(
            "remaining_amount IS NULL OR remaining_amount >= 0",
            name="ck_invoice_remaining_non_negative",
        ),
    )

    def to_dict(self) -> dict:
        from utils import decimal_to_float, to_millis

        return {
            "invoiceId": self.id,
            "invoiceNumber": self.invoice_number,
            "tenantId": self.tenant_id,
            "planId": self.plan_id,
            "planName": self.plan.name if self.plan else None,
            "kind": self.kind,
            "invoiceType": self.invoice_type,
            "isPrepayeInvoiceContab": self.prepayment_accounted,
            "isPrepayedInvoiceReason": self.prepayment_reason,
            "billingType": self.billing_type,
            "invoiceTemplate": self.template,
            "periodStart": to_millis(self.period_start),
            "periodEnd": to_millis(self.period_end),
            "issueDate": to_millis(self.issue_date),
            "dueDate": to_millis(self.due_date),
            "paidDate": to_millis(self.paid_date),
            "pricingApplicable": self.pricing_applicable,
            "subtotalAmount": decimal_to_float(self.subtotal_amount),
            "taxRate": decimal_to_float(self.tax_rate),
            "taxAmount": decimal_to_float(self.tax_amount),
            "totalAmount": decimal_to_float(self.total_amount),
            "paidAmount": decimal_to_float(self.paid_amount),
            "remainingAmount": decimal_to_float(self.remaining_amount),
            "currency": self.currency,
            "status": self.status,
            "paymentStatus": self.payment_status,
            "paymentMethod": self.payment_method,
            "paymentReference": self.payment_reference,
            "receiptHandle": self.receipt_handle,
            "remindersSent": self.reminders_sent,
            "generatedBy": self.generated_by,
            "events": [event.to_dict() for event in self.events],
        }


class InvoiceEvent(db.Model):
    """Append-only audit trail entry of an invoice."""
    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"), nullable=False, index=True)
    event_type = db.Column(db.String(30), nullable=False)
    amount = db.Column(db.Numeric(12, 2, asdecimal=True))
    payment_method = db.Column(db.String(30))
    payment_reference = db.Column(db.String(120))
    actor = db.Column(db.String(120))
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now, nullable=False)

    def to_dict(self) -> dict:
        from utils import decimal_to_float, to_millis

        return {
            "eventType": self.event_type,
            "amount": decimal_to_float(self.amount),
            "paymentMethod": self.payment_method,
            "paymentReference": self.payment_reference,
            "actor": self.actor,
            "details": self.details,
            "timestamp": to_millis(self.created_at),
        }


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), index=True)
    actor = db.Column(db.String(120))
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )
