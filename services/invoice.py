"""Invoice business logic."""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import func

from errors import AmountMismatchError, NotFoundError, StateConflictError, ValidationError
from extensions import commit_session, db
from models import (
    UNPAID_INVOICE_STATUSES,
    VALID_INVOICE_TEMPLATES,
    VALID_PAYMENT_METHODS,
    BillingType,
    Invoice,
    InvoiceEvent,
    InvoiceKind,
    InvoiceStatus,
    InvoiceType,
    PaymentStatus,
    Tenant,
)
from services.assignment import AssignmentRequest
from services.billing_period import compute_period, prorated_fraction
from services.locks import tenant_lock
from services.pricing import PricingCalculation, calculate_pricing, remaining_amount
from utils import decimal_to_float, ensure_utc, money, to_decimal, to_millis, utc_now

logger = logging.getLogger(__name__)

DEFAULT_DUE_DAYS = 14


def generate_invoice_number(now: Optional[datetime.datetime] = None) -> str:
    """Generate the next invoice number in format ``INV-YYYY-NNNN``."""
    year = (now or utc_now()).year
    prefix = f"INV-{year}-"
    last = (
        Invoice.query.filter(Invoice.invoice_number.like(f"{prefix}%"))
        .order_by(Invoice.invoice_number.desc())
        .first()
    )
    if last and last.invoice_number:
        try:
            seq = int(last.invoice_number.split("-")[-1]) + 1
        except (ValueError, IndexError):
            seq = 1
    else:
        seq = 1
    return f"{prefix}{seq:04d}"


def derive_initial_status(
    pricing: Optional[PricingCalculation],
    paid_amount: Optional[Decimal],
    due_date: Optional[datetime.datetime],
    now: Optional[datetime.datetime] = None,
) -> tuple[str, str]:
    """Return ``(status, payment_status)`` for a new invoice."""
    if pricing is None:
        return InvoiceStatus.DRAFT.value, PaymentStatus.PENDING.value
    paid = paid_amount or Decimal("0")
    if paid >= pricing.total_price:
        return InvoiceStatus.PAID.value, PaymentStatus.PAID.value
    if due_date is not None and ensure_utc(due_date) < ensure_utc(now or utc_now()):
        payment = PaymentStatus.PARTIAL.value if paid > 0 else PaymentStatus.PENDING.value
        return InvoiceStatus.OVERDUE.value, payment
    if paid > 0:
        return InvoiceStatus.PARTIAL.value, PaymentStatus.PARTIAL.value
    return InvoiceStatus.SENT.value, PaymentStatus.PENDING.value


def _add_event(invoice: Invoice, event_type: str, actor: str, **fields) -> InvoiceEvent:
    event = InvoiceEvent(event_type=event_type, actor=actor, **fields)
    invoice.events.append(event)
    return event


def create_invoice(
    request: AssignmentRequest,
    tenant: Tenant,
    kind: str,
    actor: str,
    currency: str = "EUR",
    renewal_key: Optional[str] = None,
    due_days: int = DEFAULT_DUE_DAYS,
    now: Optional[datetime.datetime] = None,
) -> Invoice:
    """Persist a new invoice for an assignment, extension or renewal.

    Amounts come from ``request.pricing``; when pricing does not apply the
    amount columns stay NULL and ``pricing_applicable`` is False.  Does NOT
    commit.
    """
    moment = now or utc_now()
    pricing = request.pricing
    status, payment_status = derive_initial_status(
        pricing, request.paid_amount, request.due_date, moment
    )
    due_date = request.due_date
    if due_date is None and pricing is not None and status != InvoiceStatus.PAID.value:
        due_date = moment + datetime.timedelta(days=due_days)

    invoice = Invoice(
        invoice_number=generate_invoice_number(moment),
        tenant_id=tenant.id,
        plan_id=request.plan_id,
        kind=kind,
        invoice_type=request.invoice_type,
        prepayment_accounted=request.prepayment_accounted,
        prepayment_reason=request.prepayment_reason,
        billing_type=request.billing_method,
        period_start=request.start_date,
        period_end=request.end_date,
        issue_date=moment,
        due_date=due_date,
        pricing_applicable=pricing is not None,
        tax_rate=request.tax_rate if pricing is not None else None,
        currency=pricing.currency if pricing is not None else currency,
        status=status,
        payment_status=payment_status,
        payment_method=request.payment_method,
        payment_reference=request.payment_reference,
        receipt_handle=request.receipt_handle,
        renewal_key=renewal_key,
        generated_by=actor,
    )
    if pricing is not None:
        paid = money(request.paid_amount) if request.paid_amount is not None else Decimal("0")
        invoice.subtotal_amount = pricing.base_price
        invoice.tax_amount = pricing.tax_amount
        invoice.total_amount = pricing.total_price
        invoice.paid_amount = paid
        invoice.remaining_amount = remaining_amount(pricing.total_price, paid)
        if status == InvoiceStatus.PAID.value:
            invoice.paid_date = moment

    _add_event(invoice, "CREATED", actor, amount=invoice.total_amount, details=kind)
    if request.receipt_handle:
        _add_event(invoice, "RECEIPT_ATTACHED", actor, details=request.receipt_handle)
    db.session.add(invoice)
    db.session.flush()
    logger.info(
        "Created %s invoice %s for tenant %s (%s/%s)",
        kind, invoice.invoice_number, tenant.id, status, payment_status,
    )
    return invoice


def get_invoice(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found.")
    return invoice


def mark_invoice_paid(
    invoice_id: int,
    amount,
    method: Optional[str],
    reference: Optional[str],
    actor: str,
    now: Optional[datetime.datetime] = None,
) -> Invoice:
    """Record a payment against an invoice and commit.

    The payment is appended to the invoice's event trail.  A payment that
    would push the paid amount past the total is rejected with
    :class:`AmountMismatchError`.
    """
    try:
        value = to_decimal(amount)
    except ValueError:
        raise ValidationError({"amount": "Amount must be a number"}) from None
    if value is None or value <= 0:
        raise ValidationError({"amount": "Amount must be greater than zero"})
    if method and method not in VALID_PAYMENT_METHODS:
        raise ValidationError({"paymentMethod": f"Unknown payment method: {method}"})

    invoice = get_invoice(invoice_id)
    with tenant_lock(invoice.tenant_id):
        invoice = Invoice.query.filter_by(id=invoice_id).with_for_update().one()
        if invoice.status == InvoiceStatus.CANCELLED.value:
            raise StateConflictError(f"Invoice {invoice.invoice_number} is cancelled.")
        if not invoice.pricing_applicable or invoice.total_amount is None:
            raise StateConflictError(
                f"Invoice {invoice.invoice_number} has no amounts yet; it cannot be paid."
            )

        value = money(value)
        new_paid = (invoice.paid_amount or Decimal("0")) + value
        if new_paid > invoice.total_amount:
            raise AmountMismatchError(
                {"paidAmount": "Paid amount cannot exceed total"},
                f"Payment of {value} exceeds the open balance "
                f"{invoice.remaining_amount} of invoice {invoice.invoice_number}.",
            )

        moment = now or utc_now()
        invoice.paid_amount = new_paid
        invoice.remaining_amount = remaining_amount(invoice.total_amount, new_paid)
        invoice.payment_method = method or invoice.payment_method
        invoice.payment_reference = reference or invoice.payment_reference
        if invoice.remaining_amount == 0:
            invoice.status = InvoiceStatus.PAID.value
            invoice.payment_status = PaymentStatus.PAID.value
            invoice.paid_date = moment
        else:
            invoice.payment_status = PaymentStatus.PARTIAL.value
            overdue = invoice.due_date and ensure_utc(invoice.due_date) < ensure_utc(moment)
            invoice.status = InvoiceStatus.OVERDUE.value if overdue else InvoiceStatus.PARTIAL.value
        _add_event(
            invoice, "PAYMENT", actor,
            amount=value, payment_method=method, payment_reference=reference,
        )
        commit_session("mark invoice paid")
    logger.info(
        "Recorded payment %s on invoice %s (remaining %s)",
        value, invoice.invoice_number, invoice.remaining_amount,
    )
    return invoice


def attach_receipt(invoice_id: int, handle: str, actor: str) -> Invoice:
    invoice = get_invoice(invoice_id)
    with tenant_lock(invoice.tenant_id):
        invoice.receipt_handle = handle
        _add_event(invoice, "RECEIPT_ATTACHED", actor, details=handle)
        commit_session("attach receipt")
    return invoice


def send_reminder(invoice_id: int, actor: str, now: Optional[datetime.datetime] = None) -> Invoice:
    """Record a payment reminder for an unpaid invoice."""
    invoice = get_invoice(invoice_id)
    if invoice.status not in UNPAID_INVOICE_STATUSES:
        raise StateConflictError(
            f"Invoice {invoice.invoice_number} is {invoice.status}; no reminder needed."
        )
    with tenant_lock(invoice.tenant_id):
        invoice.reminders_sent = (invoice.reminders_sent or 0) + 1
        invoice.last_reminder_date = now or utc_now()
        _add_event(invoice, "REMINDER", actor, details=f"Reminder #{invoice.reminders_sent}")
        commit_session("send reminder")
    logger.info("Reminder #%s recorded for invoice %s", invoice.reminders_sent, invoice.invoice_number)
    return invoice


def generate_invoice(
    tenant_id: int,
    actor: str,
    billing_type: Optional[str] = None,
    template: Optional[str] = None,
    default_tax_rate=Decimal("0"),
    due_days: int = DEFAULT_DUE_DAYS,
    now: Optional[datetime.datetime] = None,
) -> Invoice:
    """Issue a stand-alone invoice for the tenant's current plan and commit.

    PRORATA bills the part of the current period still ahead of *now*.
    """
    template = template or "standard"
    if template not in VALID_INVOICE_TEMPLATES:
        raise ValidationError({"invoiceTemplate": f"Unknown invoice template: {template}"})
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError(f"Tenant {tenant_id} not found.")
    if tenant.plan is None:
        raise StateConflictError(f"Tenant {tenant_id} has no plan to invoice.")
    if billing_type is None:
        billing_type = (
            tenant.billing_method
            if tenant.billing_method in (BillingType.MONTHLY.value, BillingType.YEARLY.value)
            else BillingType.MONTHLY.value
        )
    if billing_type not in {b.value for b in BillingType}:
        raise ValidationError({"billingType": f"Unknown billing type: {billing_type}"})

    moment = now or utc_now()
    plan = tenant.plan
    with tenant_lock(tenant.id):
        if billing_type == BillingType.PRORATA.value:
            if not tenant.plan_start_date or not tenant.plan_expiry_date:
                raise StateConflictError(f"Tenant {tenant_id} has no current billing period.")
            if ensure_utc(tenant.plan_expiry_date) <= ensure_utc(moment):
                raise StateConflictError(f"Tenant {tenant_id}'s billing period has already ended.")
            full_price = tenant.current_plan_price
            if full_price is None:
                full_price = plan.price_monthly
            fraction = prorated_fraction(tenant.plan_start_date, tenant.plan_expiry_date, moment)
            base = money(Decimal(full_price) * Decimal(str(fraction)))
            start, end = moment, ensure_utc(tenant.plan_expiry_date)
            method = None
        else:
            period = compute_period(billing_type, moment)
            start, end = period.start, period.end
            # the tenant's agreed price applies to its own billing cycle
            base = None
            if billing_type == tenant.billing_method and tenant.current_plan_price is not None:
                base = Decimal(tenant.current_plan_price)
            method = billing_type

        tax_rate = Decimal(tenant.tax_rate) if tenant.tax_rate is not None else Decimal(str(default_tax_rate))
        pricing = calculate_pricing(
            plan, InvoiceType.STANDARD.value, None, method or BillingType.MONTHLY.value,
            custom_price=base, tax_rate=tax_rate,
        )
        status, payment_status = derive_initial_status(pricing, None, None, moment)
        invoice = Invoice(
            invoice_number=generate_invoice_number(moment),
            tenant_id=tenant.id,
            plan_id=plan.id,
            kind=InvoiceKind.GENERATED.value,
            invoice_type=InvoiceType.STANDARD.value,
            billing_type=billing_type,
            template=template,
            period_start=start,
            period_end=end,
            issue_date=moment,
            due_date=moment + datetime.timedelta(days=due_days),
            pricing_applicable=True,
            subtotal_amount=pricing.base_price,
            tax_rate=tax_rate,
            tax_amount=pricing.tax_amount,
            total_amount=pricing.total_price,
            paid_amount=Decimal("0"),
            remaining_amount=pricing.remaining_amount,
            currency=pricing.currency,
            status=status,
            payment_status=payment_status,
            generated_by=actor,
        )
        _add_event(invoice, "CREATED", actor, amount=invoice.total_amount, details=billing_type)
        db.session.add(invoice)
        commit_session("generate invoice")
    logger.info("Generated %s invoice %s for tenant %s", billing_type, invoice.invoice_number, tenant.id)
    return invoice


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

def list_tenant_invoices(tenant_id: int) -> list[Invoice]:
    return (
        Invoice.query.filter_by(tenant_id=tenant_id)
        .order_by(Invoice.issue_date.desc(), Invoice.id.desc())
        .all()
    )


def plans_history(tenant_id: int) -> list[dict]:
    """Past plan assignments of a tenant, reconstructed from its invoices."""
    history = []
    invoices = (
        Invoice.query.filter_by(tenant_id=tenant_id)
        .filter(Invoice.kind != InvoiceKind.GENERATED.value)
        .order_by(Invoice.period_start.asc(), Invoice.id.asc())
        .all()
    )
    for inv in invoices:
        history.append({
            "invoiceId": inv.id,
            "invoiceNumber": inv.invoice_number,
            "planId": inv.plan_id,
            "planName": inv.plan.name if inv.plan else None,
            "kind": inv.kind,
            "billingMethod": inv.billing_type,
            "startDate": to_millis(inv.period_start),
            "endDate": to_millis(inv.period_end),
            "totalAmount": decimal_to_float(inv.total_amount),
            "status": inv.status,
        })
    return history


def list_unpaid_invoices() -> list[Invoice]:
    return (
        Invoice.query.filter(Invoice.status.in_(UNPAID_INVOICE_STATUSES))
        .order_by(Invoice.due_date.asc())
        .all()
    )


def list_overdue_invoices(now: Optional[datetime.datetime] = None) -> list[Invoice]:
    """Unpaid invoices whose due date has passed, flagged OVERDUE on the way."""
    moment = ensure_utc(now or utc_now())
    overdue = []
    for inv in list_unpaid_invoices():
        if inv.due_date is None or ensure_utc(inv.due_date) >= moment:
            continue
        if inv.status != InvoiceStatus.OVERDUE.value:
            inv.status = InvoiceStatus.OVERDUE.value
        overdue.append(inv)
    if db.session.dirty:
        commit_session("flag overdue invoices")
    return overdue


def financial_dashboard() -> dict:
    """Totals across all priced invoices, per currency."""
    rows = (
        db.session.query(
            Invoice.currency,
            func.count(Invoice.id),
            func.coalesce(func.sum(Invoice.total_amount), 0),
            func.coalesce(func.sum(Invoice.paid_amount), 0),
            func.coalesce(func.sum(Invoice.remaining_amount), 0),
        )
        .filter(Invoice.pricing_applicable.is_(True))
        .filter(Invoice.status != InvoiceStatus.CANCELLED.value)
        .group_by(Invoice.currency)
        .all()
    )
    by_status = dict(
        db.session.query(Invoice.status, func.count(Invoice.id)).group_by(Invoice.status).all()
    )
    return {
        "currencies": [
            {
                "currency": currency,
                "invoiceCount": count,
                "totalInvoiced": float(total),
                "totalPaid": float(paid),
                "totalOutstanding": float(outstanding),
            }
            for currency, count, total, paid, outstanding in rows
        ],
        "countByStatus": by_status,
    }
