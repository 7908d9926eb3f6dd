"""Plan assignment / extension workflow.

The workflow is an immutable form state updated through :func:`apply_field`.
Every "when X changes, also reset or derive Y" rule lives in that reducer, so
the HTTP API, the renewal sweep and the tests all go through the same rules.
Step navigation follows the declared :data:`STEP_GRAPH`.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from errors import AmountMismatchError, ValidationError
from models import (
    VALID_PAYMENT_METHODS,
    BillingMethod,
    InvoiceType,
    PaymentStatus,
)
from services.billing_period import DERIVED_METHODS, compute_period
from services.grace_period import (
    AutoGracePeriod,
    GracePeriod,
    ManualGracePeriod,
)
from services.pricing import PlanTerms, PricingCalculation, calculate_pricing
from utils import ensure_utc, from_millis, to_decimal, utc_now

FIRST_STEP = 1
LAST_STEP = 5

STEP_PLAN = 1
STEP_INVOICE_TYPE = 2
STEP_BILLING_METHOD = 3
STEP_PAYMENT = 4
STEP_RENEWAL = 5

_BILLING_METHODS = {m.value for m in BillingMethod}
_INVOICE_TYPES = {t.value for t in InvoiceType}
_PAYMENT_STATUSES = {s.value for s in PaymentStatus}


class WorkflowMode(str, Enum):
    ASSIGN = "ASSIGN"
    EXTEND = "EXTEND"


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AssignmentFormState:
    mode: WorkflowMode = WorkflowMode.ASSIGN
    step: int = FIRST_STEP
    # Earliest start for derived periods (extend: the current expiry)
    anchor: Optional[datetime.datetime] = None

    plan: Optional[PlanTerms] = None
    invoice_type: Optional[str] = None
    prepayment_accounted: Optional[int] = None
    prepayment_reason: Optional[str] = None

    billing_method: Optional[str] = None
    start_date: Optional[datetime.datetime] = None
    end_date: Optional[datetime.datetime] = None
    custom_price: Optional[Decimal] = None
    tax_rate: Decimal = Decimal("0")

    with_receipt: bool = False
    receipt_handle: Optional[str] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    payment_status: Optional[str] = None
    paid_amount: Optional[Decimal] = None
    due_date: Optional[datetime.datetime] = None

    auto_renewal: bool = True
    grace: GracePeriod = field(default_factory=AutoGracePeriod)

    @property
    def pricing(self) -> Optional[PricingCalculation]:
        return calculate_pricing(
            self.plan,
            self.invoice_type,
            self.prepayment_accounted,
            self.billing_method,
            self.custom_price,
            self.tax_rate,
            self.paid_amount,
        )


@dataclass(frozen=True)
class AssignmentRequest:
    """Validated, immutable result of the workflow."""
    tenant_id: int
    mode: WorkflowMode
    plan_id: int
    invoice_type: str
    prepayment_accounted: Optional[int]
    prepayment_reason: Optional[str]
    billing_method: str
    start_date: datetime.datetime
    end_date: datetime.datetime
    custom_price: Optional[Decimal]
    tax_rate: Decimal
    auto_renewal: bool
    grace: GracePeriod
    pricing: Optional[PricingCalculation]
    receipt_handle: Optional[str] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    payment_status: Optional[str] = None
    paid_amount: Optional[Decimal] = None
    due_date: Optional[datetime.datetime] = None


def initial_state(
    mode: WorkflowMode = WorkflowMode.ASSIGN,
    tax_rate=Decimal("0"),
    anchor: Optional[datetime.datetime] = None,
) -> AssignmentFormState:
    return AssignmentFormState(mode=mode, tax_rate=Decimal(str(tax_rate)), anchor=anchor)


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------

def _period_start(state: AssignmentFormState, now: Optional[datetime.datetime]) -> datetime.datetime:
    current = ensure_utc(now or utc_now())
    if state.anchor is not None and ensure_utc(state.anchor) > current:
        return ensure_utc(state.anchor)
    return current


def _plan_price(plan: Optional[PlanTerms], method: Optional[str]) -> Optional[Decimal]:
    if plan is None:
        return None
    if method == "MONTHLY":
        return Decimal(plan.price_monthly)
    if method == "YEARLY":
        return Decimal(plan.price_yearly)
    return None


def _derive_period(state, method, start):
    period = compute_period(method, start)
    return replace(
        state,
        billing_method=method,
        start_date=period.start,
        end_date=period.end,
        custom_price=_plan_price(state.plan, method),
    )


def _decimal_field(name: str, value) -> Optional[Decimal]:
    try:
        return to_decimal(value)
    except ValueError:
        raise ValidationError({name: "Must be a number"}) from None


def _set_plan(state, value, now):
    updated = replace(state, plan=value)
    if updated.billing_method in DERIVED_METHODS:
        return _derive_period(updated, updated.billing_method, _period_start(updated, now))
    return updated


def _set_invoice_type(state, value, now):
    if value is not None and value not in _INVOICE_TYPES:
        raise ValidationError({"invoiceType": f"Unknown invoice type: {value}"})
    if value != InvoiceType.PREPAID.value:
        return replace(state, invoice_type=value, prepayment_accounted=None, prepayment_reason=None)
    return replace(state, invoice_type=value)


def _set_prepayment_accounted(state, value, now):
    if value is None or value == "":
        return replace(state, prepayment_accounted=None)
    try:
        flag = int(value)
    except (TypeError, ValueError):
        raise ValidationError({"isPrepayeInvoiceContab": "Must be 0 or 1"}) from None
    return replace(state, prepayment_accounted=flag)


def _set_billing_method(state, value, now):
    if value is not None and value not in _BILLING_METHODS:
        raise ValidationError({"billingMethod": f"Unknown billing method: {value}"})
    if value in DERIVED_METHODS:
        return _derive_period(state, value, _period_start(state, now))
    return replace(state, billing_method=value, start_date=None, end_date=None, custom_price=None)


def _set_start_date(state, value, now):
    if state.billing_method in DERIVED_METHODS and value is not None:
        period = compute_period(state.billing_method, value)
        return replace(state, start_date=period.start, end_date=period.end)
    return replace(state, start_date=ensure_utc(value))


def _set_end_date(state, value, now):
    if state.billing_method in DERIVED_METHODS:
        raise ValidationError(
            {"endDate": "End date is derived from the billing method and cannot be set"}
        )
    return replace(state, end_date=ensure_utc(value))


def _set_custom_price(state, value, now):
    return replace(state, custom_price=_decimal_field("customPrice", value))


def _set_tax_rate(state, value, now):
    rate = _decimal_field("taxRate", value)
    return replace(state, tax_rate=rate if rate is not None else Decimal("0"))


def _set_grace_mode(state, value, now):
    if value == "auto":
        return replace(state, grace=AutoGracePeriod())
    if value == "manual":
        if isinstance(state.grace, ManualGracePeriod):
            return state
        return replace(state, grace=ManualGracePeriod())
    raise ValidationError({"gracePeriodMode": f"Unknown grace period mode: {value}"})


def _set_manual_grace_days(state, value, now):
    days = None
    if value is not None and value != "":
        try:
            days = int(value)
        except (TypeError, ValueError):
            raise ValidationError({"manualGracePeriod": "Must be a whole number of days"}) from None
    return replace(state, grace=ManualGracePeriod(days=days))


def _set_payment_status(state, value, now):
    if value is not None and value not in _PAYMENT_STATUSES:
        raise ValidationError({"paymentStatus": f"Unknown payment status: {value}"})
    updated = replace(state, payment_status=value)
    if value == PaymentStatus.PAID.value:
        pricing = updated.pricing
        if pricing is not None:
            updated = replace(updated, paid_amount=pricing.total_price)
    return updated


def _set_paid_amount(state, value, now):
    return replace(state, paid_amount=_decimal_field("paidAmount", value))


def _set_receipt(state, value, now):
    if not value:
        return replace(state, with_receipt=False, receipt_handle=None)
    handle = value if isinstance(value, str) else state.receipt_handle
    return replace(state, with_receipt=True, receipt_handle=handle)


def _plain(name: str) -> Callable:
    def setter(state, value, now):
        return replace(state, **{name: value})
    return setter


FIELD_REDUCERS: dict[str, Callable] = {
    "plan": _set_plan,
    "invoice_type": _set_invoice_type,
    "prepayment_accounted": _set_prepayment_accounted,
    "prepayment_reason": _plain("prepayment_reason"),
    "billing_method": _set_billing_method,
    "start_date": _set_start_date,
    "end_date": _set_end_date,
    "custom_price": _set_custom_price,
    "tax_rate": _set_tax_rate,
    "receipt": _set_receipt,
    "payment_method": _plain("payment_method"),
    "payment_reference": _plain("payment_reference"),
    "payment_status": _set_payment_status,
    "paid_amount": _set_paid_amount,
    "due_date": lambda state, value, now: replace(state, due_date=ensure_utc(value)),
    "auto_renewal": lambda state, value, now: replace(state, auto_renewal=bool(value)),
    "grace_mode": _set_grace_mode,
    "manual_grace_days": _set_manual_grace_days,
}


def apply_field(
    state: AssignmentFormState,
    name: str,
    value,
    now: Optional[datetime.datetime] = None,
) -> AssignmentFormState:
    """Return a new state with *name* set to *value* and dependents updated."""
    reducer = FIELD_REDUCERS.get(name)
    if reducer is None:
        raise ValidationError({name: f"Unknown field: {name}"})
    return reducer(state, value, now)


# ---------------------------------------------------------------------------
# Step graph
# ---------------------------------------------------------------------------

def _assign_skips_billing(state: AssignmentFormState) -> bool:
    return state.invoice_type == InvoiceType.PREPAID.value and not state.prepayment_accounted


def _extend_skips_billing(state: AssignmentFormState) -> bool:
    return (
        state.invoice_type == InvoiceType.PREPAID.value
        and state.prepayment_accounted is not None
        and state.prepayment_accounted == 0
    )


SKIP_RULES: dict[WorkflowMode, Callable[[AssignmentFormState], bool]] = {
    WorkflowMode.ASSIGN: _assign_skips_billing,
    WorkflowMode.EXTEND: _extend_skips_billing,
}

# (step, direction) -> target taken when the mode's skip rule holds
STEP_GRAPH: dict[tuple[int, str], int] = {
    (STEP_INVOICE_TYPE, "next"): STEP_PAYMENT,
    (STEP_PAYMENT, "prev"): STEP_INVOICE_TYPE,
}


def _target_step(state: AssignmentFormState, direction: str) -> int:
    skip_target = STEP_GRAPH.get((state.step, direction))
    if skip_target is not None and SKIP_RULES[state.mode](state):
        return skip_target
    step = state.step + (1 if direction == "next" else -1)
    return min(max(step, FIRST_STEP), LAST_STEP)


def next_step(state: AssignmentFormState) -> AssignmentFormState:
    return replace(state, step=_target_step(state, "next"))


def prev_step(state: AssignmentFormState) -> AssignmentFormState:
    return replace(state, step=_target_step(state, "prev"))


# ---------------------------------------------------------------------------
# Validation / submission
# ---------------------------------------------------------------------------

def validate_form(state: AssignmentFormState) -> dict[str, str]:
    """Return field-keyed error messages; empty when the form is valid."""
    errors: dict[str, str] = {}

    if state.plan is None:
        errors["planId"] = "Plan is required"
    if not state.invoice_type:
        errors["invoiceType"] = "Invoice type is required"
    if not state.billing_method:
        errors["billingMethod"] = "Billing method is required"

    if state.billing_method == BillingMethod.CUSTOM.value:
        if state.start_date is None:
            errors["startDate"] = "Start date is required for custom billing"
        if state.end_date is None:
            errors["endDate"] = "End date is required for custom billing"
        if state.custom_price is None:
            errors["customPrice"] = "Custom price is required for custom billing"
    if state.start_date and state.end_date and state.end_date < state.start_date:
        errors["endDate"] = "End date cannot be before start date"
    if state.custom_price is not None and state.custom_price < 0:
        errors["customPrice"] = "Custom price cannot be negative"
    if not Decimal("0") <= state.tax_rate <= Decimal("1"):
        errors["taxRate"] = "Tax rate must be between 0 and 1"

    pricing = state.pricing
    if state.with_receipt:
        if not state.receipt_handle:
            errors["receiptFile"] = "Receipt file is required"
        if not state.payment_method:
            errors["paymentMethod"] = "Payment method is required"
        elif state.payment_method not in VALID_PAYMENT_METHODS:
            errors["paymentMethod"] = f"Unknown payment method: {state.payment_method}"
        if not state.payment_reference:
            errors["paymentReference"] = "Payment reference is required"
        if not state.payment_status:
            errors["paymentStatus"] = "Payment status is required"
        if state.paid_amount is not None and state.paid_amount < 0:
            errors["paidAmount"] = "Paid amount cannot be negative"
        elif pricing is not None and state.paid_amount is not None:
            if state.paid_amount > pricing.total_price:
                errors["paidAmount"] = "Paid amount cannot exceed total"
            elif state.paid_amount < pricing.total_price and state.due_date is None:
                errors["dueDate"] = "Due date is required when paid amount is less than total"

    if isinstance(state.grace, ManualGracePeriod):
        if state.grace.days is None:
            errors["manualGracePeriod"] = "Manual grace period requires a value"
        elif state.grace.days <= 0:
            errors["manualGracePeriod"] = "Manual grace period must be at least one day"

    return errors


def build_assignment_request(state: AssignmentFormState, tenant_id: int) -> AssignmentRequest:
    """Validate *state* and freeze it into an :class:`AssignmentRequest`."""
    errors = validate_form(state)
    if errors:
        if "paidAmount" in errors and state.paid_amount is not None and state.paid_amount > 0:
            raise AmountMismatchError(errors)
        raise ValidationError(errors)

    period = compute_period(state.billing_method, state.start_date, state.end_date)
    receipt = state.with_receipt
    return AssignmentRequest(
        tenant_id=tenant_id,
        mode=state.mode,
        plan_id=state.plan.plan_id,
        invoice_type=state.invoice_type,
        prepayment_accounted=state.prepayment_accounted,
        prepayment_reason=state.prepayment_reason,
        billing_method=state.billing_method,
        start_date=period.start,
        end_date=period.end,
        custom_price=state.custom_price,
        tax_rate=state.tax_rate,
        auto_renewal=state.auto_renewal,
        grace=state.grace,
        pricing=state.pricing if receipt else _unpaid(state.pricing),
        receipt_handle=state.receipt_handle if receipt else None,
        payment_method=state.payment_method if receipt else None,
        payment_reference=state.payment_reference if receipt else None,
        payment_status=state.payment_status if receipt else None,
        paid_amount=state.paid_amount if receipt else None,
        due_date=state.due_date,
    )


def _unpaid(pricing: Optional[PricingCalculation]) -> Optional[PricingCalculation]:
    if pricing is None:
        return None
    return replace(pricing, remaining_amount=pricing.total_price)


# ---------------------------------------------------------------------------
# Non-interactive path
# ---------------------------------------------------------------------------

# Payload key -> (form field, converter); applied in this order
_PAYLOAD_FIELDS = [
    ("invoiceType", "invoice_type", None),
    ("isPrepayeInvoiceContab", "prepayment_accounted", None),
    ("isPrepayedInvoiceReason", "prepayment_reason", None),
    ("billingMethod", "billing_method", None),
    ("startDate", "start_date", from_millis),
    ("endDate", "end_date", from_millis),
    ("customPrice", "custom_price", None),
    ("taxRate", "tax_rate", None),
    ("autoRenewal", "auto_renewal", None),
    ("gracePeriodMode", "grace_mode", None),
    ("manualGracePeriod", "manual_grace_days", None),
    ("paymentMethod", "payment_method", None),
    ("paymentReference", "payment_reference", None),
    ("paymentStatus", "payment_status", None),
    ("paidAmount", "paid_amount", None),
    ("dueDate", "due_date", from_millis),
]


def form_state_from_payload(
    payload: dict,
    plan: Optional[PlanTerms],
    mode: WorkflowMode = WorkflowMode.ASSIGN,
    default_tax_rate=Decimal("0"),
    anchor: Optional[datetime.datetime] = None,
    receipt_handle: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> AssignmentFormState:
    """Replay a submitted payload through the reducer, field by field."""
    state = initial_state(mode, default_tax_rate, anchor)
    state = apply_field(state, "plan", plan, now)
    for key, name, convert in _PAYLOAD_FIELDS:
        if key not in payload:
            continue
        value = payload[key]
        if name == "end_date" and state.billing_method in DERIVED_METHODS:
            continue
        if name == "manual_grace_days" and not isinstance(state.grace, ManualGracePeriod):
            continue
        if convert is not None:
            value = convert(value)
        state = apply_field(state, name, value, now)

    if receipt_handle or payload.get("receiptHandle"):
        state = apply_field(state, "receipt", receipt_handle or payload["receiptHandle"], now)
    elif payload.get("withReceipt"):
        state = apply_field(state, "receipt", True, now)
    return state
