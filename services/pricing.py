"""Price, tax and balance computation for billing actions."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from utils import decimal_to_float, money

ZERO = Decimal("0")


@dataclass(frozen=True)
class PlanTerms:
    """Price points of a plan, detached from the database session."""
    plan_id: int
    name: str
    price_monthly: Decimal
    price_yearly: Decimal
    currency: str
    grace_period_days: int = 7


@dataclass(frozen=True)
class PricingCalculation:
    base_price: Decimal
    tax_amount: Decimal
    total_price: Decimal
    remaining_amount: Decimal
    currency: str

    def to_dict(self) -> dict:
        return {
            "basePrice": decimal_to_float(self.base_price),
            "taxAmount": decimal_to_float(self.tax_amount),
            "totalPrice": decimal_to_float(self.total_price),
            "remainingAmount": decimal_to_float(self.remaining_amount),
            "currency": self.currency,
        }


def pricing_applies(invoice_type: Optional[str], prepayment_accounted) -> bool:
    """Standard invoices are always priced; prepaid ones only once accounted."""
    if invoice_type == "STANDARD":
        return True
    if invoice_type == "PREPAID":
        return bool(prepayment_accounted)
    return False


def remaining_amount(total: Decimal, paid: Optional[Decimal]) -> Decimal:
    """``max(0, total - paid)``; an absent payment counts as zero."""
    return max(ZERO, money(total - (paid or ZERO)))


def base_price_for(
    plan,
    billing_method: Optional[str],
    custom_price: Optional[Decimal],
) -> Optional[Decimal]:
    if custom_price is not None:
        return Decimal(custom_price)
    if plan is None:
        return None
    if billing_method == "MONTHLY":
        return Decimal(plan.price_monthly or 0)
    if billing_method == "YEARLY":
        return Decimal(plan.price_yearly or 0)
    return None


def calculate_pricing(
    plan,
    invoice_type: Optional[str],
    prepayment_accounted,
    billing_method: Optional[str],
    custom_price: Optional[Decimal] = None,
    tax_rate: Optional[Decimal] = None,
    paid_amount: Optional[Decimal] = None,
) -> Optional[PricingCalculation]:
    """Compute pricing for a billing action.

    *plan* is anything exposing ``price_monthly``, ``price_yearly`` and
    ``currency`` (a :class:`PlanTerms` or a ``SubscriptionPlan`` row).
    Returns ``None`` when pricing is not applicable: prepaid invoices whose
    prepayment is not accounted yet, no plan, or a CUSTOM billing method
    without an explicit price.
    """
    if plan is None or not pricing_applies(invoice_type, prepayment_accounted):
        return None
    base = base_price_for(plan, billing_method, custom_price)
    if base is None:
        return None

    base = money(base)
    rate = Decimal(tax_rate) if tax_rate is not None else ZERO
    tax = money(base * rate)
    total = base + tax
    return PricingCalculation(
        base_price=base,
        tax_amount=tax,
        total_price=total,
        remaining_amount=remaining_amount(total, paid_amount),
        currency=plan.currency or "EUR",
    )
