"""Billing period derivation (calendar month / year arithmetic)."""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Optional

from dateutil.relativedelta import relativedelta

from errors import ValidationError
from utils import ensure_utc, utc_now

DERIVED_METHODS = {"MONTHLY", "YEARLY"}


@dataclass(frozen=True)
class BillingPeriod:
    start: datetime.datetime
    end: datetime.datetime


def advance(start: datetime.datetime, billing_method: str) -> datetime.datetime:
    """Advance *start* by one billing cycle.

    relativedelta clamps to the month length, so Jan 31 + 1 month is the
    last day of February.
    """
    if billing_method == "MONTHLY":
        return start + relativedelta(months=1)
    if billing_method == "YEARLY":
        return start + relativedelta(years=1)
    raise ValidationError({"billingMethod": f"Cannot derive a period for {billing_method}"})


def compute_period(
    billing_method: str,
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
) -> BillingPeriod:
    """Return the billing period for *billing_method*.

    MONTHLY and YEARLY derive the end from the start (default: now); an
    explicit *end* is ignored for them.  CUSTOM takes both dates from the
    caller and raises :class:`ValidationError` when either is missing.
    """
    if billing_method in DERIVED_METHODS:
        begin = ensure_utc(start) if start else utc_now()
        return BillingPeriod(start=begin, end=advance(begin, billing_method))

    if billing_method == "CUSTOM":
        errors = {}
        if start is None:
            errors["startDate"] = "Start date is required for custom billing"
        if end is None:
            errors["endDate"] = "End date is required for custom billing"
        if errors:
            raise ValidationError(errors)
        begin, finish = ensure_utc(start), ensure_utc(end)
        if finish < begin:
            raise ValidationError({"endDate": "End date cannot be before start date"})
        return BillingPeriod(start=begin, end=finish)

    raise ValidationError({"billingMethod": "Billing method is required"})


def prorated_fraction(
    period_start: datetime.datetime,
    period_end: datetime.datetime,
    now: Optional[datetime.datetime] = None,
) -> float:
    """Share of the period still ahead of *now*, between 0 and 1."""
    begin, finish = ensure_utc(period_start), ensure_utc(period_end)
    current = ensure_utc(now or utc_now())
    total = (finish - begin).total_seconds()
    if total <= 0:
        return 0.0
    left = (finish - max(current, begin)).total_seconds()
    return min(max(left / total, 0.0), 1.0)
