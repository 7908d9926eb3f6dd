"""Subscription plan catalog."""

from __future__ import annotations

import logging
import re
from decimal import Decimal

from sqlalchemy import func

from errors import NotFoundError, StateConflictError, ValidationError
from extensions import db
from models import VALID_PLAN_CATEGORIES, Invoice, InvoiceStatus, SubscriptionPlan
from services.audit import log_action
from services.pricing import PlanTerms
from utils import to_decimal

logger = logging.getLogger(__name__)

PRICE_FIELDS = {"monthlyPrice", "yearlyPrice", "currency"}

DEFAULT_PLANS = [
    {
        "name": "Basic",
        "slug": "basic",
        "category": "BASIC",
        "monthlyPrice": "29.00",
        "yearlyPrice": "290.00",
        "maxUsers": 5,
        "maxEmployees": 25,
        "maxDatabaseStorageMB": 1024,
        "maxS3StorageMB": 5120,
        "gracePeriodDays": 7,
        "sortOrder": 1,
    },
    {
        "name": "Premium",
        "slug": "premium",
        "category": "PREMIUM",
        "monthlyPrice": "99.00",
        "yearlyPrice": "990.00",
        "maxUsers": 25,
        "maxEmployees": 200,
        "maxDatabaseStorageMB": 10240,
        "maxS3StorageMB": 51200,
        "gracePeriodDays": 14,
        "isRecommended": True,
        "sortOrder": 2,
    },
    {
        "name": "Enterprise",
        "slug": "enterprise",
        "category": "ENTERPRISE",
        "monthlyPrice": "499.00",
        "yearlyPrice": "4990.00",
        "maxUsers": 0,
        "maxEmployees": 0,
        "maxDatabaseStorageMB": 0,
        "maxS3StorageMB": 0,
        "gracePeriodDays": 30,
        "sortOrder": 3,
    },
]

# payload key -> (column, kind)
_PLAN_FIELDS = {
    "planName": ("name", "str"),
    "name": ("name", "str"),
    "description": ("description", "str"),
    "category": ("category", "str"),
    "monthlyPrice": ("price_monthly", "money"),
    "yearlyPrice": ("price_yearly", "money"),
    "currency": ("currency", "str"),
    "maxUsers": ("max_users", "int"),
    "maxEmployees": ("max_employees", "int"),
    "maxDatabaseStorageMB": ("max_database_storage_mb", "int"),
    "maxS3StorageMB": ("max_s3_storage_mb", "int"),
    "gracePeriodDays": ("grace_period_days", "int"),
    "isPublic": ("is_public", "bool"),
    "isRecommended": ("is_recommended", "bool"),
    "isActive": ("is_active", "bool"),
    "sortOrder": ("sort_order", "int"),
}


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def plan_terms(plan: SubscriptionPlan) -> PlanTerms:
    return PlanTerms(
        plan_id=plan.id,
        name=plan.name,
        price_monthly=Decimal(plan.price_monthly or 0),
        price_yearly=Decimal(plan.price_yearly or 0),
        currency=plan.currency or "EUR",
        grace_period_days=plan.grace_period_days or 0,
    )


def get_plan(plan_id) -> SubscriptionPlan:
    plan = db.session.get(SubscriptionPlan, plan_id) if plan_id is not None else None
    if plan is None:
        raise NotFoundError(f"Plan {plan_id} not found.")
    return plan


def list_plans(include_inactive: bool = False) -> list[SubscriptionPlan]:
    query = SubscriptionPlan.query
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(SubscriptionPlan.sort_order, SubscriptionPlan.id).all()


def is_plan_invoiced(plan_id: int) -> bool:
    """True when a non-cancelled invoice captured this plan's prices."""
    count = (
        db.session.query(func.count(Invoice.id))
        .filter(Invoice.plan_id == plan_id)
        .filter(Invoice.status != InvoiceStatus.CANCELLED.value)
        .scalar()
    )
    return bool(count)


def _apply_plan_fields(plan: SubscriptionPlan, data: dict) -> None:
    errors = {}
    for key, (column, kind) in _PLAN_FIELDS.items():
        if key not in data:
            continue
        value = data[key]
        try:
            if kind == "money":
                value = to_decimal(value)
                if value is None or value < 0:
                    errors[key] = "Price must be a non-negative number"
                    continue
            elif kind == "int":
                value = int(value or 0)
                if value < 0:
                    errors[key] = "Must not be negative"
                    continue
            elif kind == "bool":
                value = bool(value)
            elif isinstance(value, str):
                value = value.strip()
        except (TypeError, ValueError):
            errors[key] = "Invalid value"
            continue
        setattr(plan, column, value)

    if not plan.name:
        errors["planName"] = "Plan name is required"
    if plan.category not in VALID_PLAN_CATEGORIES:
        errors["category"] = f"Category must be one of {', '.join(sorted(VALID_PLAN_CATEGORIES))}"
    if errors:
        raise ValidationError(errors)


def create_plan(data: dict) -> SubscriptionPlan:
    """Create a plan from an API payload.  Does NOT commit."""
    plan = SubscriptionPlan(category=data.get("category", "BASIC"))
    _apply_plan_fields(plan, data)
    plan.slug = data.get("slug") or _slugify(plan.name)
    if SubscriptionPlan.query.filter_by(slug=plan.slug).first():
        raise ValidationError({"slug": f"Plan slug '{plan.slug}' already exists"})
    db.session.add(plan)
    db.session.flush()
    log_action("create_plan", "subscription_plan", plan.id, f"Created plan {plan.name}")
    logger.info("Created plan %s (%s)", plan.name, plan.slug)
    return plan


def update_plan(plan_id: int, data: dict) -> SubscriptionPlan:
    """Update a plan.  Price fields are frozen once the plan has been invoiced."""
    plan = get_plan(plan_id)
    touched = PRICE_FIELDS & set(data)
    if touched and is_plan_invoiced(plan.id):
        raise StateConflictError(
            f"Plan {plan.name} is referenced by invoices; its prices can no longer change. "
            "Create a new plan instead."
        )
    _apply_plan_fields(plan, data)
    log_action("update_plan", "subscription_plan", plan.id, f"Updated {', '.join(sorted(data))}")
    return plan


def seed_default_plans() -> int:
    """Insert the default plans that are missing.  Returns how many were added."""
    added = 0
    for spec in DEFAULT_PLANS:
        if SubscriptionPlan.query.filter_by(slug=spec["slug"]).first():
            continue
        plan = SubscriptionPlan(slug=spec["slug"], category=spec["category"])
        _apply_plan_fields(plan, spec)
        db.session.add(plan)
        added += 1
    if added:
        db.session.flush()
        logger.info("Seeded %d subscription plans", added)
    return added
