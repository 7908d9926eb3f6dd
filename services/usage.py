"""Resource usage against plan limits."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Optional

from flask import current_app, has_app_context

from errors import ValidationError
from extensions import commit_session, db
from models import TenantResourceUsage, TenantUser
from services.subscription import get_tenant
from utils import to_millis, utc_now

logger = logging.getLogger(__name__)

WARNING = "WARNING"
CRITICAL = "CRITICAL"
SUSPENSION_PERCENT = 100.0

# alert type -> (used attribute, limit attribute on SubscriptionPlan, label)
DIMENSIONS = {
    "DATABASE": ("database_mb", "max_database_storage_mb", "Database storage"),
    "S3": ("s3_mb", "max_s3_storage_mb", "File storage"),
    "USERS": ("users", "max_users", "Users"),
    "EMPLOYEES": ("employees", "max_employees", "Employees"),
}


@dataclass(frozen=True)
class UsageAlert:
    type: str
    severity: str
    percentage: float
    message: str

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "severity": self.severity,
            "percentage": self.percentage,
            "message": self.message,
        }


@dataclass(frozen=True)
class UsageCounts:
    users: int = 0
    employees: int = 0
    database_mb: float = 0.0
    s3_mb: float = 0.0


@dataclass(frozen=True)
class UsageSnapshot:
    tenant_id: int
    counts: UsageCounts
    limits: dict
    percentages: dict
    alerts: list = field(default_factory=list)
    checked_at: Optional[datetime.datetime] = None

    @property
    def has_alerts(self) -> bool:
        return bool(self.alerts)

    @property
    def warnings(self) -> list[str]:
        return [alert.message for alert in self.alerts]

    @property
    def suspension_recommended(self) -> bool:
        """Informational only: some dimension is at or above its limit."""
        return any(p >= SUSPENSION_PERCENT for p in self.percentages.values())

    def to_dict(self) -> dict:
        return {
            "tenantId": self.tenant_id,
            "currentUsers": self.counts.users,
            "currentEmployees": self.counts.employees,
            "databaseUsageMB": self.counts.database_mb,
            "s3UsageMB": self.counts.s3_mb,
            "maxUsers": self.limits.get("USERS"),
            "maxEmployees": self.limits.get("EMPLOYEES"),
            "maxDatabaseStorageMB": self.limits.get("DATABASE"),
            "maxS3StorageMB": self.limits.get("S3"),
            "usersUsagePercentage": self.percentages["USERS"],
            "employeesUsagePercentage": self.percentages["EMPLOYEES"],
            "databaseUsagePercentage": self.percentages["DATABASE"],
            "s3UsagePercentage": self.percentages["S3"],
            "alerts": [alert.to_dict() for alert in self.alerts],
            "activeWarnings": self.warnings,
            "hasAlerts": self.has_alerts,
            "suspensionRecommended": self.suspension_recommended,
            "checkedAt": to_millis(self.checked_at),
        }


def usage_percent(used, limit) -> float:
    """Percentage of *limit* consumed; a limit of 0 (or none) means unlimited."""
    if not limit:
        return 0.0
    return round(float(used or 0) / float(limit) * 100.0, 2)


def build_snapshot(
    tenant_id: int,
    counts: UsageCounts,
    plan,
    warning_percent: float = 80.0,
    critical_percent: float = 95.0,
    now: Optional[datetime.datetime] = None,
) -> UsageSnapshot:
    """Compare *counts* with the limits of *plan* (``None`` = no limits)."""
    limits, percentages, alerts = {}, {}, []
    for kind, (used_attr, limit_attr, label) in DIMENSIONS.items():
        limit = getattr(plan, limit_attr, 0) if plan is not None else 0
        limits[kind] = limit or 0
        pct = usage_percent(getattr(counts, used_attr), limit)
        percentages[kind] = pct
        if pct >= critical_percent:
            alerts.append(UsageAlert(kind, CRITICAL, pct, f"{label} at {pct:.0f}% of the plan limit"))
        elif pct >= warning_percent:
            alerts.append(UsageAlert(kind, WARNING, pct, f"{label} at {pct:.0f}% of the plan limit"))
    return UsageSnapshot(
        tenant_id=tenant_id,
        counts=counts,
        limits=limits,
        percentages=percentages,
        alerts=alerts,
        checked_at=now or utc_now(),
    )


def _thresholds() -> tuple[float, float]:
    if has_app_context():
        cfg = current_app.config.get("BILLING_CONFIG")
        if cfg is not None:
            return cfg.usage_warning_percent, cfg.usage_critical_percent
    return 80.0, 95.0


def get_tenant_usage(tenant_id: int, now: Optional[datetime.datetime] = None) -> UsageSnapshot:
    tenant = get_tenant(tenant_id)
    record = TenantResourceUsage.query.filter_by(tenant_id=tenant.id).first()
    active_users = TenantUser.query.filter_by(tenant_id=tenant.id, status="ACTIVE").count()
    counts = UsageCounts(
        users=active_users,
        employees=record.employees_count if record else 0,
        database_mb=record.database_mb if record else 0.0,
        s3_mb=record.s3_mb if record else 0.0,
    )
    warning, critical = _thresholds()
    snapshot = build_snapshot(tenant.id, counts, tenant.plan, warning, critical, now)
    if snapshot.suspension_recommended:
        logger.warning("Tenant %s exceeds a plan limit; suspension recommended", tenant.id)
    return snapshot


def record_usage(tenant_id: int, data: dict) -> TenantResourceUsage:
    """Store the latest metering counters reported for a tenant."""
    tenant = get_tenant(tenant_id)
    record = TenantResourceUsage.query.filter_by(tenant_id=tenant.id).first()
    if record is None:
        record = TenantResourceUsage(tenant_id=tenant.id)
        db.session.add(record)
    errors = {}
    for key, attr, kind in (
        ("databaseUsageMB", "database_mb", float),
        ("s3UsageMB", "s3_mb", float),
        ("currentEmployees", "employees_count", int),
    ):
        if key not in data:
            continue
        try:
            value = kind(data[key])
        except (TypeError, ValueError):
            errors[key] = "Must be a number"
            continue
        if value < 0:
            errors[key] = "Must not be negative"
            continue
        setattr(record, attr, value)
    if errors:
        db.session.rollback()
        raise ValidationError(errors)
    commit_session("record usage")
    return record
