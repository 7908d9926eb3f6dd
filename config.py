"""Configuration loading: YAML file with environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import AppConfig, BillingConfig, MonitoringConfig, StorageConfig

logger = logging.getLogger(__name__)


def env_bool(name: str, default) -> bool:
    return os.environ.get(name, str(default)).lower() in ("true", "1", "yes")


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, BillingConfig, MonitoringConfig, StorageConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    billing_cfg = raw.get("billing", {})
    monitoring_cfg = raw.get("monitoring", {})
    storage_cfg = raw.get("storage", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml."
        )

    return (
        AppConfig(
            name=app_cfg.get("name", "Tenant Billing"),
            secret_key=secret_key,
            base_currency=os.environ.get(
                "BASE_CURRENCY", app_cfg.get("base_currency", "EUR")
            ),
        ),
        BillingConfig(
            default_tax_rate=float(os.environ.get(
                "BILLING_DEFAULT_TAX_RATE", billing_cfg.get("default_tax_rate", 0.2)
            )),
            default_grace_period_days=int(os.environ.get(
                "BILLING_GRACE_PERIOD_DAYS", billing_cfg.get("default_grace_period_days", 7)
            )),
            invoice_due_days=int(os.environ.get(
                "BILLING_INVOICE_DUE_DAYS", billing_cfg.get("invoice_due_days", 14)
            )),
            usage_warning_percent=float(os.environ.get(
                "USAGE_WARNING_PERCENT", billing_cfg.get("usage_warning_percent", 80)
            )),
            usage_critical_percent=float(os.environ.get(
                "USAGE_CRITICAL_PERCENT", billing_cfg.get("usage_critical_percent", 95)
            )),
            tenant_lock_timeout=float(os.environ.get(
                "TENANT_LOCK_TIMEOUT", billing_cfg.get("tenant_lock_timeout", 5)
            )),
        ),
        MonitoringConfig(
            enabled=env_bool("MONITORING_ENABLED", monitoring_cfg.get("enabled", True)),
            status_check_interval=float(os.environ.get(
                "STATUS_CHECK_INTERVAL", monitoring_cfg.get("status_check_interval", 300)
            )),
            usage_check_interval=float(os.environ.get(
                "USAGE_CHECK_INTERVAL", monitoring_cfg.get("usage_check_interval", 600)
            )),
            creation_protection_seconds=float(os.environ.get(
                "CREATION_PROTECTION_SECONDS",
                monitoring_cfg.get("creation_protection_seconds", 60),
            )),
        ),
        StorageConfig(
            receipt_dir=os.environ.get(
                "RECEIPT_DIR", storage_cfg.get("receipt_dir", "receipts")
            ),
            max_receipt_bytes=int(os.environ.get(
                "MAX_RECEIPT_BYTES", storage_cfg.get("max_receipt_bytes", 5 * 1024 * 1024)
            )),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///tenant_billing.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
