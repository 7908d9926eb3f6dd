from dataclasses import dataclass


@dataclass
class AppConfig:
    name: str
    secret_key: str
    base_currency: str


@dataclass
class BillingConfig:
    default_tax_rate: float = 0.2
    default_grace_period_days: int = 7
    invoice_due_days: int = 14
    usage_warning_percent: float = 80.0
    usage_critical_percent: float = 95.0
    tenant_lock_timeout: float = 5.0


@dataclass
class MonitoringConfig:
    enabled: bool = True
    status_check_interval: float = 300.0
    usage_check_interval: float = 600.0
    creation_protection_seconds: float = 60.0


@dataclass
class StorageConfig:
    receipt_dir: str = "receipts"
    max_receipt_bytes: int = 5 * 1024 * 1024
