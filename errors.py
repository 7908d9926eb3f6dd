"""Billing error kinds shared by services and routes."""

from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base class for all errors raised by the billing core."""

    status_code = 500

    def __init__(self, message: str, errors: Optional[dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or {}


class ValidationError(BillingError):
    """Input is invalid; ``errors`` maps field names to messages."""

    status_code = 400

    def __init__(self, errors: dict[str, str], message: Optional[str] = None):
        if message is None:
            message = "; ".join(errors.values()) if errors else "Invalid input."
        super().__init__(message, errors)


class AmountMismatchError(ValidationError):
    """Paid amount exceeds the total, or remaining amount would go negative."""


class StateConflictError(BillingError):
    """Operation is invalid for the tenant's (or invoice's) current state."""

    status_code = 409


class NotFoundError(BillingError):
    status_code = 404


class PermissionDenied(BillingError):
    status_code = 403


class ExternalDependencyError(BillingError):
    """Persistence or document store failure.  Safe to retry."""

    status_code = 503
