"""Tenant subscription lifecycle routes."""

from flask import Blueprint, request

from errors import BillingError, ValidationError
from extensions import limiter
from routes.common import api_response, document_store, json_body, tenant_monitor
from services.auth import actor_name, role_required
from services.renewal import auto_renew_tenant, process_expiring_tenants
from services.subscription import (
    activate_grace_period,
    assign_plan,
    change_plan,
    extend_plan,
    get_status_history,
    get_tenant_status,
    reactivate_tenant,
    set_emergency_access,
    set_read_only,
    suspend_tenant,
    update_auto_renewal,
)
from services.usage import get_tenant_usage

subscriptions_bp = Blueprint(
    "subscriptions", __name__, url_prefix="/api/subscriptions/tenants"
)


def _user_ids(data: dict) -> list[int]:
    raw = data.get("userIds") or []
    if not isinstance(raw, list):
        raise ValidationError({"userIds": "userIds must be a list"})
    try:
        return [int(uid) for uid in raw]
    except (TypeError, ValueError):
        raise ValidationError({"userIds": "userIds must contain numeric ids"}) from None


def _submit_plan(tenant_id, operation, message):
    """Shared body of assign-plan / extend-plan (JSON or multipart with receipt)."""
    payload = json_body()
    upload = request.files.get("receipt")
    stored = document_store().store_receipt(upload) if upload else None
    handle = stored
    if handle is None and payload.get("receiptHandle") not in (None, ""):
        handle = document_store().require(payload["receiptHandle"])
    try:
        invoice, tenant = operation(tenant_id, payload, actor_name(), receipt_handle=handle)
    except BillingError:
        if stored:
            document_store().delete(stored)
        raise
    return api_response(
        {"invoice": invoice.to_dict(), "tenant": tenant.to_dict()}, message, 201
    )


@subscriptions_bp.route("/<int:tenant_id>/assign-plan", methods=["POST"])
@role_required("manage_billing")
def assign(tenant_id):
    return _submit_plan(tenant_id, assign_plan, "Plan assigned")


@subscriptions_bp.route("/<int:tenant_id>/extend-plan", methods=["POST"])
@role_required("manage_billing")
def extend(tenant_id):
    return _submit_plan(tenant_id, extend_plan, "Plan extended")


@subscriptions_bp.route("/<int:tenant_id>/change-plan", methods=["PUT"])
@role_required("manage_billing")
def change(tenant_id):
    data = json_body()
    tenant = change_plan(
        tenant_id,
        data.get("newPlanId"),
        data.get("reason", ""),
        actor_name(),
        payment_reference=data.get("paymentReference"),
    )
    return api_response(tenant.to_dict(), "Plan changed")


@subscriptions_bp.route("/<int:tenant_id>/suspend", methods=["POST"])
@role_required("manage_billing")
def suspend(tenant_id):
    entry = suspend_tenant(tenant_id, json_body().get("reason", ""), actor_name())
    return api_response(entry.to_dict(), "Tenant suspended")


@subscriptions_bp.route("/<int:tenant_id>/reactivate", methods=["POST"])
@role_required("manage_billing")
def reactivate(tenant_id):
    entry = reactivate_tenant(tenant_id, actor_name(), json_body().get("reason"))
    return api_response(entry.to_dict(), "Tenant reactivated")


@subscriptions_bp.route("/<int:tenant_id>/read-only", methods=["POST"])
@role_required("manage_billing")
def read_only(tenant_id):
    data = json_body()
    entry = set_read_only(tenant_id, data.get("reason", ""), _user_ids(data), actor_name())
    return api_response(entry.to_dict(), "Read-only access set")


@subscriptions_bp.route("/<int:tenant_id>/emergency-access", methods=["POST"])
@role_required("manage_billing")
def emergency_access(tenant_id):
    data = json_body()
    entry = set_emergency_access(tenant_id, data.get("reason", ""), _user_ids(data), actor_name())
    return api_response(entry.to_dict(), "Emergency access granted")


@subscriptions_bp.route("/<int:tenant_id>/grace-period", methods=["POST"])
@role_required("manage_billing")
def grace_period(tenant_id):
    entry = activate_grace_period(tenant_id, actor_name(), json_body().get("reason"))
    return api_response(entry.to_dict(), "Grace period activated")


@subscriptions_bp.route("/<int:tenant_id>/auto-renew", methods=["POST"])
@role_required("manage_billing")
def auto_renew(tenant_id):
    data = json_body()
    if "enabled" in data:
        tenant = update_auto_renewal(tenant_id, bool(data["enabled"]), actor_name())
        return api_response(tenant.to_dict(), "Auto-renewal updated")
    invoice = auto_renew_tenant(tenant_id, actor_name())
    return api_response(invoice.to_dict(), "Tenant renewed", 201)


@subscriptions_bp.route("/<int:tenant_id>/status", methods=["GET"])
@role_required("view_billing")
def status(tenant_id):
    return api_response(get_tenant_status(tenant_id))


@subscriptions_bp.route("/<int:tenant_id>/usage", methods=["GET"])
@role_required("view_billing")
def usage(tenant_id):
    return api_response(get_tenant_usage(tenant_id).to_dict())


@subscriptions_bp.route("/<int:tenant_id>/status-history", methods=["GET"])
@role_required("view_billing")
def status_history(tenant_id):
    return api_response([entry.to_dict() for entry in get_status_history(tenant_id)])


@subscriptions_bp.route("/<int:tenant_id>/observe", methods=["POST"])
@role_required("view_billing")
def observe(tenant_id):
    monitor = tenant_monitor()
    started = monitor.start_observing(tenant_id)
    return api_response(
        {
            "observing": started,
            "status": monitor.last_status(tenant_id),
            "usage": monitor.last_usage(tenant_id),
        },
        "Monitoring started" if started else "Tenant is not available for monitoring yet",
    )


@subscriptions_bp.route("/<int:tenant_id>/observe", methods=["DELETE"])
@role_required("view_billing")
def stop_observing(tenant_id):
    stopped = tenant_monitor().stop_observing(tenant_id)
    return api_response({"observing": False, "stopped": stopped}, "Monitoring stopped")


@subscriptions_bp.route("/process-expiring", methods=["POST"])
@role_required("manage_billing")
@limiter.limit("10 per minute")
def process_expiring():
    result = process_expiring_tenants(actor=actor_name())
    return api_response(result.to_dict(), "Expiring tenants processed")
