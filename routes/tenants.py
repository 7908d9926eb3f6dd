"""Tenant read model and tenant-user routes."""

from flask import Blueprint

from errors import ValidationError
from routes.common import api_response, json_body
from services.auth import actor_name, role_required
from services.grace_period import grace_from_mode
from services.subscription import (
    add_tenant_user,
    create_tenant,
    get_tenant,
    reactivate_tenant_user,
    suspend_tenant_user,
)
from services.usage import record_usage

tenants_bp = Blueprint("tenants", __name__, url_prefix="/api/tenants")


@tenants_bp.route("", methods=["POST"])
@role_required("manage_billing")
def create():
    data = json_body()
    grace = None
    if "gracePeriodMode" in data:
        try:
            grace = grace_from_mode(data["gracePeriodMode"], data.get("manualGracePeriod"))
        except ValueError as exc:
            raise ValidationError({"gracePeriodMode": str(exc)}) from None
    tenant = create_tenant(
        data.get("name", ""),
        actor_name(),
        slug=data.get("slug"),
        grace=grace,
        auto_renewal=bool(data.get("autoRenewal", True)),
        payment_method=data.get("paymentMethod"),
    )
    return api_response(tenant.to_dict(), "Tenant created", 201)


@tenants_bp.route("/<int:tenant_id>", methods=["GET"])
@role_required("view_billing")
def detail(tenant_id):
    tenant = get_tenant(tenant_id)
    data = tenant.to_dict()
    data["users"] = [u.to_dict() for u in tenant.users]
    return api_response(data)


@tenants_bp.route("/<int:tenant_id>/users", methods=["POST"])
@role_required("manage_billing")
def add_user(tenant_id):
    data = json_body()
    user = add_tenant_user(tenant_id, data.get("email", ""), data.get("role", "TENANT_USER"))
    return api_response(user.to_dict(), "User added", 201)


@tenants_bp.route("/<int:tenant_id>/users/<int:user_id>/suspend", methods=["POST"])
@role_required("manage_billing")
def suspend_user(tenant_id, user_id):
    data = json_body()
    user = suspend_tenant_user(tenant_id, user_id, data.get("reason", ""), actor_name())
    return api_response(user.to_dict(), "User suspended")


@tenants_bp.route("/<int:tenant_id>/users/<int:user_id>/reactivate", methods=["POST"])
@role_required("manage_billing")
def reactivate_user(tenant_id, user_id):
    data = json_body()
    user = reactivate_tenant_user(tenant_id, user_id, actor_name(), data.get("reason"))
    return api_response(user.to_dict(), "User reactivated")


@tenants_bp.route("/<int:tenant_id>/usage", methods=["PUT"])
@role_required("manage_billing")
def report_usage(tenant_id):
    record_usage(tenant_id, json_body())
    return api_response(None, "Usage recorded")
