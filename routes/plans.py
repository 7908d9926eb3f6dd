"""Subscription plan catalog routes."""

from flask import Blueprint, request

from extensions import commit_session
from routes.common import api_response, json_body
from services.auth import role_required
from services.plan_catalog import create_plan, get_plan, list_plans, update_plan

plans_bp = Blueprint("plans", __name__, url_prefix="/api/subscriptions/plans")


@plans_bp.route("", methods=["GET"])
@role_required("view_billing")
def index():
    include_inactive = request.args.get("includeInactive", "").lower() in ("1", "true", "yes")
    plans = list_plans(include_inactive=include_inactive)
    return api_response([p.to_dict() for p in plans])


@plans_bp.route("", methods=["POST"])
@role_required("manage_billing")
def create():
    plan = create_plan(json_body())
    commit_session("create plan")
    return api_response(plan.to_dict(), "Plan created", 201)


@plans_bp.route("/<int:plan_id>", methods=["GET"])
@role_required("view_billing")
def detail(plan_id):
    return api_response(get_plan(plan_id).to_dict())


@plans_bp.route("/<int:plan_id>", methods=["PATCH"])
@role_required("manage_billing")
def update(plan_id):
    plan = update_plan(plan_id, json_body())
    commit_session("update plan")
    return api_response(plan.to_dict(), "Plan updated")
