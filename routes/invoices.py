"""Invoice routes."""

from decimal import Decimal

from flask import Blueprint, current_app, request

from errors import BillingError, ValidationError
from extensions import limiter
from routes.common import api_response, document_store, json_body
from services.auth import actor_name, role_required
from services.invoice import (
    attach_receipt,
    financial_dashboard,
    generate_invoice,
    get_invoice,
    list_overdue_invoices,
    list_tenant_invoices,
    list_unpaid_invoices,
    mark_invoice_paid,
    plans_history,
    send_reminder,
)
from services.subscription import get_tenant

invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/subscriptions/invoices")


@invoices_bp.route("/generate", methods=["POST"])
@role_required("manage_billing")
@limiter.limit("30 per minute")
def generate():
    data = json_body()
    if data.get("tenantId") in (None, ""):
        raise ValidationError({"tenantId": "Tenant is required"})
    cfg = current_app.config["BILLING_CONFIG"]
    invoice = generate_invoice(
        data["tenantId"],
        actor_name(),
        billing_type=data.get("billingType"),
        template=data.get("invoiceTemplate"),
        default_tax_rate=Decimal(str(cfg.default_tax_rate)),
        due_days=cfg.invoice_due_days,
    )
    return api_response(invoice.to_dict(), "Invoice generated", 201)


@invoices_bp.route("/tenant/<int:tenant_id>", methods=["GET"])
@role_required("view_billing")
def tenant_invoices(tenant_id):
    get_tenant(tenant_id)
    return api_response([inv.to_dict() for inv in list_tenant_invoices(tenant_id)])


@invoices_bp.route("/tenant/<int:tenant_id>/plans-history", methods=["GET"])
@role_required("view_billing")
def tenant_plans_history(tenant_id):
    get_tenant(tenant_id)
    return api_response(plans_history(tenant_id))


@invoices_bp.route("/<int:invoice_id>", methods=["GET"])
@role_required("view_billing")
def detail(invoice_id):
    return api_response(get_invoice(invoice_id).to_dict())


@invoices_bp.route("/<int:invoice_id>/mark-paid", methods=["POST"])
@role_required("manage_billing")
def mark_paid(invoice_id):
    data = json_body()
    invoice = mark_invoice_paid(
        invoice_id,
        data.get("amount"),
        data.get("paymentMethod"),
        data.get("paymentReference"),
        actor_name(),
    )
    return api_response(invoice.to_dict(), "Payment recorded")


@invoices_bp.route("/<int:invoice_id>/receipt", methods=["POST"])
@role_required("manage_billing")
def upload_receipt(invoice_id):
    get_invoice(invoice_id)
    upload = request.files.get("receipt")
    if upload is None:
        raise ValidationError({"receiptFile": "Receipt file is required"})
    handle = document_store().store_receipt(upload)
    try:
        invoice = attach_receipt(invoice_id, handle, actor_name())
    except BillingError:
        document_store().delete(handle)
        raise
    return api_response(invoice.to_dict(), "Receipt attached")


@invoices_bp.route("/<int:invoice_id>/reminder", methods=["POST"])
@role_required("manage_billing")
def reminder(invoice_id):
    invoice = send_reminder(invoice_id, actor_name())
    return api_response(invoice.to_dict(), "Reminder recorded")


@invoices_bp.route("/unpaid", methods=["GET"])
@role_required("view_billing")
def unpaid():
    return api_response([inv.to_dict() for inv in list_unpaid_invoices()])


@invoices_bp.route("/overdue", methods=["GET"])
@role_required("view_billing")
def overdue():
    return api_response([inv.to_dict() for inv in list_overdue_invoices()])


@invoices_bp.route("/dashboard", methods=["GET"])
@role_required("view_billing")
def dashboard():
    return api_response(financial_dashboard())
