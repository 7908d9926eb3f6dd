"""Integration test suite for the tenant billing service.

Tests cover: app creation, authorization, plan catalog, assignment and
extension, the status state machine, invoices and payments, the renewal
sweep, usage, per-tenant locks and monitoring loops.
"""

import datetime
import io
import json
import os
import tempfile
import threading
from decimal import Decimal

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["RECEIPT_DIR"] = tempfile.mkdtemp(prefix="receipts-")

from click.testing import CliRunner
from werkzeug.datastructures import FileStorage

from app import create_app
from celery_app import celery
from cli import cli
from errors import PermissionDenied, StateConflictError
from extensions import db
from models import Invoice, StatusHistoryEntry, SubscriptionPlan, Tenant, TenantUser
from services.locks import tenant_lock
from services.monitoring import PeriodicTask
from services.renewal import _sweep_lock, process_expiring_tenants
from services.subscription import assign_plan, suspend_tenant, suspend_tenant_user
from tasks import process_expiring_tenants_task
from utils import utc_now

ADMIN = {"X-User-Email": "admin@example.com", "X-User-Role": "BILLING_ADMIN"}
SUPPORT = {"X-User-Email": "support@example.com", "X-User-Role": "SUPPORT"}


@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    application.config["RATELIMIT_ENABLED"] = False
    yield application
    application.extensions["tenant_monitor"].stop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def plan_id(app):
    """A plan priced 100 / month, 1000 / year, 7 grace days."""
    with app.app_context():
        plan = SubscriptionPlan(
            name="Standard",
            slug="standard",
            category="PREMIUM",
            price_monthly=Decimal("100.00"),
            price_yearly=Decimal("1000.00"),
            currency="EUR",
            max_users=10,
            max_database_storage_mb=1000,
            grace_period_days=7,
        )
        db.session.add(plan)
        db.session.commit()
        return plan.id


def create_tenant(client, name="Acme", **extra):
    resp = client.post("/api/tenants", json={"name": name, **extra}, headers=ADMIN)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["data"]["tenantId"]


def add_user(client, tenant_id, email, role="TENANT_USER"):
    resp = client.post(
        f"/api/tenants/{tenant_id}/users", json={"email": email, "role": role}, headers=ADMIN
    )
    assert resp.status_code == 201
    return resp.get_json()["data"]["id"]


def assign(client, tenant_id, plan_id, **payload):
    body = {"planId": plan_id, "invoiceType": "STANDARD", "billingMethod": "MONTHLY", "taxRate": 0.2}
    body.update(payload)
    return client.post(
        f"/api/subscriptions/tenants/{tenant_id}/assign-plan", json=body, headers=ADMIN
    )


def stored_receipt(app, filename="receipt.pdf"):
    upload = FileStorage(io.BytesIO(b"%PDF-1.4 receipt"), filename=filename, content_type="application/pdf")
    return app.extensions["document_store"].store_receipt(upload)


def history_count(app, tenant_id):
    with app.app_context():
        return StatusHistoryEntry.query.filter_by(tenant_id=tenant_id).count()


def assign_in_past(app, tenant_id, plan_id, days_ago, **payload):
    body = {"planId": plan_id, "invoiceType": "STANDARD", "billingMethod": "MONTHLY", "taxRate": 0.2}
    body.update(payload)
    with app.app_context():
        past = utc_now() - datetime.timedelta(days=days_ago)
        assign_plan(tenant_id, body, "tester@example.com", now=past)


# ---------------------------------------------------------------------------
# App creation / authorization
# ---------------------------------------------------------------------------


class TestAppCreation:
    def test_create_app(self, app):
        assert app is not None
        assert app.config["TESTING"]

    def test_config_loaded(self, app):
        cfg = app.config["BILLING_CONFIG"]
        assert cfg.default_tax_rate == 0.2
        assert cfg.usage_warning_percent == 80
        assert app.config["MONITORING_CONFIG"].status_check_interval == 300

    def test_default_plans_seeded(self, app):
        with app.app_context():
            slugs = {p.slug for p in SubscriptionPlan.query.all()}
        assert {"basic", "premium", "enterprise"} <= slugs

    def test_unknown_route_is_json(self, client):
        resp = client.get("/api/nothing-here")
        assert resp.status_code == 404
        assert resp.get_json()["success"] is False


class TestAuthorization:
    def test_missing_identity_denied(self, client):
        resp = client.get("/api/subscriptions/plans")
        assert resp.status_code == 403
        assert resp.get_json()["success"] is False

    def test_support_can_read(self, client):
        resp = client.get("/api/subscriptions/plans", headers=SUPPORT)
        assert resp.status_code == 200
        assert resp.get_json()["success"] is True

    def test_support_cannot_write(self, client):
        resp = client.post("/api/tenants", json={"name": "Nope"}, headers=SUPPORT)
        assert resp.status_code == 403

    def test_super_admin_can_write(self, client):
        headers = {"X-User-Email": "root@example.com", "X-User-Role": "SUPER_ADMIN"}
        resp = client.post("/api/tenants", json={"name": "Root Co"}, headers=headers)
        assert resp.status_code == 201


# ---------------------------------------------------------------------------
# Plan catalog
# ---------------------------------------------------------------------------


class TestPlans:
    def test_create_plan(self, client):
        resp = client.post(
            "/api/subscriptions/plans",
            json={"planName": "Starter", "category": "BASIC", "monthlyPrice": 10, "yearlyPrice": 100},
            headers=ADMIN,
        )
        assert resp.status_code == 201
        data = resp.get_json()["data"]
        assert data["slug"] == "starter"
        assert data["monthlyPrice"] == 10.0
        assert data["gracePeriodDays"] == 7

    def test_create_plan_validation(self, client):
        resp = client.post(
            "/api/subscriptions/plans",
            json={"planName": "", "category": "GOLD", "monthlyPrice": -1},
            headers=ADMIN,
        )
        assert resp.status_code == 400
        errors = resp.get_json()["errors"]
        assert {"planName", "category", "monthlyPrice"} <= set(errors)

    def test_price_update_before_invoicing(self, client, plan_id):
        resp = client.patch(
            f"/api/subscriptions/plans/{plan_id}", json={"monthlyPrice": 110}, headers=ADMIN
        )
        assert resp.status_code == 200
        assert resp.get_json()["data"]["monthlyPrice"] == 110.0

    def test_price_locked_after_invoicing(self, client, plan_id):
        tid = create_tenant(client)
        assert assign(client, tid, plan_id).status_code == 201
        resp = client.patch(
            f"/api/subscriptions/plans/{plan_id}", json={"monthlyPrice": 150}, headers=ADMIN
        )
        assert resp.status_code == 409
        resp = client.patch(
            f"/api/subscriptions/plans/{plan_id}", json={"description": "Still editable"}, headers=ADMIN
        )
        assert resp.status_code == 200

    def test_unknown_plan(self, client):
        resp = client.get("/api/subscriptions/plans/9999", headers=ADMIN)
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TestTenants:
    def test_create_tenant_starts_active_without_plan(self, client, app):
        tid = create_tenant(client)
        resp = client.get(f"/api/tenants/{tid}", headers=ADMIN)
        data = resp.get_json()["data"]
        assert data["status"] == "ACTIVE"
        assert data["planId"] is None
        assert data["gracePeriodMode"] == "auto"

        history = client.get(
            f"/api/subscriptions/tenants/{tid}/status-history", headers=ADMIN
        ).get_json()["data"]
        assert len(history) == 1
        assert history[0]["previousStatus"] is None
        assert history[0]["newStatus"] == "ACTIVE"

    def test_duplicate_slug(self, client):
        create_tenant(client, "Acme")
        resp = client.post("/api/tenants", json={"name": "Acme"}, headers=ADMIN)
        assert resp.status_code == 400
        assert "slug" in resp.get_json()["errors"]

    def test_manual_grace_configuration(self, client):
        tid = create_tenant(client, gracePeriodMode="manual", manualGracePeriod=3)
        data = client.get(f"/api/tenants/{tid}", headers=ADMIN).get_json()["data"]
        assert data["gracePeriodMode"] == "manual"
        assert data["manualGracePeriod"] == 3

    def test_missing_tenant(self, client):
        assert client.get("/api/tenants/4242", headers=ADMIN).status_code == 404


# ---------------------------------------------------------------------------
# Assignment / extension
# ---------------------------------------------------------------------------


class TestAssignPlan:
    def test_scenario_a_standard_monthly(self, client, plan_id):
        tid = create_tenant(client)
        resp = assign(client, tid, plan_id)
        assert resp.status_code == 201
        invoice = resp.get_json()["data"]["invoice"]
        assert invoice["subtotalAmount"] == 100.0
        assert invoice["taxAmount"] == 20.0
        assert invoice["totalAmount"] == 120.0
        assert invoice["remainingAmount"] == 120.0
        assert invoice["status"] == "SENT"
        assert invoice["paymentStatus"] == "PENDING"
        assert invoice["invoiceNumber"].startswith("INV-")
        assert [e["eventType"] for e in invoice["events"]] == ["CREATED"]

        tenant = resp.get_json()["data"]["tenant"]
        assert tenant["planId"] == plan_id
        assert tenant["planExpiryDate"] > tenant["planStartDate"]
        assert tenant["currentPlanPrice"] == 100.0

    def test_scenario_b_paid_in_full(self, client, plan_id, app):
        tid = create_tenant(client)
        receipt = stored_receipt(app)
        resp = assign(
            client, tid, plan_id,
            receiptHandle=receipt,
            paymentMethod="BANK_TRANSFER",
            paymentReference="TX-1",
            paymentStatus="PAID",
            paidAmount=120,
        )
        assert resp.status_code == 201
        invoice = resp.get_json()["data"]["invoice"]
        assert invoice["status"] == "PAID"
        assert invoice["paymentStatus"] == "PAID"
        assert invoice["remainingAmount"] == 0.0
        assert invoice["receiptHandle"] == receipt

    def test_scenario_c_partial_needs_due_date(self, client, plan_id, app):
        tid = create_tenant(client)
        receipt = stored_receipt(app)
        resp = assign(
            client, tid, plan_id,
            receiptHandle=receipt,
            paymentMethod="BANK_TRANSFER",
            paymentReference="TX-1",
            paymentStatus="PARTIAL",
            paidAmount=50,
        )
        assert resp.status_code == 400
        assert "dueDate" in resp.get_json()["errors"]
        with app.app_context():
            assert Invoice.query.count() == 0
            assert db.session.get(Tenant, tid).plan_id is None

    def test_overpayment_rejected(self, client, plan_id, app):
        tid = create_tenant(client)
        resp = assign(
            client, tid, plan_id,
            receiptHandle=stored_receipt(app),
            paymentMethod="CASH",
            paymentReference="X",
            paymentStatus="PAID",
            paidAmount=500,
        )
        assert resp.status_code == 400
        assert resp.get_json()["errors"]["paidAmount"] == "Paid amount cannot exceed total"

    def test_missing_plan(self, client):
        tid = create_tenant(client)
        resp = client.post(
            f"/api/subscriptions/tenants/{tid}/assign-plan",
            json={"invoiceType": "STANDARD", "billingMethod": "MONTHLY"},
            headers=ADMIN,
        )
        assert resp.status_code == 400
        assert "planId" in resp.get_json()["errors"]

    def test_manual_grace_requires_value(self, client, plan_id):
        tid = create_tenant(client)
        resp = assign(client, tid, plan_id, gracePeriodMode="manual")
        assert resp.status_code == 400
        assert resp.get_json()["errors"]["manualGracePeriod"] == "Manual grace period requires a value"

    def test_prepaid_unaccounted_has_no_amounts(self, client, plan_id):
        tid = create_tenant(client)
        resp = assign(client, tid, plan_id, invoiceType="PREPAID", isPrepayeInvoiceContab=0)
        assert resp.status_code == 201
        invoice = resp.get_json()["data"]["invoice"]
        assert invoice["pricingApplicable"] is False
        assert invoice["totalAmount"] is None
        assert invoice["status"] == "DRAFT"

    def test_custom_billing(self, client, plan_id):
        tid = create_tenant(client)
        start = int(datetime.datetime(2030, 1, 1, tzinfo=datetime.timezone.utc).timestamp() * 1000)
        end = int(datetime.datetime(2030, 4, 1, tzinfo=datetime.timezone.utc).timestamp() * 1000)
        resp = assign(
            client, tid, plan_id,
            billingMethod="CUSTOM", startDate=start, endDate=end, customPrice=250, taxRate=0,
        )
        assert resp.status_code == 201
        data = resp.get_json()["data"]
        assert data["invoice"]["totalAmount"] == 250.0
        assert data["tenant"]["planExpiryDate"] == end

    def test_multipart_with_receipt(self, client, plan_id, app):
        tid = create_tenant(client)
        body = {
            "planId": plan_id, "invoiceType": "STANDARD", "billingMethod": "MONTHLY",
            "taxRate": 0.2, "paymentMethod": "CREDIT_CARD", "paymentReference": "CC-9",
            "paymentStatus": "PAID",
        }
        resp = client.post(
            f"/api/subscriptions/tenants/{tid}/assign-plan",
            data={
                "request": json.dumps(body),
                "receipt": (io.BytesIO(b"%PDF-1.4 receipt"), "receipt.pdf", "application/pdf"),
            },
            content_type="multipart/form-data",
            headers=ADMIN,
        )
        assert resp.status_code == 201, resp.get_json()
        invoice = resp.get_json()["data"]["invoice"]
        assert invoice["status"] == "PAID"
        assert app.extensions["document_store"].exists(invoice["receiptHandle"])

    def test_multipart_rejects_wrong_type(self, client, plan_id):
        tid = create_tenant(client)
        resp = client.post(
            f"/api/subscriptions/tenants/{tid}/assign-plan",
            data={
                "request": json.dumps({"planId": plan_id}),
                "receipt": (io.BytesIO(b"MZ"), "tool.exe", "application/octet-stream"),
            },
            content_type="multipart/form-data",
            headers=ADMIN,
        )
        assert resp.status_code == 400
        assert "receiptFile" in resp.get_json()["errors"]

    def test_unknown_receipt_handle_rejected(self, client, plan_id, app):
        tid = create_tenant(client)
        for handle in ("never-uploaded.pdf", "../config.yaml"):
            resp = assign(
                client, tid, plan_id,
                receiptHandle=handle,
                paymentMethod="BANK_TRANSFER",
                paymentReference="TX-1",
                paymentStatus="PAID",
            )
            assert resp.status_code == 400
            assert "receiptFile" in resp.get_json()["errors"]
        with app.app_context():
            assert Invoice.query.filter_by(tenant_id=tid).count() == 0

    def test_assignment_revives_expired_tenant(self, client, plan_id, app):
        tid = create_tenant(client)
        assign_in_past(app, tid, plan_id, 60, autoRenewal=False)
        with app.app_context():
            process_expiring_tenants()
            assert db.session.get(Tenant, tid).status == "EXPIRED"
        resp = assign(client, tid, plan_id)
        assert resp.status_code == 201
        assert resp.get_json()["data"]["tenant"]["status"] == "ACTIVE"


class TestExtendPlan:
    def test_extend_requires_plan(self, client):
        tid = create_tenant(client)
        resp = client.post(
            f"/api/subscriptions/tenants/{tid}/extend-plan",
            json={"invoiceType": "STANDARD", "billingMethod": "MONTHLY"},
            headers=ADMIN,
        )
        assert resp.status_code == 409

    def test_extend_starts_at_current_expiry(self, client, plan_id):
        tid = create_tenant(client)
        first = assign(client, tid, plan_id).get_json()["data"]["tenant"]
        resp = client.post(
            f"/api/subscriptions/tenants/{tid}/extend-plan",
            json={"invoiceType": "STANDARD", "billingMethod": "MONTHLY", "taxRate": 0.2},
            headers=ADMIN,
        )
        assert resp.status_code == 201
        data = resp.get_json()["data"]
        assert data["invoice"]["kind"] == "EXTENSION"
        assert data["invoice"]["periodStart"] == first["planExpiryDate"]
        assert data["tenant"]["planExpiryDate"] > first["planExpiryDate"]
        assert data["tenant"]["planStartDate"] == first["planStartDate"]

    def test_extension_creates_new_invoice(self, client, plan_id, app):
        tid = create_tenant(client)
        assign(client, tid, plan_id)
        client.post(
            f"/api/subscriptions/tenants/{tid}/extend-plan",
            json={"invoiceType": "STANDARD", "billingMethod": "YEARLY", "taxRate": 0.2},
            headers=ADMIN,
        )
        with app.app_context():
            invoices = Invoice.query.filter_by(tenant_id=tid).order_by(Invoice.id).all()
            assert len(invoices) == 2
            assert invoices[0].total_amount == Decimal("120.00")
            assert invoices[1].total_amount == Decimal("1200.00")


class TestChangePlan:
    def test_change_plan(self, client, plan_id, app):
        tid = create_tenant(client)
        assign(client, tid, plan_id)
        with app.app_context():
            premium = SubscriptionPlan.query.filter_by(slug="premium").first().id
        resp = client.put(
            f"/api/subscriptions/tenants/{tid}/change-plan",
            json={"newPlanId": premium, "reason": "Upgrade", "paymentReference": "UP-1"},
            headers=ADMIN,
        )
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["planId"] == premium
        assert data["currentPlanPrice"] == 99.0

    def test_change_plan_requires_reason(self, client, plan_id):
        tid = create_tenant(client)
        assign(client, tid, plan_id)
        resp = client.put(
            f"/api/subscriptions/tenants/{tid}/change-plan",
            json={"newPlanId": 1},
            headers=ADMIN,
        )
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestStatusTransitions:
    def url(self, tid, action):
        return f"/api/subscriptions/tenants/{tid}/{action}"

    def test_suspend_requires_reason(self, client, app):
        tid = create_tenant(client)
        resp = client.post(self.url(tid, "suspend"), json={}, headers=ADMIN)
        assert resp.status_code == 400
        assert "reason" in resp.get_json()["errors"]
        assert history_count(app, tid) == 1

    def test_suspend_and_reactivate(self, client, app):
        tid = create_tenant(client)
        resp = client.post(self.url(tid, "suspend"), json={"reason": "Unpaid"}, headers=ADMIN)
        assert resp.status_code == 200
        entry = resp.get_json()["data"]
        assert (entry["previousStatus"], entry["newStatus"]) == ("ACTIVE", "SUSPENDED")
        assert entry["changedBy"] == "admin@example.com"

        resp = client.post(self.url(tid, "reactivate"), json={}, headers=ADMIN)
        assert resp.status_code == 200
        assert resp.get_json()["data"]["newStatus"] == "ACTIVE"
        assert resp.get_json()["data"]["reason"]
        assert history_count(app, tid) == 3

    def test_double_suspend_conflict(self, client, app):
        tid = create_tenant(client)
        client.post(self.url(tid, "suspend"), json={"reason": "Unpaid"}, headers=ADMIN)
        resp = client.post(self.url(tid, "suspend"), json={"reason": "Again"}, headers=ADMIN)
        assert resp.status_code == 409
        assert history_count(app, tid) == 2

    def test_reactivate_active_conflict(self, client):
        tid = create_tenant(client)
        resp = client.post(self.url(tid, "reactivate"), json={}, headers=ADMIN)
        assert resp.status_code == 409

    def test_read_only_requires_users(self, client):
        tid = create_tenant(client)
        resp = client.post(self.url(tid, "read-only"), json={"reason": "Audit"}, headers=ADMIN)
        assert resp.status_code == 400
        assert "userIds" in resp.get_json()["errors"]

    def test_read_only_scopes_users(self, client, app):
        tid = create_tenant(client)
        u1 = add_user(client, tid, "one@acme.test")
        u2 = add_user(client, tid, "two@acme.test")
        resp = client.post(
            self.url(tid, "read-only"), json={"reason": "Audit", "userIds": [u1]}, headers=ADMIN
        )
        assert resp.status_code == 200
        assert resp.get_json()["data"]["userIds"] == [u1]
        with app.app_context():
            assert db.session.get(TenantUser, u1).access_mode == "READ_ONLY"
            assert db.session.get(TenantUser, u2).access_mode == "NORMAL"
        client.post(self.url(tid, "reactivate"), json={"reason": "Audit done"}, headers=ADMIN)
        with app.app_context():
            assert db.session.get(TenantUser, u1).access_mode == "NORMAL"

    def test_read_only_rejects_foreign_users(self, client):
        tid = create_tenant(client, "Acme")
        other = create_tenant(client, "Other")
        stranger = add_user(client, other, "x@other.test")
        resp = client.post(
            self.url(tid, "read-only"), json={"reason": "Audit", "userIds": [stranger]}, headers=ADMIN
        )
        assert resp.status_code == 400

    def test_emergency_access(self, client, app):
        tid = create_tenant(client)
        uid = add_user(client, tid, "ops@acme.test")
        resp = client.post(
            self.url(tid, "emergency-access"),
            json={"reason": "Incident 42", "userIds": [uid]},
            headers=ADMIN,
        )
        assert resp.status_code == 200
        with app.app_context():
            assert db.session.get(TenantUser, uid).access_mode == "EMERGENCY"
        resp = client.post(self.url(tid, "suspend"), json={"reason": "x"}, headers=ADMIN)
        assert resp.status_code == 409

    def test_manual_grace_period(self, client, plan_id):
        tid = create_tenant(client)
        assign(client, tid, plan_id)
        resp = client.post(self.url(tid, "grace-period"), json={"reason": "Goodwill"}, headers=ADMIN)
        assert resp.status_code == 200
        status = client.get(self.url(tid, "status"), headers=ADMIN).get_json()["data"]
        assert status["status"] == "GRACE_PERIOD"
        assert status["isInGracePeriod"] is True
        assert status["checkedAt"] is not None

    def test_status_of_missing_tenant(self, client):
        assert client.get(self.url(999, "status"), headers=ADMIN).status_code == 404


class TestProtectedAdministrator:
    def test_scenario_e_admin_cannot_be_suspended(self, client, app):
        tid = create_tenant(client)
        admin_id = add_user(client, tid, "boss@acme.test", role="TENANT_ADMIN")
        resp = client.post(
            f"/api/tenants/{tid}/users/{admin_id}/suspend", json={"reason": "x"}, headers=ADMIN
        )
        assert resp.status_code == 403
        with app.app_context():
            assert db.session.get(Tenant, tid).status == "ACTIVE"
            assert db.session.get(TenantUser, admin_id).status == "ACTIVE"
        assert history_count(app, tid) == 1

    def test_admin_cannot_be_reactivated_either(self, client, app):
        tid = create_tenant(client)
        admin_id = add_user(client, tid, "boss@acme.test", role="TENANT_ADMIN")
        with app.app_context():
            with pytest.raises(PermissionDenied):
                suspend_tenant_user(tid, admin_id, "x", "tester")
        resp = client.post(f"/api/tenants/{tid}/users/{admin_id}/reactivate", json={}, headers=ADMIN)
        assert resp.status_code == 403

    def test_regular_user_suspension(self, client):
        tid = create_tenant(client)
        uid = add_user(client, tid, "temp@acme.test")
        resp = client.post(
            f"/api/tenants/{tid}/users/{uid}/suspend", json={"reason": "Left"}, headers=ADMIN
        )
        assert resp.status_code == 200
        assert resp.get_json()["data"]["status"] == "SUSPENDED"
        resp = client.post(f"/api/tenants/{tid}/users/{uid}/reactivate", json={}, headers=ADMIN)
        assert resp.get_json()["data"]["status"] == "ACTIVE"


# ---------------------------------------------------------------------------
# Invoices and payments
# ---------------------------------------------------------------------------


class TestInvoices:
    def _invoice(self, client, plan_id, **payload):
        tid = create_tenant(client)
        resp = assign(client, tid, plan_id, **payload)
        return tid, resp.get_json()["data"]["invoice"]["invoiceId"]

    def pay(self, client, invoice_id, amount):
        return client.post(
            f"/api/subscriptions/invoices/{invoice_id}/mark-paid",
            json={"amount": amount, "paymentMethod": "BANK_TRANSFER", "paymentReference": "P"},
            headers=ADMIN,
        )

    def test_partial_then_full_payment(self, client, plan_id):
        _, inv = self._invoice(client, plan_id)
        data = self.pay(client, inv, 50).get_json()["data"]
        assert data["status"] == "PARTIAL"
        assert data["remainingAmount"] == 70.0
        data = self.pay(client, inv, 70).get_json()["data"]
        assert data["status"] == "PAID"
        assert data["paymentStatus"] == "PAID"
        assert data["remainingAmount"] == 0.0
        assert [e["eventType"] for e in data["events"]] == ["CREATED", "PAYMENT", "PAYMENT"]

    def test_overpayment_keeps_balance(self, client, plan_id, app):
        _, inv = self._invoice(client, plan_id)
        self.pay(client, inv, 100)
        resp = self.pay(client, inv, 50)
        assert resp.status_code == 400
        assert "paidAmount" in resp.get_json()["errors"]
        with app.app_context():
            invoice = db.session.get(Invoice, inv)
            assert invoice.remaining_amount == Decimal("20.00")
            assert len(invoice.events) == 2

    def test_non_positive_amount(self, client, plan_id):
        _, inv = self._invoice(client, plan_id)
        assert self.pay(client, inv, 0).status_code == 400
        assert self.pay(client, inv, "abc").status_code == 400

    def test_amountless_invoice_cannot_be_paid(self, client, plan_id):
        _, inv = self._invoice(client, plan_id, invoiceType="PREPAID", isPrepayeInvoiceContab=0)
        assert self.pay(client, inv, 10).status_code == 409

    def test_missing_invoice(self, client):
        assert self.pay(client, 777, 10).status_code == 404

    def test_reminder(self, client, plan_id):
        _, inv = self._invoice(client, plan_id)
        resp = client.post(f"/api/subscriptions/invoices/{inv}/reminder", headers=ADMIN)
        assert resp.get_json()["data"]["remindersSent"] == 1
        self.pay(client, inv, 120)
        resp = client.post(f"/api/subscriptions/invoices/{inv}/reminder", headers=ADMIN)
        assert resp.status_code == 409

    def test_receipt_upload(self, client, plan_id):
        _, inv = self._invoice(client, plan_id)
        resp = client.post(
            f"/api/subscriptions/invoices/{inv}/receipt",
            data={"receipt": (io.BytesIO(b"\x89PNG data"), "scan.png", "image/png")},
            content_type="multipart/form-data",
            headers=ADMIN,
        )
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["receiptHandle"].endswith("scan.png")
        assert data["events"][-1]["eventType"] == "RECEIPT_ATTACHED"

    def test_generate_monthly(self, client, plan_id):
        tid = create_tenant(client)
        assign(client, tid, plan_id)
        resp = client.post(
            "/api/subscriptions/invoices/generate",
            json={"tenantId": tid, "billingType": "MONTHLY", "invoiceTemplate": "premium"},
            headers=ADMIN,
        )
        assert resp.status_code == 201
        data = resp.get_json()["data"]
        assert data["kind"] == "GENERATED"
        assert data["invoiceTemplate"] == "premium"
        assert data["totalAmount"] == 120.0

    def test_generate_prorata(self, client, plan_id):
        tid = create_tenant(client)
        assign(client, tid, plan_id)
        resp = client.post(
            "/api/subscriptions/invoices/generate",
            json={"tenantId": tid, "billingType": "PRORATA"},
            headers=ADMIN,
        )
        assert resp.status_code == 201
        data = resp.get_json()["data"]
        assert 0 < data["subtotalAmount"] <= 100.0

    def test_generate_validation(self, client, plan_id):
        tid = create_tenant(client)
        resp = client.post(
            "/api/subscriptions/invoices/generate", json={"tenantId": tid}, headers=ADMIN
        )
        assert resp.status_code == 409
        assign(client, tid, plan_id)
        resp = client.post(
            "/api/subscriptions/invoices/generate",
            json={"tenantId": tid, "invoiceTemplate": "fancy"},
            headers=ADMIN,
        )
        assert resp.status_code == 400

    def test_read_models(self, client, plan_id):
        tid, inv = self._invoice(client, plan_id)
        listing = client.get(f"/api/subscriptions/invoices/tenant/{tid}", headers=SUPPORT)
        assert [i["invoiceId"] for i in listing.get_json()["data"]] == [inv]

        history = client.get(
            f"/api/subscriptions/invoices/tenant/{tid}/plans-history", headers=SUPPORT
        ).get_json()["data"]
        assert history[0]["planId"] == plan_id
        assert history[0]["kind"] == "ASSIGNMENT"

        unpaid = client.get("/api/subscriptions/invoices/unpaid", headers=SUPPORT).get_json()["data"]
        assert inv in [i["invoiceId"] for i in unpaid]

        overdue = client.get("/api/subscriptions/invoices/overdue", headers=SUPPORT)
        assert overdue.status_code == 200

        dashboard = client.get("/api/subscriptions/invoices/dashboard", headers=SUPPORT).get_json()["data"]
        eur = next(c for c in dashboard["currencies"] if c["currency"] == "EUR")
        assert eur["totalOutstanding"] == 120.0

    def test_overdue_listing(self, client, plan_id, app):
        tid = create_tenant(client)
        assign_in_past(app, tid, plan_id, 40)
        overdue = client.get("/api/subscriptions/invoices/overdue", headers=ADMIN).get_json()["data"]
        assert len(overdue) == 1
        assert overdue[0]["status"] == "OVERDUE"


# ---------------------------------------------------------------------------
# Renewal sweep
# ---------------------------------------------------------------------------


class TestRenewalSweep:
    def test_scenario_d_grace_period(self, client, plan_id, app):
        tid = create_tenant(client)
        assign_in_past(app, tid, plan_id, 32, autoRenewal=False)
        with app.app_context():
            result = process_expiring_tenants()
            tenant = db.session.get(Tenant, tid)
            assert result.graced == 1
            assert result.expired == 0
            assert tenant.status == "GRACE_PERIOD"
            assert tenant.is_in_grace_period
            assert tenant.grace_period_end_date is not None

    def test_sweep_is_idempotent(self, client, plan_id, app):
        graced = create_tenant(client, "Graced")
        renewed = create_tenant(client, "Renewed", paymentMethod="BANK_TRANSFER")
        expired = create_tenant(client, "Expired")
        assign_in_past(app, graced, plan_id, 32, autoRenewal=False)
        assign_in_past(app, renewed, plan_id, 32, paymentMethod="BANK_TRANSFER")
        assign_in_past(app, expired, plan_id, 60, autoRenewal=False)

        with app.app_context():
            first = process_expiring_tenants()
            assert (first.renewed, first.graced, first.expired, first.failed) == (1, 1, 1, 0)
            assert first.processed_count == 3
            invoices = Invoice.query.count()
            entries = StatusHistoryEntry.query.count()

            second = process_expiring_tenants()
            assert second.processed_count == 0
            assert Invoice.query.count() == invoices
            assert StatusHistoryEntry.query.count() == entries

    def test_auto_renewal_advances_period(self, client, plan_id, app):
        tid = create_tenant(client, paymentMethod="CREDIT_CARD")
        assign_in_past(app, tid, plan_id, 32)
        with app.app_context():
            old_expiry = db.session.get(Tenant, tid).plan_expiry_date
            process_expiring_tenants()
            tenant = db.session.get(Tenant, tid)
            renewal = Invoice.query.filter_by(tenant_id=tid, kind="RENEWAL").one()
            assert tenant.status == "ACTIVE"
            assert tenant.plan_expiry_date > old_expiry
            assert renewal.period_start == old_expiry
            assert renewal.total_amount == Decimal("120.00")
            assert renewal.renewal_key.startswith(f"{tid}:")

    def test_suspended_tenant_not_renewed(self, client, plan_id, app):
        tid = create_tenant(client, paymentMethod="CREDIT_CARD")
        assign_in_past(app, tid, plan_id, 32)
        client.post(
            f"/api/subscriptions/tenants/{tid}/suspend", json={"reason": "Fraud"}, headers=ADMIN
        )
        with app.app_context():
            result = process_expiring_tenants()
            assert result.renewed == 0
            assert db.session.get(Tenant, tid).status == "GRACE_PERIOD"

    def test_closed_grace_window_expires(self, client, plan_id, app):
        tid = create_tenant(client, gracePeriodMode="manual", manualGracePeriod=1)
        assign_in_past(app, tid, plan_id, 35, autoRenewal=False, gracePeriodMode="manual", manualGracePeriod=1)
        with app.app_context():
            result = process_expiring_tenants()
            assert result.expired == 1
            assert db.session.get(Tenant, tid).status == "EXPIRED"

    def test_api_endpoint(self, client, plan_id, app):
        tid = create_tenant(client)
        assign_in_past(app, tid, plan_id, 60, autoRenewal=False)
        resp = client.post("/api/subscriptions/tenants/process-expiring", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.get_json()["data"] == {
            "processedCount": 1, "renewed": 0, "graced": 0, "expired": 1, "failed": 0,
        }

    def test_manual_auto_renew(self, client, plan_id):
        tid = create_tenant(client, paymentMethod="PAYPAL")
        assign(client, tid, plan_id)
        resp = client.post(f"/api/subscriptions/tenants/{tid}/auto-renew", json={}, headers=ADMIN)
        assert resp.status_code == 201
        assert resp.get_json()["data"]["kind"] == "RENEWAL"
        resp = client.post(
            f"/api/subscriptions/tenants/{tid}/auto-renew", json={"enabled": False}, headers=ADMIN
        )
        assert resp.get_json()["data"]["autoRenewalEnabled"] is False
        resp = client.post(f"/api/subscriptions/tenants/{tid}/auto-renew", json={}, headers=ADMIN)
        assert resp.status_code == 409

    def test_backlog_renewed_in_one_sweep(self, client, plan_id, app):
        tid = create_tenant(client, paymentMethod="BANK_TRANSFER")
        assign_in_past(app, tid, plan_id, 95)
        with app.app_context():
            first = process_expiring_tenants()
            assert first.renewed == 1
            renewals = (
                Invoice.query.filter_by(tenant_id=tid, kind="RENEWAL")
                .order_by(Invoice.period_start)
                .all()
            )
            assert len(renewals) == 3
            for previous, following in zip(renewals, renewals[1:]):
                assert following.period_start == previous.period_end
            tenant = db.session.get(Tenant, tid)
            assert tenant.plan_expiry_date > utc_now().replace(tzinfo=None)
            invoices = Invoice.query.filter_by(tenant_id=tid).count()

            second = process_expiring_tenants()
            assert second.processed_count == 0
            assert Invoice.query.filter_by(tenant_id=tid).count() == invoices

    def test_scheduled_task_runs_sweep(self, client, plan_id, app):
        tid = create_tenant(client)
        assign_in_past(app, tid, plan_id, 60, autoRenewal=False)
        result = process_expiring_tenants_task()
        assert result["expired"] == 1
        with app.app_context():
            assert db.session.get(Tenant, tid).status == "EXPIRED"
        schedule = celery.conf.beat_schedule["process-expiring-tenants-hourly"]
        assert schedule["task"] == process_expiring_tenants_task.name

    def test_scheduled_task_skips_while_sweep_running(self, app):
        assert _sweep_lock.acquire(blocking=False)
        try:
            assert process_expiring_tenants_task() is None
        finally:
            _sweep_lock.release()

    def test_cli_process_expiring(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["process-expiring"])
        assert result.exit_code == 0
        assert "Processed 0 tenants" in result.output


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class TestUsageEndpoint:
    def test_usage_snapshot(self, client, plan_id):
        tid = create_tenant(client)
        assign(client, tid, plan_id)
        for i in range(9):
            add_user(client, tid, f"user{i}@acme.test")
        resp = client.put(
            f"/api/tenants/{tid}/usage",
            json={"databaseUsageMB": 1000, "s3UsageMB": 5, "currentEmployees": 3},
            headers=ADMIN,
        )
        assert resp.status_code == 200
        data = client.get(f"/api/subscriptions/tenants/{tid}/usage", headers=SUPPORT).get_json()["data"]
        assert data["usersUsagePercentage"] == 90.0
        assert data["databaseUsagePercentage"] == 100.0
        assert data["hasAlerts"] is True
        assert data["suspensionRecommended"] is True
        severities = {a["type"]: a["severity"] for a in data["alerts"]}
        assert severities == {"USERS": "WARNING", "DATABASE": "CRITICAL"}

    def test_usage_validation(self, client):
        tid = create_tenant(client)
        resp = client.put(f"/api/tenants/{tid}/usage", json={"s3UsageMB": -1}, headers=ADMIN)
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Concurrency: tenant locks and monitoring loops
# ---------------------------------------------------------------------------


class TestTenantLock:
    def test_busy_tenant_rejected(self, client, app):
        tid = create_tenant(client)
        app.config["BILLING_CONFIG"].tenant_lock_timeout = 0.05
        held, release = threading.Event(), threading.Event()

        def hold():
            with tenant_lock(tid, timeout=1):
                held.set()
                release.wait(5)

        worker = threading.Thread(target=hold)
        worker.start()
        try:
            assert held.wait(5)
            with app.app_context():
                with pytest.raises(StateConflictError):
                    suspend_tenant(tid, "Busy", "tester")
                assert db.session.get(Tenant, tid).status == "ACTIVE"
        finally:
            release.set()
            worker.join(5)
        with app.app_context():
            suspend_tenant(tid, "Now free", "tester")
            assert db.session.get(Tenant, tid).status == "SUSPENDED"

    def test_lock_is_reentrant(self):
        with tenant_lock(12345, timeout=0.1):
            with tenant_lock(12345, timeout=0.1):
                pass


class TestMonitoring:
    def test_creation_protection(self, client):
        tid = create_tenant(client)
        resp = client.post(f"/api/subscriptions/tenants/{tid}/observe", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.get_json()["data"]["observing"] is False

    def test_observe_and_stop(self, client, app):
        monitor = app.extensions["tenant_monitor"]
        monitor.config.creation_protection_seconds = 0
        tid = create_tenant(client)
        resp = client.post(f"/api/subscriptions/tenants/{tid}/observe", headers=ADMIN)
        data = resp.get_json()["data"]
        assert data["observing"] is True
        assert data["status"]["status"] == "ACTIVE"
        assert data["usage"]["tenantId"] == tid
        assert monitor.is_observing(tid)

        resp = client.delete(f"/api/subscriptions/tenants/{tid}/observe", headers=ADMIN)
        assert resp.get_json()["data"]["stopped"] is True
        assert not monitor.is_observing(tid)

    def test_observe_unknown_tenant(self, client):
        resp = client.post("/api/subscriptions/tenants/999/observe", headers=ADMIN)
        assert resp.status_code == 404

    def test_overlapping_tick_suppressed(self, app):
        calls = []
        task = PeriodicTask("test", 60, lambda: calls.append(1), app)
        task._in_flight.acquire()
        try:
            assert task.run_once() is False
        finally:
            task._in_flight.release()
        assert task.run_once() is True
        assert calls == [1]

    def test_failed_tick_keeps_running(self, app):
        def boom():
            raise RuntimeError("metering down")

        task = PeriodicTask("failing", 60, boom, app)
        assert task.run_once() is True

    def test_stop_all(self, client, app):
        monitor = app.extensions["tenant_monitor"]
        monitor.config.creation_protection_seconds = 0
        a, b = create_tenant(client, "A"), create_tenant(client, "B")
        with app.app_context():
            assert monitor.start_observing(a)
            assert monitor.start_observing(b)
        monitor.stop_all()
        assert not monitor.is_observing(a)
        assert not monitor.is_observing(b)
