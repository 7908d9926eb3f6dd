"""Application factory for the tenant billing service."""

from __future__ import annotations

import atexit
import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event

from celery_app import init_celery
from config import env_bool, enable_sqlite_fks, load_config
from errors import BillingError
from extensions import db, limiter
from routes import register_blueprints
from services.auth import load_current_actor
from services.document_store import DocumentStore
from services.monitoring import TenantMonitor
from services.plan_catalog import seed_default_plans
from utils import to_millis, utc_now

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _error_body(message: str, errors=None) -> dict:
    return {
        "success": False,
        "error": message,
        "errors": errors or {},
        "timestamp": to_millis(utc_now()),
    }


def _seed_subscription_plans() -> None:
    """Insert the default plan catalog on an empty database."""
    added = seed_default_plans()
    if added:
        db.session.commit()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app():
    """Create and configure the Flask application."""
    app_cfg, billing_cfg, monitoring_cfg, storage_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["MAX_CONTENT_LENGTH"] = storage_cfg.max_receipt_bytes + 1024 * 1024
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["BILLING_CONFIG"] = billing_cfg
    app.config["MONITORING_CONFIG"] = monitoring_cfg
    app.config["STORAGE_CONFIG"] = storage_cfg

    app.config["RATELIMIT_ENABLED"] = env_bool("RATELIMIT_ENABLED", True)

    # Initialize extensions
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()
        _seed_subscription_plans()

    app.extensions["document_store"] = DocumentStore(
        storage_cfg.receipt_dir, storage_cfg.max_receipt_bytes
    )
    monitor = TenantMonitor(app, monitoring_cfg)
    app.extensions["tenant_monitor"] = monitor
    atexit.register(monitor.stop_all)
    init_celery(app)

    app.before_request(load_current_actor)
    register_blueprints(app)

    @app.errorhandler(BillingError)
    def billing_error(error):
        db.session.rollback()
        if error.status_code >= 500:
            logger.error("%s: %s", type(error).__name__, error.message)
        return jsonify(_error_body(error.message, error.errors)), error.status_code

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify(_error_body("Resource not found.")), 404

    @app.errorhandler(405)
    def method_not_allowed(_error):
        return jsonify(_error_body("Method not allowed.")), 405

    @app.errorhandler(413)
    def too_large(_error):
        return jsonify(_error_body("Upload is too large.", {"receiptFile": "File too large"})), 413

    @app.errorhandler(429)
    def ratelimit_handler(_error):
        return jsonify(_error_body("Too many requests. Try again later.")), 429

    @app.errorhandler(500)
    def server_error(_error):
        db.session.rollback()
        return jsonify(_error_body("Internal server error.")), 500

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
