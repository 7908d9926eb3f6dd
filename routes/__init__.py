"""Blueprint registration."""

from routes.invoices import invoices_bp
from routes.plans import plans_bp
from routes.subscriptions import subscriptions_bp
from routes.tenants import tenants_bp

ALL_BLUEPRINTS = [
    plans_bp,
    tenants_bp,
    subscriptions_bp,
    invoices_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
