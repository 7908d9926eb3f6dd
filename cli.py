"""Command line entry points for one-off billing jobs.

Usage::

    python cli.py process-expiring
    python cli.py seed-plans

The periodic sweep runs under Celery beat (see ``celery_app.py``).
"""

from __future__ import annotations

import click


def get_app_context():
    """Get Flask application context."""
    from app import create_app
    app = create_app()
    return app.app_context()


# ---------------------------------------------------------------------------
# Click CLI Group
# ---------------------------------------------------------------------------

@click.group()
def cli():
    """Tenant subscription billing jobs."""
    pass


@cli.command("process-expiring")
def process_expiring():
    """Run one renewal / expiry sweep."""
    with get_app_context():
        from services.renewal import process_expiring_tenants

        result = process_expiring_tenants()
        click.echo(
            f"Processed {result.processed_count} tenants: {result.renewed} renewed, "
            f"{result.graced} in grace period, {result.expired} expired, "
            f"{result.failed} failed"
        )


@cli.command("seed-plans")
def seed_plans():
    """Insert the default plan catalog."""
    with get_app_context():
        from extensions import commit_session
        from services.plan_catalog import seed_default_plans

        added = seed_default_plans()
        commit_session("seed plans")
        click.echo(f"Added {added} plans.")


if __name__ == "__main__":
    cli()
