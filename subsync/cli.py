"""Flask CLI commands: ``flask ledger-sweep``, ``flask resync``, ``flask init-db``."""

import click

from subsync.extensions import db
from subsync.registry import get_services


def register_commands(app):

    @app.cli.command("init-db")
    def init_db():
        """Create all database tables."""
        from subsync import models  # noqa: F401

        db.create_all()
        click.echo("Database initialized")

    @app.cli.command("ledger-sweep")
    def ledger_sweep():
        """Delete financial records past their retention date."""
        removed = get_services().ledger.sweep()
        click.echo(f"Removed {removed} expired financial records")

    @app.cli.command("resync")
    @click.argument("subscription_id", required=False)
    def resync(subscription_id):
        """Overwrite mirror rows with live Stripe state."""
        services = get_services()
        if subscription_id:
            record = services.subscriptions.resync_subscription(subscription_id)
            status = record.status if record else "missing"
            click.echo(f"{subscription_id}: {status}")
            return

        summary = services.subscriptions.resync_all()
        click.echo(f"Synced {summary['synced']} subscriptions, {summary['failed']} failed")
