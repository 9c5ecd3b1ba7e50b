"""
Reminder engine CLI entry point.

Commands:
- run: execute one dispatch run (for cron / systemd timers)
- send: broadcast an ad-hoc notification to every subscription
- generate-vapid-keys: create a VAPID key pair for .env
- init-db: create tables without Alembic (local use and tests)
- release-claims: clear reminder claims abandoned by crashed runs
"""

import json
import sys

import click

from reminder_engine import __version__
from reminder_engine.config.settings import get_settings
from reminder_engine.services.exceptions import ConfigurationError, KeyImportError
from reminder_engine.utils.crypto import generate_vapid_keys
from reminder_engine.utils.logging_config import init_logging


@click.group()
@click.version_option(version=__version__, prog_name="reminder-engine")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """
    Reminder Engine - Web Push appointment reminders.

    Use 'reminder-engine COMMAND --help' for more information on a command.
    """
    ctx.ensure_object(dict)
    init_logging()


@cli.command("run")
@click.option(
    "--json",
    "as_json",
    is_flag=True,
    help="Output the run summary as JSON",
)
def run(as_json: bool):
    """
    Execute one dispatch run.

    Delivers due calendar reminders and scheduled client reminders, prunes
    expired subscriptions and purges the reminder ledger. Safe to start
    while another run is still in progress.
    """
    from reminder_engine.db.database import session_scope
    from reminder_engine.services.dispatch_service import DispatchService

    try:
        with session_scope() as db:
            summary = DispatchService(db).run()
    except (ConfigurationError, KeyImportError) as e:
        click.echo(click.style(f"Error: {e}", fg="red", bold=True), err=True)
        sys.exit(2)

    if as_json:
        click.echo(json.dumps(summary.to_dict(), indent=2))
        return

    click.echo(f"Run {summary.run_id}")
    click.echo(f"  Sent:                  {summary.sent}")
    click.echo(f"  Failed:                {summary.failed}")
    click.echo(f"  Duplicates skipped:    {summary.duplicates_skipped}")
    click.echo(f"  Already notified:      {summary.already_notified}")
    click.echo(f"  Subscriptions removed: {summary.subscriptions_removed}")
    if summary.errors:
        click.echo(click.style(f"  Errors ({len(summary.errors)}):", fg="yellow"))
        for error in summary.errors:
            click.echo(f"    - {error}")


@cli.command("send")
@click.option("--title", required=True, help="Notification title")
@click.option("--body", required=True, help="Notification text")
@click.option(
    "--data",
    "data_json",
    default=None,
    help="JSON object passed to the service worker as notification data",
)
def send(title: str, body: str, data_json):
    """
    Broadcast a notification to every subscription.

    Reports how many subscriptions accepted it and removes expired ones.
    """
    from reminder_engine.db.database import session_scope
    from reminder_engine.services.dispatch_service import DispatchService
    from reminder_engine.services.exceptions import ValidationError

    data = None
    if data_json:
        try:
            data = json.loads(data_json)
        except ValueError as e:
            raise click.BadParameter(f"not valid JSON: {e}", param_hint="--data")
        if not isinstance(data, dict):
            raise click.BadParameter("must be a JSON object", param_hint="--data")

    try:
        with session_scope() as db:
            summary = DispatchService(db).send_notification(title, body, data)
    except ValidationError as e:
        raise click.BadParameter(e.message, param_hint=f"--{e.field}")
    except (ConfigurationError, KeyImportError) as e:
        click.echo(click.style(f"Error: {e}", fg="red", bold=True), err=True)
        sys.exit(2)

    click.echo(f"Sent {summary.sent} notifications")
    click.echo(f"  Failed:                {summary.failed}")
    click.echo(f"  Subscriptions removed: {summary.subscriptions_removed}")


@cli.command("generate-vapid-keys")
@click.option(
    "--subject",
    default=None,
    help="VAPID subject to include in the output (mailto: or https: URL)",
)
def generate_vapid_keys_command(subject):
    """
    Generate a VAPID key pair.

    Prints .env lines for VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY. Keep the
    private key secret; rotating it invalidates every existing subscription.
    """
    public_key, private_key = generate_vapid_keys()
    click.echo(f"VAPID_PUBLIC_KEY={public_key}")
    click.echo(f"VAPID_PRIVATE_KEY={private_key}")
    if subject:
        click.echo(f"VAPID_SUBJECT={subject}")


@cli.command("init-db")
def init_db_command():
    """
    Create database tables.

    For production databases use 'alembic upgrade head' instead.
    """
    from reminder_engine.db.database import init_db

    init_db()
    click.echo(click.style("Database tables created", fg="green"))


@cli.command("release-claims")
def release_claims():
    """Clear backlog claims older than CLAIM_TIMEOUT_SECONDS."""
    from reminder_engine.db.database import session_scope
    from reminder_engine.services.reminder_claim_service import ReminderClaimService

    settings = get_settings()
    with session_scope() as db:
        released = ReminderClaimService(
            db, claim_timeout_seconds=settings.claim_timeout_seconds
        ).release_stale_claims()
    click.echo(f"Released {released} stale claims")


if __name__ == "__main__":
    cli()
