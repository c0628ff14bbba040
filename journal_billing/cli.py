import json
import secrets

import click
from flask.cli import with_appcontext

from journal_billing.extensions import db
from journal_billing.models import User
from journal_billing.services.plans import seed_default_plans
from journal_billing.services.reminders import send_renewal_reminders
from journal_billing.services.renewals import charge_due_subscriptions
from journal_billing.services.sessions import expire_stale_sessions
from journal_billing.services.sweeper import sweep_unprocessed_webhooks
from journal_billing.services.webhooks import reprocess_webhook


@click.group()
def plans():
    """Plan catalogue."""

@plans.command("seed")
@click.option("--currency", default=None, help="Override PAYMENT_CURRENCY")
@with_appcontext
def plans_seed(currency):
    count = seed_default_plans(currency=currency)
    click.echo(f"Seeded {count} plans")


@click.group()
def payments():
    """Payment reconciliation jobs (cron entry points)."""

@payments.command("sweep-webhooks")
@click.option("--max-attempts", type=int, default=None)
@click.option("--max-age-hours", type=int, default=None)
@click.option("--limit", type=int, default=None)
@with_appcontext
def payments_sweep(max_attempts, max_age_hours, limit):
    report = sweep_unprocessed_webhooks(max_attempts=max_attempts, max_age_hours=max_age_hours, limit=limit)
    click.echo(json.dumps(report.to_dict(), default=str))

@payments.command("charge-renewals")
@click.option("--subscription-id", type=int, default=None, help="Only this subscription")
@with_appcontext
def payments_charge_renewals(subscription_id):
    report = charge_due_subscriptions(subscription_id=subscription_id)
    click.echo(json.dumps(report.to_dict(), default=str))

@payments.command("send-reminders")
@click.option("--trial-days", type=int, default=None, help="Override REMINDER_TRIAL_DAYS")
@click.option("--annual-days", type=int, default=None, help="Override REMINDER_ANNUAL_DAYS")
@with_appcontext
def payments_send_reminders(trial_days, annual_days):
    report = send_renewal_reminders(trial_days=trial_days, annual_days=annual_days)
    click.echo(json.dumps(report.to_dict(), default=str))

@payments.command("expire-sessions")
@with_appcontext
def payments_expire_sessions():
    count = expire_stale_sessions()
    click.echo(f"Expired {count} sessions")

@payments.command("reprocess-webhook")
@click.option("--id", "record_id", type=int, required=True)
@with_appcontext
def payments_reprocess_webhook(record_id):
    result = reprocess_webhook(record_id)
    if result is None:
        raise click.ClickException(f"Webhook record {record_id} not found")
    click.echo(json.dumps(result, default=str))


@click.group()
def users():
    """User management."""

@users.command("create")
@click.option("--email", required=True)
@click.option("--full-name", default=None)
@click.option("--password", default=None, help="Generated when omitted")
@with_appcontext
def users_create(email, full_name, password):
    email = email.strip().lower()
    if db.session.query(User).filter_by(email=email).count():
        raise click.ClickException("User already exists")

    user = User(email=email, full_name=full_name, is_active=True)
    generated = password is None
    user.set_password(password or secrets.token_urlsafe(12))
    db.session.add(user)
    db.session.commit()

    click.echo(f"User created id={user.id} email={user.email}")
    if generated:
        click.echo("A random password was set; the identity provider handles sign-in.")


def register_cli(app):
    app.cli.add_command(plans)
    app.cli.add_command(payments)
    app.cli.add_command(users)
