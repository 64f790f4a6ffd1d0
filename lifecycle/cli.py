import json
from datetime import timedelta

import click
from flask.cli import with_appcontext
from sqlalchemy import func

from lifecycle.billing.entitlements import resolve_or_free
from lifecycle.billing.store import EntitlementStore
from lifecycle.errors import StoreWriteError
from lifecycle.extensions import db
from lifecycle.models import User, EntitlementRecord
from lifecycle.models.entitlement import (
    TIERS, TIER_FREE, STATUS_ACTIVE, STATUS_TRIALING, STATUS_CANCELED, STATUS_PAST_DUE, STATUS_INACTIVE,
    SOURCE_INDIVIDUAL, STORE_PROMOTIONAL,
)
from lifecycle.services.scheduler import SequenceScheduler, run_intake
from lifecycle.services.sequences import SEQUENCES, start_sequence
from lifecycle.utils.clock import now as clock_now


def _user_by_email(email: str) -> User:
    user = db.session.query(User).filter(func.lower(User.email) == email.strip().lower()).one_or_none()
    if not user:
        raise click.ClickException("User not found")
    return user


@click.group()
def sequences():
    """Drip sequence operations (same entry points as /cron)."""


@sequences.command("run")
@click.option("--batch-size", type=int, default=None)
@click.option("--no-delay", is_flag=True, help="Skip the pause between sends")
@with_appcontext
def sequences_run(batch_size, no_delay):
    summary = SequenceScheduler(
        now=clock_now(), batch_size=batch_size, delay_ms=0 if no_delay else None,
    ).run()
    click.echo(json.dumps(summary.to_dict()))


@sequences.command("intake")
@click.option("--batch-size", type=int, default=None)
@with_appcontext
def sequences_intake(batch_size):
    click.echo(json.dumps(run_intake(clock_now(), batch_size=batch_size)))


@sequences.command("start")
@click.option("--email", required=True)
@click.option("--name", "sequence_name", type=click.Choice(sorted(SEQUENCES)), required=True)
@with_appcontext
def sequences_start(email, sequence_name):
    user = _user_by_email(email)
    try:
        rec = start_sequence(user.id, sequence_name, clock_now())
    except StoreWriteError as exc:
        raise click.ClickException(str(exc))
    if rec is None:
        raise click.ClickException(f"{email} already has an open {sequence_name} sequence")
    click.echo(f"Started {sequence_name} for {email} (record {rec.id})")


@click.group()
def entitlements():
    """Entitlement inspection and maintenance."""


@entitlements.command("show")
@click.option("--email", required=True)
@with_appcontext
def entitlements_show(email):
    user = _user_by_email(email)
    ent = resolve_or_free(user.id, clock_now())
    click.echo(json.dumps(ent.to_dict()))


@entitlements.command("grant")
@click.option("--email", required=True)
@click.option("--tier", type=click.Choice([t for t in TIERS if t != TIER_FREE]), required=True)
@click.option("--days", type=int, default=30, show_default=True)
@with_appcontext
def entitlements_grant(email, tier, days):
    """Promotional grant on the individual record, ending after --days."""
    user = _user_by_email(email)
    period_end = clock_now() + timedelta(days=days)
    try:
        EntitlementStore().upsert(
            user.id, SOURCE_INDIVIDUAL,
            tier=tier, status=STATUS_ACTIVE, period_end=period_end, billing_store=STORE_PROMOTIONAL,
        )
    except StoreWriteError as exc:
        raise click.ClickException(str(exc))
    click.echo(f"Granted {tier} to {email} until {period_end.isoformat()}")


@entitlements.command("sweep")
@click.option("--dry-run", is_flag=True)
@with_appcontext
def entitlements_sweep(dry_run):
    """
    Mark individual records whose period has lapsed as free/inactive. Readers
    already treat them as free; this keeps stored status honest for reporting.
    """
    now = clock_now()
    q = EntitlementRecord.query.filter(
        EntitlementRecord.source == SOURCE_INDIVIDUAL,
        EntitlementRecord.status.in_((STATUS_ACTIVE, STATUS_TRIALING, STATUS_CANCELED, STATUS_PAST_DUE)),
        EntitlementRecord.period_end.isnot(None),
        EntitlementRecord.period_end <= now,
    )
    stale = q.all()
    if not dry_run:
        for rec in stale:
            rec.tier = TIER_FREE
            rec.status = STATUS_INACTIVE
            rec.welcome_sent_at = None
        db.session.commit()
    click.echo(f"{'Would downgrade' if dry_run else 'Downgraded'} {len(stale)} lapsed record(s)")


def register_cli(app):
    app.cli.add_command(sequences)
    app.cli.add_command(entitlements)
