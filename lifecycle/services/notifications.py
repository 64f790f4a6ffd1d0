"""Best-effort mail triggered by billing transitions."""
import logging
from datetime import datetime

from flask import current_app

from lifecycle.billing.entitlements import tier_from_product_id
from lifecycle.billing.events import BillingEvent, PERIOD_TRIAL
from lifecycle.observability import log_event
from lifecycle.services.email import send_template_email, absolute_url
from lifecycle.services.scheduler import template_variables
from lifecycle.services.sequences import enroll_trial

TIER_LABELS = {"pro": "Pro", "pro_plus": "Pro+"}


def _admins():
    return tuple(current_app.config.get("ADMIN_EMAILS") or ())


def notify_admins(subject: str, lines, now: datetime) -> int:
    sent = 0
    for admin in _admins():
        result = send_template_email(
            to_email=admin, template="admin-notice", subject=subject,
            context={"subject": subject, "lines": list(lines), "app_url": absolute_url("/")},
            now=now,
        )
        sent += int(result.ok)
    return sent


def on_initial_purchase(user, event: BillingEvent, now: datetime) -> None:
    """
    Runs once per individual record (guarded by welcome_sent_at): the Pro
    welcome mail, the admin notice and, for trials, the trial sequence.
    """
    if user is None:
        return
    tier = tier_from_product_id(event.product_id)
    label = TIER_LABELS.get(tier, "Pro")

    if not user.opted_out:
        ctx = dict(template_variables(user), tier_label=label, is_trial=event.period_type == PERIOD_TRIAL)
        result = send_template_email(
            to_email=user.email, template="pro-welcome",
            subject=f"Welcome to {current_app.config.get('PRODUCT_NAME', 'Coach Reflection')} {label}",
            context=ctx, now=now, user_id=user.id,
        )
        if not result.ok:
            log_event("pro_welcome_failed", level=logging.WARNING, user_id=user.id, error=result.error)

    notify_admins(
        f"New {label} subscription",
        [f"User: {user.email}", f"Product: {event.product_id}", f"Store: {event.store}",
         f"Trial: {'yes' if event.period_type == PERIOD_TRIAL else 'no'}"],
        now,
    )

    if event.period_type == PERIOD_TRIAL:
        enroll_trial(user, now)


def notify_admins_cancellation(user, event: BillingEvent, now: datetime) -> None:
    if user is None:
        return
    notify_admins(
        "Subscription cancelled",
        [f"User: {user.email}", f"Product: {event.product_id}", f"Store: {event.store}"],
        now,
    )
