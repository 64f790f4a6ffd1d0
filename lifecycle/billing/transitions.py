"""
Billing lifecycle state machine.

    free --purchase--> active --cancel--> canceled --expire--> free
    active --billing issue--> past_due --renewal--> active
    past_due --expire--> free

Only purchase/renewal events move a record toward active. Cancellation,
uncancellation, billing issue and product change touch a record only while it
is still live, so a late retry of any of them after an expiration is a no-op.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from lifecycle.billing.entitlements import tier_from_product_id, is_annual_product
from lifecycle.billing.events import (
    BillingEvent, PURCHASE_TYPES, INITIAL_PURCHASE, CANCELLATION, UNCANCELLATION,
    EXPIRATION, BILLING_ISSUE, PRODUCT_CHANGE, PERIOD_TRIAL,
)
from lifecycle.billing.store import EntitlementStore
from lifecycle.errors import UnknownSubjectError
from lifecycle.models.billing_event import OUTCOME_APPLIED, OUTCOME_IGNORED
from lifecycle.models.entitlement import (
    TIER_FREE, STATUS_ACTIVE, STATUS_TRIALING, STATUS_CANCELED, STATUS_PAST_DUE, STATUS_INACTIVE,
    SOURCE_INDIVIDUAL,
)
from lifecycle.observability import log_event
from lifecycle.utils.helpers import parse_int

# Statuses a cancellation / billing issue may act on
_LIVE = {STATUS_ACTIVE, STATUS_TRIALING, STATUS_PAST_DUE}

ANNUAL_DAYS = 365
MONTHLY_DAYS = 30


@dataclass
class ApplyResult:
    outcome: str
    user_id: Optional[int] = None
    notes: Optional[str] = None
    first_purchase: bool = False


def _same_store(record, event: BillingEvent) -> bool:
    """Store-scoped events only touch a record written by the same billing tenant."""
    if not record.billing_store or not event.store:
        return True
    return record.billing_store == event.store


def _ignored(user_id, notes) -> ApplyResult:
    return ApplyResult(outcome=OUTCOME_IGNORED, user_id=user_id, notes=notes)


def _apply_purchase(store, user_id, event, now):
    tier = tier_from_product_id(event.product_id)
    if event.expires_at is not None:
        period_end = event.expires_at
    else:
        period_end = now + timedelta(days=ANNUAL_DAYS if is_annual_product(event.product_id) else MONTHLY_DAYS)
    status = STATUS_TRIALING if event.period_type == PERIOD_TRIAL else STATUS_ACTIVE

    existing = store.get(user_id, SOURCE_INDIVIDUAL)
    customer_id = event.customer_id or (existing.provider_customer_id if existing else None)
    record = store.upsert(
        user_id, SOURCE_INDIVIDUAL,
        tier=tier, status=status, period_end=period_end,
        billing_store=event.store, product_id=event.product_id,
        provider_customer_id=customer_id,
    )

    first = False
    if event.type == INITIAL_PURCHASE:
        first = store.claim_welcome(record.id, now)
    return ApplyResult(outcome=OUTCOME_APPLIED, user_id=user_id, first_purchase=first)


def _apply_cancellation(store, user_id, event, now):
    rec = store.get(user_id, SOURCE_INDIVIDUAL)
    if rec is None or rec.status not in _LIVE:
        return _ignored(user_id, "cancel_without_live_record")
    if not _same_store(rec, event):
        return _ignored(user_id, "store_mismatch")
    store.upsert(user_id, SOURCE_INDIVIDUAL, status=STATUS_CANCELED)
    return ApplyResult(outcome=OUTCOME_APPLIED, user_id=user_id)


def _apply_uncancellation(store, user_id, event, now):
    rec = store.get(user_id, SOURCE_INDIVIDUAL)
    if rec is None or rec.status != STATUS_CANCELED:
        return _ignored(user_id, "uncancel_without_canceled_record")
    if not _same_store(rec, event):
        return _ignored(user_id, "store_mismatch")
    store.upsert(user_id, SOURCE_INDIVIDUAL, status=STATUS_ACTIVE)
    return ApplyResult(outcome=OUTCOME_APPLIED, user_id=user_id)


def _apply_expiration(store, user_id, event, now):
    rec = store.get(user_id, SOURCE_INDIVIDUAL)
    if rec is None:
        return _ignored(user_id, "expire_without_record")
    if not _same_store(rec, event):
        return _ignored(user_id, "store_mismatch")
    # Clearing the welcome guard lets a later re-subscription count as a first purchase
    store.upsert(
        user_id, SOURCE_INDIVIDUAL,
        tier=TIER_FREE, status=STATUS_INACTIVE,
        billing_store=None, provider_customer_id=None, welcome_sent_at=None,
    )
    return ApplyResult(outcome=OUTCOME_APPLIED, user_id=user_id)


def _apply_billing_issue(store, user_id, event, now):
    rec = store.get(user_id, SOURCE_INDIVIDUAL)
    if rec is None or rec.status not in (STATUS_ACTIVE, STATUS_TRIALING):
        return _ignored(user_id, "billing_issue_without_active_record")
    if not _same_store(rec, event):
        return _ignored(user_id, "store_mismatch")
    store.upsert(user_id, SOURCE_INDIVIDUAL, status=STATUS_PAST_DUE)
    return ApplyResult(outcome=OUTCOME_APPLIED, user_id=user_id)


def _apply_product_change(store, user_id, event, now):
    rec = store.get(user_id, SOURCE_INDIVIDUAL)
    if rec is None or rec.status == STATUS_INACTIVE or rec.tier == TIER_FREE:
        return _ignored(user_id, "product_change_without_live_record")
    fields = {"tier": tier_from_product_id(event.product_id), "product_id": event.product_id}
    if event.expires_at is not None:
        fields["period_end"] = event.expires_at
    store.upsert(user_id, SOURCE_INDIVIDUAL, **fields)
    return ApplyResult(outcome=OUTCOME_APPLIED, user_id=user_id)


_HANDLERS = {
    CANCELLATION: _apply_cancellation,
    UNCANCELLATION: _apply_uncancellation,
    EXPIRATION: _apply_expiration,
    BILLING_ISSUE: _apply_billing_issue,
    PRODUCT_CHANGE: _apply_product_change,
}
for _t in PURCHASE_TYPES:
    _HANDLERS[_t] = _apply_purchase


def resolve_subject(store: EntitlementStore, subject) -> int:
    user_id = parse_int(subject)
    if user_id is None or store.get_user(user_id) is None:
        raise UnknownSubjectError(subject)
    return user_id


def apply_event(
    event: BillingEvent,
    *,
    now: datetime,
    store: Optional[EntitlementStore] = None,
    on_first_purchase: Optional[Callable] = None,
) -> ApplyResult:
    """
    Apply one authenticated, de-duplicated event. Raises UnknownSubjectError
    for subjects we can't map and StoreWriteError when persistence fails.
    """
    store = store or EntitlementStore()
    user_id = resolve_subject(store, event.subject)

    handler = _HANDLERS.get(event.type)
    if handler is None:
        # TRANSFER, SUBSCRIPTION_PAUSED and anything new the provider adds
        log_event("billing_event_noop", event_id=event.event_id, type=event.type, user_id=user_id)
        return _ignored(user_id, f"noop:{event.type.lower()}")

    result = handler(store, user_id, event, now)
    log_event(
        "billing_event_applied" if result.outcome == OUTCOME_APPLIED else "billing_event_ignored",
        event_id=event.event_id, type=event.type, user_id=user_id, notes=result.notes,
    )

    if result.first_purchase:
        if on_first_purchase is None:
            from lifecycle.services.notifications import on_initial_purchase as on_first_purchase
        try:
            on_first_purchase(store.get_user(user_id), event, now)
        except Exception:
            # Best effort: the entitlement is already persisted and the guard is stamped
            log_event("first_purchase_side_effect_failed", level=logging.ERROR,
                      event_id=event.event_id, user_id=user_id)
    return result
