"""
Webhook delivery pipeline shared by the RevenueCat and Stripe endpoints:

    authenticate (route) -> sandbox filter -> dedupe -> apply -> audit

Every delivery lands one BillingEventLog row, duplicates and rejections included.
"""
import hashlib
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from lifecycle.billing.events import BillingEvent, CANCELLATION
from lifecycle.billing.idempotency import IdempotencyCache
from lifecycle.billing.store import EntitlementStore
from lifecycle.billing.stripe_sync import StripeAction, ACTION_APPLY, ACTION_CLUB
from lifecycle.billing.transitions import apply_event, OUTCOME_APPLIED
from lifecycle.errors import StoreWriteError, UnknownSubjectError
from lifecycle.extensions import db
from lifecycle.models import BillingEventLog
from lifecycle.models.billing_event import (
    OUTCOME_DUPLICATE, OUTCOME_IGNORED, OUTCOME_SKIPPED_SANDBOX, OUTCOME_UNKNOWN_SUBJECT,
    OUTCOME_REJECTED, OUTCOME_FAILED,
)
from lifecycle.observability import log_event

Response = Tuple[Dict[str, Any], int]


def record_billing_event(
    *, event_id: str, provider: str, event_type: str, outcome: str, now: datetime,
    subject: Optional[str] = None, signature_valid: bool = True,
    payload: Optional[dict] = None, notes: Optional[str] = None,
) -> None:
    """Append an audit row. An audit failure is logged, never turned into a retry."""
    try:
        db.session.add(BillingEventLog(
            event_id=event_id[:255],
            provider=provider,
            type=(event_type or "unknown")[:80],
            subject=str(subject)[:128] if subject is not None else None,
            signature_valid=signature_valid,
            outcome=outcome,
            payload=payload or {},
            notes=notes[:255] if notes else None,
            created_at=now,
        ))
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        log_event("billing_audit_write_failed", level=logging.ERROR,
                  event_id=event_id, outcome=outcome, error=type(exc).__name__)


def _body_digest(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body or b"").hexdigest()[:32]


def record_rejected(provider: str, raw_body: bytes, now: datetime, reason: str) -> None:
    # Deterministic synthetic id (no payload trust)
    digest = _body_digest(raw_body)
    record_billing_event(
        event_id=f"invalid:{digest}", provider=provider, event_type="signature_invalid",
        outcome=OUTCOME_REJECTED, now=now, signature_valid=False, notes=reason,
    )
    log_event("webhook_rejected", level=logging.WARNING, provider=provider, reason=reason)


def record_malformed(provider: str, raw_body: bytes, now: datetime, reason: str) -> Response:
    """Authenticated but unparseable: acknowledge so the provider stops redelivering."""
    record_billing_event(
        event_id=f"malformed:{_body_digest(raw_body)}", provider=provider, event_type="malformed",
        outcome=OUTCOME_IGNORED, now=now, notes=reason,
    )
    log_event("webhook_malformed", level=logging.WARNING, provider=provider, error=reason)
    return {"received": True, "ignored": "malformed_event"}, 200


def _run(
    *, event_id: str, provider: str, event_type: str, subject, payload: dict,
    sandbox: bool, production: bool, cache: IdempotencyCache, now: datetime,
    work: Callable[[], Tuple[str, Optional[str]]],
) -> Response:
    audit = dict(event_id=event_id, provider=provider, event_type=event_type, subject=subject, payload=payload, now=now)

    if sandbox and production:
        record_billing_event(outcome=OUTCOME_SKIPPED_SANDBOX, **audit)
        log_event("webhook_skipped_sandbox", provider=provider, event_id=event_id)
        return {"received": True, "skipped": "sandbox"}, 200

    if not cache.add_if_absent(event_id, now):
        record_billing_event(outcome=OUTCOME_DUPLICATE, **audit)
        log_event("webhook_duplicate", provider=provider, event_id=event_id)
        return {"received": True, "duplicate": True}, 200

    try:
        outcome, notes = work()
    except UnknownSubjectError as exc:
        record_billing_event(outcome=OUTCOME_UNKNOWN_SUBJECT, notes=str(exc), **audit)
        log_event("webhook_unknown_subject", level=logging.WARNING,
                  provider=provider, event_id=event_id, subject=subject)
        return {"received": True, "ignored": "unknown_subject"}, 200
    except (StoreWriteError, SQLAlchemyError) as exc:
        # Let the provider redeliver: release the id so the retry isn't a "duplicate"
        cache.discard(event_id)
        if isinstance(exc, SQLAlchemyError):
            db.session.rollback()
        error = str(exc) if isinstance(exc, StoreWriteError) else f"store_read_failed: {type(exc).__name__}"
        record_billing_event(outcome=OUTCOME_FAILED, notes=error, **audit)
        log_event("webhook_apply_failed", level=logging.ERROR,
                  provider=provider, event_id=event_id, error=error)
        return {"error": "processing_failed"}, 500
    except Exception:
        cache.discard(event_id)
        raise

    record_billing_event(outcome=outcome, notes=notes, **audit)
    return {"received": True}, 200


def _notify_cancellation(store: EntitlementStore, result, event: BillingEvent, now: datetime) -> None:
    from lifecycle.services.notifications import notify_admins_cancellation
    try:
        notify_admins_cancellation(store.get_user(result.user_id), event, now)
    except Exception:
        log_event("cancellation_notify_failed", level=logging.ERROR,
                  event_id=event.event_id, user_id=result.user_id)


def _apply(event: BillingEvent, store: EntitlementStore, now: datetime,
           on_first_purchase: Optional[Callable]) -> Tuple[str, Optional[str]]:
    result = apply_event(event, now=now, store=store, on_first_purchase=on_first_purchase)
    if result.outcome == OUTCOME_APPLIED and event.type == CANCELLATION:
        _notify_cancellation(store, result, event, now)
    return result.outcome, result.notes


def process_delivery(
    event: BillingEvent, *, now: datetime, cache: IdempotencyCache, production: bool,
    store: Optional[EntitlementStore] = None, on_first_purchase: Optional[Callable] = None,
) -> Response:
    """Run one authenticated billing event through dedupe, apply and audit."""
    store = store or EntitlementStore()
    return _run(
        event_id=event.event_id, provider=event.provider, event_type=event.type, subject=event.subject,
        payload=event.raw, sandbox=event.is_sandbox, production=production, cache=cache, now=now,
        work=lambda: _apply(event, store, now, on_first_purchase),
    )


def process_stripe_action(
    action: StripeAction, *, now: datetime, cache: IdempotencyCache, production: bool,
    store: Optional[EntitlementStore] = None, payload: Optional[dict] = None,
) -> Response:
    store = store or EntitlementStore()

    def work():
        if action.kind == ACTION_APPLY:
            return _apply(action.event, store, now, None)
        if action.kind == ACTION_CLUB:
            club = store.update_club_billing(action.club_id, **action.club_fields)
            if club is None:
                return OUTCOME_IGNORED, f"unknown_club:{action.club_id}"
            log_event("club_billing_updated", club_id=club.id, status=club.subscription_status,
                      event_id=action.event_id)
            return OUTCOME_APPLIED, f"club:{club.id}"
        return OUTCOME_IGNORED, action.reason

    if action.kind == ACTION_APPLY:
        subject, ev_type = action.event.subject, action.event.type
    elif action.kind == ACTION_CLUB:
        subject, ev_type = f"club:{action.club_id}", action.stripe_type
    else:
        subject, ev_type = None, action.stripe_type

    return _run(
        event_id=action.event_id, provider="stripe", event_type=ev_type, subject=subject,
        payload=payload or {"stripe_type": action.stripe_type}, sandbox=action.sandbox,
        production=production, cache=cache, now=now, work=work,
    )
