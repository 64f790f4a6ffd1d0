import hashlib
import hmac
import logging

import stripe
from flask import request, jsonify, current_app
from sqlalchemy.exc import SQLAlchemyError

from . import bp
from lifecycle.billing.events import parse_revenuecat
from lifecycle.billing.idempotency import get_idempotency_cache
from lifecycle.billing.pipeline import (
    process_delivery, process_stripe_action, record_billing_event, record_rejected, record_malformed,
)
from lifecycle.billing.stripe_sync import as_dict, normalize_stripe_event
from lifecycle.errors import AuthenticityError, MalformedEventError
from lifecycle.extensions import db, limiter
from lifecycle.models import User
from lifecycle.models.billing_event import OUTCOME_FAILED
from lifecycle.observability import log_event
from lifecycle.services.email import log_email
from lifecycle.services.sequences import pause_all_for_user
from lifecycle.utils.clock import now as clock_now


def _is_production() -> bool:
    return (current_app.config.get("APP_ENV") or "").lower() == "production"


def _check_bearer(header: str, secret: str) -> None:
    token = (header or "").strip()
    if token[:7].lower() == "bearer ":
        token = token[7:].strip()
    if not token:
        raise AuthenticityError("missing authorization")
    if not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise AuthenticityError("bad authorization")


# ----- RevenueCat (app stores + promotional grants) -----
@bp.post("/revenuecat")
@limiter.limit("300 per minute")
def revenuecat_webhook():
    now = clock_now()
    secret = current_app.config.get("REVENUECAT_WEBHOOK_SECRET")
    if not secret:
        log_event("webhook_misconfigured", level=logging.ERROR, provider="revenuecat")
        return jsonify({"error": "webhook_not_configured"}), 500

    raw = request.get_data(cache=True) or b""
    try:
        _check_bearer(request.headers.get("Authorization", ""), secret)
    except AuthenticityError as exc:
        record_rejected("revenuecat", raw, now, str(exc))
        return jsonify({"error": "unauthorized"}), 401

    try:
        event = parse_revenuecat(request.get_json(silent=True))
    except MalformedEventError as exc:
        body, status = record_malformed("revenuecat", raw, now, str(exc))
        return jsonify(body), status

    body, status = process_delivery(
        event, now=now, cache=get_idempotency_cache(), production=_is_production(),
    )
    return jsonify(body), status


# ----- Stripe (web checkout + club subscriptions) -----
@bp.post("/stripe")
@limiter.limit("300 per minute")
def stripe_webhook():
    """
    Stripe -> /webhooks/stripe
    Verifies signature, then runs the same dedupe/apply/audit pipeline.
    """
    now = clock_now()
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        log_event("webhook_misconfigured", level=logging.ERROR, provider="stripe")
        return jsonify({"error": "webhook_not_configured"}), 500

    raw_bytes = request.get_data(cache=False, as_text=False)
    sig_header = request.headers.get("Stripe-Signature", "")
    try:
        event = stripe.Webhook.construct_event(
            payload=raw_bytes.decode("utf-8"),
            sig_header=sig_header,
            secret=secret,
        )
    except (ValueError, UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
        record_rejected("stripe", raw_bytes, now, type(exc).__name__)
        return jsonify({"error": "invalid_signature"}), 401

    try:
        action = normalize_stripe_event(event)
    except MalformedEventError as exc:
        body, status = record_malformed("stripe", raw_bytes, now, str(exc))
        return jsonify(body), status
    except stripe.StripeError as exc:
        # Subscription lookup failed; nothing cached yet, so Stripe's retry starts clean
        ev = as_dict(event)
        ev_id = ev.get("id") or "unknown"
        record_billing_event(
            event_id=ev_id, provider="stripe", event_type=ev.get("type"),
            outcome=OUTCOME_FAILED, now=now, notes=f"stripe_api:{type(exc).__name__}",
        )
        log_event("stripe_lookup_failed", level=logging.ERROR, event_id=ev_id, error=str(exc))
        return jsonify({"error": "processing_failed"}), 500

    body, status = process_stripe_action(
        action, now=now, cache=get_idempotency_cache(), production=_is_production(),
        payload={"stripe_type": action.stripe_type, "livemode": not action.sandbox},
    )
    return jsonify(body), status


# ----- Email provider (bounces / complaints) -----
_EMAIL_STATUS = {
    "bounce": "bounced",
    "bounced": "bounced",
    "complaint": "complaint",
    "complained": "complaint",
    "delivered": "delivered",
}


def _valid_signature(raw_body: bytes, timestamp: str, sig: str) -> bool:
    secret = current_app.config.get("EMAIL_WEBHOOK_SECRET")
    if not secret or not timestamp or not sig:
        return False
    mac = hmac.new(secret.encode("utf-8"), (timestamp + ".").encode("utf-8") + raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(mac, sig)


@bp.post("/email")
@limiter.limit("600 per minute")
def email_events():
    # Generic HMAC: X-Timestamp, X-Signature
    timestamp = request.headers.get("X-Timestamp", "")
    signature = request.headers.get("X-Signature", "")
    raw = request.get_data() or b""

    if not _valid_signature(raw, timestamp, signature):
        return jsonify({"error": "invalid_signature"}), 401

    payload = request.get_json(silent=True) or {}
    data = payload.get("data") or {}
    # Flat {"event", "email"} or provider style {"type": "email.bounced", "data": {"to": [...]}}
    raw_event = (payload.get("event") or payload.get("type") or "").lower().replace("email.", "")
    status = _EMAIL_STATUS.get(raw_event)
    if status is None:
        return jsonify({"ok": True, "skipped": True}), 200

    to = payload.get("email") or (data.get("to") or [None])[0] or ""
    to_email = to.strip().lower()
    if not to_email:
        return jsonify({"error": "missing_recipient"}), 400

    user = User.query.filter(db.func.lower(User.email) == to_email).first()
    now = clock_now()
    log_email(
        user_id=user.id if user else None,
        to_email=to_email,
        template=payload.get("template") or "unknown",
        subject=payload.get("subject") or data.get("subject") or "",
        status=status,
        now=now,
        provider_msg_id=payload.get("message_id") or data.get("email_id"),
        meta=payload,
    )

    if status == "complaint" and user is not None:
        # A spam complaint is an unsubscribe
        try:
            user.email_unsubscribed = True
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            log_event("complaint_unsubscribe_failed", level=logging.ERROR, user_id=user.id)
            return jsonify({"error": "processing_failed"}), 500
        pause_all_for_user(user.id)

    log_event("mail_webhook", to=to_email, status=status)
    return jsonify({"ok": True}), 200
