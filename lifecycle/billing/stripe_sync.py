from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from flask import current_app
from stripe import StripeClient

from lifecycle.billing.events import (
    BillingEvent, INITIAL_PURCHASE, RENEWAL, CANCELLATION, EXPIRATION, BILLING_ISSUE,
    ENV_SANDBOX, ENV_PRODUCTION, PERIOD_NORMAL, PERIOD_TRIAL,
)
from lifecycle.errors import MalformedEventError
from lifecycle.models.club import CLUB_STATUS_ACTIVE, CLUB_STATUS_PAST_DUE, CLUB_STATUS_CANCELED
from lifecycle.models.entitlement import STORE_STRIPE
from lifecycle.utils.helpers import from_epoch_seconds, parse_int

ACTION_APPLY = "apply"
ACTION_CLUB = "club"
ACTION_IGNORE = "ignore"

_LIVE = ("active", "trialing")
_DELINQUENT = ("past_due", "unpaid")
_ENDED = ("canceled", "incomplete_expired")


@dataclass
class StripeAction:
    """What a verified Stripe event asks of us."""
    kind: str
    event_id: str
    stripe_type: str
    event: Optional[BillingEvent] = None
    club_id: Optional[int] = None
    club_fields: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    sandbox: bool = False


def _client() -> StripeClient:
    key = current_app.config.get("STRIPE_SECRET_KEY")
    if not key:
        raise RuntimeError("STRIPE_SECRET_KEY is not configured")
    return StripeClient(key)


def as_dict(obj) -> Dict[str, Any]:
    # Stripe objects may need converting to dicts
    if obj is None:
        return {}
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _id_of(ref) -> Optional[str]:
    if isinstance(ref, dict):
        return ref.get("id")
    return ref


def retrieve_subscription(sub_id: str) -> Dict[str, Any]:
    return as_dict(_client().subscriptions.retrieve(sub_id))


def _first_item(sub: Dict[str, Any]) -> Dict[str, Any]:
    items = (sub.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _period_end(sub: Dict[str, Any]):
    # Newer API versions moved current_period_end onto the subscription item
    ts = sub.get("current_period_end") or _first_item(sub).get("current_period_end")
    return from_epoch_seconds(ts) if ts else None


def _price_id(sub: Dict[str, Any]) -> Optional[str]:
    return _id_of(_first_item(sub).get("price"))


def club_status_for(sub_status: Optional[str]) -> str:
    if sub_status in _LIVE:
        return CLUB_STATUS_ACTIVE
    if sub_status in _DELINQUENT:
        return CLUB_STATUS_PAST_DUE
    return CLUB_STATUS_CANCELED


def _subscription_type(sub: Dict[str, Any]) -> Optional[str]:
    status = sub.get("status")
    if status in _LIVE:
        return CANCELLATION if sub.get("cancel_at_period_end") else RENEWAL
    if status in _DELINQUENT:
        return BILLING_ISSUE
    if status in _ENDED:
        return EXPIRATION
    return None


def _from_subscription(event_id, stripe_type, env, sub, ev_type, customer_id=None) -> StripeAction:
    meta = sub.get("metadata") or {}
    club_id = parse_int(meta.get("club_id"))
    if club_id is not None:
        fields = {
            "subscription_status": club_status_for(sub.get("status")),
            "current_period_end": _period_end(sub),
            "stripe_subscription_id": sub.get("id"),
        }
        cust = customer_id or _id_of(sub.get("customer"))
        if cust:
            fields["stripe_customer_id"] = cust
        return StripeAction(ACTION_CLUB, event_id, stripe_type, club_id=club_id, club_fields=fields)

    user_id = meta.get("user_id")
    if not user_id:
        return StripeAction(ACTION_IGNORE, event_id, stripe_type, reason="no_subject_metadata")
    if ev_type is None:
        return StripeAction(ACTION_IGNORE, event_id, stripe_type, reason=f"status:{sub.get('status')}")

    event = BillingEvent(
        event_id=event_id,
        type=ev_type,
        subject=str(user_id),
        product_id=_price_id(sub),
        expires_at=_period_end(sub),
        environment=env,
        store=STORE_STRIPE,
        period_type=PERIOD_TRIAL if sub.get("status") == "trialing" else PERIOD_NORMAL,
        customer_id=customer_id or _id_of(sub.get("customer")),
        provider="stripe",
        raw={"stripe_type": stripe_type, "subscription": sub.get("id")},
    )
    return StripeAction(ACTION_APPLY, event_id, stripe_type, event=event)


def normalize_stripe_event(stripe_event) -> StripeAction:
    """
    Map a verified Stripe event onto our lifecycle vocabulary. May call the
    Stripe API to fetch the subscription behind a checkout session or invoice.
    """
    ev = as_dict(stripe_event)
    event_id = ev.get("id")
    ev_type = ev.get("type")
    if not event_id or not ev_type:
        raise MalformedEventError("stripe event id and type are required")

    env = ENV_PRODUCTION if ev.get("livemode", True) else ENV_SANDBOX
    obj = (ev.get("data") or {}).get("object") or {}

    if ev_type == "checkout.session.completed":
        sub_id = _id_of(obj.get("subscription"))
        if not sub_id:
            return StripeAction(ACTION_IGNORE, event_id, ev_type, reason="no_subscription", sandbox=env == ENV_SANDBOX)
        sub = retrieve_subscription(sub_id)
        # Session metadata is set at checkout; fall back to it when the subscription has none
        if not (sub.get("metadata") or {}):
            sub["metadata"] = obj.get("metadata") or {}
        action = _from_subscription(event_id, ev_type, env, sub, INITIAL_PURCHASE, _id_of(obj.get("customer")))

    elif ev_type == "customer.subscription.created":
        action = _from_subscription(
            event_id, ev_type, env, obj, RENEWAL if obj.get("status") in _LIVE else None,
        )

    elif ev_type == "customer.subscription.updated":
        action = _from_subscription(event_id, ev_type, env, obj, _subscription_type(obj))

    elif ev_type == "customer.subscription.deleted":
        action = _from_subscription(event_id, ev_type, env, dict(obj, status="canceled"), EXPIRATION)

    elif ev_type in ("invoice.paid", "invoice.payment_failed"):
        sub_id = _id_of(obj.get("subscription")) or _id_of(
            ((obj.get("parent") or {}).get("subscription_details") or {}).get("subscription")
        )
        if not sub_id:
            return StripeAction(ACTION_IGNORE, event_id, ev_type, reason="no_subscription", sandbox=env == ENV_SANDBOX)
        sub = retrieve_subscription(sub_id)
        target = RENEWAL if ev_type == "invoice.paid" else BILLING_ISSUE
        if ev_type == "invoice.payment_failed" and sub.get("status") not in _DELINQUENT:
            # Stripe can report the failed invoice before flipping the subscription
            sub = dict(sub, status="past_due")
        action = _from_subscription(event_id, ev_type, env, sub, target)

    else:
        action = StripeAction(ACTION_IGNORE, event_id, ev_type, reason="unhandled_type")

    action.sandbox = env == ENV_SANDBOX
    return action
