from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from lifecycle.errors import MalformedEventError
from lifecycle.models.entitlement import STORE_APPLE, STORE_GOOGLE, STORE_STRIPE, STORE_PROMOTIONAL
from lifecycle.utils.helpers import from_epoch_ms

# Lifecycle transitions (RevenueCat vocabulary; the Stripe adapter maps onto it)
INITIAL_PURCHASE = "INITIAL_PURCHASE"
RENEWAL = "RENEWAL"
NON_RENEWING_PURCHASE = "NON_RENEWING_PURCHASE"
CANCELLATION = "CANCELLATION"
UNCANCELLATION = "UNCANCELLATION"
EXPIRATION = "EXPIRATION"
BILLING_ISSUE = "BILLING_ISSUE"
PRODUCT_CHANGE = "PRODUCT_CHANGE"
TRANSFER = "TRANSFER"
SUBSCRIPTION_PAUSED = "SUBSCRIPTION_PAUSED"

PURCHASE_TYPES = (INITIAL_PURCHASE, RENEWAL, NON_RENEWING_PURCHASE)

ENV_SANDBOX = "sandbox"
ENV_PRODUCTION = "production"

PERIOD_NORMAL = "normal"
PERIOD_INTRO = "intro"
PERIOD_TRIAL = "trial"

_STORE_MAP = {
    "APP_STORE": STORE_APPLE,
    "MAC_APP_STORE": STORE_APPLE,
    "PLAY_STORE": STORE_GOOGLE,
    "STRIPE": STORE_STRIPE,
    "PROMOTIONAL": STORE_PROMOTIONAL,
}


@dataclass
class BillingEvent:
    event_id: str
    type: str
    subject: Optional[str]
    product_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    environment: str = ENV_PRODUCTION
    store: Optional[str] = None
    period_type: str = PERIOD_NORMAL
    price: Optional[float] = None
    customer_id: Optional[str] = None
    provider: str = "revenuecat"
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_sandbox(self) -> bool:
        return self.environment == ENV_SANDBOX


def parse_revenuecat(payload: Any) -> BillingEvent:
    """
    Body shape: {"api_version": "1.0", "event": {"id", "type", "app_user_id",
    "product_id", "expiration_at_ms", "environment", "store", ...}}
    """
    if not isinstance(payload, dict):
        raise MalformedEventError("body is not an object")
    ev = payload.get("event")
    if not isinstance(ev, dict):
        raise MalformedEventError("missing event object")

    event_id = ev.get("id")
    ev_type = ev.get("type")
    if not event_id or not ev_type:
        raise MalformedEventError("event id and type are required")

    store_raw = (ev.get("store") or "").upper()
    price = ev.get("price")
    try:
        price = float(price) if price is not None else None
    except (TypeError, ValueError):
        price = None

    return BillingEvent(
        event_id=str(event_id),
        type=str(ev_type).upper(),
        subject=ev.get("app_user_id") or ev.get("original_app_user_id"),
        product_id=ev.get("product_id"),
        expires_at=from_epoch_ms(ev.get("expiration_at_ms")) if ev.get("expiration_at_ms") else None,
        environment=(ev.get("environment") or ENV_PRODUCTION).lower(),
        store=_STORE_MAP.get(store_raw, store_raw.lower() or None),
        period_type=(ev.get("period_type") or PERIOD_NORMAL).lower(),
        price=price,
        customer_id=ev.get("original_app_user_id"),
        provider="revenuecat",
        raw=payload,
    )
