from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Optional

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from lifecycle.models.entitlement import (
    TIER_FREE, TIER_PRO, TIER_PRO_PLUS,
    STATUS_ACTIVE, STATUS_TRIALING, STATUS_CANCELED, STATUS_PAST_DUE,
    SOURCE_INDIVIDUAL, SOURCE_CLUB, SOURCE_TESTER, SOURCE_NONE,
)
from lifecycle.models.club import CLUB_STATUS_ACTIVE
from lifecycle.observability import log_event

# Sentinel for "no limit". Never compare against a large number.
UNLIMITED = None

# Canonical feature keys
FEATURE_STRUCTURED_REFLECTION = "structured_reflection"
FEATURE_COMMUNICATION_ANALYSIS = "communication_analysis"
FEATURE_DEVELOPMENT_BLOCKS = "development_blocks"
FEATURE_CPD_EXPORT = "cpd_export"
FEATURE_AGE_NUDGES = "age_nudges"
FEATURE_SYLLABUS = "syllabus"
FEATURE_ADVANCED_ANALYTICS = "advanced_analytics"

PRO_FEATURES: FrozenSet[str] = frozenset({FEATURE_STRUCTURED_REFLECTION})

PRO_PLUS_FEATURES: FrozenSet[str] = PRO_FEATURES | {
    FEATURE_COMMUNICATION_ANALYSIS,
    FEATURE_DEVELOPMENT_BLOCKS,
    FEATURE_CPD_EXPORT,
    FEATURE_AGE_NUDGES,
    FEATURE_SYLLABUS,
    FEATURE_ADVANCED_ANALYTICS,
}


@dataclass(frozen=True)
class TierLimits:
    messages_per_day: Optional[int]
    short_voice_per_month: Optional[int]
    full_voice_per_month: Optional[int]
    shared_voice_pool: bool = False
    features: FrozenSet[str] = field(default_factory=frozenset)


TIER_LIMITS = {
    TIER_FREE: TierLimits(messages_per_day=2, short_voice_per_month=0, full_voice_per_month=0),
    # Pro: short + full recordings draw from one pool of 4
    TIER_PRO: TierLimits(
        messages_per_day=UNLIMITED, short_voice_per_month=4, full_voice_per_month=4,
        shared_voice_pool=True, features=PRO_FEATURES,
    ),
    TIER_PRO_PLUS: TierLimits(
        messages_per_day=UNLIMITED, short_voice_per_month=UNLIMITED, full_voice_per_month=12,
        features=PRO_PLUS_FEATURES,
    ),
}

# Club seats resolve to tier "pro" but carry Pro+ capabilities
CLUB_MEMBER_LIMITS = TIER_LIMITS[TIER_PRO_PLUS]

# Individual statuses that can carry entitlement. Canceled and past_due only
# count while a real period_end is still in the future.
_OPEN_ENDED_OK = {STATUS_ACTIVE, STATUS_TRIALING}
_NEEDS_PERIOD_END = {STATUS_CANCELED, STATUS_PAST_DUE}


@dataclass(frozen=True)
class ResolvedEntitlement:
    tier: str
    source: str
    is_active: bool
    expires_at: Optional[datetime] = None
    club_name: Optional[str] = None

    @property
    def limits(self) -> TierLimits:
        if self.source == SOURCE_CLUB:
            return CLUB_MEMBER_LIMITS
        return TIER_LIMITS.get(self.tier, TIER_LIMITS[TIER_FREE])

    def has_feature(self, feature: str) -> bool:
        return feature in self.limits.features

    def to_dict(self) -> dict:
        return {
            "tier": self.tier,
            "source": self.source,
            "is_active": self.is_active,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "club_name": self.club_name,
        }


FREE = ResolvedEntitlement(tier=TIER_FREE, source=SOURCE_NONE, is_active=False)


def tier_from_product_id(product_id: Optional[str]) -> str:
    """
    Map a store product / Stripe price to a tier. Known Stripe price ids from
    config win; store product ids fall back to their naming convention.
    """
    if not product_id:
        return TIER_PRO
    if has_app_context():
        cfg = current_app.config
        pro_plus_prices = {cfg.get("STRIPE_PRICE_PRO_PLUS_MONTHLY"), cfg.get("STRIPE_PRICE_PRO_PLUS_ANNUAL")} - {None}
        pro_prices = {cfg.get("STRIPE_PRICE_PRO_MONTHLY"), cfg.get("STRIPE_PRICE_PRO_ANNUAL")} - {None}
        if product_id in pro_plus_prices:
            return TIER_PRO_PLUS
        if product_id in pro_prices:
            return TIER_PRO
    pid = product_id.lower()
    if "proplus" in pid or "pro_plus" in pid:
        return TIER_PRO_PLUS
    return TIER_PRO


def is_annual_product(product_id: Optional[str]) -> bool:
    if not product_id:
        return False
    if has_app_context() and product_id in {
        current_app.config.get("STRIPE_PRICE_PRO_ANNUAL"),
        current_app.config.get("STRIPE_PRICE_PRO_PLUS_ANNUAL"),
    } - {None}:
        return True
    pid = product_id.lower()
    return "annual" in pid or "yearly" in pid


def _allow_lists():
    if not has_app_context():
        return (), ()
    cfg = current_app.config
    return tuple(cfg.get("ADMIN_EMAILS") or ()), tuple(cfg.get("PRO_TESTERS_WHITELIST") or ())


def _not_expired(period_end: Optional[datetime], now: datetime) -> bool:
    return period_end is None or period_end > now


def individual_is_entitled(record, now: datetime) -> bool:
    if record is None or record.tier == TIER_FREE:
        return False
    if record.status in _OPEN_ENDED_OK:
        return _not_expired(record.period_end, now)
    if record.status in _NEEDS_PERIOD_END:
        return record.period_end is not None and record.period_end > now
    return False


def club_is_entitled(club, now: datetime) -> bool:
    return bool(club and club.subscription_status == CLUB_STATUS_ACTIVE and _not_expired(club.current_period_end, now))


def resolve(user_id: int, now: datetime, store=None) -> ResolvedEntitlement:
    """
    Resolve one entitlement for a user at `now`. Read-only; first match wins:
    admin/tester allow-list, individual record, club seat, free.
    """
    if store is None:
        from lifecycle.billing.store import EntitlementStore
        store = EntitlementStore()

    user = store.get_user(user_id)
    email = (getattr(user, "email", None) or "").strip().lower()
    admins, testers = _allow_lists()
    if email and email in admins:
        return ResolvedEntitlement(tier=TIER_PRO_PLUS, source=SOURCE_TESTER, is_active=True)
    if email and email in testers:
        return ResolvedEntitlement(tier=TIER_PRO, source=SOURCE_TESTER, is_active=True)

    record = store.get(user_id, SOURCE_INDIVIDUAL)
    if individual_is_entitled(record, now):
        return ResolvedEntitlement(
            tier=record.tier, source=SOURCE_INDIVIDUAL, is_active=True, expires_at=record.period_end,
        )

    membership = store.get_membership(user_id)
    if membership is not None:
        club = store.get_club(membership.club_id)
        if club_is_entitled(club, now):
            return ResolvedEntitlement(
                tier=TIER_PRO, source=SOURCE_CLUB, is_active=True,
                expires_at=club.current_period_end, club_name=club.name,
            )

    return FREE


def resolve_or_free(user_id: int, now: datetime, store=None) -> ResolvedEntitlement:
    """Fail closed: an unreachable store means least privilege, never a grant."""
    try:
        return resolve(user_id, now, store=store)
    except SQLAlchemyError as exc:
        log_event("entitlement_resolve_failed", user_id=user_id, error=type(exc).__name__)
        return FREE
