from sqlalchemy import func, text, CheckConstraint, UniqueConstraint
from lifecycle.extensions import db

TIER_FREE = "free"
TIER_PRO = "pro"
TIER_PRO_PLUS = "pro_plus"
TIERS = (TIER_FREE, TIER_PRO, TIER_PRO_PLUS)

STATUS_ACTIVE = "active"
STATUS_TRIALING = "trialing"
STATUS_CANCELED = "canceled"
STATUS_PAST_DUE = "past_due"
STATUS_INACTIVE = "inactive"
STATUSES = (STATUS_ACTIVE, STATUS_TRIALING, STATUS_CANCELED, STATUS_PAST_DUE, STATUS_INACTIVE)

SOURCE_INDIVIDUAL = "individual"
SOURCE_CLUB = "club"
SOURCE_TESTER = "tester"
SOURCE_NONE = "none"
SOURCES = (SOURCE_INDIVIDUAL, SOURCE_CLUB, SOURCE_TESTER, SOURCE_NONE)

# Billing tenants that can write an individual record
STORE_STRIPE = "stripe"
STORE_APPLE = "apple"
STORE_GOOGLE = "google"
STORE_PROMOTIONAL = "promotional"


class EntitlementRecord(db.Model):
    """
    One authoritative (tier, status, period_end) per user per source.
    Priority across sources is the resolver's job, never the store's.
    """
    __tablename__ = "entitlement_records"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    source = db.Column(db.String(16), nullable=False, server_default=text(f"'{SOURCE_INDIVIDUAL}'"))

    tier = db.Column(db.String(16), nullable=False, server_default=text(f"'{TIER_FREE}'"))
    status = db.Column(db.String(16), nullable=False, index=True, server_default=text(f"'{STATUS_INACTIVE}'"))
    period_end = db.Column(db.DateTime, nullable=True, index=True)

    billing_store = db.Column(db.String(16), nullable=True)
    product_id = db.Column(db.String(128), nullable=True)
    provider_customer_id = db.Column(db.String(128), nullable=True, index=True)

    # First successful initial-purchase apply; guards the welcome side effect
    welcome_sent_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "source", name="uq_entitlement_records_user_source"),
        CheckConstraint("tier IN ('free','pro','pro_plus')", name="ck_entitlement_records_tier_valid"),
        CheckConstraint(
            "status IN ('active','trialing','canceled','past_due','inactive')",
            name="ck_entitlement_records_status_valid",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<EntitlementRecord user_id={self.user_id} source={self.source!r} "
            f"tier={self.tier!r} status={self.status!r} period_end={self.period_end}>"
        )
