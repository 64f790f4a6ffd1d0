from sqlalchemy import func, UniqueConstraint
from lifecycle.extensions import db

KIND_MESSAGE = "message"
KIND_VOICE_SHORT = "voice_short"
KIND_VOICE_FULL = "voice_full"
KINDS = (KIND_MESSAGE, KIND_VOICE_SHORT, KIND_VOICE_FULL)

class UsageCounter(db.Model):
    """
    Lazily-reset counters. A stored period marker that doesn't match the
    current day/month reads as zero; only an increment writes it back.
    """
    __tablename__ = "usage_counters"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = db.Column(db.String(20), nullable=False)

    daily_count = db.Column(db.Integer, nullable=False, default=0)
    last_count_date = db.Column(db.String(10), nullable=True)   # YYYY-MM-DD
    monthly_count = db.Column(db.Integer, nullable=False, default=0)
    last_count_month = db.Column(db.String(7), nullable=True)   # YYYY-MM
    lifetime_count = db.Column(db.Integer, nullable=False, default=0)

    updated_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "kind", name="uq_usage_counters_user_kind"),
    )

    def __repr__(self) -> str:
        return f"<UsageCounter user_id={self.user_id} kind={self.kind} day={self.daily_count} month={self.monthly_count}>"
