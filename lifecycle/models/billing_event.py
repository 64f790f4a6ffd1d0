from sqlalchemy import func
from lifecycle.extensions import db

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_SKIPPED_SANDBOX = "skipped_sandbox"
OUTCOME_UNKNOWN_SUBJECT = "unknown_subject"
OUTCOME_REJECTED = "rejected"
OUTCOME_FAILED = "failed"

class BillingEventLog(db.Model):
    """Append-only audit of every webhook delivery, duplicates included."""
    __tablename__ = "billing_event_logs"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(255), nullable=False, index=True)
    provider = db.Column(db.String(32), nullable=False, index=True)  # revenuecat|stripe
    type = db.Column(db.String(80), nullable=False, index=True)
    subject = db.Column(db.String(128), nullable=True, index=True)
    signature_valid = db.Column(db.Boolean, nullable=False, default=True)
    outcome = db.Column(db.String(32), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<BillingEventLog {self.provider}:{self.event_id} type={self.type} outcome={self.outcome}>"
