from sqlalchemy import func, Index
from lifecycle.extensions import db

SEQ_ONBOARDING = "onboarding"
SEQ_TRIAL = "trial"
SEQ_WINBACK = "winback"
SEQ_STREAK_RECOVERY = "streak_recovery"

class SequenceRecord(db.Model):
    """
    Per-user drip sequence progress. Never deleted: completed/paused rows are
    the audit trail and drive the re-entry cooldown.
    """
    __tablename__ = "email_sequences"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence_name = db.Column(db.String(32), nullable=False)

    current_step = db.Column(db.Integer, nullable=False, default=0)
    started_at = db.Column(db.DateTime, nullable=False)
    next_send_at = db.Column(db.DateTime, nullable=True)  # None: nothing further scheduled

    completed = db.Column(db.Boolean, nullable=False, default=False)
    paused = db.Column(db.Boolean, nullable=False, default=False)

    # Short-lived processing marker set by a scheduler run before dispatch
    claimed_until = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_email_sequences_due", "completed", "paused", "next_send_at"),
        Index("ix_email_sequences_user_name_started", "user_id", "sequence_name", "started_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SequenceRecord id={self.id} user_id={self.user_id} {self.sequence_name}"
            f"@{self.current_step} next={self.next_send_at} completed={self.completed} paused={self.paused}>"
        )
