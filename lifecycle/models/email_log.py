from datetime import datetime
from lifecycle.extensions import db

# queued|sent|failed|suppressed (ours) + delivered|bounced|complaint (provider webhook)
EMAIL_SENT = "sent"
EMAIL_FAILED = "failed"
EMAIL_SUPPRESSED = "suppressed"

class EmailLog(db.Model):
    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    to_email = db.Column(db.String(320), nullable=False, index=True)
    template = db.Column(db.String(64), nullable=False)
    subject = db.Column(db.String(200), nullable=False)
    sequence_name = db.Column(db.String(32), nullable=True, index=True)
    step = db.Column(db.Integer, nullable=True)
    provider_msg_id = db.Column(db.String(128), nullable=True, index=True)
    status = db.Column(db.String(20), nullable=False, index=True)
    error = db.Column(db.String(500), nullable=True)
    meta = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<EmailLog id={self.id} to={self.to_email} template={self.template} status={self.status}>"
