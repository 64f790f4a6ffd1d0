from sqlalchemy import func
from lifecycle.extensions import db

CLUB_STATUS_ACTIVE = "active"
CLUB_STATUS_PAST_DUE = "past_due"
CLUB_STATUS_CANCELED = "canceled"
CLUB_STATUS_INACTIVE = "inactive"

class Club(db.Model):
    """A club pays for its coaches; its billing state is tracked like an individual subscription."""
    __tablename__ = "clubs"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)

    subscription_status = db.Column(db.String(32), nullable=False, server_default=db.text("'inactive'"))
    current_period_end = db.Column(db.DateTime, nullable=True)
    stripe_customer_id = db.Column(db.String(64), nullable=True, index=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=True, unique=True)
    seat_limit = db.Column(db.Integer, nullable=False, server_default=db.text("5"))

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<Club id={self.id} name={self.name!r} status={self.subscription_status!r}>"
