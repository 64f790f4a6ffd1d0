from flask_login import UserMixin
from sqlalchemy import func
from lifecycle.extensions import db, login_manager

class User(db.Model, UserMixin):
    """Local mirror of an auth-provider user (the provider owns credentials)."""
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(320), nullable=False, index=True)  # case-insensitive match via lower()
    display_name = db.Column(db.String(120), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Email preferences (unsubscribe link + settings page)
    email_notifications_enabled = db.Column(db.Boolean, nullable=False, default=True)
    email_unsubscribed = db.Column(db.Boolean, nullable=False, default=False)

    last_active_at = db.Column(db.DateTime, nullable=True, index=True)
    # Consecutive days with a reflection, maintained by the product app
    current_streak = db.Column(db.Integer, nullable=False, default=0)
    last_activity_date = db.Column(db.Date, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())

    @property
    def opted_out(self) -> bool:
        return bool(self.email_unsubscribed or not self.email_notifications_enabled)

    @property
    def greeting_name(self) -> str:
        if self.display_name:
            return self.display_name
        return (self.email or "").split("@")[0] or "Coach"

    def get_id(self) -> str:
        return str(self.id)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r}>"

@login_manager.user_loader
def load_user(user_id: str):
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None
