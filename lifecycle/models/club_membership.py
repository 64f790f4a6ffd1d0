from sqlalchemy import func, CheckConstraint, UniqueConstraint
from lifecycle.extensions import db

# Keep simple text+CHECK for evolvable roles (no DB enum migration pain)
ROLE_MEMBER = "member"
ROLE_ADMIN = "admin"
ROLE_OWNER = "owner"
ROLE_CHOICES = (ROLE_OWNER, ROLE_ADMIN, ROLE_MEMBER)

MEMBERSHIP_ACTIVE = "active"
MEMBERSHIP_REMOVED = "removed"

class ClubMembership(db.Model):
    __tablename__ = "club_memberships"

    id = db.Column(db.Integer, primary_key=True)

    club_id = db.Column(
        db.Integer,
        db.ForeignKey("clubs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # default is member; owner/admin must be explicit
    role = db.Column(db.String(20), nullable=False, server_default=ROLE_MEMBER)
    status = db.Column(db.String(20), nullable=False, server_default=MEMBERSHIP_ACTIVE)

    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("club_id", "user_id", name="uq_club_memberships_club_user"),
        CheckConstraint(
            "role IN ('owner','admin','member')",
            name="ck_club_memberships_role_valid",
        ),
        CheckConstraint(
            "status IN ('active','removed')",
            name="ck_club_memberships_status_valid",
        ),
    )
