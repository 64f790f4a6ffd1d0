from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from lifecycle.errors import StoreWriteError
from lifecycle.extensions import db
from lifecycle.models import User, Club, ClubMembership, EntitlementRecord
from lifecycle.models.club_membership import MEMBERSHIP_ACTIVE
from lifecycle.models.entitlement import SOURCE_INDIVIDUAL

_WRITABLE = {
    "tier", "status", "period_end", "billing_store", "product_id", "provider_customer_id",
    "welcome_sent_at",
}


class EntitlementStore:
    """
    Narrow persistence seam for entitlement data. Reads return ORM rows;
    writes commit and surface failures as StoreWriteError.
    """

    def __init__(self, session=None):
        self.session = session or db.session

    # ---- reads ----
    def get_user(self, user_id) -> Optional[User]:
        if user_id is None:
            return None
        return self.session.get(User, user_id)

    def get(self, user_id, source: str = SOURCE_INDIVIDUAL) -> Optional[EntitlementRecord]:
        return (
            self.session.query(EntitlementRecord)
            .filter_by(user_id=user_id, source=source)
            .one_or_none()
        )

    def get_club(self, club_id) -> Optional[Club]:
        if club_id is None:
            return None
        return self.session.get(Club, club_id)

    def get_membership(self, user_id) -> Optional[ClubMembership]:
        # A coach can have removed memberships in several clubs; only an active one counts
        return (
            self.session.query(ClubMembership)
            .filter_by(user_id=user_id, status=MEMBERSHIP_ACTIVE)
            .order_by(ClubMembership.id.desc())
            .first()
        )

    # ---- writes ----
    def upsert(self, user_id, source: str = SOURCE_INDIVIDUAL, **fields) -> EntitlementRecord:
        unknown = set(fields) - _WRITABLE
        if unknown:
            raise ValueError(f"not writable: {sorted(unknown)}")
        try:
            rec = self.get(user_id, source)
            if rec is None:
                rec = EntitlementRecord(user_id=user_id, source=source, **fields)
                self.session.add(rec)
            else:
                for key, val in fields.items():
                    setattr(rec, key, val)
            self.session.commit()
            return rec
        except IntegrityError:
            # Lost an insert race with a concurrent delivery: last writer wins
            self.session.rollback()
            try:
                rec = self.get(user_id, source)
                if rec is None:
                    raise StoreWriteError(f"entitlement upsert failed for user {user_id}")
                for key, val in fields.items():
                    setattr(rec, key, val)
                self.session.commit()
                return rec
            except SQLAlchemyError as exc:
                self.session.rollback()
                raise StoreWriteError(f"entitlement upsert failed for user {user_id}") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreWriteError(f"entitlement upsert failed for user {user_id}") from exc

    def claim_welcome(self, record_id: int, now: datetime) -> bool:
        """
        Atomically stamp welcome_sent_at if unset. True only for the one caller
        that flipped it. Expiration clears the stamp for the next subscription.
        """
        try:
            result = self.session.execute(
                update(EntitlementRecord)
                .where(EntitlementRecord.id == record_id, EntitlementRecord.welcome_sent_at.is_(None))
                .values(welcome_sent_at=now)
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreWriteError(f"welcome guard failed for record {record_id}") from exc
        return result.rowcount == 1

    def update_club_billing(self, club_id, **fields) -> Optional[Club]:
        try:
            club = self.get_club(club_id)
            if club is None:
                return None
            for key, val in fields.items():
                setattr(club, key, val)
            self.session.commit()
            return club
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreWriteError(f"club billing update failed for club {club_id}") from exc
