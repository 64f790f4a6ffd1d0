from .user import User
from .club import Club
from .club_membership import ClubMembership, ROLE_OWNER, ROLE_ADMIN, ROLE_MEMBER
from .entitlement import EntitlementRecord
from .billing_event import BillingEventLog
from .email_log import EmailLog
from .sequence import SequenceRecord
from .usage import UsageCounter

__all__ = [
    "User",
    "Club",
    "ClubMembership",
    "EntitlementRecord",
    "BillingEventLog",
    "EmailLog",
    "SequenceRecord",
    "UsageCounter",
    "ROLE_OWNER",
    "ROLE_ADMIN",
    "ROLE_MEMBER",
]
