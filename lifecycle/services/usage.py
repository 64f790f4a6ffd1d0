"""
Daily/monthly usage counters against the resolved tier's limits.

Counters reset lazily: a stored period marker that differs from the current
day (YYYY-MM-DD) or month (YYYY-MM) reads as zero. Only increment writes, and
it writes the new marker together with the count in one conditional UPDATE.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import case, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from lifecycle.billing.entitlements import resolve_or_free, TierLimits, UNLIMITED
from lifecycle.errors import StoreWriteError
from lifecycle.extensions import db
from lifecycle.models import UsageCounter
from lifecycle.models.usage import KIND_MESSAGE, KIND_VOICE_SHORT, KIND_VOICE_FULL, KINDS
from lifecycle.observability import log_event
from lifecycle.utils.helpers import day_key, month_key

_VOICE = (KIND_VOICE_SHORT, KIND_VOICE_FULL)


@dataclass
class UsageCheck:
    allowed: bool
    count: int
    remaining: Optional[int]   # None == unlimited
    limit: Optional[int]

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "count": self.count, "remaining": self.remaining, "limit": self.limit}


def _limit_for(limits: TierLimits, kind: str) -> Optional[int]:
    if kind == KIND_MESSAGE:
        return limits.messages_per_day
    if kind == KIND_VOICE_SHORT:
        return limits.short_voice_per_month
    return limits.full_voice_per_month


def _get(user_id: int, kind: str) -> Optional[UsageCounter]:
    return UsageCounter.query.filter_by(user_id=user_id, kind=kind).one_or_none()


def _current(counter: Optional[UsageCounter], kind: str, now: datetime) -> int:
    """Effective count for the kind's period, honouring the lazy reset."""
    if counter is None:
        return 0
    if kind == KIND_MESSAGE:
        return counter.daily_count if counter.last_count_date == day_key(now) else 0
    return counter.monthly_count if counter.last_count_month == month_key(now) else 0


def _used(user_id: int, kind: str, limits: TierLimits, now: datetime) -> int:
    if kind in _VOICE and limits.shared_voice_pool:
        return sum(_current(_get(user_id, k), k, now) for k in _VOICE)
    return _current(_get(user_id, kind), kind, now)


def _remaining(limit: Optional[int], used: int) -> Optional[int]:
    if limit is UNLIMITED:
        return None
    return max(limit - used, 0)


def peek(user_id: int, kind: str, now: datetime, limits: Optional[TierLimits] = None) -> UsageCheck:
    if kind not in KINDS:
        raise ValueError(f"unknown usage kind: {kind}")
    limits = limits or resolve_or_free(user_id, now).limits
    limit = _limit_for(limits, kind)
    used = _used(user_id, kind, limits, now)
    return UsageCheck(
        allowed=limit is UNLIMITED or used < limit,
        count=used,
        remaining=_remaining(limit, used),
        limit=limit,
    )


def _ensure_row(user_id: int, kind: str) -> int:
    counter = _get(user_id, kind)
    if counter is not None:
        return counter.id
    try:
        counter = UsageCounter(user_id=user_id, kind=kind, daily_count=0, monthly_count=0, lifetime_count=0)
        db.session.add(counter)
        db.session.commit()
        return counter.id
    except IntegrityError:
        # Concurrent first increment for this (user, kind) created it
        db.session.rollback()
        counter = _get(user_id, kind)
        if counter is None:
            raise StoreWriteError(f"usage counter insert failed for user {user_id}")
        return counter.id


def _headroom(user_id: int, kind: str, limits: TierLimits, limit: int, now: datetime) -> int:
    """Uses left for this row; a shared voice pool subtracts the sibling kind."""
    if kind in _VOICE and limits.shared_voice_pool:
        other = KIND_VOICE_FULL if kind == KIND_VOICE_SHORT else KIND_VOICE_SHORT
        return limit - _current(_get(user_id, other), other, now)
    return limit


def increment(user_id: int, kind: str, now: datetime, limits: Optional[TierLimits] = None) -> UsageCheck:
    """
    Count one use if the limit allows it. At the limit nothing is written and
    allowed is False. The limit check and the write are one conditional
    UPDATE, so concurrent callers at limit-1 can't both be allowed.
    """
    limits = limits or resolve_or_free(user_id, now).limits
    check = peek(user_id, kind, now, limits=limits)
    if not check.allowed:
        log_event("usage_limit_hit", user_id=user_id, kind=kind, limit=check.limit)
        return check

    today, month = day_key(now), month_key(now)
    same_day = UsageCounter.last_count_date == today
    same_month = UsageCounter.last_count_month == month
    stmt = (
        update(UsageCounter)
        .values(
            daily_count=case((same_day, UsageCounter.daily_count + 1), else_=1),
            monthly_count=case((same_month, UsageCounter.monthly_count + 1), else_=1),
            last_count_date=today,
            last_count_month=month,
            lifetime_count=UsageCounter.lifetime_count + 1,
        )
        .execution_options(synchronize_session=False)
    )
    try:
        counter_id = _ensure_row(user_id, kind)
        conds = [UsageCounter.id == counter_id]
        if check.limit is not UNLIMITED:
            cap = _headroom(user_id, kind, limits, check.limit, now)
            if kind == KIND_MESSAGE:
                conds.append(or_(UsageCounter.last_count_date.is_(None), ~same_day,
                                 UsageCounter.daily_count < cap))
            else:
                conds.append(or_(UsageCounter.last_count_month.is_(None), ~same_month,
                                 UsageCounter.monthly_count < cap))
        result = db.session.execute(stmt.where(*conds))
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StoreWriteError(f"usage counter write failed for user {user_id}") from exc

    used = _used(user_id, kind, limits, now)
    if result.rowcount != 1:
        log_event("usage_limit_hit", user_id=user_id, kind=kind, limit=check.limit)
        return UsageCheck(allowed=False, count=used, remaining=_remaining(check.limit, used), limit=check.limit)
    return UsageCheck(allowed=True, count=used, remaining=_remaining(check.limit, used), limit=check.limit)


def usage_summary(user_id: int, now: datetime) -> dict:
    limits = resolve_or_free(user_id, now).limits
    return {kind: peek(user_id, kind, now, limits=limits).to_dict() for kind in KINDS}
