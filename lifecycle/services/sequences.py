"""
Drip sequence definitions and the writes that start or stop them.

Step day offsets are measured from the sequence's started_at, never from the
previous send, so a late or retried step doesn't push the rest of the
schedule back.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from lifecycle.errors import StoreWriteError
from lifecycle.extensions import db
from lifecycle.models import SequenceRecord
from lifecycle.models.sequence import SEQ_ONBOARDING, SEQ_TRIAL, SEQ_WINBACK, SEQ_STREAK_RECOVERY
from lifecycle.observability import log_event


@dataclass(frozen=True)
class SequenceStep:
    day_offset: int
    template_id: str
    subject: str


SEQUENCES: Dict[str, Tuple[SequenceStep, ...]] = {
    SEQ_ONBOARDING: (
        SequenceStep(0, "welcome", "Welcome to {product}"),
        SequenceStep(1, "first-reflection", "Your first reflection takes 2 minutes"),
        SequenceStep(3, "social-proof", "What coaches are reflecting on this week"),
        SequenceStep(5, "feature-highlight", "AI insights that transform your coaching"),
        SequenceStep(7, "check-in", "How are your reflections going?"),
        SequenceStep(10, "upgrade-pitch", "Ready for AI-powered insights?"),
        SequenceStep(21, "last-chance", "A thank you from the {product} team"),
    ),
    SEQ_TRIAL: (
        SequenceStep(0, "trial-started", "Your {product} Pro trial has started"),
        SequenceStep(3, "trial-midpoint", "Getting the most from your Pro trial"),
        SequenceStep(6, "trial-ending", "Your Pro trial ends tomorrow"),
    ),
    SEQ_WINBACK: (
        SequenceStep(0, "winback", "Miss your reflections? We do too"),
        SequenceStep(3, "winback-feature", "New: Chat with your coaching AI"),
        SequenceStep(7, "winback-final", "Quick reminder about {product}"),
    ),
    SEQ_STREAK_RECOVERY: (
        SequenceStep(0, "streak-broken", "Your reflection streak - get back on track"),
    ),
}


def get_sequence(name: str) -> List[SequenceStep]:
    return list(SEQUENCES.get(name, ()))


def get_step(name: str, index: int) -> Optional[SequenceStep]:
    steps = SEQUENCES.get(name, ())
    if 0 <= index < len(steps):
        return steps[index]
    return None


def subject_for(step: SequenceStep) -> str:
    return step.subject.format(product=current_app.config.get("PRODUCT_NAME", "Coach Reflection"))


def next_send_time(name: str, current_step: int, started_at: datetime) -> Optional[datetime]:
    """When the step after `current_step` is due, or None if the sequence is exhausted."""
    nxt = get_step(name, current_step + 1)
    if nxt is None:
        return None
    return started_at + timedelta(days=nxt.day_offset)


def has_open_sequence(user_id: int, name: Optional[str] = None) -> bool:
    q = SequenceRecord.query.filter_by(user_id=user_id, completed=False)
    if name:
        q = q.filter_by(sequence_name=name)
    return db.session.query(q.exists()).scalar()


def start_sequence(user_id: int, name: str, now: datetime) -> Optional[SequenceRecord]:
    """
    Enroll a user at step 0, due immediately. Refuses (returns None) when the
    user already has an open record for the same sequence.
    """
    if name not in SEQUENCES:
        raise ValueError(f"unknown sequence: {name}")
    if has_open_sequence(user_id, name):
        return None

    steps = SEQUENCES[name]
    rec = SequenceRecord(
        user_id=user_id,
        sequence_name=name,
        current_step=0,
        started_at=now,
        next_send_at=now + timedelta(days=steps[0].day_offset),
        completed=False,
        paused=False,
    )
    try:
        db.session.add(rec)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StoreWriteError(f"could not start {name} for user {user_id}") from exc
    log_event("sequence_started", user_id=user_id, sequence=name)
    return rec


def pause_all_for_user(user_id: int) -> int:
    """Pause every open sequence (unsubscribe). Returns the number of rows touched."""
    try:
        count = (
            SequenceRecord.query
            .filter_by(user_id=user_id, completed=False, paused=False)
            .update({"paused": True}, synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StoreWriteError(f"could not pause sequences for user {user_id}") from exc
    if count:
        log_event("sequences_paused", user_id=user_id, count=count)
    return count


def enroll_trial(user, now: datetime) -> Optional[SequenceRecord]:
    """Best-effort enrollment used by the initial-purchase side effect."""
    try:
        return start_sequence(user.id, SEQ_TRIAL, now)
    except StoreWriteError as exc:
        log_event("trial_enroll_failed", level=logging.ERROR, user_id=user.id, error=str(exc))
        return None
