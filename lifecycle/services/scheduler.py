"""
Cron-driven drip sequence processing.

A run selects due, unclaimed records, claims each with a conditional update,
then short-circuits, renders and dispatches one step per record. Sends are
at-least-once: the claim narrows the overlap window between concurrent runs
but a crash after dispatch and before write-back can still repeat a step.
"""
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Callable, Optional

from flask import current_app
from sqlalchemy import or_, update, exists, and_
from sqlalchemy.exc import SQLAlchemyError

from lifecycle.billing.entitlements import resolve_or_free
from lifecycle.billing.store import EntitlementStore
from lifecycle.errors import (
    StoreWriteError, DispatchError, TransientDispatchError, PermanentDispatchError,
)
from lifecycle.extensions import db
from lifecycle.models import SequenceRecord, User
from lifecycle.models.email_log import EMAIL_SENT, EMAIL_FAILED
from lifecycle.models.entitlement import TIER_FREE, STATUS_ACTIVE, SOURCE_INDIVIDUAL
from lifecycle.models.sequence import SEQ_ONBOARDING, SEQ_TRIAL, SEQ_WINBACK, SEQ_STREAK_RECOVERY
from lifecycle.observability import log_event
from lifecycle.services import tokens
from lifecycle.services.email import absolute_url, get_sender, log_email
from lifecycle.services.renderer import render
from lifecycle.services.sequences import get_step, next_send_time, start_sequence, subject_for

# Per-record results
SENT = "sent"
SKIPPED = "skipped"
COMPLETED = "completed"
ERROR = "error"


@dataclass
class RunSummary:
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    errors: int = 0
    completed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def template_variables(user: User) -> dict:
    return {
        "name": user.greeting_name,
        "unsubscribe_url": absolute_url(f"account/unsubscribe?token={tokens.unsubscribe_token(user.id)}"),
        "app_url": absolute_url("/"),
        "product_name": current_app.config.get("PRODUCT_NAME", "Coach Reflection"),
    }


class SequenceScheduler:
    def __init__(
        self,
        *,
        now: datetime,
        sender=None,
        batch_size: Optional[int] = None,
        delay_ms: Optional[int] = None,
        claim_seconds: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        store: Optional[EntitlementStore] = None,
    ):
        cfg = current_app.config
        self.now = now
        self.sender = sender or get_sender()
        self.batch_size = batch_size if batch_size is not None else int(cfg.get("SEQUENCE_BATCH_SIZE", 100))
        self.delay_ms = delay_ms if delay_ms is not None else int(cfg.get("SEQUENCE_SEND_DELAY_MS", 100))
        self.claim_for = timedelta(seconds=claim_seconds if claim_seconds is not None
                                   else int(cfg.get("SEQUENCE_CLAIM_SECONDS", 300)))
        self.sleep = sleep
        self.store = store or EntitlementStore()
        self._sent_any = False

    # ---- selection / claim ----
    def _unclaimed(self):
        return or_(SequenceRecord.claimed_until.is_(None), SequenceRecord.claimed_until <= self.now)

    def due_ids(self):
        rows = (
            db.session.query(SequenceRecord.id)
            .filter(
                SequenceRecord.completed.is_(False),
                SequenceRecord.paused.is_(False),
                SequenceRecord.next_send_at.isnot(None),
                SequenceRecord.next_send_at <= self.now,
                self._unclaimed(),
            )
            .order_by(SequenceRecord.next_send_at, SequenceRecord.id)
            .limit(self.batch_size)
            .all()
        )
        return [r[0] for r in rows]

    def claim(self, record_id: int) -> bool:
        """Atomically mark a record as ours. False if an overlapping run got there first."""
        result = db.session.execute(
            update(SequenceRecord)
            .where(SequenceRecord.id == record_id, self._unclaimed())
            .values(claimed_until=self.now + self.claim_for)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount == 1

    def _save(self, rec: SequenceRecord, **fields) -> None:
        """Write back and release the claim in one commit."""
        for key, val in fields.items():
            setattr(rec, key, val)
        rec.claimed_until = None
        try:
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StoreWriteError(f"sequence write failed for record {rec.id}") from exc

    # ---- per record ----
    def _short_circuit(self, rec: SequenceRecord, user: User) -> Optional[str]:
        if user.opted_out:
            self._save(rec, paused=True)
            log_event("sequence_paused_opt_out", user_id=user.id, sequence=rec.sequence_name)
            return SKIPPED

        if rec.sequence_name == SEQ_ONBOARDING:
            if resolve_or_free(user.id, self.now, store=self.store).tier != TIER_FREE:
                self._save(rec, completed=True, paused=True)
                log_event("sequence_stopped_upgraded", user_id=user.id, sequence=rec.sequence_name)
                return SKIPPED

        elif rec.sequence_name == SEQ_TRIAL:
            individual = self.store.get(user.id, SOURCE_INDIVIDUAL)
            converted = individual is not None and individual.status == STATUS_ACTIVE
            declined = resolve_or_free(user.id, self.now, store=self.store).tier == TIER_FREE
            if converted or declined:
                self._save(rec, completed=True, paused=True)
                log_event("sequence_stopped_trial_" + ("converted" if converted else "declined"),
                          user_id=user.id, sequence=rec.sequence_name)
                return SKIPPED
        return None

    def _dispatch(self, user: User, subject: str, rendered) -> None:
        if self._sent_any and self.delay_ms:
            self.sleep(self.delay_ms / 1000.0)
        self._sent_any = True
        try:
            result = self.sender.send(user.email, subject, rendered.html, rendered.text)
        except Exception as exc:
            # Any transport error is retried on the next tick
            raise TransientDispatchError(f"{type(exc).__name__}: {exc}") from exc
        if result.ok:
            return
        if result.permanent:
            raise PermanentDispatchError(result.error or "permanent_failure")
        raise TransientDispatchError(result.error or "transient_failure")

    def process(self, rec: SequenceRecord) -> str:
        user = db.session.get(User, rec.user_id)
        if user is None:
            self._save(rec, completed=True, paused=True)
            return SKIPPED

        stopped = self._short_circuit(rec, user)
        if stopped:
            return stopped

        step = get_step(rec.sequence_name, rec.current_step)
        if step is None:
            self._save(rec, completed=True, next_send_at=None)
            log_event("sequence_completed", user_id=user.id, sequence=rec.sequence_name)
            return COMPLETED

        rendered = render(step.template_id, template_variables(user))
        if rendered is None:
            # Not retried: the same step would fail on every run
            self._save(rec, paused=True)
            log_event("sequence_template_missing", level=logging.ERROR,
                      user_id=user.id, sequence=rec.sequence_name, template=step.template_id)
            return ERROR

        subject = subject_for(step)
        audit = dict(user_id=user.id, to_email=user.email, template=step.template_id, subject=subject,
                     now=self.now, sequence_name=rec.sequence_name, step=rec.current_step)
        try:
            self._dispatch(user, subject, rendered)
        except DispatchError as exc:
            log_email(status=EMAIL_FAILED, error=str(exc),
                      meta={"permanent": exc.permanent}, **audit)
            log_event("sequence_send_failed", level=logging.WARNING, user_id=user.id,
                      sequence=rec.sequence_name, step=rec.current_step,
                      permanent=exc.permanent, error=str(exc))
            if exc.permanent:
                self._save(rec, paused=True)
            else:
                # Untouched step and next_send_at: due again on the next tick
                self._save(rec)
            return ERROR

        nxt = next_send_time(rec.sequence_name, rec.current_step, rec.started_at)
        self._save(
            rec,
            current_step=rec.current_step + 1,
            next_send_at=nxt,
            completed=nxt is None,
        )
        log_email(status=EMAIL_SENT, **audit)
        log_event("sequence_step_sent", user_id=user.id, sequence=rec.sequence_name,
                  step=audit["step"], template=step.template_id)
        return SENT

    def run(self) -> RunSummary:
        summary = RunSummary()
        for record_id in self.due_ids():
            try:
                if not self.claim(record_id):
                    continue
                summary.processed += 1
                rec = db.session.get(SequenceRecord, record_id)
                outcome = self.process(rec)
            except Exception as exc:
                db.session.rollback()
                summary.errors += 1
                log_event("sequence_record_failed", level=logging.ERROR,
                          record_id=record_id, error=f"{type(exc).__name__}: {exc}")
                continue

            if outcome == SENT:
                summary.sent += 1
                if rec.completed:
                    summary.completed += 1
            elif outcome == COMPLETED:
                summary.completed += 1
            elif outcome == SKIPPED:
                summary.skipped += 1
            else:
                summary.errors += 1

        log_event("sequence_run", **summary.to_dict())
        return summary


def _opted_in():
    return and_(
        User.is_active.is_(True),
        User.email_notifications_enabled.is_(True),
        User.email_unsubscribed.is_(False),
    )


def run_intake(now: datetime, batch_size: Optional[int] = None) -> dict:
    """
    Enroll inactive users into winback, recent signups into onboarding and
    coaches with a streak at risk into streak recovery. A user enters at most
    one sequence per run. Returns counts; a failed enrollment is logged and skipped.
    """
    cfg = current_app.config
    limit = batch_size if batch_size is not None else int(cfg.get("INTAKE_BATCH_SIZE", 50))
    inactive_cutoff = now - timedelta(days=int(cfg.get("WINBACK_INACTIVE_DAYS", 7)))
    cooldown_cutoff = now - timedelta(days=int(cfg.get("WINBACK_COOLDOWN_DAYS", 30)))
    signup_cutoff = now - timedelta(hours=int(cfg.get("SIGNUP_INTAKE_HOURS", 48)))
    streak_min = int(cfg.get("STREAK_MIN_DAYS", 3))
    streak_cooldown_cutoff = now - timedelta(days=int(cfg.get("STREAK_COOLDOWN_DAYS", 7)))

    open_sequence = exists().where(
        SequenceRecord.user_id == User.id, SequenceRecord.completed.is_(False),
    )
    recent_winback = exists().where(
        SequenceRecord.user_id == User.id,
        SequenceRecord.sequence_name == SEQ_WINBACK,
        SequenceRecord.started_at >= cooldown_cutoff,
    )
    any_onboarding = exists().where(
        SequenceRecord.user_id == User.id, SequenceRecord.sequence_name == SEQ_ONBOARDING,
    )
    recent_streak = exists().where(
        SequenceRecord.user_id == User.id,
        SequenceRecord.sequence_name == SEQ_STREAK_RECOVERY,
        SequenceRecord.started_at >= streak_cooldown_cutoff,
    )

    winback_users = (
        User.query
        .filter(
            _opted_in(),
            User.last_active_at.isnot(None),
            User.last_active_at < inactive_cutoff,
            ~open_sequence,
            ~recent_winback,
        )
        .order_by(User.last_active_at)
        .limit(limit)
        .all()
    )
    signup_users = (
        User.query
        .filter(_opted_in(), User.created_at >= signup_cutoff, ~any_onboarding)
        .order_by(User.created_at)
        .limit(limit)
        .all()
    )
    # Streak at risk: no activity yet today
    streak_users = (
        User.query
        .filter(
            _opted_in(),
            User.current_streak >= streak_min,
            User.last_activity_date.isnot(None),
            User.last_activity_date < now.date(),
            ~open_sequence,
            ~recent_streak,
        )
        .order_by(User.current_streak.desc(), User.id)
        .limit(limit)
        .all()
    )

    result = {"winback_started": 0, "onboarding_started": 0, "streak_started": 0, "errors": 0}
    enrolled = set()
    for key, name, users in (
        ("winback_started", SEQ_WINBACK, winback_users),
        ("onboarding_started", SEQ_ONBOARDING, signup_users),
        ("streak_started", SEQ_STREAK_RECOVERY, streak_users),
    ):
        for user in users:
            if user.id in enrolled:
                continue
            try:
                if start_sequence(user.id, name, now) is not None:
                    result[key] += 1
                    enrolled.add(user.id)
            except StoreWriteError as exc:
                result["errors"] += 1
                log_event("sequence_intake_failed", level=logging.ERROR,
                          user_id=user.id, sequence=name, error=str(exc))

    log_event("sequence_intake", **result)
    return result
