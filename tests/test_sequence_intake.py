from datetime import date, timedelta

import pytest

from conftest import NOW
from lifecycle.errors import StoreWriteError
from lifecycle.extensions import db
from lifecycle.models import SequenceRecord
from lifecycle.services.scheduler import run_intake
from lifecycle.services.sequences import (
    start_sequence, next_send_time, get_sequence, pause_all_for_user,
)


def _intake(app, **kw):
    with app.app_context():
        return run_intake(NOW, **kw)


def _records(app, user_id, name=None):
    with app.app_context():
        q = SequenceRecord.query.filter_by(user_id=user_id)
        if name:
            q = q.filter_by(sequence_name=name)
        return [(r.sequence_name, r.current_step, r.next_send_at, r.completed, r.paused) for r in q]


def _old_sequence(app, user_id, name, started, completed=True):
    with app.app_context():
        db.session.add(SequenceRecord(
            user_id=user_id, sequence_name=name, current_step=3, started_at=started,
            next_send_at=None, completed=completed,
        ))
        db.session.commit()


def test_inactive_user_enters_winback(app, make_user):
    uid = make_user(last_active_at=NOW - timedelta(days=8))
    assert _intake(app) == {"winback_started": 1, "onboarding_started": 0, "streak_started": 0, "errors": 0}
    assert _records(app, uid) == [("winback", 0, NOW, False, False)]


def test_recently_active_user_is_not_enrolled(app, make_user):
    make_user(last_active_at=NOW - timedelta(days=6))
    assert _intake(app)["winback_started"] == 0


def test_opted_out_users_are_never_enrolled(app, make_user):
    make_user(email="a@example.com", last_active_at=NOW - timedelta(days=30), email_unsubscribed=True)
    make_user(email="b@example.com", last_active_at=NOW - timedelta(days=30), email_notifications_enabled=False)
    make_user(email="c@example.com", created_at=NOW - timedelta(hours=1), email_unsubscribed=True)
    assert _intake(app) == {"winback_started": 0, "onboarding_started": 0, "streak_started": 0, "errors": 0}


def test_winback_cooldown(app, make_user):
    recent = make_user(email="recent@example.com", last_active_at=NOW - timedelta(days=40))
    old = make_user(email="old@example.com", last_active_at=NOW - timedelta(days=40))
    _old_sequence(app, recent, "winback", NOW - timedelta(days=29))
    _old_sequence(app, old, "winback", NOW - timedelta(days=31))

    assert _intake(app)["winback_started"] == 1
    assert len(_records(app, recent, "winback")) == 1
    assert len(_records(app, old, "winback")) == 2


def test_user_with_open_sequence_is_skipped(app, make_user):
    uid = make_user(last_active_at=NOW - timedelta(days=10))
    _old_sequence(app, uid, "onboarding", NOW - timedelta(days=12), completed=False)
    assert _intake(app)["winback_started"] == 0


def test_recent_signup_enters_onboarding_once(app, make_user):
    uid = make_user(created_at=NOW - timedelta(hours=3))
    assert _intake(app)["onboarding_started"] == 1
    assert _intake(app)["onboarding_started"] == 0
    assert _records(app, uid) == [("onboarding", 0, NOW, False, False)]


def test_signup_outside_window_is_not_enrolled(app, make_user):
    make_user(created_at=NOW - timedelta(hours=49))
    assert _intake(app)["onboarding_started"] == 0


def test_intake_respects_batch_size(app, make_user):
    for i in range(3):
        make_user(email=f"idle{i}@example.com", last_active_at=NOW - timedelta(days=9 + i))
    assert _intake(app, batch_size=2)["winback_started"] == 2
    assert _intake(app, batch_size=2)["winback_started"] == 1


def test_failed_enrollment_is_counted_and_skipped(app, make_user, monkeypatch):
    make_user(last_active_at=NOW - timedelta(days=8))

    def _boom(user_id, name, now):
        raise StoreWriteError("db down")

    monkeypatch.setattr("lifecycle.services.scheduler.start_sequence", _boom)
    assert _intake(app) == {"winback_started": 0, "onboarding_started": 0, "streak_started": 0, "errors": 1}


def test_start_sequence_refuses_duplicate_open_record(app, make_user):
    uid = make_user()
    with app.app_context():
        assert start_sequence(uid, "trial", NOW) is not None
        assert start_sequence(uid, "trial", NOW + timedelta(days=1)) is None
        # A different sequence is fine
        assert start_sequence(uid, "streak_recovery", NOW) is not None
        with pytest.raises(ValueError):
            start_sequence(uid, "nope", NOW)


def test_pause_all_for_user_only_touches_open_records(app, make_user):
    uid = make_user()
    _old_sequence(app, uid, "winback", NOW - timedelta(days=60))
    with app.app_context():
        start_sequence(uid, "onboarding", NOW)
        start_sequence(uid, "trial", NOW)
        assert pause_all_for_user(uid) == 2
        assert pause_all_for_user(uid) == 0


def test_next_send_time_is_anchored_on_start():
    started = NOW - timedelta(days=2)
    assert next_send_time("onboarding", 0, started) == started + timedelta(days=1)
    assert next_send_time("onboarding", 5, started) == started + timedelta(days=21)
    assert next_send_time("onboarding", 6, started) is None
    assert [s.day_offset for s in get_sequence("trial")] == [0, 3, 6]
    assert get_sequence("unknown") == []


YESTERDAY = date(2026, 3, 9)


def test_streak_at_risk_enters_streak_recovery(app, make_user):
    at_risk = make_user(email="risk@example.com", current_streak=5, last_activity_date=YESTERDAY)
    make_user(email="today@example.com", current_streak=5, last_activity_date=NOW.date())
    make_user(email="short@example.com", current_streak=2, last_activity_date=YESTERDAY)
    make_user(email="quiet@example.com", current_streak=9, last_activity_date=YESTERDAY, email_unsubscribed=True)

    assert _intake(app)["streak_started"] == 1
    assert _records(app, at_risk) == [("streak_recovery", 0, NOW, False, False)]


def test_streak_cooldown(app, make_user):
    recent = make_user(email="recent@example.com", current_streak=4, last_activity_date=YESTERDAY)
    old = make_user(email="old@example.com", current_streak=4, last_activity_date=YESTERDAY)
    _old_sequence(app, recent, "streak_recovery", NOW - timedelta(days=6))
    _old_sequence(app, old, "streak_recovery", NOW - timedelta(days=8))

    assert _intake(app)["streak_started"] == 1
    assert len(_records(app, recent, "streak_recovery")) == 1
    assert len(_records(app, old, "streak_recovery")) == 2


def test_user_enters_one_sequence_per_run(app, make_user):
    uid = make_user(last_active_at=NOW - timedelta(days=8), current_streak=3, last_activity_date=YESTERDAY)
    out = _intake(app)
    assert (out["winback_started"], out["streak_started"]) == (1, 0)
    assert [r[0] for r in _records(app, uid)] == ["winback"]
