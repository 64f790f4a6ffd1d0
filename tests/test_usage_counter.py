from datetime import timedelta

import pytest

from conftest import NOW, login
from lifecycle.extensions import db
from lifecycle.models import EntitlementRecord, UsageCounter
from lifecycle.services.usage import increment, peek, usage_summary


def _entitle(app, user_id, tier):
    with app.app_context():
        db.session.add(EntitlementRecord(
            user_id=user_id, source="individual", tier=tier, status="active", period_end=None,
        ))
        db.session.commit()


def _counter(user_id, kind):
    return UsageCounter.query.filter_by(user_id=user_id, kind=kind).one_or_none()


def test_free_messages_stop_at_daily_limit(app, make_user):
    uid = make_user()
    with app.app_context():
        first = increment(uid, "message", NOW)
        assert (first.allowed, first.count, first.remaining, first.limit) == (True, 1, 1, 2)
        assert increment(uid, "message", NOW).remaining == 0

        refused = increment(uid, "message", NOW)
        assert refused.allowed is False
        assert refused.count == 2
        c = _counter(uid, "message")
        assert (c.daily_count, c.lifetime_count) == (2, 2)


def test_new_day_resets_daily_count_lazily(app, make_user):
    uid = make_user()
    tomorrow = NOW + timedelta(days=1)
    with app.app_context():
        increment(uid, "message", NOW)
        increment(uid, "message", NOW)

        # Reading doesn't write the reset
        assert peek(uid, "message", tomorrow).count == 0
        assert _counter(uid, "message").last_count_date == "2026-03-10"

        check = increment(uid, "message", tomorrow)
        assert (check.allowed, check.count) == (True, 1)
        c = _counter(uid, "message")
        assert (c.daily_count, c.last_count_date, c.monthly_count, c.lifetime_count) == (1, "2026-03-11", 3, 3)


def test_day_boundary_is_utc_midnight(app, make_user):
    uid = make_user()
    late = NOW.replace(hour=23, minute=59, second=59)
    with app.app_context():
        increment(uid, "message", late)
        increment(uid, "message", late)
        assert increment(uid, "message", late).allowed is False
        assert increment(uid, "message", late + timedelta(seconds=1)).count == 1


def test_free_tier_has_no_voice(app, make_user):
    uid = make_user()
    with app.app_context():
        check = increment(uid, "voice_full", NOW)
        assert (check.allowed, check.limit, check.remaining) == (False, 0, 0)
        assert _counter(uid, "voice_full") is None


def test_pro_messages_are_unlimited(app, make_user):
    uid = make_user()
    _entitle(app, uid, "pro")
    with app.app_context():
        for _ in range(50):
            check = increment(uid, "message", NOW)
        assert (check.allowed, check.count, check.remaining, check.limit) == (True, 50, None, None)


def test_pro_voice_kinds_share_one_monthly_pool(app, make_user):
    uid = make_user()
    _entitle(app, uid, "pro")
    with app.app_context():
        for _ in range(3):
            assert increment(uid, "voice_short", NOW).allowed
        last = increment(uid, "voice_full", NOW)
        assert (last.allowed, last.count, last.remaining) == (True, 4, 0)

        assert increment(uid, "voice_full", NOW).allowed is False
        assert increment(uid, "voice_short", NOW).allowed is False
        assert _counter(uid, "voice_full").monthly_count == 1

        # New month, fresh pool
        next_month = NOW.replace(month=4, day=1)
        assert increment(uid, "voice_short", next_month).count == 1


def test_pro_plus_voice_limits_are_separate(app, make_user):
    uid = make_user()
    _entitle(app, uid, "pro_plus")
    with app.app_context():
        for _ in range(12):
            assert increment(uid, "voice_full", NOW).allowed
        assert increment(uid, "voice_full", NOW).allowed is False
        short = increment(uid, "voice_short", NOW)
        assert (short.allowed, short.remaining, short.limit) == (True, None, None)


def test_unknown_kind_is_rejected(app, make_user):
    uid = make_user()
    with app.app_context():
        with pytest.raises(ValueError):
            peek(uid, "video", NOW)


def test_usage_summary_and_route(app, client, make_user):
    uid = make_user()
    with app.app_context():
        increment(uid, "message", NOW)
        summary = usage_summary(uid, NOW)
        assert summary["message"] == {"allowed": True, "count": 1, "remaining": 1, "limit": 2}
        assert set(summary) == {"message", "voice_short", "voice_full"}

    assert client.get("/account/usage").status_code == 401
    login(client, uid)
    resp = client.get("/account/usage")
    assert resp.status_code == 200
    assert resp.get_json()["message"]["count"] == 1


def test_limit_is_enforced_by_the_write_not_the_read(app, make_user, monkeypatch):
    from lifecycle.services import usage

    uid = make_user()
    with app.app_context():
        increment(uid, "message", NOW)
        increment(uid, "message", NOW)

        # A concurrent caller that read the counter at limit-1
        stale = usage.UsageCheck(allowed=True, count=1, remaining=1, limit=2)
        monkeypatch.setattr(usage, "peek", lambda *a, **kw: stale)

        refused = increment(uid, "message", NOW)
        assert (refused.allowed, refused.count, refused.remaining) == (False, 2, 0)
        c = _counter(uid, "message")
        assert (c.daily_count, c.lifetime_count) == (2, 2)


def test_first_increment_tolerates_a_concurrent_insert(app, make_user, monkeypatch):
    from lifecycle.services import usage

    uid = make_user()
    with app.app_context():
        real_get = usage._get
        calls = []

        def _racing_get(user_id, kind):
            calls.append(kind)
            if len(calls) == 2:
                # Another request inserts the row between our existence check and our insert
                db.session.add(UsageCounter(user_id=user_id, kind=kind, daily_count=1, monthly_count=1,
                                            last_count_date="2026-03-10", last_count_month="2026-03",
                                            lifetime_count=1))
                db.session.commit()
                return None
            return real_get(user_id, kind)

        monkeypatch.setattr(usage, "_get", _racing_get)
        check = increment(uid, "message", NOW, limits=usage.resolve_or_free(uid, NOW).limits)
        assert (check.allowed, check.count) == (True, 2)
        assert _counter(uid, "message").daily_count == 2
