from datetime import timedelta

import pytest

from conftest import NOW, CRON_SECRET
from lifecycle.extensions import db
from lifecycle.models import SequenceRecord

AUTH = {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.mark.parametrize("path", ["/cron/sequences", "/cron/intake"])
@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer nope"}, {"Authorization": CRON_SECRET}])
def test_cron_requires_bearer_secret(client, path, headers):
    resp = client.post(path, headers=headers)
    assert resp.status_code == 401
    assert resp.get_json() == {"error": "unauthorized"}


def test_cron_without_configured_secret_is_500(app, client, monkeypatch):
    monkeypatch.setitem(app.config, "CRON_SECRET", None)
    resp = client.post("/cron/sequences", headers=AUTH)
    assert resp.status_code == 500


def test_sequences_run_returns_summary(app, client, make_user, sender):
    uid = make_user()
    with app.app_context():
        db.session.add(SequenceRecord(
            user_id=uid, sequence_name="onboarding", current_step=0, started_at=NOW, next_send_at=NOW,
        ))
        db.session.commit()

    resp = client.get("/cron/sequences", headers=AUTH)
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "processed": 1, "sent": 1, "skipped": 0, "errors": 0, "completed": 0}
    assert len(sender.sent) == 1


def test_sequences_run_with_nothing_due(client, sender):
    resp = client.post("/cron/sequences", headers=AUTH)
    assert resp.get_json() == {"ok": True, "processed": 0, "sent": 0, "skipped": 0, "errors": 0, "completed": 0}


def test_intake_route_enrolls(app, client, make_user):
    make_user(email="idle@example.com", last_active_at=NOW - timedelta(days=14))
    make_user(email="new@example.com", created_at=NOW - timedelta(hours=2))

    resp = client.post("/cron/intake", headers=AUTH)
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "winback_started": 1, "onboarding_started": 1, "streak_started": 0, "errors": 0}
