import json
from datetime import datetime, timedelta

import pytest

from conftest import NOW, RC_SECRET
from lifecycle.billing.entitlements import resolve
from lifecycle.models import EntitlementRecord, BillingEventLog, SequenceRecord
from lifecycle.errors import StoreWriteError

AUTH = {"Authorization": f"Bearer {RC_SECRET}", "Content-Type": "application/json"}


def _ms(dt):
    return int((dt - datetime(1970, 1, 1)).total_seconds() * 1000)


def _event(event_id, type_, user_id, **extra):
    ev = {
        "id": event_id,
        "type": type_,
        "app_user_id": str(user_id),
        "product_id": "pro_monthly",
        "environment": "PRODUCTION",
        "store": "APP_STORE",
        "period_type": "NORMAL",
    }
    ev.update(extra)
    return {"api_version": "1.0", "event": ev}


def _post(client, payload, headers=AUTH):
    return client.post("/webhooks/revenuecat", data=json.dumps(payload), headers=headers)


@pytest.fixture()
def notices(monkeypatch):
    """Capture the first-purchase side effect instead of sending mail."""
    calls = []
    monkeypatch.setattr(
        "lifecycle.services.notifications.on_initial_purchase",
        lambda user, event, now: calls.append((user.id, event.event_id)),
    )
    monkeypatch.setattr(
        "lifecycle.services.notifications.notify_admins_cancellation",
        lambda user, event, now: None,
    )
    return calls


def _record(uid):
    return EntitlementRecord.query.filter_by(user_id=uid, source="individual").one_or_none()


def test_initial_purchase_without_expiry_grants_pro_for_30_days(app, client, make_user, notices):
    uid = make_user()
    resp = _post(client, _event("evt_1", "INITIAL_PURCHASE", uid))
    assert resp.status_code == 200
    assert resp.get_json() == {"received": True}

    with app.app_context():
        rec = _record(uid)
        assert rec.tier == "pro"
        assert rec.status == "active"
        assert rec.period_end == NOW + timedelta(days=30)
        assert rec.billing_store == "apple"
        assert rec.welcome_sent_at == NOW
        ent = resolve(uid, NOW)
        assert ent.tier == "pro" and ent.source == "individual"
    assert notices == [(uid, "evt_1")]


def test_duplicate_delivery_is_acknowledged_and_welcome_fires_once(app, client, make_user, notices):
    uid = make_user()
    payload = _event("evt_dup", "INITIAL_PURCHASE", uid)

    first = _post(client, payload)
    with app.app_context():
        snapshot = (_record(uid).tier, _record(uid).status, _record(uid).period_end)

    second = _post(client, payload)
    assert first.status_code == 200
    assert second.status_code == 200
    assert second.get_json() == {"received": True, "duplicate": True}

    with app.app_context():
        assert (_record(uid).tier, _record(uid).status, _record(uid).period_end) == snapshot
        outcomes = [row.outcome for row in BillingEventLog.query.order_by(BillingEventLog.id)]
        assert outcomes == ["applied", "duplicate"]
    assert len(notices) == 1


def test_welcome_guard_survives_cache_expiry(app, client, make_user, notices):
    uid = make_user()
    payload = _event("evt_w", "INITIAL_PURCHASE", uid)
    _post(client, payload)
    app.extensions["idempotency_cache"].clear()

    resp = _post(client, payload)
    assert resp.status_code == 200
    assert resp.get_json() == {"received": True}
    assert len(notices) == 1


def test_returning_subscriber_gets_welcome_again(app, client, make_user, notices):
    uid = make_user()
    _post(client, _event("evt_a", "INITIAL_PURCHASE", uid))
    _post(client, _event("evt_b", "EXPIRATION", uid))
    with app.app_context():
        assert _record(uid).welcome_sent_at is None

    _post(client, _event("evt_c", "INITIAL_PURCHASE", uid))
    assert notices == [(uid, "evt_a"), (uid, "evt_c")]
    with app.app_context():
        assert _record(uid).tier == "pro"


def test_annual_product_defaults_to_365_days(app, client, make_user, notices):
    uid = make_user()
    _post(client, _event("evt_a", "INITIAL_PURCHASE", uid, product_id="pro_annual"))
    with app.app_context():
        assert _record(uid).period_end == NOW + timedelta(days=365)


def test_expiration_at_ms_and_pro_plus_product(app, client, make_user, notices):
    uid = make_user()
    end = NOW + timedelta(days=31)
    _post(client, _event("evt_pp", "RENEWAL", uid, product_id="coach_proplus_monthly",
                         expiration_at_ms=_ms(end)))
    with app.app_context():
        rec = _record(uid)
        assert rec.tier == "pro_plus"
        assert rec.period_end == end
        # Renewal is not the initial purchase: no welcome
        assert rec.welcome_sent_at is None
    assert notices == []


def test_trial_initial_purchase_is_trialing_and_enrolls_trial_sequence(app, client, make_user, sender):
    uid = make_user()
    resp = _post(client, _event("evt_t", "INITIAL_PURCHASE", uid, period_type="TRIAL"))
    assert resp.status_code == 200
    with app.app_context():
        assert _record(uid).status == "trialing"
        seq = SequenceRecord.query.filter_by(user_id=uid, sequence_name="trial").one()
        assert seq.current_step == 0
        assert seq.next_send_at == NOW
    # Pro welcome mail went out through the sender
    assert [m["to"] for m in sender.sent] == ["coach@example.com"]


@pytest.mark.parametrize("order", [("CANCELLATION", "EXPIRATION"), ("EXPIRATION", "CANCELLATION")])
def test_cancel_and_expire_in_either_order_end_free(app, client, make_user, notices, order):
    uid = make_user()
    _post(client, _event("evt_buy", "INITIAL_PURCHASE", uid))
    for i, type_ in enumerate(order):
        assert _post(client, _event(f"evt_{i}", type_, uid)).status_code == 200

    with app.app_context():
        rec = _record(uid)
        assert rec.tier == "free"
        assert rec.status == "inactive"
        assert rec.provider_customer_id is None
        assert resolve(uid, NOW).tier == "free"


def test_cancellation_keeps_access_until_period_end(app, client, make_user, notices):
    uid = make_user()
    _post(client, _event("evt_buy", "INITIAL_PURCHASE", uid))
    _post(client, _event("evt_cancel", "CANCELLATION", uid))
    with app.app_context():
        assert _record(uid).status == "canceled"
        assert resolve(uid, NOW + timedelta(days=29)).tier == "pro"
        assert resolve(uid, NOW + timedelta(days=31)).tier == "free"


def test_uncancellation_restores_active(app, client, make_user, notices):
    uid = make_user()
    _post(client, _event("e1", "INITIAL_PURCHASE", uid))
    _post(client, _event("e2", "CANCELLATION", uid))
    _post(client, _event("e3", "UNCANCELLATION", uid))
    with app.app_context():
        assert _record(uid).status == "active"


def test_billing_issue_then_renewal(app, client, make_user, notices):
    uid = make_user()
    _post(client, _event("e1", "INITIAL_PURCHASE", uid))
    _post(client, _event("e2", "BILLING_ISSUE", uid))
    with app.app_context():
        assert _record(uid).status == "past_due"
    _post(client, _event("e3", "RENEWAL", uid))
    with app.app_context():
        assert _record(uid).status == "active"


def test_late_billing_issue_after_expiry_is_ignored(app, client, make_user, notices):
    uid = make_user()
    _post(client, _event("e1", "INITIAL_PURCHASE", uid))
    _post(client, _event("e2", "EXPIRATION", uid))
    _post(client, _event("e3", "BILLING_ISSUE", uid))
    with app.app_context():
        assert _record(uid).status == "inactive"
        row = BillingEventLog.query.filter_by(event_id="e3").one()
        assert row.outcome == "ignored"


def test_product_change_updates_tier_in_place(app, client, make_user, notices):
    uid = make_user()
    _post(client, _event("e1", "INITIAL_PURCHASE", uid))
    _post(client, _event("e2", "PRODUCT_CHANGE", uid, product_id="coach_proplus_monthly"))
    with app.app_context():
        rec = _record(uid)
        assert rec.tier == "pro_plus"
        assert rec.status == "active"
        assert rec.period_end == NOW + timedelta(days=30)


def test_cancellation_from_another_store_is_ignored(app, client, make_user, notices):
    uid = make_user()
    _post(client, _event("e1", "INITIAL_PURCHASE", uid, store="STRIPE"))
    _post(client, _event("e2", "CANCELLATION", uid, store="PLAY_STORE"))
    with app.app_context():
        assert _record(uid).status == "active"
        assert BillingEventLog.query.filter_by(event_id="e2").one().notes == "store_mismatch"


@pytest.mark.parametrize("type_", ["TRANSFER", "SUBSCRIPTION_PAUSED", "SOMETHING_NEW"])
def test_noop_types_are_acknowledged(app, client, make_user, notices, type_):
    uid = make_user()
    resp = _post(client, _event("e_noop", type_, uid))
    assert resp.status_code == 200
    with app.app_context():
        assert _record(uid) is None
        assert BillingEventLog.query.filter_by(event_id="e_noop").one().outcome == "ignored"


def test_sandbox_event_dropped_in_production(app, client, make_user, notices):
    uid = make_user()
    app.config["APP_ENV"] = "production"
    resp = _post(client, _event("e_sb", "INITIAL_PURCHASE", uid, environment="SANDBOX"))
    assert resp.status_code == 200
    with app.app_context():
        assert _record(uid) is None
        assert BillingEventLog.query.filter_by(event_id="e_sb").one().outcome == "skipped_sandbox"
    assert "e_sb" not in app.extensions["idempotency_cache"]


def test_sandbox_event_applied_outside_production(app, client, make_user, notices):
    uid = make_user()
    _post(client, _event("e_sb", "INITIAL_PURCHASE", uid, environment="SANDBOX"))
    with app.app_context():
        assert _record(uid).tier == "pro"


@pytest.mark.parametrize("subject", ["999999", "not-a-number", ""])
def test_unknown_subject_is_dropped_with_200(app, client, notices, subject):
    resp = _post(client, _event("e_unknown", "INITIAL_PURCHASE", subject))
    assert resp.status_code == 200
    with app.app_context():
        assert EntitlementRecord.query.count() == 0
        assert BillingEventLog.query.filter_by(event_id="e_unknown").one().outcome == "unknown_subject"


@pytest.mark.parametrize("headers", [
    {"Content-Type": "application/json"},
    {"Authorization": "Bearer wrong", "Content-Type": "application/json"},
])
def test_bad_credentials_rejected_without_cache_or_state(app, client, make_user, notices, headers):
    uid = make_user()
    resp = _post(client, _event("e_auth", "INITIAL_PURCHASE", uid), headers=headers)
    assert resp.status_code == 401
    assert "e_auth" not in app.extensions["idempotency_cache"]
    with app.app_context():
        assert _record(uid) is None
        row = BillingEventLog.query.one()
        assert row.outcome == "rejected"
        assert row.signature_valid is False

    # The same id still applies once properly authenticated
    assert _post(client, _event("e_auth", "INITIAL_PURCHASE", uid)).get_json() == {"received": True}


def test_malformed_body_is_acknowledged_and_audited(app, client):
    resp = client.post("/webhooks/revenuecat", data="{}", headers=AUTH)
    assert resp.status_code == 200
    assert resp.get_json() == {"received": True, "ignored": "malformed_event"}
    with app.app_context():
        row = BillingEventLog.query.one()
        assert (row.outcome, row.type) == ("ignored", "malformed")
        assert row.event_id.startswith("malformed:")
        assert row.signature_valid is True


def test_store_failure_returns_500_and_releases_event_id(app, client, make_user, notices, monkeypatch):
    uid = make_user()

    def _boom(self, *a, **kw):
        raise StoreWriteError("db unavailable")

    monkeypatch.setattr("lifecycle.billing.store.EntitlementStore.upsert", _boom)
    resp = _post(client, _event("e_fail", "INITIAL_PURCHASE", uid))
    assert resp.status_code == 500
    assert "e_fail" not in app.extensions["idempotency_cache"]
    with app.app_context():
        assert BillingEventLog.query.filter_by(event_id="e_fail").one().outcome == "failed"

    monkeypatch.undo()
    # Redelivery is processed, not treated as a duplicate
    resp = _post(client, _event("e_fail", "INITIAL_PURCHASE", uid))
    assert resp.get_json() == {"received": True}
    with app.app_context():
        assert _record(uid).tier == "pro"


def test_read_failure_returns_500_and_redelivery_applies(app, client, make_user, notices, monkeypatch):
    from sqlalchemy.exc import OperationalError
    from lifecycle.billing.store import EntitlementStore

    uid = make_user()
    real_get_user = EntitlementStore.get_user
    calls = []

    def _flaky_get_user(self, user_id):
        calls.append(user_id)
        if len(calls) == 1:
            raise OperationalError("SELECT users", {}, Exception("connection reset"))
        return real_get_user(self, user_id)

    monkeypatch.setattr(EntitlementStore, "get_user", _flaky_get_user)
    payload = _event("e_read", "INITIAL_PURCHASE", uid)

    resp = _post(client, payload)
    assert resp.status_code == 500
    assert "e_read" not in app.extensions["idempotency_cache"]

    resp = _post(client, payload)
    assert resp.get_json() == {"received": True}
    with app.app_context():
        assert _record(uid).tier == "pro"
        outcomes = [r.outcome for r in BillingEventLog.query.filter_by(event_id="e_read").order_by(BillingEventLog.id)]
        assert outcomes == ["failed", "applied"]
    assert notices == [(uid, "e_read")]
