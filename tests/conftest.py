import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime

import pytest
from lifecycle import create_app
from lifecycle.config import TestingConfig
from lifecycle.extensions import db
from lifecycle.models import User
from lifecycle.services.email import SendResult
from lifecycle.utils.clock import FixedClock

NOW = datetime(2026, 3, 10, 12, 0, 0)

RC_SECRET = "rc_test_secret"
CRON_SECRET = "cron_test_secret"


@pytest.fixture(scope="session")
def app():
    app = create_app(TestingConfig)
    app.config.update(
        TESTING=True,
        SQLALCHEMY_DATABASE_URI="sqlite:///:memory:",
        MAIL_SUPPRESS_SEND=True,
        APP_BASE_URL="http://example.test",
        APP_ENV="testing",
        SECRET_KEY="test-secret-key",
        REVENUECAT_WEBHOOK_SECRET=RC_SECRET,
        EMAIL_WEBHOOK_SECRET="testsecret",
        CRON_SECRET=CRON_SECRET,
        STRIPE_SECRET_KEY="sk_test_x",
        STRIPE_WEBHOOK_SECRET="whsec_test_x",
        STRIPE_PRICE_PRO_MONTHLY="price_pro_monthly",
        STRIPE_PRICE_PRO_ANNUAL="price_pro_annual",
        STRIPE_PRICE_PRO_PLUS_MONTHLY="price_proplus_monthly",
        STRIPE_PRICE_PRO_PLUS_ANNUAL="price_proplus_annual",
        ADMIN_EMAILS=(),
        PRO_TESTERS_WHITELIST=(),
        SEQUENCE_SEND_DELAY_MS=0,
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    app.extensions["idempotency_cache"].clear()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


@pytest.fixture(autouse=True)
def clock(app):
    """Every test runs at a fixed instant; advance() to move time."""
    original = app.extensions["clock"]
    fixed = FixedClock(NOW)
    app.extensions["clock"] = fixed
    yield fixed
    app.extensions["clock"] = original


@pytest.fixture(autouse=True)
def _allow_lists(app):
    yield
    app.config["ADMIN_EMAILS"] = ()
    app.config["PRO_TESTERS_WHITELIST"] = ()
    app.config["APP_ENV"] = "testing"


class FakeSender:
    """Stands in for MailSender; pops scripted results, default success."""

    def __init__(self):
        self.sent = []
        self.results = []

    def send(self, to, subject, html, text=None):
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return SendResult(ok=True)


@pytest.fixture()
def sender(app):
    fake = FakeSender()
    app.extensions["mail_sender"] = fake
    yield fake
    app.extensions.pop("mail_sender", None)


@pytest.fixture()
def make_user(app):
    """Create a user and return its id (instances don't survive the app context)."""
    def _make(email="coach@example.com", **fields):
        fields.setdefault("created_at", NOW.replace(year=NOW.year - 1))
        with app.app_context():
            u = User(email=email, **fields)
            db.session.add(u)
            db.session.commit()
            return u.id
    return _make


def login(client, user_id):
    with client.session_transaction() as sess:
        sess["_user_id"] = str(user_id)
        sess["_fresh"] = True


def transient(error="timeout"):
    return SendResult(ok=False, permanent=False, error=error)


def permanent(error="invalid_address"):
    return SendResult(ok=False, permanent=True, error=error)
