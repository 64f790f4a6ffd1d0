import os

from dotenv import dotenv_values


def _csv(name: str) -> tuple:
    raw = os.environ.get(name, "") or ""
    return tuple(e.strip().lower() for e in raw.split(",") if e.strip())


class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")

    # Database (env in prod; dev/test may use default)
    _ENV_FALLBACK = dotenv_values(".env")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    APP_ENV = os.environ.get("APP_ENV", "development")

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None

    # --- Mail ---
    MAIL_SERVER = os.getenv("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = (os.getenv("MAIL_USE_TLS", "true").lower() == "true")
    MAIL_USE_SSL = (os.getenv("MAIL_USE_SSL", "false").lower() == "true")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "Coach Reflection <hello@local.test>")
    MAIL_REPLY_TO = os.getenv("MAIL_REPLY_TO")
    MAIL_SUPPRESS_SEND = (os.getenv("MAIL_SUPPRESS_SEND", "false").lower() == "true")

    # Used for absolute links in emails (must be https in prod)
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")
    PRODUCT_NAME = os.getenv("PRODUCT_NAME", "Coach Reflection")

    # --- Entitlement sources ---
    # Comma-separated, compared case-insensitively
    PRO_TESTERS_WHITELIST = _csv("PRO_TESTERS_WHITELIST")
    ADMIN_EMAILS = _csv("ADMIN_EMAILS")

    # --- Billing webhooks ---
    REVENUECAT_WEBHOOK_SECRET = os.getenv("REVENUECAT_WEBHOOK_SECRET")
    EMAIL_WEBHOOK_SECRET = os.getenv("EMAIL_WEBHOOK_SECRET")
    IDEMPOTENCY_TTL_SECONDS = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", "300"))

    # --- Stripe (Billing) ---
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

    # Price IDs (per environment via env vars)
    STRIPE_PRICE_PRO_MONTHLY = os.getenv("STRIPE_PRICE_PRO_MONTHLY")
    STRIPE_PRICE_PRO_ANNUAL = os.getenv("STRIPE_PRICE_PRO_ANNUAL")
    STRIPE_PRICE_PRO_PLUS_MONTHLY = os.getenv("STRIPE_PRICE_PRO_PLUS_MONTHLY")
    STRIPE_PRICE_PRO_PLUS_ANNUAL = os.getenv("STRIPE_PRICE_PRO_PLUS_ANNUAL")

    # --- Cron / sequences ---
    CRON_SECRET = os.getenv("CRON_SECRET")
    SEQUENCE_BATCH_SIZE = int(os.getenv("SEQUENCE_BATCH_SIZE", "100"))
    INTAKE_BATCH_SIZE = int(os.getenv("INTAKE_BATCH_SIZE", "50"))
    SEQUENCE_SEND_DELAY_MS = int(os.getenv("SEQUENCE_SEND_DELAY_MS", "100"))
    SEQUENCE_CLAIM_SECONDS = int(os.getenv("SEQUENCE_CLAIM_SECONDS", "300"))
    WINBACK_INACTIVE_DAYS = int(os.getenv("WINBACK_INACTIVE_DAYS", "7"))
    WINBACK_COOLDOWN_DAYS = int(os.getenv("WINBACK_COOLDOWN_DAYS", "30"))
    SIGNUP_INTAKE_HOURS = int(os.getenv("SIGNUP_INTAKE_HOURS", "48"))
    STREAK_MIN_DAYS = int(os.getenv("STREAK_MIN_DAYS", "3"))
    STREAK_COOLDOWN_DAYS = int(os.getenv("STREAK_COOLDOWN_DAYS", "7"))
    SUPPRESSION_WINDOW_DAYS = int(os.getenv("SUPPRESSION_WINDOW_DAYS", "90"))

    # Token salt for unsubscribe links
    UNSUBSCRIBE_TOKEN_SALT = os.getenv("UNSUBSCRIBE_TOKEN_SALT", "unsubscribe-v1")


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")
    MAIL_SUPPRESS_SEND = True
    SEQUENCE_SEND_DELAY_MS = 0


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    MAIL_SUPPRESS_SEND = False


class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    MAIL_SUPPRESS_SEND = True
    SEQUENCE_SEND_DELAY_MS = 0
    RATELIMIT_ENABLED = False


_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
