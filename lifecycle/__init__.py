import os
from flask import Flask, request, jsonify

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)


from .config import get_config
from .extensions import db, migrate, login_manager, limiter, mail
from .security import init_security
from .observability import init_logging, init_sentry
from .billing.idempotency import IdempotencyCache
from .utils.clock import SystemClock


def create_app(config_object=None):
    app = Flask(__name__, template_folder="templates")

    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    use_redis = app_env in ("staging", "production")
    storage_uri = os.environ.get("REDIS_URL") if use_redis else "memory://"
    if use_redis and not storage_uri:
        # Hard fail in stage/prod so we never silently run without RL storage
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")

    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_DEFAULTS", ["1000 per hour"])
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    # Config: clean, explicit, class-based
    app.config.from_object(config_object or get_config())

    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    if app_env in ("staging", "production"):
        # Enforce hard requirements at startup (not at import time)
        _require("SECRET_KEY")
        _require("DATABASE_URL")
        _require("REVENUECAT_WEBHOOK_SECRET")
        _require("STRIPE_SECRET_KEY")
        _require("STRIPE_WEBHOOK_SECRET")
        _require("CRON_SECRET")
        if app.config.get("SECRET_KEY") == "dev-not-secure":
            raise RuntimeError("SECRET_KEY must be set to a real secret in staging/production")

    init_logging(app)
    init_sentry(app)

    # Apply HTTPS, HSTS & CSP only in staging/production
    if (app.config.get("APP_ENV") or app_env).lower() in ("staging", "production"):
        init_security(app)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    login_manager.init_app(app)
    limiter.init_app(app)
    mail.init_app(app)

    # Engine collaborators (tests swap these for fakes)
    app.extensions["clock"] = SystemClock()
    app.extensions["idempotency_cache"] = IdempotencyCache(app.config.get("IDEMPOTENCY_TTL_SECONDS", 300))

    from . import models  # noqa: F401 (register tables + user_loader)

    from .blueprints.webhooks import bp as webhooks_bp
    from .blueprints.cron import bp as cron_bp
    from .blueprints.account import bp as account_bp

    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")
    app.register_blueprint(cron_bp, url_prefix="/cron")
    app.register_blueprint(account_bp, url_prefix="/account")

    @app.get("/healthz")
    @limiter.exempt
    def healthz():
        return {"status": "ok"}, 200

    # Error handlers: JSON everywhere, this service has no HTML surface
    def _json_error(code: str, status: int, headers=None):
        return jsonify({"error": code, "code": status}), status, headers or {}

    @app.errorhandler(400)
    def bad_request(e):
        return _json_error("bad_request", 400)

    @app.errorhandler(401)
    def unauthorized(e):
        return _json_error("unauthorized", 401)

    @app.errorhandler(403)
    def forbidden(e):
        return _json_error("forbidden", 403)

    @app.errorhandler(404)
    def not_found(e):
        return _json_error("not_found", 404)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return _json_error("method_not_allowed", 405)

    # 429 Too Many Requests with Retry-After
    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
        return _json_error("rate_limited", 429, headers)

    @app.errorhandler(500)
    def server_error(e):
        app.logger.error("unhandled error on %s %s", request.method, request.path)
        return _json_error("internal_error", 500)

    # CLI commands (ops-grade utilities)
    from .cli import register_cli
    register_cli(app)

    if not app.config.get("STRIPE_SECRET_KEY"):
        app.logger.warning("Stripe secret key missing; Stripe webhooks cannot fetch subscriptions")

    return app
