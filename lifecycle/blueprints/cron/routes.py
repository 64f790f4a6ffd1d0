import hmac
import logging
from functools import wraps

from flask import request, jsonify, current_app

from . import bp
from lifecycle.extensions import limiter
from lifecycle.observability import log_event
from lifecycle.services.scheduler import SequenceScheduler, run_intake
from lifecycle.utils.clock import now as clock_now


def require_cron_secret(fn):
    """Scheduler endpoints take `Authorization: Bearer <CRON_SECRET>`."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        secret = current_app.config.get("CRON_SECRET")
        if not secret:
            log_event("cron_misconfigured", level=logging.ERROR, path=request.path)
            return jsonify({"error": "cron_not_configured"}), 500
        header = request.headers.get("Authorization", "")
        expected = f"Bearer {secret}"
        if not hmac.compare_digest(header.encode("utf-8"), expected.encode("utf-8")):
            log_event("cron_unauthorized", level=logging.WARNING, path=request.path)
            return jsonify({"error": "unauthorized"}), 401
        return fn(*args, **kwargs)
    return wrapper


@bp.route("/sequences", methods=["GET", "POST"])
@limiter.limit("30 per minute")
@require_cron_secret
def run_sequences():
    summary = SequenceScheduler(now=clock_now()).run()
    return jsonify({"ok": True, **summary.to_dict()}), 200


@bp.route("/intake", methods=["GET", "POST"])
@limiter.limit("30 per minute")
@require_cron_secret
def intake():
    result = run_intake(clock_now())
    return jsonify({"ok": True, **result}), 200
