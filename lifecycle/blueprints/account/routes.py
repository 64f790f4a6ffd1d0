from flask import request, jsonify, render_template_string, abort
from flask_login import login_required, current_user
from sqlalchemy.exc import SQLAlchemyError

from . import bp
from lifecycle.billing.entitlements import resolve_or_free
from lifecycle.extensions import db, limiter
from lifecycle.models import User
from lifecycle.observability import log_event
from lifecycle.services import tokens
from lifecycle.services.sequences import pause_all_for_user
from lifecycle.services.usage import usage_summary
from lifecycle.utils.clock import now as clock_now

_UNSUBSCRIBED_PAGE = """<!DOCTYPE html>
<html><head><meta charset="utf-8"><title>Unsubscribed</title></head>
<body style="font-family: sans-serif; max-width: 480px; margin: 60px auto; text-align: center;">
<h2>You're unsubscribed</h2>
<p>We won't send you any more lifecycle emails.</p>
</body></html>"""


def _wants_json() -> bool:
    return request.is_json or "application/json" in (request.headers.get("Accept") or "").lower()


@bp.get("/entitlement")
@login_required
@limiter.limit("120 per minute")
def entitlement():
    ent = resolve_or_free(current_user.id, clock_now())
    limits = ent.limits
    return jsonify({
        **ent.to_dict(),
        "limits": {
            "messages_per_day": limits.messages_per_day,
            "short_voice_per_month": limits.short_voice_per_month,
            "full_voice_per_month": limits.full_voice_per_month,
            "shared_voice_pool": limits.shared_voice_pool,
        },
        "features": sorted(limits.features),
    }), 200


@bp.get("/usage")
@login_required
@limiter.limit("120 per minute")
def usage():
    return jsonify(usage_summary(current_user.id, clock_now())), 200


def _set_unsubscribed(user: User, value: bool) -> None:
    try:
        user.email_unsubscribed = value
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise


@bp.route("/unsubscribe", methods=["GET", "POST"])
@limiter.limit("30 per minute")
def unsubscribe():
    """One-click unsubscribe from an email link; no login required."""
    user_id = tokens.verify_unsubscribe(request.args.get("token", ""))
    if user_id is None:
        if _wants_json():
            return jsonify({"error": "invalid_token"}), 400
        abort(400)
    user = db.session.get(User, user_id)
    if user is None:
        abort(404)

    _set_unsubscribed(user, True)
    paused = pause_all_for_user(user.id)
    log_event("email_unsubscribed", user_id=user.id, sequences_paused=paused)

    if _wants_json() or request.method == "POST":
        return jsonify({"ok": True, "sequences_paused": paused}), 200
    return render_template_string(_UNSUBSCRIBED_PAGE), 200


@bp.post("/resubscribe")
@login_required
@limiter.limit("30 per minute")
def resubscribe():
    # Paused sequences stay paused; intake picks the user up again when eligible
    _set_unsubscribed(current_user, False)
    log_event("email_resubscribed", user_id=current_user.id)
    return jsonify({"ok": True}), 200
