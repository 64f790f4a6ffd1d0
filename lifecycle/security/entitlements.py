from functools import wraps
from typing import Callable

from flask import abort, jsonify
from flask_login import current_user

from lifecycle.billing.entitlements import resolve_or_free
from lifecycle.models.entitlement import TIER_FREE, TIER_PRO, TIER_PRO_PLUS
from lifecycle.observability import log_event
from lifecycle.utils.clock import now

_RANK = {TIER_FREE: 0, TIER_PRO: 1, TIER_PRO_PLUS: 2}


def current_entitlement():
    """Resolved entitlement for the logged-in user (fails closed to free)."""
    return resolve_or_free(current_user.id, now())


def _denied(missing: str):
    log_event("entitlement_denied", user_id=getattr(current_user, "id", None), missing=missing)
    resp = jsonify({"error": "entitlement_required", "missing": missing})
    resp.status_code = 403
    return resp


def require_tier(min_tier: str) -> Callable:
    """
    Server-side guard for paid views. Club seats resolve to "pro" but carry
    pro_plus features; gate those on require_feature instead.
    """
    if min_tier not in _RANK:
        raise ValueError(f"unknown tier: {min_tier}")

    def decorator(fn: Callable) -> Callable:
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not getattr(current_user, "is_authenticated", False):
                abort(401)
            ent = current_entitlement()
            if _RANK.get(ent.tier, 0) < _RANK[min_tier]:
                return _denied(f"tier:{min_tier}")
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def require_feature(feature_key: str) -> Callable:
    def decorator(fn: Callable) -> Callable:
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not getattr(current_user, "is_authenticated", False):
                abort(401)
            if not current_entitlement().has_feature(feature_key):
                return _denied(f"feature:{feature_key}")
            return fn(*args, **kwargs)
        return wrapper
    return decorator
