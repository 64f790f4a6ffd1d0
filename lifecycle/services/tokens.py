from typing import Optional
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from flask import current_app

KIND_UNSUBSCRIBE = "unsubscribe"

# Links in old emails keep working for a year
UNSUBSCRIBE_MAX_AGE = 365 * 24 * 3600


def _serializer() -> URLSafeTimedSerializer:
    secret = current_app.config["SECRET_KEY"]
    salt = current_app.config.get("UNSUBSCRIBE_TOKEN_SALT", "unsubscribe-v1")
    return URLSafeTimedSerializer(secret_key=secret, salt=salt)


def generate(kind: str, user_id: int) -> str:
    return _serializer().dumps({"k": kind, "u": int(user_id)})


def verify(kind: str, token: str, max_age_seconds: int) -> Optional[int]:
    try:
        data = _serializer().loads(token, max_age=max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None
    if not isinstance(data, dict) or data.get("k") != kind:
        return None
    return data.get("u")


def unsubscribe_token(user_id: int) -> str:
    return generate(KIND_UNSUBSCRIBE, user_id)


def verify_unsubscribe(token: str) -> Optional[int]:
    if not token:
        return None
    return verify(KIND_UNSUBSCRIBE, token, UNSUBSCRIBE_MAX_AGE)
