from flask_talisman import Talisman


def init_security(app):
    """
    Production/staging security headers. The engine serves JSON and one
    plain unsubscribe page, so the CSP allows nothing beyond our own origin.
    """
    csp = {
        "default-src": ["'self'"],
        "style-src":   ["'self'", "'unsafe-inline'"],  # inline styles in the unsubscribe page
        "img-src":     ["'self'", "data:"],
        "frame-ancestors": ["'none'"],
        "base-uri":    ["'self'"],
        "form-action": ["'self'"],
    }

    Talisman(
        app,
        content_security_policy=csp,
        force_https=True,
        strict_transport_security=True,
        session_cookie_secure=True,
        frame_options="DENY",
        referrer_policy="strict-origin-when-cross-origin",
    )
