import logging
import smtplib
import socket
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from urllib.parse import urljoin

from flask import current_app
from flask_mail import Message
from sqlalchemy.exc import SQLAlchemyError

from lifecycle.extensions import db, mail
from lifecycle.models import EmailLog
from lifecycle.models.email_log import EMAIL_SENT, EMAIL_FAILED, EMAIL_SUPPRESSED
from lifecycle.observability import log_event

# Provider webhook statuses that block further sends to an address
SUPPRESSING_STATUSES = ("bounced", "complaint")


@dataclass
class SendResult:
    ok: bool
    permanent: bool = False
    error: Optional[str] = None
    provider_msg_id: Optional[str] = None


def absolute_url(path: str) -> str:
    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/") + "/"
    return urljoin(base, path.lstrip("/"))


def is_suppressed(to_email: str, now: datetime) -> bool:
    """
    True if the address had a bounce/complaint within the suppression window.
    """
    days = int(current_app.config.get("SUPPRESSION_WINDOW_DAYS", 90))
    cutoff = now - timedelta(days=days)
    q = EmailLog.query.filter(
        EmailLog.to_email == (to_email or "").strip().lower(),
        EmailLog.created_at >= cutoff,
        EmailLog.status.in_(SUPPRESSING_STATUSES),
    )
    # Using EXISTS for efficiency
    return db.session.query(q.exists()).scalar()


def log_email(*, user_id, to_email, template, subject, status, now: datetime,
              sequence_name=None, step=None, provider_msg_id=None, error=None, meta=None) -> Optional[EmailLog]:
    """Persist one EmailLog row. Audit writes never abort the caller's unit of work."""
    entry = EmailLog(
        user_id=user_id,
        to_email=(to_email or "").strip().lower(),
        template=template,
        subject=subject or "",
        sequence_name=sequence_name,
        step=step,
        provider_msg_id=provider_msg_id,
        status=status,
        error=error[:500] if error else None,
        meta=meta or {},
        created_at=now,
    )
    try:
        db.session.add(entry)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        log_event("email_log_write_failed", level=logging.ERROR, template=template, error=type(exc).__name__)
        return None
    return entry


class MailSender:
    """
    Flask-Mail transport behind the send(to, subject, html, text) seam.
    Refused recipients are permanent; everything else (timeouts, 4xx,
    connection drops) is transient and retried on the next tick.
    """

    def __init__(self, clock=None):
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock.now()
        from lifecycle.utils.clock import now
        return now()

    def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> SendResult:
        to = (to or "").strip().lower()
        if not to or "@" not in to:
            return SendResult(ok=False, permanent=True, error="invalid_address")
        if is_suppressed(to, self._now()):
            return SendResult(ok=False, permanent=True, error="suppressed")

        msg = Message(recipients=[to], subject=subject)
        msg.html = html
        msg.body = text
        reply_to = current_app.config.get("MAIL_REPLY_TO")
        if reply_to:
            msg.reply_to = reply_to

        start = time.perf_counter()
        try:
            mail.send(msg)  # Flask-Mail returns None; provider capture varies by backend
        except smtplib.SMTPRecipientsRefused as ex:
            return self._failed(to, subject, start, ex, permanent=True)
        except (smtplib.SMTPException, socket.timeout, OSError) as ex:
            return self._failed(to, subject, start, ex, permanent=False)

        log_event("mail_send", to=to, subject=subject, outcome="sent",
                  latency_ms=int((time.perf_counter() - start) * 1000))
        return SendResult(ok=True)

    def _failed(self, to, subject, start, ex, *, permanent: bool) -> SendResult:
        log_event(
            "mail_send", level=logging.WARNING, to=to, subject=subject,
            outcome="refused" if permanent else "smtp_error",
            latency_ms=int((time.perf_counter() - start) * 1000), smtp_error=str(ex),
        )
        return SendResult(ok=False, permanent=permanent, error=f"{type(ex).__name__}: {ex}")


def get_sender():
    """The sender installed on the app (tests swap in a fake)."""
    sender = current_app.extensions.get("mail_sender")
    if sender is None:
        sender = MailSender()
        current_app.extensions["mail_sender"] = sender
    return sender


def send_template_email(
    *, to_email: str, template: str, subject: str, context: Dict[str, Any], now: datetime,
    user_id: Optional[int] = None, sender=None,
) -> SendResult:
    """
    Render templates/email/<template>.{html,txt} and send, logging the attempt.
    Used for one-off transactional mail outside the drip sequences.
    """
    from lifecycle.services.renderer import render

    rendered = render(template, context)
    if rendered is None:
        log_event("mail_template_missing", level=logging.ERROR, template=template)
        return SendResult(ok=False, permanent=True, error="template_missing")

    sender = sender or get_sender()
    result = sender.send(to_email, subject, rendered.html, rendered.text)
    if result.ok:
        status = EMAIL_SENT
    elif result.error == "suppressed":
        status = EMAIL_SUPPRESSED
    else:
        status = EMAIL_FAILED
    log_email(
        user_id=user_id, to_email=to_email, template=template, subject=subject,
        status=status, now=now, provider_msg_id=result.provider_msg_id, error=result.error,
    )
    return result
