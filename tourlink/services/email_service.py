"""
Tourlink Marketplace
Email push for workflow notifications.

Every message gets an EmailLog row. Without MAIL_SERVER the row is marked
sent and nothing leaves the process; development and the test suite run
that way.

Configuration (env vars):
    MAIL_SERVER, MAIL_PORT, MAIL_USE_TLS, MAIL_USERNAME, MAIL_PASSWORD,
    MAIL_DEFAULT_SENDER
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any

from flask import current_app

from tourlink.models import db
from tourlink.models.notification import EmailLog

logger = logging.getLogger(__name__)

_TEMPLATES: dict[str, dict[str, str]] = {
    "task_notification": {
        "subject": "[Tourlink] {title}",
        "html": (
            '<div style="font-family: Arial, sans-serif; max-width: 560px;">'
            '<h2 style="color: #0f766e;">{title}</h2>'
            '<p style="color: #334155; line-height: 1.5;">{message}</p>'
            "{task_link}"
            '<p style="color: #94a3b8; font-size: 12px;">'
            "You receive this because email alerts are enabled for your Tourlink account.</p>"
            "</div>"
        ),
    },
}

_PLAIN_FALLBACK = "This message is best viewed in an HTML-capable mail client."


class _SafeDict(dict):
    """Leaves unknown placeholders as-is instead of raising KeyError."""

    def __missing__(self, key):
        return "{" + key + "}"


def render(template_name: str, context: dict[str, Any]) -> tuple[str, str] | None:
    """(subject, html) for a template, or None when no such template exists."""
    template = _TEMPLATES.get(template_name)
    if template is None:
        return None
    values = _SafeDict(context)
    return template["subject"].format_map(values), template["html"].format_map(values)


class EmailService:
    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        subject: str,
        html_body: str,
        to_name: str | None = None,
        template_name: str | None = None,
        notification_id: int | None = None,
    ) -> EmailLog:
        log = EmailLog(
            recipient_email=to_email,
            recipient_name=to_name,
            subject=subject,
            template_name=template_name,
            status="queued",
            notification_id=notification_id,
        )
        db.session.add(log)
        db.session.flush()

        if cls.is_configured():
            try:
                cls._send_smtp(log, html_body)
            except (smtplib.SMTPException, OSError) as exc:
                log.status = "failed"
                log.error_message = str(exc)[:1000]
                logger.error("Email to %s failed: %s", to_email, exc)
                return log
        else:
            logger.info("MAIL_SERVER unset, email to %s recorded only: %r", to_email, subject)

        log.status = "sent"
        log.sent_at = datetime.now(timezone.utc)
        return log

    @classmethod
    def send_from_template(
        cls,
        *,
        to_email: str,
        template_name: str,
        context: dict[str, Any],
        to_name: str | None = None,
        notification_id: int | None = None,
    ) -> EmailLog | None:
        rendered = render(template_name, context)
        if rendered is None:
            logger.warning("Unknown email template %r", template_name)
            return None
        subject, html_body = rendered
        return cls.send(
            to_email=to_email,
            to_name=to_name,
            subject=subject,
            html_body=html_body,
            template_name=template_name,
            notification_id=notification_id,
        )

    @staticmethod
    def _send_smtp(log: EmailLog, html_body: str) -> None:
        cfg = current_app.config
        msg = EmailMessage()
        msg["Subject"] = log.subject
        msg["From"] = cfg.get("MAIL_DEFAULT_SENDER")
        msg["To"] = (f"{log.recipient_name} <{log.recipient_email}>"
                     if log.recipient_name else log.recipient_email)
        msg.set_content(_PLAIN_FALLBACK)
        msg.add_alternative(html_body, subtype="html")

        with smtplib.SMTP(cfg["MAIL_SERVER"], cfg.get("MAIL_PORT", 587), timeout=30) as smtp:
            if cfg.get("MAIL_USE_TLS", True):
                smtp.starttls()
            if cfg.get("MAIL_USERNAME") and cfg.get("MAIL_PASSWORD"):
                smtp.login(cfg["MAIL_USERNAME"], cfg["MAIL_PASSWORD"])
            smtp.send_message(msg)
        logger.info("Email sent to %s: %r", log.recipient_email, log.subject)
