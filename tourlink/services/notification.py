"""
Tourlink Marketplace
Notification Dispatcher.

Creates in-app notifications for workflow events and, when
NOTIFICATION_EMAIL_ENABLED is set, pushes the same content by email.

Delivery is best-effort: ``notify`` runs inside a savepoint, logs any
failure and returns None instead of raising, so a broken notification
never undoes the stage change that triggered it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app, has_app_context
from sqlalchemy import delete as sa_delete
from sqlalchemy import func, select
from sqlalchemy import update as sa_update

from tourlink.models.notification import NOTIFICATION_PRIORITIES, NOTIFICATION_TYPES, Notification
from tourlink.models.user import User
from tourlink.services.email_service import EmailService
from tourlink.services.persistence import PersistenceGateway

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30


class NotificationDispatcher:
    """Notification adapter injected into WorkflowEngine / TaskFlowService."""

    def __init__(self, gateway: PersistenceGateway | None = None, email_enabled: bool | None = None):
        self.gateway = gateway or PersistenceGateway()
        self._email_enabled = email_enabled

    @property
    def email_enabled(self) -> bool:
        if self._email_enabled is not None:
            return self._email_enabled
        if has_app_context():
            return bool(current_app.config.get("NOTIFICATION_EMAIL_ENABLED"))
        return False

    # ── Create ────────────────────────────────────────────────────────────

    def notify(self, user_id, type, title, message, data=None, priority="normal"):
        """
        Create one notification for one recipient.

        Returns:
            The flushed Notification, or None when delivery failed.
        """
        if type not in NOTIFICATION_TYPES:
            logger.warning("Unknown notification type %r for user %s dropped", type, user_id)
            return None
        if priority not in NOTIFICATION_PRIORITIES:
            priority = "normal"
        try:
            with self.gateway.savepoint():
                notif = Notification(
                    user_id=user_id,
                    type=type,
                    title=title,
                    message=message,
                    data=data or {},
                    priority=priority,
                )
                self.gateway.insert(notif)
                if self.email_enabled:
                    self._push_email(notif)
            logger.debug("Notification %s queued for user %s", type, user_id)
            return notif
        except Exception:
            logger.exception("Notification %s for user %s failed", type, user_id)
            return None

    def _push_email(self, notif: Notification) -> None:
        user = self.gateway.get(User, notif.user_id)
        if not user or not user.email:
            return
        task_id = (notif.data or {}).get("task_id")
        EmailService.send_from_template(
            to_email=user.email,
            to_name=user.full_name or user.username,
            template_name="task_notification",
            context={
                "title": notif.title,
                "message": notif.message,
                "task_link": f"<p>Task #{task_id}</p>" if task_id else "",
            },
            notification_id=notif.id,
        )

    # ── Query ─────────────────────────────────────────────────────────────

    def list_for_user(self, user_id, unread_only=False, limit=50, offset=0):
        """Notifications for a user, newest first. Returns (items, total)."""
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        total = self.gateway.session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
        items = self.gateway.session.execute(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit)
        ).scalars().all()
        return items, total

    def unread_count(self, user_id) -> int:
        return self.gateway.session.execute(
            select(func.count(Notification.id))
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        ).scalar_one()

    # ── Actions ───────────────────────────────────────────────────────────

    def mark_read(self, notification_id, user_id):
        """Mark one of the user's notifications read; None when not theirs."""
        with self.gateway.transaction():
            notif = self.gateway.get(Notification, notification_id)
            if not notif or notif.user_id != user_id:
                return None
            notif.mark_read()
        return notif

    def mark_all_read(self, user_id) -> int:
        now = datetime.now(timezone.utc)
        with self.gateway.transaction():
            count = self.gateway.session.execute(
                sa_update(Notification)
                .where(Notification.user_id == user_id, Notification.is_read.is_(False))
                .values(is_read=True, read_at=now)
                .execution_options(synchronize_session="fetch")
            ).rowcount
        return count

    def delete(self, notification_id, user_id) -> bool:
        """Delete one of the user's notifications; False when not theirs."""
        with self.gateway.transaction():
            notif = self.gateway.get(Notification, notification_id)
            if not notif or notif.user_id != user_id:
                return False
            self.gateway.session.delete(notif)
            self.gateway.session.flush()
        return True

    def cleanup_read(self, days=DEFAULT_RETENTION_DAYS, now=None) -> int:
        """Delete read notifications older than ``days``. Unread ones are kept."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        with self.gateway.transaction():
            count = self.gateway.session.execute(
                sa_delete(Notification)
                .where(Notification.is_read.is_(True), Notification.created_at < cutoff)
                .execution_options(synchronize_session="fetch")
            ).rowcount
        logger.info("Removed %d read notifications older than %d days", count, days)
        return count
