"""
Background job tests.

Covers:
    1. Job registry and SchedulerService.run_job bookkeeping
    2. review_auto_approval: stale reviews approved with a system actor
    3. deadline_reminders: overdue and due-soon tasks notify participants
    4. notification_cleanup: old read notifications are deleted
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update

from tourlink.models import db
from tourlink.models.notification import Notification
from tourlink.models.task import MediaAsset, StageHistory, Task, TaskActivity
from tourlink.services.notification import NotificationDispatcher
from tourlink.services.scheduled_jobs import (
    approve_stale_reviews, cleanup_notifications, send_deadline_reminders,
)
from tourlink.services.scheduler_service import SchedulerService, get_registered_jobs


def _age_review(task_id, days):
    """Pretend the task entered review ``days`` ago."""
    db.session.execute(
        update(StageHistory)
        .where(StageHistory.task_id == task_id, StageHistory.to_stage == "reviewing")
        .values(changed_at=datetime.now(timezone.utc) - timedelta(days=days))
    )
    db.session.commit()


def _reminders_for(user_id):
    return db.session.execute(
        select(Notification).where(Notification.user_id == user_id,
                                   Notification.type == "deadline_reminder")
    ).scalars().all()


class TestScheduler:
    def test_jobs_are_registered(self):
        assert {"review_auto_approval", "deadline_reminders", "notification_cleanup"} <= set(get_registered_jobs())

    def test_unknown_job(self):
        run = SchedulerService.run_job("does_not_exist")
        assert run["status"] == "error"

    def test_run_job_records_last_run(self):
        run = SchedulerService.run_job("review_auto_approval")
        assert run["status"] == "success"
        assert run["result"] == {"checked": 0, "approved": 0, "skipped": 0, "errors": 0}
        listed = {j["job_name"]: j for j in SchedulerService.list_jobs()}
        assert listed["review_auto_approval"]["last_run"]["status"] == "success"
        assert listed["review_auto_approval"]["description"]


class TestReviewAutoApproval:
    def test_stale_review_is_approved(self, app, supplier, creator, make_task, drive):
        task_id = make_task(supplier)
        ids = drive(task_id, "reviewing", supplier, creator)
        _age_review(task_id, 4)

        result = approve_stale_reviews(app)

        assert result["approved"] == 1
        assert db.session.get(Task, task_id).status == "publishing"
        assert db.session.get(MediaAsset, ids["asset_id"]).status == "approved"
        last = db.session.execute(
            select(StageHistory).where(StageHistory.task_id == task_id)
            .order_by(StageHistory.id.desc())
        ).scalars().first()
        assert last.to_stage == "publishing"
        assert last.changed_by is None
        activity = db.session.execute(
            select(TaskActivity).where(TaskActivity.activity_type == "work_auto_approved")
        ).scalar_one()
        assert activity.user_id is None

    def test_recent_review_is_left_alone(self, app, supplier, creator, make_task, drive):
        task_id = make_task(supplier)
        drive(task_id, "reviewing", supplier, creator)

        result = approve_stale_reviews(app)

        assert result == {"checked": 1, "approved": 0, "skipped": 1, "errors": 0}
        assert db.session.get(Task, task_id).status == "reviewing"

    def test_threshold_follows_config(self, app, monkeypatch, supplier, creator, make_task, drive):
        monkeypatch.setitem(app.config, "REVIEW_AUTO_APPROVE_DAYS", 10)
        task_id = make_task(supplier)
        drive(task_id, "reviewing", supplier, creator)
        _age_review(task_id, 4)

        assert approve_stale_reviews(app)["approved"] == 0


class TestDeadlineReminders:
    def test_due_soon(self, app, supplier, flow):
        deadline = datetime.now(timezone.utc) + timedelta(hours=12)
        task_id = flow.create_task(supplier.id, {
            "title": "Night market", "description": "Street food reel",
            "deadline": deadline.isoformat(),
        })
        flow.publish_task(task_id, supplier.id)

        result = send_deadline_reminders(app)

        assert result["due_soon"] == 1
        assert result["notifications_created"] == 1
        assert len(_reminders_for(supplier.id)) == 1

    def test_overdue_notifies_both_participants(self, app, supplier, creator, make_task, drive):
        task_id = make_task(supplier, deadline=(datetime.now(timezone.utc) + timedelta(days=5)).isoformat())
        drive(task_id, "in_progress", supplier, creator)
        db.session.execute(
            update(Task).where(Task.id == task_id)
            .values(deadline=datetime.now(timezone.utc) - timedelta(days=3, hours=1))
        )
        db.session.commit()

        result = send_deadline_reminders(app)

        assert result["overdue"] == 1
        assert result["notifications_created"] == 2
        reminder = _reminders_for(creator.id)[0]
        assert reminder.data["is_overdue"] is True
        assert reminder.data["days_remaining"] == -3
        assert "overdue by 3 day(s)" in reminder.message

    def test_far_deadlines_and_drafts_are_ignored(self, app, supplier, flow, make_task):
        far = (datetime.now(timezone.utc) + timedelta(days=20)).isoformat()
        published = make_task(supplier, deadline=far)
        flow.publish_task(published, supplier.id)
        make_task(supplier, deadline=(datetime.now(timezone.utc) + timedelta(hours=2)).isoformat())

        result = send_deadline_reminders(app)

        assert result == {"checked": 1, "overdue": 0, "due_soon": 0, "notifications_created": 0}


class TestNotificationCleanup:
    def _read_notification(self, user, days_old):
        dispatcher = NotificationDispatcher()
        notif = dispatcher.notify(user.id, "task_completed", "Done", "")
        dispatcher.mark_read(notif.id, user.id)
        db.session.execute(
            update(Notification)
            .where(Notification.id == notif.id)
            .values(created_at=datetime.now(timezone.utc) - timedelta(days=days_old))
        )
        db.session.commit()
        return notif.id

    def test_old_read_notifications_are_deleted(self, app, creator):
        old = self._read_notification(creator, 40)
        recent = self._read_notification(creator, 2)

        result = cleanup_notifications(app)

        assert result == {"retention_days": 30, "deleted": 1}
        assert db.session.get(Notification, old) is None
        assert db.session.get(Notification, recent) is not None

    def test_retention_follows_config(self, app, monkeypatch, creator):
        self._read_notification(creator, 2)
        monkeypatch.setitem(app.config, "NOTIFICATION_RETENTION_DAYS", 1)

        run = SchedulerService.run_job("notification_cleanup")

        assert run["status"] == "success"
        assert run["result"] == {"retention_days": 1, "deleted": 1}
