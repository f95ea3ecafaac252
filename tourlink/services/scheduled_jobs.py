"""
Tourlink Marketplace
Scheduled Jobs.

Jobs:
    - review_auto_approval: approves work left in review longer than
      REVIEW_AUTO_APPROVE_DAYS
    - deadline_reminders: warns participants about overdue or imminent deadlines
    - notification_cleanup: drops read notifications past NOTIFICATION_RETENTION_DAYS
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select

from tourlink.core.exceptions import WorkflowError
from tourlink.models.task import MediaAsset, StageHistory, Task
from tourlink.services.notification import DEFAULT_RETENTION_DAYS, NotificationDispatcher
from tourlink.services.scheduler_service import register_job
from tourlink.services.stage_registry import Stage
from tourlink.services.task_flow import TaskFlowService
from tourlink.services.workflow_engine import DEFAULT_REVIEW_AUTO_APPROVE_DAYS, WorkflowEngine, as_utc

logger = logging.getLogger(__name__)

# Stages whose deadline still matters
_DEADLINE_STAGES = (
    Stage.PUBLISHED, Stage.COLLECTING, Stage.EVALUATING, Stage.IN_PROGRESS,
    Stage.REVIEWING, Stage.REVISION_REQUIRED, Stage.PUBLISHING,
)
REMINDER_WINDOW_DAYS = 1


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Review auto-approval
# ═══════════════════════════════════════════════════════════════════════════

@register_job("review_auto_approval")
def approve_stale_reviews(app) -> dict[str, Any]:
    """Approve submitted work the supplier has not reviewed in time."""
    days = app.config.get("REVIEW_AUTO_APPROVE_DAYS", DEFAULT_REVIEW_AUTO_APPROVE_DAYS)
    flow = TaskFlowService()
    session = flow.gateway.session
    cutoff = flow.engine.clock() - timedelta(days=days)
    results = {"checked": 0, "approved": 0, "skipped": 0, "errors": 0}

    entered_review = (
        select(StageHistory.task_id, func.max(StageHistory.changed_at).label("entered_at"))
        .where(StageHistory.to_stage == Stage.REVIEWING.value)
        .group_by(StageHistory.task_id)
        .subquery()
    )
    rows = session.execute(
        select(Task.id, Task.supplier_id, entered_review.c.entered_at)
        .join(entered_review, entered_review.c.task_id == Task.id)
        .where(Task.status == Stage.REVIEWING.value)
        .order_by(Task.id)
    ).all()

    for task_id, supplier_id, entered_at in rows:
        results["checked"] += 1
        if as_utc(entered_at) > cutoff:
            results["skipped"] += 1
            continue

        asset_id = session.execute(
            select(MediaAsset.id)
            .where(MediaAsset.task_id == task_id, MediaAsset.status == "pending_review")
            .order_by(MediaAsset.created_at.desc(), MediaAsset.id.desc())
            .limit(1)
        ).scalar()
        if asset_id is None:
            results["skipped"] += 1
            continue

        try:
            flow.review_work(task_id, supplier_id, asset_id, "approved",
                             feedback=f"Approved automatically after {days} days", auto=True)
            results["approved"] += 1
        except WorkflowError as exc:
            results["errors"] += 1
            logger.warning("Auto-approval of task %s failed: %s", task_id, exc)

    logger.info("review_auto_approval: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Deadline reminders
# ═══════════════════════════════════════════════════════════════════════════

@register_job("deadline_reminders")
def send_deadline_reminders(app) -> dict[str, Any]:
    """Notify participants of tasks that are overdue or due within a day."""
    engine = WorkflowEngine()
    results = {"checked": 0, "overdue": 0, "due_soon": 0, "notifications_created": 0}

    task_rows = engine.gateway.session.execute(
        select(Task.id, Task.title, Task.supplier_id, Task.assigned_creator_id)
        .where(Task.deadline.is_not(None),
               Task.status.in_([s.value for s in _DEADLINE_STAGES]))
        .order_by(Task.id)
    ).all()

    with engine.gateway.transaction():
        for task_id, title, supplier_id, creator_id in task_rows:
            results["checked"] += 1
            status = engine.check_deadline(task_id)
            if status.is_overdue:
                results["overdue"] += 1
                message = f"Task \"{title}\" is overdue by {abs(status.days_remaining)} day(s)."
            elif status.days_remaining is not None and status.days_remaining <= REMINDER_WINDOW_DAYS:
                results["due_soon"] += 1
                message = f"Task \"{title}\" is due within {REMINDER_WINDOW_DAYS} day."
            else:
                continue

            for user_id in filter(None, (supplier_id, creator_id)):
                engine.deliver(user_id, "deadline_reminder", "Deadline reminder", message,
                               {"task_id": task_id, **status.to_dict()})
                results["notifications_created"] += 1

    logger.info("deadline_reminders: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Notification cleanup
# ═══════════════════════════════════════════════════════════════════════════

@register_job("notification_cleanup")
def cleanup_notifications(app) -> dict[str, Any]:
    """Delete read notifications older than the retention window."""
    days = app.config.get("NOTIFICATION_RETENTION_DAYS", DEFAULT_RETENTION_DAYS)
    deleted = NotificationDispatcher().cleanup_read(days)
    return {"retention_days": days, "deleted": deleted}
