"""
Tourlink Marketplace
Workflow Engine.

The only code path that changes ``Task.status``. Each transition runs as one
unit of work on the PersistenceGateway:

    1. conditional status update (status = old AND version = v) → version + 1
    2. StageHistory row
    3. audit entry ``task_stage_changed``
    4. role-scoped notification fan-out (best-effort, inside savepoints)
    5. per-stage progress rows

A persistence error at any step rolls all of it back. A failing notification
never does.

Read side: get_progress, get_dashboard, check_deadline, get_tasks_by_stage,
get_stage_history, get_workflow_status. None of them write.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone

from flask import current_app, has_app_context
from sqlalchemy import exists, select

from tourlink.core.exceptions import ConcurrentModification, InvalidTransition, NotFoundError
from tourlink.models.task import (
    ASSIGNED_STATUSES,
    MediaAsset,
    StageHistory,
    Task,
    TaskActivity,
    TaskApplication,
    TaskRating,
    TaskStageProgress,
)
from tourlink.models.user import User
from tourlink.services import stage_registry
from tourlink.services.audit import AuditRecorder
from tourlink.services.notification import NotificationDispatcher
from tourlink.services.persistence import PersistenceGateway
from tourlink.services.stage_registry import Stage

logger = logging.getLogger(__name__)

DEFAULT_CREATOR_FANOUT_LIMIT = 10
DEFAULT_REVIEW_AUTO_APPROVE_DAYS = 3
RECENT_ACTIVITY_LIMIT = 10

# Side states do not raise the progress high-water mark
_SIDE_STAGES = frozenset({Stage.REVISION_REQUIRED, Stage.CANCELLED})

_SUPPLIER_ACTIVE = (Stage.COLLECTING, Stage.EVALUATING, Stage.IN_PROGRESS, Stage.REVIEWING)
_MEDIA_VISIBLE = (Stage.PUBLISHING, Stage.COMPLETED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; they are stored as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value):
    return value.isoformat() if value else None


def _sql_in(stages) -> str:
    return ", ".join(f"'{s.value}'" for s in stages)


# ═══════════════════════════════════════════════════════════════════════════
#  Result types
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TransitionResult:
    task_id: int
    old_stage: str
    new_stage: str
    actor_id: int | None
    reason: str | None
    progress_percentage: float
    changed_at: datetime
    history_id: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["changed_at"] = _iso(self.changed_at)
        return data


@dataclass
class ProgressView:
    task_id: int
    current_stage: str
    stage: dict | None
    progress_percentage: float
    current_order: int
    total_active_stages: int
    history: list = field(default_factory=list)
    next_stages: list = field(default_factory=list)
    estimated_completion: datetime | None = None
    high_water_mark: float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["estimated_completion"] = _iso(self.estimated_completion)
        return data


@dataclass
class DashboardView:
    role: str
    total_tasks: int = 0
    active_tasks: int = 0
    completed_tasks: int = 0
    pending_actions: int = 0
    stage_breakdown: dict = field(default_factory=dict)
    recent_activities: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class DeadlineStatus:
    task_id: int
    is_overdue: bool
    days_remaining: int | None
    deadline: datetime | None

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "is_overdue": self.is_overdue,
            "days_remaining": self.days_remaining,
            "deadline": _iso(self.deadline),
        }


# ═══════════════════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════════════════

class WorkflowEngine:
    """Finite-state machine over Task.status with transactional side effects."""

    def __init__(self, gateway=None, audit=None, notifier=None, registry=stage_registry, clock=None):
        self.gateway = gateway or PersistenceGateway()
        self.audit = audit or AuditRecorder()
        self.notifier = notifier or NotificationDispatcher(self.gateway)
        self.registry = registry
        self.clock = clock or _utcnow

    # ── Transition ────────────────────────────────────────────────────────

    def transition(self, task_id, new_stage, actor_id, reason=None, *,
                   assign_creator_id=None, notify_context=None) -> TransitionResult:
        """
        Move a task to ``new_stage``.

        Raises:
            NotFoundError: task does not exist.
            InvalidTransition: the registry forbids the move; nothing is written.
            ConcurrentModification: another writer changed the task first.
            PersistenceFailure: storage error; the whole unit was rolled back.
        """
        target = self.registry.to_stage(new_stage)

        with self.gateway.transaction():
            task = self.gateway.get(Task, task_id, for_update=True)
            if task is None:
                raise NotFoundError("Task", task_id)

            old_status = task.status
            if target is None or not self.registry.can_transition(old_status, target):
                raise InvalidTransition(
                    task_id, old_status, getattr(target, "value", str(new_stage)),
                    reason="not a permitted next stage",
                )

            now = self.clock()
            version = task.version
            old_assignee = task.assigned_creator_id
            new_assignee = old_assignee if assign_creator_id is None else assign_creator_id
            # only assigned statuses may carry a creator
            if target.value not in ASSIGNED_STATUSES:
                new_assignee = None
            changes = {"status": target.value, "version": version + 1, "updated_at": now}
            if new_assignee != old_assignee:
                changes["assigned_creator_id"] = new_assignee
            if target is Stage.COMPLETED:
                changes["completed_at"] = now

            affected = self.gateway.update(
                Task, changes, {"id": task_id, "status": old_status, "version": version},
            )
            if not affected:
                raise ConcurrentModification("Task", task_id)

            history_id = self.gateway.insert(StageHistory(
                task_id=task_id,
                from_stage=old_status,
                to_stage=target.value,
                changed_by=actor_id,
                reason=reason,
                changed_at=now,
            ))

            old_values = {"status": old_status}
            new_values = {"status": target.value}
            if new_assignee != old_assignee:
                old_values["assigned_creator_id"] = old_assignee
                new_values["assigned_creator_id"] = new_assignee
            self.audit.log(actor_id, "task_stage_changed", "tasks", task_id,
                           old_values=old_values, new_values=new_values)

            self._fan_out(task, old_status, target, notify_context or {})
            self._record_progress(task_id, old_status, target, now)

        logger.info("Task %s moved %s → %s by user %s", task_id, old_status, target.value, actor_id)
        return TransitionResult(
            task_id=task_id,
            old_stage=old_status,
            new_stage=target.value,
            actor_id=actor_id,
            reason=reason,
            progress_percentage=self.registry.progress_for(target),
            changed_at=now,
            history_id=history_id,
        )

    # ── Progress rows ─────────────────────────────────────────────────────

    def seed_progress(self, task_id, current_stage=Stage.DRAFT, now=None) -> dict:
        """Create one progress row per registry stage; the current one is started."""
        now = now or self.clock()
        current = self.registry.to_stage(current_stage)
        rows = {}
        for definition in self.registry.STAGES.values():
            row = TaskStageProgress(
                task_id=task_id,
                stage_name=definition.stage.value,
                stage_order=definition.order,
                progress_percentage=0.0,
            )
            if definition.stage is current:
                row.stage_started_at = now
                if current not in _SIDE_STAGES:
                    row.progress_percentage = self.registry.progress_for(current)
            rows[row.stage_name] = row
        self.gateway.session.add_all(rows.values())
        self.gateway.session.flush()
        return rows

    def _progress_rows(self, task_id) -> dict:
        stmt = select(TaskStageProgress).where(TaskStageProgress.task_id == task_id)
        return {r.stage_name: r for r in self.gateway.session.execute(stmt).scalars()}

    def _record_progress(self, task_id, old_status, target, now) -> None:
        rows = self._progress_rows(task_id)
        if not rows:
            rows = self.seed_progress(task_id, old_status, now)

        high = max((r.progress_percentage or 0.0) for r in rows.values())
        if target not in _SIDE_STAGES:
            high = max(high, self.registry.progress_for(target))

        previous = rows.get(old_status)
        if previous is not None and previous.stage_completed_at is None:
            previous.stage_completed_at = now

        current = rows.get(target.value)
        if current is None:
            return
        current.stage_started_at = now
        current.stage_completed_at = now if target is Stage.COMPLETED else None
        current.progress_percentage = high
        self.gateway.session.flush()

    # ── Notification fan-out ──────────────────────────────────────────────

    def _fan_out(self, task, old_status, target, context) -> None:
        handlers = {
            Stage.COLLECTING: self._creators_for_new_task,
            Stage.EVALUATING: self._supplier_for_proposals,
            Stage.IN_PROGRESS: self._creator_to_start,
            Stage.REVIEWING: self._supplier_for_review,
            Stage.PUBLISHING: self._media_for_publishing,
            Stage.COMPLETED: self._participants_for_completion,
        }
        handler = handlers.get(target)
        if handler is None:
            return
        try:
            messages = list(handler(task, old_status, context))
        except Exception:
            logger.exception("Resolving recipients for task %s (%s) failed", task.id, target.value)
            return

        for user_id, ntype, title, message, data in messages:
            self.deliver(user_id, ntype, title, message, data)

    def deliver(self, user_id, ntype, title, message, data=None) -> None:
        """Send one notification; failures are logged and never propagate."""
        try:
            with self.gateway.savepoint():
                self.notifier.notify(user_id, ntype, title, message, data)
        except Exception:
            logger.exception("Notification %s to user %s failed (data=%s)", ntype, user_id, data)

    def _creators_for_new_task(self, task, old_status, context):
        limit = DEFAULT_CREATOR_FANOUT_LIMIT
        if has_app_context():
            limit = current_app.config.get("WORKFLOW_CREATOR_FANOUT_LIMIT", limit)
        wanted = set(task.content_types or [])
        stmt = (
            select(User)
            .where(User.role == "creator", User.is_active.is_(True))
            .order_by(User.rating.desc(), User.id)
        )
        matched = 0
        for creator in self.gateway.session.execute(stmt).scalars():
            if matched >= limit:
                break
            offered = set(creator.content_types or [])
            if wanted and offered and not wanted & offered:
                continue
            matched += 1
            yield (creator.id, "new_task_available", "New task available",
                   f"A new task may suit you: {task.title}", {"task_id": task.id})

    def _supplier_for_proposals(self, task, old_status, context):
        yield (task.supplier_id, "proposals_ready", "Proposals ready for review",
               f"Proposals for \"{task.title}\" are ready for your review.",
               {"task_id": task.id, "applications_count": task.applications_count})

    def _creator_to_start(self, task, old_status, context):
        if task.assigned_creator_id is None:
            return
        if old_status == Stage.REVISION_REQUIRED.value:
            feedback = context.get("feedback")
            message = f"Your work for \"{task.title}\" needs changes."
            if feedback:
                message += f" Feedback: {feedback}"
            yield (task.assigned_creator_id, "revision_requested", "Revision requested",
                   message, {"task_id": task.id, "feedback": feedback})
            return
        yield (task.assigned_creator_id, "proposal_selected", "Your proposal was selected",
               f"Your proposal for \"{task.title}\" was selected. You can start working.",
               {"task_id": task.id})

    def _supplier_for_review(self, task, old_status, context):
        days = DEFAULT_REVIEW_AUTO_APPROVE_DAYS
        if has_app_context():
            days = current_app.config.get("REVIEW_AUTO_APPROVE_DAYS", days)
        yield (task.supplier_id, "content_review_required", "Content review required",
               f"Work for \"{task.title}\" was submitted. It is approved automatically "
               f"in {days} days if not reviewed.",
               {"task_id": task.id, "asset_id": context.get("asset_id"), "auto_approve_days": days})

    def _media_for_publishing(self, task, old_status, context):
        stmt = (
            select(User.id)
            .where(User.role == "media", User.is_active.is_(True))
            .order_by(User.id)
        )
        for user_id in self.gateway.session.execute(stmt).scalars():
            yield (user_id, "content_ready_to_publish", "Content ready to publish",
                   f"New content is ready to publish: {task.title}",
                   {"task_id": task.id, "asset_id": context.get("asset_id")})

    def _participants_for_completion(self, task, old_status, context):
        message = f"Task \"{task.title}\" is complete. Please leave a rating."
        yield (task.supplier_id, "task_completed", "Task completed", message, {"task_id": task.id})
        if task.assigned_creator_id:
            yield (task.assigned_creator_id, "task_completed", "Task completed", message,
                   {"task_id": task.id})

    # ── Read side ─────────────────────────────────────────────────────────

    def _require_task(self, task_id) -> Task:
        task = self.gateway.get(Task, task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def get_stage_history(self, task_id) -> list[dict]:
        self._require_task(task_id)
        stmt = (
            select(StageHistory)
            .where(StageHistory.task_id == task_id)
            .order_by(StageHistory.changed_at, StageHistory.id)
        )
        return [h.to_dict() for h in self.gateway.session.execute(stmt).scalars()]

    def get_progress(self, task_id) -> ProgressView:
        task = self._require_task(task_id)
        definition = self.registry.get_stage(task.status)
        percentage = self.registry.progress_for(task.status)
        rows = self._progress_rows(task_id)
        high = max([percentage] + [(r.progress_percentage or 0.0) for r in rows.values()])

        return ProgressView(
            task_id=task.id,
            current_stage=task.status,
            stage=definition.to_dict() if definition else None,
            progress_percentage=percentage,
            current_order=definition.order if definition else 0,
            total_active_stages=self.registry.TOTAL_ACTIVE_STAGES,
            history=self.get_stage_history(task_id),
            next_stages=[s.value for s in self.registry.next_stages(task.status)],
            estimated_completion=self._estimate_completion(task, definition),
            high_water_mark=high,
        )

    def _estimate_completion(self, task, definition):
        if task.deadline:
            return as_utc(task.deadline)
        if definition and definition.estimated_days > 0:
            return self.clock() + timedelta(days=definition.estimated_days)
        return None

    def check_deadline(self, task_id) -> DeadlineStatus:
        task = self._require_task(task_id)
        deadline = as_utc(task.deadline)
        if deadline is None:
            return DeadlineStatus(task_id=task.id, is_overdue=False, days_remaining=None, deadline=None)

        delta = deadline - self.clock()
        whole_days = int(abs(delta.total_seconds()) // 86400)
        overdue = delta.total_seconds() < 0
        return DeadlineStatus(
            task_id=task.id,
            is_overdue=overdue,
            days_remaining=-whole_days if overdue else whole_days,
            deadline=deadline,
        )

    def get_dashboard(self, user_id, role) -> DashboardView:
        """Role-scoped counters, computed on demand."""
        if role == "supplier":
            stats = self.gateway.query(
                f"""
                SELECT COUNT(*) AS total_tasks,
                       SUM(CASE WHEN status IN ({_sql_in(_SUPPLIER_ACTIVE)}) THEN 1 ELSE 0 END) AS active_tasks,
                       SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed_tasks,
                       SUM(CASE WHEN status = 'reviewing' THEN 1 ELSE 0 END) AS pending_actions
                FROM tasks
                WHERE supplier_id = :user_id
                """,
                {"user_id": user_id},
            )
            breakdown = self.gateway.query(
                "SELECT status, COUNT(*) AS count FROM tasks "
                "WHERE supplier_id = :user_id GROUP BY status",
                {"user_id": user_id},
            )
        elif role == "creator":
            stats = self.gateway.query(
                """
                SELECT COUNT(DISTINCT ta.task_id) AS total_tasks,
                       SUM(CASE WHEN t.status = 'in_progress' THEN 1 ELSE 0 END) AS active_tasks,
                       SUM(CASE WHEN t.status = 'completed' THEN 1 ELSE 0 END) AS completed_tasks,
                       SUM(CASE WHEN ta.status = 'pending' THEN 1 ELSE 0 END) AS pending_actions
                FROM task_applications ta
                JOIN tasks t ON ta.task_id = t.id
                WHERE ta.creator_id = :user_id
                """,
                {"user_id": user_id},
            )
            breakdown = self.gateway.query(
                "SELECT t.status AS status, COUNT(*) AS count "
                "FROM task_applications ta JOIN tasks t ON ta.task_id = t.id "
                "WHERE ta.creator_id = :user_id GROUP BY t.status",
                {"user_id": user_id},
            )
        elif role == "media":
            stats = self.gateway.query(
                f"""
                SELECT COUNT(*) AS total_tasks,
                       SUM(CASE WHEN status = 'publishing' THEN 1 ELSE 0 END) AS active_tasks,
                       SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed_tasks
                FROM tasks
                WHERE status IN ({_sql_in(_MEDIA_VISIBLE)})
                """
            )
            breakdown = self.gateway.query(
                f"SELECT status, COUNT(*) AS count FROM tasks "
                f"WHERE status IN ({_sql_in(_MEDIA_VISIBLE)}) GROUP BY status"
            )
        else:
            return DashboardView(role=role, recent_activities=self._recent_activities(user_id))

        row = stats[0] if stats else {}
        return DashboardView(
            role=role,
            total_tasks=int(row.get("total_tasks") or 0),
            active_tasks=int(row.get("active_tasks") or 0),
            completed_tasks=int(row.get("completed_tasks") or 0),
            pending_actions=int(row.get("pending_actions") or 0),
            stage_breakdown={r["status"]: int(r["count"]) for r in breakdown},
            recent_activities=self._recent_activities(user_id),
        )

    def _recent_activities(self, user_id) -> list[dict]:
        stmt = (
            select(TaskActivity)
            .where(TaskActivity.user_id == user_id)
            .order_by(TaskActivity.created_at.desc(), TaskActivity.id.desc())
            .limit(RECENT_ACTIVITY_LIMIT)
        )
        return [a.to_dict() for a in self.gateway.session.execute(stmt).scalars()]

    def get_tasks_by_stage(self, user_id, role, stage) -> list[dict]:
        """The user's tasks currently in ``stage``, newest activity first."""
        target = self.registry.to_stage(stage)
        if target is None:
            return []
        stmt = select(Task).where(Task.status == target.value)
        if role == "supplier":
            stmt = stmt.where(Task.supplier_id == user_id)
        elif role == "creator":
            stmt = stmt.where(exists().where(
                TaskApplication.task_id == Task.id, TaskApplication.creator_id == user_id,
            ))
        elif role == "media" and target not in _MEDIA_VISIBLE:
            return []
        stmt = stmt.order_by(Task.updated_at.desc(), Task.id.desc())

        tasks = []
        for task in self.gateway.session.execute(stmt).scalars():
            data = task.to_dict()
            data["progress_percentage"] = self.registry.progress_for(task.status)
            tasks.append(data)
        return tasks

    def get_workflow_status(self, task_id) -> dict:
        """Everything a task page needs in one read."""
        task = self._require_task(task_id)
        session = self.gateway.session

        def _all(model, order):
            stmt = select(model).where(model.task_id == task_id).order_by(*order)
            return [obj.to_dict() for obj in session.execute(stmt).scalars()]

        return {
            "task": task.to_dict(),
            "progress_percentage": self.registry.progress_for(task.status),
            "stages": _all(TaskStageProgress, [TaskStageProgress.stage_order]),
            "applications": _all(TaskApplication, [TaskApplication.created_at, TaskApplication.id]),
            "assets": _all(MediaAsset, [MediaAsset.created_at, MediaAsset.id]),
            "activities": _all(TaskActivity, [TaskActivity.created_at.desc(), TaskActivity.id.desc()]),
            "ratings": _all(TaskRating, [TaskRating.id]),
        }
