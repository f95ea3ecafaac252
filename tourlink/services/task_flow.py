"""
Tourlink Marketplace
Task Flow Service — marketplace use cases on top of the WorkflowEngine.

    create_task → publish_task → submit_application (first one: collecting)
      → review_application (accept: in_progress) → submit_work (reviewing)
      → review_work (publishing | revision loop) → complete_task → submit_rating

Every public method is one unit of work on the engine's gateway. Stage
changes always go through ``engine.transition``, which joins the unit
instead of committing on its own; this module never writes Task.status.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from tourlink.core.exceptions import (
    AuthorizationError,
    DuplicateApplication,
    DuplicateRating,
    InvalidRating,
    InvalidTransition,
    NotFoundError,
    TaskNotAcceptingApplications,
    ValidationError,
)
from tourlink.models.task import (
    APPLICATION_STATUSES,
    ASSET_STATUSES,
    BUDGET_TYPES,
    RATING_TYPES,
    MediaAsset,
    Task,
    TaskActivity,
    TaskApplication,
    TaskRating,
)
from tourlink.models.user import User
from tourlink.services.stage_registry import ACCEPTING_APPLICATIONS, Stage, to_stage
from tourlink.services.workflow_engine import WorkflowEngine

logger = logging.getLogger(__name__)

APPLICATION_DECISIONS = APPLICATION_STATUSES - {"pending"}
WORK_DECISIONS = ASSET_STATUSES - {"pending_review"}
ASSIGNED_ELSEWHERE_NOTE = "Task has been assigned to another creator"
CANCELLED_NOTE = "Task was cancelled"
TITLE_MAX_LENGTH = 200

# Stages a supplier may request by name; every other edge belongs to a use case
DIRECT_STAGES = (Stage.PUBLISHED, Stage.EVALUATING, Stage.CANCELLED)


def _parse_deadline(value):
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _amount(value):
    return None if value is None or value == "" else float(value)


def _require_mapping(data, what):
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"Invalid {what}", details={"body": "must be a JSON object"})
    return data


def _text(data: dict, key, errors: dict, *, required=True, max_length=None):
    """Stripped string at ``data[key]``; any problem is recorded in ``errors``."""
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        errors[key] = "must be a string"
        return None
    value = (value or "").strip()
    if not value:
        if required:
            errors[key] = "required"
        return None
    if max_length and len(value) > max_length:
        errors[key] = f"must be at most {max_length} characters"
    return value


def _number(data: dict, key, errors: dict, *, low=None, high=None):
    raw = data.get(key)
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        errors[key] = "must be a number"
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        errors[key] = "must be a number"
        return None
    if low is not None and value < low:
        errors[key] = f"must be at least {low}"
        return None
    if high is not None and value > high:
        errors[key] = f"must be at most {high}"
        return None
    return value


def _validate_task_data(data: dict, now: datetime) -> dict:
    """Collect every field problem at once. Returns {field: message}."""
    errors = {}

    _text(data, "title", errors, max_length=TITLE_MAX_LENGTH)
    _text(data, "description", errors)
    _text(data, "requirements", errors, required=False)
    _number(data, "latitude", errors, low=-90, high=90)
    _number(data, "longitude", errors, low=-180, high=180)

    budgets = {}
    for key in ("budget_min", "budget_max"):
        amount = _number(data, key, errors)
        if amount is None:
            continue
        if amount < 0:
            errors[key] = "must not be negative"
        else:
            budgets[key] = amount
    if "budget_min" in budgets and "budget_max" in budgets:
        if budgets["budget_max"] <= 0:
            errors["budget_max"] = "must be greater than zero"
        elif budgets["budget_min"] > budgets["budget_max"]:
            errors["budget_min"] = "must not exceed budget_max"

    budget_type = data.get("budget_type")
    if budget_type is not None and (not isinstance(budget_type, str) or budget_type not in BUDGET_TYPES):
        errors["budget_type"] = f"must be one of {sorted(BUDGET_TYPES)}"

    if data.get("deadline"):
        try:
            if _parse_deadline(data["deadline"]) <= now:
                errors["deadline"] = "must be in the future"
        except (TypeError, ValueError):
            errors["deadline"] = "must be an ISO-8601 datetime"

    for key in ("tags", "content_types"):
        if data.get(key) is not None and not isinstance(data[key], list):
            errors[key] = "must be a list"

    return errors


class TaskFlowService:
    """Application, submission and rating use cases."""

    def __init__(self, engine: WorkflowEngine | None = None):
        self.engine = engine or WorkflowEngine()
        self.gateway = self.engine.gateway
        self.audit = self.engine.audit

    # ── Helpers ───────────────────────────────────────────────────────────

    def _task(self, task_id, *, for_update=True) -> Task:
        task = self.gateway.get(Task, task_id, for_update=for_update)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def _owned_task(self, task_id, supplier_id, action) -> Task:
        task = self._task(task_id)
        if task.supplier_id != supplier_id:
            raise AuthorizationError(supplier_id, action, reason="not the task owner")
        return task

    def _user_with_role(self, user_id, role, action) -> User:
        user = self.gateway.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        if user.role != role:
            raise AuthorizationError(user_id, action, reason=f"requires role {role}")
        return user

    def _log_activity(self, task_id, user_id, activity_type, description) -> None:
        self.gateway.insert(TaskActivity(
            task_id=task_id,
            user_id=user_id,
            activity_type=activity_type,
            description=description,
        ))

    def _bump(self, user_id, column) -> None:
        self.gateway.update(User, {column: getattr(User, column) + 1}, {"id": user_id})

    def _reject_pending(self, task_id, note, *, exclude_id=None) -> list[TaskApplication]:
        stmt = select(TaskApplication).where(
            TaskApplication.task_id == task_id, TaskApplication.status == "pending",
        )
        if exclude_id is not None:
            stmt = stmt.where(TaskApplication.id != exclude_id)
        rejected = list(self.gateway.session.execute(stmt).scalars())
        for application in rejected:
            application.status = "rejected"
            application.supplier_notes = note
        self.gateway.session.flush()
        return rejected

    # ── Task lifecycle ────────────────────────────────────────────────────

    def create_task(self, supplier_id, data: dict) -> int:
        """Create a draft task owned by ``supplier_id``; returns its id."""
        data = _require_mapping(data, "task data")
        with self.gateway.transaction():
            self._user_with_role(supplier_id, "supplier", "create tasks")

            now = self.engine.clock()
            errors = _validate_task_data(data, now)
            if errors:
                raise ValidationError("Invalid task data", details=errors)

            task = Task(
                supplier_id=supplier_id,
                title=data["title"].strip(),
                description=data["description"].strip(),
                requirements=(data.get("requirements") or "").strip() or None,
                budget_min=_amount(data.get("budget_min")),
                budget_max=_amount(data.get("budget_max")),
                budget_type=data.get("budget_type") or "fixed",
                deadline=_parse_deadline(data["deadline"]) if data.get("deadline") else None,
                tags=data.get("tags") or [],
                content_types=data.get("content_types") or [],
                latitude=_amount(data.get("latitude")),
                longitude=_amount(data.get("longitude")),
                status=Stage.DRAFT.value,
                version=1,
            )
            task_id = self.gateway.insert(task)
            self.engine.seed_progress(task_id, Stage.DRAFT, now)
            self._log_activity(task_id, supplier_id, "task_created", "Task created")
            self.audit.log(supplier_id, "task_created", "tasks", task_id,
                           new_values={"title": task.title, "status": task.status})
            self._bump(supplier_id, "total_tasks")

        logger.info("Task %s created by supplier %s", task_id, supplier_id)
        return task_id

    def publish_task(self, task_id, supplier_id):
        with self.gateway.transaction():
            self._owned_task(task_id, supplier_id, "publish this task")
            result = self.engine.transition(task_id, Stage.PUBLISHED, supplier_id,
                                            reason="Task published")
            self._log_activity(task_id, supplier_id, "task_published",
                               "Task published and open for applications")
        return result

    def move_to_evaluation(self, task_id, supplier_id):
        """Close proposal collection and start evaluating."""
        with self.gateway.transaction():
            self._owned_task(task_id, supplier_id, "evaluate proposals")
            result = self.engine.transition(task_id, Stage.EVALUATING, supplier_id,
                                            reason="Proposal collection closed")
            self._log_activity(task_id, supplier_id, "evaluation_started",
                               "Supplier started evaluating proposals")
        return result

    def cancel_task(self, task_id, supplier_id, reason=None):
        """Cancel the task; the engine also releases any assigned creator."""
        errors = {}
        reason = _text({"reason": reason}, "reason", errors, required=False)
        if errors:
            raise ValidationError("Invalid cancellation", details=errors)

        with self.gateway.transaction():
            task = self._owned_task(task_id, supplier_id, "cancel this task")
            released_creator = task.assigned_creator_id
            result = self.engine.transition(task_id, Stage.CANCELLED, supplier_id,
                                            reason=reason or "Cancelled by supplier")
            for application in self._reject_pending(task_id, CANCELLED_NOTE):
                self.engine.deliver(
                    application.creator_id, "application_rejected", "Application closed",
                    f"The task \"{task.title}\" was cancelled.",
                    {"task_id": task_id, "application_id": application.id},
                )
            if released_creator:
                self.engine.deliver(
                    released_creator, "task_cancelled", "Task cancelled",
                    f"The task \"{task.title}\" you were working on was cancelled.",
                    {"task_id": task_id, "reason": reason},
                )
            self._log_activity(task_id, supplier_id, "task_cancelled", reason or "Task cancelled")
        return result

    def change_stage(self, task_id, actor_id, stage, reason=None):
        """
        Move an owned task to one of DIRECT_STAGES by name.

        Every other edge has side effects (assignment, asset review,
        completion counters) and is only reachable through its own use case.
        """
        target = to_stage(stage) if isinstance(stage, str) else None
        with self.gateway.transaction():
            task = self._owned_task(task_id, actor_id, "change the task stage")
            if target not in DIRECT_STAGES:
                raise InvalidTransition(
                    task_id, task.status, getattr(target, "value", str(stage)),
                    reason="this stage is reached through its own action",
                )
            if target is Stage.PUBLISHED:
                return self.publish_task(task_id, actor_id)
            if target is Stage.EVALUATING:
                return self.move_to_evaluation(task_id, actor_id)
            return self.cancel_task(task_id, actor_id, reason)

    def complete_task(self, task_id, actor_id):
        with self.gateway.transaction():
            task = self._task(task_id)
            if actor_id not in (task.supplier_id, task.assigned_creator_id):
                raise AuthorizationError(actor_id, "complete this task",
                                         reason="not a participant")
            result = self.engine.transition(task_id, Stage.COMPLETED, actor_id,
                                            reason="Task completed")
            self._bump(task.supplier_id, "completed_tasks")
            if task.assigned_creator_id:
                self._bump(task.assigned_creator_id, "completed_tasks")
            self.audit.log(actor_id, "user_stats_updated", "users", task.supplier_id,
                           new_values={"completed_tasks": "+1",
                                       "creator_id": task.assigned_creator_id})
            self._log_activity(task_id, actor_id, "task_completed", "Task completed")
        return result

    # ── Applications ──────────────────────────────────────────────────────

    def submit_application(self, task_id, creator_id, proposal, **details) -> int:
        """
        Record a creator's proposal. The first application moves the task
        from published to collecting.

        Raises:
            TaskNotAcceptingApplications, AuthorizationError,
            DuplicateApplication, ValidationError.
        """
        with self.gateway.transaction():
            task = self._task(task_id)
            if task.status not in ACCEPTING_APPLICATIONS:
                raise TaskNotAcceptingApplications(task_id, task.status)
            self._user_with_role(creator_id, "creator", "apply to tasks")

            existing = self.gateway.session.execute(
                select(TaskApplication.id).where(
                    TaskApplication.task_id == task_id, TaskApplication.creator_id == creator_id,
                )
            ).first()
            if existing:
                raise DuplicateApplication(task_id, creator_id)

            errors = {}
            fields = {"proposal": proposal, **details}
            text = _text(fields, "proposal", errors)
            notes = _text(fields, "creator_notes", errors, required=False)
            budget = _number(fields, "proposed_budget", errors, low=0)
            duration = fields.get("estimated_duration")
            if errors:
                raise ValidationError("Invalid application", details=errors)

            self.gateway.update(
                Task, {"applications_count": Task.applications_count + 1}, {"id": task_id},
            )
            try:
                application_id = self.gateway.insert(TaskApplication(
                    task_id=task_id,
                    creator_id=creator_id,
                    proposal=text,
                    proposed_budget=budget,
                    estimated_duration=str(duration) if duration not in (None, "") else None,
                    creator_notes=notes,
                    status="pending",
                ))
            except IntegrityError as exc:
                raise DuplicateApplication(task_id, creator_id) from exc

            self.audit.log(creator_id, "task_application_submitted", "task_applications",
                           application_id, new_values={"task_id": task_id, "status": "pending"})
            self._log_activity(task_id, creator_id, "application_submitted",
                               "Creator submitted an application")
            self.engine.deliver(
                task.supplier_id, "new_application", "New application",
                f"Your task \"{task.title}\" received a new application.",
                {"task_id": task_id, "application_id": application_id},
            )

            if task.status != Stage.COLLECTING.value:
                self.engine.transition(task_id, Stage.COLLECTING, creator_id,
                                       reason="First application received")

        logger.info("Application %s submitted for task %s by creator %s",
                    application_id, task_id, creator_id)
        return application_id

    def review_application(self, application_id, supplier_id, decision, notes=None):
        errors = {}
        if not isinstance(decision, str) or decision not in APPLICATION_DECISIONS:
            errors["decision"] = f"must be one of {sorted(APPLICATION_DECISIONS)}"
        notes = _text({"notes": notes}, "notes", errors, required=False)
        if errors:
            raise ValidationError("Invalid decision", details=errors)

        with self.gateway.transaction():
            # task row first, then the application: every writer takes the same order
            task_id = self.gateway.session.execute(
                select(TaskApplication.task_id).where(TaskApplication.id == application_id)
            ).scalar()
            if task_id is None:
                raise NotFoundError("TaskApplication", application_id)
            task = self._owned_task(task_id, supplier_id, "review this application")
            application = self.gateway.get(TaskApplication, application_id, for_update=True)
            if application.status != "pending":
                raise ValidationError(
                    "Application already reviewed",
                    details={"status": f"is '{application.status}', expected 'pending'"},
                )

            application.status = decision
            application.supplier_notes = notes
            self.gateway.session.flush()
            self.audit.log(supplier_id, "task_application_reviewed", "task_applications",
                           application_id, old_values={"status": "pending"},
                           new_values={"status": decision})

            if decision == "accepted":
                rejected = self._reject_pending(task.id, ASSIGNED_ELSEWHERE_NOTE,
                                                exclude_id=application_id)
                result = self.engine.transition(
                    task.id, Stage.IN_PROGRESS, supplier_id,
                    reason="Application accepted",
                    assign_creator_id=application.creator_id,
                )
                for sibling in rejected:
                    self.engine.deliver(
                        sibling.creator_id, "application_rejected", "Application not selected",
                        f"The task \"{task.title}\" has been assigned to another creator.",
                        {"task_id": task.id, "application_id": sibling.id},
                    )
                self._log_activity(task.id, supplier_id, "application_accepted",
                                   "Application accepted; work started")
                return result

            self.engine.deliver(
                application.creator_id, "application_rejected", "Application not selected",
                f"Your application for \"{task.title}\" was not accepted.",
                {"task_id": task.id, "application_id": application_id, "notes": notes},
            )
            self._log_activity(task.id, supplier_id, "application_rejected", "Application rejected")
        return None

    # ── Submitted work ────────────────────────────────────────────────────

    def submit_work(self, task_id, creator_id, work_data: dict) -> int:
        work_data = _require_mapping(work_data, "submission")
        with self.gateway.transaction():
            task = self._task(task_id)
            if task.assigned_creator_id != creator_id:
                raise AuthorizationError(creator_id, "submit work", reason="not the assigned creator")
            if task.status != Stage.IN_PROGRESS.value:
                raise InvalidTransition(task_id, task.status, Stage.REVIEWING.value,
                                        reason="work can only be submitted while in progress")

            errors = {}
            fields = {f: _text(work_data, f, errors) for f in ("title", "asset_type", "file_url")}
            for optional in ("description", "thumbnail_url"):
                fields[optional] = _text(work_data, optional, errors, required=False) or ""
            file_size = _number(work_data, "file_size", errors, low=0)
            tags = work_data.get("tags")
            if tags is not None and not isinstance(tags, list):
                errors["tags"] = "must be a list"
            if errors:
                raise ValidationError("Invalid submission", details=errors)

            asset_id = self.gateway.insert(MediaAsset(
                task_id=task_id,
                creator_id=creator_id,
                title=fields["title"],
                description=fields["description"],
                asset_type=fields["asset_type"],
                file_url=fields["file_url"],
                thumbnail_url=fields["thumbnail_url"],
                file_size=int(file_size or 0),
                tags=tags or [],
                status="pending_review",
            ))
            self.audit.log(creator_id, "task_work_submitted", "media_assets", asset_id,
                           new_values={"task_id": task_id, "status": "pending_review"})
            self.engine.transition(task_id, Stage.REVIEWING, creator_id,
                                   reason="Work submitted", notify_context={"asset_id": asset_id})
            self._log_activity(task_id, creator_id, "work_submitted", "Creator submitted work")
        return asset_id

    def review_work(self, task_id, supplier_id, asset_id, decision, feedback=None, *, auto=False):
        """
        Approve submitted work (→ publishing) or send it back
        (→ revision_required → in_progress, in the same unit).

        ``auto`` marks a system approval: the stage change is recorded
        without a human actor.
        """
        errors = {}
        if not isinstance(decision, str) or decision not in WORK_DECISIONS:
            errors["decision"] = f"must be one of {sorted(WORK_DECISIONS)}"
        feedback = _text({"feedback": feedback}, "feedback", errors, required=False)
        if errors:
            raise ValidationError("Invalid review", details=errors)

        actor_id = None if auto else supplier_id
        with self.gateway.transaction():
            task = self._owned_task(task_id, supplier_id, "review this work")
            asset = self.gateway.get(MediaAsset, asset_id, for_update=True)
            if asset is None or asset.task_id != task.id:
                raise NotFoundError("MediaAsset", asset_id)
            if asset.status != "pending_review":
                raise ValidationError(
                    "Work already reviewed",
                    details={"status": f"is '{asset.status}', expected 'pending_review'"},
                )

            approved = decision == "approved"
            asset.status = "approved" if approved else "revision_required"
            asset.approval_notes = feedback
            self.gateway.session.flush()
            self.audit.log(actor_id, "task_work_reviewed", "media_assets", asset_id,
                           old_values={"status": "pending_review"},
                           new_values={"status": asset.status, "auto": auto})

            if approved:
                result = self.engine.transition(
                    task_id, Stage.PUBLISHING, actor_id,
                    reason="Work approved automatically" if auto else "Work approved",
                    notify_context={"asset_id": asset_id},
                )
                self.engine.deliver(
                    asset.creator_id, "work_approved", "Work approved",
                    f"Your work for \"{task.title}\" was approved.",
                    {"task_id": task_id, "asset_id": asset_id},
                )
                self._log_activity(task_id, actor_id,
                                   "work_auto_approved" if auto else "work_approved",
                                   "Work approved")
                return result

            self.engine.transition(task_id, Stage.REVISION_REQUIRED, actor_id, reason=feedback)
            result = self.engine.transition(
                task_id, Stage.IN_PROGRESS, actor_id,
                reason="Revision requested",
                notify_context={"feedback": feedback, "asset_id": asset_id},
            )
            self._log_activity(task_id, actor_id, "revision_requested", "Revision requested")
        return result

    # ── Ratings ───────────────────────────────────────────────────────────

    def submit_rating(self, task_id, from_user_id, to_user_id, score, comment=None,
                      rating_type="task_completion") -> int:
        errors = {}
        if to_user_id is None:
            errors["to_user_id"] = "required"
        elif isinstance(to_user_id, bool) or not isinstance(to_user_id, int):
            errors["to_user_id"] = "must be a user id"
        if not isinstance(rating_type, str) or rating_type not in RATING_TYPES:
            errors["rating_type"] = f"must be one of {sorted(RATING_TYPES)}"
        comment = _text({"comment": comment}, "comment", errors, required=False)
        if errors:
            raise ValidationError("Invalid rating data", details=errors)
        if isinstance(score, bool):
            raise InvalidRating(score)

        with self.gateway.transaction():
            task = self._task(task_id)
            if task.status != Stage.COMPLETED.value:
                raise ValidationError("Only completed tasks can be rated",
                                      details={"status": f"is '{task.status}'"})

            participants = {task.supplier_id, task.assigned_creator_id} - {None}
            if (from_user_id not in participants or to_user_id not in participants
                    or from_user_id == to_user_id):
                raise AuthorizationError(from_user_id, "rate this user",
                                         reason="both users must be the task's participants")

            try:
                value = float(score)
            except (TypeError, ValueError):
                raise InvalidRating(score) from None
            if not 1 <= value <= 5:
                raise InvalidRating(score)

            duplicate = self.gateway.session.execute(
                select(TaskRating.id).where(
                    TaskRating.task_id == task_id,
                    TaskRating.from_user_id == from_user_id,
                    TaskRating.to_user_id == to_user_id,
                    TaskRating.rating_type == rating_type,
                )
            ).first()
            if duplicate:
                raise DuplicateRating(task_id, from_user_id, to_user_id, rating_type)

            try:
                rating_id = self.gateway.insert(TaskRating(
                    task_id=task_id,
                    from_user_id=from_user_id,
                    to_user_id=to_user_id,
                    score=value,
                    comment=comment,
                    rating_type=rating_type,
                ))
            except IntegrityError as exc:
                raise DuplicateRating(task_id, from_user_id, to_user_id, rating_type) from exc

            average = self.gateway.session.execute(
                select(func.avg(TaskRating.score)).where(TaskRating.to_user_id == to_user_id)
            ).scalar()
            new_rating = round(float(average or 0), 2)
            self.gateway.update(User, {"rating": new_rating}, {"id": to_user_id})

            self.audit.log(from_user_id, "task_rating_submitted", "task_ratings", rating_id,
                           new_values={"to_user_id": to_user_id, "score": value,
                                       "aggregate": new_rating})
            self._log_activity(task_id, from_user_id, "rating_submitted",
                               f"Rated user {to_user_id}: {value:g} stars")
        return rating_id
