"""
Workflow engine tests.

Covers:
    1. Transition legality over every (from, to) pair; rejected moves write nothing
    2. Atomicity: a storage failure rolls back status, history and audit together
    3. Optimistic locking (ConcurrentModification)
    4. Best-effort notifications and role-scoped fan-out
    5. Progress rows and high-water mark (revision loop)
    6. Read side: deadline, dashboard, tasks by stage, workflow status
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.exc import OperationalError

from tourlink.core.exceptions import (
    ConcurrentModification,
    InvalidTransition,
    NotFoundError,
    PersistenceFailure,
)
from tourlink.models import db
from tourlink.models.audit import AuditLog
from tourlink.models.notification import Notification
from tourlink.models.task import StageHistory, Task, TaskStageProgress
from tourlink.services.audit import AuditRecorder
from tourlink.services.persistence import PersistenceGateway
from tourlink.services.stage_registry import Stage, can_transition
from tourlink.services.task_flow import TaskFlowService
from tourlink.services.workflow_engine import WorkflowEngine

FIXED_NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _task_at(owner, status="draft", **fields):
    """Create a Task directly at ``status`` (bypasses the workflow)."""
    task = Task(
        supplier_id=owner.id,
        title=fields.pop("title", "Istrian truffle market"),
        description="Photo story of the autumn truffle market.",
        status=status,
        version=1,
        **fields,
    )
    db.session.add(task)
    db.session.commit()
    return task.id


def _history_count(task_id):
    return db.session.execute(
        select(func.count(StageHistory.id)).where(StageHistory.task_id == task_id)
    ).scalar_one()


def _notifications_for(user_id):
    return db.session.execute(
        select(Notification).where(Notification.user_id == user_id).order_by(Notification.id)
    ).scalars().all()


class _BrokenNotifier:
    def notify(self, *args, **kwargs):
        raise RuntimeError("notification backend down")


class _FailingHistoryGateway(PersistenceGateway):
    def insert(self, obj):
        if isinstance(obj, StageHistory):
            raise OperationalError("INSERT INTO task_stage_history", {}, Exception("disk I/O error"))
        return super().insert(obj)


class _RacingGateway(PersistenceGateway):
    """Simulates another writer bumping the version right after our read."""

    def get(self, model, pk, *, for_update=False):
        obj = super().get(model, pk, for_update=for_update)
        if model is Task and for_update:
            self.session.execute(
                text("UPDATE tasks SET version = version + 1 WHERE id = :id"), {"id": pk},
            )
        return obj


# ═════════════════════════════════════════════════════════════════════════════
#  1. Transition legality
# ═════════════════════════════════════════════════════════════════════════════


class TestTransitionLegality:
    @pytest.mark.parametrize("from_stage", [s.value for s in Stage])
    @pytest.mark.parametrize("to_stage", [s.value for s in Stage])
    def test_engine_follows_registry(self, supplier, from_stage, to_stage):
        task_id = _task_at(supplier, from_stage)
        engine = WorkflowEngine()

        if can_transition(from_stage, to_stage):
            result = engine.transition(task_id, to_stage, supplier.id, reason="test")
            task = db.session.get(Task, task_id)
            assert result.old_stage == from_stage
            assert result.new_stage == to_stage
            assert task.status == to_stage
            assert task.version == 2
            assert _history_count(task_id) == 1
        else:
            with pytest.raises(InvalidTransition):
                engine.transition(task_id, to_stage, supplier.id)
            task = db.session.get(Task, task_id)
            assert task.status == from_stage
            assert task.version == 1
            assert _history_count(task_id) == 0
            assert db.session.execute(
                select(func.count(AuditLog.id)).where(AuditLog.action == "task_stage_changed")
            ).scalar_one() == 0
            assert db.session.execute(select(func.count(Notification.id))).scalar_one() == 0

    @pytest.mark.parametrize("from_stage, to_stage", [
        ("in_progress", "cancelled"),
        ("evaluating", "cancelled"),
        ("revision_required", "in_progress"),
    ])
    def test_assignee_only_kept_in_assigned_statuses(self, supplier, creator, from_stage, to_stage):
        task_id = _task_at(supplier, from_stage, assigned_creator_id=creator.id)

        WorkflowEngine().transition(task_id, to_stage, supplier.id)

        task = db.session.get(Task, task_id)
        if to_stage == "cancelled":
            assert task.assigned_creator_id is None
            audit = db.session.execute(
                select(AuditLog).where(AuditLog.action == "task_stage_changed")
            ).scalar_one()
            assert audit.to_dict()["old_values"]["assigned_creator_id"] == creator.id
            assert audit.to_dict()["new_values"]["assigned_creator_id"] is None
        else:
            assert task.assigned_creator_id == creator.id

    def test_unknown_target_is_invalid(self, supplier):
        task_id = _task_at(supplier, "draft")
        with pytest.raises(InvalidTransition) as exc_info:
            WorkflowEngine().transition(task_id, "archived", supplier.id)
        assert exc_info.value.current_stage == "draft"

    def test_missing_task(self, supplier):
        with pytest.raises(NotFoundError):
            WorkflowEngine().transition(4242, "published", supplier.id)

    def test_history_and_audit_written_together(self, supplier):
        task_id = _task_at(supplier, "draft")
        result = WorkflowEngine().transition(task_id, "published", supplier.id, reason="go live")

        history = WorkflowEngine().get_stage_history(task_id)
        assert len(history) == 1
        assert history[0]["from_stage"] == "draft"
        assert history[0]["to_stage"] == "published"
        assert history[0]["changed_by"] == supplier.id
        assert history[0]["reason"] == "go live"
        assert history[0]["id"] == result.history_id

        entries = [a for a in AuditRecorder.list_for_record("tasks", task_id)
                   if a.action == "task_stage_changed"]
        assert len(entries) == 1
        data = entries[0].to_dict()
        assert data["old_values"] == {"status": "draft"}
        assert data["new_values"] == {"status": "published"}
        assert data["actor_user_id"] == supplier.id

    def test_completed_sets_completed_at(self, supplier):
        task_id = _task_at(supplier, "publishing")
        WorkflowEngine().transition(task_id, "completed", supplier.id)
        assert db.session.get(Task, task_id).completed_at is not None


# ═════════════════════════════════════════════════════════════════════════════
#  2-3. Atomicity and concurrency
# ═════════════════════════════════════════════════════════════════════════════


class TestAtomicity:
    def test_storage_failure_rolls_back_everything(self, supplier):
        task_id = _task_at(supplier, "draft")
        engine = WorkflowEngine(gateway=_FailingHistoryGateway())

        with pytest.raises(PersistenceFailure) as exc_info:
            engine.transition(task_id, "published", supplier.id)
        assert exc_info.value.retryable is True

        task = db.session.get(Task, task_id)
        assert task.status == "draft"
        assert task.version == 1
        assert _history_count(task_id) == 0
        audit_rows = db.session.execute(
            select(func.count(AuditLog.id)).where(AuditLog.action == "task_stage_changed")
        ).scalar_one()
        assert audit_rows == 0

    def test_concurrent_writer_wins(self, supplier):
        task_id = _task_at(supplier, "draft")
        engine = WorkflowEngine(gateway=_RacingGateway())

        with pytest.raises(ConcurrentModification):
            engine.transition(task_id, "published", supplier.id)

        task = db.session.get(Task, task_id)
        assert task.status == "draft"
        assert task.version == 1
        assert _history_count(task_id) == 0

    def test_version_increments_per_transition(self, supplier):
        task_id = _task_at(supplier, "draft")
        engine = WorkflowEngine()
        engine.transition(task_id, "published", supplier.id)
        engine.transition(task_id, "collecting", supplier.id)
        assert db.session.get(Task, task_id).version == 3


# ═════════════════════════════════════════════════════════════════════════════
#  4. Notifications
# ═════════════════════════════════════════════════════════════════════════════


class TestNotifications:
    def test_failing_notifier_does_not_block_transition(self, supplier, creator):
        task_id = _task_at(supplier, "published", content_types=["video"])
        engine = WorkflowEngine(notifier=_BrokenNotifier())

        result = engine.transition(task_id, "collecting", supplier.id)

        assert result.new_stage == "collecting"
        assert db.session.get(Task, task_id).status == "collecting"
        assert _history_count(task_id) == 1
        assert _notifications_for(creator.id) == []

    def test_collecting_notifies_matching_creators(self, make_user, supplier):
        video = make_user("creator", content_types=["video"])
        photo = make_user("creator", content_types=["photo"])
        anything = make_user("creator", content_types=[])
        inactive = make_user("creator", content_types=["video"], is_active=False)
        task_id = _task_at(supplier, "published", content_types=["video"])

        WorkflowEngine().transition(task_id, "collecting", supplier.id)

        assert [n.type for n in _notifications_for(video.id)] == ["new_task_available"]
        assert [n.type for n in _notifications_for(anything.id)] == ["new_task_available"]
        assert _notifications_for(photo.id) == []
        assert _notifications_for(inactive.id) == []

    def test_creator_fanout_limit_prefers_highest_rated(self, app, monkeypatch, make_user, supplier):
        monkeypatch.setitem(app.config, "WORKFLOW_CREATOR_FANOUT_LIMIT", 1)
        low = make_user("creator", rating=3.1)
        high = make_user("creator", rating=4.9)
        task_id = _task_at(supplier, "published")

        WorkflowEngine().transition(task_id, "collecting", supplier.id)

        assert len(_notifications_for(high.id)) == 1
        assert _notifications_for(low.id) == []

    def test_publishing_notifies_media(self, supplier, media_user):
        task_id = _task_at(supplier, "reviewing")
        WorkflowEngine().transition(task_id, "publishing", supplier.id)
        notes = _notifications_for(media_user.id)
        assert [n.type for n in notes] == ["content_ready_to_publish"]
        assert notes[0].data["task_id"] == task_id

    def test_completion_notifies_both_participants(self, supplier, creator):
        task_id = _task_at(supplier, "publishing", assigned_creator_id=creator.id)
        WorkflowEngine().transition(task_id, "completed", supplier.id)
        assert [n.type for n in _notifications_for(supplier.id)] == ["task_completed"]
        assert [n.type for n in _notifications_for(creator.id)] == ["task_completed"]

    def test_assignment_is_recorded_in_audit(self, supplier, creator):
        task_id = _task_at(supplier, "collecting")
        WorkflowEngine().transition(task_id, "in_progress", supplier.id,
                                    assign_creator_id=creator.id)

        assert db.session.get(Task, task_id).assigned_creator_id == creator.id
        entry = [a for a in AuditRecorder.list_for_record("tasks", task_id)
                 if a.action == "task_stage_changed"][-1].to_dict()
        assert entry["new_values"]["assigned_creator_id"] == creator.id
        assert entry["old_values"]["assigned_creator_id"] is None
        assert [n.type for n in _notifications_for(creator.id)] == ["proposal_selected"]


# ═════════════════════════════════════════════════════════════════════════════
#  5. Progress
# ═════════════════════════════════════════════════════════════════════════════


class TestProgress:
    def test_create_task_seeds_progress_rows(self, supplier, make_task):
        task_id = make_task(supplier)
        rows = db.session.execute(
            select(TaskStageProgress).where(TaskStageProgress.task_id == task_id)
        ).scalars().all()
        assert {r.stage_name for r in rows} == {s.value for s in Stage}
        draft = next(r for r in rows if r.stage_name == "draft")
        assert draft.stage_started_at is not None
        assert draft.progress_percentage == 11.1

    def test_revision_loop_keeps_high_water_mark(self, supplier, creator, make_task, drive):
        task_id = make_task(supplier)
        ids = drive(task_id, "reviewing", supplier, creator)

        TaskFlowService().review_work(task_id, supplier.id, ids["asset_id"], "revision_required",
                                      feedback="Shorter intro please")

        progress = WorkflowEngine().get_progress(task_id)
        assert progress.current_stage == "in_progress"
        assert progress.progress_percentage == 55.6
        assert progress.high_water_mark == 66.7
        assert progress.next_stages == ["reviewing", "cancelled"]
        assert [h["to_stage"] for h in progress.history][-2:] == ["revision_required", "in_progress"]

    def test_progress_for_missing_task(self):
        with pytest.raises(NotFoundError):
            WorkflowEngine().get_progress(999)

    def test_estimated_completion_without_deadline(self, supplier):
        task_id = _task_at(supplier, "published")
        engine = WorkflowEngine(clock=lambda: FIXED_NOW)
        progress = engine.get_progress(task_id)
        assert progress.estimated_completion == FIXED_NOW + timedelta(days=7)


# ═════════════════════════════════════════════════════════════════════════════
#  6. Read side
# ═════════════════════════════════════════════════════════════════════════════


class TestDeadline:
    def _task_with_deadline(self, supplier, deadline):
        flow = TaskFlowService(WorkflowEngine(clock=lambda: FIXED_NOW))
        return flow.create_task(supplier.id, {
            "title": "Dubrovnik walls at dusk",
            "description": "Ten edited photos.",
            "deadline": deadline.isoformat(),
        })

    def test_days_remaining(self, supplier):
        task_id = self._task_with_deadline(supplier, FIXED_NOW + timedelta(days=2, hours=3))
        status = WorkflowEngine(clock=lambda: FIXED_NOW).check_deadline(task_id)
        assert status.is_overdue is False
        assert status.days_remaining == 2

    def test_overdue_is_negative(self, supplier):
        task_id = self._task_with_deadline(supplier, FIXED_NOW + timedelta(days=2, hours=3))
        status = WorkflowEngine(clock=lambda: FIXED_NOW + timedelta(days=5)).check_deadline(task_id)
        assert status.is_overdue is True
        assert status.days_remaining == -2

    def test_no_deadline(self, supplier):
        task_id = _task_at(supplier, "draft")
        status = WorkflowEngine().check_deadline(task_id)
        assert status.is_overdue is False
        assert status.days_remaining is None
        assert status.to_dict()["deadline"] is None

    def test_missing_task(self):
        with pytest.raises(NotFoundError):
            WorkflowEngine().check_deadline(31337)


class TestDashboard:
    def test_supplier_dashboard(self, supplier, creator, make_task, drive):
        make_task(supplier, title="Draft only")
        reviewing = make_task(supplier, title="In review")
        drive(reviewing, "reviewing", supplier, creator)

        view = WorkflowEngine().get_dashboard(supplier.id, "supplier")

        assert view.total_tasks == 2
        assert view.active_tasks == 1
        assert view.completed_tasks == 0
        assert view.pending_actions == 1
        assert view.stage_breakdown == {"draft": 1, "reviewing": 1}
        assert view.recent_activities
        assert all(a["user_id"] == supplier.id for a in view.recent_activities)

    def test_creator_dashboard(self, supplier, creator, make_user, make_task, drive):
        other = make_user("creator")
        working = make_task(supplier, title="Assigned")
        drive(working, "in_progress", supplier, creator)
        pending = make_task(supplier, title="Still open")
        drive(pending, "collecting", supplier, other)
        TaskFlowService().submit_application(pending, creator.id, "Happy to help")

        view = WorkflowEngine().get_dashboard(creator.id, "creator")

        assert view.total_tasks == 2
        assert view.active_tasks == 1
        assert view.pending_actions == 1
        assert view.stage_breakdown == {"in_progress": 1, "collecting": 1}

    def test_media_dashboard(self, supplier, creator, media_user, make_task, drive):
        task_id = make_task(supplier)
        drive(task_id, "publishing", supplier, creator)
        view = WorkflowEngine().get_dashboard(media_user.id, "media")
        assert view.total_tasks == 1
        assert view.active_tasks == 1
        assert view.stage_breakdown == {"publishing": 1}

    def test_admin_dashboard_is_empty(self, admin):
        view = WorkflowEngine().get_dashboard(admin.id, "admin")
        assert view.total_tasks == 0
        assert view.stage_breakdown == {}


class TestListings:
    def test_tasks_by_stage_is_role_scoped(self, make_user, supplier, creator, media_user,
                                           make_task, drive):
        other_supplier = make_user("supplier")
        mine = make_task(supplier)
        drive(mine, "collecting", supplier, creator)
        theirs = make_task(other_supplier)
        drive(theirs, "published", other_supplier)

        engine = WorkflowEngine()
        assert [t["id"] for t in engine.get_tasks_by_stage(supplier.id, "supplier", "collecting")] == [mine]
        assert engine.get_tasks_by_stage(supplier.id, "supplier", "published") == []
        assert [t["id"] for t in engine.get_tasks_by_stage(creator.id, "creator", "collecting")] == [mine]
        assert engine.get_tasks_by_stage(media_user.id, "media", "collecting") == []
        assert engine.get_tasks_by_stage(supplier.id, "supplier", "bogus") == []

        row = engine.get_tasks_by_stage(supplier.id, "supplier", "collecting")[0]
        assert row["progress_percentage"] == 33.3

    def test_workflow_status(self, supplier, creator, make_task, drive):
        task_id = make_task(supplier)
        drive(task_id, "reviewing", supplier, creator)

        status = WorkflowEngine().get_workflow_status(task_id)

        assert status["task"]["status"] == "reviewing"
        assert status["progress_percentage"] == 66.7
        assert len(status["stages"]) == 10
        assert [a["status"] for a in status["applications"]] == ["accepted"]
        assert [a["status"] for a in status["assets"]] == ["pending_review"]
        assert status["activities"][0]["activity_type"] == "work_submitted"
        assert status["ratings"] == []
