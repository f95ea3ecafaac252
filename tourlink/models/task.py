"""
Tourlink Marketplace
Task workflow domain models.

Models:
    - Task: a unit of commissioned content-creation work
    - StageHistory: append-only log of stage transitions
    - TaskStageProgress: per-stage progress rows for dashboard queries
    - TaskApplication: a creator's bid on a task
    - MediaAsset: work submitted by the assigned creator
    - TaskActivity: user-facing activity trail
    - TaskRating: post-completion feedback between the two participants

Architecture chain: Supplier → Task → Application / Asset / Rating
Task.status is written only by WorkflowEngine.
"""

from datetime import datetime, timezone

from tourlink.models import db


# ── Constants ────────────────────────────────────────────────────────────────

APPLICATION_STATUSES = {"pending", "accepted", "rejected"}
ASSET_STATUSES = {"pending_review", "approved", "revision_required"}
BUDGET_TYPES = {"fixed", "hourly", "negotiable"}
RATING_TYPES = {"task_completion"}

# Statuses in which a task may carry an assigned creator
ASSIGNED_STATUSES = {"in_progress", "reviewing", "revision_required", "publishing", "completed"}


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
#  TASK
# ═══════════════════════════════════════════════════════════════════════════

class Task(db.Model):
    """
    Commissioned work owned by one supplier.

    ``status`` is the single source of truth for workflow state and
    ``version`` is bumped on every transition for optimistic locking.
    """

    __tablename__ = "tasks"
    __table_args__ = (
        db.Index("idx_tasks_supplier_status", "supplier_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    supplier_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    assigned_creator_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    requirements = db.Column(db.Text)

    budget_min = db.Column(db.Numeric(10, 2, asdecimal=False))
    budget_max = db.Column(db.Numeric(10, 2, asdecimal=False))
    budget_type = db.Column(db.String(20), default="fixed")

    deadline = db.Column(db.DateTime(timezone=True), nullable=True)
    tags = db.Column(db.JSON, default=list)
    content_types = db.Column(db.JSON, default=list)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    views_count = db.Column(db.Integer, default=0, nullable=False)
    applications_count = db.Column(db.Integer, default=0, nullable=False)
    shares_count = db.Column(db.Integer, default=0, nullable=False)

    status = db.Column(db.String(30), default="draft", nullable=False, index=True)
    version = db.Column(db.Integer, default=1, nullable=False)

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    applications = db.relationship(
        "TaskApplication", backref="task", lazy="dynamic", order_by="TaskApplication.id",
    )
    stage_history = db.relationship(
        "StageHistory", backref="task", lazy="dynamic", order_by="StageHistory.id",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "supplier_id": self.supplier_id,
            "assigned_creator_id": self.assigned_creator_id,
            "title": self.title,
            "description": self.description,
            "requirements": self.requirements,
            "budget_min": self.budget_min,
            "budget_max": self.budget_max,
            "budget_type": self.budget_type,
            "deadline": _iso(self.deadline),
            "tags": self.tags or [],
            "content_types": self.content_types or [],
            "latitude": self.latitude,
            "longitude": self.longitude,
            "views_count": self.views_count,
            "applications_count": self.applications_count,
            "shares_count": self.shares_count,
            "status": self.status,
            "version": self.version,
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Task {self.id}: {self.title[:40]} [{self.status}]>"


# ═══════════════════════════════════════════════════════════════════════════
#  STAGE HISTORY & PROGRESS
# ═══════════════════════════════════════════════════════════════════════════

class StageHistory(db.Model):
    """One row per successful transition. Never updated or deleted."""

    __tablename__ = "task_stage_history"
    __table_args__ = (
        db.Index("idx_stage_history_task", "task_id", "changed_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    from_stage = db.Column(db.String(30), nullable=False)
    to_stage = db.Column(db.String(30), nullable=False)
    changed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reason = db.Column(db.Text)
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "changed_by": self.changed_by,
            "reason": self.reason,
            "changed_at": _iso(self.changed_at),
        }

    def __repr__(self):
        return f"<StageHistory task={self.task_id}: {self.from_stage}→{self.to_stage}>"


class TaskStageProgress(db.Model):
    """
    Denormalised per-stage progress for dashboards.

    Seeded with one row per registry stage when the task is created.
    ``progress_percentage`` holds the task's high-water mark at the time the
    stage was entered.
    """

    __tablename__ = "task_stages"
    __table_args__ = (
        db.UniqueConstraint("task_id", "stage_name", name="uq_task_stage"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    stage_name = db.Column(db.String(30), nullable=False)
    stage_order = db.Column(db.Integer, nullable=False)
    progress_percentage = db.Column(db.Float, default=0.0, nullable=False)
    stage_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stage_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "stage_name": self.stage_name,
            "stage_order": self.stage_order,
            "progress_percentage": self.progress_percentage,
            "stage_started_at": _iso(self.stage_started_at),
            "stage_completed_at": _iso(self.stage_completed_at),
        }

    def __repr__(self):
        return f"<TaskStageProgress task={self.task_id} {self.stage_name} {self.progress_percentage}%>"


# ═══════════════════════════════════════════════════════════════════════════
#  APPLICATIONS & SUBMITTED WORK
# ═══════════════════════════════════════════════════════════════════════════

class TaskApplication(db.Model):
    """A creator's proposal for a task. At most one per (task, creator)."""

    __tablename__ = "task_applications"
    __table_args__ = (
        db.UniqueConstraint("task_id", "creator_id", name="uq_application_task_creator"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    creator_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    proposal = db.Column(db.Text, nullable=False)
    proposed_budget = db.Column(db.Numeric(10, 2, asdecimal=False))
    estimated_duration = db.Column(db.String(50))
    status = db.Column(db.String(20), default="pending", nullable=False,
                       comment="pending | accepted | rejected")
    supplier_notes = db.Column(db.Text)
    creator_notes = db.Column(db.Text)
    supplier_rating = db.Column(db.Integer)
    creator_rating = db.Column(db.Integer)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "creator_id": self.creator_id,
            "proposal": self.proposal,
            "proposed_budget": self.proposed_budget,
            "estimated_duration": self.estimated_duration,
            "status": self.status,
            "supplier_notes": self.supplier_notes,
            "creator_notes": self.creator_notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<TaskApplication {self.id}: task={self.task_id} creator={self.creator_id} [{self.status}]>"


class MediaAsset(db.Model):
    """Work submitted for supplier review."""

    __tablename__ = "media_assets"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    creator_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    asset_type = db.Column(db.String(50), nullable=False)
    file_url = db.Column(db.String(500), nullable=False)
    thumbnail_url = db.Column(db.String(500), default="")
    file_size = db.Column(db.Integer, default=0)
    tags = db.Column(db.JSON, default=list)
    status = db.Column(db.String(30), default="pending_review", nullable=False,
                       comment="pending_review | approved | revision_required")
    approval_notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "creator_id": self.creator_id,
            "title": self.title,
            "description": self.description,
            "asset_type": self.asset_type,
            "file_url": self.file_url,
            "thumbnail_url": self.thumbnail_url,
            "file_size": self.file_size,
            "tags": self.tags or [],
            "status": self.status,
            "approval_notes": self.approval_notes,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<MediaAsset {self.id}: task={self.task_id} [{self.status}]>"


# ═══════════════════════════════════════════════════════════════════════════
#  ACTIVITY & RATINGS
# ═══════════════════════════════════════════════════════════════════════════

class TaskActivity(db.Model):
    """User-facing trail entry (distinct from the compliance AuditLog)."""

    __tablename__ = "task_activities"
    __table_args__ = (
        db.Index("idx_task_activities_user", "user_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    activity_type = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "user_id": self.user_id,
            "activity_type": self.activity_type,
            "description": self.description,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<TaskActivity {self.id}: {self.activity_type}>"


class TaskRating(db.Model):
    """Score one participant gives the other after completion."""

    __tablename__ = "task_ratings"
    __table_args__ = (
        db.UniqueConstraint("task_id", "from_user_id", "to_user_id", "rating_type",
                            name="uq_rating_task_from_to_type"),
        db.CheckConstraint("score >= 1 AND score <= 5", name="ck_rating_score_range"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    from_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    to_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    score = db.Column(db.Numeric(2, 1, asdecimal=False), nullable=False)
    comment = db.Column(db.Text)
    rating_type = db.Column(db.String(50), default="task_completion", nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "score": self.score,
            "comment": self.comment,
            "rating_type": self.rating_type,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<TaskRating {self.id}: {self.from_user_id}→{self.to_user_id} {self.score}>"
