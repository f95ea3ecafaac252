"""
Tourlink Marketplace
User domain model.

Models:
    - User: marketplace participant (supplier / creator / media / admin)

Profile management lives outside the workflow core; this table carries only
what the workflow reads (role, active flag) and maintains (task counters,
aggregate rating).
"""

from datetime import datetime, timezone

from tourlink.models import db


# ── Constants ────────────────────────────────────────────────────────────────

USER_ROLES = {"supplier", "creator", "media", "admin"}


class User(db.Model):
    """A marketplace account."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(50), unique=True, nullable=False)
    email = db.Column(db.String(200), unique=True, nullable=False)
    role = db.Column(db.String(20), nullable=False, index=True,
                     comment="supplier | creator | media | admin")
    full_name = db.Column(db.String(200))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    content_types = db.Column(db.JSON, default=list,
                              comment="Content types a creator produces; empty = any")

    # Statistics maintained by the workflow
    rating = db.Column(db.Numeric(3, 2, asdecimal=False), default=0, nullable=False,
                       comment="Mean of all ratings received")
    total_tasks = db.Column(db.Integer, default=0, nullable=False)
    completed_tasks = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "full_name": self.full_name,
            "is_active": self.is_active,
            "content_types": self.content_types or [],
            "rating": float(self.rating or 0),
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.username} ({self.role})>"
