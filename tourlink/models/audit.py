"""
Tourlink Marketplace
Audit domain model.

Models:
    - AuditLog: immutable, append-only compliance trail for state mutations.
"""

import json
from datetime import UTC, datetime

from flask import has_request_context, request

from tourlink.models import db


def _load_json(raw):
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


class AuditLog(db.Model):
    """One row per workflow mutation, never updated. JSON snapshots of the changed fields."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_record", "table_name", "record_id"),
        db.Index("idx_audit_actor", "actor_user_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="NULL for system-initiated changes",
    )

    # What happened
    action = db.Column(db.String(60), nullable=False, comment="task_stage_changed | task_created | …")
    table_name = db.Column(db.String(50), nullable=False)
    record_id = db.Column(db.String(36), nullable=False, comment="PK of the affected row as string")

    # Change payload
    old_values = db.Column(db.Text, nullable=True)
    new_values = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_user_id": self.actor_user_id,
            "action": self.action,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "old_values": _load_json(self.old_values),
            "new_values": _load_json(self.new_values),
            "ip_address": self.ip_address,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.table_name}/{self.record_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    action: str,
    table_name: str,
    record_id,
    actor_user_id: int | None = None,
    old_values: dict | None = None,
    new_values: dict | None = None,
) -> AuditLog:
    """Flush one audit row into the current transaction; the caller commits."""
    ip_address = user_agent = None
    if has_request_context():
        ip_address = request.remote_addr
        user_agent = (request.user_agent.string or "")[:500] or None

    log = AuditLog(
        actor_user_id=actor_user_id,
        action=action,
        table_name=table_name,
        record_id=str(record_id),
        old_values=json.dumps(old_values, default=str) if old_values is not None else None,
        new_values=json.dumps(new_values, default=str) if new_values is not None else None,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.session.add(log)
    db.session.flush()
    return log
