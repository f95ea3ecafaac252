"""
Audit Recorder — appends compliance rows for workflow mutations.

Writes join the caller's unit of work (flush only); a failing audit write
aborts the surrounding transaction like any other persistence error.
"""

from __future__ import annotations

from sqlalchemy import select

from tourlink.models import db
from tourlink.models.audit import AuditLog, write_audit


class AuditRecorder:
    """Audit adapter injected into WorkflowEngine / TaskFlowService."""

    def log(
        self,
        actor_id: int | None,
        action: str,
        table_name: str,
        record_id,
        old_values: dict | None = None,
        new_values: dict | None = None,
    ) -> AuditLog:
        return write_audit(
            action=action,
            table_name=table_name,
            record_id=record_id,
            actor_user_id=actor_id,
            old_values=old_values,
            new_values=new_values,
        )

    @staticmethod
    def list_for_record(table_name: str, record_id, limit: int = 50) -> list[AuditLog]:
        """Audit rows for one record, oldest first."""
        stmt = (
            select(AuditLog)
            .where(AuditLog.table_name == table_name, AuditLog.record_id == str(record_id))
            .order_by(AuditLog.id)
            .limit(limit)
        )
        return list(db.session.execute(stmt).scalars())
