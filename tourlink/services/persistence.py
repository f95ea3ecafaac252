"""
Persistence Gateway — thin unit-of-work wrapper over the SQLAlchemy session.

Services never call ``db.session.commit()`` themselves; they open a
``transaction()`` on the gateway and let it commit or roll back. The
context manager is re-entrant: a WorkflowEngine.transition() issued inside
a TaskFlowService operation joins the outer unit of work instead of
committing early.

Rules:
  - Any SQLAlchemyError aborts the whole unit and surfaces as PersistenceFailure.
  - Domain errors (ValidationError, InvalidTransition, …) roll back and propagate as-is.
  - On PostgreSQL every unit of work runs under ``SET LOCAL statement_timeout``.

Usage:
    gateway = PersistenceGateway()
    with gateway.transaction():
        task = gateway.get(Task, 42, for_update=True)
        gateway.update(Task, {"views_count": 1}, {"id": 42})
"""

from __future__ import annotations

import logging
from contextlib import contextmanager

from flask import current_app, has_app_context
from sqlalchemy import select, text
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError

from tourlink.core.exceptions import PersistenceFailure
from tourlink.models import db

logger = logging.getLogger(__name__)


class PersistenceGateway:
    """Query / insert / update primitives plus transaction boundaries."""

    def __init__(self, session=None, *, timeout_ms: int | None = None):
        self._session = session
        self._timeout_ms = timeout_ms
        self._depth = 0

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # ── Reads ─────────────────────────────────────────────────────────────

    def get(self, model, pk, *, for_update: bool = False):
        """Load one row by primary key, optionally locking it (SELECT … FOR UPDATE)."""
        stmt = select(model).where(model.id == pk)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalar_one_or_none()

    def query(self, sql: str, params: dict | None = None) -> list[dict]:
        """Run a parameterised SQL statement and return rows as dicts."""
        result = self.session.execute(text(sql), params or {})
        return [dict(row._mapping) for row in result]

    # ── Writes ────────────────────────────────────────────────────────────

    def insert(self, obj):
        """Add an ORM instance and flush; returns its primary key."""
        self.session.add(obj)
        self.session.flush()
        return obj.id

    def update(self, model, changes: dict, where: dict) -> int:
        """UPDATE model SET changes WHERE col = value AND …; returns affected rows."""
        stmt = (
            sa_update(model)
            .where(*[getattr(model, col) == value for col, value in where.items()])
            .values(**changes)
            .execution_options(synchronize_session="fetch")
        )
        return self.session.execute(stmt).rowcount

    # ── Transaction boundaries ────────────────────────────────────────────

    @contextmanager
    def transaction(self):
        """Commit on success, roll back on any error. Nested calls join the outer unit."""
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            self._apply_timeout()
            yield self
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error("Unit of work rolled back: %s", exc.__class__.__name__, exc_info=True)
            raise PersistenceFailure(f"Database error: {exc.__class__.__name__}", original=exc) from exc
        except Exception:
            self.session.rollback()
            raise
        finally:
            self._depth = 0

    @contextmanager
    def savepoint(self):
        """Nested transaction; errors inside roll back to the savepoint only."""
        with self.session.begin_nested():
            yield self

    def _apply_timeout(self) -> None:
        timeout_ms = self._timeout_ms
        if timeout_ms is None and has_app_context():
            timeout_ms = current_app.config.get("WORKFLOW_TX_TIMEOUT_MS")
        if not timeout_ms:
            return
        if self.session.get_bind().dialect.name != "postgresql":
            return
        self.session.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
