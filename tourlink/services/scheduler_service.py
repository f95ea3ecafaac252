"""
Tourlink Marketplace
On-demand runner for workflow maintenance jobs.

Jobs (review auto-approval, deadline reminders) never fire by themselves:
an operator, the ``flask run-job`` command or an external cron triggers
them. The outcome of the latest run of each job is kept in memory.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

from flask import Flask, current_app, has_app_context

logger = logging.getLogger(__name__)

JobFn = Callable[[Flask], Any]

_jobs: dict[str, JobFn] = {}


def register_job(name: str):
    """Register ``fn(app)`` under ``name``; the function is returned unchanged."""
    def decorator(fn: JobFn) -> JobFn:
        _jobs[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, JobFn]:
    return dict(_jobs)


@dataclass
class JobRun:
    job_name: str
    status: str
    duration_ms: int = 0
    result: Any = None
    error: str | None = None


def _summary(fn: JobFn) -> str:
    doc = (fn.__doc__ or "").strip()
    return doc.splitlines()[0] if doc else ""


class SchedulerService:
    _app: Flask | None = None
    _last_runs: dict[str, dict] = {}

    @classmethod
    def init_app(cls, app: Flask) -> None:
        from tourlink.services import scheduled_jobs  # noqa: F401  (fills the registry)

        cls._app = app
        cls._last_runs = {}
        app.extensions["scheduler"] = cls
        logger.info("%d background jobs available: %s", len(_jobs), ", ".join(sorted(_jobs)))

    @classmethod
    def _invoke(cls, fn: JobFn):
        # reuse the caller's context so the job sees the same session
        if has_app_context() and current_app._get_current_object() is cls._app:
            return fn(cls._app)
        with cls._app.app_context():
            return fn(cls._app)

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """Run one job and return its JobRun as a dict."""
        fn = _jobs.get(job_name)
        if fn is None:
            return asdict(JobRun(job_name, "error", error=f"Unknown job: {job_name}"))
        if cls._app is None:
            return asdict(JobRun(job_name, "error", error="Scheduler not initialized"))

        started = time.monotonic()
        run = JobRun(job_name, "success")
        try:
            run.result = cls._invoke(fn)
        except Exception as exc:
            run.status = "failed"
            run.error = str(exc)
            logger.exception("Job %s failed", job_name)
        run.duration_ms = int((time.monotonic() - started) * 1000)

        cls._last_runs[job_name] = asdict(run)
        logger.info("Job %s finished with %s in %dms", job_name, run.status, run.duration_ms)
        return cls._last_runs[job_name]

    @classmethod
    def list_jobs(cls) -> list[dict]:
        return [
            {"job_name": name, "description": _summary(fn), "last_run": cls._last_runs.get(name)}
            for name, fn in sorted(_jobs.items())
        ]
