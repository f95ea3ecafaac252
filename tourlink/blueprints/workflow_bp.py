"""
Tourlink Marketplace
Task Workflow Blueprint.

Thin HTTP adapter over WorkflowEngine / TaskFlowService. Every route reads
the actor from the X-User-Id / X-User-Role headers, calls one service
operation and maps service exceptions onto the standard error envelope.

Endpoints (/api/v1/workflow):
    GET  /stages                                   stage registry
    POST /tasks                                    create draft task
    GET  /tasks?stage=<stage>                      actor's tasks in a stage
    GET  /tasks/<id>                               full workflow status
    POST /tasks/<id>/publish | /evaluate | /complete | /cancel
    POST /tasks/<id>/transition                    owner stage change (publish, evaluate, cancel)
    GET  /tasks/<id>/progress | /history | /deadline
    POST /tasks/<id>/applications                  apply (creator)
    POST /applications/<id>/review                 accept / reject (supplier)
    POST /tasks/<id>/submissions                   submit work (creator)
    POST /tasks/<id>/submissions/<asset_id>/review approve / request revision
    POST /tasks/<id>/ratings                       rate the other participant
    GET  /dashboard                                role dashboard
    GET  /jobs, POST /jobs/<name>/run              background jobs (admin)
"""

from __future__ import annotations

import logging

from flask import Blueprint, abort, jsonify, request
from werkzeug.exceptions import HTTPException

from tourlink.blueprints import current_actor
from tourlink.core.exceptions import AuthorizationError, ValidationError, WorkflowError
from tourlink.services import stage_registry
from tourlink.services.scheduler_service import SchedulerService, get_registered_jobs
from tourlink.services.task_flow import TaskFlowService
from tourlink.services.workflow_engine import WorkflowEngine
from tourlink.utils.errors import E, api_error, error_from_exception

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow_bp", __name__, url_prefix="/api/v1/workflow")


# ── Error handlers ───────────────────────────────────────────────────────────

@workflow_bp.errorhandler(WorkflowError)
def _handle_workflow_error(error: WorkflowError):
    return error_from_exception(error)


@workflow_bp.errorhandler(HTTPException)
def _handle_http_error(error: HTTPException):
    code = {401: E.UNAUTHENTICATED, 403: E.FORBIDDEN, 404: E.NOT_FOUND}.get(error.code, E.INTERNAL)
    return api_error(code, error.description or error.name, status=error.code)


@workflow_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in workflow_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Helpers ──────────────────────────────────────────────────────────────────

def _services():
    engine = WorkflowEngine()
    return engine, TaskFlowService(engine)


def _actor():
    user_id, role = current_actor()
    if user_id is None:
        abort(401, description="X-User-Id header is required")
    return user_id, role


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object",
                              details={"body": "must be a JSON object"})
    return data


# ═══════════════════════════════════════════════════════════════════════════
#  Registry & tasks
# ═══════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/stages", methods=["GET"])
def list_stages():
    return jsonify(stage_registry.as_dict())


@workflow_bp.route("/tasks", methods=["POST"])
def create_task():
    user_id, _role = _actor()
    engine, flow = _services()
    task_id = flow.create_task(user_id, _body())
    return jsonify(engine.get_workflow_status(task_id)["task"]), 201


@workflow_bp.route("/tasks", methods=["GET"])
def tasks_by_stage():
    user_id, role = _actor()
    stage = request.args.get("stage", "").strip()
    if not stage:
        return api_error(E.VALIDATION_REQUIRED, "stage query parameter is required")
    engine, _flow = _services()
    items = engine.get_tasks_by_stage(user_id, role, stage)
    return jsonify({"items": items, "total": len(items)})


@workflow_bp.route("/tasks/<int:task_id>", methods=["GET"])
def get_task(task_id):
    engine, _flow = _services()
    return jsonify(engine.get_workflow_status(task_id))


@workflow_bp.route("/tasks/<int:task_id>/publish", methods=["POST"])
def publish_task(task_id):
    user_id, _role = _actor()
    _engine, flow = _services()
    return jsonify(flow.publish_task(task_id, user_id).to_dict())


@workflow_bp.route("/tasks/<int:task_id>/evaluate", methods=["POST"])
def evaluate_task(task_id):
    user_id, _role = _actor()
    _engine, flow = _services()
    return jsonify(flow.move_to_evaluation(task_id, user_id).to_dict())


@workflow_bp.route("/tasks/<int:task_id>/cancel", methods=["POST"])
def cancel_task(task_id):
    user_id, _role = _actor()
    _engine, flow = _services()
    return jsonify(flow.cancel_task(task_id, user_id, _body().get("reason")).to_dict())


@workflow_bp.route("/tasks/<int:task_id>/complete", methods=["POST"])
def complete_task(task_id):
    user_id, _role = _actor()
    _engine, flow = _services()
    return jsonify(flow.complete_task(task_id, user_id).to_dict())


@workflow_bp.route("/tasks/<int:task_id>/transition", methods=["POST"])
def transition_task(task_id):
    """Owner-requested stage change: publish, evaluate or cancel."""
    user_id, _role = _actor()
    data = _body()
    stage = data.get("stage")
    if not isinstance(stage, str) or not stage.strip():
        return api_error(E.VALIDATION_REQUIRED, "stage is required")

    _engine, flow = _services()
    result = flow.change_stage(task_id, user_id, stage.strip(), data.get("reason"))
    return jsonify(result.to_dict())


@workflow_bp.route("/tasks/<int:task_id>/progress", methods=["GET"])
def task_progress(task_id):
    engine, _flow = _services()
    return jsonify(engine.get_progress(task_id).to_dict())


@workflow_bp.route("/tasks/<int:task_id>/history", methods=["GET"])
def task_history(task_id):
    engine, _flow = _services()
    items = engine.get_stage_history(task_id)
    return jsonify({"items": items, "total": len(items)})


@workflow_bp.route("/tasks/<int:task_id>/deadline", methods=["GET"])
def task_deadline(task_id):
    engine, _flow = _services()
    return jsonify(engine.check_deadline(task_id).to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  Applications, submissions, ratings
# ═══════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/tasks/<int:task_id>/applications", methods=["POST"])
def submit_application(task_id):
    user_id, _role = _actor()
    data = _body()
    _engine, flow = _services()
    application_id = flow.submit_application(
        task_id, user_id, data.get("proposal"),
        proposed_budget=data.get("proposed_budget"),
        estimated_duration=data.get("estimated_duration"),
        creator_notes=data.get("creator_notes"),
    )
    return jsonify({"id": application_id, "task_id": task_id, "status": "pending"}), 201


@workflow_bp.route("/applications/<int:application_id>/review", methods=["POST"])
def review_application(application_id):
    user_id, _role = _actor()
    data = _body()
    decision = data.get("decision")
    _engine, flow = _services()
    result = flow.review_application(application_id, user_id, decision, data.get("notes"))
    body = {"id": application_id, "status": decision}
    if result is not None:
        body["transition"] = result.to_dict()
    return jsonify(body)


@workflow_bp.route("/tasks/<int:task_id>/submissions", methods=["POST"])
def submit_work(task_id):
    user_id, _role = _actor()
    _engine, flow = _services()
    asset_id = flow.submit_work(task_id, user_id, _body())
    return jsonify({"id": asset_id, "task_id": task_id, "status": "pending_review"}), 201


@workflow_bp.route("/tasks/<int:task_id>/submissions/<int:asset_id>/review", methods=["POST"])
def review_work(task_id, asset_id):
    user_id, _role = _actor()
    data = _body()
    _engine, flow = _services()
    result = flow.review_work(task_id, user_id, asset_id, data.get("decision"), data.get("feedback"))
    return jsonify(result.to_dict())


@workflow_bp.route("/tasks/<int:task_id>/ratings", methods=["POST"])
def submit_rating(task_id):
    user_id, _role = _actor()
    data = _body()
    _engine, flow = _services()
    rating_id = flow.submit_rating(
        task_id, user_id, data.get("to_user_id"), data.get("score"),
        comment=data.get("comment"),
        rating_type=data.get("rating_type") or "task_completion",
    )
    return jsonify({"id": rating_id, "task_id": task_id}), 201


# ═══════════════════════════════════════════════════════════════════════════
#  Dashboard & jobs
# ═══════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/dashboard", methods=["GET"])
def dashboard():
    user_id, role = _actor()
    engine, _flow = _services()
    return jsonify(engine.get_dashboard(user_id, role).to_dict())


@workflow_bp.route("/jobs", methods=["GET"])
def list_jobs():
    return jsonify({"items": SchedulerService.list_jobs()})


@workflow_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    user_id, role = _actor()
    if role != "admin":
        raise AuthorizationError(user_id, f"run job {job_name}", reason="admin only")
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    run = SchedulerService.run_job(job_name)
    status = 200 if run["status"] == "success" else 500
    return jsonify(run), status
