"""
Tourlink Marketplace
Notification Blueprint.

In-app notifications for the requesting user (X-User-Id header).

Endpoints (/api/v1/notifications):
    GET  /                   list (?unread_only=true, limit, offset)
    GET  /unread-count       unread badge counter
    POST /<id>/read          mark one read
    POST /read-all           mark all read
    DELETE /<id>             delete one
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from tourlink.blueprints import current_actor, paginate_args
from tourlink.core.exceptions import WorkflowError
from tourlink.services.notification import NotificationDispatcher
from tourlink.utils.errors import E, api_error, error_from_exception

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1/notifications")


@notification_bp.errorhandler(WorkflowError)
def _handle_workflow_error(error: WorkflowError):
    return error_from_exception(error)


def _require_user():
    user_id, _role = current_actor()
    return user_id


@notification_bp.route("", methods=["GET"])
def list_notifications():
    user_id = _require_user()
    if user_id is None:
        return api_error(E.UNAUTHENTICATED, "X-User-Id header is required")

    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit, offset = paginate_args()
    items, total = NotificationDispatcher().list_for_user(
        user_id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@notification_bp.route("/unread-count", methods=["GET"])
def unread_count():
    user_id = _require_user()
    if user_id is None:
        return api_error(E.UNAUTHENTICATED, "X-User-Id header is required")
    return jsonify({"unread_count": NotificationDispatcher().unread_count(user_id)})


@notification_bp.route("/<int:nid>/read", methods=["POST"])
def mark_read(nid):
    user_id = _require_user()
    if user_id is None:
        return api_error(E.UNAUTHENTICATED, "X-User-Id header is required")
    notif = NotificationDispatcher().mark_read(nid, user_id)
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/read-all", methods=["POST"])
def mark_all_read():
    user_id = _require_user()
    if user_id is None:
        return api_error(E.UNAUTHENTICATED, "X-User-Id header is required")
    count = NotificationDispatcher().mark_all_read(user_id)
    return jsonify({"marked_read": count})


@notification_bp.route("/<int:nid>", methods=["DELETE"])
def delete_notification(nid):
    user_id = _require_user()
    if user_id is None:
        return api_error(E.UNAUTHENTICATED, "X-User-Id header is required")
    if not NotificationDispatcher().delete(nid, user_id):
        return api_error(E.NOT_FOUND, "Notification not found")
    return "", 204
