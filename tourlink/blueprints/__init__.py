"""
Tourlink Marketplace
Blueprint registry and shared request helpers.
"""

from flask import g, request

from tourlink.models.user import USER_ROLES


def paginate_args(default_limit=50, max_limit=200):
    """Read limit/offset query params.

    Query params:
        limit  — max items (default 50, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (limit, offset)
    """
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return limit, offset


def current_actor():
    """
    Actor of the current request from the X-User-Id / X-User-Role headers.

    Authentication is handled upstream (gateway / session service); this
    layer only trusts the identity it is handed. Returns (user_id, role),
    with user_id None when the header is missing or malformed.
    """
    try:
        user_id = int(request.headers.get("X-User-Id", ""))
    except ValueError:
        user_id = None
    role = request.headers.get("X-User-Role", "").strip().lower() or None
    if role not in USER_ROLES:
        role = None
    g.user_id, g.user_role = user_id, role
    return user_id, role
