"""
Shared pytest fixtures for the Tourlink workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / supplier / creator / media_user / admin: User rows
    - flow: TaskFlowService on the default gateway
    - make_task / drive: task factories that walk the real workflow
    - headers: X-User-Id / X-User-Role request headers
"""

import pytest

from tourlink import create_app
from tourlink.models import db as _db
from tourlink.models.user import User
from tourlink.services.task_flow import TaskFlowService


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Users ────────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    """Factory: make_user("creator", content_types=["video"]) -> User."""
    counter = {"n": 0}

    def _make(role, **kwargs):
        counter["n"] += 1
        name = kwargs.pop("username", f"{role}{counter['n']}")
        user = User(
            username=name,
            email=kwargs.pop("email", f"{name}@example.com"),
            role=role,
            full_name=kwargs.pop("full_name", name.title()),
            **kwargs,
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def supplier(make_user):
    return make_user("supplier", username="alpine_tours")


@pytest.fixture()
def creator(make_user):
    return make_user("creator", username="lena_films", content_types=["video"])


@pytest.fixture()
def media_user(make_user):
    return make_user("media", username="travel_weekly")


@pytest.fixture()
def admin(make_user):
    return make_user("admin", username="ops")


def _headers(user, role=None):
    return {"X-User-Id": str(user.id), "X-User-Role": role or user.role}


@pytest.fixture()
def headers():
    """headers(user) -> request headers identifying ``user``."""
    return _headers


# ── Workflow factories ───────────────────────────────────────────────────


@pytest.fixture()
def flow():
    return TaskFlowService()


def task_payload(**overrides):
    data = {
        "title": "Sunrise hike over Lake Bled",
        "description": "Two-minute vertical video of the sunrise route.",
        "budget_min": 300,
        "budget_max": 500,
        "budget_type": "fixed",
        "content_types": ["video"],
        "tags": ["slovenia", "hiking"],
    }
    data.update(overrides)
    return data


@pytest.fixture()
def make_task(flow):
    """Factory: make_task(supplier, **fields) -> draft task id."""
    def _make(owner, **overrides):
        return flow.create_task(owner.id, task_payload(**overrides))
    return _make


_DRIVE_ORDER = ("published", "collecting", "in_progress", "reviewing", "publishing", "completed")


@pytest.fixture()
def drive(flow):
    """
    Walk a draft task forward through the real use cases up to ``stage``.

    Returns a dict with the ids created on the way (application_id, asset_id).
    """
    def _drive(task_id, stage, owner, worker=None):
        steps = _DRIVE_ORDER[: _DRIVE_ORDER.index(stage) + 1]
        ids = {}
        for step in steps:
            if step == "published":
                flow.publish_task(task_id, owner.id)
            elif step == "collecting":
                ids["application_id"] = flow.submit_application(
                    task_id, worker.id, "I shoot drone and handheld footage at dawn.",
                )
            elif step == "in_progress":
                flow.review_application(ids["application_id"], owner.id, "accepted")
            elif step == "reviewing":
                ids["asset_id"] = flow.submit_work(task_id, worker.id, {
                    "title": "Bled sunrise cut",
                    "asset_type": "video",
                    "file_url": "https://cdn.example.com/bled.mp4",
                })
            elif step == "publishing":
                flow.review_work(task_id, owner.id, ids["asset_id"], "approved")
            elif step == "completed":
                flow.complete_task(task_id, owner.id)
        return ids

    return _drive
