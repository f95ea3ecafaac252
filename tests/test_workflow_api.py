"""
Workflow blueprint tests — /api/v1/workflow.

Covers:
    1. Stage registry endpoint
    2. Task creation and validation envelope
    3. Full lifecycle over HTTP (apply, accept, submit, approve, complete, rate)
    4. Error mapping: 401, 403, 404, 409, 422
    5. Generic transition endpoint, progress, history, deadline, dashboard
    6. Jobs endpoints and health probes
"""

import pytest

BASE = "/api/v1/workflow"


def _payload(**overrides):
    data = {
        "title": "Plitvice lakes boardwalk",
        "description": "Short vertical clips of the upper lakes.",
        "budget_min": 200,
        "budget_max": 400,
        "content_types": ["video"],
    }
    data.update(overrides)
    return data


def _create(client, headers, supplier, **overrides):
    res = client.post(f"{BASE}/tasks", json=_payload(**overrides), headers=headers(supplier))
    assert res.status_code == 201, res.get_json()
    return res.get_json()["id"]


# ═════════════════════════════════════════════════════════════════════════════
#  1-2. Registry & creation
# ═════════════════════════════════════════════════════════════════════════════


class TestRegistryAndCreate:
    def test_stages(self, client):
        res = client.get(f"{BASE}/stages")
        assert res.status_code == 200
        body = res.get_json()
        assert body["total_active_stages"] == 9
        draft = body["stages"][0]
        assert draft["stage"] == "draft"
        assert draft["next_stages"] == ["published"]

    def test_create_task(self, client, supplier, headers):
        res = client.post(f"{BASE}/tasks", json=_payload(), headers=headers(supplier))
        assert res.status_code == 201
        body = res.get_json()
        assert body["status"] == "draft"
        assert body["supplier_id"] == supplier.id
        assert body["version"] == 1

    def test_create_validation_envelope(self, client, supplier, headers):
        res = client.post(f"{BASE}/tasks", json={"title": ""}, headers=headers(supplier))
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION"
        assert set(body["details"]) >= {"title", "description"}

    def test_wrong_field_types_are_422(self, client, supplier, headers):
        res = client.post(f"{BASE}/tasks", json={"title": 123, "description": "x"},
                          headers=headers(supplier))
        assert res.status_code == 422
        assert res.get_json()["details"] == {"title": "must be a string"}

    @pytest.mark.parametrize("path", ["/tasks", "/tasks/1/applications", "/tasks/1/transition"])
    def test_array_body_is_422(self, client, supplier, headers, path):
        res = client.post(f"{BASE}{path}", json=["title"], headers=headers(supplier))
        assert res.status_code == 422
        assert res.get_json()["details"] == {"body": "must be a JSON object"}

    def test_create_requires_identity(self, client):
        res = client.post(f"{BASE}/tasks", json=_payload())
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_non_json_body_rejected(self, client, supplier, headers):
        res = client.post(f"{BASE}/tasks", data="title=x", headers={
            **headers(supplier), "Content-Type": "text/plain",
        })
        assert res.status_code == 415

    def test_unknown_task(self, client):
        res = client.get(f"{BASE}/tasks/999")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


# ═════════════════════════════════════════════════════════════════════════════
#  3. Lifecycle
# ═════════════════════════════════════════════════════════════════════════════


class TestLifecycle:
    def test_full_lifecycle(self, client, supplier, creator, headers):
        task_id = _create(client, headers, supplier)

        res = client.post(f"{BASE}/tasks/{task_id}/publish", headers=headers(supplier))
        assert res.status_code == 200
        assert res.get_json()["new_stage"] == "published"

        res = client.post(f"{BASE}/tasks/{task_id}/applications", json={
            "proposal": "Early morning shoot before the crowds", "proposed_budget": 350,
        }, headers=headers(creator))
        assert res.status_code == 201
        application_id = res.get_json()["id"]

        res = client.post(f"{BASE}/applications/{application_id}/review",
                          json={"decision": "accepted"}, headers=headers(supplier))
        assert res.status_code == 200
        assert res.get_json()["transition"]["new_stage"] == "in_progress"

        res = client.post(f"{BASE}/tasks/{task_id}/submissions", json={
            "title": "Upper lakes", "asset_type": "video",
            "file_url": "https://cdn.example.com/lakes.mp4",
        }, headers=headers(creator))
        assert res.status_code == 201
        asset_id = res.get_json()["id"]

        res = client.post(f"{BASE}/tasks/{task_id}/submissions/{asset_id}/review",
                          json={"decision": "approved"}, headers=headers(supplier))
        assert res.status_code == 200
        assert res.get_json()["new_stage"] == "publishing"

        res = client.post(f"{BASE}/tasks/{task_id}/complete", headers=headers(creator))
        assert res.status_code == 200
        assert res.get_json()["progress_percentage"] == 100.0

        res = client.post(f"{BASE}/tasks/{task_id}/ratings",
                          json={"to_user_id": creator.id, "score": 5}, headers=headers(supplier))
        assert res.status_code == 201

        res = client.get(f"{BASE}/tasks/{task_id}")
        body = res.get_json()
        assert body["task"]["status"] == "completed"
        assert len(body["ratings"]) == 1

        history = client.get(f"{BASE}/tasks/{task_id}/history").get_json()
        assert [h["to_stage"] for h in history["items"]] == [
            "published", "collecting", "in_progress", "reviewing", "publishing", "completed",
        ]

    def test_duplicate_application_is_conflict(self, client, supplier, creator, headers):
        task_id = _create(client, headers, supplier)
        client.post(f"{BASE}/tasks/{task_id}/publish", headers=headers(supplier))
        body = {"proposal": "Hello"}
        client.post(f"{BASE}/tasks/{task_id}/applications", json=body, headers=headers(creator))

        res = client.post(f"{BASE}/tasks/{task_id}/applications", json=body, headers=headers(creator))
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_DUPLICATE_APPLICATION"

    def test_not_accepting_applications(self, client, supplier, creator, headers):
        task_id = _create(client, headers, supplier)
        res = client.post(f"{BASE}/tasks/{task_id}/applications",
                          json={"proposal": "Hi"}, headers=headers(creator))
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_NOT_ACCEPTING_APPLICATIONS"

    def test_invalid_rating(self, client, supplier, creator, headers, make_task, drive):
        task_id = make_task(supplier)
        drive(task_id, "completed", supplier, creator)
        res = client.post(f"{BASE}/tasks/{task_id}/ratings",
                          json={"to_user_id": creator.id, "score": 9}, headers=headers(supplier))
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_INVALID_RATING"

    def test_foreign_supplier_forbidden(self, client, make_user, supplier, headers):
        task_id = _create(client, headers, supplier)
        intruder = make_user("supplier")
        res = client.post(f"{BASE}/tasks/{task_id}/publish", headers=headers(intruder))
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"


# ═════════════════════════════════════════════════════════════════════════════
#  5. Generic transition & read endpoints
# ═════════════════════════════════════════════════════════════════════════════


class TestTransitionEndpoint:
    def test_transition(self, client, supplier, headers):
        task_id = _create(client, headers, supplier)
        res = client.post(f"{BASE}/tasks/{task_id}/transition",
                          json={"stage": "published", "reason": "ready"}, headers=headers(supplier))
        assert res.status_code == 200
        assert res.get_json()["old_stage"] == "draft"

    def test_invalid_transition_is_conflict(self, client, supplier, headers):
        task_id = _create(client, headers, supplier)
        res = client.post(f"{BASE}/tasks/{task_id}/transition",
                          json={"stage": "completed"}, headers=headers(supplier))
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_INVALID_TRANSITION"
        assert body["details"] == {"current_stage": "draft", "target_stage": "completed"}

    def test_role_must_edit_current_stage(self, client, supplier, creator, headers):
        task_id = _create(client, headers, supplier)
        res = client.post(f"{BASE}/tasks/{task_id}/transition",
                          json={"stage": "published"}, headers=headers(creator))
        assert res.status_code == 403

    def test_foreign_supplier_cannot_transition(self, client, make_user, supplier, creator,
                                                headers, make_task, drive):
        task_id = make_task(supplier)
        drive(task_id, "reviewing", supplier, creator)
        intruder = make_user("supplier")

        res = client.post(f"{BASE}/tasks/{task_id}/transition",
                          json={"stage": "publishing"}, headers=headers(intruder))

        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"
        assert client.get(f"{BASE}/tasks/{task_id}").get_json()["task"]["status"] == "reviewing"

    def test_use_case_edges_are_not_direct(self, client, supplier, creator, headers,
                                           make_task, drive):
        task_id = make_task(supplier)
        ids = drive(task_id, "publishing", supplier, creator)

        res = client.post(f"{BASE}/tasks/{task_id}/transition",
                          json={"stage": "completed"}, headers=headers(supplier))

        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_INVALID_TRANSITION"
        body = client.get(f"{BASE}/tasks/{task_id}").get_json()
        assert body["task"]["status"] == "publishing"
        assert body["task"]["assigned_creator_id"] == creator.id
        assert ids["asset_id"]

    def test_cancel_through_transition(self, client, supplier, creator, headers, make_task, drive):
        task_id = make_task(supplier)
        drive(task_id, "in_progress", supplier, creator)

        res = client.post(f"{BASE}/tasks/{task_id}/transition",
                          json={"stage": "cancelled", "reason": "Storm season"},
                          headers=headers(supplier))

        assert res.status_code == 200
        task = client.get(f"{BASE}/tasks/{task_id}").get_json()["task"]
        assert task["status"] == "cancelled"
        assert task["assigned_creator_id"] is None

    def test_stage_required(self, client, supplier, headers):
        task_id = _create(client, headers, supplier)
        res = client.post(f"{BASE}/tasks/{task_id}/transition", json={}, headers=headers(supplier))
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_progress_and_deadline(self, client, supplier, headers):
        task_id = _create(client, headers, supplier)
        progress = client.get(f"{BASE}/tasks/{task_id}/progress").get_json()
        assert progress["current_stage"] == "draft"
        assert progress["progress_percentage"] == 11.1
        assert progress["next_stages"] == ["published"]

        deadline = client.get(f"{BASE}/tasks/{task_id}/deadline").get_json()
        assert deadline == {"task_id": task_id, "is_overdue": False,
                            "days_remaining": None, "deadline": None}

    def test_tasks_by_stage(self, client, supplier, headers):
        task_id = _create(client, headers, supplier)
        res = client.get(f"{BASE}/tasks?stage=draft", headers=headers(supplier))
        assert [t["id"] for t in res.get_json()["items"]] == [task_id]

        res = client.get(f"{BASE}/tasks", headers=headers(supplier))
        assert res.status_code == 400

    def test_dashboard(self, client, supplier, headers):
        _create(client, headers, supplier)
        res = client.get(f"{BASE}/dashboard", headers=headers(supplier))
        body = res.get_json()
        assert body["role"] == "supplier"
        assert body["total_tasks"] == 1
        assert body["stage_breakdown"] == {"draft": 1}


# ═════════════════════════════════════════════════════════════════════════════
#  6. Jobs & health
# ═════════════════════════════════════════════════════════════════════════════


class TestJobsAndHealth:
    def test_list_jobs(self, client):
        names = {j["job_name"] for j in client.get(f"{BASE}/jobs").get_json()["items"]}
        assert {"review_auto_approval", "deadline_reminders"} <= names

    def test_run_job_admin_only(self, client, supplier, headers):
        res = client.post(f"{BASE}/jobs/deadline_reminders/run", headers=headers(supplier))
        assert res.status_code == 403

    def test_run_unknown_job(self, client, admin, headers):
        res = client.post(f"{BASE}/jobs/nope/run", headers=headers(admin))
        assert res.status_code == 404

    def test_run_job(self, client, admin, headers):
        res = client.post(f"{BASE}/jobs/deadline_reminders/run", headers=headers(admin))
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "success"
        assert body["result"]["checked"] == 0

    @pytest.mark.parametrize("path", ["/api/v1/health/ready", "/api/v1/health/live"])
    def test_health(self, client, path):
        res = client.get(path)
        assert res.status_code == 200
        assert "X-Request-ID" in res.headers
