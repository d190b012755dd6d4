import pytest
from fastapi.testclient import TestClient

from core.quest_service import set_quest_service
from web.backend.app import create_app

HEADERS = {"X-User-Id": "u1"}


@pytest.fixture
def client(service):
    set_quest_service(service)
    return TestClient(create_app())


def _create_goal(client, **body):
    body.setdefault("title", "Learn piano")
    response = client.post("/api/v1/goals", json=body, headers=HEADERS)
    assert response.status_code == 201
    return response.json()["goal"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "Questline"}


def test_user_header_is_required(client):
    assert client.get("/api/v1/goals").status_code == 422


def test_create_goal_returns_claim_and_runs_pipeline_in_background(client):
    goal = _create_goal(client, generate_roadmap=True)

    # background work runs after the response was built
    assert goal["roadmap_status"] == "generating"

    response = client.get(f"/api/v1/goals/{goal['goal_id']}/milestones", headers=HEADERS)
    body = response.json()
    assert body["roadmap_status"] == "ready"
    assert [m["sequence"] for m in body["milestones"]] == [1, 2, 3]
    assert body["milestones"][0]["status"] == "active"


def test_goal_of_another_user_is_404(client):
    goal = _create_goal(client, generate_roadmap=False)

    response = client.get(f"/api/v1/goals/{goal['goal_id']}", headers={"X-User-Id": "u2"})
    assert response.status_code == 404


def test_invalid_goal_is_400(client):
    response = client.post("/api/v1/goals", json={"title": "  "}, headers=HEADERS)
    assert response.status_code == 400
    assert "title" in response.json()["detail"]


def test_task_completion_reports_progression(client):
    goal = _create_goal(client, generate_roadmap=True)
    tasks = client.get("/api/v1/tasks", params={"goal_id": goal["goal_id"]}, headers=HEADERS).json()["tasks"]
    assert len(tasks) == 3

    for task in tasks:
        response = client.patch(f"/api/v1/tasks/{task['task_id']}", json={"status": "completed"}, headers=HEADERS)
        assert response.status_code == 200

    body = response.json()
    assert body["task"]["status"] == "completed"
    assert body["progression"]["milestone_completed"] == f"{goal['goal_id']}-m1"
    assert body["progression"]["milestone_activated"] == f"{goal['goal_id']}-m2"
    assert body["progression"]["partial"] is False


def test_task_crud(client):
    response = client.post(
        "/api/v1/tasks", json={"title": "stretch", "due_date": "2026-01-01", "priority": "high"}, headers=HEADERS
    )
    assert response.status_code == 201
    task = response.json()["task"]
    assert task["priority"] == "high"

    listed = client.get("/api/v1/tasks", params={"due_date": "2026-01-01"}, headers=HEADERS).json()["tasks"]
    assert [t["task_id"] for t in listed] == [task["task_id"]]

    assert client.patch(f"/api/v1/tasks/{task['task_id']}", json={"status": "done"}, headers=HEADERS).status_code == 422
    assert client.patch(f"/api/v1/tasks/{task['task_id']}", json={}, headers=HEADERS).status_code == 400

    deleted = client.delete(f"/api/v1/tasks/{task['task_id']}", headers=HEADERS)
    assert deleted.json()["success"] is True
    assert client.delete(f"/api/v1/tasks/{task['task_id']}", headers=HEADERS).status_code == 404


def test_recurrence_rules_and_manual_run(client):
    response = client.post(
        "/api/v1/recurrence-rules",
        json={"title": "Read", "frequency": "daily", "anchor_date": "2026-01-01", "interval": 2},
        headers=HEADERS,
    )
    assert response.status_code == 201
    rule = response.json()["rule"]

    report = client.post("/api/v1/recurrence-rules/run", json={"as_of": "2026-01-05"}).json()
    assert report["as_of"] == "2026-01-05"
    assert report["tasks_created"] == 3
    assert report["failed_rules"] == {}

    again = client.post("/api/v1/recurrence-rules/run", json={"as_of": "2026-01-05"}).json()
    assert again["tasks_created"] == 0

    paused = client.patch(
        f"/api/v1/recurrence-rules/{rule['recurrence_rule_id']}", json={"status": "paused"}, headers=HEADERS
    )
    assert paused.json()["rule"]["status"] == "paused"

    bad = client.patch(
        f"/api/v1/recurrence-rules/{rule['recurrence_rule_id']}", json={"days_of_week": [1]}, headers=HEADERS
    )
    assert bad.status_code == 400

    assert client.delete(f"/api/v1/recurrence-rules/{rule['recurrence_rule_id']}", headers=HEADERS).status_code == 200
    assert client.get("/api/v1/recurrence-rules", headers=HEADERS).json()["rules"] == []


def test_goal_update_and_delete(client):
    goal = _create_goal(client, title="Buy milk")
    url = f"/api/v1/goals/{goal['goal_id']}"

    renamed = client.patch(url, json={"title": "Buy oat milk", "target_date": "2026-01-03"}, headers=HEADERS)
    assert renamed.status_code == 200
    assert renamed.json()["goal"]["title"] == "Buy oat milk"
    assert renamed.json()["goal"]["target_date"] == "2026-01-03"

    completed = client.patch(url, json={"status": "completed"}, headers=HEADERS)
    assert completed.json()["goal"]["status"] == "completed"
    assert client.patch(url, json={"status": "done"}, headers=HEADERS).status_code == 422
    assert client.patch(url, json={}, headers=HEADERS).status_code == 400
    assert client.patch(url, json={"title": "hijack"}, headers={"X-User-Id": "u2"}).status_code == 404

    deleted = client.delete(url, headers=HEADERS)
    assert deleted.status_code == 200
    assert deleted.json()["success"] is True
    assert client.get(url, headers=HEADERS).status_code == 404


def test_completing_roadmap_goal_by_hand_is_400(client):
    goal = _create_goal(client, generate_roadmap=True)

    response = client.patch(f"/api/v1/goals/{goal['goal_id']}", json={"status": "completed"}, headers=HEADERS)

    assert response.status_code == 400
    assert "milestones" in response.json()["detail"]


def test_delete_goal_reports_removed_children(client):
    goal = _create_goal(client, generate_roadmap=True)

    body = client.delete(f"/api/v1/goals/{goal['goal_id']}", headers=HEADERS).json()

    assert body["milestones_deleted"] == 3
    assert body["tasks_deleted"] == 3
    assert client.get("/api/v1/tasks", params={"goal_id": goal["goal_id"]}, headers=HEADERS).json()["tasks"] == []


def test_get_single_task(client):
    task = client.post(
        "/api/v1/tasks", json={"title": "stretch", "due_date": "2026-01-01"}, headers=HEADERS
    ).json()["task"]

    response = client.get(f"/api/v1/tasks/{task['task_id']}", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["task"]["title"] == "stretch"
    assert client.get(f"/api/v1/tasks/{task['task_id']}", headers={"X-User-Id": "u2"}).status_code == 404
