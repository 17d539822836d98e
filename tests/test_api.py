from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from conftest import InMemoryTaskStore
from taskapi.core.config import Settings
from taskapi.core.errors import TaskStoreError
from taskapi.main import create_app
from taskapi.repositories.task_repository import SQLTaskStore
from taskapi.routers import tasks as tasks_module


@pytest.fixture
def app(tmp_path: Path):
    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'tasks.db'}",
        create_tables=True,
        cache_backend="memory",
        metrics_enabled=True,
    )
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def list_calls(monkeypatch) -> dict:
    calls = {"count": 0}
    real_list = SQLTaskStore.list

    async def counting_list(self, filters, page, per_page):
        calls["count"] += 1
        return await real_list(self, filters, page, per_page)

    monkeypatch.setattr(SQLTaskStore, "list", counting_list)
    return calls


def test_listing_is_cached_and_invalidated_by_writes(client, list_calls) -> None:
    r = client.post("/api/tasks", json={"title": "T1", "assignee_id": 5})
    assert r.status_code == 201, r.text
    created = r.json()["data"]
    assert created["status"] == "pending"

    r = client.get("/api/tasks", params={"page": 1, "per_page": 20})
    body = r.json()
    assert r.status_code == 200
    assert [task["title"] for task in body["data"]] == ["T1"]
    assert body["meta"] == {"page": 1, "per_page": 20, "total": 1, "total_pages": 1}
    assert list_calls["count"] == 1

    r = client.get("/api/tasks", params={"per_page": 20, "page": 1})
    assert r.json()["data"] == body["data"]
    assert list_calls["count"] == 1

    r = client.put(
        f"/api/tasks/{created['id']}",
        json={"title": "T2", "assignee_id": 5, "status": "in_progress"},
    )
    assert r.status_code == 200
    assert r.json()["data"]["title"] == "T2"

    r = client.get("/api/tasks", params={"page": 1, "per_page": 20})
    assert [task["title"] for task in r.json()["data"]] == ["T2"]
    assert r.json()["meta"]["total"] == 1
    assert list_calls["count"] == 2

    r = client.delete(f"/api/tasks/{created['id']}")
    assert r.status_code == 204

    r = client.get("/api/tasks", params={"page": 1, "per_page": 20})
    assert r.json()["meta"]["total"] == 0
    assert list_calls["count"] == 3


def test_listing_filters_and_pagination(client) -> None:
    for title, assignee, status in [
        ("a", 1, "pending"),
        ("b", 1, "done"),
        ("c", 2, "done"),
        ("d", 1, "done"),
    ]:
        r = client.post(
            "/api/tasks", json={"title": title, "assignee_id": assignee, "status": status}
        )
        assert r.status_code == 201

    r = client.get("/api/tasks", params={"status": "done", "assignee_id": "1", "per_page": 1})
    body = r.json()

    assert body["meta"] == {"page": 1, "per_page": 1, "total": 2, "total_pages": 2}
    assert [task["title"] for task in body["data"]] == ["d"]

    r = client.get("/api/tasks", params={"status": "done", "assignee_id": "1", "per_page": 1, "page": 2})
    assert [task["title"] for task in r.json()["data"]] == ["b"]


def test_get_task_and_not_found(client) -> None:
    created = client.post("/api/tasks", json={"title": "T1", "assignee_id": 5}).json()["data"]

    r = client.get(f"/api/tasks/{created['id']}")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.json()["data"]["assignee_id"] == 5

    r = client.get("/api/tasks/99")
    assert r.status_code == 404
    assert r.json()["message"] == "Not Found!"
    assert r.json()["status"] == "fail"

    assert client.put(
        "/api/tasks/99", json={"title": "x", "assignee_id": 1, "status": "done"}
    ).status_code == 404
    assert client.delete("/api/tasks/99").status_code == 404


def test_validation_errors_use_the_envelope(client) -> None:
    r = client.post("/api/tasks", json={"title": "T1", "assignee_id": 5, "status": "blocked"})
    assert r.status_code == 400
    assert r.json()["message"] == "validation error"
    assert r.json()["errors"] == ["Invalid task status"]

    r = client.post("/api/tasks", json={"assignee_id": 5})
    assert r.status_code == 400
    assert r.json()["status"] == "fail"

    r = client.get("/api/tasks", params={"status": "blocked"})
    assert r.status_code == 400

    r = client.get("/api/tasks/not-a-number")
    assert r.status_code == 400


def test_store_failure_maps_to_500(app) -> None:
    failing = InMemoryTaskStore()
    failing.fail_with = TaskStoreError("connection refused")
    app.dependency_overrides[tasks_module.get_task_store] = lambda: failing
    try:
        with TestClient(app) as client:
            r = client.get("/api/tasks")
            assert r.status_code == 500
            assert r.json()["message"] == "Internal Server Error"

            r = client.get("/api/tasks/1")
            assert r.status_code == 500
    finally:
        app.dependency_overrides.clear()


def test_health_trace_header_and_metrics(client) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}
    assert r.headers["X-Trace-ID"]

    client.get("/api/tasks")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "listing_cache_events_total" in r.text
    assert "http_requests_total" in r.text


@pytest.mark.parametrize(
    "method, url, kwargs",
    [
        ("get", "/api/tasks", {"params": {"page": str(10**20)}}),
        ("get", "/api/tasks", {"params": {"assignee_id": str(10**20)}}),
        ("get", f"/api/tasks/{10**20}", {}),
        ("delete", f"/api/tasks/{2**31}", {}),
        ("post", "/api/tasks", {"json": {"title": "T1", "assignee_id": 10**20}}),
    ],
)
def test_out_of_range_integers_are_rejected(client, method, url, kwargs) -> None:
    r = getattr(client, method)(url, **kwargs)

    assert r.status_code == 400, r.text
    assert r.json()["status"] == "fail"
    assert r.json()["message"] == "validation error"


def test_unexpected_error_uses_the_envelope_and_is_counted(app) -> None:
    broken = InMemoryTaskStore()
    broken.fail_with = RuntimeError("driver blew up")
    app.dependency_overrides[tasks_module.get_task_store] = lambda: broken
    try:
        with TestClient(app, raise_server_exceptions=False) as client:
            r = client.get("/api/tasks/1")
            assert r.status_code == 500
            assert r.json()["message"] == "Internal Server Error"
            assert r.json()["status"] == "fail"

            metrics = client.get("/metrics").text
            assert 'http_requests_total{method="GET",status="500"}' in metrics
    finally:
        app.dependency_overrides.clear()
