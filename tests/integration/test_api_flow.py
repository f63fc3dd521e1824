"""統合テスト — HTTP API 経由の CRUD と JSend レスポンス."""

import sqlite3

import pytest
from fastapi.testclient import TestClient

from task_api.api.main import app
from task_api.dependencies import _reset_all, get_task_repository
from task_api.interfaces.task_repository import TaskQuery
from task_api.store.memory import InMemoryTaskRepository
from task_api.store.sqlite import SqliteTaskRepository, connect, ensure_schema


class _BrokenRepository(InMemoryTaskRepository):
    """ストレージ障害を再現するリポジトリ。"""

    def list(self, query: TaskQuery):
        raise sqlite3.OperationalError("disk I/O error")


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    """テスト用のリポジトリを両実装で注入する。"""
    if request.param == "memory":
        repository = InMemoryTaskRepository()
    else:
        conn = connect(str(tmp_path / "api.db"))
        ensure_schema(conn)
        repository = SqliteTaskRepository(conn)

    app.dependency_overrides[get_task_repository] = lambda: repository

    yield repository

    app.dependency_overrides.clear()
    repository.close()
    _reset_all()


@pytest.fixture
def client(repo):
    return TestClient(app)


def _create(client, title: str, done: bool = False) -> dict:
    resp = client.post("/v1/tasks", json={"title": title, "done": done})
    assert resp.status_code == 201
    return resp.json()["data"]


class TestRootAndHealth:
    """サービス情報とヘルスチェック。"""

    def test_root(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "success"
        assert body["data"]["service"] == "tasks-api"
        assert body["data"]["status"] == "ok"

    def test_health_reports_storage_mode(self, client, repo):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["data"]["db"] == {
            "status": "ok",
            "mode": repo.storage_mode,
        }

    def test_health_returns_503_when_database_unavailable(self, tmp_path):
        conn = connect(str(tmp_path / "down.db"))
        broken = SqliteTaskRepository(conn)
        broken.close()
        app.dependency_overrides[get_task_repository] = lambda: broken
        try:
            resp = TestClient(app).get("/health")
        finally:
            app.dependency_overrides.clear()

        assert resp.status_code == 503
        assert resp.json() == {"status": "error", "message": "Service unavailable"}


class TestCrudFlow:
    """作成→取得→更新→削除の一連フロー。"""

    def test_create_get_update_delete(self, client):
        created = _create(client, "  Buy milk  ")
        assert created["title"] == "Buy milk"
        assert created["done"] is False
        task_id = created["id"]

        resp = client.get(f"/v1/tasks/{task_id}")
        assert resp.status_code == 200
        assert resp.json() == {"status": "success", "data": created}

        resp = client.put(f"/v1/tasks/{task_id}", json={"title": "Buy oat milk", "done": True})
        assert resp.status_code == 200
        assert resp.json()["data"] == {"id": task_id, "title": "Buy oat milk", "done": True}

        resp = client.delete(f"/v1/tasks/{task_id}")
        assert resp.status_code == 200
        assert resp.json() == {"status": "success", "data": {"deleted": True}}

        resp = client.get(f"/v1/tasks/{task_id}")
        assert resp.status_code == 404
        assert resp.json() == {"status": "fail", "code": 404, "message": "Task not found."}

    def test_delete_twice_returns_404(self, client):
        task_id = _create(client, "temp")["id"]

        assert client.delete(f"/v1/tasks/{task_id}").status_code == 200
        assert client.delete(f"/v1/tasks/{task_id}").status_code == 404

    def test_update_missing_returns_404_and_creates_nothing(self, client):
        resp = client.put("/v1/tasks/999", json={"title": "ghost", "done": False})
        assert resp.status_code == 404

        resp = client.get("/v1/tasks")
        assert resp.json()["data"]["page"]["total"] == 0


class TestPayloadValidation:
    """リクエストボディの検証。"""

    @pytest.mark.parametrize(
        ("payload", "fields"),
        [
            ({"title": "", "done": False}, {"title"}),
            ({"title": "   ", "done": False}, {"title"}),
            ({"title": 123, "done": False}, {"title"}),
            ({"title": "ok", "done": "yes"}, {"done"}),
            ({"title": "ok"}, {"done"}),
            ({}, {"title", "done"}),
        ],
    )
    def test_invalid_payload(self, client, payload: dict, fields: set[str]):
        resp = client.post("/v1/tasks", json=payload)
        assert resp.status_code == 400
        body = resp.json()
        assert body["status"] == "fail"
        assert body["message"] == "Invalid task payload."
        assert set(body["details"]) == fields

    def test_title_not_encodable_as_utf8(self, client):
        """孤立サロゲートを含む title は 400 で拒否され、一覧は壊れない。"""
        resp = client.post(
            "/v1/tasks",
            content=b'{"title": "a\\ud800", "done": false}',
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        body = resp.json()
        assert body["message"] == "Invalid task payload."
        assert set(body["details"]) == {"title"}

        resp = client.get("/v1/tasks")
        assert resp.status_code == 200
        assert resp.json()["data"]["page"]["total"] == 0

    def test_non_object_body(self, client):
        resp = client.post("/v1/tasks", json=["title", "done"])
        assert resp.status_code == 400
        assert resp.json()["message"] == "Request body must be a JSON object."

    @pytest.mark.parametrize("task_id", ["0", "-1", "abc", "1.5", "9223372036854775808"])
    def test_invalid_task_id(self, client, task_id: str):
        resp = client.get(f"/v1/tasks/{task_id}")
        assert resp.status_code == 400
        assert resp.json()["message"] == "Invalid task id."

    def test_invalid_id_checked_before_payload(self, client):
        resp = client.put("/v1/tasks/abc", json={})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Invalid task id."


class TestListEndpoint:
    """一覧 API のクエリとレスポンス形式。"""

    def test_envelope_and_page_metadata(self, client):
        for i in range(5):
            _create(client, f"task {i}", done=i % 2 == 0)

        resp = client.get("/v1/tasks", params={"limit": 2, "offset": 1})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert [t["title"] for t in data["items"]] == ["task 1", "task 2"]
        assert data["page"] == {
            "limit": 2,
            "offset": 1,
            "total": 5,
            "returned": 2,
            "hasMore": True,
        }
        assert data["filters"] == {}
        assert data["sort"] == {"field": "id", "order": "asc"}

    def test_filters_and_sort(self, client):
        _create(client, "Buy bread", done=True)
        _create(client, "Walk dog", done=True)
        _create(client, "buy milk", done=True)
        _create(client, "Buy eggs", done=False)

        resp = client.get(
            "/v1/tasks",
            params={"done": "true", "q": "  buy ", "sort": "title", "order": "DESC"},
        )
        data = resp.json()["data"]
        assert [t["title"] for t in data["items"]] == ["buy milk", "Buy bread"]
        assert data["page"]["hasMore"] is False
        assert data["filters"] == {"done": True, "q": "buy"}
        assert data["sort"] == {"field": "title", "order": "desc"}

    def test_limit_is_clamped(self, client):
        resp = client.get("/v1/tasks", params={"limit": 500})
        assert resp.json()["data"]["page"]["limit"] == 100

        resp = client.get("/v1/tasks", params={"limit": "99999999999999999999"})
        assert resp.json()["data"]["page"]["limit"] == 100

    @pytest.mark.parametrize(
        ("params", "name"),
        [
            ({"limit": "-1"}, "limit"),
            ({"limit": "ten"}, "limit"),
            ({"offset": "1.5"}, "offset"),
            ({"offset": "9223372036854775808"}, "offset"),
            ({"done": "yes"}, "done"),
            ({"sort": "created_at"}, "sort"),
            ({"order": "up"}, "order"),
        ],
    )
    def test_invalid_query(self, client, params: dict, name: str):
        resp = client.get("/v1/tasks", params=params)
        assert resp.status_code == 400
        body = resp.json()
        assert body["status"] == "fail"
        assert f'"{name}"' in body["message"]


class TestErrorsAndHeaders:
    """未定義ルート、障害時の応答、リクエストID。"""

    def test_unknown_route_returns_jsend_404(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        assert resp.json() == {"status": "fail", "code": 404, "message": "Not found"}

    def test_wrong_method_returns_jsend_404(self, client):
        task_id = _create(client, "a")["id"]

        resp = client.patch(f"/v1/tasks/{task_id}", json={"done": True})
        assert resp.status_code == 404
        assert resp.json() == {"status": "fail", "code": 404, "message": "Not found"}

    def test_request_id_is_echoed(self, client):
        resp = client.get("/", headers={"X-Request-ID": "abc-123"})
        assert resp.headers["X-Request-ID"] == "abc-123"

    def test_request_id_is_generated(self, client):
        resp = client.get("/")
        assert resp.headers["X-Request-ID"]

    def test_storage_failure_returns_500(self):
        app.dependency_overrides[get_task_repository] = lambda: _BrokenRepository()
        try:
            resp = TestClient(app).get("/v1/tasks", headers={"Authorization": "secret"})
        finally:
            app.dependency_overrides.clear()

        assert resp.status_code == 500
        assert resp.json() == {"status": "error", "message": "Internal server error"}
        assert resp.headers["X-Request-ID"]
