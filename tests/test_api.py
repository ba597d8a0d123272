"""
HTTP surface tests using FastAPI's TestClient.
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from mediarequests.config import AppConfig, ArrInstanceConfig, SyncSettings
from mediarequests.store import InMemoryRequestStore, ItemSpec, User

ADMIN_ID = 1
ADMIN_HEADERS = {"X-User-Id": str(ADMIN_ID)}


def make_config(**kwargs) -> AppConfig:
    defaults = {"sync": SyncSettings(enabled=False)}
    defaults.update(kwargs)
    return AppConfig(**defaults)


def make_store() -> InMemoryRequestStore:
    store = InMemoryRequestStore()
    store.add_user(User(id=ADMIN_ID, username="admin", is_admin=True))
    store.add_user(User(id=2, username="alice"))
    return store


def seed(store, request_type="movie", tmdb_id=603, title="The Matrix", items=None, status="pending") -> str:
    created = asyncio.run(
        store.create_request(request_type, tmdb_id, title, 2, items or [ItemSpec("radarr")], status=status)
    )
    return created.request.id


def load(store, request_id):
    return asyncio.run(store.get_request_with_items(request_id))


@pytest.fixture
def store():
    return make_store()


@pytest.fixture
def client(store):
    from mediarequests.main import create_app

    app = create_app(make_config(), store=store)
    with TestClient(app) as test_client:
        yield test_client


# ─── Basics ──────────────────────────────────────────────────────────────────

class TestBasics:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_metrics(self, client):
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "mediarequests_" in resp.text

    def test_arr_empty_without_managers(self, client):
        assert client.get("/arr").json() == []

    def test_admin_key_required(self, store):
        from mediarequests.main import create_app

        app = create_app(make_config(admin_api_key="secret"), store=store)
        with TestClient(app) as test_client:
            assert test_client.get("/requests/recent").status_code == 401
            resp = test_client.get("/requests/recent", headers={"X-API-Key": "secret"})
            assert resp.status_code == 200

    def test_bad_user_header(self, client, store):
        request_id = seed(store)
        resp = client.post(f"/requests/{request_id}/deny", headers={"X-User-Id": "abc"})
        assert resp.status_code == 400


# ─── Request actions ─────────────────────────────────────────────────────────

class TestRequestActions:
    def test_deny(self, client, store):
        request_id = seed(store)

        resp = client.post(f"/requests/{request_id}/deny", json={"reason": "not available here"}, headers=ADMIN_HEADERS)

        assert resp.status_code == 200
        assert resp.json()["status"] == "denied"
        loaded = load(store, request_id)
        assert loaded.request.status_reason == "not available here"

    def test_deny_requires_admin(self, client, store):
        request_id = seed(store)
        resp = client.post(f"/requests/{request_id}/deny", headers={"X-User-Id": "2"})
        assert resp.status_code == 403
        assert load(store, request_id).request.status == "pending"

    def test_deny_twice_conflicts(self, client, store):
        request_id = seed(store)
        client.post(f"/requests/{request_id}/deny", headers=ADMIN_HEADERS)
        resp = client.post(f"/requests/{request_id}/deny", headers=ADMIN_HEADERS)
        assert resp.status_code == 409

    def test_unknown_request(self, client):
        assert client.post("/requests/nope/deny", headers=ADMIN_HEADERS).status_code == 404
        assert client.get("/requests/nope").status_code == 404
        assert client.post("/requests/nope/sync").status_code == 404

    def test_approve_without_manager(self, client, store):
        request_id = seed(store)
        resp = client.post(f"/requests/{request_id}/approve", headers=ADMIN_HEADERS)
        assert resp.status_code == 503
        assert load(store, request_id).request.status == "pending"

    def test_mark_available(self, client, store):
        request_id = seed(store, status="submitted")
        resp = client.post(f"/requests/{request_id}/available", headers=ADMIN_HEADERS)
        assert resp.status_code == 200
        assert load(store, request_id).request.status == "available"

    def test_delete_without_provider(self, client, store):
        request_id = seed(store)
        resp = client.delete(f"/requests/{request_id}", headers=ADMIN_HEADERS)
        assert resp.status_code == 200
        assert resp.json()["status"] == "deleted"
        assert load(store, request_id) is None


class TestApproveWithManager:
    @pytest.fixture
    def radarr(self):
        radarr = MagicMock()
        radarr.add_movie = AsyncMock(return_value={"id": 42})
        return radarr

    @pytest.fixture
    def managed_client(self, store, radarr):
        from mediarequests.main import create_app

        movie_manager = ArrInstanceConfig(name="radarr", type="radarr", url="http://radarr/api/v3", api_key="k")
        app = create_app(make_config(movie_manager=movie_manager), store=store)
        services = app.state.services
        services.workflow.radarr = radarr
        services.workflow.metadata = None
        with TestClient(app) as test_client:
            yield test_client

    def test_approve_submits(self, managed_client, store, radarr):
        request_id = seed(store)

        resp = managed_client.post(
            f"/requests/{request_id}/approve",
            json={"quality_profile_id": 7},
            headers=ADMIN_HEADERS,
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "submitted"
        assert "Radarr" in body["message"]
        assert radarr.add_movie.await_args.kwargs["quality_profile_id"] == 7
        assert load(store, request_id).items[0].provider_id == 42

    def test_approve_provider_failure(self, managed_client, store, radarr):
        radarr.add_movie.side_effect = RuntimeError("radarr down")
        request_id = seed(store)

        resp = managed_client.post(f"/requests/{request_id}/approve", headers=ADMIN_HEADERS)

        assert resp.status_code == 502
        assert load(store, request_id).request.status == "failed"


# ─── Views, bulk and sync ────────────────────────────────────────────────────

class TestViewsAndBulk:
    def test_merged_view(self, client, store):
        first = seed(
            store, "episode", 1399, "Game of Thrones",
            [ItemSpec("sonarr", 1, 1), ItemSpec("sonarr", 1, 2)],
        )
        second = seed(
            store, "episode", 1399, "Game of Thrones",
            [ItemSpec("sonarr", 1, 2), ItemSpec("sonarr", 1, 3)],
        )

        resp = client.get(f"/requests/{first}", params={"ids": f"{second},missing"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["request"]["id"] == first
        assert [(i["season"], i["episode"]) for i in body["items"]] == [(1, 1), (1, 2), (1, 3)]
        assert body["summary"]["total"] == 3
        assert body["summary"]["pending"] == 3

    def test_recent(self, client, store):
        seed(store)
        seed(store, tmdb_id=604, title="The Matrix Reloaded")
        resp = client.get("/requests/recent", params={"limit": 1})
        assert resp.status_code == 200
        assert len(resp.json()) == 1

    def test_bulk_deny(self, client, store):
        ids = [seed(store, tmdb_id=100 + n, title=f"Movie {n}") for n in range(3)]

        resp = client.post(
            "/bulk/requests",
            json={"action": "deny", "ids": ids, "reason": "duplicate"},
            headers=ADMIN_HEADERS,
        )

        assert resp.status_code == 200
        assert resp.json() == {"updated": 3, "total": 3}
        assert all(load(store, i).request.status == "denied" for i in ids)

    def test_bulk_rejects_unknown_action(self, client, store):
        resp = client.post("/bulk/requests", json={"action": "explode", "ids": ["a"]}, headers=ADMIN_HEADERS)
        assert resp.status_code == 422

    def test_bulk_over_limit(self, client):
        ids = [f"id-{n}" for n in range(101)]
        resp = client.post("/bulk/requests", json={"action": "deny", "ids": ids}, headers=ADMIN_HEADERS)
        assert resp.status_code == 400

    def test_sync_all_empty(self, client):
        resp = client.post("/sync")
        assert resp.status_code == 200
        body = resp.json()
        assert body["summary"]["processed"] == 0
        assert body["message"].startswith("Synced 0 request(s)")

    def test_delivery_log_empty(self, client):
        assert client.get("/notifications/deliveries").json() == []
