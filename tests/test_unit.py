"""
Unit tests for the media request service.

Tests core components without requiring external services.
"""
from __future__ import annotations

import itertools

import pytest

from mediarequests.config import (
    DEFAULT_SYNC_INTERVAL_MINUTES,
    MIN_SYNC_INTERVAL_MINUTES,
    AppConfig,
    parse_config,
)
from mediarequests.statuses import (
    ITEM_STATUS_PRIORITY,
    REQUEST_STATUS_PRIORITY,
    aggregate_request_status,
    is_terminal,
    merge_statuses,
    pick_status,
)
from mediarequests.store import (
    InMemoryRequestStore,
    ItemSpec,
    ItemUpdate,
    RecentRequestsCache,
    User,
)
from mediarequests.views import merge_request_rows


# ─── Fixtures ────────────────────────────────────────────────────────────────

def make_config(extra: dict | None = None) -> AppConfig:
    """Return a minimal valid AppConfig."""
    raw = {
        "movie_manager": {
            "name": "radarr-main",
            "url": "http://radarr:7878/api/v3",
            "api_key": "rk",
            "quality_profile_id": 4,
        },
        "episode_manager": {
            "name": "sonarr-main",
            "url": "http://sonarr:8989/api/v3",
            "api_key": "sk",
        },
    }
    if extra:
        raw.update(extra)
    return parse_config(raw)


# ─── Status merge tests ──────────────────────────────────────────────────────

class TestPickStatus:
    def test_smaller_index_wins_for_requests(self):
        assert pick_status("available", "pending", REQUEST_STATUS_PRIORITY) == "pending"
        assert pick_status("pending", "available", REQUEST_STATUS_PRIORITY) == "pending"

    def test_available_dominates_items(self):
        assert pick_status("pending", "available", ITEM_STATUS_PRIORITY) == "available"
        assert pick_status("downloading", "available", ITEM_STATUS_PRIORITY) == "available"

    def test_unknown_status_loses(self):
        assert pick_status("bogus", "failed", ITEM_STATUS_PRIORITY) == "failed"
        assert pick_status("denied", "bogus", ITEM_STATUS_PRIORITY) == "denied"
        assert pick_status(None, "submitted", REQUEST_STATUS_PRIORITY) == "submitted"

    def test_result_is_always_one_of_the_inputs(self):
        for a, b in itertools.product(REQUEST_STATUS_PRIORITY, repeat=2):
            assert pick_status(a, b, REQUEST_STATUS_PRIORITY) in (a, b)
        for a, b in itertools.product(ITEM_STATUS_PRIORITY, repeat=2):
            assert pick_status(a, b, ITEM_STATUS_PRIORITY) in (a, b)

    def test_lists_are_not_unified(self):
        assert REQUEST_STATUS_PRIORITY != ITEM_STATUS_PRIORITY
        assert REQUEST_STATUS_PRIORITY[0] == "pending"
        assert ITEM_STATUS_PRIORITY[0] == "available"

    def test_merge_statuses(self):
        assert merge_statuses(["failed", "submitted", "denied"], REQUEST_STATUS_PRIORITY) == "submitted"
        assert merge_statuses([], REQUEST_STATUS_PRIORITY) is None

    def test_is_terminal(self):
        assert is_terminal("available")
        assert is_terminal("denied")
        assert is_terminal("removed")
        assert not is_terminal("failed")
        assert not is_terminal("submitted")


class TestAggregateStatus:
    def test_downloading_without_failures(self):
        assert aggregate_request_status(["downloading", "available"], "submitted") == "downloading"

    def test_downloading_with_failure_falls_through(self):
        assert aggregate_request_status(["failed", "submitted", "downloading"], "submitted") == "submitted"
        assert aggregate_request_status(["failed", "failed"], "submitted") == "failed"

    def test_all_available(self):
        assert aggregate_request_status(["available", "available"], "submitted") == "available"

    def test_some_available(self):
        assert aggregate_request_status(["available", "submitted"], "submitted") == "partially_available"

    def test_nothing_changed(self):
        assert aggregate_request_status(["submitted"], "submitted") == "submitted"

    def test_empty_keeps_current(self):
        assert aggregate_request_status([], "downloading") == "downloading"


# ─── Config tests ────────────────────────────────────────────────────────────

class TestConfigParsing:
    def test_minimal_valid_config(self):
        config = make_config()
        assert config.movie_manager is not None
        assert config.movie_manager.type == "radarr"
        assert config.episode_manager.type == "sonarr"
        assert config.movie_manager.quality_profile_id == 4

    def test_defaults_applied(self):
        config = parse_config({})
        assert config.movie_manager is None
        assert config.episode_manager is None
        assert config.sync.interval_minutes == DEFAULT_SYNC_INTERVAL_MINUTES
        assert config.sync.batch_limit == 100
        assert config.bulk.max_ids == 100
        assert config.notifications.max_retries == 1
        assert config.notifications.retry_backoff_ms == 600
        assert config.metadata.image_base_url.endswith("/w500")

    def test_interval_coercion(self):
        assert make_config({"sync": {"interval_minutes": 0}}).sync.interval_minutes == DEFAULT_SYNC_INTERVAL_MINUTES
        assert make_config({"sync": {"interval_minutes": "abc"}}).sync.interval_minutes == DEFAULT_SYNC_INTERVAL_MINUTES
        assert make_config({"sync": {"interval_minutes": 0.2}}).sync.interval_minutes == MIN_SYNC_INTERVAL_MINUTES
        assert make_config({"sync": {"interval_minutes": 15}}).sync.interval_minutes == 15.0

    def test_missing_api_key_raises(self):
        with pytest.raises(ValueError, match="api_key"):
            parse_config({"movie_manager": {"url": "http://radarr"}})

    def test_endpoints_parsed(self):
        config = make_config({
            "notifications": {
                "endpoints": [
                    {"id": 1, "type": "discord", "config": {"webhook_url": "http://x"}},
                    {"id": 2, "type": "Email", "owner_user_id": 7, "types": 8},
                ],
            },
        })
        first, second = config.notifications.endpoints
        assert first.is_global
        assert second.type == "email"
        assert second.owner_user_id == 7
        assert not second.is_global

    def test_unsupported_endpoint_type_raises(self):
        with pytest.raises(ValueError, match="Unsupported"):
            make_config({"notifications": {"endpoints": [{"id": 1, "type": "pager"}]}})

    def test_duplicate_endpoint_id_raises(self):
        with pytest.raises(ValueError, match="Duplicate"):
            make_config({
                "notifications": {
                    "endpoints": [{"id": 1, "type": "slack"}, {"id": 1, "type": "discord"}],
                },
            })

    def test_admin_api_key_parsed(self):
        assert make_config({"admin_api_key": "secret"}).admin_api_key == "secret"


# ─── Store tests ─────────────────────────────────────────────────────────────

class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_create_and_get(self):
        store = InMemoryRequestStore()
        store.add_user(User(id=1, username="alice"))
        created = await store.create_request("movie", 603, "The Matrix", 1, [ItemSpec(provider="radarr")])

        loaded = await store.get_request_with_items(created.request.id)
        assert loaded.request.title == "The Matrix"
        assert loaded.username == "alice"
        assert len(loaded.items) == 1
        assert loaded.items[0].status == "pending"

    @pytest.mark.asyncio
    async def test_duplicate_episode_rejected(self):
        store = InMemoryRequestStore()
        with pytest.raises(ValueError):
            await store.create_request(
                "episode",
                1399,
                "Show",
                1,
                [ItemSpec("sonarr", 1, 3), ItemSpec("sonarr", 1, 3)],
            )

    @pytest.mark.asyncio
    async def test_set_status_updates_items(self):
        store = InMemoryRequestStore()
        created = await store.create_request(
            "episode", 1399, "Show", 1, [ItemSpec("sonarr", 1, 1), ItemSpec("sonarr", 1, 2)],
        )
        await store.set_status(created.request.id, "denied", "nope", acting_admin_id=9)

        loaded = await store.get_request_with_items(created.request.id)
        assert loaded.request.status == "denied"
        assert loaded.request.status_reason == "nope"
        assert loaded.request.decided_by == 9
        assert {i.status for i in loaded.items} == {"denied"}

    @pytest.mark.asyncio
    async def test_snapshots_are_copies(self):
        store = InMemoryRequestStore()
        created = await store.create_request("movie", 1, "A", 1, [ItemSpec("radarr")])
        created.request.status = "available"
        loaded = await store.get_request_with_items(created.request.id)
        assert loaded.request.status == "pending"

    @pytest.mark.asyncio
    async def test_list_for_sync_skips_pending_and_terminal(self):
        store = InMemoryRequestStore()
        ids = []
        for status in ("pending", "submitted", "available", "downloading"):
            row = await store.create_request("movie", 1, status, 1, [ItemSpec("radarr")], status=status)
            ids.append(row.request.id)

        rows = await store.list_requests_for_sync()
        assert [r.request.status for r in rows] == ["submitted", "downloading"]

    @pytest.mark.asyncio
    async def test_apply_sync_result(self):
        store = InMemoryRequestStore()
        created = await store.create_request("movie", 1, "A", 1, [ItemSpec("radarr")], status="submitted")
        item_id = created.items[0].id
        await store.apply_sync_result(created.request.id, "downloading", {item_id: ItemUpdate("downloading", 42)})

        loaded = await store.get_request_with_items(created.request.id)
        assert loaded.request.status == "downloading"
        assert loaded.items[0].status == "downloading"
        assert loaded.items[0].provider_id == 42

    @pytest.mark.asyncio
    async def test_bulk_update_only_from(self):
        store = InMemoryRequestStore()
        a = await store.create_request("movie", 1, "A", 1, [ItemSpec("radarr")])
        b = await store.create_request("movie", 2, "B", 1, [ItemSpec("radarr")], status="available")

        updated = await store.bulk_update_status(
            [a.request.id, b.request.id, "missing"], "denied", "dup", 5, only_from=("pending",),
        )
        assert updated == [a.request.id]

    @pytest.mark.asyncio
    async def test_delete_cascades(self):
        store = InMemoryRequestStore()
        created = await store.create_request("movie", 1, "A", 1, [ItemSpec("radarr")])
        assert await store.delete_request(created.request.id) is True
        assert await store.get_request_with_items(created.request.id) is None
        assert await store.delete_request(created.request.id) is False


class TestRecentRequestsCache:
    @pytest.mark.asyncio
    async def test_cache_and_invalidate(self):
        calls = []

        async def loader(limit):
            calls.append(limit)
            return [limit]

        cache = RecentRequestsCache(loader, ttl_seconds=60)
        assert await cache.get(5) == [5]
        assert await cache.get(5) == [5]
        assert calls == [5]

        cache.invalidate()
        await cache.get(5)
        assert calls == [5, 5]


# ─── Merged view tests ───────────────────────────────────────────────────────

class TestMergedView:
    @pytest.mark.asyncio
    async def test_episode_dedup_prefers_available(self):
        store = InMemoryRequestStore()
        store.add_user(User(id=1, username="alice"))
        first = await store.create_request(
            "episode", 1399, "Show", 1, [ItemSpec("sonarr", 1, 3), ItemSpec("sonarr", 1, 4)],
        )
        second = await store.create_request("episode", 1399, "Show", 1, [ItemSpec("sonarr", 1, 3, provider_id=77)])
        await store.apply_sync_result(
            second.request.id, "available", {second.items[0].id: ItemUpdate(status="available")},
        )

        rows = [
            await store.get_request_with_items(first.request.id),
            await store.get_request_with_items(second.request.id),
        ]
        view = merge_request_rows(rows)

        assert view.request.status == "pending"
        episodes = {(i.season, i.episode): i for i in view.items}
        assert len(view.items) == 2
        assert episodes[(1, 3)].status == "available"
        assert episodes[(1, 3)].providerId == 77
        assert episodes[(1, 4)].status == "pending"
        assert view.summary.total == 2
        assert view.summary.available == 1
        assert view.summary.pending == 1
        assert view.request.requestedBy == "alice"

    def test_empty_rows(self):
        assert merge_request_rows([]) is None
