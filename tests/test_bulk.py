"""
Tests for batched approve/deny.
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from mediarequests.bulk import BULK_APPROVED_NOTE, BulkOperations
from mediarequests.config import BulkSettings
from mediarequests.errors import BulkLimitError, PermissionDeniedError
from mediarequests.notifications import RequestEvent
from mediarequests.store import InMemoryRequestStore, ItemSpec, User

ADMIN_ID = 1


def make_store() -> InMemoryRequestStore:
    store = InMemoryRequestStore()
    store.add_user(User(id=ADMIN_ID, username="admin", is_admin=True))
    store.add_user(User(id=2, username="alice"))
    return store


async def make_requests(store, count, status="pending") -> list[str]:
    ids = []
    for n in range(count):
        created = await store.create_request(
            "movie", 100 + n, f"Movie {n}", 2, [ItemSpec("radarr")], status=status,
        )
        ids.append(created.request.id)
    return ids


class TestBulkDeny:
    @pytest.mark.asyncio
    async def test_bulk_deny_with_reason(self):
        store = make_store()
        ids = await make_requests(store, 3)
        notifier = MagicMock()
        notifier.notify_request = AsyncMock(return_value=None)
        bulk = BulkOperations(store, BulkSettings(), notifier=notifier)

        result = await bulk.bulk_deny(ids, ADMIN_ID, reason="duplicate")

        assert result.updated == 3
        assert result.total == 3
        for request_id in ids:
            loaded = await store.get_request_with_items(request_id)
            assert loaded.request.status == "denied"
            assert loaded.request.status_reason == "duplicate"
            assert loaded.request.decided_by == ADMIN_ID
            assert [i.status for i in loaded.items] == ["denied"]
        assert notifier.notify_request.await_count == 3
        assert {c.args[0] for c in notifier.notify_request.await_args_list} == {RequestEvent.DENIED}

    @pytest.mark.asyncio
    async def test_only_pending_rows_change(self):
        store = make_store()
        pending = await make_requests(store, 2)
        available = await make_requests(store, 1, status="available")
        bulk = BulkOperations(store, BulkSettings())

        result = await bulk.bulk_deny(pending + available + ["missing"], ADMIN_ID)

        assert result.updated == 2
        assert result.total == 4
        assert (await store.get_request_with_items(available[0])).request.status == "available"

    @pytest.mark.asyncio
    async def test_duplicate_ids_counted_once(self):
        store = make_store()
        ids = await make_requests(store, 1)
        bulk = BulkOperations(store, BulkSettings())

        result = await bulk.bulk_deny(ids * 3, ADMIN_ID)

        assert result.updated == 1
        assert result.total == 1


class TestBulkApprove:
    @pytest.mark.asyncio
    async def test_bulk_approve_defers_submission(self):
        store = make_store()
        ids = await make_requests(store, 2)
        schedule = MagicMock()
        bulk = BulkOperations(store, BulkSettings(deferred_submit_delay_seconds=45), schedule_sync=schedule)

        result = await bulk.bulk_approve(ids, ADMIN_ID)

        assert result.updated == 2
        for request_id in ids:
            loaded = await store.get_request_with_items(request_id)
            assert loaded.request.status == "submitted"
            assert loaded.request.status_reason == BULK_APPROVED_NOTE
            assert loaded.items[0].provider_id is None
        schedule.assert_called_once_with(45)

    @pytest.mark.asyncio
    async def test_no_sync_scheduled_when_nothing_changed(self):
        store = make_store()
        ids = await make_requests(store, 1, status="denied")
        schedule = MagicMock()
        bulk = BulkOperations(store, BulkSettings(), schedule_sync=schedule)

        result = await bulk.bulk_approve(ids, ADMIN_ID)

        assert result.updated == 0
        schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_zero_delay_waits_for_scheduled_pass(self):
        store = make_store()
        ids = await make_requests(store, 1)
        schedule = MagicMock()
        bulk = BulkOperations(store, BulkSettings(deferred_submit_delay_seconds=0), schedule_sync=schedule)

        result = await bulk.bulk_approve(ids, ADMIN_ID)

        assert result.updated == 1
        assert (await store.get_request_with_items(ids[0])).request.status == "submitted"
        schedule.assert_not_called()


class TestBulkGuards:
    @pytest.mark.asyncio
    async def test_limit_enforced(self):
        store = make_store()
        bulk = BulkOperations(store, BulkSettings(max_ids=2))
        with pytest.raises(BulkLimitError):
            await bulk.bulk_deny(["a", "b", "c"], ADMIN_ID)

    @pytest.mark.asyncio
    async def test_empty_ids_rejected(self):
        bulk = BulkOperations(make_store(), BulkSettings())
        with pytest.raises(BulkLimitError):
            await bulk.bulk_approve(["", " "], ADMIN_ID)

    @pytest.mark.asyncio
    async def test_requires_admin(self):
        store = make_store()
        ids = await make_requests(store, 1)
        bulk = BulkOperations(store, BulkSettings())
        with pytest.raises(PermissionDeniedError):
            await bulk.bulk_deny(ids, 2)
        assert (await store.get_request_with_items(ids[0])).request.status == "pending"

    @pytest.mark.asyncio
    async def test_run_dispatches_action(self):
        store = make_store()
        ids = await make_requests(store, 1)
        bulk = BulkOperations(store, BulkSettings())

        result = await bulk.run("deny", ids, ADMIN_ID, reason="spam")

        assert result.updated == 1
        with pytest.raises(ValueError):
            await bulk.run("explode", ids, ADMIN_ID)
