"""Tests for the search index store backend against a mocked client."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from tally.models.metrics import MetricsSnapshot
from tally.store.base import StoreError, StoreState
from tally.store.search_index import MAPPINGS, SearchIndexEventStore


def _client() -> AsyncMock:
    client = AsyncMock()
    client.info.return_value = {"version": {"number": "8.13.0"}}
    client.indices.exists.return_value = True
    return client


async def _connected(client=None, **config) -> SearchIndexEventStore:
    store = SearchIndexEventStore(
        {"endpoint": "http://es:9200", "index_prefix": "t", **config},
        client=client or _client(),
    )
    assert await store.connect() is StoreState.CONNECTED
    return store


def _hits(*docs):
    return {"hits": {"hits": [{"_id": i, "_source": s} for i, s in docs]}}


class TestConnect:
    """Verify connection and index bootstrap."""

    @pytest.mark.asyncio
    async def test_creates_missing_indices(self):
        client = _client()
        client.indices.exists.return_value = False
        await _connected(client)

        created = {c.kwargs["index"] for c in client.indices.create.call_args_list}
        assert created == {f"t-{name}" for name in MAPPINGS}

    @pytest.mark.asyncio
    async def test_connection_failure_does_not_raise(self):
        client = _client()
        client.info.side_effect = ConnectionError("refused")
        store = SearchIndexEventStore({"endpoint": "http://es:9200"}, client=client)

        assert await store.connect() is StoreState.FAILED
        assert store.health().errors == 1

    @pytest.mark.asyncio
    async def test_operations_require_connection(self):
        store = SearchIndexEventStore({"endpoint": "http://es:9200"}, client=_client())
        with pytest.raises(StoreError):
            await store.read_metrics_snapshot()

    @pytest.mark.asyncio
    async def test_disconnect_closes_client(self):
        client = _client()
        store = await _connected(client)
        await store.disconnect()
        client.close.assert_awaited_once()
        assert store.state is StoreState.DISCONNECTED


class TestCoreOperations:
    """Verify the queries issued for the worker core."""

    @pytest.mark.asyncio
    async def test_claim_unprocessed(self):
        client = _client()
        client.search.return_value = _hits(
            ("a", {"userId": "u1", "action": "click", "processed": False}),
            ("b", {"action": "view", "processed": False}),
        )
        store = await _connected(client)

        events = await store.claim_unprocessed(50)

        kwargs = client.search.call_args.kwargs
        assert kwargs["index"] == "t-events_raw"
        assert kwargs["query"] == {"term": {"processed": False}}
        assert kwargs["size"] == 50
        assert [(e.id, e.user_id) for e in events] == [("a", "u1"), ("b", "")]

    @pytest.mark.asyncio
    async def test_archive_and_remove(self, monkeypatch):
        bulk = AsyncMock(return_value=(1, []))
        monkeypatch.setattr("tally.store.search_index.async_bulk", bulk)
        client = _client()
        client.mget.return_value = {
            "docs": [
                {"_id": "a", "found": True, "_source": {"userId": "u1", "action": "click"}},
                {"_id": "b", "found": False},
            ]
        }
        store = await _connected(client)

        assert await store.archive_and_remove(["a", "b", "a"]) == 1

        assert client.mget.call_args.kwargs["ids"] == ["a", "b"]
        copy_actions = bulk.call_args_list[0].args[1]
        delete_actions = bulk.call_args_list[1].args[1]
        assert copy_actions[0]["_index"] == "t-events_processed"
        assert copy_actions[0]["_id"] == "a"
        assert isinstance(copy_actions[0]["_source"]["processedAt"], datetime)
        assert delete_actions == [{"_op_type": "delete", "_index": "t-events_raw", "_id": "a"}]

    @pytest.mark.asyncio
    async def test_archive_nothing(self, monkeypatch):
        bulk = AsyncMock()
        monkeypatch.setattr("tally.store.search_index.async_bulk", bulk)
        client = _client()
        store = await _connected(client)

        assert await store.archive_and_remove([]) == 0
        client.mget.assert_not_awaited()
        bulk.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_read_absent_snapshot(self):
        client = _client()
        client.search.return_value = _hits()
        store = await _connected(client)
        assert await store.read_metrics_snapshot() is None

    @pytest.mark.asyncio
    async def test_read_snapshot(self):
        client = _client()
        client.search.return_value = _hits((
            "m1",
            {
                "totalEvents": 3,
                "eventsByAction": {"click": 3},
                "eventsByUser": {"u1": 3},
                "createdAt": "2026-01-01T00:00:00Z",
                "updatedAt": "2026-01-02T00:00:00Z",
            },
        ))
        store = await _connected(client)

        snapshot = await store.read_metrics_snapshot()

        assert snapshot.id == "m1"
        assert snapshot.total_events == 3
        assert snapshot.events_by_action == {"click": 3}

    @pytest.mark.asyncio
    async def test_upsert_targets_existing_id(self):
        client = _client()
        client.index.return_value = {"_id": "m1"}
        store = await _connected(client)

        saved = await store.upsert_metrics_snapshot(MetricsSnapshot(id="m1", total_events=2))

        kwargs = client.index.call_args.kwargs
        assert kwargs["index"] == "t-metrics"
        assert kwargs["id"] == "m1"
        assert kwargs["document"]["totalEvents"] == 2
        assert saved.id == "m1"

    @pytest.mark.asyncio
    async def test_upsert_inserts_without_id(self):
        client = _client()
        client.index.return_value = {"_id": "generated"}
        store = await _connected(client)

        saved = await store.upsert_metrics_snapshot(MetricsSnapshot())

        assert client.index.call_args.kwargs["id"] is None
        assert saved.id == "generated"


class TestCollaboratorOperations:
    """Verify ingestion and retention calls."""

    @pytest.mark.asyncio
    async def test_delete_archived_before(self):
        client = _client()
        client.delete_by_query.return_value = {"deleted": 4}
        store = await _connected(client)
        cutoff = datetime(2026, 1, 1, tzinfo=timezone.utc)

        assert await store.delete_archived_before(cutoff) == 4
        kwargs = client.delete_by_query.call_args.kwargs
        assert kwargs["index"] == "t-events_processed"
        assert kwargs["query"] == {"range": {"processedAt": {"lt": cutoff.isoformat()}}}

    @pytest.mark.asyncio
    async def test_insert_event(self):
        from tally.models.events import RawEvent

        client = _client()
        client.index.return_value = {"_id": "e1"}
        store = await _connected(client)

        event_id = await store.insert_event(RawEvent(user_id="u1", action="click"))

        assert event_id == "e1"
        document = client.index.call_args.kwargs["document"]
        assert document["userId"] == "u1"
        assert document["processed"] is False
        assert "id" not in document
