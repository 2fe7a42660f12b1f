"""Pytest configuration for TALLY test suite."""

import os

# Ensure test environment variables are set before any imports
os.environ.setdefault("TALLY_STORE_TYPE", "memory")
os.environ.setdefault("TALLY_LOG_LEVEL", "warning")

import pytest_asyncio  # noqa: E402

from tally.store.base import RAW_COLLECTION  # noqa: E402
from tally.store.memory import InMemoryEventStore  # noqa: E402


class RecordingStore(InMemoryEventStore):
    """In-memory store that records every core operation it serves."""

    def __init__(self):
        super().__init__()
        self.calls: list[str] = []
        self.fail_on: dict[str, Exception] = {}

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise self.fail_on[name]

    async def claim_unprocessed(self, limit):
        self._enter("claim_unprocessed")
        return await super().claim_unprocessed(limit)

    async def archive_and_remove(self, ids):
        self._enter("archive_and_remove")
        return await super().archive_and_remove(ids)

    async def read_metrics_snapshot(self):
        self._enter("read_metrics_snapshot")
        return await super().read_metrics_snapshot()

    async def upsert_metrics_snapshot(self, merged):
        self._enter("upsert_metrics_snapshot")
        return await super().upsert_metrics_snapshot(merged)


def raw_doc(user_id="u1", action="click", **extra) -> dict:
    """A raw collection document as the ingestion endpoint writes it."""
    doc = {
        "userId": user_id,
        "action": action,
        "timestamp": "2026-01-15T08:00:00Z",
        "createdAt": "2026-01-15T08:00:01Z",
        "processed": False,
    }
    doc.update(extra)
    return doc


@pytest_asyncio.fixture
async def store():
    s = RecordingStore()
    await s.connect()
    yield s
    await s.disconnect()


def seed(store: InMemoryEventStore, *pairs: tuple) -> list[str]:
    """Insert (userId, action) raw documents and return their ids."""
    return [store.put_document(RAW_COLLECTION, raw_doc(u, a)) for u, a in pairs]
