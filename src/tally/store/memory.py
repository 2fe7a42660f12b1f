"""Process-local event store.

Keeps every collection as an insertion-ordered dict of documents.
Nothing survives a restart, so this backend is for local runs and the
test suite; it shares no state between processes.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from tally.models.events import RawEvent, archive_document, utcnow
from tally.models.metrics import MetricsSnapshot
from tally.store.base import (
    METRICS_COLLECTION,
    PROCESSED_COLLECTION,
    RAW_COLLECTION,
    STATUS_COLLECTION,
    BaseEventStore,
    StoreState,
)

logger = logging.getLogger("tally.store.memory")


class InMemoryEventStore(BaseEventStore):
    """Dict-backed store implementing the full store contract."""

    def __init__(self, config: dict[str, Any] | None = None):
        super().__init__(config)
        self._collections: dict[str, dict[str, dict[str, Any]]] = {
            name: {}
            for name in (
                RAW_COLLECTION,
                PROCESSED_COLLECTION,
                METRICS_COLLECTION,
                STATUS_COLLECTION,
            )
        }

    @property
    def store_type(self) -> str:
        return "memory"

    async def connect(self) -> StoreState:
        self._state = StoreState.CONNECTED
        logger.info("In-memory store ready")
        return self._state

    async def disconnect(self) -> None:
        self._state = StoreState.DISCONNECTED
        logger.info("In-memory store disconnected")

    async def ping(self) -> bool:
        return self._state == StoreState.CONNECTED

    def put_document(
        self, collection: str, body: dict[str, Any], doc_id: str | None = None
    ) -> str:
        """Store a raw document body as-is and return its identifier."""
        doc_id = doc_id or uuid.uuid4().hex
        self._collections[collection][doc_id] = copy.deepcopy(body)
        return doc_id

    def documents(self, collection: str) -> dict[str, dict[str, Any]]:
        """Return a copy of every document in a collection, keyed by id."""
        return copy.deepcopy(self._collections[collection])

    async def claim_unprocessed(self, limit: int) -> list[RawEvent]:
        self._require_connected()
        events: list[RawEvent] = []
        for doc_id, body in self._collections[RAW_COLLECTION].items():
            if len(events) >= limit:
                break
            if body.get("processed") is False:
                events.append(RawEvent.from_document(doc_id, body))
        return events

    async def archive_and_remove(self, ids: Iterable[str]) -> int:
        self._require_connected()
        raw = self._collections[RAW_COLLECTION]
        found = [doc_id for doc_id in dict.fromkeys(ids) if doc_id in raw]
        if not found:
            return 0

        processed_at = utcnow()
        archive = self._collections[PROCESSED_COLLECTION]
        for doc_id in found:
            archive[doc_id] = archive_document(copy.deepcopy(raw[doc_id]), processed_at)
        for doc_id in found:
            del raw[doc_id]
        return len(found)

    async def read_metrics_snapshot(self) -> MetricsSnapshot | None:
        self._require_connected()
        docs = self._collections[METRICS_COLLECTION]
        if not docs:
            return None
        doc_id, body = max(docs.items(), key=lambda item: item[1]["updatedAt"])
        return MetricsSnapshot.from_document(doc_id, copy.deepcopy(body))

    async def upsert_metrics_snapshot(self, merged: MetricsSnapshot) -> MetricsSnapshot:
        self._require_connected()
        doc_id = self.put_document(
            METRICS_COLLECTION, merged.to_document(), doc_id=merged.id
        )
        return merged.model_copy(update={"id": doc_id})

    async def insert_event(self, event: RawEvent) -> str:
        self._require_connected()
        return self.put_document(RAW_COLLECTION, event.to_document())

    async def delete_archived_before(self, cutoff: datetime) -> int:
        self._require_connected()
        archive = self._collections[PROCESSED_COLLECTION]
        expired = [
            doc_id for doc_id, body in archive.items()
            if body.get("processedAt") is not None and body["processedAt"] < cutoff
        ]
        for doc_id in expired:
            del archive[doc_id]
        return len(expired)

    async def write_heartbeat(self, service: str, heartbeat: dict[str, Any]) -> None:
        self._require_connected()
        self.put_document(STATUS_COLLECTION, heartbeat, doc_id=service)
