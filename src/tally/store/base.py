"""Abstract event store interface.

All store backends implement this contract. The worker core needs
exactly four operations from a store: claim a capped batch of
unprocessed events, archive-and-remove a set of events by identifier,
read the metrics snapshot, and upsert the metrics snapshot. The
ingestion API and the retention job use a few more.

Backends own their connection. connect() never raises; it reports
FAILED instead so callers can decide how to exit. Every other
operation raises on failure and leaves error accounting to the caller.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from tally.models.events import RawEvent
from tally.models.metrics import MetricsSnapshot

logger = logging.getLogger("tally.store")

RAW_COLLECTION = "events_raw"
PROCESSED_COLLECTION = "events_processed"
METRICS_COLLECTION = "metrics"
STATUS_COLLECTION = "cron_status"


class StoreError(Exception):
    """Raised when a store operation cannot be attempted."""


class StoreState(str, Enum):
    """Store connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class StoreHealth:
    """Health snapshot for a store connection."""
    state: StoreState = StoreState.DISCONNECTED
    store_type: str = ""
    endpoint: str = ""
    operations: int = 0
    errors: int = 0
    message: str = ""
    checked_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class BaseEventStore(ABC):
    """Abstract base for all TALLY event store backends.

    Configuration is passed as a plain dict sourced from environment
    variables (see StoreConfig.to_store_config).
    """

    def __init__(self, config: dict[str, Any] | None = None):
        self.config = config or {}
        self._state = StoreState.DISCONNECTED
        self._operations = 0
        self._errors = 0

    @property
    @abstractmethod
    def store_type(self) -> str:
        """Return the store type identifier (e.g. 'search_index', 'memory')."""
        ...

    @property
    def state(self) -> StoreState:
        return self._state

    @abstractmethod
    async def connect(self) -> StoreState:
        """Establish the store connection.

        Returns the resulting state. Must not raise -- connection
        failures return FAILED.
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Release all resources and close connections."""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the store answers right now."""
        ...

    # -- worker core ---------------------------------------------------

    @abstractmethod
    async def claim_unprocessed(self, limit: int) -> list[RawEvent]:
        """Read up to limit events with processed == false. Read-only."""
        ...

    @abstractmethod
    async def archive_and_remove(self, ids: Iterable[str]) -> int:
        """Move the given raw events into the archive.

        Re-reads the stored documents, inserts copies stamped with
        processedAt into the archive, then deletes the originals.
        Returns the number of documents archived.
        """
        ...

    @abstractmethod
    async def read_metrics_snapshot(self) -> MetricsSnapshot | None:
        """Return the singleton metrics snapshot, or None if absent."""
        ...

    @abstractmethod
    async def upsert_metrics_snapshot(self, merged: MetricsSnapshot) -> MetricsSnapshot:
        """Write the snapshot under its id, inserting if it has none.

        Returns the snapshot carrying its persisted id.
        """
        ...

    # -- collaborators -------------------------------------------------

    @abstractmethod
    async def insert_event(self, event: RawEvent) -> str:
        """Append a raw event and return its identifier."""
        ...

    @abstractmethod
    async def delete_archived_before(self, cutoff: datetime) -> int:
        """Delete archived events with processedAt < cutoff. Returns count."""
        ...

    @abstractmethod
    async def write_heartbeat(self, service: str, heartbeat: dict[str, Any]) -> None:
        """Upsert the status document for a service."""
        ...

    def health(self) -> StoreHealth:
        """Report current store health."""
        return StoreHealth(
            state=self._state,
            store_type=self.store_type,
            endpoint=str(self.config.get("endpoint", "")),
            operations=self._operations,
            errors=self._errors,
        )

    def _require_connected(self) -> None:
        if self._state != StoreState.CONNECTED:
            raise StoreError(
                f"Store {self.store_type} is not connected (state={self._state.value})"
            )
        self._operations += 1

    def _record_error(self, msg: str) -> None:
        """Track errors. Call from subclass on failures."""
        self._errors += 1
        logger.warning("Store %s error: %s", self.store_type, msg)


def create_store(store_type: str, config: dict[str, Any]) -> BaseEventStore:
    """Instantiate the backend named by store_type."""
    if store_type == "search_index":
        from tally.store.search_index import SearchIndexEventStore
        return SearchIndexEventStore(config)
    if store_type == "memory":
        from tally.store.memory import InMemoryEventStore
        return InMemoryEventStore(config)
    raise ValueError(f"Unknown store type: {store_type!r}")
