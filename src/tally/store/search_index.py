"""Search index event store.

Backs the TALLY collections with Elasticsearch-compatible indices,
one index per collection named '<prefix>-<collection>'. Writes use
refresh='wait_for' so a following read in the next tick sees them.

The archive copy keeps the raw document's _id, so re-running an
archive after a failure between copy and delete overwrites the same
archive document instead of adding a second one.

TLS with custom CA certificates for production deployments.
"""

from __future__ import annotations

import logging
import ssl
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from elasticsearch import AsyncElasticsearch, BadRequestError
from elasticsearch.helpers import async_bulk

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

logger = logging.getLogger("tally.store.search_index")

_EVENT_PROPERTIES: dict[str, Any] = {
    "userId": {"type": "keyword"},
    "action": {"type": "keyword"},
    "timestamp": {"type": "keyword"},
    "createdAt": {"type": "date"},
    "processed": {"type": "boolean"},
}

# Per-user and per-action maps are open-ended; keep them out of the
# mapping so new keys never add index fields.
MAPPINGS: dict[str, dict[str, Any]] = {
    RAW_COLLECTION: {"properties": _EVENT_PROPERTIES},
    PROCESSED_COLLECTION: {
        "properties": {**_EVENT_PROPERTIES, "processedAt": {"type": "date"}},
    },
    METRICS_COLLECTION: {
        "properties": {
            "totalEvents": {"type": "long"},
            "eventsByAction": {"type": "object", "enabled": False},
            "eventsByUser": {"type": "object", "enabled": False},
            "createdAt": {"type": "date"},
            "updatedAt": {"type": "date"},
        },
    },
    STATUS_COLLECTION: {
        "properties": {
            "service": {"type": "keyword"},
            "timestamp": {"type": "date"},
        },
    },
}


class SearchIndexEventStore(BaseEventStore):
    """Event store over an Elasticsearch-compatible search index API.

    Required config keys:
        endpoint: str         - Elasticsearch URL (e.g. https://host:9200)

    Optional config keys:
        auth_user: str        - Username for authentication
        auth_password: str    - Password for authentication
        tls_verify: bool      - Verify TLS certificates (default: True)
        ca_cert: str          - Path to CA certificate file
        index_prefix: str     - Prefix for collection indices (default: 'tally')
        request_timeout: int  - Per-request timeout in seconds (default: 30)
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        client: AsyncElasticsearch | None = None,
    ):
        super().__init__(config)
        self._client = client
        self._tls_verify = self.config.get("tls_verify", True)
        self._ca_cert = self.config.get("ca_cert", "")
        self._index_prefix = self.config.get("index_prefix", "tally")

    @property
    def store_type(self) -> str:
        return "search_index"

    def index_name(self, collection: str) -> str:
        return f"{self._index_prefix}-{collection}"

    def _build_ssl_context(self) -> ssl.SSLContext:
        """Build SSL context from configuration."""
        if not self._tls_verify:
            ctx = ssl.create_default_context()
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
            return ctx

        if self._ca_cert:
            return ssl.create_default_context(cafile=self._ca_cert)

        return ssl.create_default_context()

    def _build_client(self) -> AsyncElasticsearch:
        endpoint = self.config["endpoint"]
        auth_user = self.config.get("auth_user", "")
        auth_password = self.config.get("auth_password", "")

        client_kwargs: dict[str, Any] = {
            "hosts": [endpoint],
            "request_timeout": int(self.config.get("request_timeout", 30)),
            "retry_on_timeout": True,
            "max_retries": 3,
        }
        if str(endpoint).startswith("https"):
            client_kwargs["ssl_context"] = self._build_ssl_context()
        if auth_user and auth_password:
            client_kwargs["basic_auth"] = (auth_user, auth_password)

        return AsyncElasticsearch(**client_kwargs)

    async def connect(self) -> StoreState:
        """Connect to Elasticsearch and make sure every index exists."""
        self._state = StoreState.CONNECTING
        try:
            if self._client is None:
                self._client = self._build_client()

            # Validate connection
            info = await self._client.info()
            version = info["version"]["number"]
            logger.info(
                "Connected to Elasticsearch %s at %s",
                version, self.config.get("endpoint", ""),
            )

            await self._ensure_indices()
            self._state = StoreState.CONNECTED
        except Exception as e:
            self._state = StoreState.FAILED
            self._record_error(f"Connection failed: {e}")

        return self._state

    async def _ensure_indices(self) -> None:
        """Create any missing collection index with its mapping."""
        for collection, mappings in MAPPINGS.items():
            name = self.index_name(collection)
            if await self._client.indices.exists(index=name):
                continue
            try:
                await self._client.indices.create(index=name, mappings=mappings)
                logger.info("Created index %s", name)
            except BadRequestError as e:
                # Another process created it between exists and create
                if e.error != "resource_already_exists_exception":
                    raise

    async def disconnect(self) -> None:
        """Close the Elasticsearch client connection."""
        if self._client:
            await self._client.close()
            self._client = None
        self._state = StoreState.DISCONNECTED
        logger.info("Search index store disconnected")

    async def ping(self) -> bool:
        if not self._client or self._state != StoreState.CONNECTED:
            return False
        return bool(await self._client.ping())

    async def claim_unprocessed(self, limit: int) -> list[RawEvent]:
        self._require_connected()
        resp = await self._client.search(
            index=self.index_name(RAW_COLLECTION),
            query={"term": {"processed": False}},
            size=limit,
            sort=[{"_doc": "asc"}],
        )
        hits = resp["hits"]["hits"]
        return [RawEvent.from_document(hit["_id"], hit["_source"]) for hit in hits]

    async def archive_and_remove(self, ids: Iterable[str]) -> int:
        self._require_connected()
        unique_ids = list(dict.fromkeys(ids))
        if not unique_ids:
            return 0

        raw_index = self.index_name(RAW_COLLECTION)
        resp = await self._client.mget(index=raw_index, ids=unique_ids)
        docs = [d for d in resp["docs"] if d.get("found")]
        if not docs:
            return 0

        processed_at = utcnow()
        await async_bulk(
            self._client,
            [
                {
                    "_op_type": "index",
                    "_index": self.index_name(PROCESSED_COLLECTION),
                    "_id": d["_id"],
                    "_source": archive_document(d["_source"], processed_at),
                }
                for d in docs
            ],
            refresh="wait_for",
        )
        await async_bulk(
            self._client,
            [
                {"_op_type": "delete", "_index": raw_index, "_id": d["_id"]}
                for d in docs
            ],
            refresh="wait_for",
        )
        return len(docs)

    async def read_metrics_snapshot(self) -> MetricsSnapshot | None:
        self._require_connected()
        resp = await self._client.search(
            index=self.index_name(METRICS_COLLECTION),
            query={"match_all": {}},
            size=1,
            sort=[{"updatedAt": {"order": "desc", "unmapped_type": "date"}}],
        )
        hits = resp["hits"]["hits"]
        if not hits:
            return None
        return MetricsSnapshot.from_document(hits[0]["_id"], hits[0]["_source"])

    async def upsert_metrics_snapshot(self, merged: MetricsSnapshot) -> MetricsSnapshot:
        self._require_connected()
        resp = await self._client.index(
            index=self.index_name(METRICS_COLLECTION),
            id=merged.id,
            document=merged.to_document(),
            refresh="wait_for",
        )
        return merged.model_copy(update={"id": resp["_id"]})

    async def insert_event(self, event: RawEvent) -> str:
        self._require_connected()
        resp = await self._client.index(
            index=self.index_name(RAW_COLLECTION),
            document=event.to_document(),
            refresh="wait_for",
        )
        return resp["_id"]

    async def delete_archived_before(self, cutoff: datetime) -> int:
        self._require_connected()
        resp = await self._client.delete_by_query(
            index=self.index_name(PROCESSED_COLLECTION),
            query={"range": {"processedAt": {"lt": cutoff.isoformat()}}},
            conflicts="proceed",
            refresh=True,
        )
        return int(resp["deleted"])

    async def write_heartbeat(self, service: str, heartbeat: dict[str, Any]) -> None:
        self._require_connected()
        await self._client.index(
            index=self.index_name(STATUS_COLLECTION),
            id=service,
            document=heartbeat,
            refresh="wait_for",
        )
