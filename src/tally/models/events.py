"""Raw and processed event documents.

A RawEvent is written once by the ingestion endpoint and never
updated in place. The worker reads it, folds it into the metrics
snapshot, and retires it: the full stored document is copied into
the archive with a processedAt stamp, then the original is deleted.

Stored documents use camelCase field names; the models expose
snake_case attributes with camelCase aliases.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RawEvent(BaseModel):
    """An unprocessed analytics event as stored in the raw collection.

    user_id and action default to empty strings so that malformed
    documents still load and reach validation instead of failing the
    whole claim.
    """
    id: str = Field(
        default="",
        description="Store-assigned document identifier"
    )
    user_id: str = Field(
        default="",
        alias="userId",
        description="User that produced the event"
    )
    action: str = Field(
        default="",
        description="Action name (e.g. 'click', 'purchase')"
    )
    timestamp: str = Field(
        default="",
        description="Client-reported event time, ISO-8601"
    )
    created_at: Optional[datetime] = Field(
        default=None,
        alias="createdAt",
        description="When the ingestion endpoint stored the event"
    )
    processed: bool = Field(
        default=False,
        description="Always false while the event sits in the raw collection"
    )

    class Config:
        frozen = True
        populate_by_name = True

    @field_validator("user_id", "action", "timestamp", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    @classmethod
    def from_document(cls, doc_id: str, source: dict[str, Any]) -> RawEvent:
        """Build a RawEvent from a stored document body."""
        return cls.model_validate({**source, "id": str(doc_id)})

    def to_document(self) -> dict[str, Any]:
        """Render the stored document body (identifier excluded)."""
        return self.model_dump(by_alias=True, exclude={"id"})


class ProcessedEvent(RawEvent):
    """A retired event in the archive collection."""
    processed_at: datetime = Field(
        default_factory=utcnow,
        alias="processedAt",
        description="When the worker retired the event"
    )


def archive_document(source: dict[str, Any], processed_at: datetime) -> dict[str, Any]:
    """Copy a raw document body for the archive, stamped with processedAt.

    Every field of the stored document is preserved, including fields
    the models do not know about.
    """
    doc = dict(source)
    doc.pop("_id", None)
    doc["processedAt"] = processed_at
    return doc
