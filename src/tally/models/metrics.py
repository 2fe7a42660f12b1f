"""Metrics snapshot and per-tick tally models.

The MetricsSnapshot is a singleton document: the worker reads whatever
snapshot exists and writes the merged result back under the same
identifier. Its conservation invariant is

    total_events == sum(events_by_action) == sum(events_by_user)

which holds after every merge as long as every tally folded into it
satisfies the same invariant.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from tally.models.events import utcnow


class EventTally(BaseModel):
    """Local counters accumulated from one batch of valid events."""
    count: int = Field(default=0, ge=0)
    by_action: dict[str, int] = Field(default_factory=dict)
    by_user: dict[str, int] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.count == 0

    def __add__(self, other: EventTally) -> EventTally:
        """Componentwise sum of two tallies."""
        return EventTally(
            count=self.count + other.count,
            by_action=dict(Counter(self.by_action) + Counter(other.by_action)),
            by_user=dict(Counter(self.by_user) + Counter(other.by_user)),
        )


class MetricsSnapshot(BaseModel):
    """The persisted aggregate of every event folded so far."""
    id: Optional[str] = Field(
        default=None,
        description="Store identifier; None until first persisted"
    )
    total_events: int = Field(default=0, ge=0, alias="totalEvents")
    events_by_action: dict[str, int] = Field(
        default_factory=dict, alias="eventsByAction"
    )
    events_by_user: dict[str, int] = Field(
        default_factory=dict, alias="eventsByUser"
    )
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")

    class Config:
        populate_by_name = True

    @classmethod
    def from_document(cls, doc_id: str, source: dict[str, Any]) -> MetricsSnapshot:
        body = {k: v for k, v in source.items() if v is not None}
        return cls.model_validate({**body, "id": str(doc_id)})

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"id"})

    def is_consistent(self) -> bool:
        """Check the conservation invariant."""
        return (
            self.total_events
            == sum(self.events_by_action.values())
            == sum(self.events_by_user.values())
        )


class TickReport(BaseModel):
    """Outcome of one pipeline tick."""
    job_id: str
    claimed: int = 0
    aggregated: int = 0
    invalid: int = 0
    archived: int = 0

    @property
    def empty(self) -> bool:
        return self.claimed == 0
