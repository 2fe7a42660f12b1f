"""Per-event structural validation.

An event is valid when both userId and action are non-empty. Invalid
events are only logged: they stay in the raw collection with
processed=false and are claimed again on later ticks.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from tally.models.events import RawEvent

logger = logging.getLogger("tally.pipeline.validate")


def validation_error(event: RawEvent) -> str | None:
    """Return why an event is invalid, or None if it is valid."""
    missing = [
        name for name, value in (("userId", event.user_id), ("action", event.action))
        if not value
    ]
    if missing:
        return f"Missing {' and '.join(missing)}"
    return None


def partition_events(
    events: Iterable[RawEvent], job_id: str = ""
) -> tuple[list[RawEvent], list[RawEvent]]:
    """Split a batch into (valid, invalid), preserving batch order."""
    valid: list[RawEvent] = []
    invalid: list[RawEvent] = []
    for event in events:
        error = validation_error(event)
        if error is None:
            valid.append(event)
            continue
        invalid.append(event)
        logger.warning(
            "Skipping event %s: %s", event.id, error,
            extra={"job_id": job_id, "event_id": event.id},
        )
    return valid, invalid
