"""Fold valid events into a local tally."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable

from tally.models.events import RawEvent
from tally.models.metrics import EventTally


def aggregate_events(events: Iterable[RawEvent]) -> EventTally:
    """Count events overall, per action and per user.

    Pure and order-insensitive. Callers pass only validated events.
    """
    by_action: Counter[str] = Counter()
    by_user: Counter[str] = Counter()
    count = 0
    for event in events:
        count += 1
        by_action[event.action] += 1
        by_user[event.user_id] += 1
    return EventTally(count=count, by_action=dict(by_action), by_user=dict(by_user))
