"""Merge a local tally into the persisted metrics snapshot.

The merge is a componentwise sum, so it is commutative and
associative over tallies: folding T1 then T2 into a snapshot gives the
same counters as folding T1 + T2 once. It is not idempotent -- folding
the same tally twice counts it twice. The worker avoids that by
retiring a batch only after its merge succeeds, which leaves the
merge-then-crash-before-retire window as the one way a batch is
counted again.
"""

from __future__ import annotations

import logging
from datetime import datetime

from tally.models.events import utcnow
from tally.models.metrics import EventTally, MetricsSnapshot
from tally.store.base import BaseEventStore

logger = logging.getLogger("tally.pipeline.merge")


def _merge_counts(current: dict[str, int], local: dict[str, int]) -> dict[str, int]:
    merged = dict(current)
    for key, count in local.items():
        merged[key] = merged.get(key, 0) + count
    return merged


def merge_snapshot(
    existing: MetricsSnapshot | None,
    tally: EventTally,
    now: datetime | None = None,
) -> MetricsSnapshot:
    """Return a new snapshot with the tally folded in.

    An absent snapshot is treated as all zeros. Keys the tally does not
    mention are carried through unchanged. The existing identifier and
    createdAt are kept so the write lands on the same document.
    """
    now = now or utcnow()
    if existing is None:
        existing = MetricsSnapshot(created_at=now, updated_at=now)

    return MetricsSnapshot(
        id=existing.id,
        total_events=existing.total_events + tally.count,
        events_by_action=_merge_counts(existing.events_by_action, tally.by_action),
        events_by_user=_merge_counts(existing.events_by_user, tally.by_user),
        created_at=existing.created_at,
        updated_at=now,
    )


async def apply_tally(store: BaseEventStore, tally: EventTally) -> MetricsSnapshot:
    """Read the snapshot, fold the tally in, and write it back."""
    existing = await store.read_metrics_snapshot()
    merged = merge_snapshot(existing, tally)
    saved = await store.upsert_metrics_snapshot(merged)
    if existing is None:
        logger.info("Created metrics snapshot %s", saved.id)
    if not saved.is_consistent():
        logger.warning(
            "Metrics snapshot %s counters disagree: total=%d actions=%d users=%d",
            saved.id,
            saved.total_events,
            sum(saved.events_by_action.values()),
            sum(saved.events_by_user.values()),
        )
    return saved
