"""Tests for merging tallies into the metrics snapshot."""

from datetime import datetime, timedelta, timezone

import pytest

from tally.models.metrics import EventTally, MetricsSnapshot
from tally.pipeline.merge import apply_tally, merge_snapshot

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

T1 = EventTally(count=3, by_action={"click": 2, "purchase": 1}, by_user={"u1": 2, "u2": 1})
T2 = EventTally(count=2, by_action={"click": 1, "view": 1}, by_user={"u2": 1, "u3": 1})


def _existing() -> MetricsSnapshot:
    return MetricsSnapshot(
        id="m1",
        total_events=4,
        events_by_action={"click": 1, "signup": 3},
        events_by_user={"u1": 1, "u9": 3},
        created_at=NOW - timedelta(days=3),
        updated_at=NOW - timedelta(hours=1),
    )


class TestMergeSnapshot:
    """Verify the componentwise merge."""

    def test_absent_snapshot_is_zero(self):
        merged = merge_snapshot(None, T1, NOW)
        assert merged.id is None
        assert merged.total_events == 3
        assert merged.events_by_action == {"click": 2, "purchase": 1}
        assert merged.events_by_user == {"u1": 2, "u2": 1}
        assert merged.created_at == NOW
        assert merged.updated_at == NOW

    def test_carries_untouched_keys(self):
        merged = merge_snapshot(_existing(), T1, NOW)
        assert merged.total_events == 7
        assert merged.events_by_action == {"click": 3, "signup": 3, "purchase": 1}
        assert merged.events_by_user == {"u1": 3, "u9": 3, "u2": 1}

    def test_keeps_identity_and_created_at(self):
        existing = _existing()
        merged = merge_snapshot(existing, T1, NOW)
        assert merged.id == "m1"
        assert merged.created_at == existing.created_at
        assert merged.updated_at == NOW

    def test_does_not_mutate_existing(self):
        existing = _existing()
        merge_snapshot(existing, T1, NOW)
        assert existing.events_by_action == {"click": 1, "signup": 3}

    @pytest.mark.parametrize("start", [None, "existing"])
    def test_disjoint_batches_fold_like_their_sum(self, start):
        base = _existing() if start else None
        stepwise = merge_snapshot(merge_snapshot(base, T1, NOW), T2, NOW)
        combined = merge_snapshot(base, T1 + T2, NOW)
        assert stepwise.total_events == combined.total_events
        assert stepwise.events_by_action == combined.events_by_action
        assert stepwise.events_by_user == combined.events_by_user

    def test_merge_order_irrelevant(self):
        ab = merge_snapshot(merge_snapshot(None, T1, NOW), T2, NOW)
        ba = merge_snapshot(merge_snapshot(None, T2, NOW), T1, NOW)
        assert ab.events_by_action == ba.events_by_action
        assert ab.events_by_user == ba.events_by_user

    def test_conservation(self):
        merged = merge_snapshot(_existing(), T1 + T2, NOW)
        assert merged.is_consistent()


class TestApplyTally:
    """Verify read-merge-upsert against a store."""

    @pytest.mark.asyncio
    async def test_creates_then_updates_single_document(self, store):
        first = await apply_tally(store, T1)
        second = await apply_tally(store, T2)

        assert first.id is not None
        assert second.id == first.id
        docs = store.documents("metrics")
        assert list(docs) == [first.id]
        assert docs[first.id]["totalEvents"] == 5
        assert docs[first.id]["eventsByUser"] == {"u1": 2, "u2": 2, "u3": 1}
