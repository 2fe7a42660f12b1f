"""Batch processing: one pipeline tick.

This module drives a single tick through the full sequence:
claim -> validate -> aggregate -> merge -> retire.

Store failures are not caught here. They propagate to the scheduler,
which owns failure counting and escalation.
"""

from __future__ import annotations

import logging

from tally.models.metrics import TickReport
from tally.pipeline.aggregate import aggregate_events
from tally.pipeline.merge import apply_tally
from tally.pipeline.validate import partition_events
from tally.store.base import BaseEventStore

logger = logging.getLogger("tally.pipeline.processor")


class BatchProcessor:
    """Runs claim/validate/aggregate/merge/retire against one store."""

    def __init__(self, store: BaseEventStore, batch_size: int = 50):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.batch_size = batch_size

    async def run_tick(self, job_id: str) -> TickReport:
        """Process one batch.

        An empty claim returns straight away with no merge or retire.
        A batch with no valid events likewise skips merge and retire;
        its invalid events remain claimable.

        Retire happens strictly after a successful merge. If the merge
        raises, nothing is retired and the whole batch is claimed again
        next tick.
        """
        logger.info(
            "Job %s started: batch_size=%d", job_id, self.batch_size,
            extra={"job_id": job_id},
        )

        events = await self.store.claim_unprocessed(self.batch_size)
        if not events:
            logger.debug("Job %s: no events to process", job_id, extra={"job_id": job_id})
            return TickReport(job_id=job_id)

        logger.info(
            "Job %s processing %d events", job_id, len(events),
            extra={"job_id": job_id},
        )

        valid, invalid = partition_events(events, job_id)
        report = TickReport(
            job_id=job_id,
            claimed=len(events),
            aggregated=len(valid),
            invalid=len(invalid),
        )
        if not valid:
            logger.warning(
                "Job %s: all %d claimed events failed validation", job_id, len(events),
                extra={"job_id": job_id},
            )
            return report

        tally = aggregate_events(valid)
        await apply_tally(self.store, tally)

        archived = await self.store.archive_and_remove([e.id for e in valid])
        report = report.model_copy(update={"archived": archived})
        if archived != len(valid):
            logger.warning(
                "Job %s archived %d of %d aggregated events",
                job_id, archived, len(valid),
                extra={"job_id": job_id},
            )

        logger.info(
            "Job %s done: aggregated=%d invalid=%d actions=%d users=%d",
            job_id,
            report.aggregated,
            report.invalid,
            len(tally.by_action),
            len(tally.by_user),
            extra={"job_id": job_id},
        )
        return report
