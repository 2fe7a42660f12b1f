"""Fixed-interval tick scheduler with a single-flight guard.

The scheduler is one loop that waits on a timer and, each time it
fires, explicitly checks WorkerRunState.in_flight. A tick runs as its
own task so the timer keeps firing while a slow tick is in progress;
those firings are dropped, never queued. The guard is cleared in the
tick's finally block whatever the outcome.

A stalled tick never clears the guard, so every later firing is
dropped until it finishes. Store calls carry no timeout here.
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from tally.pipeline.processor import BatchProcessor
from tally.worker.state import EscalationState, FailureEscalator, WorkerRunState

logger = logging.getLogger("tally.worker.scheduler")


def new_job_id() -> str:
    return uuid.uuid4().hex[:8]


class Scheduler:
    """Fires BatchProcessor ticks on a fixed period.

    run() returns the process exit code: 0 after stop(), 1 after the
    escalator reaches FATAL.
    """

    def __init__(
        self,
        processor: BatchProcessor,
        interval: float = 10.0,
        escalator: FailureEscalator | None = None,
        state: WorkerRunState | None = None,
        shutdown_grace: float = 30.0,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.processor = processor
        self.interval = interval
        self.escalator = escalator or FailureEscalator()
        self.state = state or WorkerRunState()
        self.shutdown_grace = shutdown_grace
        self._stop = asyncio.Event()
        self._fatal = False
        self._current: asyncio.Task | None = None

    @property
    def fatal(self) -> bool:
        return self._fatal

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Stop firing new ticks. An in-flight tick is left to finish."""
        if not self._stop.is_set():
            logger.info("Scheduler stopping")
        self._stop.set()

    def fire(self) -> asyncio.Task | None:
        """Start a tick unless one is already in flight.

        Returns the tick task, or None when the firing was dropped.
        Must be called from inside the running event loop.
        """
        if self._stop.is_set():
            return None
        if self.state.in_flight:
            logger.debug("Skipping tick: previous batch still in flight")
            return None

        self.state.in_flight = True
        job_id = new_job_id()
        try:
            self._current = asyncio.get_running_loop().create_task(
                self._tick(job_id), name=f"tally-tick-{job_id}"
            )
        except BaseException:
            self.state.in_flight = False
            raise
        return self._current

    async def _tick(self, job_id: str) -> None:
        try:
            await self.processor.run_tick(job_id)
        except Exception as e:
            phase = self.escalator.record_failure(self.state)
            logger.error(
                "Job %s failed (%d consecutive failures): %s",
                job_id, self.state.consecutive_failures, e,
                exc_info=True,
                extra={
                    "job_id": job_id,
                    "consecutive_failures": self.state.consecutive_failures,
                },
            )
            if phase is EscalationState.FATAL:
                logger.critical(
                    "Reached %d consecutive failures, shutting down",
                    self.state.consecutive_failures,
                    extra={"consecutive_failures": self.state.consecutive_failures},
                )
                self._fatal = True
                self._stop.set()
        else:
            self.escalator.record_success(self.state)
        finally:
            self.state.in_flight = False

    async def run(self) -> int:
        """Run one tick immediately, then one per interval until stopped."""
        logger.info(
            "Scheduler started: interval=%.1fs batch_size=%d max_failures=%d",
            self.interval,
            self.processor.batch_size,
            self.escalator.max_failures,
        )
        self.fire()
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                self.fire()

        await self._drain()
        return 1 if self._fatal else 0

    async def _drain(self) -> None:
        """Give an in-flight tick up to shutdown_grace seconds to finish."""
        task = self._current
        if task is None or task.done():
            return
        logger.info("Waiting up to %.1fs for in-flight job", self.shutdown_grace)
        done, _ = await asyncio.wait({task}, timeout=self.shutdown_grace)
        if not done:
            logger.warning("In-flight job still running after grace period, abandoning it")
