"""Retention cleanup job.

Deletes archived events whose processedAt is older than the retention
window, then upserts a heartbeat document so operators can tell the
job is alive. Runs once at startup and then on a fixed interval. A
failed run is logged and the loop carries on; the job has no failure
escalation of its own.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from tally.config import Settings, settings
from tally.models.events import utcnow
from tally.store.base import BaseEventStore, StoreState, create_store
from tally.utils.logging import configure_logging

logger = logging.getLogger("tally.cleanup")

SERVICE_NAME = "cron"


class CronHeartbeat(BaseModel):
    """Liveness record for the cleanup job."""
    service: str = SERVICE_NAME
    timestamp: datetime = Field(default_factory=utcnow)
    status: str = "healthy"
    version: str = ""


class RetentionJob:
    """Deletes expired archive entries and reports a heartbeat."""

    def __init__(self, store: BaseEventStore, retention_days: int = 30, version: str = ""):
        if retention_days <= 0:
            raise ValueError("retention_days must be positive")
        self.store = store
        self.retention_days = retention_days
        self.version = version

    def cutoff(self, now: datetime | None = None) -> datetime:
        return (now or utcnow()) - timedelta(days=self.retention_days)

    async def run_cleanup(self, now: datetime | None = None) -> int:
        """Delete archived events older than the cutoff. Returns the count."""
        cutoff = self.cutoff(now)
        logger.info(
            "Cleanup started: retention_days=%d cutoff=%s",
            self.retention_days, cutoff.isoformat(),
        )
        deleted = await self.store.delete_archived_before(cutoff)
        logger.info(
            "Cleanup done: deleted %d processed events", deleted,
            extra={"deleted": deleted, "cutoff": cutoff.isoformat()},
        )
        return deleted

    async def update_heartbeat(self) -> CronHeartbeat:
        heartbeat = CronHeartbeat(version=self.version)
        await self.store.write_heartbeat(heartbeat.service, heartbeat.model_dump())
        logger.info("Heartbeat written at %s", heartbeat.timestamp.isoformat())
        return heartbeat

    async def run_once(self) -> bool:
        """One cleanup pass followed by a heartbeat.

        Returns True when both steps succeeded. The heartbeat is skipped
        when cleanup fails so a stale heartbeat signals the problem.
        """
        try:
            await self.run_cleanup()
        except Exception as e:
            logger.error("Cleanup failed: %s", e, exc_info=True)
            return False
        try:
            await self.update_heartbeat()
        except Exception as e:
            logger.error("Heartbeat failed: %s", e, exc_info=True)
            return False
        return True


async def run_cleanup_loop(
    config: Settings = settings,
    store: BaseEventStore | None = None,
    stop: asyncio.Event | None = None,
) -> int:
    """Run RetentionJob every cleanup_interval seconds until stopped."""
    if store is None:
        store = create_store(config.store.store_type, config.store.to_store_config())
    stop = stop or asyncio.Event()

    logger.info(
        "TALLY cleanup v%s starting: interval=%.1fs retention_days=%d",
        config.version, config.cleanup_interval, config.retention_days,
    )

    if await store.connect() != StoreState.CONNECTED:
        logger.critical("Startup failed: store %s unreachable", store.store_type)
        await store.disconnect()
        return 1

    job = RetentionJob(store, config.retention_days, config.version)
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)

    try:
        while not stop.is_set():
            await job.run_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=config.cleanup_interval)
            except asyncio.TimeoutError:
                pass
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await store.disconnect()

    logger.info("Cleanup job stopped")
    return 0


def main() -> None:
    configure_logging(settings.log_level)
    sys.exit(asyncio.run(run_cleanup_loop()))


if __name__ == "__main__":
    main()
