"""TALLY worker process entrypoint.

Connects the store once, runs the scheduler until a termination
signal or fatal escalation, and closes the store on every exit path.
A store that cannot be reached at startup ends the process before any
tick runs.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from tally.config import Settings, settings
from tally.pipeline.processor import BatchProcessor
from tally.store.base import BaseEventStore, StoreState, create_store
from tally.utils.logging import configure_logging
from tally.worker.scheduler import Scheduler
from tally.worker.state import FailureEscalator

logger = logging.getLogger("tally.worker")


def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop, scheduler: Scheduler
) -> list[signal.Signals]:
    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _on_signal, scheduler, sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            continue
        installed.append(sig)
    return installed


def _on_signal(scheduler: Scheduler, sig: signal.Signals) -> None:
    logger.info("Received %s, shutting down", sig.name, extra={"signal": sig.name})
    scheduler.stop()


async def run_worker(
    config: Settings = settings,
    store: BaseEventStore | None = None,
) -> int:
    """Run the worker until stopped. Returns the process exit code."""
    if store is None:
        store = create_store(config.store.store_type, config.store.to_store_config())

    logger.info(
        "TALLY worker v%s starting: poll_interval=%.1fs batch_size=%d store=%s",
        config.version, config.poll_interval, config.batch_size, store.store_type,
    )

    state = await store.connect()
    if state != StoreState.CONNECTED:
        logger.critical(
            "Startup failed: store %s is %s", store.store_type, state.value,
            extra={"store_state": state.value},
        )
        await store.disconnect()
        return 1

    scheduler = Scheduler(
        BatchProcessor(store, config.batch_size),
        interval=config.poll_interval,
        escalator=FailureEscalator(config.max_consecutive_failures),
        shutdown_grace=config.shutdown_grace_seconds,
    )

    loop = asyncio.get_running_loop()
    installed = _install_signal_handlers(loop, scheduler)
    try:
        exit_code = await scheduler.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await store.disconnect()

    logger.info("Worker exiting with code %d", exit_code, extra={"exit_code": exit_code})
    return exit_code


def main() -> None:
    configure_logging(settings.log_level)
    sys.exit(asyncio.run(run_worker()))


if __name__ == "__main__":
    main()
