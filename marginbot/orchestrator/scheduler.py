"""Continuous cycle scheduler for Marginbot.

Runs one cycle at startup (optional) and then one cycle every
``CYCLE_INTERVAL_S`` seconds (default one hour, matching the provider's
hourly rate window).  A single :class:`~marginbot.orchestrator.runner.CycleOrchestrator`
lives for the whole process, so rate windows and the last cycle summary
carry over from one cycle to the next.

After every cycle (success or failure) the live status is written to
``STATUS_PATH`` as JSON for operators to inspect.

Architecture
~~~~~~~~~~~~
The scheduler uses ``asyncio.sleep`` for interval management; no external
scheduler library is required.  Resource lifecycle is owned by
:func:`~marginbot.orchestrator.runner.open_orchestrator`, which closes the
provider session and the database connection when the loop stops.

Typical usage::

    import asyncio
    from marginbot.orchestrator.scheduler import run_continuous

    asyncio.run(run_continuous())
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from marginbot.core.settings import Settings
from marginbot.orchestrator.metrics import write_status_file
from marginbot.orchestrator.runner import CycleOrchestrator, open_orchestrator

__all__ = [
    "run_and_record",
    "run_continuous",
]

logger = logging.getLogger(__name__)


async def run_and_record(
    orchestrator: CycleOrchestrator,
    settings: Settings,
    source: str,
) -> None:
    """Run one cycle and write the status file, whatever the outcome.

    Any unhandled exception from the cycle is logged so a transient failure
    never stops the scheduler.
    """
    try:
        await orchestrator.run_cycle(source)
    except Exception:
        logger.exception("Unhandled exception in %s cycle — will retry after interval.", source)
    write_status_file(orchestrator.get_live_status(), settings.status_path)


async def _cycle_loop(orchestrator: CycleOrchestrator, settings: Settings) -> None:
    if settings.run_on_startup:
        await run_and_record(orchestrator, settings, "startup")

    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false) — not looping.")
        return

    while True:
        logger.info("Next cycle in %d s.", settings.cycle_interval_s)
        await asyncio.sleep(settings.cycle_interval_s)
        await run_and_record(orchestrator, settings, "scheduler")


async def run_continuous(settings: Settings | None = None) -> None:
    """Run cycles on a fixed interval until cancelled.

    **Graceful shutdown:** a ``SIGTERM`` handler is registered on the running
    event loop.  When the signal arrives the cycle loop is cancelled; any
    in-flight provider call is abandoned at its current ``await`` point and
    the provider session and database connection are then closed.  The
    handler is removed in a ``finally`` block.  ``SIGINT`` (Ctrl+C) follows
    Python's default asyncio behaviour.

    Returns normally only when the scheduler is disabled and the optional
    startup cycle has finished.

    Args:
        settings: Application settings.  Loaded from environment if ``None``.

    Raises:
        asyncio.CancelledError: On shutdown via SIGTERM or cancellation.
    """
    if settings is None:
        settings = Settings()

    logger.info(
        "Marginbot entering continuous mode — interval: %d s | startup cycle: %s.",
        settings.cycle_interval_s,
        "yes" if settings.run_on_startup else "no",
    )

    async with open_orchestrator(settings) as orchestrator:
        loop_task = asyncio.create_task(
            _cycle_loop(orchestrator, settings),
            name="marginbot-cycle-loop",
        )

        loop = asyncio.get_running_loop()
        shutdown_signal: list[str] = []

        def _request_graceful_shutdown(signame: str) -> None:
            if not shutdown_signal:
                shutdown_signal.append(signame)
                logger.info(
                    "Received %s — graceful shutdown requested; cancelling cycle loop.",
                    signame,
                )
            loop_task.cancel()

        loop.add_signal_handler(signal.SIGTERM, lambda: _request_graceful_shutdown("SIGTERM"))

        try:
            await loop_task
        except (asyncio.CancelledError, KeyboardInterrupt):
            if shutdown_signal:
                logger.info("Graceful shutdown complete (signal: %s).", shutdown_signal[0])
            else:
                logger.info("Continuous loop cancelled — stopping.")
            loop_task.cancel()
            await asyncio.gather(loop_task, return_exceptions=True)
            raise
        finally:
            with contextlib.suppress(Exception):
                loop.remove_signal_handler(signal.SIGTERM)
