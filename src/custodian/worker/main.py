"""Custodian maintenance worker entry point.

This module runs the periodic scheduler that:
- Sweeps expired analysis sessions
- Runs retention cleanups over auto-cleanup policies
- Handles graceful shutdown via SIGTERM/SIGINT
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import NoReturn

from custodian.core.config import StoreBackend
from custodian.core.settings import get_settings
from custodian.services.engine import build_engine
from custodian.worker.scheduler import run_scheduler_loop

logger = logging.getLogger(__name__)

# Seconds to wait for the scheduler loop after shutdown was requested
SHUTDOWN_TIMEOUT = 30.0

# Global shutdown event for signal handlers
_shutdown_event: asyncio.Event | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None:
        # Set the event in a thread-safe manner
        _shutdown_event.get_loop().call_soon_threadsafe(_shutdown_event.set)


async def _async_main(shutdown_event: asyncio.Event) -> None:
    """Async entry point for the worker.

    Args:
        shutdown_event: Event to signal shutdown request.
    """
    settings = get_settings()
    engine = build_engine(settings)
    await engine.start()

    loop_task = asyncio.create_task(
        run_scheduler_loop(
            engine,
            check_interval=settings.cleanup.check_interval_seconds,
            shutdown_event=shutdown_event,
        )
    )

    try:
        await shutdown_event.wait()

        # A retention run in flight stops at its next record boundary
        engine.cleanup.abort()
        try:
            await asyncio.wait_for(loop_task, timeout=SHUTDOWN_TIMEOUT)
        except TimeoutError:
            logger.warning("Scheduler did not stop within timeout, forcing shutdown")
            loop_task.cancel()
    finally:
        await engine.close()
        if settings.store_backend == StoreBackend.POSTGRES:
            from custodian.db import close_engine

            await close_engine()


def run() -> NoReturn:
    """Run the worker process.

    This is the main entry point for the worker. It:
    - Sets up logging from the configured level
    - Registers signal handlers for graceful shutdown
    - Runs the async scheduler loop
    """
    global _shutdown_event

    logging.basicConfig(
        level=getattr(logging, get_settings().log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info("Custodian worker starting...")

    async def _run_with_event() -> None:
        """Create event loop context and run main."""
        global _shutdown_event
        _shutdown_event = asyncio.Event()
        await _async_main(_shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("Custodian worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
