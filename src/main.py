"""
Progression Ledger - Application Entry Point
============================================

Bootstrap
---------
- Config load and logging
- Storage initialization (schema + rank catalog)
- Service container
- Connection health monitor
- Graceful shutdown on SIGINT/SIGTERM

Run with ``python -m src.main``.
"""

import asyncio
import signal
import sys

from src.core.infra.application_context import ApplicationContext
from src.core.logging.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Signals
# ============================================================================


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    """Install signal handlers for graceful shutdown in production."""
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
            logger.debug("%s handler installed", sig.name)
        except NotImplementedError:
            logger.debug("%s not supported on this platform (likely Windows)", sig.name)


# ============================================================================
# Application Entrypoint
# ============================================================================


async def main() -> int:
    """
    Lifecycle:
        1. Initialize infrastructure (config, logging, storage, services)
        2. Run until a stop signal arrives
        3. Shut down in reverse order
    """
    context = ApplicationContext()
    stop_event = asyncio.Event()
    _install_signal_handlers(asyncio.get_running_loop(), stop_event)

    try:
        await context.initialize()
    except RuntimeError as exc:
        logger.critical(f"Fatal startup error: {exc}", exc_info=True)
        return 1

    try:
        await context.run_until_stopped(stop_event)
    except asyncio.CancelledError:
        logger.warning("Asyncio task cancellation received; shutting down gracefully.")
        raise
    finally:
        await context.shutdown()

    return 0


# ============================================================================
# Process Startup
# ============================================================================


def run() -> None:
    """Console-script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Ledger manually stopped via keyboard interrupt.")


if __name__ == "__main__":
    run()
