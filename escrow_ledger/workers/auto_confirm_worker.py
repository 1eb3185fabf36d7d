"""
Auto-confirm background worker.

Runs the auto-confirm sweep every ``auto_confirm_interval_seconds``. Several
instances may run at once; each booking is still completed exactly once.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from escrow_ledger.config import get_settings
from escrow_ledger.core.auto_confirm import AutoConfirmSweep, SweepReport
from escrow_ledger.database.connection import close_db, get_session_factory
from escrow_ledger.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_sweep(sweep: Optional[AutoConfirmSweep] = None) -> SweepReport:
    sweep = sweep or AutoConfirmSweep(get_session_factory())
    return await sweep.run_once()


async def start_auto_confirm_worker(once: bool = False) -> None:
    """
    Start the auto-confirm worker.

    Args:
        once: Run a single sweep and exit
    """
    settings = get_settings()
    setup_logging(settings)
    interval = settings.auto_confirm_interval_seconds

    logger.info("auto_confirm_worker_starting", interval_seconds=interval, once=once)

    sweep = AutoConfirmSweep(get_session_factory(), settings=settings)
    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("auto_confirm_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_sweep(sweep)
            except Exception as e:
                logger.error("auto_confirm_sweep_error", error=str(e), exc_info=True)

            if once:
                break

            remaining = float(interval)
            while remaining > 0 and running:
                sleep_time = min(remaining, 5.0)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time

    finally:
        await close_db()
        logger.info("auto_confirm_worker_stopped")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Auto-confirm worker")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_auto_confirm_worker(once=args.once))
