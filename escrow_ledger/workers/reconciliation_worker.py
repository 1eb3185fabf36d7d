"""
Reconciliation background worker.

Runs the consistency checker once a day at ``reconciliation_hour`` (UTC).
"""
import asyncio
import signal
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from escrow_ledger.config import Settings, get_settings
from escrow_ledger.core.reconciliation import ConsistencyChecker, ReconciliationReport
from escrow_ledger.database.connection import close_db, get_session_factory, session_scope
from escrow_ledger.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation(settings: Optional[Settings] = None) -> ReconciliationReport:
    """Run one reconciliation pass and log any violations found."""
    logger.info("scheduled_reconciliation_started")
    checker = ConsistencyChecker(settings)
    async with session_scope(get_session_factory()) as db:
        report = await checker.run(db)

    if not report.ok:
        logger.warning(
            "reconciliation_violations_detected",
            violations=len(report.violations),
            by_code={k: v for k, v in report.counts_by_code().items() if v},
        )
    return report


def seconds_until_next_run(target_hour: int, now: Optional[datetime] = None) -> float:
    """
    Seconds from ``now`` until the next ``target_hour``:00 UTC.

    Args:
        target_hour: Hour of day to run (24-hour format, UTC)
        now: Reference time (defaults to the current UTC time)
    """
    now = now or datetime.now(timezone.utc)
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)
    if now >= next_run:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def start_reconciliation_worker(target_hour: Optional[int] = None) -> None:
    """
    Start the reconciliation worker.

    Runs daily at ``target_hour`` (default: ``reconciliation_hour`` setting).
    """
    settings = get_settings()
    setup_logging(settings)
    target_hour = settings.reconciliation_hour if target_hour is None else target_hour

    logger.info("reconciliation_worker_starting", target_hour=target_hour)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            seconds_until = seconds_until_next_run(target_hour)
            logger.info("reconciliation_next_run_scheduled", seconds_until=round(seconds_until))

            # Wake up every minute to notice shutdown signals
            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 60)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time

            if not running:
                break

            try:
                await run_reconciliation(settings)
            except Exception as e:
                logger.error("reconciliation_execution_error", error=str(e), exc_info=True)

    finally:
        await close_db()
        logger.info("reconciliation_worker_stopped")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--hour", type=int, default=None, help="Hour of day (UTC) to run reconciliation (0-23)"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(target_hour=args.hour))
