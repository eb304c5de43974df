"""
Stale payment expiry worker.

Periodically fails pending payments whose buyer never completed the
gateway flow, so the order can be paid again with a fresh attempt.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront_payments.config import get_settings
from storefront_payments.core.initiation import expire_stale_payments
from storefront_payments.database.connection import close_db, get_session_factory
from storefront_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_expiry_sweep(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> int:
    """
    Run one sweep.

    Returns:
        int: Number of payments expired
    """
    settings = get_settings()
    session_factory = session_factory or get_session_factory()

    logger.info("expiry_sweep_started", expiry_minutes=settings.payment_expiry_minutes)
    async with session_factory() as db:
        expired = await expire_stale_payments(db, settings.payment_expiry_minutes)

    logger.info("expiry_sweep_completed", expired_count=len(expired))
    return len(expired)


async def start_expiry_worker(
    interval_seconds: Optional[int] = None,
    once: bool = False,
) -> None:
    """
    Start the expiry worker.

    Args:
        interval_seconds: Seconds between sweeps (defaults to configuration)
        once: Run a single sweep and exit
    """
    setup_logging()
    interval = interval_seconds or get_settings().expiry_sweep_interval_seconds

    logger.info("expiry_worker_starting", interval_seconds=interval, once=once)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("expiry_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_expiry_sweep()
            except Exception as e:
                logger.error("expiry_sweep_error", error=str(e))
                # Keep running; the next sweep retries

            if once:
                break

            # Sleep in short steps so a shutdown signal is noticed promptly
            remaining = interval
            while remaining > 0 and running:
                step = min(remaining, 5)
                await asyncio.sleep(step)
                remaining -= step

    finally:
        await close_db()
        logger.info("expiry_worker_stopped")


def main() -> None:
    """Command line entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Stale payment expiry worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between sweeps"
    )
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_expiry_worker(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
