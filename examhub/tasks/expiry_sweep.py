"""
examhub/tasks/expiry_sweep.py
Periodic sweep for overdue exam attempts

Lazy expiry on read is authoritative; this task only runs the same routine
ahead of time so reporting dashboards see fresh results.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from examhub.services.attempt_service import expire_overdue_attempts

logger = logging.getLogger(__name__)


async def run_sweep_once(
    session_factory: async_sessionmaker,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> int:
    """Run a single sweep cycle."""
    async with session_factory() as db:
        count = await expire_overdue_attempts(db, now=now, limit=limit)
        logger.info(f"Expiry sweep completed: {count} attempts expired")
        return count


async def sweep_loop(session_factory: async_sessionmaker, interval_seconds: int = 60):
    """
    Background sweep loop.
    Runs every interval_seconds until cancelled.
    """
    logger.info(f"Starting expiry sweep loop with interval {interval_seconds}s")

    while True:
        try:
            await run_sweep_once(session_factory)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Expiry sweep error: {type(e).__name__}: {str(e)}")

        await asyncio.sleep(interval_seconds)


def start_sweep_task(session_factory: async_sessionmaker, interval_seconds: int = 60) -> asyncio.Task:
    """Start the sweep as a background coroutine."""
    return asyncio.create_task(sweep_loop(session_factory, interval_seconds))
