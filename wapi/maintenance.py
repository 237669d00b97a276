import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .audit import AuditRecorder
from .config import AUDIT_RETENTION_DAYS, MAINTENANCE_INTERVAL_SECONDS
from .errors import PersistenceError
from .rate_limit import RateLimiter


async def run_maintenance(
    session_factory: async_sessionmaker[AsyncSession],
    rate_limiter: RateLimiter,
    recorder: AuditRecorder,
    retention_days: int = AUDIT_RETENTION_DAYS,
) -> dict:
    """One pass of out-of-band cleanup. Each step runs even if the other fails."""
    summary = {"rate_limits": None, "audit_logs": None, "associations": None}

    try:
        async with session_factory() as db:
            summary["rate_limits"] = await rate_limiter.cleanup_expired(db)
    except PersistenceError as e:
        logging.error(f"Rate limit cleanup failed: {e}")

    try:
        summary["audit_logs"], summary["associations"] = await recorder.purge_older_than(retention_days)
    except PersistenceError as e:
        logging.error(f"Audit retention purge failed: {e}")

    return summary


async def maintenance_worker(
    session_factory: async_sessionmaker[AsyncSession],
    rate_limiter: RateLimiter,
    recorder: AuditRecorder,
    interval: int = MAINTENANCE_INTERVAL_SECONDS,
    retention_days: int = AUDIT_RETENTION_DAYS,
):
    while True:
        await asyncio.sleep(interval)
        summary = await run_maintenance(session_factory, rate_limiter, recorder, retention_days)
        logging.info(f"Maintenance pass finished: {summary}")
