import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_MS, RateLimitPolicy
from .errors import PersistenceError, RateLimiterUnavailable
from .models import RateLimitWindow, as_utc, utcnow

# Fixed window counter kept in the rate_limits table, one row per
# (identifier, endpoint).
#
# A plain read -> decide -> write lets two concurrent requests both read
# count = max - 1 and both get admitted. Every write here is therefore
# guarded in its WHERE clause (or by the unique constraint for the first
# insert), so the loser of a race changes nothing and simply re-reads the row
# and decides again. The window semantics stay the same: a window is reset
# only once now > window_end, and a full window rejects without counting.

_MAX_ATTEMPTS = 5


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: datetime
    limit: int
    error: str | None = None

    def retry_after(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        return max(0, math.ceil((self.reset_time - now).total_seconds()))


class RateLimiter:
    def __init__(
        self,
        window_ms: int = RATE_LIMIT_WINDOW_MS,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.default_policy = RateLimitPolicy(window_ms, max_requests)
        self.clock = clock

    def resolve(self, limits: RateLimitPolicy | None) -> RateLimitPolicy:
        if limits is None:
            return self.default_policy
        return RateLimitPolicy(
            limits.window_ms or self.default_policy.window_ms,
            limits.max_requests or self.default_policy.max_requests,
        )

    async def admit(
        self,
        db: AsyncSession,
        identifier: str,
        endpoint: str,
        limits: RateLimitPolicy | None = None,
    ) -> RateLimitResult:
        policy = self.resolve(limits)
        try:
            for _ in range(_MAX_ATTEMPTS):
                result = await self._attempt(db, identifier, endpoint, policy)
                if result is not None:
                    return result
        except SQLAlchemyError as e:
            await db.rollback()
            logging.error(f"Rate limiter error for {identifier} on {endpoint}: {e}", exc_info=True)
            raise RateLimiterUnavailable() from e

        logging.error(f"Rate limiter gave up on {identifier} {endpoint} after {_MAX_ATTEMPTS} contended attempts")
        raise RateLimiterUnavailable()

    async def _attempt(self, db, identifier, endpoint, policy):
        now = self.clock()
        window = timedelta(milliseconds=policy.window_ms)

        row = (await db.execute(
            select(RateLimitWindow.id, RateLimitWindow.request_count, RateLimitWindow.window_end)
            .where(RateLimitWindow.identifier == identifier, RateLimitWindow.endpoint == endpoint)
        )).one_or_none()

        if row is None:
            try:
                db.add(RateLimitWindow(
                    identifier=identifier,
                    endpoint=endpoint,
                    request_count=1,
                    window_start=now,
                    window_end=now + window,
                    window_ms=policy.window_ms,
                    max_requests=policy.max_requests,
                    last_request=now,
                ))
                await db.commit()
            except IntegrityError:
                # another request created the window first
                await db.rollback()
                return None
            return RateLimitResult(True, policy.max_requests - 1, now + window, policy.max_requests)

        window_end = as_utc(row.window_end)

        if now > window_end:
            reset = await db.execute(
                update(RateLimitWindow)
                .where(RateLimitWindow.id == row.id, RateLimitWindow.window_end < now)
                .values(
                    request_count=1,
                    window_start=now,
                    window_end=now + window,
                    window_ms=policy.window_ms,
                    max_requests=policy.max_requests,
                    last_request=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if reset.rowcount == 0:
                await db.rollback()
                return None
            await db.commit()
            return RateLimitResult(True, policy.max_requests - 1, now + window, policy.max_requests)

        if row.request_count >= policy.max_requests:
            await db.rollback()
            return RateLimitResult(False, 0, window_end, policy.max_requests, error="Rate limit exceeded")

        incremented = await db.execute(
            update(RateLimitWindow)
            .where(
                RateLimitWindow.id == row.id,
                RateLimitWindow.window_end >= now,
                RateLimitWindow.request_count < policy.max_requests,
            )
            .values(
                request_count=RateLimitWindow.request_count + 1,
                last_request=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if incremented.rowcount == 0:
            await db.rollback()
            return None

        count = await db.scalar(select(RateLimitWindow.request_count).where(RateLimitWindow.id == row.id))
        await db.commit()
        return RateLimitResult(True, max(0, policy.max_requests - count), window_end, policy.max_requests)

    async def reset(self, db: AsyncSession, identifier: str, endpoint: str) -> bool:
        try:
            result = await db.execute(
                delete(RateLimitWindow)
                .where(RateLimitWindow.identifier == identifier, RateLimitWindow.endpoint == endpoint)
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise PersistenceError("Failed to reset rate limit") from e
        return result.rowcount > 0

    async def info(self, db: AsyncSession, identifier: str, endpoint: str) -> RateLimitResult | None:
        try:
            row = (await db.execute(
                select(RateLimitWindow.request_count, RateLimitWindow.max_requests, RateLimitWindow.window_end)
                .where(RateLimitWindow.identifier == identifier, RateLimitWindow.endpoint == endpoint)
            )).one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to read rate limit") from e

        if row is None:
            return None

        window_end = as_utc(row.window_end)
        if self.clock() > window_end:
            # the next admit starts a fresh window
            remaining = row.max_requests
        else:
            remaining = max(0, row.max_requests - row.request_count)
        return RateLimitResult(remaining > 0, remaining, window_end, row.max_requests)

    async def cleanup_expired(self, db: AsyncSession) -> int:
        try:
            result = await db.execute(
                delete(RateLimitWindow)
                .where(RateLimitWindow.window_end < self.clock())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logging.error(f"Error cleaning up expired rate limit records: {e}", exc_info=True)
            raise PersistenceError("Failed to clean up rate limits") from e

        if result.rowcount:
            logging.info(f"Removed {result.rowcount} expired rate limit windows")
        return result.rowcount
