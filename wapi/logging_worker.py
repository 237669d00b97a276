import asyncio
import json
import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from .audit import AuditEvent, AuditRecorder
from .config import AUDIT_BUFFER_KEY, AUDIT_FLUSH_INTERVAL_SECONDS, AUDIT_MAX_ATTEMPTS, REDIS_URL


def make_redis_client(url: str = REDIS_URL) -> redis.Redis:
    return redis.from_url(url, decode_responses=True)


class AuditBuffer:
    """Queues audit events in a Redis list for ``batch_log_writer``.

    Has the same ``record`` coroutine as AuditRecorder so the gateway can use
    either. Events that cannot be queued are written straight through, and
    events that keep failing to write are dropped after ``max_attempts`` with
    an error log.
    """

    def __init__(
        self,
        redis_client,
        recorder: AuditRecorder,
        key: str = AUDIT_BUFFER_KEY,
        max_attempts: int = AUDIT_MAX_ATTEMPTS,
    ):
        self.redis = redis_client
        self.recorder = recorder
        self.key = key
        self.max_attempts = max_attempts

    @staticmethod
    def _encode(event: AuditEvent, attempts: int) -> str:
        return json.dumps({"attempts": attempts, "event": event.to_json()})

    async def record(self, event: AuditEvent) -> bool:
        try:
            await self.redis.lpush(self.key, self._encode(event, 0))
            return True
        except RedisError as e:
            logging.warning(f"Audit buffer unavailable ({e}), writing {event.endpoint} entry directly")
            return await self.recorder.record(event)

    async def flush(self) -> int:
        pipe = self.redis.pipeline()
        pipe.lrange(self.key, 0, -1)
        pipe.delete(self.key)
        buffered, _ = await pipe.execute()

        if not buffered:
            return 0

        written = 0
        retry = []
        # LPUSH keeps the newest entry first
        for raw in reversed(buffered):
            item = json.loads(raw)
            event = AuditEvent.from_json(item["event"])
            if await self.recorder.record(event):
                written += 1
                continue

            attempts = item["attempts"] + 1
            if attempts >= self.max_attempts:
                logging.error(
                    f"Dropping audit entry for {event.method} {event.endpoint} "
                    f"({event.response_status}) after {attempts} failed writes"
                )
            else:
                retry.append(self._encode(event, attempts))

        if retry:
            await self.redis.rpush(self.key, *retry)

        logging.info(f"Successfully wrote {written} of {len(buffered)} buffered audit entries to the database.")
        return written


async def batch_log_writer(buffer: AuditBuffer, interval: int = AUDIT_FLUSH_INTERVAL_SECONDS):
    while True:
        await asyncio.sleep(interval)
        try:
            await buffer.flush()
        except Exception as e:
            logging.error(f"!!! CRITICAL ERROR in log writer: {e}", exc_info=True)
