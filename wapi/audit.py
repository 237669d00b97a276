"""Audit trail writer.

Every request that passes through the gateway ends up here as one
``api_audit_logs`` row plus a bump of the matching ``associations`` row.
Writing the trail is best effort: a failed write is logged and reported
through the return value, it never reaches the request being described.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from fastapi import Request
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import PersistenceError
from .models import AuditLog, Association, utcnow

_SENSITIVE_KEY_PATTERNS = ("api_key", "apikey", "authorization", "token", "secret", "password")
_REDACTED_VALUE = "[REDACTED]"


def get_client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        # first hop is the original client
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip

    cf_connecting_ip = request.headers.get("cf-connecting-ip")
    if cf_connecting_ip:
        return cf_connecting_ip

    return "unknown"


def get_user_agent(request: Request) -> str:
    return request.headers.get("user-agent") or "unknown"


def get_content_length(headers) -> int | None:
    value = headers.get("content-length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def sanitize_params(value: Any) -> Any:
    if isinstance(value, dict):
        sanitized = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if any(pattern in key.lower() for pattern in _SENSITIVE_KEY_PATTERNS):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_params(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_params(item) for item in value]
    return value


def association_fingerprint(ip_address: str, api_key_id: str | None, user_id: str | None) -> str:
    # JSON keeps null apart from any string, so (ip, None, u) != (ip, "None", u)
    identity = json.dumps([ip_address, api_key_id, user_id])
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()


@dataclass
class AuditEvent:
    endpoint: str
    method: str
    ip_address: str
    user_agent: str
    response_status: int
    response_time_ms: int
    api_key_id: str | None = None
    user_id: str | None = None
    request_params: dict | None = None
    error_message: str | None = None
    request_size_bytes: int | None = None
    response_size_bytes: int | None = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_request(cls, request: Request, **outcome) -> "AuditEvent":
        outcome.setdefault("endpoint", request.url.path)
        return cls(
            method=request.method,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
            request_size_bytes=get_content_length(request.headers),
            **outcome,
        )

    def to_json(self) -> str:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "AuditEvent":
        data = json.loads(raw)
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        return cls(**data)


class AuditRecorder:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(self, event: AuditEvent) -> bool:
        """Write the log row and bump its association in one transaction.

        Either both land or neither does, so a buffered event that failed
        here can be retried without duplicating its log row.
        """
        api_key_id = uuid.UUID(event.api_key_id) if event.api_key_id else None
        try:
            for _ in range(2):
                async with self.session_factory() as db:
                    db.add(self._log_row(event, api_key_id))
                    await self._touch_association(db, event, api_key_id)
                    try:
                        await db.commit()
                        return True
                    except IntegrityError:
                        # a concurrent request inserted the same triple, count on top of it
                        await db.rollback()
        except SQLAlchemyError as e:
            logging.error(f"Failed to record audit entry for {event.method} {event.endpoint}: {e}", exc_info=True)
            return False

        logging.error(f"Could not upsert association for {event.method} {event.endpoint}, audit entry not written")
        return False

    @staticmethod
    def _log_row(event: AuditEvent, api_key_id: uuid.UUID | None) -> AuditLog:
        return AuditLog(
            endpoint=event.endpoint,
            method=event.method,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            api_key_id=api_key_id,
            user_id=event.user_id,
            request_params=sanitize_params(event.request_params) if event.request_params else None,
            response_status=event.response_status,
            response_time_ms=event.response_time_ms,
            error_message=event.error_message,
            request_size_bytes=event.request_size_bytes,
            response_size_bytes=event.response_size_bytes,
            created_at=event.created_at,
        )

    async def _touch_association(self, db: AsyncSession, event: AuditEvent, api_key_id: uuid.UUID | None) -> None:
        # leaves committing to the caller
        fingerprint = association_fingerprint(event.ip_address, event.api_key_id, event.user_id)
        seen_at = event.created_at

        changes = {
            "hit_count": Association.hit_count + 1,
            "last_seen": seen_at,
            "updated_at": seen_at,
        }
        if event.user_agent:
            changes["user_agent"] = event.user_agent

        result = await db.execute(
            update(Association)
            .where(Association.fingerprint == fingerprint)
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return

        db.add(Association(
            fingerprint=fingerprint,
            ip_address=event.ip_address,
            api_key_id=api_key_id,
            user_id=event.user_id,
            hit_count=1,
            first_seen=seen_at,
            last_seen=seen_at,
            user_agent=event.user_agent,
        ))

    async def purge_older_than(self, days: int) -> tuple[int, int]:
        cutoff = utcnow() - timedelta(days=days)
        try:
            async with self.session_factory() as db:
                logs = await db.execute(
                    delete(AuditLog)
                    .where(AuditLog.created_at < cutoff)
                    .execution_options(synchronize_session=False)
                )
                associations = await db.execute(
                    delete(Association)
                    .where(Association.last_seen < cutoff)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                purged = logs.rowcount, associations.rowcount
        except SQLAlchemyError as e:
            logging.error(f"Error purging audit data older than {days} days: {e}", exc_info=True)
            raise PersistenceError("Failed to purge audit data") from e

        logging.info(f"Purged {purged[0]} audit logs and {purged[1]} associations older than {days} days")
        return purged
