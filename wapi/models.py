import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

API_KEY_ROLES = ("root", "admin", "user")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back without tzinfo; they are always stored as UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class APIKey(Base):
    __tablename__ = 'api_keys'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # NULL marks a system key minted through the admin surface
    user_id = Column(String, nullable=True, index=True)
    name = Column(String(255), nullable=False)

    key_hash = Column(String(255), nullable=False, unique=True)
    role = Column(String(16), nullable=False, default="user")

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now())

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "name": self.name,
            "user_id": self.user_id,
            "role": self.role,
            "is_active": self.is_active,
            "expires_at": _isoformat(self.expires_at),
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


class RateLimitWindow(Base):
    __tablename__ = 'rate_limits'
    __table_args__ = (UniqueConstraint("identifier", "endpoint", name="uq_rate_limits_identifier_endpoint"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    identifier = Column(String(255), nullable=False, index=True)
    endpoint = Column(String(255), nullable=False)

    request_count = Column(Integer, nullable=False, default=1)
    window_start = Column(DateTime(timezone=True), nullable=False)
    window_end = Column(DateTime(timezone=True), nullable=False, index=True)
    window_ms = Column(Integer, nullable=False)
    max_requests = Column(Integer, nullable=False)

    last_request = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'api_audit_logs'

    # no foreign keys: deleting a key or user must not rewrite the trail
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    api_key_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    user_id = Column(String, nullable=True, index=True)

    endpoint = Column(String(500), nullable=False, index=True)
    method = Column(String(10), nullable=False)
    ip_address = Column(String(45), nullable=False, index=True)
    user_agent = Column(Text, nullable=True)
    request_params = Column(JSON, nullable=True)

    response_status = Column(Integer, nullable=False, index=True)
    response_time_ms = Column(Integer, nullable=False)
    error_message = Column(Text, nullable=True)
    request_size_bytes = Column(Integer, nullable=True)
    response_size_bytes = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class Association(Base):
    __tablename__ = 'associations'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # digest of the exact (ip, key, user) triple, see audit.association_fingerprint
    fingerprint = Column(String(64), nullable=False, unique=True)

    ip_address = Column(String(45), nullable=False, index=True)
    api_key_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    user_id = Column(String, nullable=True, index=True)

    hit_count = Column(Integer, nullable=False, default=1, index=True)
    first_seen = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_seen = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    user_agent = Column(Text, nullable=True)
    country = Column(String(100), nullable=True)
    city = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now())

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "ip_address": self.ip_address,
            "api_key_id": str(self.api_key_id) if self.api_key_id else None,
            "user_id": self.user_id,
            "hit_count": self.hit_count,
            "first_seen": _isoformat(self.first_seen),
            "last_seen": _isoformat(self.last_seen),
            "user_agent": self.user_agent,
            "country": self.country,
            "city": self.city,
        }


def _isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None
