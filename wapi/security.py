import asyncio
import logging
import secrets
import uuid
from datetime import datetime

import bcrypt
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .errors import KeyNotFound, PersistenceError
from .models import API_KEY_ROLES, APIKey, as_utc, utcnow

_UNSET = object()


def generate_api_key() -> str:
    return f"{config.API_KEY_PREFIX}{secrets.token_hex(32)}"


def hash_secret(secret: str) -> str:
    salt = bcrypt.gensalt(rounds=config.BCRYPT_ROUNDS)
    return bcrypt.hashpw(secret.encode('utf-8'), salt).decode('utf-8')


def verify_secret(plain_secret: str, hashed_secret: str) -> bool:
    try:
        return bcrypt.checkpw(plain_secret.encode('utf-8'), hashed_secret.encode('utf-8'))
    except ValueError:
        # malformed stored hash
        return False


def should_bypass_rate_limit(role: str | None) -> bool:
    return role == "root"


def _parse_key_id(key_id) -> uuid.UUID:
    if isinstance(key_id, uuid.UUID):
        return key_id
    try:
        return uuid.UUID(str(key_id))
    except ValueError:
        raise KeyNotFound()


async def create_api_key(
    db: AsyncSession,
    name: str,
    user_id: str | None = None,
    role: str = "user",
    expires_at: datetime | None = None,
) -> tuple[str, uuid.UUID]:
    """Mint a key and return ``(plaintext, key_id)``.

    The plaintext is only ever available here; the row keeps the bcrypt hash.
    """
    if role not in API_KEY_ROLES:
        raise ValueError(f"Invalid role: {role}")

    plaintext = generate_api_key()
    # bcrypt is CPU bound, keep it off the event loop
    key_hash = await asyncio.to_thread(hash_secret, plaintext)
    db_key = APIKey(
        user_id=user_id,
        name=name,
        key_hash=key_hash,
        role=role,
        is_active=True,
        expires_at=expires_at,
    )

    try:
        db.add(db_key)
        await db.commit()
        await db.refresh(db_key)
    except SQLAlchemyError as e:
        await db.rollback()
        logging.error(f"Failed to create API key '{name}': {e}", exc_info=True)
        raise PersistenceError("Failed to create API key") from e

    logging.info(f"Created {role} API key {db_key.id} for user {user_id or 'system'}")
    return plaintext, db_key.id


async def validate_api_key(db: AsyncSession, api_key: str) -> APIKey | None:
    """Return the active, unexpired key matching ``api_key`` or None.

    Only the hash is stored, so every active row has to be checked with
    bcrypt. A key found expired is deactivated on the spot.
    """
    if not api_key or not api_key.startswith(config.API_KEY_PREFIX):
        return None

    try:
        result = await db.execute(select(APIKey).where(APIKey.is_active.is_(True)))
        active_keys = result.scalars().all()
    except SQLAlchemyError as e:
        logging.error(f"Error fetching API keys: {e}", exc_info=True)
        raise PersistenceError("Failed to load API keys") from e

    for db_key in active_keys:
        if not await asyncio.to_thread(verify_secret, api_key, db_key.key_hash):
            continue

        expires_at = as_utc(db_key.expires_at)
        if expires_at is not None and expires_at < utcnow():
            logging.info(f"API key {db_key.id} expired at {expires_at.isoformat()}, deactivating")
            try:
                await deactivate_api_key(db, db_key.id)
            except KeyNotFound:
                logging.info(f"API key {db_key.id} was deleted before it could be deactivated")
            return None
        return db_key

    return None


async def get_api_key(db: AsyncSession, key_id) -> APIKey:
    key_id = _parse_key_id(key_id)
    try:
        db_key = await db.get(APIKey, key_id)
    except SQLAlchemyError as e:
        raise PersistenceError("Failed to fetch API key") from e

    if db_key is None:
        raise KeyNotFound()
    return db_key


async def list_user_api_keys(db: AsyncSession, user_id: str) -> list[APIKey]:
    query = select(APIKey).where(APIKey.user_id == user_id).order_by(APIKey.created_at.desc())
    try:
        result = await db.execute(query)
    except SQLAlchemyError as e:
        raise PersistenceError("Failed to list API keys") from e
    return list(result.scalars().all())


async def list_api_keys(db: AsyncSession) -> list[APIKey]:
    try:
        result = await db.execute(select(APIKey).order_by(APIKey.created_at.desc()))
    except SQLAlchemyError as e:
        raise PersistenceError("Failed to list API keys") from e
    return list(result.scalars().all())


async def update_api_key(
    db: AsyncSession,
    key_id,
    name=_UNSET,
    is_active=_UNSET,
    expires_at=_UNSET,
) -> APIKey:
    """Apply a partial update. ``expires_at=None`` clears the expiry."""
    db_key = await get_api_key(db, key_id)

    if name is not _UNSET:
        db_key.name = name
    if is_active is not _UNSET:
        db_key.is_active = is_active
    if expires_at is not _UNSET:
        db_key.expires_at = expires_at

    try:
        await db.commit()
        await db.refresh(db_key)
    except SQLAlchemyError as e:
        await db.rollback()
        raise PersistenceError("Failed to update API key") from e
    return db_key


async def deactivate_api_key(db: AsyncSession, key_id) -> None:
    key_id = _parse_key_id(key_id)
    try:
        result = await db.execute(
            update(APIKey).where(APIKey.id == key_id).values(is_active=False, updated_at=utcnow())
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise PersistenceError("Failed to deactivate API key") from e

    if result.rowcount == 0:
        raise KeyNotFound()


async def delete_api_key(db: AsyncSession, key_id) -> None:
    key_id = _parse_key_id(key_id)
    try:
        result = await db.execute(delete(APIKey).where(APIKey.id == key_id))
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise PersistenceError("Failed to delete API key") from e

    if result.rowcount == 0:
        raise KeyNotFound()
    logging.info(f"Deleted API key {key_id}")
