import asyncio
import contextlib
import re
import time
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from conftest import ADMIN_SECRET
from wapi import config, security
from wapi.errors import KeyNotFound
from wapi.models import APIKey
from wapi.security import (
    create_api_key,
    deactivate_api_key,
    delete_api_key,
    generate_api_key,
    get_api_key,
    update_api_key,
    validate_api_key,
    verify_secret,
)

KEYS_URL = "/api/api-keys"
ADMIN_URL = "/api/admin/api-keys"


def test_generated_key_format():
    key = generate_api_key()

    assert re.fullmatch(r"wapi_[0-9a-f]{64}", key), f"unexpected key format: {key}"
    assert generate_api_key() != key


async def test_created_key_stores_only_the_hash(db):
    plaintext, key_id = await create_api_key(db, name="laptop", user_id="user-1")

    db_key = await get_api_key(db, key_id)
    assert db_key.id == key_id
    assert db_key.key_hash != plaintext
    assert verify_secret(plaintext, db_key.key_hash)
    assert "key" not in db_key.to_dict()
    assert "key_hash" not in db_key.to_dict()


async def test_create_rejects_unknown_role(db):
    with pytest.raises(ValueError):
        await create_api_key(db, name="bad", role="superuser")


async def test_validate_accepts_the_issued_key(db):
    plaintext, key_id = await create_api_key(db, name="laptop", user_id="user-1")

    db_key = await validate_api_key(db, plaintext)
    assert db_key is not None
    assert db_key.id == key_id
    assert db_key.user_id == "user-1"


async def test_validate_rejects_unknown_and_malformed_keys(db):
    await create_api_key(db, name="laptop", user_id="user-1")

    assert await validate_api_key(db, generate_api_key()) is None
    assert await validate_api_key(db, "sk_" + "0" * 64) is None
    assert await validate_api_key(db, "") is None


async def test_validate_rejects_deactivated_key(db):
    plaintext, key_id = await create_api_key(db, name="laptop", user_id="user-1")
    await deactivate_api_key(db, key_id)

    assert await validate_api_key(db, plaintext) is None


async def test_expired_key_is_rejected_and_deactivated(db):
    expired = datetime.now(timezone.utc) - timedelta(minutes=1)
    plaintext, key_id = await create_api_key(db, name="old", user_id="user-1", expires_at=expired)

    assert await validate_api_key(db, plaintext) is None

    db_key = await get_api_key(db, key_id)
    await db.refresh(db_key)
    assert db_key.is_active is False
    assert await validate_api_key(db, plaintext) is None, "a deactivated expired key stays rejected"


async def test_expired_key_deleted_mid_validation_is_rejected(db, session_factory, monkeypatch):
    expired = datetime.now(timezone.utc) - timedelta(minutes=1)
    plaintext, key_id = await create_api_key(db, name="old", user_id="user-1", expires_at=expired)
    real_deactivate = security.deactivate_api_key

    async def deleted_first(session, target_id):
        async with session_factory() as other:
            await delete_api_key(other, target_id)
        await real_deactivate(session, target_id)

    monkeypatch.setattr(security, "deactivate_api_key", deleted_first)

    assert await validate_api_key(db, plaintext) is None


async def test_validation_keeps_the_event_loop_responsive(db, monkeypatch):
    monkeypatch.setattr(config, "BCRYPT_ROUNDS", 10)
    for index in range(5):
        await create_api_key(db, name=f"key-{index}", user_id="user-1")

    gaps = []

    async def ticker():
        last = time.perf_counter()
        while True:
            await asyncio.sleep(0.005)
            now = time.perf_counter()
            gaps.append(now - last)
            last = now

    task = asyncio.create_task(ticker())
    started = time.perf_counter()
    assert await validate_api_key(db, generate_api_key()) is None
    elapsed = time.perf_counter() - started
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task

    assert gaps, "the loop never ran while hashes were checked"
    assert max(gaps) < elapsed / 2, f"loop stalled for {max(gaps):.3f}s of {elapsed:.3f}s"


async def test_unknown_ids_raise_not_found(db):
    with pytest.raises(KeyNotFound):
        await get_api_key(db, "not-a-uuid")
    with pytest.raises(KeyNotFound):
        await get_api_key(db, uuid.uuid4())
    with pytest.raises(KeyNotFound):
        await delete_api_key(db, uuid.uuid4())
    with pytest.raises(KeyNotFound):
        await deactivate_api_key(db, str(uuid.uuid4()))


async def test_update_changes_only_given_fields(db):
    expires = datetime.now(timezone.utc) + timedelta(days=7)
    _, key_id = await create_api_key(db, name="laptop", user_id="user-1", expires_at=expires)

    renamed = await update_api_key(db, key_id, name="desktop")
    assert renamed.name == "desktop"
    assert renamed.expires_at is not None

    cleared = await update_api_key(db, key_id, expires_at=None)
    assert cleared.name == "desktop"
    assert cleared.expires_at is None


async def test_delete_removes_the_key(db):
    plaintext, key_id = await create_api_key(db, name="laptop", user_id="user-1")

    await delete_api_key(db, key_id)

    assert await db.get(APIKey, key_id) is None
    assert await validate_api_key(db, plaintext) is None


async def test_create_key_route(client, make_key):
    api_key, _ = await make_key(user_id="user-1")

    response = await client.post(
        KEYS_URL, json={"name": "phone", "expires_in_days": 30}, headers={"Authorization": f"Bearer {api_key}"}
    )

    assert response.status_code == 201, response.text
    created = response.json()["api_key"]
    assert created["key"].startswith("wapi_")
    assert created["user_id"] == "user-1"
    assert created["role"] == "user"
    assert created["expires_at"] is not None

    check = await client.get(KEYS_URL, headers={"X-API-Key": created["key"]})
    assert check.status_code == 200
    assert {key["name"] for key in check.json()["api_keys"]} == {"test key", "phone"}


async def test_create_key_route_validates_body(client, make_key, audit_rows):
    api_key, _ = await make_key()

    response = await client.post(KEYS_URL, json={"name": "   "}, headers={"X-API-Key": api_key})

    assert response.status_code == 400
    assert response.json()["error"].startswith("name:")
    assert [row.response_status for row in await audit_rows()] == [400]


async def test_key_limit_per_user(client, make_key, monkeypatch):
    monkeypatch.setattr("wapi.auth.MAX_KEYS_PER_USER", 2)
    api_key, _ = await make_key(user_id="user-1")
    await make_key(user_id="user-1", name="second")

    response = await client.post(KEYS_URL, json={"name": "third"}, headers={"X-API-Key": api_key})

    assert response.status_code == 400
    assert response.json()["error"] == "Maximum number of API keys (2) reached"


async def test_other_users_keys_look_missing(client, make_key):
    api_key, _ = await make_key(user_id="user-1")
    _, foreign_id = await make_key(user_id="user-2", name="theirs")
    headers = {"X-API-Key": api_key}

    for method in ("GET", "DELETE"):
        response = await client.request(method, f"{KEYS_URL}/{foreign_id}", headers=headers)
        assert response.status_code == 404
        assert response.json() == {"error": "API key not found"}

    response = await client.put(f"{KEYS_URL}/{foreign_id}", json={"name": "mine"}, headers=headers)
    assert response.status_code == 404


async def test_update_and_delete_own_key(client, make_key):
    api_key, _ = await make_key(user_id="user-1")
    _, other_id = await make_key(user_id="user-1", name="spare")
    headers = {"X-API-Key": api_key}

    empty = await client.put(f"{KEYS_URL}/{other_id}", json={}, headers=headers)
    assert empty.status_code == 400
    assert empty.json()["error"] == "No valid fields to update"

    updated = await client.put(f"{KEYS_URL}/{other_id}", json={"name": "renamed", "is_active": False}, headers=headers)
    assert updated.status_code == 200
    assert updated.json()["api_key"]["name"] == "renamed"
    assert updated.json()["api_key"]["is_active"] is False

    deleted = await client.delete(f"{KEYS_URL}/{other_id}", headers=headers)
    assert deleted.json() == {"deleted": True, "id": other_id}

    missing = await client.get(f"{KEYS_URL}/{other_id}", headers=headers)
    assert missing.status_code == 404


async def test_system_keys_cannot_manage_user_keys(client, make_key):
    api_key, _ = await make_key(user_id=None, role="admin")

    response = await client.get(KEYS_URL, headers={"X-API-Key": api_key})

    assert response.status_code == 401
    assert response.json()["error"] == "User authentication required"


async def test_admin_surface_disabled_without_secret(client, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_SECRET", "")

    response = await client.post(ADMIN_URL, json={"name": "root"}, headers={"X-Admin-Secret": "anything"})

    assert response.status_code == 503
    assert response.json()["error"] == "Admin operations not configured"


async def test_admin_surface_rejects_wrong_secret(client):
    missing = await client.post(ADMIN_URL, json={"name": "root"})
    wrong = await client.post(ADMIN_URL, json={"name": "root"}, headers={"X-Admin-Secret": "guess"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert wrong.json()["error"] == "Unauthorized"


async def test_admin_creates_root_key(client, db):
    response = await client.post(
        ADMIN_URL, json={"name": "bootstrap"}, headers={"X-Admin-Secret": ADMIN_SECRET}
    )

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["success"] is True
    assert body["api_key"]["role"] == "root"
    assert body["api_key"]["user_id"] == "system"

    db_key = await validate_api_key(db, body["api_key"]["key"])
    assert db_key.role == "root"
    assert db_key.user_id is None

    listing = await client.get(ADMIN_URL, headers={"X-Admin-Secret": ADMIN_SECRET})
    assert listing.json()["count"] == 1


async def test_admin_audit_never_stores_the_secret(client, audit_rows):
    await client.post(ADMIN_URL, json={"name": "bootstrap", "role": "admin"}, headers={"X-Admin-Secret": ADMIN_SECRET})

    rows = await audit_rows()
    assert len(rows) == 1
    assert ADMIN_SECRET not in str(rows[0].request_params)
