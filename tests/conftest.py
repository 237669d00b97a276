import httpx
import pytest
from sqlalchemy import select

from wapi import config
from wapi.database import init_db, make_engine, make_session_factory
from wapi.main import create_app
from wapi.models import AuditLog
from wapi.security import create_api_key

ADMIN_SECRET = "test-admin-secret"


def upstream(request: httpx.Request) -> httpx.Response:
    if request.url.host == "geocoding.test":
        return httpx.Response(200, json={"results": [{"name": request.url.params.get("name")}]})
    return httpx.Response(
        200,
        json={"latitude": request.url.params.get("latitude"), "hourly": {}},
        headers={"X-RateLimit-Limit": "10000"},
    )


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    monkeypatch.setattr(config, "BCRYPT_ROUNDS", 4)
    monkeypatch.setattr(config, "ADMIN_SECRET", ADMIN_SECRET)
    monkeypatch.setitem(config.API_TARGETS, "weather", "http://weather.test/v1/forecast")
    monkeypatch.setitem(config.API_TARGETS, "geocoding", "http://geocoding.test/v1/search")


@pytest.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'wapi.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def app(session_factory):
    return create_app(
        session_factory=session_factory,
        audit_buffered=False,
        run_workers=False,
        upstream_transport=httpx.MockTransport(upstream),
    )


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def make_key(session_factory):
    async def make(name="test key", user_id="user-1", role="user", expires_at=None):
        async with session_factory() as session:
            plaintext, key_id = await create_api_key(
                session, name=name, user_id=user_id, role=role, expires_at=expires_at
            )
        return plaintext, str(key_id)

    return make


@pytest.fixture
def audit_rows(session_factory):
    async def rows():
        async with session_factory() as session:
            result = await session.execute(select(AuditLog).order_by(AuditLog.created_at))
            return list(result.scalars().all())

    return rows
