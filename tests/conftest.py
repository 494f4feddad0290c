"""
Shared fixtures for ConvertOS Core tests.

Every test gets its own in-memory SQLite database. The FastAPI app is
pointed at it through `app.dependency_overrides`, and the Meta client is
replaced by an in-process fake so no test touches the network.
"""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from convertos.api.deps import get_ads_client
from convertos.db import Base, Client, MetaAdAccount, get_db
from convertos.main import app
from convertos.services.ads_platform import PlatformResponse
from convertos.services.connection_registry import ConnectionRegistry
from convertos.services.signature import compute_signature

ACCOUNT_ID = "act_1001"


class FakeAdsClient:
    """
    Stands in for MetaAdsClient. Ads start ACTIVE; pause/activate flip the
    stored status. Ids listed in `fail_ids` answer with a platform error.
    """

    def __init__(self, fail_ids: Optional[List[str]] = None):
        self.states: Dict[str, Dict[str, Any]] = {}
        self.fail_ids = set(fail_ids or [])
        self.calls: List[tuple] = []

    def _state(self, ad_id: str) -> Dict[str, Any]:
        return self.states.setdefault(ad_id, {
            "id": ad_id,
            "name": f"Ad {ad_id}",
            "status": "ACTIVE",
            "effective_status": "ACTIVE",
        })

    async def get_ad_state(self, ad_id: str) -> PlatformResponse:
        self.calls.append(("get", ad_id))
        return PlatformResponse(success=True, data=dict(self._state(ad_id)))

    async def _set_status(self, ad_id: str, status: str) -> PlatformResponse:
        self.calls.append((status.lower(), ad_id))
        if ad_id in self.fail_ids:
            return PlatformResponse.failure("(#100) Invalid parameter")
        state = self._state(ad_id)
        state["status"] = status
        state["effective_status"] = status
        return PlatformResponse(success=True, data={"success": True})

    async def pause_ad(self, ad_id: str) -> PlatformResponse:
        return await self._set_status(ad_id, "PAUSED")

    async def activate_ad(self, ad_id: str) -> PlatformResponse:
        return await self._set_status(ad_id, "ACTIVE")

    async def update_ad_copy(self, ad_id: str, fields: Dict[str, Any]) -> PlatformResponse:
        self.calls.append(("modify_copy", ad_id))
        return PlatformResponse(success=True, data={"proposed_creative": {"link_data": dict(fields)}})

    async def create_entity(self, kind: str, parent_id=None, params=None) -> PlatformResponse:
        self.calls.append((f"create_{kind}", parent_id))
        return PlatformResponse.failure(f"{kind} creation not supported")

    async def aclose(self) -> None:
        pass


def sign(body: bytes, secret: str) -> str:
    return compute_signature(body, secret)


def encode(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test"""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db_session(session_maker):
    """Get a database session"""
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def fake_ads():
    return FakeAdsClient()


@pytest_asyncio.fixture
async def client(session_maker, fake_ads):
    """Async test client wired to the per-test database and fake ads platform"""
    async def override_get_db():
        async with session_maker() as session:
            yield session

    async def override_get_ads_client():
        yield fake_ads

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ads_client] = override_get_ads_client

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def tenant(db_session: AsyncSession):
    """A tenant to own connections"""
    row = Client(name="Acme Decks")
    db_session.add(row)
    await db_session.commit()
    return row


@pytest_asyncio.fixture
async def connection(db_session: AsyncSession, tenant):
    """An active WordPress connection. Returns (connection, secret)."""
    registry = ConnectionRegistry(db_session, grace=timedelta(hours=24))
    return await registry.create_connection(
        tenant.id, "Main site", webhook_url="http://site.test/wp-json/convertos/v1/webhook"
    )


@pytest_asyncio.fixture
async def synced_account(db_session: AsyncSession):
    """Ad account synced a few minutes ago"""
    account = MetaAdAccount(
        account_id=ACCOUNT_ID,
        name="Acme Decks Ads",
        last_synced_at=datetime.utcnow() - timedelta(minutes=5),
    )
    db_session.add(account)
    await db_session.commit()
    return account
