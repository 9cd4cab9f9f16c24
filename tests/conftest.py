"""测试配置和 fixtures."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

import corpsync.models  # noqa: F401
from corpsync.config import Settings
from corpsync.core.kv import MemoryKeyValueStore
from corpsync.core.service import SyncService
from corpsync.core.state import SyncStateTracker
from corpsync.core.storage import StorageSink
from corpsync.models.resource import Resource

CORPORATION_ID = 98000001
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """可手动推进的时钟."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> datetime:
        self.now += timedelta(minutes=minutes)
        return self.now


class FakeFetchClient:
    """按资源返回预置数据的拉取客户端."""

    def __init__(self) -> None:
        self.records: dict[Resource, list[dict[str, Any]]] = {}
        self.errors: dict[Resource, Exception] = {}
        self.calls: list[tuple[Resource, int, str]] = []

    async def fetch(
        self,
        resource: Resource,
        corporation_id: int,
        credential: str,
    ) -> list[dict[str, Any]]:
        self.calls.append((resource, corporation_id, credential))
        if resource in self.errors:
            raise self.errors[resource]
        return list(self.records.get(resource, []))


def make_members(count: int, start: int = 1) -> list[dict[str, Any]]:
    """生成 membertracking 格式的成员记录."""
    return [
        {
            "character_id": 90000000 + i,
            "base_id": 60003760,
            "location_id": 30000142,
            "ship_type_id": 670,
            "start_date": "2023-01-01T00:00:00Z",
            "logon_date": "2024-04-30T18:00:00Z",
        }
        for i in range(start, start + count)
    ]


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """创建测试用的内存数据库."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def tracker(kv_store: MemoryKeyValueStore, clock: FakeClock) -> SyncStateTracker:
    return SyncStateTracker(kv_store, clock=clock)


@pytest.fixture
def storage(
    session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
) -> StorageSink:
    return StorageSink(session_factory, clock)


@pytest.fixture
def fetch_client() -> FakeFetchClient:
    return FakeFetchClient()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        corporation_id=CORPORATION_ID,
        esi_access_token="test-token",
        min_sync_interval_minutes=30,
        scheduler_enabled=False,
    )


@pytest_asyncio.fixture
async def service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    fetch_client: FakeFetchClient,
    kv_store: MemoryKeyValueStore,
    clock: FakeClock,
) -> AsyncGenerator[SyncService, None]:
    """创建使用假拉取客户端的同步服务."""
    sync_service = SyncService(
        settings,
        session_factory,
        fetch_client=fetch_client,
        store=kv_store,
        clock=clock,
    )
    await sync_service.start()
    yield sync_service
    await sync_service.shutdown()


@pytest_asyncio.fixture
async def client(service: SyncService) -> AsyncGenerator[AsyncClient, None]:
    """创建测试用的 HTTP 客户端."""
    from corpsync.main import app

    app.state.sync_service = service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.sync_service = None
