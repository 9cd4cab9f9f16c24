"""入库 upsert 测试."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from conftest import CORPORATION_ID, T0, FakeClock, make_members
from corpsync.core.errors import ErrorCategory
from corpsync.core.storage import CHUNK_SIZE, StorageError, StorageSink, table_for
from corpsync.core.transforms import transform_records
from corpsync.models.corporation import CorporationAsset, CorporationMember
from corpsync.models.resource import Resource
from corpsync.utils.datetime import ensure_utc


def _assets(count: int, quantity: int = 1) -> list[dict]:
    return transform_records(
        Resource.CORPORATION_ASSETS,
        [
            {
                "item_id": 1000 + i,
                "type_id": 34,
                "quantity": quantity,
                "location_id": 60003760,
                "location_flag": "CorpSAG1",
                "is_singleton": False,
            }
            for i in range(count)
        ],
    )


class TestUpsert:
    """upsert 行为测试."""

    async def test_writes_rows(self, storage: StorageSink) -> None:
        """写入记录并返回写入数量."""
        rows = transform_records(Resource.CORPORATION_MEMBERS, make_members(5))
        result = await storage.upsert(Resource.CORPORATION_MEMBERS, CORPORATION_ID, rows)

        assert result.items_written == 5
        assert await storage.count(Resource.CORPORATION_MEMBERS, CORPORATION_ID) == 5

    async def test_repeated_upsert_is_idempotent(
        self,
        storage: StorageSink,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """相同主键重复写入只更新，不产生新行."""
        await storage.upsert(Resource.CORPORATION_ASSETS, CORPORATION_ID, _assets(10))
        await storage.upsert(
            Resource.CORPORATION_ASSETS, CORPORATION_ID, _assets(10, quantity=7)
        )

        assert await storage.count(Resource.CORPORATION_ASSETS, CORPORATION_ID) == 10
        async with session_factory() as session:
            result = await session.execute(select(CorporationAsset.quantity))
            assert set(result.scalars().all()) == {7}

    async def test_rows_are_scoped_by_corporation(self, storage: StorageSink) -> None:
        """不同军团的同一自然键互不覆盖."""
        rows = transform_records(Resource.CORPORATION_MEMBERS, make_members(3))
        await storage.upsert(Resource.CORPORATION_MEMBERS, CORPORATION_ID, rows)
        await storage.upsert(Resource.CORPORATION_MEMBERS, 98000002, rows)

        assert await storage.count(Resource.CORPORATION_MEMBERS, CORPORATION_ID) == 3
        assert await storage.count(Resource.CORPORATION_MEMBERS, 98000002) == 3

    async def test_duplicate_keys_in_batch_collapse(
        self,
        storage: StorageSink,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """同一批次的重复主键以最后一条为准."""
        rows = transform_records(Resource.CORPORATION_MEMBERS, make_members(1))
        later = {**rows[0], "ship_type_id": 11567}

        result = await storage.upsert(
            Resource.CORPORATION_MEMBERS, CORPORATION_ID, [rows[0], later]
        )

        assert result.items_written == 1
        async with session_factory() as session:
            member = (await session.execute(select(CorporationMember))).scalar_one()
            assert member.ship_type_id == 11567

    async def test_empty_input_writes_nothing(self, storage: StorageSink) -> None:
        """空输入不访问数据库."""
        result = await storage.upsert(Resource.KILLMAILS, CORPORATION_ID, [])

        assert result.items_written == 0
        assert await storage.last_updated(Resource.KILLMAILS, CORPORATION_ID) is None

    async def test_large_batch_is_chunked(self, storage: StorageSink) -> None:
        """超过单批大小的数据分批写入."""
        count = CHUNK_SIZE * 2 + 37
        result = await storage.upsert(
            Resource.CORPORATION_ASSETS, CORPORATION_ID, _assets(count)
        )

        assert result.items_written == count
        assert await storage.count(Resource.CORPORATION_ASSETS, CORPORATION_ID) == count


class TestLastUpdated:
    """last_updated 测试."""

    async def test_last_updated_is_set_on_write(
        self, storage: StorageSink, clock: FakeClock
    ) -> None:
        """每次写入按注入的时钟刷新 last_updated."""
        await storage.upsert(Resource.CORPORATION_ASSETS, CORPORATION_ID, _assets(2))
        assert (
            await storage.last_updated(Resource.CORPORATION_ASSETS, CORPORATION_ID)
            == T0
        )

        clock.advance(30)
        await storage.upsert(Resource.CORPORATION_ASSETS, CORPORATION_ID, _assets(2))
        assert await storage.last_updated(
            Resource.CORPORATION_ASSETS, CORPORATION_ID
        ) == T0 + timedelta(minutes=30)

    async def test_written_rows_read_back_with_utc_timezone(
        self,
        storage: StorageSink,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """写入与读回的时间都是带时区的 UTC 时间."""
        rows = transform_records(
            Resource.CORPORATION_MEMBERS,
            [{"character_id": 7, "logon_date": "2024-05-01T10:15:00Z"}],
        )
        await storage.upsert(Resource.CORPORATION_MEMBERS, CORPORATION_ID, rows)

        async with session_factory() as session:
            member = (await session.execute(select(CorporationMember))).scalar_one()

        assert ensure_utc(member.last_updated) == T0
        assert ensure_utc(member.logon_date) == datetime(
            2024, 5, 1, 10, 15, tzinfo=UTC
        )

        last_updated = await storage.last_updated(
            Resource.CORPORATION_MEMBERS, CORPORATION_ID
        )
        assert last_updated is not None
        assert last_updated.tzinfo is not None
        assert last_updated == T0

    async def test_no_data_returns_none(self, storage: StorageSink) -> None:
        assert await storage.last_updated(Resource.MINING_LEDGER, CORPORATION_ID) is None


class TestStorageErrors:
    """写入失败测试."""

    async def test_missing_table_raises_storage_error(self) -> None:
        """数据库错误转换为 StorageError."""
        engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
        sink = StorageSink(async_sessionmaker(engine, class_=AsyncSession))

        with pytest.raises(StorageError) as exc_info:
            await sink.upsert(
                Resource.CORPORATION_ASSETS, CORPORATION_ID, _assets(1)
            )
        await engine.dispose()

        assert exc_info.value.category == ErrorCategory.DATABASE
        assert table_for(Resource.CORPORATION_ASSETS).name in str(exc_info.value)

    async def test_failed_batch_leaves_no_partial_rows(
        self,
        storage: StorageSink,
    ) -> None:
        """批次中途失败时整批回滚."""
        rows = _assets(CHUNK_SIZE + 1)
        rows[-1]["type_id"] = None

        with pytest.raises(StorageError):
            await storage.upsert(Resource.CORPORATION_ASSETS, CORPORATION_ID, rows)

        assert await storage.count(Resource.CORPORATION_ASSETS, CORPORATION_ID) == 0
