"""同步数据入库 - 按自然键幂等 upsert."""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import Table, func, select
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import SQLModel

from corpsync.core.errors import ErrorCategory, SyncError
from corpsync.models.corporation import (
    ContainerLog,
    CorporationAsset,
    CorporationContract,
    CorporationMember,
    CustomsOffice,
    IndustryJob,
    ItemPrice,
    Killmail,
    MarketOrder,
    MiningLedgerEntry,
    WalletTransaction,
)
from corpsync.models.resource import Resource
from corpsync.utils.datetime import ensure_utc, utc_now

logger = logging.getLogger(__name__)

TABLE_MODELS: dict[Resource, type[SQLModel]] = {
    Resource.CORPORATION_MEMBERS: CorporationMember,
    Resource.CORPORATION_ASSETS: CorporationAsset,
    Resource.INDUSTRY_JOBS: IndustryJob,
    Resource.MARKET_ORDERS: MarketOrder,
    Resource.WALLET_TRANSACTIONS: WalletTransaction,
    Resource.MINING_LEDGER: MiningLedgerEntry,
    Resource.CONTAINER_LOGS: ContainerLog,
    Resource.CONTRACTS: CorporationContract,
    Resource.KILLMAILS: Killmail,
    Resource.CUSTOMS_OFFICES: CustomsOffice,
    Resource.MARKET_PRICES: ItemPrice,
}

# 单条 executemany 的批大小
CHUNK_SIZE = 500


class StorageError(SyncError):
    """入库失败（连接、约束或 SQL 错误）."""

    category = ErrorCategory.DATABASE


@dataclass
class UpsertResult:
    """upsert 结果."""

    resource: Resource
    items_written: int


def table_for(resource: Resource) -> Table:
    """获取资源对应的表."""
    return TABLE_MODELS[resource].__table__  # type: ignore[attr-defined]


def _build_upsert(dialect: str, table: Table) -> Any:
    """构造方言原生的 upsert 语句."""
    pk_columns = [column.name for column in table.primary_key.columns]
    update_columns = [column.name for column in table.columns if not column.primary_key]

    if dialect == "mysql" or dialect == "mariadb":
        stmt = mysql.insert(table)
        return stmt.on_duplicate_key_update(
            {name: stmt.inserted[name] for name in update_columns}
        )

    if dialect == "postgresql":
        stmt = postgresql.insert(table)
        return stmt.on_conflict_do_update(
            index_elements=pk_columns,
            set_={name: stmt.excluded[name] for name in update_columns},
        )

    if dialect == "sqlite":
        stmt = sqlite.insert(table)
        return stmt.on_conflict_do_update(
            index_elements=pk_columns,
            set_={name: stmt.excluded[name] for name in update_columns},
        )

    msg = f"不支持的数据库方言: {dialect}"
    raise StorageError(msg)


class StorageSink:
    """同步数据写入器."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def prepare_rows(
        self,
        resource: Resource,
        corporation_id: int,
        records: Sequence[dict[str, Any]],
        written_at: datetime,
    ) -> list[dict[str, Any]]:
        """补齐列并按主键去重（同批次中后出现的记录覆盖先出现的）."""
        table = table_for(resource)
        columns = [column.name for column in table.columns]
        pk_columns = [column.name for column in table.primary_key.columns]

        rows: dict[tuple[Any, ...], dict[str, Any]] = {}
        for record in records:
            row = {name: record.get(name) for name in columns}
            row["corporation_id"] = corporation_id
            row["last_updated"] = written_at
            rows[tuple(row[name] for name in pk_columns)] = row

        if len(rows) < len(records):
            logger.info(
                "%s: 批次内有 %d 条重复记录被合并",
                resource,
                len(records) - len(rows),
            )
        return list(rows.values())

    async def upsert(
        self,
        resource: Resource,
        corporation_id: int,
        records: Sequence[dict[str, Any]],
    ) -> UpsertResult:
        """
        在一个事务内写入整批记录.

        Raises:
            StorageError: 写入失败，事务已回滚，不会留下部分数据
        """
        if not records:
            return UpsertResult(resource=resource, items_written=0)

        table = table_for(resource)
        rows = self.prepare_rows(
            resource, corporation_id, records, ensure_utc(self.clock())
        )

        try:
            async with self.session_factory() as session:
                stmt = _build_upsert(session.bind.dialect.name, table)
                for start in range(0, len(rows), CHUNK_SIZE):
                    await session.execute(stmt, rows[start : start + CHUNK_SIZE])
                await session.commit()
        except SQLAlchemyError as e:
            msg = f"写入 {table.name} 失败: {e}"
            logger.error(msg)
            raise StorageError(msg) from e

        logger.info("%s: 已写入 %d 条记录 (corp=%s)", table.name, len(rows), corporation_id)
        return UpsertResult(resource=resource, items_written=len(rows))

    async def last_updated(
        self,
        resource: Resource,
        corporation_id: int,
    ) -> datetime | None:
        """获取某军团某资源最近一次写入时间."""
        table = table_for(resource)
        stmt = select(func.max(table.c.last_updated)).where(
            table.c.corporation_id == corporation_id
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                value = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            msg = f"查询 {table.name} 更新时间失败: {e}"
            raise StorageError(msg) from e
        return ensure_utc(value) if value is not None else None

    async def count(self, resource: Resource, corporation_id: int) -> int:
        """统计某军团某资源的记录数."""
        table = table_for(resource)
        stmt = (
            select(func.count())
            .select_from(table)
            .where(table.c.corporation_id == corporation_id)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return int(result.scalar_one())
        except SQLAlchemyError as e:
            msg = f"统计 {table.name} 失败: {e}"
            raise StorageError(msg) from e
