"""数据新鲜度 - 根据 last_updated 判断数据是否过期."""

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime

from pydantic import BaseModel

from corpsync.config import DEFAULT_FRESHNESS_CUTOFFS
from corpsync.core.storage import StorageSink
from corpsync.models.resource import Resource
from corpsync.utils.datetime import ensure_utc, utc_now

logger = logging.getLogger(__name__)

DEFAULT_CUTOFF_MINUTES = 60

# 数据类型 → 存储资源
DATA_TYPE_RESOURCES: dict[str, Resource] = {
    "members": Resource.CORPORATION_MEMBERS,
    "assets": Resource.CORPORATION_ASSETS,
    "manufacturing": Resource.INDUSTRY_JOBS,
    "market": Resource.MARKET_ORDERS,
    "wallet": Resource.WALLET_TRANSACTIONS,
    "mining": Resource.MINING_LEDGER,
    "killmails": Resource.KILLMAILS,
    "container_logs": Resource.CONTAINER_LOGS,
    "contracts": Resource.CONTRACTS,
    "planetary": Resource.CUSTOMS_OFFICES,
    "item_pricing": Resource.MARKET_PRICES,
}


class DataFreshnessInfo(BaseModel):
    """某类数据的新鲜度."""

    data_type: str
    last_updated: datetime | None = None
    freshness_cutoff_minutes: int
    is_stale: bool
    stale_duration_minutes: int | None = None


def get_cutoff_minutes(
    data_type: str,
    cutoffs: Mapping[str, int] | None = None,
) -> int:
    """获取数据类型的过期阈值，未配置的类型使用 60 分钟."""
    table = DEFAULT_FRESHNESS_CUTOFFS if cutoffs is None else cutoffs
    return table.get(data_type, DEFAULT_CUTOFF_MINUTES)


def calculate_freshness(
    last_updated: datetime | None,
    data_type: str,
    cutoffs: Mapping[str, int] | None = None,
    now: datetime | None = None,
) -> DataFreshnessInfo:
    """
    计算数据新鲜度.

    没有数据时视为过期，stale_duration_minutes 为 None；
    否则 stale_duration_minutes 为数据年龄（向下取整的分钟数），
    年龄超过阈值即过期。
    """
    cutoff = get_cutoff_minutes(data_type, cutoffs)

    if last_updated is None:
        return DataFreshnessInfo(
            data_type=data_type,
            freshness_cutoff_minutes=cutoff,
            is_stale=True,
        )

    updated_at = ensure_utc(last_updated)
    age_seconds = ((now or utc_now()) - updated_at).total_seconds()
    age_minutes = max(int(age_seconds // 60), 0)

    return DataFreshnessInfo(
        data_type=data_type,
        last_updated=updated_at,
        freshness_cutoff_minutes=cutoff,
        is_stale=age_seconds > cutoff * 60,
        stale_duration_minutes=age_minutes,
    )


async def get_data_freshness(
    storage: StorageSink,
    corporation_id: int,
    data_types: Iterable[str] | None = None,
    cutoffs: Mapping[str, int] | None = None,
    now: datetime | None = None,
) -> list[DataFreshnessInfo]:
    """
    查询军团各类数据的新鲜度.

    Raises:
        KeyError: 未知的数据类型
        StorageError: 查询失败
    """
    now = now or utc_now()
    types = list(DATA_TYPE_RESOURCES) if data_types is None else list(data_types)

    results = []
    for data_type in types:
        resource = DATA_TYPE_RESOURCES[data_type]
        last_updated = await storage.last_updated(resource, corporation_id)
        results.append(calculate_freshness(last_updated, data_type, cutoffs, now))

    stale = [info.data_type for info in results if info.is_stale]
    if stale:
        logger.debug("军团 %s 以下数据已过期: %s", corporation_id, ", ".join(stale))
    return results
