"""数据新鲜度 API."""

from fastapi import APIRouter, Depends, HTTPException

from corpsync.api.deps import get_sync_service
from corpsync.core.freshness import DATA_TYPE_RESOURCES, DataFreshnessInfo
from corpsync.core.service import SyncService

router = APIRouter(prefix="/api/freshness", tags=["freshness"])


@router.get("/{corporation_id}")
async def get_corporation_freshness(
    corporation_id: int,
    service: SyncService = Depends(get_sync_service),
) -> list[DataFreshnessInfo]:
    """获取军团全部数据类型的新鲜度."""
    return await service.get_data_freshness(corporation_id)


@router.get("/{corporation_id}/{data_type}")
async def get_data_type_freshness(
    corporation_id: int,
    data_type: str,
    service: SyncService = Depends(get_sync_service),
) -> DataFreshnessInfo:
    """获取单个数据类型的新鲜度."""
    if data_type not in DATA_TYPE_RESOURCES:
        raise HTTPException(status_code=404, detail=f"未知的数据类型: {data_type}")
    results = await service.get_data_freshness(corporation_id, [data_type])
    return results[0]
