"""同步调度配置 API."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from corpsync.api.deps import get_sync_service
from corpsync.core.service import SyncService
from corpsync.models.sync import ProcessType, SyncProcessConfig
from corpsync.scheduler import IntervalTooShortError, UnknownProcessError

router = APIRouter(prefix="/api/schedules", tags=["schedules"])


class ScheduleUpdate(BaseModel):
    """调度配置（process_id 取自路径）."""

    process_type: ProcessType
    enabled: bool = True
    interval_minutes: int = Field(ge=1)
    corporation_id: int | None = None


class EnabledUpdate(BaseModel):
    enabled: bool


class IntervalUpdate(BaseModel):
    interval_minutes: int = Field(ge=1)


def _with_next_run(service: SyncService, config: SyncProcessConfig) -> dict[str, Any]:
    return {
        **config.model_dump(mode="json"),
        "next_run_time": service.scheduler.get_next_run_time(config.process_id),
    }


@router.get("")
async def list_schedules(
    service: SyncService = Depends(get_sync_service),
) -> list[dict[str, Any]]:
    """获取全部调度配置."""
    return [
        _with_next_run(service, config)
        for config in service.scheduler.get_scheduled_processes()
    ]


@router.get("/{process_id}")
async def get_schedule(
    process_id: str,
    service: SyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    """获取单个调度配置."""
    config = service.scheduler.get_process_config(process_id)
    if config is None:
        raise HTTPException(status_code=404, detail=f"未找到同步进程: {process_id}")
    return _with_next_run(service, config)


@router.put("/{process_id}")
async def put_schedule(
    process_id: str,
    data: ScheduleUpdate,
    service: SyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    """创建或替换调度配置."""
    config = SyncProcessConfig(process_id=process_id, **data.model_dump())
    try:
        saved = await service.scheduler.schedule_process(config)
    except IntervalTooShortError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return _with_next_run(service, saved)


@router.delete("/{process_id}")
async def delete_schedule(
    process_id: str,
    service: SyncService = Depends(get_sync_service),
) -> dict[str, str]:
    """移除调度配置."""
    try:
        await service.scheduler.unschedule_process(process_id)
    except UnknownProcessError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {"message": "已移除", "process_id": process_id}


@router.patch("/{process_id}/enabled")
async def set_schedule_enabled(
    process_id: str,
    data: EnabledUpdate,
    service: SyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    """启用或停用进程."""
    try:
        config = await service.scheduler.toggle_process(process_id, data.enabled)
    except UnknownProcessError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return _with_next_run(service, config)


@router.patch("/{process_id}/interval")
async def set_schedule_interval(
    process_id: str,
    data: IntervalUpdate,
    service: SyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    """修改同步间隔."""
    try:
        config = await service.scheduler.update_interval(
            process_id, data.interval_minutes
        )
    except UnknownProcessError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except IntervalTooShortError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return _with_next_run(service, config)
