"""同步状态与手动触发 API."""

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from corpsync.api.deps import get_sync_service, get_ws_sync_service
from corpsync.core.error_log import ErrorStats, SyncErrorRecord
from corpsync.core.service import SyncService
from corpsync.core.state import AlreadyRunningError
from corpsync.models.sync import (
    ProcessType,
    SyncHistoryEntry,
    SyncResult,
    SyncStateData,
    SyncStatus,
)
from corpsync.scheduler import SyncFailedError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


class RunRequest(BaseModel):
    """手动触发参数，未提供的字段取调度配置或默认配置."""

    process_type: ProcessType | None = None
    corporation_id: int | None = None


@router.get("/status")
async def list_sync_status(
    service: SyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    """获取所有进程的同步状态."""
    state = service.tracker.get_state()
    statuses = dict(state.statuses)
    for config in service.scheduler.get_scheduled_processes():
        statuses.setdefault(
            config.process_id, service.tracker.get_sync_status(config.process_id)
        )

    return {
        "items": [statuses[pid] for pid in sorted(statuses)],
        "running_processes": state.running_processes,
    }


@router.get("/status/{process_id}")
async def get_sync_status(
    process_id: str,
    service: SyncService = Depends(get_sync_service),
) -> SyncStatus:
    """获取单个进程的同步状态."""
    return service.tracker.get_sync_status(process_id)


@router.get("/history")
async def get_sync_history(
    process_id: str | None = None,
    limit: int = 50,
    service: SyncService = Depends(get_sync_service),
) -> list[SyncHistoryEntry]:
    """获取同步历史（最新在前）."""
    return service.tracker.get_sync_history(process_id, limit)


@router.post("/{process_id}/run")
async def run_sync(
    process_id: str,
    body: RunRequest | None = None,
    service: SyncService = Depends(get_sync_service),
) -> SyncResult:
    """立即执行一次同步（等待完成）."""
    body = body or RunRequest()
    config = service.scheduler.get_process_config(process_id)

    process_type = body.process_type or (config.process_type if config else None)
    if process_type is None:
        raise HTTPException(status_code=404, detail=f"未找到同步进程: {process_id}")

    corporation_id = (
        body.corporation_id
        or (config.corporation_id if config else None)
        or service.settings.corporation_id
    )
    if corporation_id is None:
        raise HTTPException(status_code=400, detail="未配置军团 ID")

    credential = service.settings.esi_access_token
    if not credential:
        raise HTTPException(status_code=400, detail="未配置 ESI 凭证")

    try:
        return await service.scheduler.run_process_now(
            process_id, process_type, corporation_id, credential
        )
    except AlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except SyncFailedError as e:
        raise HTTPException(
            status_code=502,
            detail={
                "message": str(e),
                "error_type": e.result.error_type,
                "error_message": e.result.error_message,
            },
        ) from e


@router.post("/{process_id}/cancel")
async def cancel_sync(
    process_id: str,
    service: SyncService = Depends(get_sync_service),
) -> dict[str, str]:
    """请求取消运行中的同步."""
    if not service.scheduler.cancel_process(process_id):
        raise HTTPException(status_code=404, detail=f"同步进程 {process_id} 未在运行")
    return {"message": "已请求取消", "process_id": process_id}


@router.get("/errors")
async def get_sync_errors(
    process_id: str | None = None,
    limit: int = 20,
    service: SyncService = Depends(get_sync_service),
) -> list[SyncErrorRecord]:
    """获取最近的同步错误."""
    if process_id:
        return list(reversed(service.error_log.get_errors_by_process(process_id)))[
            :limit
        ]
    return service.error_log.get_recent_errors(limit)


@router.get("/errors/stats")
async def get_sync_error_stats(
    service: SyncService = Depends(get_sync_service),
) -> ErrorStats:
    """获取同步错误统计."""
    return service.error_log.get_error_stats()


@router.delete("/errors")
async def clear_sync_errors(
    older_than_days: int | None = None,
    service: SyncService = Depends(get_sync_service),
) -> dict[str, int]:
    """清空同步错误；指定天数时只删除更早的记录."""
    if older_than_days is None:
        removed = len(service.error_log.get_errors())
        await service.error_log.clear_errors()
    else:
        removed = await service.error_log.clear_old_errors(older_than_days)
    return {"removed": removed}


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket 端点，状态变化时推送完整快照."""
    service = get_ws_sync_service(websocket)
    await websocket.accept()
    if service is None:
        await websocket.close(code=1011)
        return

    # 只保留最新快照
    queue: asyncio.Queue[SyncStateData] = asyncio.Queue(maxsize=1)

    def on_change(state: SyncStateData) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(state)

    unsubscribe = service.tracker.subscribe(on_change)
    try:
        while True:
            try:
                state = await asyncio.wait_for(queue.get(), timeout=30.0)
            except TimeoutError:
                # 心跳检测
                await websocket.send_text("ping")
                continue
            await websocket.send_json(
                {"type": "state", "data": state.model_dump(mode="json")}
            )
    except WebSocketDisconnect:
        pass
    except RuntimeError:
        logger.debug("WebSocket 连接已关闭")
    finally:
        unsubscribe()
