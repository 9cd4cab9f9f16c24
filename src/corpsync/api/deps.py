"""API 依赖."""

from fastapi import HTTPException, Request, WebSocket

from corpsync.core.service import SyncService


def get_sync_service(request: Request) -> SyncService:
    """获取应用启动时创建的同步服务."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="同步服务未启动")
    return service


def get_ws_sync_service(websocket: WebSocket) -> SyncService | None:
    return getattr(websocket.app.state, "sync_service", None)
