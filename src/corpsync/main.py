"""corpsync 主应用入口."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from corpsync.api import freshness, schedules, sync
from corpsync.config import get_settings
from corpsync.core.service import SyncService
from corpsync.models.database import async_session_maker, close_db, init_db

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """应用生命周期管理."""
    app_settings = get_settings()

    logger.info("正在初始化数据库...")
    await init_db(app_settings.database_url)

    logger.info("正在恢复同步状态并启动调度...")
    service = SyncService(app_settings, async_session_maker())
    await service.start()
    app.state.sync_service = service

    logger.info("corpsync 启动完成！")
    yield

    # 关闭时清理
    logger.info("正在关闭...")
    await service.shutdown()
    app.state.sync_service = None
    await close_db()
    logger.info("corpsync 已关闭")


app = FastAPI(
    title="corpsync",
    description="EVE Online 军团数据同步服务 - ESI 拉取、入库与新鲜度追踪",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
app.include_router(sync.router)
app.include_router(schedules.router)
app.include_router(freshness.router)


@app.get("/")
async def root() -> dict:
    """根路径."""
    return {
        "name": "corpsync",
        "version": "0.1.0",
        "description": "EVE Online 军团数据同步服务",
    }


@app.get("/health")
async def health() -> dict:
    """健康检查."""
    service = getattr(app.state, "sync_service", None)
    return {
        "status": "ok",
        "scheduler_running": bool(service and service.scheduler.is_running()),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "corpsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
