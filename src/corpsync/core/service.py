"""同步服务 - 组装各组件，作为手动与定时同步的统一入口."""

import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from corpsync.config import Settings
from corpsync.core.error_log import SyncErrorLog
from corpsync.core.esi import ESIClient, ESIConfig
from corpsync.core.executor import (
    FetchClient,
    StorageBackend,
    SyncContext,
    SyncExecutor,
)
from corpsync.core.freshness import DataFreshnessInfo, get_data_freshness
from corpsync.core.kv import DatabaseKeyValueStore, KeyValueStore
from corpsync.core.state import SyncStateTracker
from corpsync.core.storage import StorageSink
from corpsync.models.sync import ProcessType, SyncProcessConfig, SyncResult
from corpsync.scheduler import SyncScheduler
from corpsync.utils.datetime import utc_now

logger = logging.getLogger(__name__)


class SyncService:
    """同步服务."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        fetch_client: FetchClient | None = None,
        store: KeyValueStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self.store: KeyValueStore = store or DatabaseKeyValueStore(session_factory)
        self.tracker = SyncStateTracker(
            self.store, settings.sync_history_capacity, clock
        )
        self.error_log = SyncErrorLog(self.store, settings.sync_error_capacity, clock)
        self.fetch_client: FetchClient = fetch_client or ESIClient(
            ESIConfig.from_settings(settings)
        )
        self.storage = StorageSink(session_factory, clock)
        self.executor = SyncExecutor(
            self.tracker, self.fetch_client, self.storage, self.error_log
        )
        self.scheduler = SyncScheduler(
            self,
            self.tracker,
            self.store,
            credential_provider=self._credential_for,
            default_corporation_id=settings.corporation_id,
            min_interval_minutes=settings.min_sync_interval_minutes,
            tick_seconds=settings.scheduler_tick_seconds,
            max_concurrent_syncs=settings.max_concurrent_syncs,
            clock=clock,
        )

    def _credential_for(self, config: SyncProcessConfig) -> str | None:
        return self.settings.esi_access_token or None

    async def start(self) -> None:
        """恢复持久化状态并启动调度."""
        await self.tracker.load()
        await self.error_log.load()
        await self.scheduler.load_configs()

        if self.settings.scheduler_enabled:
            self.scheduler.start()
        else:
            logger.info("定时同步已禁用")

    async def shutdown(self) -> None:
        """停止调度并释放资源."""
        await self.scheduler.stop()
        if isinstance(self.fetch_client, ESIClient):
            await self.fetch_client.close()
        await self.store.flush()

    async def run_sync_process(
        self,
        process_id: str,
        process_type: ProcessType,
        corporation_id: int,
        credential: str,
        storage_sink: StorageBackend | None = None,
    ) -> SyncResult:
        """
        执行一次同步.

        Raises:
            AlreadyRunningError: 进程已在运行
        """
        context = SyncContext(
            process_id=process_id,
            corporation_id=corporation_id,
            credential=credential,
            storage_sink=storage_sink,
        )
        return await self.executor.execute(ProcessType(process_type), context)

    def cancel_sync(self, process_id: str) -> bool:
        return self.executor.cancel(process_id)

    async def get_data_freshness(
        self,
        corporation_id: int,
        data_types: Iterable[str] | None = None,
    ) -> list[DataFreshnessInfo]:
        """查询军团数据新鲜度."""
        return await get_data_freshness(
            self.storage,
            corporation_id,
            data_types,
            self.settings.freshness_cutoff_minutes,
            self._clock(),
        )
