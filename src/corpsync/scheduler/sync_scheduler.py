"""同步调度器 - 按配置的间隔触发各同步进程."""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from corpsync.core.kv import KeyValueStore, MemoryKeyValueStore
from corpsync.core.state import AlreadyRunningError, SyncStateTracker
from corpsync.models.sync import ProcessType, SyncProcessConfig, SyncResult
from corpsync.utils.datetime import utc_now

logger = logging.getLogger(__name__)

CONFIGS_KEY = "sync-schedule-configs"
TICK_JOB_ID = "sync_tick"

CredentialProvider = Callable[[SyncProcessConfig], str | None]


class SyncRunner(Protocol):
    """执行同步的入口."""

    async def run_sync_process(
        self,
        process_id: str,
        process_type: ProcessType,
        corporation_id: int,
        credential: str,
        storage_sink: object | None = None,
    ) -> SyncResult: ...

    def cancel_sync(self, process_id: str) -> bool: ...


class IntervalTooShortError(ValueError):
    """同步间隔低于允许的最小值."""

    def __init__(self, interval_minutes: int, minimum_minutes: int) -> None:
        super().__init__(
            f"同步间隔 {interval_minutes} 分钟低于最小值 {minimum_minutes} 分钟"
        )
        self.interval_minutes = interval_minutes
        self.minimum_minutes = minimum_minutes


class UnknownProcessError(LookupError):
    """未调度的同步进程."""

    def __init__(self, process_id: str) -> None:
        super().__init__(f"未找到同步进程: {process_id}")
        self.process_id = process_id


class SyncFailedError(RuntimeError):
    """手动触发的同步失败."""

    def __init__(self, process_id: str, result: SyncResult) -> None:
        super().__init__(f"同步进程 {process_id} 失败: {result.error_message}")
        self.process_id = process_id
        self.result = result


class SyncScheduler:
    """
    同步调度器.

    APScheduler 每隔 tick_seconds 调用一次 tick()；tick 只负责挑出到期的进程
    并以后台任务派发，不等待同步完成。同时运行的定时同步数受信号量限制。
    """

    def __init__(
        self,
        runner: SyncRunner,
        tracker: SyncStateTracker,
        store: KeyValueStore | None = None,
        *,
        credential_provider: CredentialProvider | None = None,
        default_corporation_id: int | None = None,
        min_interval_minutes: int = 1440,
        tick_seconds: int = 60,
        max_concurrent_syncs: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.runner = runner
        self.tracker = tracker
        self.store: KeyValueStore = store or MemoryKeyValueStore()
        self.credential_provider = credential_provider or (lambda _config: None)
        self.default_corporation_id = default_corporation_id
        self.min_interval_minutes = min_interval_minutes
        self.tick_seconds = tick_seconds
        self._clock = clock

        self._configs: dict[str, SyncProcessConfig] = {}
        self._next_runs: dict[str, datetime] = {}
        self._in_flight: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._semaphore = asyncio.Semaphore(max_concurrent_syncs)
        self._scheduler: AsyncIOScheduler | None = None

    # ---------- 配置 ----------

    def _validate_interval(self, interval_minutes: int) -> None:
        if interval_minutes < self.min_interval_minutes:
            raise IntervalTooShortError(interval_minutes, self.min_interval_minutes)

    async def _save_configs(self) -> None:
        try:
            await self.store.set(
                CONFIGS_KEY,
                [config.model_dump(mode="json") for config in self._configs.values()],
            )
        except Exception:
            logger.exception("保存调度配置失败")

    async def load_configs(self) -> list[SyncProcessConfig]:
        """从持久化存储恢复调度配置."""
        raw = await self.store.get(CONFIGS_KEY) or []
        for item in raw:
            config = SyncProcessConfig.model_validate(item)
            if config.interval_minutes < self.min_interval_minutes:
                logger.warning(
                    "进程 %s 的间隔 %d 分钟低于当前最小值 %d 分钟，仍按原配置调度",
                    config.process_id,
                    config.interval_minutes,
                    self.min_interval_minutes,
                )
            self._configs[config.process_id] = config
            await self._compute_next_run(config.process_id)

        logger.info("已加载 %d 个同步调度配置", len(self._configs))
        return self.get_scheduled_processes()

    def get_scheduled_processes(self) -> list[SyncProcessConfig]:
        return [config.model_copy() for config in self._configs.values()]

    def get_process_config(self, process_id: str) -> SyncProcessConfig | None:
        config = self._configs.get(process_id)
        return config.model_copy() if config else None

    def _require_config(self, process_id: str) -> SyncProcessConfig:
        config = self._configs.get(process_id)
        if config is None:
            raise UnknownProcessError(process_id)
        return config

    async def schedule_process(self, config: SyncProcessConfig) -> SyncProcessConfig:
        """
        添加或替换调度配置.

        Raises:
            IntervalTooShortError: 间隔低于最小值
        """
        self._validate_interval(config.interval_minutes)
        self._configs[config.process_id] = config.model_copy()
        await self._compute_next_run(config.process_id)
        await self._save_configs()
        logger.info(
            "已调度同步进程 %s (%s)，间隔 %d 分钟，启用=%s",
            config.process_id,
            config.process_type,
            config.interval_minutes,
            config.enabled,
        )
        return config.model_copy()

    async def unschedule_process(self, process_id: str) -> None:
        """移除调度配置（不影响正在运行的同步）."""
        self._require_config(process_id)
        del self._configs[process_id]
        self._next_runs.pop(process_id, None)
        await self._save_configs()
        await self.tracker.set_next_run_time(process_id, None)
        logger.info("已移除同步进程调度: %s", process_id)

    async def toggle_process(self, process_id: str, enabled: bool) -> SyncProcessConfig:
        """启用或停用进程."""
        config = self._require_config(process_id)
        config.enabled = enabled
        await self._compute_next_run(process_id)
        await self._save_configs()
        logger.info("同步进程 %s 已%s", process_id, "启用" if enabled else "停用")
        return config.model_copy()

    async def update_interval(
        self,
        process_id: str,
        interval_minutes: int,
    ) -> SyncProcessConfig:
        """
        修改同步间隔并重新计算下次运行时间.

        Raises:
            IntervalTooShortError: 间隔低于最小值
            UnknownProcessError: 进程未调度
        """
        config = self._require_config(process_id)
        self._validate_interval(interval_minutes)
        config.interval_minutes = interval_minutes
        await self._compute_next_run(process_id)
        await self._save_configs()
        logger.info("同步进程 %s 间隔已改为 %d 分钟", process_id, interval_minutes)
        return config.model_copy()

    def get_next_run_time(self, process_id: str) -> datetime | None:
        """下次计划运行时间，停用或未调度的进程返回 None."""
        config = self._configs.get(process_id)
        if config is None or not config.enabled:
            return None
        return self._next_runs.get(process_id)

    async def _compute_next_run(
        self,
        process_id: str,
        since: datetime | None = None,
    ) -> None:
        """下次运行 = 上次运行 + 间隔；从未运行过则从现在起算一个间隔."""
        config = self._configs[process_id]
        last_run = self.tracker.get_sync_status(process_id).last_run_time
        base = since or last_run or self._clock()
        self._next_runs[process_id] = base + timedelta(minutes=config.interval_minutes)
        await self.tracker.set_next_run_time(process_id, self.get_next_run_time(process_id))

    # ---------- 运行 ----------

    def is_running(self) -> bool:
        """调度器是否已启动."""
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """启动周期 tick."""
        if self.is_running():
            return
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.tick,
            "interval",
            seconds=self.tick_seconds,
            id=TICK_JOB_ID,
            name="同步调度检查",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("同步调度器已启动，检查间隔: %d 秒", self.tick_seconds)

    async def stop(self) -> None:
        """停止调度并中止仍在运行的定时同步."""
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("同步调度器已关闭")

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_idle(self) -> None:
        """等待已派发的定时同步全部结束."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _is_due(self, process_id: str, now: datetime) -> bool:
        config = self._configs[process_id]
        if not config.enabled:
            return False
        if process_id in self._in_flight or self.tracker.is_process_running(process_id):
            return False
        next_run = self._next_runs.get(process_id)
        return next_run is not None and now >= next_run

    async def tick(self, now: datetime | None = None) -> list[str]:
        """派发所有到期的进程，返回本次派发的进程 ID."""
        now = now or self._clock()
        due = [pid for pid in list(self._configs) if self._is_due(pid, now)]

        for process_id in due:
            self._in_flight.add(process_id)
            task = asyncio.create_task(
                self._run_scheduled(self._configs[process_id].model_copy()),
                name=f"sync-{process_id}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if due:
            logger.info("调度派发同步进程: %s", ", ".join(due))
        return due

    async def _run_scheduled(self, config: SyncProcessConfig) -> None:
        process_id = config.process_id
        skipped_at: datetime | None = None
        try:
            async with self._semaphore:
                corporation_id = config.corporation_id or self.default_corporation_id
                credential = self.credential_provider(config)
                if corporation_id is None or not credential:
                    logger.warning("同步进程 %s 缺少军团 ID 或凭证，跳过本次调度", process_id)
                    skipped_at = self._clock()
                    return

                result = await self.runner.run_sync_process(
                    process_id, config.process_type, corporation_id, credential
                )
                if not result.success:
                    logger.warning(
                        "定时同步 %s 失败，将在下个周期重试: %s",
                        process_id,
                        result.error_message,
                    )
        except AlreadyRunningError:
            logger.info("同步进程 %s 已在运行，跳过本次调度", process_id)
        except Exception:
            logger.exception("定时同步 %s 出现未预期的错误", process_id)
        finally:
            self._in_flight.discard(process_id)
            if process_id in self._configs:
                await self._compute_next_run(process_id, since=skipped_at)

    async def run_process_now(
        self,
        process_id: str,
        process_type: ProcessType,
        corporation_id: int,
        credential: str,
        storage_sink: object | None = None,
    ) -> SyncResult:
        """
        立即执行一次同步，不受启用状态和运行时间限制.

        Raises:
            AlreadyRunningError: 进程正在运行
            SyncFailedError: 同步失败
        """
        try:
            result = await self.runner.run_sync_process(
                process_id, process_type, corporation_id, credential, storage_sink
            )
        finally:
            if process_id in self._configs and not self.tracker.is_process_running(
                process_id
            ):
                await self._compute_next_run(process_id)

        if not result.success:
            raise SyncFailedError(process_id, result)
        return result

    def cancel_process(self, process_id: str) -> bool:
        """请求取消正在运行的同步."""
        return self.runner.cancel_sync(process_id)
