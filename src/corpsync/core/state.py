"""同步状态追踪 - 每个进程的状态机、运行历史与变更通知."""

import logging
from collections import deque
from collections.abc import Callable
from datetime import datetime

from corpsync.core.kv import KeyValueStore, MemoryKeyValueStore
from corpsync.models.sync import SyncHistoryEntry, SyncStateData, SyncStatus
from corpsync.utils.datetime import utc_now

logger = logging.getLogger(__name__)

STATUSES_KEY = "sync-statuses"
HISTORY_KEY = "sync-history"
DEFAULT_HISTORY_CAPACITY = 100

Listener = Callable[[SyncStateData], None]


class AlreadyRunningError(RuntimeError):
    """同一进程已有运行中的同步."""

    def __init__(self, process_id: str) -> None:
        super().__init__(f"同步进程 {process_id} 已在运行")
        self.process_id = process_id


class SyncStateTracker:
    """
    同步状态追踪器.

    状态只能通过本类的方法修改；每次修改都会先持久化，再通知订阅者。
    互斥检查与标记在同一个同步代码段内完成，不会被事件循环打断。
    """

    def __init__(
        self,
        store: KeyValueStore | None = None,
        history_capacity: int = DEFAULT_HISTORY_CAPACITY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store: KeyValueStore = store or MemoryKeyValueStore()
        self.history_capacity = history_capacity
        self._clock = clock
        self._statuses: dict[str, SyncStatus] = {}
        self._history: deque[SyncHistoryEntry] = deque(maxlen=history_capacity)
        self._running: set[str] = set()
        self._started_at: dict[str, datetime] = {}
        self._listeners: list[Listener] = []

    async def load(self) -> None:
        """从持久化存储恢复状态，重启前仍在运行的进程标记为失败."""
        raw_statuses = await self.store.get(STATUSES_KEY) or {}
        raw_history = await self.store.get(HISTORY_KEY) or []

        self._statuses = {
            process_id: SyncStatus.model_validate(data)
            for process_id, data in raw_statuses.items()
        }
        self._history = deque(
            (SyncHistoryEntry.model_validate(item) for item in raw_history),
            maxlen=self.history_capacity,
        )
        self._running.clear()
        self._started_at.clear()

        interrupted = 0
        for status in self._statuses.values():
            if status.status == "running":
                status.status = "error"
                status.current_step = "Interrupted"
                status.error_message = "同步在服务重启时被中断"
                status.error_count += 1
                interrupted += 1

        if interrupted:
            logger.warning("已将 %d 个中断的同步进程标记为失败", interrupted)
            await self._save()

        logger.info(
            "同步状态已加载: %d 个进程, %d 条历史",
            len(self._statuses),
            len(self._history),
        )
        self._notify()

    async def _save(self) -> None:
        try:
            await self.store.set(
                STATUSES_KEY,
                {
                    process_id: status.model_dump(mode="json")
                    for process_id, status in self._statuses.items()
                },
            )
            await self.store.set(
                HISTORY_KEY,
                [entry.model_dump(mode="json") for entry in self._history],
            )
        except Exception:
            logger.exception("保存同步状态失败")

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.get_state()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("同步状态订阅者回调失败")

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """注册变更回调，立即推送一次当前状态；返回取消订阅函数."""
        if listener not in self._listeners:
            self._listeners.append(listener)
        try:
            listener(self.get_state())
        except Exception:
            logger.exception("同步状态订阅者回调失败")
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        """取消订阅."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def get_state(self) -> SyncStateData:
        """获取完整状态快照."""
        return SyncStateData(
            statuses={
                process_id: status.model_copy()
                for process_id, status in self._statuses.items()
            },
            history=[entry.model_copy() for entry in self._history],
            running_processes=sorted(self._running),
        )

    def get_sync_status(self, process_id: str) -> SyncStatus:
        """获取进程状态，从未运行过的进程返回 idle."""
        status = self._statuses.get(process_id)
        if status is None:
            return SyncStatus(process_id=process_id)
        return status.model_copy()

    def get_sync_history(
        self,
        process_id: str | None = None,
        limit: int = 50,
    ) -> list[SyncHistoryEntry]:
        """获取运行历史（最新在前）."""
        entries = [
            entry.model_copy()
            for entry in reversed(self._history)
            if process_id is None or entry.process_id == process_id
        ]
        return entries[: max(limit, 0)]

    def is_process_running(self, process_id: str) -> bool:
        """进程是否正在运行."""
        return process_id in self._running

    async def start_sync(self, process_id: str) -> SyncStatus:
        """
        标记进程开始运行.

        Raises:
            AlreadyRunningError: 进程已在运行（不产生任何副作用）
        """
        if process_id in self._running:
            raise AlreadyRunningError(process_id)
        self._running.add(process_id)

        now = self._clock()
        self._started_at[process_id] = now
        previous = self._statuses.get(process_id)
        status = SyncStatus(
            process_id=process_id,
            status="running",
            progress=0,
            current_step="Initializing",
            last_run_time=now,
            last_success_time=previous.last_success_time if previous else None,
            next_run_time=previous.next_run_time if previous else None,
            error_count=previous.error_count if previous else 0,
        )
        self._statuses[process_id] = status

        await self._save()
        self._notify()
        return status.model_copy()

    async def update_progress(
        self,
        process_id: str,
        progress: int,
        step: str,
        items_processed: int | None = None,
        total_items: int | None = None,
    ) -> None:
        """更新运行进度（同一次运行内进度只增不减）."""
        status = self._statuses.get(process_id)
        if status is None or process_id not in self._running:
            logger.warning("忽略未运行进程的进度更新: %s", process_id)
            return

        status.progress = max(status.progress, min(max(int(progress), 0), 100))
        status.current_step = step
        if items_processed is not None:
            status.items_processed = items_processed
        if total_items is not None:
            status.total_items = total_items

        await self._save()
        self._notify()

    async def complete_sync(self, process_id: str, items_processed: int) -> None:
        """标记运行成功，追加历史并清除运行标记."""
        now = self._clock()
        previous = self._statuses.get(process_id) or SyncStatus(process_id=process_id)
        self._statuses[process_id] = previous.model_copy(
            update={
                "status": "success",
                "progress": 100,
                "current_step": "Completed",
                "last_success_time": now,
                "error_message": None,
                "error_count": 0,
                "items_processed": items_processed,
                "total_items": previous.total_items
                if previous.total_items is not None
                else items_processed,
            }
        )
        self._history.append(
            SyncHistoryEntry(
                process_id=process_id,
                timestamp=now,
                status="success",
                duration_ms=self._duration_ms(process_id, now),
                items_processed=items_processed,
            )
        )
        self._running.discard(process_id)

        await self._save()
        self._notify()

    async def fail_sync(self, process_id: str, error_message: str) -> None:
        """标记运行失败，追加历史并清除运行标记."""
        now = self._clock()
        previous = self._statuses.get(process_id) or SyncStatus(process_id=process_id)
        self._statuses[process_id] = previous.model_copy(
            update={
                "status": "error",
                "current_step": "Failed",
                "error_message": error_message,
                "error_count": previous.error_count + 1,
            }
        )
        self._history.append(
            SyncHistoryEntry(
                process_id=process_id,
                timestamp=now,
                status="error",
                duration_ms=self._duration_ms(process_id, now),
                items_processed=previous.items_processed,
                error_message=error_message,
            )
        )
        self._running.discard(process_id)

        await self._save()
        self._notify()

    async def release(self, process_id: str) -> None:
        """清除运行标记（complete/fail 未能执行时的兜底）."""
        if process_id not in self._running:
            return
        self._running.discard(process_id)
        self._started_at.pop(process_id, None)
        status = self._statuses.get(process_id)
        if status and status.status == "running":
            status.status = "error"
            status.current_step = "Failed"
            status.error_message = status.error_message or "同步异常终止"
        logger.warning("已强制释放同步进程: %s", process_id)

        await self._save()
        self._notify()

    async def set_next_run_time(
        self,
        process_id: str,
        next_run_time: datetime | None,
    ) -> None:
        """记录下次计划运行时间."""
        status = self._statuses.get(process_id)
        if status is None:
            status = SyncStatus(process_id=process_id)
            self._statuses[process_id] = status
        status.next_run_time = next_run_time

        await self._save()
        self._notify()

    async def clear_history(self, process_id: str | None = None) -> None:
        """清空运行历史."""
        if process_id is None:
            self._history.clear()
        else:
            self._history = deque(
                (entry for entry in self._history if entry.process_id != process_id),
                maxlen=self.history_capacity,
            )
        await self._save()
        self._notify()

    def _duration_ms(self, process_id: str, now: datetime) -> int:
        started_at = self._started_at.pop(process_id, None)
        if started_at is None:
            return 0
        return max(int((now - started_at).total_seconds() * 1000), 0)
