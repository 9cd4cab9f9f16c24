"""同步错误日志 - 记录分类后的失败，用于监控与排查."""

import logging
import uuid
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from corpsync.core.errors import ErrorCategory
from corpsync.core.kv import KeyValueStore, MemoryKeyValueStore
from corpsync.utils.datetime import utc_now

logger = logging.getLogger(__name__)

ERRORS_KEY = "sync-errors"
DEFAULT_ERROR_CAPACITY = 500
REPEATED_FAILURE_THRESHOLD = 3


class SyncErrorRecord(BaseModel):
    """一条同步错误."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    process_id: str
    process_type: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    error_type: ErrorCategory
    error_message: str
    error_details: str | None = None
    request_url: str | None = None
    response_status: int | None = None
    corporation_id: int | None = None


class RepeatedFailure(BaseModel):
    """反复失败的进程."""

    process_id: str
    count: int
    last_error: SyncErrorRecord


class ErrorStats(BaseModel):
    """错误统计."""

    total_errors: int
    errors_by_type: dict[str, int]
    errors_by_process: dict[str, int]
    recent_errors: list[SyncErrorRecord]
    error_rate_per_minute: float
    repeated_failures: list[RepeatedFailure]


class SyncErrorLog:
    """有界的同步错误日志."""

    def __init__(
        self,
        store: KeyValueStore | None = None,
        capacity: int = DEFAULT_ERROR_CAPACITY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store: KeyValueStore = store or MemoryKeyValueStore()
        self.capacity = capacity
        self._clock = clock
        self._errors: list[SyncErrorRecord] = []

    async def load(self) -> None:
        """从持久化存储恢复."""
        raw = await self.store.get(ERRORS_KEY) or []
        self._errors = [SyncErrorRecord.model_validate(item) for item in raw][
            -self.capacity :
        ]

    async def _save(self) -> None:
        try:
            await self.store.set(
                ERRORS_KEY, [error.model_dump(mode="json") for error in self._errors]
            )
        except Exception:
            logger.exception("保存同步错误日志失败")

    async def log_error(self, record: SyncErrorRecord) -> SyncErrorRecord:
        """追加一条错误，超出容量时丢弃最旧的."""
        self._errors.append(record)
        if len(self._errors) > self.capacity:
            self._errors = self._errors[-self.capacity :]

        logger.error(
            "同步错误 [%s] %s: %s",
            record.error_type,
            record.process_id,
            record.error_message,
        )
        await self._save()
        return record

    def get_errors(self) -> list[SyncErrorRecord]:
        return list(self._errors)

    def get_recent_errors(self, limit: int = 20) -> list[SyncErrorRecord]:
        """最近的错误（最新在前）."""
        return list(reversed(self._errors))[: max(limit, 0)]

    def get_errors_by_process(self, process_id: str) -> list[SyncErrorRecord]:
        return [error for error in self._errors if error.process_id == process_id]

    def get_error_stats(self) -> ErrorStats:
        """按类型、进程统计错误，并找出反复失败的进程."""
        now = self._clock()
        one_hour_ago = now - timedelta(hours=1)
        recent_count = sum(1 for error in self._errors if error.timestamp > one_hour_ago)

        by_type = Counter(str(error.error_type) for error in self._errors)
        by_process = Counter(error.process_id for error in self._errors)

        last_errors: dict[str, SyncErrorRecord] = {}
        for error in self._errors:
            current = last_errors.get(error.process_id)
            if current is None or error.timestamp >= current.timestamp:
                last_errors[error.process_id] = error

        repeated = sorted(
            (
                RepeatedFailure(
                    process_id=process_id,
                    count=count,
                    last_error=last_errors[process_id],
                )
                for process_id, count in by_process.items()
                if count >= REPEATED_FAILURE_THRESHOLD
            ),
            key=lambda item: item.count,
            reverse=True,
        )

        return ErrorStats(
            total_errors=len(self._errors),
            errors_by_type=dict(by_type),
            errors_by_process=dict(by_process),
            recent_errors=self.get_recent_errors(10),
            error_rate_per_minute=recent_count / 60,
            repeated_failures=repeated,
        )

    async def clear_errors(self) -> None:
        self._errors = []
        await self._save()

    async def clear_old_errors(self, older_than_days: int = 7) -> int:
        """删除早于指定天数的错误，返回删除数量."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        before = len(self._errors)
        self._errors = [error for error in self._errors if error.timestamp > cutoff]
        await self._save()
        return before - len(self._errors)
