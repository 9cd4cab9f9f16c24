"""同步执行器 - 驱动一次完整的 拉取 → 转换 → 入库 流程."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from corpsync.core.error_log import SyncErrorLog, SyncErrorRecord
from corpsync.core.errors import (
    ErrorCategory,
    SyncCancelledError,
    classify_error,
)
from corpsync.core.esi import ESIError
from corpsync.core.state import SyncStateTracker
from corpsync.core.storage import UpsertResult
from corpsync.core.transforms import transform_records
from corpsync.models.resource import Resource
from corpsync.models.sync import ProcessType, SyncResult

logger = logging.getLogger(__name__)

# 进程类型 → ESI 资源；None 表示当前凭证无法同步（需角色级授权）
PROCESS_RESOURCES: dict[ProcessType, Resource | None] = {
    ProcessType.MEMBERS: Resource.CORPORATION_MEMBERS,
    ProcessType.ASSETS: Resource.CORPORATION_ASSETS,
    ProcessType.MANUFACTURING: Resource.INDUSTRY_JOBS,
    ProcessType.MARKET: Resource.MARKET_ORDERS,
    ProcessType.WALLET: Resource.WALLET_TRANSACTIONS,
    ProcessType.MINING: Resource.MINING_LEDGER,
    ProcessType.KILLMAILS: Resource.KILLMAILS,
    ProcessType.CONTAINER_LOGS: Resource.CONTAINER_LOGS,
    ProcessType.CONTRACTS: Resource.CONTRACTS,
    ProcessType.PLANETARY: Resource.CUSTOMS_OFFICES,
    ProcessType.ITEM_PRICING: Resource.MARKET_PRICES,
    ProcessType.PERSONAL_ESI: None,
}

_unmapped = set(ProcessType) - set(PROCESS_RESOURCES)
if _unmapped:
    msg = f"以下进程类型没有对应的同步流程: {sorted(_unmapped)}"
    raise RuntimeError(msg)


class FetchClient(Protocol):
    """数据拉取接口."""

    async def fetch(
        self,
        resource: Resource,
        corporation_id: int,
        credential: str,
    ) -> list[dict[str, Any]]: ...


class StorageBackend(Protocol):
    """数据写入接口."""

    async def upsert(
        self,
        resource: Resource,
        corporation_id: int,
        records: list[dict[str, Any]],
    ) -> UpsertResult: ...


class CancellationToken:
    """协作式取消标记，在步骤之间检查."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            msg = "同步已被取消"
            raise SyncCancelledError(msg)


@dataclass
class SyncContext:
    """一次同步执行的上下文."""

    process_id: str
    corporation_id: int
    credential: str
    storage_sink: StorageBackend | None = None
    cancel_token: CancellationToken | None = None


class SyncExecutor:
    """同步执行器."""

    def __init__(
        self,
        tracker: SyncStateTracker,
        fetch_client: FetchClient,
        storage_sink: StorageBackend,
        error_log: SyncErrorLog | None = None,
    ) -> None:
        self.tracker = tracker
        self.fetch_client = fetch_client
        self.storage_sink = storage_sink
        self.error_log = error_log
        self._tokens: dict[str, CancellationToken] = {}

    def cancel(self, process_id: str) -> bool:
        """请求取消运行中的同步，进程未在运行时返回 False."""
        token = self._tokens.get(process_id)
        if token is None:
            return False
        token.cancel()
        logger.info("已请求取消同步: %s", process_id)
        return True

    async def execute(
        self,
        process_type: ProcessType,
        context: SyncContext,
    ) -> SyncResult:
        """
        执行一次同步.

        每条退出路径都恰好写入一条历史记录并清除运行标记。

        Raises:
            AlreadyRunningError: 同一进程已在运行，此时不产生任何副作用
        """
        process_id = context.process_id
        try:
            await self.tracker.start_sync(process_id)
        except asyncio.CancelledError:
            # 运行标记已设置，状态保存期间被取消
            if self.tracker.is_process_running(process_id):
                await self.tracker.fail_sync(process_id, "同步任务被中止")
            raise
        if context.cancel_token is None:
            context.cancel_token = CancellationToken()
        self._tokens[process_id] = context.cancel_token
        logger.info(
            "开始同步: %s (%s), corp=%s",
            process_id,
            process_type,
            context.corporation_id,
        )

        try:
            items_processed = await self._run(process_type, context)
        except asyncio.CancelledError:
            await self.tracker.fail_sync(process_id, "同步任务被中止")
            raise
        except Exception as e:
            return await self._fail(process_type, context, e)
        else:
            await self.tracker.complete_sync(process_id, items_processed)
            logger.info("同步完成: %s, 处理 %d 条记录", process_id, items_processed)
            return SyncResult(success=True, items_processed=items_processed)
        finally:
            self._tokens.pop(process_id, None)
            await self.tracker.release(process_id)

    async def _run(self, process_type: ProcessType, context: SyncContext) -> int:
        process_id = context.process_id
        token = context.cancel_token
        resource = PROCESS_RESOURCES[process_type]

        if resource is None:
            logger.warning("%s 需要角色级授权，军团凭证无法同步，跳过", process_type)
            await self.tracker.update_progress(
                process_id, 100, "Skipped (requires character-level authentication)"
            )
            return 0

        if token:
            token.raise_if_cancelled()

        # 1. 拉取
        records = await self.fetch_client.fetch(
            resource, context.corporation_id, context.credential
        )
        await self.tracker.update_progress(
            process_id, 10, "Fetching", total_items=len(records)
        )
        if token:
            token.raise_if_cancelled()

        # 2. 转换
        rows = transform_records(resource, records)
        if not rows:
            logger.warning(
                "%s: 军团 %s 没有可同步的数据", process_id, context.corporation_id
            )
            return 0

        if token:
            token.raise_if_cancelled()

        # 3. 入库
        await self.tracker.update_progress(
            process_id, 50, "Storing", items_processed=0, total_items=len(rows)
        )
        sink = context.storage_sink or self.storage_sink
        result = await sink.upsert(resource, context.corporation_id, rows)
        await self.tracker.update_progress(
            process_id, 90, "Storing", items_processed=result.items_written
        )
        return result.items_written

    async def _fail(
        self,
        process_type: ProcessType,
        context: SyncContext,
        exc: Exception,
    ) -> SyncResult:
        category = classify_error(exc)
        message = str(exc) or type(exc).__name__

        if category is ErrorCategory.UNKNOWN:
            logger.exception("同步进程 %s 出现未预期的错误", context.process_id)
        else:
            logger.error(
                "同步进程 %s 失败 [%s]: %s", context.process_id, category, message
            )

        if self.error_log is not None:
            await self.error_log.log_error(
                SyncErrorRecord(
                    process_id=context.process_id,
                    process_type=str(process_type),
                    error_type=category,
                    error_message=message,
                    error_details=repr(exc.__cause__) if exc.__cause__ else None,
                    request_url=exc.url if isinstance(exc, ESIError) else None,
                    response_status=exc.status_code
                    if isinstance(exc, ESIError)
                    else None,
                    corporation_id=context.corporation_id,
                )
            )

        await self.tracker.fail_sync(context.process_id, message)
        return SyncResult(
            success=False,
            items_processed=0,
            error_message=message,
            error_type=str(category),
        )
