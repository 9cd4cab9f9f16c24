"""同步进程的配置、状态与历史模型."""

from datetime import datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field


class ProcessType(StrEnum):
    """同步进程类型."""

    MEMBERS = "members"
    ASSETS = "assets"
    MANUFACTURING = "manufacturing"
    MARKET = "market"
    WALLET = "wallet"
    MINING = "mining"
    KILLMAILS = "killmails"
    CONTAINER_LOGS = "container_logs"
    CONTRACTS = "contracts"
    PLANETARY = "planetary"
    ITEM_PRICING = "item_pricing"
    PERSONAL_ESI = "personal_esi"


SyncState = Literal["idle", "running", "success", "error"]


class SyncProcessConfig(BaseModel):
    """同步进程调度配置."""

    process_id: str
    process_type: ProcessType
    enabled: bool = True
    interval_minutes: int = Field(ge=1)
    corporation_id: int | None = None


class SyncStatus(BaseModel):
    """单个同步进程的当前状态."""

    process_id: str
    status: SyncState = "idle"
    progress: int = Field(default=0, ge=0, le=100)
    current_step: str = "Not started"
    last_run_time: datetime | None = None
    last_success_time: datetime | None = None
    next_run_time: datetime | None = None
    error_message: str | None = None
    error_count: int = 0
    items_processed: int | None = None
    total_items: int | None = None


class SyncHistoryEntry(BaseModel):
    """一次同步运行的结果记录."""

    process_id: str
    timestamp: datetime
    status: Literal["success", "error"]
    duration_ms: int
    items_processed: int | None = None
    error_message: str | None = None


class SyncStateData(BaseModel):
    """状态快照（推送给订阅者）."""

    statuses: dict[str, SyncStatus] = Field(default_factory=dict)
    history: list[SyncHistoryEntry] = Field(default_factory=list)
    running_processes: list[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    """一次同步执行的结果."""

    success: bool
    items_processed: int = 0
    error_message: str | None = None
    error_type: str | None = None
