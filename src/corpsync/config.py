"""应用配置管理."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 各数据类型的过期阈值（分钟）
DEFAULT_FRESHNESS_CUTOFFS: dict[str, int] = {
    "members": 120,
    "assets": 60,
    "manufacturing": 30,
    "market": 60,
    "wallet": 30,
    "mining": 240,
    "killmails": 120,
}


class Settings(BaseSettings):
    """应用配置（环境变量）."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # 数据库配置
    database_url: str = "sqlite+aiosqlite:///./corpsync.db"

    # ESI 配置
    esi_base_url: str = "https://esi.evetech.net/latest"
    esi_user_agent: str = "corpsync/0.1.0"
    esi_timeout_seconds: float = 30.0
    esi_max_retries: int = 3
    esi_backoff_base_seconds: float = 1.0
    esi_backoff_max_seconds: float = 60.0
    esi_max_pages: int = 100

    # 军团与凭证（OAuth 流程不在本服务范围内，直接注入 access token）
    corporation_id: int | None = None
    esi_access_token: str = ""

    # 调度配置
    min_sync_interval_minutes: int = 1440
    scheduler_tick_seconds: int = 60
    scheduler_enabled: bool = True
    max_concurrent_syncs: int = 3

    # 状态与日志容量
    sync_history_capacity: int = 100
    sync_error_capacity: int = 500

    # 数据新鲜度阈值
    freshness_cutoff_minutes: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_FRESHNESS_CUTOFFS)
    )


@lru_cache
def get_settings() -> Settings:
    """获取应用配置（带缓存）."""
    return Settings()
