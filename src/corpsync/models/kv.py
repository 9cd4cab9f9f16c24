"""KeyValueEntry 键值持久化模型."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from corpsync.utils.datetime import utc_now


class KeyValueEntry(SQLModel, table=True):
    """键值存储表（同步状态、历史、调度配置）."""

    __tablename__ = "kv_entries"  # type: ignore[assignment]

    key: str = Field(primary_key=True, description="键")
    value: str = Field(description="JSON 序列化的值")
    updated_at: datetime = Field(default_factory=utc_now)
