"""持久化键值存储."""

import asyncio
import json
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from corpsync.models.kv import KeyValueEntry
from corpsync.utils.datetime import utc_now


class KeyValueStore(Protocol):
    """键值存储接口，值必须可 JSON 序列化."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def flush(self) -> None: ...


class MemoryKeyValueStore:
    """进程内键值存储（不跨重启）."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value, ensure_ascii=False)

    async def flush(self) -> None:
        return None


class DatabaseKeyValueStore:
    """基于 kv_entries 表的键值存储，每次写入立即提交."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any | None:
        async with self.session_factory() as session:
            entry = await session.get(KeyValueEntry, key)
            if entry is None:
                return None
            return json.loads(entry.value)

    async def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        async with self._lock, self.session_factory() as session:
            entry = await session.get(KeyValueEntry, key)
            if entry:
                entry.value = payload
                entry.updated_at = utc_now()
            else:
                session.add(KeyValueEntry(key=key, value=payload))
            await session.commit()

    async def flush(self) -> None:
        return None
