"""ESI API 客户端."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from corpsync.config import Settings
from corpsync.core.errors import ErrorCategory, SyncError
from corpsync.models.resource import Resource

logger = logging.getLogger(__name__)

WALLET_DIVISIONS = range(1, 8)

# ESI 的错误限流状态码（非标准）
ERROR_LIMITED = 420

_ENDPOINTS: dict[Resource, tuple[str, dict[str, str]]] = {
    Resource.CORPORATION_MEMBERS: (
        "/corporations/{corporation_id}/membertracking/",
        {},
    ),
    Resource.CORPORATION_ASSETS: ("/corporations/{corporation_id}/assets/", {}),
    Resource.INDUSTRY_JOBS: (
        "/corporations/{corporation_id}/industry/jobs/",
        {"include_completed": "true"},
    ),
    Resource.MARKET_ORDERS: ("/corporations/{corporation_id}/orders/", {}),
    Resource.CONTAINER_LOGS: (
        "/corporations/{corporation_id}/containers/logs/",
        {},
    ),
    Resource.CONTRACTS: ("/corporations/{corporation_id}/contracts/", {}),
    Resource.KILLMAILS: ("/corporations/{corporation_id}/killmails/recent/", {}),
    Resource.CUSTOMS_OFFICES: (
        "/corporations/{corporation_id}/customs_offices/",
        {},
    ),
    Resource.MARKET_PRICES: ("/markets/prices/", {}),
}


@dataclass
class ESIConfig:
    """ESI 连接配置."""

    base_url: str = "https://esi.evetech.net/latest"
    user_agent: str = "corpsync/0.1.0"
    timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    max_pages: int = 100

    @classmethod
    def from_settings(cls, settings: Settings) -> "ESIConfig":
        return cls(
            base_url=settings.esi_base_url,
            user_agent=settings.esi_user_agent,
            timeout_seconds=settings.esi_timeout_seconds,
            max_retries=settings.esi_max_retries,
            backoff_base_seconds=settings.esi_backoff_base_seconds,
            backoff_max_seconds=settings.esi_backoff_max_seconds,
            max_pages=settings.esi_max_pages,
        )


class ESIError(SyncError):
    """ESI API 错误."""

    category = ErrorCategory.ESI_API
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class ESIAuthError(ESIError):
    """凭证无效或已过期 (401)."""

    category = ErrorCategory.AUTH


class ESIPermissionError(ESIError):
    """凭证缺少所需角色或 scope (403)."""

    category = ErrorCategory.AUTH


class ESIResponseError(ESIError):
    """ESI 返回了非预期的响应."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message, url=url, status_code=status_code)
        self.retryable = retryable


class ESIRateLimitError(ESIError):
    """被限流 (429/420)."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, url=url, status_code=status_code)
        self.retry_after = retry_after


class ESINetworkError(ESIError):
    """网络层错误（超时、DNS、连接被拒绝）."""

    category = ErrorCategory.NETWORK
    retryable = True


@dataclass
class _CachedPage:
    etag: str
    data: Any
    pages: int


@dataclass
class ESIPage:
    """单页响应."""

    data: Any
    pages: int = 1
    from_cache: bool = False


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ESIError) and exc.retryable


def _parse_retry_after(response: httpx.Response) -> float | None:
    for header in ("Retry-After", "X-ESI-Error-Limit-Reset"):
        value = response.headers.get(header)
        if value is None:
            continue
        try:
            return max(float(value), 0.0)
        except ValueError:
            continue
    return None


def _parse_pages(response: httpx.Response) -> int:
    try:
        return max(int(response.headers.get("X-Pages", "1")), 1)
    except ValueError:
        return 1


class ESIClient:
    """ESI API 客户端：分页、ETag 缓存与限流退避."""

    def __init__(
        self,
        config: ESIConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or ESIConfig()
        self._sleep = sleep
        self._cache: dict[str, _CachedPage] = {}
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            timeout=self.config.timeout_seconds,
            transport=transport,
            headers={
                "Accept": "application/json",
                "User-Agent": self.config.user_agent,
            },
        )

    async def close(self) -> None:
        """关闭客户端."""
        await self._client.aclose()

    async def fetch(
        self,
        resource: Resource,
        corporation_id: int,
        credential: str,
    ) -> list[dict[str, Any]]:
        """拉取一种资源的全部记录（自动翻页）."""
        if resource is Resource.WALLET_TRANSACTIONS:
            return await self._fetch_wallet_transactions(corporation_id, credential)
        if resource is Resource.MINING_LEDGER:
            return await self._fetch_mining_ledger(corporation_id, credential)

        path, params = _ENDPOINTS[resource]
        return await self.fetch_paginated(
            path.format(corporation_id=corporation_id),
            credential,
            params=params,
        )

    async def fetch_paginated(
        self,
        path: str,
        credential: str,
        params: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """按 X-Pages 顺序拉取所有分页并拼接."""
        first = await self.get(path, credential, params=params)
        records = self._as_records(first.data, path)

        total_pages = first.pages
        if total_pages > self.config.max_pages:
            msg = (
                f"{path} 共 {total_pages} 页，超过上限 {self.config.max_pages} 页，"
                "拒绝只同步部分数据"
            )
            raise ESIResponseError(msg, url=path)

        for page in range(2, total_pages + 1):
            result = await self.get(path, credential, params=params, page=page)
            records.extend(self._as_records(result.data, path))

        return records

    async def get(
        self,
        path: str,
        credential: str,
        params: dict[str, str] | None = None,
        page: int = 1,
    ) -> ESIPage:
        """带重试地请求单页."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(self.config.max_retries, 1)),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

        return await retrying(self._request, path, credential, params, page)

    async def _request(
        self,
        path: str,
        credential: str,
        params: dict[str, str] | None,
        page: int,
    ) -> ESIPage:
        query = dict(params or {})
        if page > 1:
            query["page"] = str(page)

        cache_key = f"{path}?{sorted(query.items())}"
        headers = {"Authorization": f"Bearer {credential}"}
        cached = self._cache.get(cache_key)
        if cached:
            headers["If-None-Match"] = cached.etag

        try:
            response = await self._client.get(path, params=query, headers=headers)
        except httpx.TransportError as e:
            msg = f"ESI 请求失败: {type(e).__name__}: {e}"
            raise ESINetworkError(msg, url=path) from e

        url = str(response.request.url) if response.request else path
        status = response.status_code

        if status == HTTPStatus.NOT_MODIFIED:
            if cached is None:
                msg = "ESI 返回 304 但本地没有缓存"
                raise ESIResponseError(msg, url=url, status_code=status)
            logger.debug("使用缓存数据: %s", url)
            return ESIPage(data=cached.data, pages=cached.pages, from_cache=True)

        if status in (HTTPStatus.TOO_MANY_REQUESTS, ERROR_LIMITED):
            msg = f"ESI 限流 ({status})"
            raise ESIRateLimitError(
                msg,
                url=url,
                status_code=status,
                retry_after=_parse_retry_after(response),
            )

        if status == HTTPStatus.UNAUTHORIZED:
            msg = "ESI 认证失败：access token 无效或已过期"
            raise ESIAuthError(msg, url=url, status_code=status)

        if status == HTTPStatus.FORBIDDEN:
            msg = "ESI 拒绝访问：凭证缺少所需角色或 scope"
            raise ESIPermissionError(msg, url=url, status_code=status)

        if status >= HTTPStatus.INTERNAL_SERVER_ERROR:
            msg = f"ESI 服务端错误: {status}"
            raise ESIResponseError(msg, url=url, status_code=status, retryable=True)

        if status != HTTPStatus.OK:
            msg = f"ESI 请求失败: {status} {response.text[:200]}"
            raise ESIResponseError(msg, url=url, status_code=status)

        try:
            data = response.json()
        except ValueError as e:
            msg = "ESI 响应不是合法的 JSON"
            raise ESIResponseError(msg, url=url, status_code=status) from e

        if not isinstance(data, list | dict):
            msg = f"ESI 响应格式异常: {type(data).__name__}"
            raise ESIResponseError(msg, url=url, status_code=status)

        pages = _parse_pages(response)
        etag = response.headers.get("ETag")
        if etag:
            self._cache[cache_key] = _CachedPage(etag=etag, data=data, pages=pages)

        return ESIPage(data=data, pages=pages)

    def _wait(self, retry_state: RetryCallState) -> float:
        """限流时优先使用服务端给出的等待时间，否则指数退避."""
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, ESIRateLimitError) and exc.retry_after is not None:
            return min(exc.retry_after, self.config.backoff_max_seconds)

        delay = self.config.backoff_base_seconds * 2 ** (retry_state.attempt_number - 1)
        return min(delay, self.config.backoff_max_seconds)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "ESI 请求第 %d 次失败，稍后重试: %s",
            retry_state.attempt_number,
            exc,
        )

    @staticmethod
    def _as_records(data: Any, path: str) -> list[dict[str, Any]]:
        if not isinstance(data, list):
            msg = f"ESI 响应不是列表: {path}"
            raise ESIResponseError(msg, url=path)
        return list(data)

    async def _fetch_wallet_transactions(
        self,
        corporation_id: int,
        credential: str,
    ) -> list[dict[str, Any]]:
        """拉取 1-7 号钱包分部的交易，记录打上 division 标记."""
        records: list[dict[str, Any]] = []
        denied: list[ESIError] = []

        for division in WALLET_DIVISIONS:
            path = f"/corporations/{corporation_id}/wallets/{division}/transactions/"
            try:
                transactions = await self.fetch_paginated(path, credential)
            except ESIPermissionError as e:
                logger.warning("钱包分部 %d 无权限，跳过: %s", division, e)
                denied.append(e)
                continue
            except ESIResponseError as e:
                if e.status_code != HTTPStatus.NOT_FOUND:
                    raise
                logger.warning("钱包分部 %d 不存在，跳过", division)
                continue

            for transaction in transactions:
                records.append({**transaction, "division": division})

        if len(denied) == len(WALLET_DIVISIONS):
            raise denied[-1]

        return records

    async def _fetch_mining_ledger(
        self,
        corporation_id: int,
        credential: str,
    ) -> list[dict[str, Any]]:
        """先拉取采矿观察站，再逐个拉取其记录."""
        base = f"/corporation/{corporation_id}/mining/observers/"
        observers = await self.fetch_paginated(base, credential)

        records: list[dict[str, Any]] = []
        for observer in observers:
            observer_id = observer.get("observer_id")
            if observer_id is None:
                continue
            entries = await self.fetch_paginated(f"{base}{observer_id}/", credential)
            for entry in entries:
                records.append({**entry, "observer_id": observer_id})

        return records
