"""
数据提供商 HTTP 公共组件
  - SlidingWindowLimiter   : 滑动窗口限流（CoinGlass 25 次 / 分钟）
  - MinIntervalLimiter     : 最小请求间隔限流（Kraken / CoinGlass / CMC）
  - RetryPolicy/with_retry : 指数退避 + 抖动重试，仅重试网络错误、429 与 5xx
  - InflightDeduplicator   : 相同请求并发时共享同一个进行中的调用
  - ProviderClient         : 基于 httpx.AsyncClient 的提供商客户端基类
"""

import asyncio
import json
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, TypeVar

import httpx

from market_service.config import settings
from market_service.errors import ProviderError, ProviderNotConfiguredError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── 限流 ──────────────────────────────────────────────────

class SlidingWindowLimiter:
    """滑动窗口限流器：window 秒内最多 max_requests 次请求"""

    def __init__(self, max_requests: int = 25, window: float = 60.0, name: str = "default"):
        self.max_requests = max_requests
        self.window = window
        self.name = name
        self._requests: Deque[float] = deque()

    def _evict(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self.window:
            self._requests.popleft()

    def try_acquire(self) -> bool:
        """有空闲额度时登记一次请求并返回 True"""
        now = time.monotonic()
        self._evict(now)
        if len(self._requests) >= self.max_requests:
            logger.info(f"[{self.name}] 达到限流上限: {len(self._requests)}/{self.max_requests} 次/{self.window:.0f}s")
            return False
        self._requests.append(now)
        return True

    async def wait_for_slot(self) -> None:
        """等待空闲额度，第 n 次等待 min(2n, 10) 秒"""
        attempts = 0
        while not self.try_acquire():
            attempts += 1
            wait = min(2.0 * attempts, 10.0)
            logger.info(f"[{self.name}] 等待限流额度 {wait:.0f}s（第 {attempts} 次）")
            await asyncio.sleep(wait)

    async def acquire(self) -> None:
        await self.wait_for_slot()

    def stats(self) -> Dict[str, Any]:
        self._evict(time.monotonic())
        used = len(self._requests)
        return {
            "requests_in_window": used,
            "max_requests": self.max_requests,
            "slots_available": self.max_requests - used,
        }


class MinIntervalLimiter:
    """保证相邻两次请求至少间隔 min_interval 秒"""

    def __init__(self, min_interval: float, name: str = "default"):
        self.min_interval = min_interval
        self.name = name
        self._last = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            wait = self._last + self.min_interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last = time.monotonic()

    def stats(self) -> Dict[str, Any]:
        return {"min_interval": self.min_interval}


# ── 重试 ──────────────────────────────────────────────────

@dataclass
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 5.0
    multiplier: float = 2.0
    jitter: float = 0.3

    def delay_for(self, attempt: int) -> float:
        """第 attempt 次失败后的等待秒数（attempt 从 1 开始）"""
        base = self.initial_delay * (self.multiplier ** (attempt - 1))
        return min(base + random.random() * self.jitter * base, self.max_delay)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            initial_delay=settings.RETRY_INITIAL_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
        )


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str = "request",
) -> T:
    """按 policy 重试 fn；不可重试的 ProviderError 立即抛出"""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except ProviderError as exc:
            if not exc.retryable or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{label} 失败（{attempt}/{policy.max_attempts}）: {exc.message}，{delay:.2f}s 后重试"
            )
            await asyncio.sleep(delay)


# ── 并发去重 ──────────────────────────────────────────────

class InflightDeduplicator:
    """相同 key 的并发调用共享一个进行中的任务"""

    def __init__(self):
        self._inflight: Dict[str, "asyncio.Future[Any]"] = {}

    async def run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is not None:
            logger.debug(f"复用进行中的请求: {key}")
            return await asyncio.shield(task)
        task = asyncio.ensure_future(fn())
        self._inflight[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._inflight.get(key) is task:
                del self._inflight[key]

    def __len__(self) -> int:
        return len(self._inflight)


# ── 提供商客户端基类 ──────────────────────────────────────

class ProviderClient:
    """
    数据提供商客户端基类

    子类设置 name / key_setting，并通过 _auth_headers() 提供鉴权头。
    transport 参数用于在测试中注入 httpx.MockTransport。
    """

    name = "provider"
    key_setting: Optional[str] = None

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        limiters: Optional[List[Any]] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.limiters = list(limiters or [])
        self.retry = retry or RetryPolicy.from_settings()
        self.timeout = timeout or settings.HTTP_TIMEOUT
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._dedup = InflightDeduplicator()

    @property
    def configured(self) -> bool:
        return self.key_setting is None or bool(self.api_key)

    def _auth_headers(self) -> Dict[str, str]:
        return {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"accept": "application/json"},
            )
        return self._client

    def _require_key(self) -> None:
        if not self.configured:
            raise ProviderNotConfiguredError(self.name, self.key_setting)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        for limiter in self.limiters:
            await limiter.acquire()
        try:
            resp = await self._get_client().request(
                method, path, params=params, json=json_body, headers=self._auth_headers()
            )
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"{method} {path} 请求失败: {exc!r}") from exc

        if resp.status_code >= 400:
            raise ProviderError(
                self.name, f"{method} {path} HTTP {resp.status_code}: {resp.text[:200]}", resp.status_code
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError(self.name, f"{method} {path} 响应不是合法 JSON", resp.status_code) from exc

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET 请求（限流 + 重试 + 并发去重）"""
        self._require_key()
        key = f"GET {path} {json.dumps(params or {}, sort_keys=True, default=str)}"
        return await self._dedup.run(
            key,
            lambda: with_retry(
                lambda: self._request("GET", path, params=params),
                self.retry,
                f"[{self.name}] GET {path}",
            ),
        )

    async def post_json(self, path: str, body: Dict[str, Any]) -> Any:
        """POST 请求（限流 + 重试，不去重）"""
        self._require_key()
        return await with_retry(
            lambda: self._request("POST", path, json_body=body),
            self.retry,
            f"[{self.name}] POST {path}",
        )

    def limiter_stats(self) -> List[Dict[str, Any]]:
        return [{"limiter": type(l).__name__, **l.stats()} for l in self.limiters]

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
