"""
数据源抽象
每个数据源实现 fetch_quote / fetch_history（可选 fetch_quotes 批量报价），失败时抛出
RetryableProviderError（限流）或 TerminalProviderError（其他一切失败）。
"""

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional

import httpx

from price_service.config import settings
from price_service.exceptions import RetryableProviderError, TerminalProviderError
from price_service.layers.ratelimit import RateLimiter
from price_service.models.market import Horizon

QUOTE = "quote"
HISTORY = "history"
BULK_QUOTE = "bulk_quote"

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept-Language": "en-US,en;q=0.9",
}


@dataclass
class ProviderProfile:
    """数据源调用参数：优先级、超时、限流退避、重试预算"""

    priority: int = 100
    timeout: float = 10.0
    backoff_base: float = 10.0
    backoff_jitter: float = 0.3
    retry_budget: int = 2

    @classmethod
    def from_settings(cls, priority: int = 100, **overrides) -> "ProviderProfile":
        values = dict(
            priority=priority,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            backoff_base=settings.RATE_LIMIT_BACKOFF_SECONDS,
            backoff_jitter=settings.RATE_LIMIT_BACKOFF_JITTER,
            retry_budget=settings.RATE_LIMIT_RETRY_BUDGET,
        )
        values.update(overrides)
        return cls(**values)


class BaseProvider:
    """数据源基类"""

    name: str = "base"
    operations: FrozenSet[str] = frozenset({QUOTE, HISTORY})

    def __init__(
        self,
        profile: Optional[ProviderProfile] = None,
        rate_limiter: Optional[RateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.profile = profile or ProviderProfile.from_settings()
        self.rate_limiter = rate_limiter
        self._client = client

    @property
    def enabled(self) -> bool:
        return True

    def supports(self, operation: str) -> bool:
        return operation in self.operations

    def weight(self, operation: str, horizon: Optional[Horizon] = None) -> int:
        """本次调用在限流器中占用的权重"""
        return 1

    async def fetch_quote(self, symbol: str) -> Dict[str, Any]:
        raise TerminalProviderError(self.name, "不支持报价")

    async def fetch_history(self, symbol: str, horizon: Horizon) -> List[Dict[str, Any]]:
        raise TerminalProviderError(self.name, "不支持历史数据")

    async def fetch_quotes(self, symbols: List[str]) -> Dict[str, Dict[str, Any]]:
        """一次请求取多只代码的报价，返回 symbol → 原始报价；缺失的代码不出现在结果中"""
        raise TerminalProviderError(self.name, "不支持批量报价")

    # ── HTTP 辅助 ─────────────────────────────────────────

    async def _get(self, url: str, **kwargs) -> httpx.Response:
        """发起 GET 请求并按状态码分类：429 可重试，其余非 2xx 终止"""
        try:
            if self._client is not None:
                resp = await self._client.get(url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.profile.timeout, follow_redirects=True) as client:
                    resp = await client.get(url, **kwargs)
        except httpx.HTTPError as exc:
            raise TerminalProviderError(self.name, f"请求失败: {exc.__class__.__name__}") from exc

        if resp.status_code == 429:
            raise RetryableProviderError(self.name, "HTTP 429 被限流")
        if not 200 <= resp.status_code < 300:
            raise TerminalProviderError(self.name, f"HTTP {resp.status_code}")
        return resp

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.name,
            "enabled": self.enabled,
            "priority": self.profile.priority,
            "operations": sorted(self.operations),
            "timeout": self.profile.timeout,
            "retry_budget": self.profile.retry_budget,
            "rate_limited": self.rate_limiter is not None,
        }
