"""
测试公共夹具：假数据源、内存存储、固定时间点

不依赖真实 MongoDB / Redis / 上游接口。
"""

import asyncio
import os
import sys
from datetime import date, datetime, timedelta, timezone

import pytest

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from price_service.layers.acquisition import AcquisitionLayer  # noqa: E402
from price_service.layers.cache import CacheLayer, MemoryBackend  # noqa: E402
from price_service.layers.coalescer import RequestCoalescer  # noqa: E402
from price_service.layers.staleness import StalenessPolicy  # noqa: E402
from price_service.providers.base import BaseProvider, ProviderProfile  # noqa: E402

# 2024-06-12（周三）吉隆坡时间 10:00
NOW = datetime(2024, 6, 12, 2, 0, tzinfo=timezone.utc)
TODAY = date(2024, 6, 12)


def daily_records(end: date, n: int, base: float = 10.0) -> list:
    """生成以 end 结尾、连续 n 个自然日的原始 OHLCV 记录"""
    records = []
    for i in range(n):
        d = end - timedelta(days=n - 1 - i)
        close = round(base + i * 0.01, 2)
        records.append({
            "date": d.isoformat(),
            "open": close - 0.05,
            "high": close + 0.1,
            "low": close - 0.1,
            "close": close,
            "volume": 1000 + i,
        })
    return records


class FakeProvider(BaseProvider):
    """
    可编程的假数据源

    history / quote 可以是固定值，也可以是 (symbol[, horizon]) -> 数据 的函数；
    bulk 为 symbols -> {symbol: 原始报价} 的函数，给出时数据源支持批量报价；
    error 非空时每次调用都抛出该异常。
    """

    def __init__(
        self,
        name: str,
        operations=("quote", "history"),
        history=None,
        quote=None,
        bulk=None,
        error: Exception = None,
        delay: float = 0.0,
        timeout: float = 10.0,
        retry_budget: int = 2,
        backoff_base: float = 0.0,
        backoff_jitter: float = 0.0,
        enabled: bool = True,
        rate_limiter=None,
    ):
        super().__init__(
            profile=ProviderProfile(
                priority=1,
                timeout=timeout,
                backoff_base=backoff_base,
                backoff_jitter=backoff_jitter,
                retry_budget=retry_budget,
            ),
            rate_limiter=rate_limiter,
        )
        self.name = name
        self.operations = frozenset(operations) | ({"bulk_quote"} if bulk is not None else frozenset())
        self._history = history
        self._quote = quote
        self._bulk = bulk
        self.error = error
        self.delay = delay
        self._enabled = enabled
        self.calls = {"quote": 0, "history": 0, "bulk_quote": 0}
        self.symbols = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def _pause(self):
        if self.delay:
            await asyncio.sleep(self.delay)

    async def fetch_history(self, symbol, horizon):
        self.calls["history"] += 1
        self.symbols.append(symbol)
        await self._pause()
        if self.error is not None:
            raise self.error
        if callable(self._history):
            return self._history(symbol, horizon)
        return list(self._history or [])

    async def fetch_quote(self, symbol):
        self.calls["quote"] += 1
        self.symbols.append(symbol)
        await self._pause()
        if self.error is not None:
            raise self.error
        if callable(self._quote):
            return self._quote(symbol)
        return dict(self._quote) if self._quote else None

    async def fetch_quotes(self, symbols):
        self.calls["bulk_quote"] += 1
        await self._pause()
        if self.error is not None:
            raise self.error
        return self._bulk(list(symbols))

    def weight(self, operation, horizon=None):
        return 100 if operation == "bulk_quote" else 1


class SleepRecorder:
    """替代 asyncio.sleep，记录退避时长但不真正等待"""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


@pytest.fixture
def policy():
    return StalenessPolicy(tz="Asia/Kuala_Lumpur", holidays=[])


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def cache(backend, policy):
    return CacheLayer(backend=backend, batch_size=100, policy=policy, use_redis=False)


@pytest.fixture
def coalescer():
    return RequestCoalescer()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def make_acquisition(cache, sleeper):
    """按给定数据源列表构造编排器，报价链 / 历史链默认按列表顺序"""

    def _make(providers, quote_order=None, history_order=None):
        names = [p.name for p in providers]
        return AcquisitionLayer(
            providers={p.name: p for p in providers},
            cache=cache,
            quote_order=quote_order or names,
            history_order=history_order or names,
            sleep=sleeper,
        )

    return _make
