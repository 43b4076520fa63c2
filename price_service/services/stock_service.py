"""
股票数据服务
整合缓存、新鲜度策略、请求合并与数据获取层，对外提供 GetQuote / GetHistory
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from price_service.config import settings
from price_service.layers.acquisition import AcquisitionLayer, get_acquisition_layer
from price_service.layers.cache import CacheLayer, get_cache_layer
from price_service.layers.coalescer import FetchKey, RequestCoalescer, get_request_coalescer
from price_service.layers.staleness import StalenessPolicy, get_staleness_policy
from price_service.models.market import Horizon, Quote, Series, normalize_symbol

logger = logging.getLogger(__name__)

_QUOTE_KEY = "quote"


class StockService:
    """股票数据业务服务"""

    def __init__(
        self,
        cache: Optional[CacheLayer] = None,
        policy: Optional[StalenessPolicy] = None,
        coalescer: Optional[RequestCoalescer] = None,
        acquisition: Optional[AcquisitionLayer] = None,
    ):
        self._cache = cache or get_cache_layer()
        self._policy = policy or get_staleness_policy()
        self._coalescer = coalescer or get_request_coalescer()
        self._acq = acquisition or get_acquisition_layer()

    @property
    def acquisition(self) -> AcquisitionLayer:
        return self._acq

    # ── 历史 K 线 ─────────────────────────────────────────

    async def get_history(
        self,
        symbol: str,
        horizon: Union[Horizon, str],
        now: Optional[datetime] = None,
    ) -> Series:
        """
        获取历史 K 线

        缓存可用则直接返回，不触发任何上游请求；否则合并同 key 的并发请求后
        走数据源回退链，全部失败时返回陈旧缓存或抛出 AllProvidersExhaustedError。
        """
        symbol = normalize_symbol(symbol)
        horizon = Horizon.parse(horizon)

        cached = await self._cache.read_series(symbol, horizon, now)
        if self._policy.is_usable(cached, horizon, now):
            return cached

        return await self._coalescer.coalesce(
            FetchKey(symbol, horizon.value),
            lambda: self._acq.fetch_history(symbol, horizon),
        )

    # ── 最新报价 ──────────────────────────────────────────

    async def get_quote(self, symbol: str, now: Optional[datetime] = None) -> Quote:
        symbol = normalize_symbol(symbol)
        now = now or datetime.now(tz=timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        cached = await self._cache.read_quote(symbol)
        if cached is not None and cached.fetched_at is not None:
            age = now - cached.fetched_at
            if age < timedelta(seconds=settings.QUOTE_CACHE_TTL):
                logger.debug(f"报价缓存命中: {symbol}（{age.total_seconds():.0f}s 前）")
                return cached

        return await self._coalescer.coalesce(
            FetchKey(symbol, _QUOTE_KEY),
            lambda: self._acq.fetch_quote(symbol),
        )

    async def wait_for_pending_writes(self) -> None:
        await self._acq.drain()


# ── 模块级别单例 ──────────────────────────────────────────
_stock_service: Optional[StockService] = None


def get_stock_service() -> StockService:
    global _stock_service
    if _stock_service is None:
        _stock_service = StockService()
    return _stock_service
