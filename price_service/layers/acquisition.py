"""
数据获取层
按配置顺序依次调用数据源：限流 → 退避重试同一数据源，其他失败 → 立即切换下一个。
成功后标准化、后台写回缓存并立即返回；全部失败时回退到陈旧缓存。
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from price_service.config import settings
from price_service.exceptions import (
    AllProvidersExhaustedError,
    CacheWriteError,
    RetryableProviderError,
    TerminalProviderError,
)
from price_service.layers.cache import CacheLayer, WriteResult, get_cache_layer
from price_service.layers.processing import ProcessingLayer, get_processing_layer
from price_service.models.market import Horizon, Quote, Series
from price_service.providers import BULK_QUOTE, HISTORY, QUOTE, BaseProvider, get_providers

logger = logging.getLogger(__name__)


class ProviderStatus(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass
class ProviderResult:
    """单次数据源调用的结果"""

    provider: str
    status: ProviderStatus
    data: Any = None
    error: Optional[str] = None


@dataclass
class AttemptLog:
    provider: str
    attempts: int = 0
    errors: List[str] = field(default_factory=list)


class AcquisitionLayer:
    """
    数据源回退编排

    - 报价链 / 历史链分别由 QUOTE_PROVIDER_ORDER / HISTORY_PROVIDER_ORDER 配置
    - 每次调用都有超时，超时与非限流错误视为终止型失败，不重试
    - 限流视为可重试：退避 base ± jitter 后重试同一数据源，最多 retry_budget 次
    """

    def __init__(
        self,
        providers: Optional[Dict[str, BaseProvider]] = None,
        cache: Optional[CacheLayer] = None,
        processor: Optional[ProcessingLayer] = None,
        quote_order: Optional[List[str]] = None,
        history_order: Optional[List[str]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._providers = providers
        self._cache = cache
        self._processor = processor or get_processing_layer()
        self._quote_order = quote_order or settings.QUOTE_PROVIDER_ORDER
        self._history_order = history_order or settings.HISTORY_PROVIDER_ORDER
        self._sleep = sleep
        self._pending: Set[asyncio.Task] = set()

    @property
    def providers(self) -> Dict[str, BaseProvider]:
        if self._providers is None:
            self._providers = get_providers()
        return self._providers

    @property
    def cache(self) -> CacheLayer:
        return self._cache or get_cache_layer()

    def _chain(self, operation: str) -> List[BaseProvider]:
        order = self._history_order if operation == HISTORY else self._quote_order
        chain = []
        for name in order:
            provider = self.providers.get(name)
            if provider is None:
                logger.warning(f"⚠️ 未知数据源 {name}，已忽略")
                continue
            if provider.enabled and provider.supports(operation):
                chain.append(provider)
        return chain

    # ── 单次调用 ──────────────────────────────────────────

    async def _attempt(
        self,
        provider: BaseProvider,
        operation: str,
        symbol: Union[str, List[str]],
        horizon: Optional[Horizon] = None,
    ) -> ProviderResult:
        try:
            if provider.rate_limiter is not None:
                await provider.rate_limiter.acquire(provider.weight(operation, horizon))
            if operation == QUOTE:
                call = provider.fetch_quote(symbol)
            elif operation == BULK_QUOTE:
                call = provider.fetch_quotes(list(symbol))
            else:
                call = provider.fetch_history(symbol, horizon)
            data = await asyncio.wait_for(call, timeout=provider.profile.timeout)
        except RetryableProviderError as exc:
            return ProviderResult(provider.name, ProviderStatus.RETRYABLE, error=str(exc))
        except TerminalProviderError as exc:
            return ProviderResult(provider.name, ProviderStatus.TERMINAL, error=str(exc))
        except asyncio.TimeoutError:
            return ProviderResult(
                provider.name, ProviderStatus.TERMINAL, error=f"超时（{provider.profile.timeout}s）"
            )
        except Exception as exc:
            return ProviderResult(provider.name, ProviderStatus.TERMINAL, error=f"{exc.__class__.__name__}: {exc}")

        if not data:
            return ProviderResult(provider.name, ProviderStatus.TERMINAL, error="空结果")
        return ProviderResult(provider.name, ProviderStatus.SUCCESS, data=data)

    def _backoff(self, provider: BaseProvider) -> float:
        jitter = provider.profile.backoff_jitter
        return provider.profile.backoff_base * random.uniform(1 - jitter, 1 + jitter)

    async def _run_chain(
        self,
        operation: str,
        symbol: Union[str, List[str]],
        horizon: Optional[Horizon],
        accept: Callable[[ProviderResult], Any],
    ) -> tuple:
        """
        依次尝试数据源，返回 (provider_name, accepted_value, attempt_logs)

        accept 负责标准化原始数据，返回 None 表示数据无效（按终止型失败处理）。
        批量报价时 symbol 为代码列表。
        """
        label = symbol if isinstance(symbol, str) else f"{len(symbol)} 个代码"
        logs: List[AttemptLog] = []
        for provider in self._chain(operation):
            log = AttemptLog(provider.name)
            logs.append(log)
            retries_left = provider.profile.retry_budget
            while True:
                log.attempts += 1
                result = await self._attempt(provider, operation, symbol, horizon)

                if result.status is ProviderStatus.SUCCESS:
                    value = accept(result)
                    if value is not None:
                        return provider.name, value, logs
                    result = ProviderResult(provider.name, ProviderStatus.TERMINAL, error="标准化后无有效数据")

                log.errors.append(result.error or "")
                if result.status is ProviderStatus.RETRYABLE and retries_left > 0:
                    retries_left -= 1
                    delay = self._backoff(provider)
                    logger.warning(f"⏳ {provider.name} 限流，{delay:.1f}s 后重试 {label}（剩余 {retries_left} 次）")
                    await self._sleep(delay)
                    continue

                logger.warning(f"⚠️ {operation} 获取失败（来源：{provider.name}，{label}）: {result.error}")
                break
        return None, None, logs

    # ── 历史 K 线 ─────────────────────────────────────────

    async def fetch_history(self, symbol: str, horizon: Horizon) -> Series:
        def accept(result: ProviderResult):
            return self._processor.normalize_bars(result.data) or None

        source, bars, logs = await self._run_chain(HISTORY, symbol, horizon, accept)
        if source is not None:
            logger.info(f"✅ {symbol} {horizon.value} 历史数据获取成功（来源：{source}），共 {len(bars)} 条")
            stamp_kind = HISTORY if self._covers_refresh_horizon(horizon) else None
            self._schedule_write(symbol, self.cache.write_series(symbol, bars), stamp_kind)
            return Series(
                symbol=symbol,
                horizon=horizon,
                bars=bars,
                source=source,
                fetched_at=datetime.now(tz=timezone.utc),
            )

        stale = await self.cache.read_stale_series(symbol, horizon)
        if stale is not None and stale.bars:
            logger.warning(f"⚠️ {symbol} 所有数据源失败，返回陈旧缓存（最新 {stale.latest_date}）")
            return stale
        raise AllProvidersExhaustedError(symbol, HISTORY, [log.__dict__ for log in logs])

    # ── 最新报价 ──────────────────────────────────────────

    async def fetch_quote(self, symbol: str) -> Quote:
        def accept(result: ProviderResult):
            return self._processor.normalize_quote(result.data, symbol, result.provider)

        source, quote, logs = await self._run_chain(QUOTE, symbol, None, accept)
        if source is not None:
            quote.fetched_at = datetime.now(tz=timezone.utc)
            logger.info(f"✅ {symbol} 报价获取成功（来源：{source}）: {quote.price}")
            self._schedule_write(symbol, self.cache.write_quote(symbol, quote), QUOTE)
            return quote

        last = await self.cache.read_quote(symbol)
        if last is not None:
            logger.warning(f"⚠️ {symbol} 所有报价源失败，返回最后一次已知报价")
            return last.model_copy(update={"stale": True})
        raise AllProvidersExhaustedError(symbol, QUOTE, [log.__dict__ for log in logs])

    # ── 批量报价 ──────────────────────────────────────────

    def supports_bulk_quotes(self) -> bool:
        return bool(self._chain(BULK_QUOTE))

    async def fetch_quotes_bulk(self, symbols: List[str]) -> Dict[str, Quote]:
        """
        一次请求获取多只代码的报价

        只走支持批量报价的数据源；全部失败时返回空字典，不回退到旧报价，
        由调用方对缺失的代码逐只走报价链。
        """
        if not symbols:
            return {}

        def accept(result: ProviderResult):
            quotes = {}
            for symbol, raw in result.data.items():
                quote = self._processor.normalize_quote(raw, symbol, result.provider)
                if quote is not None:
                    quotes[symbol] = quote
            return quotes or None

        source, quotes, _ = await self._run_chain(BULK_QUOTE, list(symbols), None, accept)
        if source is None:
            return {}

        fetched_at = datetime.now(tz=timezone.utc)
        for symbol, quote in quotes.items():
            quote.fetched_at = fetched_at
            self._schedule_write(symbol, self.cache.write_quote(symbol, quote), QUOTE)
        logger.info(f"✅ 批量报价获取成功（来源：{source}）: {len(quotes)}/{len(symbols)} 个")
        return quotes

    # ── 后台写回 ──────────────────────────────────────────

    def _covers_refresh_horizon(self, horizon: Horizon) -> bool:
        refresh = Horizon.parse(settings.REFRESH_HISTORY_HORIZON)
        return horizon.policy.lookback_days >= refresh.policy.lookback_days

    def _schedule_write(
        self, symbol: str, write: Awaitable[WriteResult], stamp_kind: Optional[str] = None
    ) -> None:
        task = asyncio.ensure_future(self._write_back(symbol, write, stamp_kind))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_back(
        self, symbol: str, write: Awaitable[WriteResult], stamp_kind: Optional[str] = None
    ) -> None:
        """写入缓存；成功且给出 stamp_kind 时同步更新登记表，已登记的代码不必再被批量刷新选中"""
        try:
            result = await write
            if not result.ok:
                raise CacheWriteError(f"{symbol} 写入失败 {result.failed} 条: {'; '.join(result.errors)}")
            if stamp_kind is not None:
                await self.cache.stamp_refresh(symbol, stamp_kind, "success", register=False)
        except CacheWriteError as exc:
            logger.error(f"❌ {exc}")
        except Exception as exc:
            logger.error(f"❌ {CacheWriteError(f'{symbol} 写入异常: {exc}')}")

    def pending_writes(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """等待所有后台写回完成"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def describe_providers(self) -> List[Dict[str, Any]]:
        chains = {QUOTE: self._quote_order, HISTORY: self._history_order}
        result = []
        for name, provider in sorted(self.providers.items(), key=lambda kv: kv[1].profile.priority):
            info = provider.describe()
            info["chains"] = [op for op, order in chains.items() if name in order]
            if provider.rate_limiter is not None:
                info["rate_limit"] = provider.rate_limiter.usage()
            result.append(info)
        return result


# ── 模块级别单例 ──────────────────────────────────────────
_acquisition: Optional[AcquisitionLayer] = None


def get_acquisition_layer() -> AcquisitionLayer:
    global _acquisition
    if _acquisition is None:
        _acquisition = AcquisitionLayer()
    return _acquisition
