"""
批量刷新服务
由外部定时任务触发，每次只刷新最旧的少量代码，多次调用后覆盖整个代码池。
  Select  : 从登记表挑选从未刷新或超过 stale_hours 未刷新的代码（最旧优先）
  Fetch   : 报价优先整批获取；其余按并发子批次走数据源回退链，每个子批次受剩余时间预算约束
  Persist : 等待后台写回完成，成功 / 失败都在登记表打时间戳，失败代码轮转到队尾
  Report  : 汇总成功 / 失败 / 跳过数量与剩余陈旧数量
"""

import asyncio
import logging
import math
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from price_service.config import settings
from price_service.exceptions import CacheWriteError
from price_service.layers.acquisition import AcquisitionLayer, get_acquisition_layer
from price_service.layers.cache import CacheLayer, get_cache_layer
from price_service.layers.coalescer import FetchKey, RequestCoalescer, get_request_coalescer
from price_service.models.market import Horizon, normalize_symbol

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"

Outcome = Tuple[str, bool, Optional[str]]


class RefreshParams(BaseModel):
    """一次批量刷新的参数"""

    kind: Literal["quote", "history"] = "quote"
    batch_size: int = Field(default_factory=lambda: settings.REFRESH_BATCH_SIZE, ge=1)
    stale_hours: float = Field(default_factory=lambda: settings.REFRESH_STALE_HOURS, ge=0)
    horizon: str = Field(default_factory=lambda: settings.REFRESH_HISTORY_HORIZON)
    symbols: Optional[List[str]] = None
    force: bool = False

    @field_validator("horizon")
    @classmethod
    def _check_horizon(cls, value: str) -> str:
        return Horizon.parse(value).value


class RefreshReport(BaseModel):
    kind: str
    selected: int = 0
    updated: int = 0
    failed: int = 0
    failed_symbols: List[str] = Field(default_factory=list)
    skipped: int = 0
    remaining: int = 0
    runs_needed: int = 0
    duration_ms: int = 0
    up_to_date: bool = False
    message: str = ""


class RefreshScheduler:
    """批量刷新调度器（无状态，所有进度都保存在登记表中）"""

    def __init__(
        self,
        cache: Optional[CacheLayer] = None,
        acquisition: Optional[AcquisitionLayer] = None,
        coalescer: Optional[RequestCoalescer] = None,
        concurrency: Optional[int] = None,
        batch_delay: Optional[float] = None,
        time_budget: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache = cache or get_cache_layer()
        self._acq = acquisition or get_acquisition_layer()
        self._coalescer = coalescer or get_request_coalescer()
        self._concurrency = max(concurrency or settings.REFRESH_CONCURRENCY, 1)
        self._batch_delay = settings.REFRESH_BATCH_DELAY_SECONDS if batch_delay is None else batch_delay
        self._time_budget = settings.REFRESH_TIME_BUDGET_SECONDS if time_budget is None else time_budget
        self._clock = clock

    async def register_universe(self, symbols: List[str]) -> int:
        return await self._cache.register_symbols(symbols)

    async def status(self, kind: str = "quote", stale_hours: Optional[float] = None,
                     now: Optional[datetime] = None) -> dict:
        """登记表概况：总数、陈旧数、预计还需触发的次数"""
        now = now or datetime.now(tz=timezone.utc)
        hours = settings.REFRESH_STALE_HOURS if stale_hours is None else stale_hours
        stale = await self._cache.count_stale_symbols(kind, now - timedelta(hours=hours))
        oldest = await self._cache.select_stale_symbols(kind, None, 1)
        return {
            "kind": kind,
            "registered": await self._cache.count_registered_symbols(),
            "stale": stale,
            "stale_hours": hours,
            "batch_size": settings.REFRESH_BATCH_SIZE,
            "runs_needed": math.ceil(stale / settings.REFRESH_BATCH_SIZE),
            "oldest": oldest[0] if oldest else None,
        }

    # ── Select ────────────────────────────────────────────

    async def _select(self, params: RefreshParams, now: datetime) -> List[str]:
        if params.symbols:
            symbols = list(dict.fromkeys(normalize_symbol(s) for s in params.symbols if s and s.strip()))
            await self._cache.register_symbols(symbols)
            return symbols

        threshold = None if params.force else now - timedelta(hours=params.stale_hours)
        candidates = await self._cache.select_stale_symbols(params.kind, threshold, params.batch_size)
        return [c["symbol"] for c in candidates]

    # ── Fetch ─────────────────────────────────────────────

    def _remaining_budget(self, started: float) -> float:
        return self._time_budget - (self._clock() - started)

    async def _refresh_bulk(self, symbols: List[str], started: float) -> Tuple[List[Outcome], List[str]]:
        """整批报价；批量结果未覆盖的代码留给逐只刷新"""
        remaining = self._remaining_budget(started)
        if remaining <= 0:
            return [], symbols
        try:
            quotes = await asyncio.wait_for(self._acq.fetch_quotes_bulk(symbols), timeout=remaining)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ 批量报价超出时间预算 {self._time_budget}s，改为逐只刷新")
            quotes = {}

        rest = [s for s in symbols if s not in quotes]
        if quotes:
            logger.info(f"📦 批量报价覆盖 {len(quotes)} 个代码，{len(rest)} 个逐只刷新")
        return [(s, True, None) for s in symbols if s in quotes], rest

    async def _refresh_one(self, symbol: str, params: RefreshParams) -> Outcome:
        try:
            if params.kind == "quote":
                result = await self._coalescer.coalesce(
                    FetchKey(symbol, "quote"), lambda: self._acq.fetch_quote(symbol)
                )
            else:
                horizon = Horizon.parse(params.horizon)
                result = await self._coalescer.coalesce(
                    FetchKey(symbol, horizon.value), lambda: self._acq.fetch_history(symbol, horizon)
                )
        except Exception as exc:
            logger.warning(f"⚠️ {symbol} 刷新失败: {exc}")
            return symbol, False, str(exc)

        # 回退到陈旧缓存说明所有数据源都失败了
        if result.stale:
            return symbol, False, "所有数据源均失败，仅有陈旧缓存"
        return symbol, True, None

    async def _refresh_each(
        self, symbols: List[str], params: RefreshParams, started: float, outcomes: List[Outcome]
    ) -> int:
        """
        按并发子批次逐只刷新，结果追加到 outcomes，返回因超出时间预算而跳过的代码数

        每个子批次只等待剩余的预算时间，到点仍未完成的代码记为跳过（不打时间戳）。
        上游拉取由合并层持有，取消等待不会中断其他调用方共享的请求。
        """
        for i in range(0, len(symbols), self._concurrency):
            if i > 0 and self._batch_delay > 0:
                await asyncio.sleep(min(self._batch_delay, max(self._remaining_budget(started), 0.0)))
            remaining = self._remaining_budget(started)
            if remaining <= 0:
                return len(symbols) - i

            chunk = symbols[i:i + self._concurrency]
            tasks = [asyncio.ensure_future(self._refresh_one(s, params)) for s in chunk]
            done, late = await asyncio.wait(tasks, timeout=remaining)
            outcomes.extend(task.result() for task in tasks if task in done)
            if late:
                for task in late:
                    task.cancel()
                await asyncio.gather(*late, return_exceptions=True)
                return len(late) + len(symbols) - i - len(chunk)
        return 0

    # ── 主流程 ────────────────────────────────────────────

    async def trigger(self, params: Optional[RefreshParams] = None, now: Optional[datetime] = None) -> RefreshReport:
        params = params or RefreshParams()
        now = now or datetime.now(tz=timezone.utc)
        started = self._clock()

        symbols = await self._select(params, now)
        report = RefreshReport(kind=params.kind, selected=len(symbols))

        if not symbols:
            report.up_to_date = True
            report.duration_ms = int((self._clock() - started) * 1000)
            report.message = "所有代码均已是最新，无需刷新"
            logger.info(f"✅ 批量刷新（{params.kind}）: {report.message}")
            return report

        logger.info(f"🔄 批量刷新（{params.kind}）开始: {len(symbols)} 个代码")

        outcomes: List[Outcome] = []
        pending = symbols
        if params.kind == "quote" and self._acq.supports_bulk_quotes():
            bulk_outcomes, pending = await self._refresh_bulk(symbols, started)
            outcomes.extend(bulk_outcomes)

        report.skipped = await self._refresh_each(pending, params, started, outcomes)
        if report.skipped:
            logger.warning(f"⏱️ 超出时间预算 {self._time_budget}s，跳过 {report.skipped} 个代码")

        # 写回在后台进行，打时间戳前先等待其完成
        await self._acq.drain()

        for symbol, ok, error in outcomes:
            if ok:
                report.updated += 1
            else:
                report.failed += 1
                report.failed_symbols.append(symbol)
            try:
                await self._cache.stamp_refresh(
                    symbol,
                    params.kind,
                    STATUS_SUCCESS if ok else STATUS_FAILED,
                    error=error,
                    at=now,
                )
            except CacheWriteError as exc:
                logger.error(f"❌ {exc}")

        threshold = now - timedelta(hours=params.stale_hours)
        report.remaining = await self._cache.count_stale_symbols(params.kind, threshold)
        report.runs_needed = math.ceil(report.remaining / params.batch_size)
        report.up_to_date = report.remaining == 0
        report.duration_ms = int((self._clock() - started) * 1000)
        report.message = (
            f"已更新 {report.updated} 个，失败 {report.failed} 个，跳过 {report.skipped} 个；"
            f"剩余 {report.remaining} 个陈旧代码"
        )
        logger.info(f"✅ 批量刷新（{params.kind}）完成: {report.message}（{report.duration_ms}ms）")
        return report


# ── 模块级别单例 ──────────────────────────────────────────
_scheduler: Optional[RefreshScheduler] = None


def get_refresh_scheduler() -> RefreshScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = RefreshScheduler()
    return _scheduler
