"""
新鲜度策略层
按时间跨度判断缓存中的 K 线序列是否可以直接返回，或必须刷新。
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from price_service.config import settings
from price_service.models.market import Horizon, Series

logger = logging.getLogger(__name__)

# 非交易日额外放宽的天数（周末 / 节假日不应使上一交易日的缓存失效）
_NON_TRADING_DAY_GRACE = 2


class StalenessPolicy:
    """新鲜度策略：陈旧天数 + 最少数据点双重校验"""

    def __init__(self, tz: Optional[str] = None, holidays: Optional[Iterable[str]] = None):
        self._tz = ZoneInfo(tz or settings.MARKET_TIMEZONE)
        self._holidays = {
            date.fromisoformat(d) for d in (holidays if holidays is not None else settings.MARKET_HOLIDAYS)
        }

    def market_date(self, now: Optional[datetime] = None) -> date:
        """将时间点换算为交易所所在时区的日期"""
        now = now or datetime.now(tz=timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self._tz).date()

    def is_trading_day(self, day: date) -> bool:
        return day.weekday() < 5 and day not in self._holidays

    def window_start(self, horizon: Horizon, now: Optional[datetime] = None) -> date:
        return self.market_date(now) - timedelta(days=horizon.policy.lookback_days)

    def is_usable(self, series: Optional[Series], horizon: Horizon, now: Optional[datetime] = None) -> bool:
        """
        判断缓存序列是否可用

        可用当且仅当：
          1. 最新 K 线日期距今不超过 max_staleness_days（非交易日额外放宽 2 天）
          2. 回看窗口内至少有 min_data_points 根 K 线
        max_staleness_days 为 0 的短跨度始终视为陈旧。
        """
        if series is None or not series.bars:
            return False

        policy = horizon.policy
        if policy.max_staleness_days == 0:
            return False

        today = self.market_date(now)
        max_stale = policy.max_staleness_days
        if not self.is_trading_day(today):
            max_stale += _NON_TRADING_DAY_GRACE

        age_days = (today - series.latest_date).days
        if age_days > max_stale:
            logger.debug(
                f"{series.symbol} {horizon.value} 缓存已陈旧 {age_days} 天（上限 {max_stale}），需要刷新"
            )
            return False

        start = today - timedelta(days=policy.lookback_days)
        points = sum(1 for bar in series.bars if bar.date >= start)
        if points < policy.min_data_points:
            logger.debug(
                f"{series.symbol} {horizon.value} 缓存仅 {points} 个数据点（需要 {policy.min_data_points}），需要回补"
            )
            return False

        return True


# ── 模块级别单例 ──────────────────────────────────────────
_policy: Optional[StalenessPolicy] = None


def get_staleness_policy() -> StalenessPolicy:
    global _policy
    if _policy is None:
        _policy = StalenessPolicy()
    return _policy
