"""
限流层
滑动窗口限流器：窗口内累计权重不超过上限，超出时协作式等待（不忙等）。
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    滑动窗口限流器

    不同操作携带不同权重（批量 / 长区间请求比单代码请求更重），
    与上游数据源的计费方式对应。
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if limit <= 0:
            raise ValueError("limit 必须为正数")
        self.limit = limit
        self.window = window_seconds
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._events: Deque[Tuple[float, int]] = deque()
        self._used = 0
        self._lock = asyncio.Lock()

    def _purge(self, now: float) -> None:
        while self._events and now - self._events[0][0] >= self.window:
            _, weight = self._events.popleft()
            self._used -= weight

    async def acquire(self, weight: int = 1) -> None:
        """申请 weight 个单位，额度不足时阻塞至窗口内最早的记录过期"""
        if weight > self.limit:
            raise ValueError(f"请求权重 {weight} 超过限流上限 {self.limit}")

        # 持锁等待：同一限流器上的调用方按到达顺序串行通过
        async with self._lock:
            while True:
                now = self._clock()
                self._purge(now)
                if self._used + weight <= self.limit:
                    self._events.append((now, weight))
                    self._used += weight
                    return
                wait = self.window - (now - self._events[0][0])
                logger.info(f"⏳ [{self.name}] 限流额度已满（{self._used}/{self.limit}），等待 {wait:.2f}s")
                await self._sleep(max(wait, 0.0))

    def usage(self) -> dict:
        now = self._clock()
        self._purge(now)
        reset_in = self.window - (now - self._events[0][0]) if self._events else 0.0
        return {
            "name": self.name,
            "current": self._used,
            "limit": self.limit,
            "reset_in": round(max(reset_in, 0.0), 3),
        }


# ── 按数据源共享的限流器注册表 ────────────────────────────
_limiters: Dict[str, RateLimiter] = {}


def get_rate_limiter(name: str, limit: int, window_seconds: float = 60.0) -> RateLimiter:
    limiter = _limiters.get(name)
    if limiter is None:
        limiter = RateLimiter(limit=limit, window_seconds=window_seconds, name=name)
        _limiters[name] = limiter
    return limiter
