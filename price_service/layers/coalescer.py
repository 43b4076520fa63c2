"""
请求合并层
同一个 key 同一时刻只允许一次上游请求，所有调用方等待同一个拉取任务。
仅在进程内生效，多实例之间偶发的重复请求是可接受的。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, List, NamedTuple, Optional

logger = logging.getLogger(__name__)


class FetchKey(NamedTuple):
    symbol: str
    horizon: str


class RequestCoalescer:
    """
    在途请求注册表

    key → Task 映射，按 key 分桶加锁。拉取任务由注册表持有，而不是由第一个调用方持有：
    任何调用方被取消都只影响它自己，其他调用方照常拿到结果。
    任务结束（成功、失败或取消）后必定移除，失败不会永久阻塞该 key 的后续请求。
    """

    def __init__(self, buckets: int = 16):
        self._inflight: Dict[Hashable, asyncio.Task] = {}
        self._locks: List[asyncio.Lock] = [asyncio.Lock() for _ in range(max(buckets, 1))]

    def _lock_for(self, key: Hashable) -> asyncio.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)

    def _release(self, key: Hashable, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # 没有等待者时避免 "exception was never retrieved" 警告
        if not task.cancelled():
            task.exception()

    async def coalesce(self, key: Hashable, fetch_fn: Callable[[], Awaitable[Any]]) -> Any:
        async with self._lock_for(key):
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.ensure_future(fetch_fn())
                self._inflight[key] = task
                task.add_done_callback(lambda t: self._release(key, t))
            else:
                logger.debug(f"等待在途请求: {key}")

        return await asyncio.shield(task)

    async def drain(self) -> None:
        """等待所有在途拉取结束（关闭服务时使用）"""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)


# ── 模块级别单例 ──────────────────────────────────────────
_coalescer: Optional[RequestCoalescer] = None


def get_request_coalescer() -> RequestCoalescer:
    global _coalescer
    if _coalescer is None:
        _coalescer = RequestCoalescer()
    return _coalescer
