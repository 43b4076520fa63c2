"""
缓存层（持久化）
MongoDB 持久化历史 K 线 / 最新报价 / 刷新登记表，Redis 作为报价热缓存；
MongoDB 不可用时降级为进程内存储，服务继续运行。
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING, UpdateOne

from price_service.config import settings
from price_service.db import (
    HISTORY_COLLECTION,
    QUOTE_COLLECTION,
    REGISTRY_COLLECTION,
    get_mongo_db,
    get_redis,
)
from price_service.exceptions import CacheWriteError
from price_service.layers.staleness import StalenessPolicy, get_staleness_policy
from price_service.models.market import Bar, Horizon, Quote, Series, normalize_symbol

logger = logging.getLogger(__name__)

REFRESH_KINDS = ("quote", "history")

_BAR_FIELDS = ("date", "open", "high", "low", "close", "volume")
_QUOTE_KEY_PREFIX = "quote"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _check_kind(kind: str) -> str:
    if kind not in REFRESH_KINDS:
        raise ValueError(f"未知的刷新类型: {kind}")
    return kind


class WriteResult(BaseModel):
    """一次写入的结果：成功行数、失败行数、失败原因"""

    written: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0


# ─────────────────────────────────────────────────────────
# 存储后端
# ─────────────────────────────────────────────────────────

class MemoryBackend:
    """进程内存储（MongoDB 不可用时的降级模式，也用于测试）"""

    name = "memory"

    def __init__(self):
        self.bars: Dict[str, Dict[str, dict]] = {}
        self.quotes: Dict[str, dict] = {}
        self.registry: Dict[str, dict] = {}

    async def upsert_bars(self, symbol: str, rows: List[dict]) -> int:
        series = self.bars.setdefault(symbol, {})
        for row in rows:
            series[row["date"]] = dict(row)
        return len(rows)

    async def find_bars(self, symbol: str, start: Optional[str] = None) -> List[dict]:
        series = self.bars.get(symbol, {})
        return [series[d] for d in sorted(series) if start is None or d >= start]

    async def latest_bar_date(self, symbol: str) -> Optional[str]:
        series = self.bars.get(symbol)
        return max(series) if series else None

    async def upsert_quote(self, doc: dict) -> None:
        self.quotes[doc["symbol"]] = dict(doc)

    async def find_quote(self, symbol: str) -> Optional[dict]:
        doc = self.quotes.get(symbol)
        return dict(doc) if doc else None

    async def register(self, symbols: List[str]) -> int:
        added = 0
        for symbol in symbols:
            if symbol not in self.registry:
                self.registry[symbol] = {"symbol": symbol}
                added += 1
        return added

    def _stale_docs(self, field: str, threshold: Optional[datetime]) -> List[dict]:
        docs = [
            d for d in self.registry.values()
            if threshold is None or d.get(field) is None or d[field] < threshold
        ]
        # 升序，从未刷新（None）排最前，同时间按代码排序
        docs.sort(key=lambda d: (d.get(field) is not None, d.get(field) or datetime.min.replace(tzinfo=timezone.utc), d["symbol"]))
        return docs

    async def select_stale(self, field: str, threshold: Optional[datetime], limit: int) -> List[dict]:
        return [dict(d) for d in self._stale_docs(field, threshold)[:limit]]

    async def count_stale(self, field: str, threshold: Optional[datetime]) -> int:
        return len(self._stale_docs(field, threshold))

    async def count_registered(self) -> int:
        return len(self.registry)

    async def stamp(self, symbol: str, fields: dict, upsert: bool = True) -> None:
        if upsert:
            self.registry.setdefault(symbol, {"symbol": symbol})
        if symbol in self.registry:
            self.registry[symbol].update(fields)

    async def stats(self) -> dict:
        return {
            "status": "degraded",
            "symbols_with_history": len(self.bars),
            "bars": sum(len(s) for s in self.bars.values()),
            "quotes": len(self.quotes),
            "registered_symbols": len(self.registry),
        }


class MongoBackend:
    """MongoDB 持久化后端，依赖唯一索引实现原子 upsert"""

    name = "mongodb"

    def __init__(self, db):
        self._db = db

    async def upsert_bars(self, symbol: str, rows: List[dict]) -> int:
        ops = [
            UpdateOne({"symbol": symbol, "date": row["date"]}, {"$set": row}, upsert=True)
            for row in rows
        ]
        if not ops:
            return 0
        await self._db[HISTORY_COLLECTION].bulk_write(ops, ordered=False)
        return len(ops)

    async def find_bars(self, symbol: str, start: Optional[str] = None) -> List[dict]:
        query: Dict[str, Any] = {"symbol": symbol}
        if start:
            query["date"] = {"$gte": start}
        cursor = self._db[HISTORY_COLLECTION].find(query, {"_id": 0}).sort("date", ASCENDING)
        return await cursor.to_list(length=None)

    async def latest_bar_date(self, symbol: str) -> Optional[str]:
        doc = await self._db[HISTORY_COLLECTION].find_one(
            {"symbol": symbol}, {"_id": 0, "date": 1}, sort=[("date", DESCENDING)]
        )
        return doc["date"] if doc else None

    async def upsert_quote(self, doc: dict) -> None:
        await self._db[QUOTE_COLLECTION].update_one(
            {"symbol": doc["symbol"]}, {"$set": doc}, upsert=True
        )

    async def find_quote(self, symbol: str) -> Optional[dict]:
        return await self._db[QUOTE_COLLECTION].find_one({"symbol": symbol}, {"_id": 0})

    async def register(self, symbols: List[str]) -> int:
        ops = [
            UpdateOne({"symbol": s}, {"$setOnInsert": {"symbol": s}}, upsert=True)
            for s in symbols
        ]
        if not ops:
            return 0
        result = await self._db[REGISTRY_COLLECTION].bulk_write(ops, ordered=False)
        return result.upserted_count

    @staticmethod
    def _stale_query(field: str, threshold: Optional[datetime]) -> dict:
        if threshold is None:
            return {}
        # null 与缺失字段都会被 {field: None} 匹配
        return {"$or": [{field: None}, {field: {"$lt": threshold}}]}

    async def select_stale(self, field: str, threshold: Optional[datetime], limit: int) -> List[dict]:
        # MongoDB 升序排序时 null / 缺失值排在最前
        cursor = (
            self._db[REGISTRY_COLLECTION]
            .find(self._stale_query(field, threshold), {"_id": 0})
            .sort([(field, ASCENDING), ("symbol", ASCENDING)])
            .limit(limit)
        )
        return await cursor.to_list(length=limit)

    async def count_stale(self, field: str, threshold: Optional[datetime]) -> int:
        return await self._db[REGISTRY_COLLECTION].count_documents(self._stale_query(field, threshold))

    async def count_registered(self) -> int:
        return await self._db[REGISTRY_COLLECTION].count_documents({})

    async def stamp(self, symbol: str, fields: dict, upsert: bool = True) -> None:
        update = {"$set": fields}
        if upsert:
            update["$setOnInsert"] = {"symbol": symbol}
        await self._db[REGISTRY_COLLECTION].update_one({"symbol": symbol}, update, upsert=upsert)

    async def stats(self) -> dict:
        return {
            "status": "healthy",
            "symbols_with_history": len(await self._db[HISTORY_COLLECTION].distinct("symbol")),
            "bars": await self._db[HISTORY_COLLECTION].estimated_document_count(),
            "quotes": await self._db[QUOTE_COLLECTION].estimated_document_count(),
            "registered_symbols": await self._db[REGISTRY_COLLECTION].estimated_document_count(),
        }


_fallback_backend = MemoryBackend()


# ─────────────────────────────────────────────────────────
# 缓存层
# ─────────────────────────────────────────────────────────

class CacheLayer:
    """
    持久化缓存层

    - K 线按 (symbol, date) upsert，后写覆盖，不保留历史版本
    - 分批写入（每批不超过 batch_size 行），单批失败不影响其他批次
    - 报价单行覆盖，Redis 热缓存可选
    - 刷新登记表记录每个代码的最后刷新时间与结果，供批量刷新挑选最旧代码
    """

    def __init__(
        self,
        backend=None,
        batch_size: Optional[int] = None,
        policy: Optional[StalenessPolicy] = None,
        use_redis: bool = True,
    ):
        self._backend = backend
        self._batch_size = batch_size or settings.CACHE_WRITE_BATCH_SIZE
        self._policy = policy or get_staleness_policy()
        self._use_redis = use_redis

    @property
    def backend(self):
        if self._backend is not None:
            return self._backend
        db = get_mongo_db()
        if db is not None:
            return MongoBackend(db)
        return _fallback_backend

    def _redis(self):
        return get_redis() if self._use_redis else None

    # ── 历史 K 线 ─────────────────────────────────────────

    @staticmethod
    def _to_series(symbol: str, horizon: Horizon, rows: List[dict], source: str, stale: bool) -> Series:
        fetched = [_aware(r.get("updated_at")) for r in rows if r.get("updated_at")]
        return Series(
            symbol=symbol,
            horizon=horizon,
            bars=[Bar(**{k: r[k] for k in _BAR_FIELDS if k in r}) for r in rows],
            source=source,
            stale=stale,
            fetched_at=max(fetched) if fetched else None,
        )

    async def read_series(
        self, symbol: str, horizon: Horizon, now: Optional[datetime] = None
    ) -> Optional[Series]:
        """读取回看窗口内的缓存 K 线，不做新鲜度判断"""
        start = self._policy.window_start(horizon, now).isoformat()
        try:
            rows = await self.backend.find_bars(symbol, start)
        except Exception as exc:
            logger.warning(f"读取 {symbol} 历史缓存失败: {exc}")
            return None
        if not rows:
            return None
        logger.debug(f"缓存命中: {symbol} {horizon.value} {rows[0]['date']} ~ {rows[-1]['date']}（{len(rows)} 条）")
        return self._to_series(symbol, horizon, rows, source="cache", stale=False)

    async def read_stale_series(self, symbol: str, horizon: Horizon) -> Optional[Series]:
        """
        兜底读取：忽略陈旧天数，只要存在至少一根 K 线就返回

        窗口以最新一根已缓存 K 线为锚点向前回看 lookback_days。
        """
        try:
            latest = await self.backend.latest_bar_date(symbol)
            if latest is None:
                return None
            start = date.fromisoformat(latest) - timedelta(days=horizon.policy.lookback_days)
            rows = await self.backend.find_bars(symbol, start.isoformat())
        except Exception as exc:
            logger.warning(f"读取 {symbol} 陈旧缓存失败: {exc}")
            return None
        if not rows:
            return None
        return self._to_series(symbol, horizon, rows, source="cache-stale", stale=True)

    async def write_series(self, symbol: str, bars: Iterable[Bar]) -> WriteResult:
        now = _utcnow()
        rows = []
        for bar in bars:
            row = bar.model_dump()
            row["date"] = bar.date.isoformat()
            row["symbol"] = symbol
            row["updated_at"] = now
            rows.append(row)

        result = WriteResult()
        backend = self.backend
        for i in range(0, len(rows), self._batch_size):
            batch = rows[i:i + self._batch_size]
            try:
                result.written += await backend.upsert_bars(symbol, batch)
            except Exception as exc:
                batch_no = i // self._batch_size + 1
                logger.error(f"❌ {symbol} 第 {batch_no} 批 K 线写入失败（{len(batch)} 条）: {exc}")
                result.failed += len(batch)
                result.errors.append(str(exc))

        if rows:
            logger.info(f"💾 已缓存 {symbol} {result.written} 条 K 线（失败 {result.failed} 条，后端 {backend.name}）")
        return result

    # ── 最新报价 ──────────────────────────────────────────

    async def read_quote(self, symbol: str) -> Optional[Quote]:
        redis = self._redis()
        if redis:
            try:
                raw = await redis.get(f"{_QUOTE_KEY_PREFIX}:{symbol}")
                if raw:
                    logger.debug(f"报价缓存命中（Redis）: {symbol}")
                    return Quote.model_validate_json(raw)
            except Exception as exc:
                logger.debug(f"Redis 读取失败: {exc}")

        try:
            doc = await self.backend.find_quote(symbol)
        except Exception as exc:
            logger.warning(f"读取 {symbol} 报价缓存失败: {exc}")
            return None
        if not doc:
            return None
        doc.pop("updated_at", None)
        return Quote.model_validate(doc)

    async def write_quote(self, symbol: str, quote: Quote) -> WriteResult:
        stored = quote.model_copy(update={"symbol": symbol, "stale": False})
        if stored.fetched_at is None:
            stored.fetched_at = _utcnow()
        doc = stored.model_dump()
        doc["updated_at"] = _utcnow()

        result = WriteResult()
        try:
            await self.backend.upsert_quote(doc)
            result.written = 1
        except Exception as exc:
            logger.error(f"❌ {symbol} 报价写入失败: {exc}")
            result.failed = 1
            result.errors.append(str(exc))

        redis = self._redis()
        if redis:
            try:
                await redis.setex(f"{_QUOTE_KEY_PREFIX}:{symbol}", settings.QUOTE_CACHE_TTL, stored.model_dump_json())
            except Exception as exc:
                logger.debug(f"Redis 写入失败: {exc}")
        return result

    # ── 刷新登记表 ────────────────────────────────────────

    async def register_symbols(self, symbols: Iterable[str]) -> int:
        unique = sorted({normalize_symbol(s) for s in symbols if s and s.strip()})
        if not unique:
            return 0
        added = await self.backend.register(unique)
        logger.info(f"📋 登记代码 {len(unique)} 个（新增 {added} 个）")
        return added

    async def select_stale_symbols(
        self, kind: str, threshold: Optional[datetime], limit: int
    ) -> List[dict]:
        """挑选从未刷新或刷新时间早于 threshold 的代码，最旧优先（threshold 为 None 时不过滤）"""
        field = f"{_check_kind(kind)}_refreshed_at"
        docs = await self.backend.select_stale(field, threshold, limit)
        return [{"symbol": d["symbol"], "refreshed_at": _aware(d.get(field))} for d in docs]

    async def count_stale_symbols(self, kind: str, threshold: Optional[datetime]) -> int:
        return await self.backend.count_stale(f"{_check_kind(kind)}_refreshed_at", threshold)

    async def count_registered_symbols(self) -> int:
        return await self.backend.count_registered()

    async def stamp_refresh(
        self,
        symbol: str,
        kind: str,
        status: str,
        error: Optional[str] = None,
        at: Optional[datetime] = None,
        register: bool = True,
    ) -> None:
        """
        记录某代码本次刷新的时间与结果；失败也打时间戳，使其轮转到队尾

        register=False 时只更新已登记的代码（按需请求成功后使用，不扩大代码池）
        """
        _check_kind(kind)
        try:
            await self.backend.stamp(symbol, {
                f"{kind}_refreshed_at": at or _utcnow(),
                f"{kind}_status": status,
                f"{kind}_error": error,
            }, upsert=register)
        except Exception as exc:
            raise CacheWriteError(f"{symbol} 刷新状态写入失败: {exc}") from exc

    async def stats(self) -> dict:
        """返回各缓存后端统计信息"""
        result: dict = {}
        redis = self._redis()
        if redis:
            try:
                result["redis"] = {"keys": await redis.dbsize(), "status": "healthy"}
            except Exception as exc:
                result["redis"] = {"status": "error", "error": str(exc)}
        else:
            result["redis"] = {"status": "disabled"}

        backend = self.backend
        try:
            result[backend.name] = await backend.stats()
        except Exception as exc:
            result[backend.name] = {"status": "error", "error": str(exc)}
        return result


# ── 模块级别单例 ──────────────────────────────────────────
_cache: Optional[CacheLayer] = None


def get_cache_layer() -> CacheLayer:
    global _cache
    if _cache is None:
        _cache = CacheLayer()
    return _cache
