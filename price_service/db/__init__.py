"""
存储连接
  MongoDB : K 线 / 报价 / 刷新登记表的持久化存储（启动时建立唯一索引）
  Redis   : 报价热缓存
任一连接失败都不阻断启动，缓存层自动降级为进程内存储。
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from redis.asyncio import ConnectionPool, Redis

from price_service.config import settings

logger = logging.getLogger(__name__)

# ── 集合名称 ─────────────────────────────────────────────
HISTORY_COLLECTION = "stock_history_cache"   # (symbol, date) 唯一
QUOTE_COLLECTION = "stock_prices"            # symbol 唯一
REGISTRY_COLLECTION = "symbol_registry"      # symbol 唯一，记录批量刷新状态


@dataclass
class _Connections:
    mongo_client: Optional[AsyncIOMotorClient] = None
    mongo_db: Optional[AsyncIOMotorDatabase] = None
    redis_pool: Optional[ConnectionPool] = None
    redis: Optional[Redis] = None

    @property
    def storage_mode(self) -> str:
        return "mongodb" if self.mongo_db is not None else "memory"


_conn = _Connections()


def _mongo_options() -> Dict[str, Any]:
    return {
        "maxPoolSize": settings.MONGO_MAX_CONNECTIONS,
        "minPoolSize": settings.MONGO_MIN_CONNECTIONS,
        "serverSelectionTimeoutMS": settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
        "connectTimeoutMS": settings.MONGO_CONNECT_TIMEOUT_MS,
        "socketTimeoutMS": settings.MONGO_SOCKET_TIMEOUT_MS,
        # 登记表的刷新时间需要带时区比较
        "tz_aware": True,
    }


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    """创建唯一索引，保证 upsert 以 (symbol, date) / symbol 为冲突键"""
    await db[HISTORY_COLLECTION].create_index(
        [("symbol", ASCENDING), ("date", ASCENDING)], unique=True, name="uniq_symbol_date"
    )
    await db[HISTORY_COLLECTION].create_index(
        [("symbol", ASCENDING), ("date", DESCENDING)], name="idx_symbol_date_desc"
    )
    await db[QUOTE_COLLECTION].create_index("symbol", unique=True, name="uniq_symbol")
    await db[REGISTRY_COLLECTION].create_index("symbol", unique=True, name="uniq_symbol")
    for kind in ("quote", "history"):
        await db[REGISTRY_COLLECTION].create_index(
            [(f"{kind}_refreshed_at", ASCENDING), ("symbol", ASCENDING)],
            name=f"idx_{kind}_refreshed_at",
        )


async def init_mongodb() -> bool:
    """连接 MongoDB 并建立索引；失败时保持未连接状态，返回 False"""
    if not settings.MONGODB_ENABLED:
        logger.info("MongoDB 未启用，价格数据仅保存在进程内")
        return False

    client = AsyncIOMotorClient(settings.MONGO_URI, **_mongo_options())
    try:
        await client.admin.command("ping")
        db = client[settings.MONGODB_DATABASE]
        await ensure_indexes(db)
    except Exception as exc:
        client.close()
        logger.warning(f"⚠️ MongoDB 不可用，价格缓存降级为进程内存储: {exc}")
        return False

    _conn.mongo_client, _conn.mongo_db = client, db
    logger.info(f"🗄️ MongoDB 已就绪: {settings.MONGODB_HOST}:{settings.MONGODB_PORT}/{settings.MONGODB_DATABASE}")
    return True


async def init_redis() -> bool:
    """连接 Redis（报价热缓存）；失败时报价只读写持久化存储，返回 False"""
    if not settings.REDIS_ENABLED:
        logger.info("Redis 未启用，报价热缓存关闭")
        return False

    pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=10,
    )
    client = Redis(connection_pool=pool)
    try:
        await client.ping()
    except Exception as exc:
        await client.aclose()
        await pool.disconnect()
        logger.warning(f"⚠️ Redis 不可用，报价热缓存关闭: {exc}")
        return False

    _conn.redis_pool, _conn.redis = pool, client
    logger.info(f"⚡ Redis 已就绪: {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    return True


async def close_connections() -> None:
    if _conn.mongo_client is not None:
        _conn.mongo_client.close()
        logger.info("MongoDB 连接已释放")
    if _conn.redis is not None:
        await _conn.redis.aclose()
    if _conn.redis_pool is not None:
        await _conn.redis_pool.disconnect()
        logger.info("Redis 连接已释放")
    _conn.mongo_client = _conn.mongo_db = None
    _conn.redis_pool = _conn.redis = None


def get_mongo_db() -> Optional[AsyncIOMotorDatabase]:
    """MongoDB 数据库实例，未连接时为 None（缓存层据此降级）"""
    return _conn.mongo_db


def get_redis() -> Optional[Redis]:
    return _conn.redis


async def _ping_status(
    connected: bool, enabled: bool, ping: Callable[[], Awaitable[Any]], host: str
) -> Dict[str, Any]:
    if not connected:
        return {"status": "disconnected" if enabled else "disabled"}
    try:
        await ping()
    except Exception as exc:
        return {"status": "unhealthy", "error": str(exc)}
    return {"status": "healthy", "host": host}


async def check_health() -> dict:
    """各存储的连接状态，以及当前价格数据实际落在哪里"""
    mongo = await _ping_status(
        _conn.mongo_client is not None,
        settings.MONGODB_ENABLED,
        lambda: _conn.mongo_client.admin.command("ping"),
        settings.MONGODB_HOST,
    )
    redis = await _ping_status(
        _conn.redis is not None,
        settings.REDIS_ENABLED,
        lambda: _conn.redis.ping(),
        settings.REDIS_HOST,
    )
    return {"mongodb": mongo, "redis": redis, "storage": _conn.storage_mode}
