"""
价格缓存服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class PriceServiceSettings(BaseSettings):
    """价格缓存服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8001)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── MongoDB 配置（支持服务发现） ───────────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="price_cache")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_ENABLED: bool = Field(default=True)
    MONGO_MAX_CONNECTIONS: int = Field(default=50)
    MONGO_MIN_CONNECTIONS: int = Field(default=5)
    MONGO_CONNECT_TIMEOUT_MS: int = Field(default=30000)
    MONGO_SOCKET_TIMEOUT_MS: int = Field(default=60000)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── Redis 配置（支持服务发现） ─────────────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── 定时任务鉴权 ──────────────────────────────────────
    CRON_SECRET: str = Field(default="")

    # ── 数据源配置 ─────────────────────────────────────────
    QUOTE_PROVIDER_ORDER: List[str] = Field(
        default_factory=lambda: ["klsescreener", "eodhd", "yahoo"]
    )
    HISTORY_PROVIDER_ORDER: List[str] = Field(
        default_factory=lambda: ["eodhd", "yahoo"]
    )
    EODHD_API_KEY: str = Field(default="")
    EODHD_BASE_URL: str = Field(default="https://eodhd.com/api")
    EODHD_EXCHANGE: str = Field(default="KLSE")
    KLSE_SCREENER_BASE_URL: str = Field(default="https://www.klsescreener.com/v2/stocks/view")
    YAHOO_SYMBOL_SUFFIX: str = Field(default=".KL")

    # ── 调用超时 / 退避 / 重试 ─────────────────────────────
    PROVIDER_TIMEOUT_SECONDS: float = Field(default=10.0)
    RATE_LIMIT_BACKOFF_SECONDS: float = Field(default=10.0)
    RATE_LIMIT_BACKOFF_JITTER: float = Field(default=0.3)
    RATE_LIMIT_RETRY_BUDGET: int = Field(default=2)

    # ── 滑动窗口限流（Yahoo / EODHD） ──────────────────────
    RATE_LIMIT_WINDOW_SECONDS: float = Field(default=60.0)
    YAHOO_RATE_LIMIT: int = Field(default=1200)
    EODHD_RATE_LIMIT: int = Field(default=1000)
    EODHD_BULK_WEIGHT: int = Field(default=100)   # 批量报价按 100 次调用计费

    # ── 缓存配置 ──────────────────────────────────────────
    CACHE_WRITE_BATCH_SIZE: int = Field(default=100)   # 单次 upsert 行数上限
    QUOTE_CACHE_TTL: int = Field(default=60)           # 报价热缓存 TTL（秒）
    MARKET_HOLIDAYS: List[str] = Field(default_factory=list)  # YYYY-MM-DD
    MARKET_TIMEZONE: str = Field(default="Asia/Kuala_Lumpur")  # 交易所时区

    # ── 批量刷新配置 ──────────────────────────────────────
    SYMBOL_UNIVERSE: List[str] = Field(default_factory=list)
    REFRESH_BATCH_SIZE: int = Field(default=5)
    REFRESH_STALE_HOURS: float = Field(default=20.0)
    REFRESH_CONCURRENCY: int = Field(default=5)
    REFRESH_BATCH_DELAY_SECONDS: float = Field(default=0.5)
    REFRESH_TIME_BUDGET_SECONDS: float = Field(default=8.0)
    REFRESH_HISTORY_HORIZON: str = Field(default="1y")

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")


@lru_cache
def get_settings() -> PriceServiceSettings:
    """获取全局配置（单例）"""
    return PriceServiceSettings()


settings = get_settings()
