"""
价格缓存服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn price_service.main:app --host 0.0.0.0 --port 8001
    python -m price_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from price_service import __version__
from price_service.config import settings
from price_service.db import close_connections, init_mongodb, init_redis
from price_service.layers.acquisition import get_acquisition_layer
from price_service.layers.cache import get_cache_layer
from price_service.layers.coalescer import get_request_coalescer
from price_service.models.response import ApiResponse
from price_service.routers import cache, health, providers, refresh, stocks

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 Price Cache Service v{__version__} 启动中")
    logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info(f"   报价链    : {' → '.join(settings.QUOTE_PROVIDER_ORDER)}")
    logger.info(f"   历史链    : {' → '.join(settings.HISTORY_PROVIDER_ORDER)}")
    logger.info("=" * 60)

    # 初始化数据库连接（失败不阻断启动，降级运行）
    mongo_ok = await init_mongodb()
    redis_ok = await init_redis()

    if mongo_ok and redis_ok:
        logger.info("✅ 所有数据库连接就绪")
    elif mongo_ok:
        logger.warning("⚠️ Redis 不可用，报价热缓存已关闭")
    elif redis_ok:
        logger.warning("⚠️ MongoDB 不可用，降级为进程内存储")
    else:
        logger.warning("⚠️ 数据库均不可用，降级为进程内存储")

    if settings.SYMBOL_UNIVERSE:
        try:
            await get_cache_layer().register_symbols(settings.SYMBOL_UNIVERSE)
        except Exception as exc:
            logger.error(f"❌ 代码池登记失败: {exc}")

    yield

    logger.info("🔄 价格缓存服务正在关闭...")
    await get_request_coalescer().drain()
    await get_acquisition_layer().drain()
    await close_connections()
    logger.info("✅ 价格缓存服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="Price Cache Service",
    description=(
        "股票价格缓存服务，提供以下功能：\n"
        "- 📈 最新报价与历史 K 线（1d / 5d / 1mo / 3mo / 6mo / 1y / 5y / max）\n"
        "- 🌐 多数据源回退（KLSE Screener / EODHD / Yahoo Finance）\n"
        "- 🗄️ 持久化缓存（MongoDB + Redis，不可用时降级为进程内存储）\n"
        "- 🔄 批量刷新（外部定时任务触发，最旧优先轮转）\n\n"
        "**分层架构**\n"
        "```\n"
        "Staleness Policy   ← 判断缓存是否可直接返回\n"
        "Request Coalescer  ← 同一代码同一跨度只发一次上游请求\n"
        "Acquisition Layer  ← 数据源回退链 + 限流退避\n"
        "Processing Layer   ← 数据清洗、标准化\n"
        "Cache Layer        ← MongoDB / Redis / 内存\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ApiResponse.fail(error="内部服务错误", message=str(exc)).model_dump(),
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(stocks.router)
app.include_router(refresh.router)
app.include_router(cache.router)
app.include_router(providers.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Price Cache Service",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "price_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
