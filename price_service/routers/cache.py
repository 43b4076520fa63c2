"""
缓存管理路由
GET /api/cache/stats     - 缓存统计
"""

from fastapi import APIRouter

from price_service.layers.cache import get_cache_layer
from price_service.models.response import ApiResponse

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


@router.get("/stats", response_model=ApiResponse)
async def cache_stats():
    """获取缓存统计信息（K 线行数、报价数、登记代码数、Redis 键数量）"""
    stats = await get_cache_layer().stats()
    return ApiResponse.ok(data=stats)
