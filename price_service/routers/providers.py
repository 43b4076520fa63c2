"""
数据源路由
GET /api/providers   - 数据源列表、优先级与限流器用量
"""

from fastapi import APIRouter

from price_service.config import settings
from price_service.layers.acquisition import get_acquisition_layer
from price_service.models.response import ApiResponse

router = APIRouter(prefix="/api/providers", tags=["数据源"])


@router.get("", response_model=ApiResponse)
async def list_providers():
    """获取数据源列表及报价 / 历史回退链顺序"""
    providers = get_acquisition_layer().describe_providers()
    return ApiResponse.ok(
        data={
            "providers": providers,
            "count": len(providers),
            "quote_chain": settings.QUOTE_PROVIDER_ORDER,
            "history_chain": settings.HISTORY_PROVIDER_ORDER,
        },
    )
