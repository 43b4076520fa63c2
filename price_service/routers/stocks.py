"""
股票数据路由
GET /api/stocks/{symbol}/quote     - 最新报价
GET /api/stocks/{symbol}/history   - 历史 K 线（按时间跨度）
"""

from fastapi import APIRouter, HTTPException, Query, status

from price_service.exceptions import AllProvidersExhaustedError, InvalidHorizonError
from price_service.models.response import ApiResponse
from price_service.services.stock_service import get_stock_service

router = APIRouter(prefix="/api/stocks", tags=["股票数据"])


@router.get("/{symbol}/quote", response_model=ApiResponse)
async def get_quote(symbol: str):
    """获取最新报价（所有数据源失败时返回最后一次已知报价，stale=true）"""
    try:
        quote = await get_stock_service().get_quote(symbol)
    except AllProvidersExhaustedError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return ApiResponse.ok(
        data=quote.model_dump(mode="json"),
        message=f"获取 {quote.symbol} 报价成功（来源：{quote.source}）",
    )


@router.get("/{symbol}/history", response_model=ApiResponse)
async def get_history(
    symbol: str,
    horizon: str = Query(default="1mo", description="时间跨度: 1d / 5d / 1mo / 3mo / 6mo / 1y / 5y / max"),
):
    """获取历史 K 线数据"""
    try:
        series = await get_stock_service().get_history(symbol, horizon)
    except InvalidHorizonError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except AllProvidersExhaustedError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))

    return ApiResponse.ok(
        data={
            "symbol": series.symbol,
            "horizon": series.horizon.value,
            "source": series.source,
            "stale": series.stale,
            "count": len(series.bars),
            "bars": [bar.model_dump(mode="json") for bar in series.bars],
        },
        message=f"获取 {series.symbol} 历史数据成功，共 {len(series.bars)} 条",
    )
