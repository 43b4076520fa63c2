"""
批量刷新路由（供外部定时任务调用）
POST /api/refresh/trigger    - 触发一次批量刷新（GET 同样可用）
GET  /api/refresh/status     - 登记表刷新进度
POST /api/refresh/universe   - 登记代码池
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel, ValidationError

from price_service.config import settings
from price_service.models.response import ApiResponse
from price_service.services.refresh_service import RefreshParams, get_refresh_scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/refresh", tags=["批量刷新"])


async def verify_cron_secret(
    authorization: Optional[str] = Header(default=None),
    x_cron_secret: Optional[str] = Header(default=None),
    secret: Optional[str] = Query(default=None),
):
    """
    校验定时任务密钥

    支持 Authorization: Bearer <CRON_SECRET>、x-cron-secret 请求头或 ?secret= 参数；
    未配置密钥时仅在 DEBUG 模式下放行。
    """
    expected = settings.CRON_SECRET
    if not expected:
        if settings.DEBUG:
            return
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="CRON_SECRET 未配置")

    provided = [x_cron_secret, secret]
    if authorization and authorization.lower().startswith("bearer "):
        provided.append(authorization[7:].strip())
    if expected not in provided:
        logger.warning("⚠️ 批量刷新请求密钥校验失败")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="无效的定时任务密钥")


class UniverseRequest(BaseModel):
    symbols: List[str]


async def _run(params: RefreshParams) -> ApiResponse:
    report = await get_refresh_scheduler().trigger(params)
    return ApiResponse.ok(data=report.model_dump(), message=report.message)


@router.post("/trigger", response_model=ApiResponse, dependencies=[Depends(verify_cron_secret)])
async def trigger_refresh(params: Optional[RefreshParams] = None):
    """触发一次批量刷新；单个代码失败不影响整体结果"""
    return await _run(params or RefreshParams())


@router.get("/trigger", response_model=ApiResponse, dependencies=[Depends(verify_cron_secret)])
async def trigger_refresh_get(
    kind: str = Query(default="quote", description="quote / history"),
    batch_size: Optional[int] = Query(default=None, ge=1),
    stale_hours: Optional[float] = Query(default=None, ge=0),
    horizon: Optional[str] = Query(default=None),
    symbol: Optional[List[str]] = Query(default=None, description="指定代码，跳过自动挑选"),
    force: bool = Query(default=False),
):
    """GET 版本，便于只支持 GET 的外部定时服务调用"""
    values = {"kind": kind, "symbols": symbol, "force": force}
    if batch_size is not None:
        values["batch_size"] = batch_size
    if stale_hours is not None:
        values["stale_hours"] = stale_hours
    if horizon is not None:
        values["horizon"] = horizon
    try:
        params = RefreshParams(**values)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors(include_url=False, include_context=False))
    return await _run(params)


@router.get("/status", response_model=ApiResponse)
async def refresh_status(kind: str = Query(default="quote", pattern="^(quote|history)$")):
    """登记表刷新进度"""
    return ApiResponse.ok(data=await get_refresh_scheduler().status(kind))


@router.post("/universe", response_model=ApiResponse, dependencies=[Depends(verify_cron_secret)])
async def register_universe(body: UniverseRequest):
    """登记需要批量刷新的代码"""
    added = await get_refresh_scheduler().register_universe(body.symbols)
    return ApiResponse.ok(data={"added": added}, message=f"新增登记 {added} 个代码")
