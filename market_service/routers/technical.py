"""
技术分析路由
GET /api/technical/{symbol}             - 技术指标与市场结构
GET /api/technical/{symbol}/confluence  - 多因子共振信号
GET /api/technical/{symbol}/signal      - 1H + 15M 多周期交易信号
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from market_service.layers.processing import TIMEFRAME_MINUTES
from market_service.models.response import ApiResponse
from market_service.routers.auth import get_current_user
from market_service.services.technical_service import SUPPORTED_INDICATORS, get_technical_service

router = APIRouter(prefix="/api/technical", tags=["技术分析"])


def _check_timeframe(timeframe: str) -> None:
    if timeframe not in TIMEFRAME_MINUTES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"不支持的周期: {timeframe}，支持: {list(TIMEFRAME_MINUTES)}",
        )


@router.get("/{symbol}", response_model=ApiResponse)
async def get_technical_indicators(
    symbol: str,
    timeframe: str = Query(default="1h"),
    limit: int = Query(default=300, ge=50, le=720),
    indicators: Optional[str] = Query(
        default=None,
        description=f"逗号分隔的指标列表，支持: {', '.join(SUPPORTED_INDICATORS)}，不填则计算常用指标",
    ),
    current_user: dict = Depends(get_current_user),
):
    """
    获取技术分析指标

    - `indicators` 示例: `ema,macd,rsi`
    """
    _check_timeframe(timeframe)

    indicator_list: Optional[List[str]] = None
    if indicators:
        indicator_list = [i.strip().lower() for i in indicators.split(",") if i.strip()]
        unknown = [i for i in indicator_list if i not in SUPPORTED_INDICATORS]
        if unknown:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"不支持的指标: {unknown}，支持的指标: {SUPPORTED_INDICATORS}",
            )

    result = await get_technical_service().get_indicators(
        symbol, timeframe=timeframe, limit=limit, indicators=indicator_list
    )
    if result.get("unavailable"):
        return ApiResponse.ok(data=result, message="K 线数据暂不可用")
    return ApiResponse.ok(data=result)


@router.get("/{symbol}/confluence", response_model=ApiResponse)
async def get_confluence(
    symbol: str,
    timeframe: str = Query(default="1h"),
    current_user: dict = Depends(get_current_user),
):
    _check_timeframe(timeframe)
    result = await get_technical_service().get_confluence(symbol, timeframe=timeframe)
    if result["insufficient_data"]:
        return ApiResponse.ok(data=result, message="K 线不足 50 根，无法计算共振信号")
    return ApiResponse.ok(data=result)


@router.get("/{symbol}/signal", response_model=ApiResponse)
async def get_trade_signal(symbol: str, current_user: dict = Depends(get_current_user)):
    return ApiResponse.ok(data=await get_technical_service().get_trade_signal(symbol))
