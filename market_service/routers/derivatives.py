"""
衍生品数据路由（CoinGlass / CMC）
GET /api/derivatives/{symbol}/funding-rate
GET /api/derivatives/{symbol}/funding-rate/current
GET /api/derivatives/{symbol}/open-interest
GET /api/derivatives/{symbol}/liquidations
GET /api/derivatives/{symbol}/long-short-ratio
GET /api/derivatives/{symbol}/taker-volume
GET /api/derivatives/{symbol}/futures-basis
GET /api/derivatives/fear-greed
GET /api/derivatives/supported-coins
GET /api/derivatives/funding-rate-list?symbol=BTCUSDT
"""

from fastapi import APIRouter, Depends, Query

from market_service.models.response import ApiResponse
from market_service.routers.auth import get_current_user
from market_service.services.derivatives_service import get_derivatives_service

router = APIRouter(prefix="/api/derivatives", tags=["衍生品数据"])

_INTERVAL_PATTERN = "^(1m|5m|15m|30m|1h|4h|12h|1d|1w)$"


# 固定路径需注册在 /{symbol} 路由之前
@router.get("/fear-greed", response_model=ApiResponse)
async def get_fear_greed(current_user: dict = Depends(get_current_user)):
    """恐惧贪婪指数（缓存 1 小时）"""
    return ApiResponse.from_payload(await get_derivatives_service().get_fear_greed())


@router.get("/supported-coins", response_model=ApiResponse)
async def get_supported_coins(current_user: dict = Depends(get_current_user)):
    return ApiResponse.from_payload(await get_derivatives_service().get_supported_coins())


@router.get("/funding-rate-list", response_model=ApiResponse)
async def get_funding_rate_list(
    symbol: str = Query(..., min_length=1, max_length=20),
    current_user: dict = Depends(get_current_user),
):
    """各交易所资金费率列表（缓存 10 分钟）"""
    return ApiResponse.from_payload(await get_derivatives_service().get_funding_rate_list(symbol))


@router.get("/{symbol}/funding-rate", response_model=ApiResponse)
async def get_funding_rate(
    symbol: str,
    interval: str = Query(default="1h", pattern=_INTERVAL_PATTERN),
    current_user: dict = Depends(get_current_user),
):
    return ApiResponse.from_payload(await get_derivatives_service().get_funding_rate(symbol, interval))


@router.get("/{symbol}/funding-rate/current", response_model=ApiResponse)
async def get_current_funding(
    symbol: str,
    exchange: str = Query(default="Binance"),
    current_user: dict = Depends(get_current_user),
):
    return ApiResponse.from_payload(await get_derivatives_service().get_current_funding(symbol, exchange))


@router.get("/{symbol}/open-interest", response_model=ApiResponse)
async def get_open_interest(
    symbol: str,
    interval: str = Query(default="1h", pattern=_INTERVAL_PATTERN),
    current_user: dict = Depends(get_current_user),
):
    return ApiResponse.from_payload(await get_derivatives_service().get_open_interest(symbol, interval))


@router.get("/{symbol}/liquidations", response_model=ApiResponse)
async def get_liquidations(
    symbol: str,
    interval: str = Query(default="1h", pattern=_INTERVAL_PATTERN),
    current_user: dict = Depends(get_current_user),
):
    return ApiResponse.from_payload(await get_derivatives_service().get_liquidations(symbol, interval))


@router.get("/{symbol}/long-short-ratio", response_model=ApiResponse)
async def get_long_short_ratio(
    symbol: str,
    interval: str = Query(default="1h", pattern=_INTERVAL_PATTERN),
    current_user: dict = Depends(get_current_user),
):
    return ApiResponse.from_payload(await get_derivatives_service().get_long_short_ratio(symbol, interval))


@router.get("/{symbol}/taker-volume", response_model=ApiResponse)
async def get_taker_volume(
    symbol: str,
    range_: str = Query(default="1h", alias="range", pattern="^(5m|15m|30m|1h|4h|12h|24h)$"),
    current_user: dict = Depends(get_current_user),
):
    return ApiResponse.from_payload(await get_derivatives_service().get_taker_volume(symbol, range_))


@router.get("/{symbol}/futures-basis", response_model=ApiResponse)
async def get_futures_basis(
    symbol: str,
    interval: str = Query(default="4h", pattern=_INTERVAL_PATTERN),
    current_user: dict = Depends(get_current_user),
):
    """期现基差（当前套餐仅 BTC / ETH）"""
    return ApiResponse.from_payload(await get_derivatives_service().get_futures_basis(symbol, interval))
