"""
现货行情路由
GET  /api/market/price/{symbol}                  - 最新价格（Kraken → CMC → Tatum）
GET  /api/market/quotes?symbols=BTC,ETH          - CMC 批量报价
GET  /api/market/global                          - 全市场指标
GET  /api/market/candles/{symbol}                - K 线
POST /api/market/candles/{symbol}/sync           - 同步 K 线到数据库（管理员）
GET  /api/market/pairs                           - 交易对列表
GET  /api/market/price-logs/{symbol}             - 价格日志
POST /api/market/price-logs/{symbol}/populate    - 回填价格日志（管理员）
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from market_service.adapters.kraken import TIMEFRAME_TO_INTERVAL
from market_service.layers.processing import TIMEFRAME_MINUTES
from market_service.models.response import ApiResponse
from market_service.routers.auth import get_current_user, require_admin
from market_service.services.market_data_service import get_market_data_service

router = APIRouter(prefix="/api/market", tags=["现货行情"])

MAX_QUOTE_SYMBOLS = 50


def _check_timeframe(timeframe: str, allowed) -> None:
    if timeframe not in allowed:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"不支持的周期: {timeframe}，支持: {list(allowed)}",
        )


@router.get("/price/{symbol}", response_model=ApiResponse)
async def get_price(symbol: str, current_user: dict = Depends(get_current_user)):
    data = await get_market_data_service().get_price(symbol)
    return ApiResponse.from_payload(data)


@router.get("/quotes", response_model=ApiResponse)
async def get_quotes(
    symbols: str = Query(..., description="逗号分隔的币种，如 BTC,ETH,SOL"),
    current_user: dict = Depends(get_current_user),
):
    symbol_list = [s.strip() for s in symbols.split(",") if s.strip()]
    if not symbol_list:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="symbols 不能为空")
    if len(symbol_list) > MAX_QUOTE_SYMBOLS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"一次最多查询 {MAX_QUOTE_SYMBOLS} 个币种",
        )
    data = await get_market_data_service().get_quotes(symbol_list)
    return ApiResponse.from_payload(data)


@router.get("/global", response_model=ApiResponse)
async def get_global_metrics(current_user: dict = Depends(get_current_user)):
    data = await get_market_data_service().get_global_metrics()
    return ApiResponse.from_payload(data)


@router.get("/candles/{symbol}", response_model=ApiResponse)
async def get_candles(
    symbol: str,
    timeframe: str = Query(default="1h", description="1m / 5m / 15m / 30m / 1h / 4h / 1d"),
    limit: int = Query(default=200, ge=1, le=720),
    start: Optional[int] = Query(default=None, description="起始时间（Unix 秒）"),
    end: Optional[int] = Query(default=None, description="结束时间（Unix 秒）"),
    current_user: dict = Depends(get_current_user),
):
    _check_timeframe(timeframe, TIMEFRAME_MINUTES)
    data = await get_market_data_service().get_candles(
        symbol, timeframe=timeframe, limit=limit, start=start, end=end
    )
    return ApiResponse.from_payload(data)


@router.post("/candles/{symbol}/sync", response_model=ApiResponse)
async def sync_candles(
    symbol: str,
    timeframe: str = Query(default="1h"),
    admin: dict = Depends(require_admin),
):
    """从 Kraken 拉取 K 线并写入 market_candles"""
    _check_timeframe(timeframe, TIMEFRAME_TO_INTERVAL)
    data = await get_market_data_service().sync_candles(symbol, timeframe)
    return ApiResponse.ok(data=data, message=f"已同步 {data['count']} 根 K 线")


@router.get("/pairs", response_model=ApiResponse)
async def get_pairs(current_user: dict = Depends(get_current_user)):
    data = await get_market_data_service().get_pairs()
    return ApiResponse.from_payload(data)


@router.get("/price-logs/{symbol}", response_model=ApiResponse)
async def get_price_logs(
    symbol: str,
    interval: str = Query(default="1m", description="1m / 5m / 15m / 1h"),
    since: Optional[int] = Query(default=None, description="起始时间（Unix 秒）"),
    limit: int = Query(default=1000, ge=1, le=5000),
    aggregate: Optional[str] = Query(default=None, description="将日志聚合为指定周期的 K 线"),
    current_user: dict = Depends(get_current_user),
):
    _check_timeframe(interval, TIMEFRAME_MINUTES)
    if aggregate is not None:
        _check_timeframe(aggregate, TIMEFRAME_MINUTES)
    data = await get_market_data_service().get_price_logs(
        symbol, interval=interval, since=since, limit=limit, aggregate=aggregate
    )
    return ApiResponse.ok(data=data)


@router.post("/price-logs/{symbol}/populate", response_model=ApiResponse)
async def populate_price_logs(
    symbol: str,
    lookback_hours: int = Query(default=24, ge=1, le=168),
    admin: dict = Depends(require_admin),
):
    data = await get_market_data_service().populate_price_logs(symbol, lookback_hours)
    return ApiResponse.ok(data=data, message=f"写入 {data['inserted']} 条价格日志")
