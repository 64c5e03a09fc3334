"""
实时 K 线推送
WS /ws/candles/{symbol}?interval=1&token=<JWT>

连接后立即推送 snapshot（最近的 1 分钟 K 线），之后转发 Kraken 的 OHLC 更新。
"""

import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from market_service.adapters.kraken_ws import KrakenStreamAdapter
from market_service.errors import MarketServiceError
from market_service.services.auth_service import get_auth_service
from market_service.services.market_data_service import get_market_data_service
from market_service.symbols import validate_symbol

logger = logging.getLogger(__name__)

router = APIRouter(tags=["实时推送"])

SNAPSHOT_LIMIT = 120
# Kraken ohlc 订阅周期（分钟） → K 线周期
INTERVAL_TIMEFRAMES = {1: "1m", 5: "5m", 15: "15m", 30: "30m", 60: "1h", 240: "4h", 1440: "1d"}


@router.websocket("/ws/candles/{symbol}")
async def candle_stream(
    websocket: WebSocket,
    symbol: str,
    interval: int = Query(default=1),
    token: str = Query(default=""),
):
    if get_auth_service().verify_token(token) is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    valid, _ = validate_symbol(symbol)
    if interval not in INTERVAL_TIMEFRAMES or not valid:
        await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
        return

    await websocket.accept()
    logger.info(f"📡 K 线推送连接: {symbol} ohlc-{interval}")

    timeframe = INTERVAL_TIMEFRAMES[interval]
    try:
        snapshot = await get_market_data_service().get_candles(symbol, timeframe=timeframe, limit=SNAPSHOT_LIMIT)
        await websocket.send_json({"type": "snapshot", **snapshot})

        async for candle in KrakenStreamAdapter().stream_ohlc(symbol, interval):
            await websocket.send_json({"type": "candle", "candle": candle})

        await websocket.send_json({"type": "closed", "message": "上游推送已停止"})
        await websocket.close()
    except WebSocketDisconnect:
        logger.info(f"📴 客户端断开 K 线推送: {symbol}")
    except MarketServiceError as exc:
        logger.error(f"K 线推送失败 {symbol}: {exc}")
        await websocket.send_json({"type": "error", "message": str(exc)})
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
