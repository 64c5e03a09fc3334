"""
Kraken WebSocket（v1）K 线订阅
只解析 Kraken 公开推送的 JSON 帧：
  [channelID, [time, etime, open, high, low, close, vwap, volume, count], "ohlc-<分钟>", "XBT/USD"]
事件帧（heartbeat / systemStatus / subscriptionStatus）为 dict，解析时忽略。
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import websockets

from market_service.config import settings
from market_service.errors import ProviderError
from market_service.symbols import from_kraken, to_kraken_ws_format, translate_to_kraken

logger = logging.getLogger(__name__)

RECONNECT_DELAY = 5.0


class KrakenStreamAdapter:
    """Kraken OHLC 实时推送，断线后自动重连"""

    def __init__(self, url: Optional[str] = None, max_reconnects: int = 5):
        self.url = url or settings.KRAKEN_WS_URL
        self.max_reconnects = max_reconnects

    @staticmethod
    def subscribe_message(ws_pair: str, interval: int = 1) -> Dict[str, Any]:
        return {
            "event": "subscribe",
            "pair": [ws_pair],
            "subscription": {"name": "ohlc", "interval": interval},
        }

    @staticmethod
    def parse_message(raw: Any) -> Optional[Dict[str, Any]]:
        """OHLC 帧 → K 线字典，其它帧返回 None"""
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError:
                return None
        if not isinstance(raw, list) or len(raw) < 4:
            return None
        payload, channel, pair = raw[1], raw[2], raw[3]
        if not isinstance(channel, str) or not channel.startswith("ohlc"):
            return None
        if not isinstance(payload, list) or len(payload) < 8:
            return None
        try:
            interval = int(channel.split("-", 1)[1]) if "-" in channel else 1
            end_time = float(payload[1])
            return {
                "time": int(end_time) - interval * 60,
                "open": float(payload[2]),
                "high": float(payload[3]),
                "low": float(payload[4]),
                "close": float(payload[5]),
                "volume": float(payload[7]),
                "interval": interval,
                "pair": pair,
            }
        except (TypeError, ValueError, IndexError):
            logger.debug(f"无法解析 Kraken OHLC 帧: {raw!r}")
            return None

    async def stream_ohlc(self, symbol: str, interval: int = 1) -> AsyncIterator[Dict[str, Any]]:
        """订阅并持续产出 K 线更新，连续重连失败超过 max_reconnects 次时抛出 ProviderError"""
        ws_pair = to_kraken_ws_format(translate_to_kraken(symbol))
        reconnects = 0
        while True:
            try:
                logger.info(f"🌐 Kraken WS 连接中: {ws_pair} ohlc-{interval}")
                async with websockets.connect(
                    self.url, ping_interval=20, ping_timeout=10, close_timeout=5
                ) as ws:
                    await ws.send(json.dumps(self.subscribe_message(ws_pair, interval)))
                    reconnects = 0
                    async for message in ws:
                        candle = self.parse_message(message)
                        if candle is not None:
                            candle["symbol"] = from_kraken(translate_to_kraken(symbol))
                            yield candle
            except websockets.ConnectionClosed as exc:
                logger.warning(f"Kraken WS 连接关闭: {exc}")
            except (websockets.WebSocketException, asyncio.TimeoutError, OSError) as exc:
                logger.error(f"Kraken WS 连接失败: {exc!r}")

            reconnects += 1
            if reconnects > self.max_reconnects:
                logger.error(f"Kraken WS 重连次数超过 {self.max_reconnects}，停止订阅 {ws_pair}")
                raise ProviderError("kraken", f"WebSocket 订阅 {ws_pair} 重连 {self.max_reconnects} 次后仍失败")
            logger.info(f"Kraken WS {RECONNECT_DELAY:.0f}s 后重连（第 {reconnects} 次）")
            await asyncio.sleep(RECONNECT_DELAY)
