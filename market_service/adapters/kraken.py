"""
Kraken 公共行情适配器（无需 API Key）
  - OHLC    : /0/public/OHLC，行数组 [time, open, high, low, close, vwap, volume, count]
  - Ticker  : /0/public/Ticker
  - 交易对  : /0/public/AssetPairs，进程内缓存 24 小时，刷新失败时返回旧列表
"""

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from market_service.adapters.http import MinIntervalLimiter, ProviderClient, RetryPolicy
from market_service.config import settings
from market_service.errors import ProviderError
from market_service.symbols import from_kraken, translate_to_kraken

logger = logging.getLogger(__name__)

# 分钟数 → 周期字符串
INTERVAL_MAP: Dict[int, str] = {1: "1m", 5: "5m", 15: "15m", 60: "1h", 240: "4h", 1440: "1d"}
TIMEFRAME_TO_INTERVAL: Dict[str, int] = {v: k for k, v in INTERVAL_MAP.items()}

PAIRS_CACHE_SECONDS = 24 * 60 * 60


class KrakenAdapter(ProviderClient):
    name = "kraken"

    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        min_interval: float = 0.35,
    ):
        super().__init__(
            base_url=base_url or settings.KRAKEN_BASE_URL,
            limiters=[MinIntervalLimiter(min_interval, name="kraken")],
            retry=RetryPolicy(max_attempts=3, initial_delay=0.4, max_delay=4.0),
            transport=transport,
        )
        self._pairs: List[str] = []
        self._pairs_loaded_at = 0.0

    def _unwrap(self, data: Any) -> Dict[str, Any]:
        """Kraken 以 HTTP 200 + error 数组返回业务错误"""
        errors = data.get("error") if isinstance(data, dict) else ["invalid response"]
        if errors:
            message = "; ".join(str(e) for e in errors)
            status = 429 if "rate limit" in message.lower() else 400
            raise ProviderError(self.name, message, status)
        return data.get("result") or {}

    @staticmethod
    def _first_series(result: Dict[str, Any]) -> List[Any]:
        for key, value in result.items():
            if key != "last" and isinstance(value, list):
                return value
        return []

    async def get_ohlc(
        self, symbol: str, interval: int = 60, since: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """返回 [{time, open, high, low, close, volume}]，成交量取下标 6"""
        if interval not in INTERVAL_MAP:
            raise ValueError(f"不支持的 Kraken 周期: {interval}")
        params: Dict[str, Any] = {"pair": translate_to_kraken(symbol), "interval": interval}
        if since:
            params["since"] = since
        result = self._unwrap(await self.get_json("/0/public/OHLC", params))
        return [
            {
                "time": int(row[0]),
                "open": float(row[1]),
                "high": float(row[2]),
                "low": float(row[3]),
                "close": float(row[4]),
                "volume": float(row[6]),
            }
            for row in self._first_series(result)
        ]

    async def get_ticker(self, symbol: str) -> Dict[str, Any]:
        pair = translate_to_kraken(symbol)
        result = self._unwrap(await self.get_json("/0/public/Ticker", {"pair": pair}))
        if not result:
            raise ProviderError(self.name, f"{pair} 无行情数据", 404)
        ticker = next(iter(result.values()))
        last = float(ticker["c"][0])
        open_ = float(ticker.get("o") or last)
        return {
            "symbol": from_kraken(pair),
            "price": last,
            "open_24h": open_,
            "high_24h": float(ticker["h"][1]),
            "low_24h": float(ticker["l"][1]),
            "volume_24h": float(ticker["v"][1]),
            "change_24h_pct": (last - open_) / open_ * 100 if open_ else 0.0,
            "source": self.name,
        }

    async def load_pairs(self, force: bool = False) -> List[str]:
        """可交易的 Kraken 交易对列表（24 小时缓存）"""
        now = time.time()
        if not force and self._pairs and now - self._pairs_loaded_at < PAIRS_CACHE_SECONDS:
            return self._pairs
        try:
            result = self._unwrap(await self.get_json("/0/public/AssetPairs"))
        except ProviderError as exc:
            logger.error(f"Kraken 交易对刷新失败，返回旧列表（{len(self._pairs)} 个）: {exc.message}")
            return self._pairs
        self._pairs = sorted(result.keys())
        self._pairs_loaded_at = now
        logger.info(f"✅ 已加载 {len(self._pairs)} 个 Kraken 交易对")
        return self._pairs

    async def is_pair_supported(self, symbol: str) -> bool:
        return translate_to_kraken(symbol) in await self.load_pairs()


# ── 模块级别单例 ──────────────────────────────────────────
_kraken: Optional[KrakenAdapter] = None


def get_kraken_adapter() -> KrakenAdapter:
    global _kraken
    if _kraken is None:
        _kraken = KrakenAdapter()
    return _kraken
