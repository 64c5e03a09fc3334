"""
CoinMarketCap 适配器
最新报价、历史 OHLCV、全市场指标与恐惧贪婪指数，鉴权头 X-CMC_PRO_API_KEY
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from market_service.adapters.http import MinIntervalLimiter, ProviderClient
from market_service.config import settings
from market_service.symbols import base_symbol

logger = logging.getLogger(__name__)


class CoinMarketCapAdapter(ProviderClient):
    name = "coinmarketcap"
    key_setting = "CMC_API_KEY"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        min_interval: float = 0.5,
    ):
        super().__init__(
            base_url=base_url or settings.CMC_BASE_URL,
            api_key=settings.CMC_API_KEY if api_key is None else api_key,
            limiters=[MinIntervalLimiter(min_interval, name="coinmarketcap")],
            transport=transport,
        )

    def _auth_headers(self) -> Dict[str, str]:
        return {"X-CMC_PRO_API_KEY": self.api_key}

    async def quotes_latest(self, symbols: List[str]) -> Dict[str, Any]:
        """
        批量最新报价，返回 {BASE: 报价对象}

        v2 接口中每个代码对应一个列表（同名代币），取第一个
        """
        bases = sorted({base_symbol(s) for s in symbols if s})
        data = await self.get_json("/v2/cryptocurrency/quotes/latest", {
            "symbol": ",".join(bases),
            "convert": "USD",
        })
        result: Dict[str, Any] = {}
        for base, entries in (data.get("data") or {}).items():
            if isinstance(entries, list):
                if entries:
                    result[base] = entries[0]
            elif isinstance(entries, dict):
                result[base] = entries
        return result

    async def ohlcv_historical(
        self, symbol: str, interval: str = "hourly", count: int = 200
    ) -> List[Dict[str, Any]]:
        """历史 OHLCV，返回 [{time, open, high, low, close, volume}]（time 为 ISO 字符串）"""
        base = base_symbol(symbol)
        data = await self.get_json("/v2/cryptocurrency/ohlcv/historical", {
            "symbol": base,
            "interval": interval,
            "time_period": interval,
            "count": count,
            "convert": "USD",
        })
        payload = data.get("data") or {}
        if isinstance(payload.get(base), list):
            payload = payload[base][0] if payload[base] else {}
        rows = []
        for q in payload.get("quotes", []):
            usd = (q.get("quote") or {}).get("USD") or {}
            rows.append({
                "time": q.get("time_open") or usd.get("timestamp"),
                "open": usd.get("open"),
                "high": usd.get("high"),
                "low": usd.get("low"),
                "close": usd.get("close"),
                "volume": usd.get("volume"),
            })
        return rows

    async def global_metrics(self) -> Dict[str, Any]:
        data = await self.get_json("/v1/global-metrics/quotes/latest", {"convert": "USD"})
        payload = data.get("data") or {}
        usd = (payload.get("quote") or {}).get("USD") or {}
        return {
            "total_market_cap": usd.get("total_market_cap"),
            "total_volume_24h": usd.get("total_volume_24h"),
            "btc_dominance": payload.get("btc_dominance"),
            "eth_dominance": payload.get("eth_dominance"),
            "active_exchanges": payload.get("active_exchanges"),
            "active_cryptocurrencies": payload.get("active_cryptocurrencies"),
            "total_exchanges": payload.get("total_exchanges"),
            "last_updated": usd.get("last_updated"),
        }

    async def fear_greed_latest(self) -> Dict[str, Any]:
        """恐惧贪婪指数，缺失字段按 50 / Neutral 补齐"""
        data = await self.get_json("/v3/fear-and-greed/latest")
        payload = data.get("data") or {}
        value = payload.get("value")
        return {
            "value": 50 if value is None else value,
            "value_classification": payload.get("value_classification") or "Neutral",
            "timestamp": payload.get("update_time") or payload.get("timestamp"),
            "time_until_update": payload.get("time_until_update"),
        }


# ── 模块级别单例 ──────────────────────────────────────────
_cmc: Optional[CoinMarketCapAdapter] = None


def get_cmc_adapter() -> CoinMarketCapAdapter:
    global _cmc
    if _cmc is None:
        _cmc = CoinMarketCapAdapter()
    return _cmc
