"""
Tatum 现货汇率适配器
GET /v4/data/rate/symbol?symbol=BTC&basePair=USD，鉴权头 x-api-key
"""

import logging
from typing import Any, Dict, Optional

import httpx

from market_service.adapters.http import ProviderClient, RetryPolicy
from market_service.config import settings
from market_service.errors import ProviderError
from market_service.symbols import base_symbol

logger = logging.getLogger(__name__)


class TatumAdapter(ProviderClient):
    name = "tatum"
    key_setting = "TATUM_API_KEY"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url=base_url or settings.TATUM_BASE_URL,
            api_key=settings.TATUM_API_KEY if api_key is None else api_key,
            retry=RetryPolicy(max_attempts=3, initial_delay=0.5, max_delay=5.0),
            transport=transport,
        )

    def _auth_headers(self) -> Dict[str, str]:
        return {"x-api-key": self.api_key}

    async def get_rate(self, symbol: str, base_pair: str = "USD") -> Dict[str, Any]:
        """返回 {"symbol", "price", "base_pair", "timestamp", "source"}"""
        base = base_symbol(symbol)
        data = await self.get_json("/v4/data/rate/symbol", {"symbol": base, "basePair": base_pair})
        value = data.get("value") if isinstance(data, dict) else None
        try:
            price = float(value)
        except (TypeError, ValueError):
            raise ProviderError(self.name, f"{base} 汇率响应缺少 value 字段")
        return {
            "symbol": base,
            "price": price,
            "base_pair": data.get("basePair", base_pair),
            "timestamp": data.get("timestamp"),
            "source": self.name,
        }


# ── 模块级别单例 ──────────────────────────────────────────
_tatum: Optional[TatumAdapter] = None


def get_tatum_adapter() -> TatumAdapter:
    global _tatum
    if _tatum is None:
        _tatum = TatumAdapter()
    return _tatum
