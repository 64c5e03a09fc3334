"""
CoinGlass 衍生品数据适配器（API v4）
鉴权头 CG-API-KEY；所有请求共享 25 次 / 分钟的滑动窗口限流与 0.6s 最小间隔。
方法返回原始响应信封 {"code", "msg", "data"}，由服务层校验。
"""

import logging
from typing import Any, Dict, Optional

import httpx

from market_service.adapters.http import (
    MinIntervalLimiter,
    ProviderClient,
    RetryPolicy,
    SlidingWindowLimiter,
)
from market_service.config import settings
from market_service.symbols import base_symbol, format_for_coinglass

logger = logging.getLogger(__name__)

DEFAULT_EXCHANGE = "Binance"

# 进程内共享，所有 CoinGlass 客户端实例共用同一额度
_window_limiter = SlidingWindowLimiter(
    max_requests=settings.COINGLASS_MAX_REQUESTS_PER_MINUTE, window=60.0, name="coinglass"
)


class CoinGlassAdapter(ProviderClient):
    name = "coinglass"
    key_setting = "COINGLASS_API_KEY"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        window_limiter: Optional[SlidingWindowLimiter] = None,
        min_interval: float = 0.6,
    ):
        super().__init__(
            base_url=base_url or settings.COINGLASS_BASE_URL,
            api_key=settings.COINGLASS_API_KEY if api_key is None else api_key,
            limiters=[
                window_limiter or _window_limiter,
                MinIntervalLimiter(min_interval, name="coinglass"),
            ],
            retry=RetryPolicy(max_attempts=2, initial_delay=0.5, max_delay=3.0),
            transport=transport,
        )

    def _auth_headers(self) -> Dict[str, str]:
        return {"CG-API-KEY": self.api_key}

    # ── 资金费率 ──────────────────────────────────────────

    async def funding_rate_history(
        self, symbol: str, interval: str = "1h", limit: int = 24, exchange: str = DEFAULT_EXCHANGE
    ) -> Dict[str, Any]:
        """资金费率 OHLC 历史"""
        return await self.get_json("/api/futures/funding-rate/history", {
            "exchange": exchange,
            "symbol": format_for_coinglass(symbol),
            "interval": interval,
            "limit": limit,
        })

    async def current_funding_rate(self, symbol: str) -> Dict[str, Any]:
        """各交易所当前资金费率"""
        return await self.get_json("/api/futures/funding-rate/current", {"symbol": format_for_coinglass(symbol)})

    async def funding_rate_exchange_list(self, symbol: str) -> Dict[str, Any]:
        """按币种列出各交易所的资金费率（U 本位 / 币本位）"""
        return await self.get_json("/api/futures/funding-rate/exchange-list", {"symbol": base_symbol(symbol)})

    # ── 持仓 / 爆仓 / 多空比 ──────────────────────────────

    async def open_interest_history(
        self, symbol: str, interval: str = "1h", limit: int = 24, exchange: str = DEFAULT_EXCHANGE
    ) -> Dict[str, Any]:
        return await self.get_json("/api/futures/open-interest/history", {
            "exchange": exchange,
            "symbol": format_for_coinglass(symbol),
            "interval": interval,
            "limit": limit,
        })

    async def liquidation_history(
        self, symbol: str, interval: str = "1h", limit: int = 24, exchange: str = DEFAULT_EXCHANGE
    ) -> Dict[str, Any]:
        return await self.get_json("/api/futures/liquidation/history", {
            "exchange": exchange,
            "symbol": format_for_coinglass(symbol),
            "interval": interval,
            "limit": limit,
        })

    async def long_short_ratio(
        self, symbol: str, interval: str = "1h", limit: int = 24, exchange: str = DEFAULT_EXCHANGE
    ) -> Dict[str, Any]:
        """全网多空账户比历史"""
        return await self.get_json("/api/futures/global-long-short-account-ratio/history", {
            "exchange": exchange,
            "symbol": format_for_coinglass(symbol),
            "interval": interval,
            "limit": limit,
        })

    async def taker_volume(self, symbol: str, range_: str = "1h") -> Dict[str, Any]:
        """按交易所统计的主动买卖量"""
        return await self.get_json("/api/futures/taker-buy-sell-volume/exchange-list", {
            "symbol": base_symbol(symbol),
            "range": range_,
        })

    async def futures_basis(
        self, symbol: str, interval: str = "4h", limit: int = 24, exchange: str = DEFAULT_EXCHANGE
    ) -> Dict[str, Any]:
        return await self.get_json("/api/futures/basis/history", {
            "exchange": exchange,
            "symbol": format_for_coinglass(symbol),
            "interval": interval,
            "limit": limit,
        })

    # ── 元数据 ────────────────────────────────────────────

    async def supported_coins(self) -> Dict[str, Any]:
        return await self.get_json("/api/futures/supported-coins")

    async def supported_exchange_pairs(self) -> Dict[str, Any]:
        return await self.get_json("/api/futures/supported-exchange-pairs")


# ── 模块级别单例 ──────────────────────────────────────────
_coinglass: Optional[CoinGlassAdapter] = None


def get_coinglass_adapter() -> CoinGlassAdapter:
    global _coinglass
    if _coinglass is None:
        _coinglass = CoinGlassAdapter()
    return _coinglass
