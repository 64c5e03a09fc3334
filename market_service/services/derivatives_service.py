"""
衍生品数据服务
CoinGlass 资金费率 / 持仓 / 爆仓 / 多空比 / 主动买卖 / 期现基差，以及 CMC 恐惧贪婪指数。

每个接口的处理流程：
  校验交易对 → 套餐支持检查 → 缓存 → 监控调用 CoinGlass → 校验响应 → 转换 → 按类型 TTL 写缓存
上游失败时返回旧缓存（≤ STALE_CACHE_MAX_AGE 秒）或 unavailable 结构。
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from market_service.adapters.coinglass import CoinGlassAdapter, get_coinglass_adapter
from market_service.adapters.coinmarketcap import CoinMarketCapAdapter, get_cmc_adapter
from market_service.config import settings
from market_service.errors import MarketServiceError, ResponseValidationError
from market_service.layers.cache import CacheLayer, get_cache_layer
from market_service.layers.signals import (
    basis_signal,
    basis_structure,
    funding_list_sentiment,
    funding_sentiment,
    funding_to_coinglass_sentiment,
    long_short_sentiment,
    taker_buy_ratio,
    taker_sentiment,
)
from market_service.layers.validation import (
    ValidationResult,
    log_validation_result,
    unavailable_payload,
    validate_array_data,
    validate_coinglass_response,
    validate_liquidation_data,
    validate_ohlc_data,
)
from market_service.services.monitoring import get_monitoring_service
from market_service.symbols import base_symbol, is_endpoint_supported, normalize_symbol

logger = logging.getLogger(__name__)

MAJOR_LIQUIDATION_USD = 10_000_000


def _now_ms() -> int:
    return int(time.time() * 1000)


def _num(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def format_usd(value: float) -> str:
    """1234567890 → $1.23B"""
    sign = "-" if value < 0 else ""
    value = abs(value)
    for threshold, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M"), (1e3, "K")):
        if value >= threshold:
            return f"{sign}${value / threshold:.2f}{suffix}"
    return f"{sign}${value:.2f}"


class DerivativesService:
    """衍生品数据服务"""

    def __init__(
        self,
        coinglass: Optional[CoinGlassAdapter] = None,
        cmc: Optional[CoinMarketCapAdapter] = None,
        cache: Optional[CacheLayer] = None,
    ):
        self._cg = coinglass or get_coinglass_adapter()
        self._cmc = cmc or get_cmc_adapter()
        self._cache = cache or get_cache_layer()
        self._monitor = get_monitoring_service()

    # ── 公共流程 ──────────────────────────────────────────

    async def _coinglass_metric(
        self,
        endpoint: str,
        symbol: str,
        ttl: int,
        call: Callable[[], Awaitable[Any]],
        data_validator: Optional[Callable[[Any], List[str]]],
        transform: Callable[[ValidationResult], Dict[str, Any]],
        fallback: Callable[[str, List[str], List[str]], Dict[str, Any]],
        cache_parts: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        CoinGlass 接口的统一处理流程

        fallback(message, errors, warnings) 生成该接口的 unavailable 结构。
        """
        supported, reason = is_endpoint_supported(symbol, endpoint)
        if not supported:
            logger.info(f"🚫 {symbol} 不支持 {endpoint}: {reason}")
            self._monitor.track_metric("coinglass_blocked", 1, {"endpoint": endpoint})
            return fallback(reason, [], ["Symbol not supported by this endpoint"])

        async def fetch() -> Dict[str, Any]:
            response = await self._monitor.monitored_call(endpoint, symbol, call)
            result = validate_coinglass_response(response, data_validator)
            log_validation_result(endpoint, symbol, result)
            if not result.is_valid:
                raise ResponseValidationError("coinglass", result.errors, result.warnings)
            return {**transform(result), "timestamp": _now_ms()}

        def on_failure(exc: MarketServiceError) -> Dict[str, Any]:
            self._monitor.track_metric("coinglass_fallback", 1, {"endpoint": endpoint})
            errors = getattr(exc, "errors", None) or [exc.message]
            warnings = getattr(exc, "warnings", None) or []
            return fallback(f"{endpoint} data temporarily unavailable", errors, warnings)

        return await self._cache.get_or_fetch(
            "coinglass", endpoint, symbol, *(cache_parts or []),
            ttl=ttl,
            fetch=fetch,
            fallback=on_failure,
        )

    # ── 资金费率 ──────────────────────────────────────────

    async def get_funding_rate(self, symbol: str, interval: str = "1h") -> Dict[str, Any]:
        """资金费率 OHLC 历史（最近 24 条）与当前费率情绪"""
        symbol = normalize_symbol(symbol)

        def transform(result: ValidationResult) -> Dict[str, Any]:
            history = result.data[-24:]
            rate = _num(history[-1].get("close"))
            next_funding = datetime.now(tz=timezone.utc) + timedelta(hours=8)
            return {
                "symbol": symbol,
                "interval": interval,
                "current": {
                    "rate": f"{rate * 100:.4f}%",
                    "rate_value": rate,
                    "sentiment": funding_sentiment(rate),
                    "next_funding": next_funding.isoformat(),
                },
                "history": history,
            }

        return await self._coinglass_metric(
            "funding_rate", symbol,
            ttl=settings.FUNDING_RATE_CACHE_TTL,
            call=lambda: self._cg.funding_rate_history(symbol, interval=interval),
            data_validator=lambda d: validate_array_data(d, 1) or validate_ohlc_data(d),
            transform=transform,
            fallback=lambda msg, errors, warnings: unavailable_payload(
                "funding_rate", symbol, errors, warnings, message=msg
            ),
            cache_parts=[interval],
        )

    async def get_current_funding(self, symbol: str, exchange: str = "Binance") -> Dict[str, Any]:
        """指定交易所的当前资金费率，找不到时取第一条"""
        symbol = normalize_symbol(symbol)

        def transform(result: ValidationResult) -> Dict[str, Any]:
            items = result.data
            wanted = exchange.lower()
            item = next(
                (
                    i for i in items
                    if wanted in str(i.get("exchange") or i.get("exchange_name") or i.get("symbol") or "").lower()
                ),
                items[0],
            )
            rate = _num(item.get("funding_rate", item.get("rate")))
            return {
                "symbol": symbol,
                "exchange": item.get("exchange") or item.get("exchange_name") or item.get("symbol"),
                "rate": rate,
                "sentiment": funding_sentiment(rate),
                "next_funding_time": item.get("next_funding_time"),
                "exchanges": items,
            }

        return await self._coinglass_metric(
            "current_funding", symbol,
            ttl=settings.CURRENT_FUNDING_CACHE_TTL,
            call=lambda: self._cg.current_funding_rate(symbol),
            data_validator=lambda d: validate_array_data(d, 1),
            transform=transform,
            fallback=lambda msg, errors, warnings: {
                **unavailable_payload("current_funding", symbol, errors, warnings, message=msg),
                "exchange": exchange,
                "rate": None,
                "sentiment": "UNAVAILABLE",
                "exchanges": [],
            },
            cache_parts=[exchange.lower()],
        )

    async def get_funding_rate_list(self, symbol: str) -> Dict[str, Any]:
        """各交易所资金费率列表、平均费率（百分比）与情绪"""
        symbol = normalize_symbol(symbol)
        base = base_symbol(symbol)

        def transform(result: ValidationResult) -> Dict[str, Any]:
            entries = result.data
            entry = next((e for e in entries if str(e.get("symbol", "")).upper() == base), entries[0])
            # 新版接口按币种分组，旧版直接返回交易所列表
            if "stablecoin_margin_list" in entry:
                exchanges = entry.get("stablecoin_margin_list") or []
            else:
                exchanges = entries
            rates = [_num(ex.get("funding_rate", ex.get("rate"))) for ex in exchanges]
            avg_rate = sum(rates) / len(rates) if rates else 0.0
            return {
                "symbol": symbol,
                "exchanges": exchanges,
                "avg_rate": avg_rate,
                "sentiment": funding_list_sentiment(avg_rate if rates else None),
            }

        return await self._coinglass_metric(
            "funding_rate_list", symbol,
            ttl=settings.FUNDING_RATE_LIST_CACHE_TTL,
            call=lambda: self._cg.funding_rate_exchange_list(symbol),
            data_validator=lambda d: validate_array_data(d, 1),
            transform=transform,
            fallback=lambda msg, errors, warnings: {
                **unavailable_payload("funding_rate_list", symbol, errors, warnings, message=msg),
                "exchanges": [],
                "avg_rate": 0,
                "sentiment": "NEUTRAL",
            },
        )

    # ── 持仓 / 爆仓 / 多空比 ──────────────────────────────

    async def get_open_interest(self, symbol: str, interval: str = "1h") -> Dict[str, Any]:
        symbol = normalize_symbol(symbol)

        def transform(result: ValidationResult) -> Dict[str, Any]:
            history = result.data[-24:]
            latest = _num(history[-1].get("close"))
            first = _num(history[0].get("open", history[0].get("close")))
            change = (latest - first) / first * 100 if first else 0.0
            return {
                "symbol": symbol,
                "interval": interval,
                "total": {
                    "value": format_usd(latest),
                    "value_raw": latest,
                    "change_24h": f"{change:+.2f}%",
                    "sentiment": "RISING" if change > 1 else "FALLING" if change < -1 else "STABLE",
                },
                "history": history,
                "by_exchange": [],
            }

        return await self._coinglass_metric(
            "open_interest", symbol,
            ttl=settings.DERIVATIVES_CACHE_TTL,
            call=lambda: self._cg.open_interest_history(symbol, interval=interval),
            data_validator=lambda d: validate_array_data(d, 1) or validate_ohlc_data(d),
            transform=transform,
            fallback=lambda msg, errors, warnings: unavailable_payload(
                "open_interest", symbol, errors, warnings, message=msg
            ),
            cache_parts=[interval],
        )

    async def get_liquidations(self, symbol: str, interval: str = "1h") -> Dict[str, Any]:
        symbol = normalize_symbol(symbol)

        def transform(result: ValidationResult) -> Dict[str, Any]:
            history = result.data[-24:]
            total_longs = total_shorts = 0.0
            major_events: List[Dict[str, Any]] = []
            for item in history:
                longs = _num(item.get("long_liquidation_usd", item.get("longLiquidation")))
                shorts = _num(item.get("short_liquidation_usd", item.get("shortLiquidation")))
                total_longs += longs
                total_shorts += shorts
                if longs + shorts >= MAJOR_LIQUIDATION_USD:
                    major_events.append({
                        "time": item.get("time"),
                        "side": "LONG" if longs >= shorts else "SHORT",
                        "amount": format_usd(longs + shorts),
                    })
            ratio = total_longs / total_shorts if total_shorts else None
            return {
                "symbol": symbol,
                "last_24h": {
                    "total_longs": format_usd(total_longs),
                    "total_shorts": format_usd(total_shorts),
                    "total": format_usd(total_longs + total_shorts),
                    "long_short_ratio": round(ratio, 2) if ratio is not None else "N/A",
                    "major_events": major_events,
                },
                "history": history,
            }

        return await self._coinglass_metric(
            "liquidations", symbol,
            ttl=settings.DERIVATIVES_CACHE_TTL,
            call=lambda: self._cg.liquidation_history(symbol, interval=interval),
            data_validator=lambda d: validate_array_data(d, 1) or validate_liquidation_data(d),
            transform=transform,
            fallback=lambda msg, errors, warnings: unavailable_payload(
                "liquidations", symbol, errors, warnings, message=msg
            ),
            cache_parts=[interval],
        )

    async def get_long_short_ratio(self, symbol: str, interval: str = "1h") -> Dict[str, Any]:
        symbol = normalize_symbol(symbol)

        def transform(result: ValidationResult) -> Dict[str, Any]:
            history = result.data[-24:]
            latest = history[-1]
            long_pct = _num(latest.get("global_account_long_percent", latest.get("long_percent")), 50.0)
            short_pct = _num(latest.get("global_account_short_percent", latest.get("short_percent")), 100 - long_pct)
            ratio = _num(
                latest.get("global_account_long_short_ratio", latest.get("long_short_ratio")),
                long_pct / short_pct if short_pct else 0.0,
            )
            return {
                "symbol": symbol,
                "interval": interval,
                "long_percent": long_pct,
                "short_percent": short_pct,
                "ratio": ratio,
                "sentiment": long_short_sentiment(long_pct),
                "history": history,
            }

        return await self._coinglass_metric(
            "long_short_ratio", symbol,
            ttl=settings.DERIVATIVES_CACHE_TTL,
            call=lambda: self._cg.long_short_ratio(symbol, interval=interval),
            data_validator=lambda d: validate_array_data(d, 1),
            transform=transform,
            fallback=lambda msg, errors, warnings: {
                **unavailable_payload("long_short_ratio", symbol, errors, warnings, message=msg),
                "long_percent": None,
                "short_percent": None,
                "ratio": None,
                "sentiment": "UNAVAILABLE",
                "history": [],
            },
            cache_parts=[interval],
        )

    # ── 主动买卖 / 基差 ───────────────────────────────────

    async def get_taker_volume(self, symbol: str, range_: str = "1h") -> Dict[str, Any]:
        symbol = normalize_symbol(symbol)

        def transform(result: ValidationResult) -> Dict[str, Any]:
            data = result.data
            exchanges = data.get("exchange_list", []) if isinstance(data, dict) else data
            buy_ratio = taker_buy_ratio(exchanges)
            return {
                "symbol": symbol,
                "exchanges": exchanges,
                "buy_ratio": round(buy_ratio, 2),
                "sell_ratio": round(100 - buy_ratio, 2),
                "sentiment": taker_sentiment(buy_ratio),
            }

        return await self._coinglass_metric(
            "taker_volume", symbol,
            ttl=settings.DERIVATIVES_CACHE_TTL,
            call=lambda: self._cg.taker_volume(symbol, range_=range_),
            data_validator=None,
            transform=transform,
            fallback=lambda msg, errors, warnings: {
                **unavailable_payload("taker_volume", symbol, errors, warnings, message=msg),
                "exchanges": [],
                "buy_ratio": None,
                "sell_ratio": None,
                "sentiment": "UNAVAILABLE",
            },
            cache_parts=[range_],
        )

    async def get_futures_basis(self, symbol: str, interval: str = "4h") -> Dict[str, Any]:
        """期现基差；当前套餐仅 BTC / ETH 可用，其余返回 blocked 结构"""
        symbol = normalize_symbol(symbol)

        def transform(result: ValidationResult) -> Dict[str, Any]:
            history = result.data
            latest = history[-1]
            basis = _num(latest.get("close_basis", latest.get("basis")))
            pct = _num(latest.get("close_change", latest.get("basis_percent")))
            return {
                "symbol": symbol,
                "current_basis": basis,
                "basis_percent": pct,
                "structure": basis_structure(pct),
                "signal": basis_signal(pct),
                "history": history[-24:],
            }

        def fallback(msg: str, errors: List[str], warnings: List[str]) -> Dict[str, Any]:
            payload = {
                **unavailable_payload("futures_basis", symbol, errors, warnings, message=msg),
                "current_basis": None,
                "basis_percent": None,
                "structure": "N/A",
                "signal": "N/A",
                "history": [],
            }
            if "Symbol not supported by this endpoint" in warnings:
                payload.update({"blocked": True, "upgrade_required": True, "reason": msg})
            return payload

        return await self._coinglass_metric(
            "futures_basis", symbol,
            ttl=settings.FUTURES_BASIS_CACHE_TTL,
            call=lambda: self._cg.futures_basis(symbol, interval=interval),
            data_validator=lambda d: validate_array_data(d, 1),
            transform=transform,
            fallback=fallback,
            cache_parts=[interval],
        )

    # ── 恐惧贪婪指数 ──────────────────────────────────────

    async def get_fear_greed(self) -> Dict[str, Any]:
        async def fetch() -> Dict[str, Any]:
            data = await self._monitor.monitored_call(
                "fear_greed", "GLOBAL", self._cmc.fear_greed_latest
            )
            return {**data, "timestamp": data.get("timestamp") or _now_ms()}

        return await self._cache.get_or_fetch(
            "fear_greed", "latest",
            ttl=settings.FEAR_GREED_CACHE_TTL,
            fetch=fetch,
            fallback=lambda exc: {
                **unavailable_payload(
                    "fear_greed", "GLOBAL", [exc.message],
                    message="Fear & greed index temporarily unavailable",
                ),
                "value": 50,
                "value_classification": "Neutral",
                "time_until_update": None,
            },
        )

    # ── 汇总 ──────────────────────────────────────────────

    async def get_supported_coins(self) -> Dict[str, Any]:
        async def fetch() -> Dict[str, Any]:
            response = await self._cg.supported_coins()
            result = validate_coinglass_response(response, lambda d: validate_array_data(d, 1))
            log_validation_result("supported_coins", "ALL", result)
            if not result.is_valid:
                raise ResponseValidationError("coinglass", result.errors, result.warnings)
            return {"coins": result.data, "count": len(result.data)}

        return await self._cache.get_or_fetch(
            "coinglass", "supported_coins",
            ttl=settings.PAIRS_CACHE_TTL,
            fetch=fetch,
            fallback=lambda exc: {
                **unavailable_payload("supported_coins", "ALL", [exc.message]),
                "coins": [],
                "count": 0,
            },
        )

    async def funding_bias(self, symbol: str) -> str:
        """交易信号使用的资金费率情绪（bullish / bearish / neutral）"""
        data = await self.get_funding_rate(symbol)
        if data.get("unavailable"):
            return funding_to_coinglass_sentiment(None)
        return funding_to_coinglass_sentiment(data["current"]["rate_value"])


# ── 模块级别单例 ──────────────────────────────────────────
_derivatives_service: Optional[DerivativesService] = None


def get_derivatives_service() -> DerivativesService:
    global _derivatives_service
    if _derivatives_service is None:
        _derivatives_service = DerivativesService()
    return _derivatives_service
