"""
现货行情服务
价格（多提供商回退）、CMC 报价与全市场指标、K 线（Kraken 为主，CMC / 本地存储兜底）、
交易对列表与价格日志。所有读接口经过缓存层，上游失败时返回旧缓存或 unavailable 结构。
"""

import logging
import time
from typing import Any, Dict, List, Optional

from market_service.adapters.coinglass import CoinGlassAdapter, get_coinglass_adapter
from market_service.adapters.coinmarketcap import CoinMarketCapAdapter, get_cmc_adapter
from market_service.adapters.kraken import (
    KrakenAdapter,
    TIMEFRAME_TO_INTERVAL,
    get_kraken_adapter,
)
from market_service.adapters.tatum import TatumAdapter, get_tatum_adapter
from market_service.config import settings
from market_service.errors import (
    MarketServiceError,
    ProviderError,
    ResponseValidationError,
    UnsupportedSymbolError,
)
from market_service.layers.cache import CacheLayer, get_cache_layer
from market_service.layers.processing import TIMEFRAME_MINUTES, get_processing_layer
from market_service.layers.storage import CandleStore, get_candle_store
from market_service.layers.validation import (
    log_validation_result,
    unavailable_payload,
    validate_array_data,
    validate_cmc_quote,
    validate_coinglass_response,
    validate_ohlc_data,
)
from market_service.services.monitoring import get_monitoring_service
from market_service.symbols import base_symbol, normalize_symbol

logger = logging.getLogger(__name__)

PRICE_LOG_INTERVALS = ["1m", "5m", "15m", "1h"]

# Kraken 不提供的周期：用更小周期聚合
_AGGREGATE_SOURCE: Dict[str, str] = {"30m": "15m"}

# CMC 历史 K 线只支持小时 / 日线
_CMC_INTERVALS: Dict[str, str] = {"1h": "hourly", "1d": "daily"}


def _now_ms() -> int:
    return int(time.time() * 1000)


class MarketDataService:
    """现货行情服务"""

    def __init__(
        self,
        kraken: Optional[KrakenAdapter] = None,
        cmc: Optional[CoinMarketCapAdapter] = None,
        tatum: Optional[TatumAdapter] = None,
        coinglass: Optional[CoinGlassAdapter] = None,
        cache: Optional[CacheLayer] = None,
        store: Optional[CandleStore] = None,
    ):
        self._kraken = kraken or get_kraken_adapter()
        self._cmc = cmc or get_cmc_adapter()
        self._tatum = tatum or get_tatum_adapter()
        self._coinglass = coinglass or get_coinglass_adapter()
        self._cache = cache or get_cache_layer()
        self._store = store or get_candle_store()
        self._proc = get_processing_layer()
        self._monitor = get_monitoring_service()

    # ── 价格 ──────────────────────────────────────────────

    async def _price_from(self, provider: str, symbol: str) -> Dict[str, Any]:
        if provider == "kraken":
            ticker = await self._kraken.get_ticker(symbol)
            return {
                "price": ticker["price"],
                "change_24h_pct": ticker["change_24h_pct"],
                "volume_24h": ticker["volume_24h"],
                "high_24h": ticker["high_24h"],
                "low_24h": ticker["low_24h"],
            }
        if provider == "coinmarketcap":
            quotes = await self._cmc.quotes_latest([symbol])
            result = validate_cmc_quote(quotes.get(base_symbol(symbol)))
            log_validation_result("cmc_price", symbol, result)
            if not result.is_valid:
                raise ResponseValidationError(provider, result.errors, result.warnings)
            usd = result.data["quote"]["USD"]
            return {
                "price": usd.get("price"),
                "change_24h_pct": usd.get("percent_change_24h"),
                "volume_24h": usd.get("volume_24h"),
                "market_cap": usd.get("market_cap"),
            }
        if provider == "tatum":
            rate = await self._tatum.get_rate(symbol)
            return {"price": rate["price"]}
        raise ProviderError(provider, "未知的价格提供商")

    async def get_price(self, symbol: str) -> Dict[str, Any]:
        """按 PRICE_PROVIDER_ORDER 依次尝试，第一个成功的提供商为准"""
        symbol = normalize_symbol(symbol)

        async def fetch() -> Dict[str, Any]:
            errors: List[str] = []
            for provider in settings.PRICE_PROVIDER_ORDER:
                try:
                    data = await self._monitor.monitored_call(
                        f"price:{provider}", symbol, lambda: self._price_from(provider, symbol)
                    )
                except MarketServiceError as exc:
                    logger.warning(f"⚠️ {provider} 价格获取失败 {symbol}: {exc.message}")
                    errors.append(exc.message)
                    continue
                logger.info(f"💰 {symbol} 价格 {data['price']}（{provider}）")
                return {"symbol": symbol, **data, "source": provider, "timestamp": _now_ms()}
            raise ProviderError("price", "; ".join(errors) or "没有可用的价格提供商")

        return await self._cache.get_or_fetch(
            "price", symbol,
            ttl=settings.PRICE_CACHE_TTL,
            fetch=fetch,
            fallback=lambda exc: {
                **unavailable_payload("quote", symbol, [exc.message], message="Price data temporarily unavailable"),
                "price": None,
            },
        )

    # ── CMC 报价 / 全市场 ─────────────────────────────────

    async def get_quotes(self, symbols: List[str]) -> Dict[str, Any]:
        bases = sorted({base_symbol(normalize_symbol(s)) for s in symbols})
        key = ",".join(bases)

        async def fetch() -> Dict[str, Any]:
            raw = await self._cmc.quotes_latest(bases)
            quotes: List[Dict[str, Any]] = []
            errors: List[str] = []
            for base in bases:
                result = validate_cmc_quote(raw.get(base))
                log_validation_result("cmc_quotes", base, result)
                if not result.is_valid:
                    errors.extend(f"{base}: {e}" for e in result.errors)
                    continue
                item = result.data
                usd = item["quote"]["USD"]
                quotes.append({
                    "symbol": base,
                    "name": item.get("name"),
                    "price": usd.get("price"),
                    "market_cap": usd.get("market_cap"),
                    "volume_24h": usd.get("volume_24h"),
                    "circulating_supply": item.get("circulating_supply"),
                    "max_supply": item.get("max_supply"),
                    "percent_change_1h": usd.get("percent_change_1h"),
                    "percent_change_24h": usd.get("percent_change_24h"),
                    "percent_change_7d": usd.get("percent_change_7d"),
                    "market_cap_dominance": usd.get("market_cap_dominance"),
                    "rank": item.get("cmc_rank"),
                    "last_updated": usd.get("last_updated"),
                })
            if not quotes:
                raise ResponseValidationError("coinmarketcap", errors or ["no quotes returned"])
            return {"quotes": quotes, "count": len(quotes), "errors": errors, "timestamp": _now_ms()}

        return await self._cache.get_or_fetch(
            "cmc_quotes", key,
            ttl=settings.QUOTES_CACHE_TTL,
            fetch=lambda: self._monitor.monitored_call("cmc_quotes", key, fetch),
            fallback=lambda exc: {
                **unavailable_payload("quotes", key, [exc.message], message="Quote data temporarily unavailable"),
                "quotes": [],
                "count": 0,
            },
        )

    async def get_global_metrics(self) -> Dict[str, Any]:
        async def fetch() -> Dict[str, Any]:
            data = await self._cmc.global_metrics()
            if data.get("total_market_cap") is None:
                raise ResponseValidationError("coinmarketcap", ["Missing total_market_cap"])
            return {**data, "timestamp": _now_ms()}

        return await self._cache.get_or_fetch(
            "cmc_global", "latest",
            ttl=settings.GLOBAL_METRICS_CACHE_TTL,
            fetch=lambda: self._monitor.monitored_call("cmc_global", "GLOBAL", fetch),
            fallback=lambda exc: unavailable_payload(
                "global", "GLOBAL", [exc.message], message="Global market data temporarily unavailable"
            ),
        )

    # ── K 线 ──────────────────────────────────────────────

    async def _fetch_kraken_candles(self, symbol: str, timeframe: str) -> List[Dict[str, Any]]:
        source_tf = _AGGREGATE_SOURCE.get(timeframe, timeframe)
        rows = await self._kraken.get_ohlc(symbol, TIMEFRAME_TO_INTERVAL[source_tf])
        if source_tf == timeframe:
            return rows
        df = self._proc.aggregate_candles(self._proc.normalize_ohlcv(rows), TIMEFRAME_MINUTES[timeframe])
        return self._proc.to_records(df)

    async def _load_candles(self, symbol: str, timeframe: str) -> Dict[str, Any]:
        """Kraken → CMC 历史 → 本地存储"""
        errors: List[str] = []
        try:
            rows = await self._monitor.monitored_call(
                "kraken_candles", symbol, lambda: self._fetch_kraken_candles(symbol, timeframe)
            )
            if rows:
                return {"source": "kraken", "rows": rows}
            errors.append("kraken: empty candle list")
        except MarketServiceError as exc:
            errors.append(exc.message)

        cmc_interval = _CMC_INTERVALS.get(timeframe)
        if cmc_interval:
            try:
                rows = await self._cmc.ohlcv_historical(symbol, interval=cmc_interval)
                if rows:
                    logger.warning(f"⚠️ {symbol} {timeframe} 使用 CMC 历史 K 线兜底")
                    return {"source": "coinmarketcap", "rows": rows}
            except MarketServiceError as exc:
                errors.append(exc.message)

        rows = await self._store.get_candles(symbol, timeframe)
        if rows:
            logger.warning(f"⚠️ {symbol} {timeframe} 使用本地存储的 K 线")
            return {"source": "database", "rows": rows}

        raise ProviderError("candles", "; ".join(errors) or "no candle source available")

    async def get_candles(
        self,
        symbol: str,
        timeframe: str = "1h",
        limit: int = 200,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> Dict[str, Any]:
        """标准化 K 线（time 为 Unix 秒），limit 取最近的若干根"""
        symbol = normalize_symbol(symbol)
        if timeframe not in TIMEFRAME_MINUTES:
            raise ValueError(f"不支持的周期: {timeframe}")

        async def fetch() -> Dict[str, Any]:
            loaded = await self._load_candles(symbol, timeframe)
            candles = self._proc.to_records(self._proc.normalize_ohlcv(loaded["rows"]))
            errors = validate_array_data(candles, 1) or validate_ohlc_data(candles)
            if errors:
                raise ResponseValidationError(loaded["source"], errors)
            return {
                "symbol": symbol,
                "timeframe": timeframe,
                "source": loaded["source"],
                "candles": candles,
                "timestamp": _now_ms(),
            }

        result = await self._cache.get_or_fetch(
            "candles", symbol, timeframe,
            ttl=settings.CANDLES_CACHE_TTL,
            fetch=fetch,
            fallback=lambda exc: {
                **unavailable_payload("candles", symbol, [exc.message], message="Candle data temporarily unavailable"),
                "timeframe": timeframe,
                "candles": [],
            },
        )
        candles = result.get("candles") or []
        if candles and (start or end):
            df = self._proc.filter_time_range(self._proc.normalize_ohlcv(candles), start, end)
            candles = self._proc.to_records(df)
        candles = candles[-limit:] if limit else candles
        return {**result, "candles": candles, "count": len(candles)}

    async def sync_candles(self, symbol: str, timeframe: str = "1h") -> Dict[str, Any]:
        """从 Kraken 拉取 K 线并写入 market_candles"""
        symbol = normalize_symbol(symbol)
        interval = TIMEFRAME_TO_INTERVAL.get(timeframe)
        if interval is None:
            raise ValueError(f"不支持的周期: {timeframe}，可选: {list(TIMEFRAME_TO_INTERVAL)}")
        if not await self._kraken.is_pair_supported(symbol):
            raise UnsupportedSymbolError(symbol, "kraken", f"Symbol {symbol} not supported by Kraken")

        rows = await self._kraken.get_ohlc(symbol, interval)
        stored = await self._store.upsert_candles(symbol, timeframe, rows)
        logger.info(f"✅ {symbol} {timeframe} 同步 {len(rows)} 根 K 线，写入 {stored}")
        return {
            "symbol": symbol,
            "timeframe": timeframe,
            "count": len(rows),
            "stored": stored,
            "source": "kraken",
        }

    # ── 交易对 ────────────────────────────────────────────

    async def get_pairs(self) -> Dict[str, Any]:
        """CoinGlass 合约交易对（按交易所分组）与 Kraken 现货交易对"""

        async def fetch() -> Dict[str, Any]:
            response = await self._coinglass.supported_exchange_pairs()
            result = validate_coinglass_response(response)
            log_validation_result("exchange_pairs", "ALL", result)
            if not result.is_valid:
                raise ResponseValidationError("coinglass", result.errors, result.warnings)

            data = result.data
            pairs: List[Dict[str, Any]] = []
            if isinstance(data, dict):
                for exchange, items in data.items():
                    for item in items or []:
                        pairs.append({**item, "exchange_name": exchange})
            elif isinstance(data, list):
                pairs = [{**p, "exchange_name": p.get("exchangeName") or p.get("exchange_name")} for p in data]

            exchanges: Dict[str, Dict[str, Any]] = {}
            for pair in pairs:
                name = pair["exchange_name"]
                stats = exchanges.setdefault(name, {"name": name, "pair_count": 0, "symbols": []})
                stats["pair_count"] += 1
                stats["symbols"].append(pair.get("instrument_id") or pair.get("symbol"))

            return {
                "pairs": pairs,
                "total_pairs": len(pairs),
                "exchanges": list(exchanges.values()),
                "exchange_count": len(exchanges),
                "kraken_pairs": await self._kraken.load_pairs(),
            }

        return await self._cache.get_or_fetch(
            "pairs", "all",
            ttl=settings.PAIRS_CACHE_TTL,
            fetch=fetch,
            fallback=lambda exc: {
                **unavailable_payload("pairs", "ALL", [exc.message], message="Exchange pairs temporarily unavailable"),
                "pairs": [],
                "exchanges": [],
                "kraken_pairs": [],
            },
        )

    # ── 价格日志 ──────────────────────────────────────────

    async def populate_price_logs(self, symbol: str, lookback_hours: int = 24) -> Dict[str, Any]:
        """按 1m / 5m / 15m / 1h 拉取 Kraken K 线，以收盘价写入 price_logs"""
        symbol = normalize_symbol(symbol)
        if not await self._kraken.is_pair_supported(symbol):
            logger.info(f"⚠️ {symbol} 不被 Kraken 支持，跳过价格日志")
            return {"symbol": symbol, "status": "unsupported", "inserted": 0, "intervals": {}}

        since = int(time.time()) - lookback_hours * 3600
        intervals: Dict[str, Any] = {}
        total = 0
        for timeframe in PRICE_LOG_INTERVALS:
            try:
                rows = await self._kraken.get_ohlc(symbol, TIMEFRAME_TO_INTERVAL[timeframe], since=since)
            except ProviderError as exc:
                logger.error(f"❌ {symbol} {timeframe} 价格日志拉取失败: {exc.message}")
                intervals[timeframe] = {"status": "error", "error": exc.message}
                continue
            if not rows:
                intervals[timeframe] = {"status": "no_data", "inserted": 0}
                continue
            inserted = await self._store.insert_price_logs(symbol, timeframe, rows)
            total += inserted
            intervals[timeframe] = {"status": "success", "inserted": inserted}
        logger.info(f"✅ {symbol} 价格日志写入 {total} 条")
        return {"symbol": symbol, "status": "success", "inserted": total, "intervals": intervals}

    async def get_price_logs(
        self,
        symbol: str,
        interval: str = "1m",
        since: Optional[int] = None,
        limit: int = 1000,
        aggregate: Optional[str] = None,
    ) -> Dict[str, Any]:
        """读取价格日志；aggregate 指定周期时额外返回由日志聚合的完整 K 线"""
        symbol = normalize_symbol(symbol)
        log_minutes = TIMEFRAME_MINUTES.get(interval)
        if log_minutes is None:
            raise ValueError(f"不支持的日志间隔: {interval}")
        minutes = None
        if aggregate:
            minutes = TIMEFRAME_MINUTES.get(aggregate)
            if minutes is None:
                raise ValueError(f"不支持的聚合周期: {aggregate}")
            if minutes < log_minutes:
                raise ValueError(f"聚合周期 {aggregate} 不能小于日志间隔 {interval}")

        logs = await self._store.get_price_logs(symbol, interval, since=since, limit=limit)
        result: Dict[str, Any] = {"symbol": symbol, "interval": interval, "logs": logs, "count": len(logs)}
        if minutes is not None:
            df = self._proc.candles_from_price_logs(logs, minutes, log_minutes)
            result["candles"] = self._proc.to_records(df)
        return result


# ── 模块级别单例 ──────────────────────────────────────────
_market_data_service: Optional[MarketDataService] = None


def get_market_data_service() -> MarketDataService:
    global _market_data_service
    if _market_data_service is None:
        _market_data_service = MarketDataService()
    return _market_data_service
