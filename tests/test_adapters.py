"""
数据提供商适配器单元测试

覆盖范围：
  - 限流器（滑动窗口 / 最小间隔）、重试策略与并发去重
  - Kraken / CoinMarketCap / Tatum / CoinGlass / LLM 网关 REST 适配器（httpx.MockTransport）
  - Kraken WebSocket 帧解析
  - 上游调用监控
"""

import asyncio
import json
import os
import sys
from unittest.mock import MagicMock, patch

import httpx
import pytest
import websockets

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from market_service.adapters.http import (  # noqa: E402
    InflightDeduplicator,
    RetryPolicy,
    SlidingWindowLimiter,
    with_retry,
)
from market_service.errors import ProviderError, ProviderNotConfiguredError  # noqa: E402

NO_RETRY = RetryPolicy(max_attempts=1)
FAST_RETRY = RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0, jitter=0.0)


def _json_transport(handler):
    """handler(request) -> (status, body)，同时记录收到的请求"""
    requests = []

    def _handle(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        status, body = handler(request)
        return httpx.Response(status, json=body)

    return httpx.MockTransport(_handle), requests


# ─────────────────────────────────────────────────────────
# 1. 限流 / 重试 / 去重
# ─────────────────────────────────────────────────────────

class TestSlidingWindowLimiter:
    def test_blocks_after_limit(self):
        limiter = SlidingWindowLimiter(max_requests=2, window=60.0, name="test")
        assert limiter.try_acquire()
        assert limiter.try_acquire()
        assert not limiter.try_acquire()
        stats = limiter.stats()
        assert stats["requests_in_window"] == 2
        assert stats["slots_available"] == 0

    def test_window_expiry(self):
        limiter = SlidingWindowLimiter(max_requests=1, window=0.0, name="test")
        assert limiter.try_acquire()
        assert limiter.try_acquire()


class TestRetry:
    def test_delay_growth_and_cap(self):
        policy = RetryPolicy(initial_delay=0.5, max_delay=5.0, jitter=0.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 5)] == [0.5, 1.0, 2.0, 5.0]

    def test_retries_retryable_errors(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ProviderError("test", "busy", 503)
            return "ok"

        assert asyncio.run(with_retry(flaky, FAST_RETRY)) == "ok"
        assert len(attempts) == 3

    def test_client_error_not_retried(self):
        attempts = []

        async def bad_request():
            attempts.append(1)
            raise ProviderError("test", "bad request", 400)

        with pytest.raises(ProviderError):
            asyncio.run(with_retry(bad_request, FAST_RETRY))
        assert len(attempts) == 1

    def test_gives_up_after_max_attempts(self):
        attempts = []

        async def always_down():
            attempts.append(1)
            raise ProviderError("test", "timeout")

        with pytest.raises(ProviderError):
            asyncio.run(with_retry(always_down, FAST_RETRY))
        assert len(attempts) == 3

    def test_not_configured_is_not_retryable(self):
        exc = ProviderNotConfiguredError("tatum", "TATUM_API_KEY")
        assert exc.retryable is False
        assert "TATUM_API_KEY" in exc.message


class TestInflightDeduplicator:
    def test_concurrent_calls_share_result(self):
        dedup = InflightDeduplicator()
        calls = []

        async def slow():
            calls.append(1)
            await asyncio.sleep(0.01)
            return {"value": 1}

        async def run():
            return await asyncio.gather(dedup.run("k", slow), dedup.run("k", slow))

        assert asyncio.run(run()) == [{"value": 1}, {"value": 1}]
        assert len(calls) == 1
        assert len(dedup) == 0


# ─────────────────────────────────────────────────────────
# 2. Kraken REST
# ─────────────────────────────────────────────────────────

class TestKrakenAdapter:
    def _adapter(self, transport):
        from market_service.adapters.kraken import KrakenAdapter
        adapter = KrakenAdapter(base_url="https://kraken.test", transport=transport, min_interval=0)
        adapter.retry = NO_RETRY
        return adapter

    def test_get_ohlc(self):
        def handler(request):
            assert request.url.path == "/0/public/OHLC"
            assert request.url.params["pair"] == "XXBTZUSD"
            assert request.url.params["interval"] == "60"
            return 200, {"error": [], "result": {
                "XXBTZUSD": [[1700000000, "100", "110", "90", "105", "101", "12.5", 40]],
                "last": 1700000000,
            }}

        transport, _ = _json_transport(handler)

        async def run():
            adapter = self._adapter(transport)
            try:
                return await adapter.get_ohlc("BTCUSDT", 60)
            finally:
                await adapter.aclose()

        rows = asyncio.run(run())
        assert rows == [{"time": 1700000000, "open": 100.0, "high": 110.0, "low": 90.0,
                         "close": 105.0, "volume": 12.5}]

    def test_unsupported_interval(self):
        transport, requests = _json_transport(lambda r: (200, {}))

        async def run():
            adapter = self._adapter(transport)
            await adapter.get_ohlc("BTCUSDT", 30)

        with pytest.raises(ValueError):
            asyncio.run(run())
        assert requests == []

    def test_error_envelope(self):
        transport, _ = _json_transport(lambda r: (200, {"error": ["EGeneral:Too many requests; rate limit"]}))

        async def run():
            await self._adapter(transport).get_ticker("ETHUSDT")

        with pytest.raises(ProviderError) as info:
            asyncio.run(run())
        assert info.value.status_code == 429

    def test_get_ticker(self):
        transport, _ = _json_transport(lambda r: (200, {"error": [], "result": {"XETHZUSD": {
            "c": ["2200.0", "1"], "o": "2000.0", "h": ["2250", "2300"], "l": ["1950", "1900"], "v": ["10", "5000"],
        }}}))

        async def run():
            return await self._adapter(transport).get_ticker("ETHUSDT")

        ticker = asyncio.run(run())
        assert ticker["symbol"] == "ETHUSDT"
        assert ticker["price"] == 2200.0
        assert ticker["high_24h"] == 2300.0
        assert ticker["volume_24h"] == 5000.0
        assert ticker["change_24h_pct"] == pytest.approx(10.0)

    def test_load_pairs_keeps_stale_list_on_error(self):
        responses = [
            (200, {"error": [], "result": {"XXBTZUSD": {}, "SOLUSD": {}}}),
            (503, {"error": ["EService:Unavailable"]}),
        ]
        transport, _ = _json_transport(lambda r: responses.pop(0))

        async def run():
            adapter = self._adapter(transport)
            first = await adapter.load_pairs()
            second = await adapter.load_pairs(force=True)
            return first, second

        first, second = asyncio.run(run())
        assert first == ["SOLUSD", "XXBTZUSD"]
        assert second == first


# ─────────────────────────────────────────────────────────
# 3. CoinMarketCap / Tatum
# ─────────────────────────────────────────────────────────

class TestCoinMarketCapAdapter:
    def _adapter(self, transport, api_key="cmc-key"):
        from market_service.adapters.coinmarketcap import CoinMarketCapAdapter
        adapter = CoinMarketCapAdapter(api_key=api_key, base_url="https://cmc.test", transport=transport, min_interval=0)
        adapter.retry = NO_RETRY
        return adapter

    def test_quotes_latest(self):
        def handler(request):
            assert request.headers["X-CMC_PRO_API_KEY"] == "cmc-key"
            assert request.url.params["symbol"] == "BTC,ETH"
            return 200, {"data": {
                "BTC": [{"symbol": "BTC", "name": "Bitcoin"}, {"symbol": "BTC", "name": "Other"}],
                "ETH": {"symbol": "ETH", "name": "Ethereum"},
            }}

        transport, _ = _json_transport(handler)
        result = asyncio.run(self._adapter(transport).quotes_latest(["ETHUSDT", "BTCUSDT", "BTC"]))
        assert result["BTC"]["name"] == "Bitcoin"
        assert result["ETH"]["name"] == "Ethereum"

    def test_fear_greed_defaults(self):
        transport, _ = _json_transport(lambda r: (200, {"data": {}}))
        result = asyncio.run(self._adapter(transport).fear_greed_latest())
        assert result["value"] == 50
        assert result["value_classification"] == "Neutral"

    def test_fear_greed_zero_is_kept(self):
        transport, _ = _json_transport(lambda r: (200, {"data": {"value": 0, "value_classification": "Extreme fear"}}))
        result = asyncio.run(self._adapter(transport).fear_greed_latest())
        assert result["value"] == 0
        assert result["value_classification"] == "Extreme fear"

    def test_ohlcv_historical(self):
        transport, _ = _json_transport(lambda r: (200, {"data": {"quotes": [
            {"time_open": "2024-01-01T00:00:00.000Z",
             "quote": {"USD": {"open": 1, "high": 2, "low": 0.5, "close": 1.5, "volume": 10}}},
        ]}}))
        rows = asyncio.run(self._adapter(transport).ohlcv_historical("BTCUSDT"))
        assert rows[0]["time"] == "2024-01-01T00:00:00.000Z"
        assert rows[0]["close"] == 1.5

    def test_missing_key(self):
        transport, requests = _json_transport(lambda r: (200, {}))
        with pytest.raises(ProviderNotConfiguredError):
            asyncio.run(self._adapter(transport, api_key="").global_metrics())
        assert requests == []


class TestTatumAdapter:
    def _adapter(self, transport):
        from market_service.adapters.tatum import TatumAdapter
        adapter = TatumAdapter(api_key="tatum-key", base_url="https://tatum.test", transport=transport)
        adapter.retry = NO_RETRY
        return adapter

    def test_get_rate(self):
        def handler(request):
            assert request.headers["x-api-key"] == "tatum-key"
            assert request.url.params["symbol"] == "SOL"
            return 200, {"value": "150.25", "basePair": "USD", "timestamp": 1700000000000}

        transport, _ = _json_transport(handler)
        rate = asyncio.run(self._adapter(transport).get_rate("SOLUSDT"))
        assert rate["price"] == 150.25
        assert rate["source"] == "tatum"

    def test_missing_value(self):
        transport, _ = _json_transport(lambda r: (200, {"basePair": "USD"}))
        with pytest.raises(ProviderError):
            asyncio.run(self._adapter(transport).get_rate("SOL"))

    def test_server_error(self):
        transport, _ = _json_transport(lambda r: (500, {"message": "boom"}))
        with pytest.raises(ProviderError) as info:
            asyncio.run(self._adapter(transport).get_rate("SOL"))
        assert info.value.status_code == 500


# ─────────────────────────────────────────────────────────
# 4. CoinGlass
# ─────────────────────────────────────────────────────────

class TestCoinGlassAdapter:
    def _adapter(self, transport):
        from market_service.adapters.coinglass import CoinGlassAdapter
        adapter = CoinGlassAdapter(
            api_key="cg-key",
            base_url="https://cg.test",
            transport=transport,
            window_limiter=SlidingWindowLimiter(max_requests=10, window=60.0, name="test"),
            min_interval=0,
        )
        adapter.retry = NO_RETRY
        return adapter

    def test_funding_rate_history_params(self):
        def handler(request):
            assert request.headers["CG-API-KEY"] == "cg-key"
            assert request.url.path == "/api/futures/funding-rate/history"
            assert request.url.params["symbol"] == "BTCUSDT"
            assert request.url.params["exchange"] == "Binance"
            return 200, {"code": "0", "data": []}

        transport, _ = _json_transport(handler)
        assert asyncio.run(self._adapter(transport).funding_rate_history("BTC")) == {"code": "0", "data": []}

    def test_taker_volume_uses_base_symbol(self):
        def handler(request):
            assert request.url.params["symbol"] == "ETH"
            assert request.url.params["range"] == "4h"
            return 200, {"code": "0", "data": {}}

        transport, requests = _json_transport(handler)
        asyncio.run(self._adapter(transport).taker_volume("ETHUSDT", "4h"))
        assert len(requests) == 1

    def test_funding_rate_exchange_list_uses_base_symbol(self):
        def handler(request):
            assert request.url.path == "/api/futures/funding-rate/exchange-list"
            assert request.url.params["symbol"] == "SOL"
            return 200, {"code": "0", "data": []}

        transport, requests = _json_transport(handler)
        asyncio.run(self._adapter(transport).funding_rate_exchange_list("SOLUSDT"))
        assert len(requests) == 1

    def test_limiter_stats(self):
        transport, _ = _json_transport(lambda r: (200, {"code": "0", "data": []}))
        adapter = self._adapter(transport)
        asyncio.run(adapter.supported_coins())
        stats = adapter.limiter_stats()
        assert stats[0]["limiter"] == "SlidingWindowLimiter"
        assert stats[0]["requests_in_window"] == 1
        assert stats[1]["min_interval"] == 0


# ─────────────────────────────────────────────────────────
# 5. LLM 网关
# ─────────────────────────────────────────────────────────

class TestLLMGatewayAdapter:
    def _adapter(self, transport):
        from market_service.adapters.llm import LLMGatewayAdapter
        adapter = LLMGatewayAdapter(api_key="llm-key", base_url="https://llm.test/v1",
                                    model="test-model", transport=transport)
        adapter.retry = NO_RETRY
        return adapter

    def test_chat_completion(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer llm-key"
            body = json.loads(request.content)
            assert body["model"] == "test-model"
            assert body["max_tokens"] == 10
            assert "tools" not in body
            return 200, {"choices": [{"message": {"content": "hello"}}]}

        transport, _ = _json_transport(handler)
        adapter = self._adapter(transport)
        data = asyncio.run(adapter.chat_completion([{"role": "user", "content": "hi"}], max_tokens=10))
        assert adapter.message_of(data)["content"] == "hello"

    def test_missing_choices(self):
        transport, _ = _json_transport(lambda r: (200, {"id": "x"}))
        with pytest.raises(ProviderError):
            asyncio.run(self._adapter(transport).chat_completion([{"role": "user", "content": "hi"}]))

    def test_ping(self):
        transport, _ = _json_transport(lambda r: (502, {"error": "bad gateway"}))
        assert asyncio.run(self._adapter(transport).ping()) is False


# ─────────────────────────────────────────────────────────
# 6. Kraken WebSocket 帧解析
# ─────────────────────────────────────────────────────────

class TestKrakenStreamParsing:
    def test_parse_ohlc_frame(self):
        from market_service.adapters.kraken_ws import KrakenStreamAdapter
        frame = [42, ["1700000100.1", "1700000160.0", "100", "110", "90", "105", "102", "12.5", 10],
                 "ohlc-1", "XBT/USD"]
        candle = KrakenStreamAdapter.parse_message(json.dumps(frame))
        assert candle["time"] == 1700000100
        assert candle["close"] == 105.0
        assert candle["volume"] == 12.5
        assert candle["pair"] == "XBT/USD"

    def test_parse_five_minute_frame(self):
        from market_service.adapters.kraken_ws import KrakenStreamAdapter
        frame = [42, ["1", "1700000400", "1", "1", "1", "1", "1", "1", 1], "ohlc-5", "ETH/USD"]
        assert KrakenStreamAdapter.parse_message(frame)["time"] == 1700000100

    def test_ignores_events(self):
        from market_service.adapters.kraken_ws import KrakenStreamAdapter
        assert KrakenStreamAdapter.parse_message({"event": "heartbeat"}) is None
        assert KrakenStreamAdapter.parse_message("not json") is None
        assert KrakenStreamAdapter.parse_message([1, [], "trade", "XBT/USD"]) is None

    def test_subscribe_message(self):
        from market_service.adapters.kraken_ws import KrakenStreamAdapter
        msg = KrakenStreamAdapter.subscribe_message("XBT/USD", 15)
        assert msg == {"event": "subscribe", "pair": ["XBT/USD"], "subscription": {"name": "ohlc", "interval": 15}}

    def test_handshake_and_timeout_errors_reconnect_then_fail(self):
        from market_service.adapters.kraken_ws import KrakenStreamAdapter
        connect = MagicMock(side_effect=[
            websockets.InvalidHandshake("HTTP 403"),
            asyncio.TimeoutError(),
        ])

        async def run():
            async for _ in KrakenStreamAdapter(url="wss://kraken.test", max_reconnects=1).stream_ohlc("BTCUSDT"):
                pass

        with patch("market_service.adapters.kraken_ws.websockets.connect", connect), \
             patch("market_service.adapters.kraken_ws.RECONNECT_DELAY", 0):
            with pytest.raises(ProviderError) as info:
                asyncio.run(run())
        assert connect.call_count == 2
        assert "XBT/USD" in info.value.message


# ─────────────────────────────────────────────────────────
# 7. 上游调用监控
# ─────────────────────────────────────────────────────────

class TestMonitoringService:
    def setup_method(self):
        from market_service.services.monitoring import MonitoringService
        self.monitor = MonitoringService()

    def _call(self, endpoint, ok=True):
        async def fn():
            if not ok:
                raise ProviderError("coinglass", "boom", 500)
            return "done"

        return asyncio.run(self.monitor.monitored_call(endpoint, "BTCUSDT", fn))

    def test_no_data(self):
        assert self.monitor.endpoint_health("x") is None
        assert self.monitor.is_healthy("x")
        assert self.monitor.health_report() == "No API health data available"

    def test_success_rate(self):
        for _ in range(3):
            self._call("funding")
        with pytest.raises(ProviderError):
            self._call("funding", ok=False)
        health = self.monitor.endpoint_health("funding")
        assert health["total_calls"] == 4
        assert health["error_count"] == 1
        assert health["success_rate"] == 75.0
        assert "boom" in health["last_error"]
        assert self.monitor.is_healthy("funding")
        assert not self.monitor.is_healthy("funding", min_success_rate=80)
        report = self.monitor.health_report()
        assert "funding: 75.0% success (3/4)" in report

    def test_bounded_history(self):
        from market_service.services.monitoring import MonitoringService
        monitor = MonitoringService(max_calls=5)
        self.monitor = monitor
        for _ in range(8):
            self._call("oi")
        assert monitor.endpoint_health("oi")["total_calls"] == 5

    def test_metrics(self):
        self.monitor.track_metric("cache_hit")
        self.monitor.track_metric("cache_hit", 2)
        self.monitor.track_metric("fallback", context={"symbol": "BTC"})
        assert self.monitor.get_metric("cache_hit") == 3
        assert self.monitor.get_metric("fallback", {"symbol": "BTC"}) == 1
        assert len(self.monitor.get_all_metrics()) == 2
        self.monitor.reset()
        assert self.monitor.get_all_metrics() == {}
