"""
技术分析服务
整合行情服务 + 处理层 + 分析层 + 信号引擎，提供技术指标、共振信号与多周期交易信号
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from market_service.layers.analysis import AnalysisLayer, get_analysis_layer
from market_service.layers.processing import get_processing_layer
from market_service.layers.signals import confluence_signals, signal_inputs_from_frames, trade_signal
from market_service.services.derivatives_service import get_derivatives_service
from market_service.services.market_data_service import get_market_data_service

logger = logging.getLogger(__name__)


def _indicator_steps(analysis: AnalysisLayer) -> Dict[str, Callable[[pd.DataFrame], pd.DataFrame]]:
    return {
        "ema": analysis.add_ema,
        "rsi": analysis.add_rsi,
        "macd": analysis.add_macd,
        "boll": analysis.add_bollinger,
        "atr": analysis.add_atr,
        "stoch": analysis.add_stochastic,
        "vwap": analysis.add_vwap,
        "momentum": analysis.add_momentum,
        "volume_sma": analysis.add_volume_sma,
        "ichimoku": analysis.add_ichimoku,
        "pivots": analysis.add_pivots_and_divergence,
        "extended": analysis.add_extended,
    }


SUPPORTED_INDICATORS: List[str] = [
    "ema", "rsi", "macd", "boll", "atr", "stoch", "vwap",
    "momentum", "volume_sma", "ichimoku", "pivots", "extended",
]


class TechnicalService:
    """技术分析服务"""

    def __init__(self):
        self._proc = get_processing_layer()
        self._analysis = get_analysis_layer()
        self._market = get_market_data_service()
        self._derivatives = get_derivatives_service()

    async def _candle_frame(self, symbol: str, timeframe: str, limit: int) -> Dict[str, Any]:
        """返回 {"df", "meta"}，meta 为行情服务原始结果（不含 candles）"""
        result = await self._market.get_candles(symbol, timeframe=timeframe, limit=limit)
        df = self._proc.fill_missing(self._proc.normalize_ohlcv(result.get("candles") or []))
        meta = {k: v for k, v in result.items() if k != "candles"}
        return {"df": df, "meta": meta}

    async def get_indicators(
        self,
        symbol: str,
        timeframe: str = "1h",
        limit: int = 300,
        indicators: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        获取指定交易对的技术指标

        Args:
            symbol: 交易对，如 BTCUSDT
            timeframe: K 线周期
            limit: 参与计算的 K 线数量
            indicators: 指定计算的指标列表，None 表示全部常用指标（不含 extended）

        Returns:
            {
                "symbol": "...",
                "latest": { "EMA20": ..., "RSI14": ..., ... },
                "structure": { "swing_points": [...], "support": [...], ... },
                "history": [{ "time": ..., ... }, ...]
            }
        """
        loaded = await self._candle_frame(symbol, timeframe, limit)
        df, meta = loaded["df"], loaded["meta"]
        base = {
            "symbol": meta.get("symbol", symbol),
            "timeframe": timeframe,
            "source": meta.get("source"),
        }
        if df.empty:
            return {**base, "unavailable": True, "latest": {}, "structure": {}, "history": []}

        df = self._proc.add_basic_metrics(df)
        if indicators is None:
            df = self._analysis.compute_all(df)
        else:
            steps = _indicator_steps(self._analysis)
            for name in indicators:
                df = steps[name](df)

        return {
            **base,
            "latest": self._analysis.to_indicator_summary(df),
            "structure": self._analysis.market_structure(df),
            "history": self._proc.to_records(df),
        }

    async def get_confluence(self, symbol: str, timeframe: str = "1h", limit: int = 300) -> Dict[str, Any]:
        loaded = await self._candle_frame(symbol, timeframe, limit)
        df, meta = loaded["df"], loaded["meta"]
        signals = confluence_signals(df)
        result: Dict[str, Any] = {
            "symbol": meta.get("symbol", symbol),
            "timeframe": timeframe,
            "candles": len(df),
        }
        if signals is None:
            result.update({"insufficient_data": True, "signals": None})
        else:
            result.update({"insufficient_data": False, "signals": signals})
        return result

    async def get_trade_signal(self, symbol: str) -> Dict[str, Any]:
        """1H + 15M K 线与 CoinGlass 资金费率情绪生成交易信号"""
        frame_1h = await self._candle_frame(symbol, "1h", 200)
        frame_15m = await self._candle_frame(symbol, "15m", 200)
        sentiment = await self._derivatives.funding_bias(symbol)
        inputs = signal_inputs_from_frames(frame_1h["df"], frame_15m["df"], sentiment)
        signal = trade_signal(inputs)
        logger.info(f"📈 {symbol} 交易信号: {signal['signal']}（CoinGlass 情绪 {sentiment}）")
        return {
            "symbol": frame_1h["meta"].get("symbol", symbol),
            "coinglass_sentiment": sentiment,
            **signal,
        }


# ── 模块级别单例 ──────────────────────────────────────────
_technical_service: Optional[TechnicalService] = None


def get_technical_service() -> TechnicalService:
    global _technical_service
    if _technical_service is None:
        _technical_service = TechnicalService()
    return _technical_service
