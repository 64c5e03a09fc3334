"""
Layer 4 – 技术分析层
在处理层输出的标准 K 线 DataFrame 上计算技术指标：
EMA、RSI、MACD、布林带、ATR、VWAP、随机指标、一目均衡表、枢轴点与 RSI 背离等
"""

import logging
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from market_service.layers import indicators as ind

logger = logging.getLogger(__name__)


def _to_python(value: Any) -> Any:
    """numpy 标量转为原生类型，NaN 转为 None"""
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and np.isnan(value):
        return None
    return value


class AnalysisLayer:
    """技术分析层：为 K 线 DataFrame 追加指标列"""

    # ── 均线 ──────────────────────────────────────────────

    def add_ema(self, df: pd.DataFrame, periods: List[int] = None) -> pd.DataFrame:
        """添加指数移动平均线（SMA 种子）"""
        if df.empty:
            return df
        df = df.copy()
        for p in (periods or [20, 50, 200]):
            df[f"EMA{p}"] = ind.ema(df["close"], p)
        return df

    def add_momentum(self, df: pd.DataFrame, period: int = 14) -> pd.DataFrame:
        if df.empty:
            return df
        df = df.copy()
        df[f"MOMENTUM{period}"] = ind.momentum(df["close"], period)
        return df

    def add_volume_sma(self, df: pd.DataFrame, period: int = 20) -> pd.DataFrame:
        if df.empty or "volume" not in df.columns:
            return df
        df = df.copy()
        df[f"VOLUME_SMA{period}"] = ind.volume_sma(df["volume"], period)
        return df

    # ── MACD / RSI ────────────────────────────────────────

    def add_macd(
        self,
        df: pd.DataFrame,
        fast: int = 12,
        slow: int = 26,
        signal: int = 9,
    ) -> pd.DataFrame:
        """添加 MACD（MACD 线、信号线、柱状图）"""
        if df.empty:
            return df
        df = df.copy()
        result = ind.macd(df["close"], fast, slow, signal)
        df["MACD"] = result["macd"]
        df["MACD_SIGNAL"] = result["signal"]
        df["MACD_HIST"] = result["histogram"]
        return df

    def add_rsi(self, df: pd.DataFrame, periods: List[int] = None) -> pd.DataFrame:
        """添加 RSI（Wilder 平滑）"""
        if df.empty:
            return df
        df = df.copy()
        for p in (periods or [14]):
            df[f"RSI{p}"] = ind.rsi(df["close"], p)
        return df

    # ── 波动率 ────────────────────────────────────────────

    def add_bollinger(
        self, df: pd.DataFrame, period: int = 20, std_dev: float = 2.0
    ) -> pd.DataFrame:
        """添加布林带（BOLL_UPPER / BOLL_MID / BOLL_LOWER）"""
        if df.empty:
            return df
        df = df.copy()
        bands = ind.bollinger(df["close"], period, std_dev)
        df["BOLL_MID"] = bands["middle"]
        df["BOLL_UPPER"] = bands["upper"]
        df["BOLL_LOWER"] = bands["lower"]
        return df

    def add_atr(self, df: pd.DataFrame, period: int = 14) -> pd.DataFrame:
        """添加平均真实波动范围 (ATR)"""
        if df.empty or not all(c in df.columns for c in ["high", "low", "close"]):
            return df
        df = df.copy()
        df[f"ATR{period}"] = ind.atr(df, period)
        return df

    def add_stochastic(self, df: pd.DataFrame, k_period: int = 14, d_period: int = 3) -> pd.DataFrame:
        if df.empty:
            return df
        df = df.copy()
        result = ind.stochastic(df, k_period, d_period)
        df["STOCH_K"] = result["k"]
        df["STOCH_D"] = result["d"]
        return df

    def add_vwap(self, df: pd.DataFrame) -> pd.DataFrame:
        if df.empty or "volume" not in df.columns:
            return df
        df = df.copy()
        df["VWAP"] = ind.vwap(df)
        return df

    # ── 一目均衡表 / 枢轴 / 背离 ──────────────────────────

    def add_ichimoku(self, df: pd.DataFrame) -> pd.DataFrame:
        """添加一目均衡表（9 / 26 / 52 / 26）"""
        if df.empty:
            return df
        df = df.copy()
        cloud = ind.ichimoku(df["high"], df["low"], df["close"])
        df["ICHIMOKU_CONVERSION"] = cloud["conversion"]
        df["ICHIMOKU_BASE"] = cloud["base"]
        df["ICHIMOKU_SPAN_A"] = cloud["lead_span_a"]
        df["ICHIMOKU_SPAN_B"] = cloud["lead_span_b"]
        return df

    def add_pivots_and_divergence(self, df: pd.DataFrame, lookback: int = 5) -> pd.DataFrame:
        """添加枢轴高低点与 RSI 背离标记，需要先计算 RSI14"""
        if df.empty:
            return df
        if "RSI14" not in df.columns:
            df = self.add_rsi(df, [14])
        df = df.copy()
        pivots = ind.pivot_points(df["high"], df["low"], lookback)
        divergence = ind.rsi_divergence(
            df["RSI14"], df["close"], pivots["pivot_high"], pivots["pivot_low"]
        )
        df["PIVOT_HIGH"] = pivots["pivot_high"].to_numpy()
        df["PIVOT_LOW"] = pivots["pivot_low"].to_numpy()
        df["BULLISH_DIVERGENCE"] = divergence["bullish"].to_numpy()
        df["BEARISH_DIVERGENCE"] = divergence["bearish"].to_numpy()
        return df

    # ── 扩展指标 ──────────────────────────────────────────

    def add_extended(self, df: pd.DataFrame) -> pd.DataFrame:
        """CCI、ROC、OBV、CMF、ADX、抛物线 SAR、TRIX、肯特纳通道"""
        if df.empty:
            return df
        df = df.copy()
        df["CCI20"] = ind.cci(df, 20)
        df["ROC12"] = ind.roc(df["close"], 12)
        df["OBV"] = ind.obv(df)
        df["CMF21"] = ind.cmf(df, 21)
        df["ADX14"] = ind.adx(df, 14)
        df["PSAR"] = ind.parabolic_sar(df)
        trix = ind.trix(df["close"])
        df["TRIX"] = trix["trix"]
        df["TRIX_SIGNAL"] = trix["signal"]
        channel = ind.keltner(df)
        df["KELTNER_MID"] = channel["center"]
        df["KELTNER_UPPER"] = channel["upper"]
        df["KELTNER_LOWER"] = channel["lower"]
        return df

    # ── 全量指标 ──────────────────────────────────────────

    def compute_all(self, df: pd.DataFrame, extended: bool = False) -> pd.DataFrame:
        """一次性计算所有常用技术指标"""
        df = self.add_ema(df)
        df = self.add_rsi(df)
        df = self.add_macd(df)
        df = self.add_bollinger(df)
        df = self.add_atr(df)
        df = self.add_stochastic(df)
        df = self.add_vwap(df)
        df = self.add_momentum(df)
        df = self.add_volume_sma(df)
        df = self.add_ichimoku(df)
        df = self.add_pivots_and_divergence(df)
        if extended:
            df = self.add_extended(df)
        return df

    def to_indicator_summary(self, df: pd.DataFrame) -> Dict[str, Any]:
        """返回最新一行的技术指标摘要字典"""
        if df.empty:
            return {}
        last = df.iloc[-1]
        return {k: _to_python(v) for k, v in last.items()}

    def market_structure(self, df: pd.DataFrame) -> Dict[str, Any]:
        """摆动点、流动性扫单、支撑阻力与前日高低点"""
        if df.empty:
            return {"swing_points": [], "liquidity_sweeps": [], "support": [],
                    "resistance": [], "prev_high": None, "prev_low": None}
        swings = ind.swing_points(df)
        levels = ind.support_resistance(df)
        return {
            "swing_points": swings,
            "liquidity_sweeps": ind.liquidity_sweeps(df, swings),
            "support": levels["support"],
            "resistance": levels["resistance"],
            **ind.previous_day_levels(df),
        }


# ── 模块级别单例 ──────────────────────────────────────────
_analysis: Optional[AnalysisLayer] = None


def get_analysis_layer() -> AnalysisLayer:
    global _analysis
    if _analysis is None:
        _analysis = AnalysisLayer()
    return _analysis
