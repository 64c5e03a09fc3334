"""
信号引擎
  - 多因子共振信号（趋势 / 动量 / 结构 / 成交量 / 一目云 / MACD）
  - 1H + 15M + CoinGlass 情绪的多周期交易信号（BUY / SELL / NO TRADE）
  - 衍生品情绪分类：资金费率、主动买卖比、期现基差
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from market_service.layers import indicators as ind

logger = logging.getLogger(__name__)

MIN_CONFLUENCE_CANDLES = 50
MIN_CONFLUENCE_SCORE = 3


# ── 多因子共振 ────────────────────────────────────────────

def confluence_signals(df: pd.DataFrame) -> Optional[Dict[str, Any]]:
    """
    计算最新一根 K 线的共振信号，K 线不足 50 根时返回 None

    六个因子各为多头或空头加 1 分；买入需要触发条件（RSI 底背离、EMA20 上穿 EMA50
    或 RSI 超卖）且多头得分 ≥ 3，卖出对称。
    """
    if df is None or len(df) < MIN_CONFLUENCE_CANDLES:
        return None

    close, high, low, volume = df["close"], df["high"], df["low"], df["volume"]
    rsi = ind.rsi(close, 14)
    hist = ind.macd(close, 12, 26, 9)["histogram"]
    ema20 = ind.ema(close, 20)
    ema50 = ind.ema(close, 50)
    mom = ind.momentum(close, 14)
    vol_sma = ind.volume_sma(volume, 20)
    cloud = ind.ichimoku(high, low, close, 9, 26, 52, 26)
    pivots = ind.pivot_points(high, low, 5)
    divergence = ind.rsi_divergence(rsi, close, pivots["pivot_high"], pivots["pivot_low"])

    last = len(df) - 1
    c = close.iloc[last]
    cur_rsi = rsi.iloc[last]

    trend_bullish = bool(c > ema20.iloc[last] > ema50.iloc[last])
    momentum_bullish = bool(mom.iloc[last] > 0 and mom.iloc[last] > _or_zero(mom.iloc[last - 1]))
    # 最高价与最低价都需高于前 5 根的最高值
    structure_bullish = bool(
        high.iloc[last] > high.iloc[last - 5:last].max()
        and low.iloc[last] > low.iloc[last - 5:last].max()
    )
    volume_bullish = bool(volume.iloc[last] > vol_sma.iloc[last] and c > close.iloc[last - 1])
    ichimoku_bullish = bool(
        c > cloud["lead_span_a"].iloc[last] and c > cloud["lead_span_b"].iloc[last]
    )
    macd_bullish = bool(hist.iloc[last] > 0)

    factors = [trend_bullish, momentum_bullish, structure_bullish,
               volume_bullish, ichimoku_bullish, macd_bullish]
    bullish_score = sum(factors)
    bearish_score = len(factors) - bullish_score

    cross_up = ema20.iloc[last] > ema50.iloc[last] and ema20.iloc[last - 1] <= ema50.iloc[last - 1]
    cross_down = ema20.iloc[last] < ema50.iloc[last] and ema20.iloc[last - 1] >= ema50.iloc[last - 1]
    trend_shift = "bullish" if cross_up else "bearish" if cross_down else None

    overbought = bool(cur_rsi > 70)
    oversold = bool(cur_rsi < 30)
    bullish_div = bool(divergence["bullish"].iloc[last])
    bearish_div = bool(divergence["bearish"].iloc[last])

    buy = (bullish_div or trend_shift == "bullish" or oversold) and bullish_score >= MIN_CONFLUENCE_SCORE
    sell = (bearish_div or trend_shift == "bearish" or overbought) and bearish_score >= MIN_CONFLUENCE_SCORE

    return {
        "bullish_score": bullish_score,
        "bearish_score": bearish_score,
        "buy_signal": bool(buy),
        "sell_signal": bool(sell),
        "bullish_divergence": bullish_div,
        "bearish_divergence": bearish_div,
        "trend_shift": trend_shift,
        "overbought": overbought,
        "oversold": oversold,
        "trend_bullish": trend_bullish,
        "momentum_bullish": momentum_bullish,
        "structure_bullish": structure_bullish,
        "volume_bullish": volume_bullish,
        "ichimoku_bullish": ichimoku_bullish,
        "macd_bullish": macd_bullish,
    }


def _or_zero(value: float) -> float:
    return 0.0 if value is None or math.isnan(value) else float(value)


# ── 多周期交易信号 ────────────────────────────────────────

@dataclass
class SignalInputs:
    """多周期交易信号的输入，序列可为空"""
    price_1h: float
    price_15m: float
    current_volume: float
    ema50_1h: Sequence[float] = field(default_factory=list)
    rsi_1h: Sequence[float] = field(default_factory=list)
    ema50_15m: Sequence[float] = field(default_factory=list)
    rsi_15m: Sequence[float] = field(default_factory=list)
    volume_sma: Sequence[float] = field(default_factory=list)
    coinglass_sentiment: str = "neutral"  # bullish / bearish / neutral


def _latest(values: Sequence[float], fallback: float) -> float:
    if values is None or len(values) == 0:
        return fallback
    v = values[-1]
    if v is None or not isinstance(v, (int, float)) or math.isnan(v):
        return fallback
    return float(v)


def _signal_slope(values: Sequence[float], lookback: int = 5) -> float:
    """最近 lookback 个值的累计变化除以 lookback，数据不足 lookback + 1 个时为 0"""
    if values is None or len(values) < lookback + 1:
        return 0.0
    recent = list(values)[-lookback:]
    if any(v is None or math.isnan(v) for v in recent):
        return 0.0
    return (recent[-1] - recent[0]) / lookback


def trade_signal(inputs: SignalInputs) -> Dict[str, Any]:
    """8 个条件全部满足才给出 BUY / SELL，否则 NO TRADE 并列出未满足条件"""
    ema_1h = _latest(inputs.ema50_1h, 0.0)
    ema_15m = _latest(inputs.ema50_15m, 0.0)
    rsi_1h = _latest(inputs.rsi_1h, 50.0)
    rsi_15m = _latest(inputs.rsi_15m, 50.0)
    vol_sma = _latest(inputs.volume_sma, 1.0)
    slope_1h = _signal_slope(inputs.ema50_1h)
    slope_15m = _signal_slope(inputs.ema50_15m)
    sentiment = (inputs.coinglass_sentiment or "neutral").lower()
    volume_increasing = inputs.current_volume > vol_sma * 1.05
    now_ms = int(time.time() * 1000)

    buy_conditions = [
        inputs.price_1h > ema_1h,
        slope_1h > 0,
        rsi_1h > 50,
        inputs.price_15m > ema_15m,
        slope_15m > 0,
        rsi_15m > 50,
        volume_increasing,
        sentiment == "bullish",
    ]
    if all(buy_conditions):
        entry = inputs.price_1h
        return {
            "signal": "BUY",
            "confidence": 70 + min(30.0, len(buy_conditions) / 8 * 30),
            "reasons": [
                "Strong bullish alignment across 1H and 15M charts",
                f"RSI: 1H {rsi_1h:.1f}, 15M {rsi_15m:.1f}",
                "Volume increasing above SMA",
                "4H sentiment from CoinGlass confirms bullish environment",
            ],
            "failed_conditions": [],
            "timestamp": now_ms,
            "entry_price": entry,
            "stop_loss": entry * 0.97,
            "take_profit": entry * 1.06,
        }

    sell_conditions = [
        inputs.price_1h < ema_1h,
        slope_1h < 0,
        rsi_1h < 50,
        inputs.price_15m < ema_15m,
        slope_15m < 0,
        rsi_15m < 50,
        volume_increasing,
        sentiment == "bearish",
    ]
    if all(sell_conditions):
        entry = inputs.price_1h
        return {
            "signal": "SELL",
            "confidence": 70 + min(30.0, len(sell_conditions) / 8 * 30),
            "reasons": [
                "Strong bearish alignment across 1H and 15M charts",
                f"RSI: 1H {rsi_1h:.1f}, 15M {rsi_15m:.1f}",
                "Volume rising into selling pressure",
                "4H sentiment from CoinGlass confirms bearish environment",
            ],
            "failed_conditions": [],
            "timestamp": now_ms,
            "entry_price": entry,
            "stop_loss": entry * 1.03,
            "take_profit": entry * 0.94,
        }

    failed: List[str] = []
    if not buy_conditions[0] and not sell_conditions[0]:
        failed.append("1H price not clearly above or below EMA 50")
    if not buy_conditions[1] and not sell_conditions[1]:
        failed.append("1H EMA slope flat")
    if not volume_increasing:
        failed.append("Volume below SMA (weak conviction)")
    if sentiment == "neutral":
        failed.append("CoinGlass 4H sentiment neutral")

    return {
        "signal": "NO TRADE",
        "confidence": 0,
        "reasons": ["Market mixed. No clean directional trend."],
        "failed_conditions": failed,
        "timestamp": now_ms,
    }


def signal_inputs_from_frames(
    df_1h: pd.DataFrame, df_15m: pd.DataFrame, coinglass_sentiment: str = "neutral"
) -> SignalInputs:
    """由 1H / 15M K 线构建交易信号输入（EMA50、RSI14、成交量 SMA20 取自 1H）"""
    def series(values: pd.Series) -> List[float]:
        return values.dropna().tolist()

    return SignalInputs(
        price_1h=float(df_1h["close"].iloc[-1]) if not df_1h.empty else 0.0,
        price_15m=float(df_15m["close"].iloc[-1]) if not df_15m.empty else 0.0,
        current_volume=float(df_1h["volume"].iloc[-1]) if not df_1h.empty else 0.0,
        ema50_1h=series(ind.ema(df_1h["close"], 50)) if not df_1h.empty else [],
        rsi_1h=series(ind.rsi(df_1h["close"], 14)) if not df_1h.empty else [],
        ema50_15m=series(ind.ema(df_15m["close"], 50)) if not df_15m.empty else [],
        rsi_15m=series(ind.rsi(df_15m["close"], 14)) if not df_15m.empty else [],
        volume_sma=series(ind.volume_sma(df_1h["volume"], 20)) if not df_1h.empty else [],
        coinglass_sentiment=coinglass_sentiment,
    )


# ── 衍生品情绪分类 ────────────────────────────────────────

def funding_sentiment(rate: float) -> str:
    if rate > 0.0001:
        return "BULLISH"
    if rate < -0.0001:
        return "BEARISH"
    return "NEUTRAL"


def funding_to_coinglass_sentiment(rate: Optional[float]) -> str:
    """资金费率 → 交易信号使用的小写情绪"""
    if rate is None:
        return "neutral"
    return funding_sentiment(rate).lower()


def funding_list_sentiment(avg_rate: Optional[float]) -> str:
    """跨交易所平均资金费率（百分比数值）→ 情绪"""
    if avg_rate is None:
        return "NEUTRAL"
    if avg_rate > 0.01:
        return "BULLISH EXTREME"
    if avg_rate > 0.005:
        return "BULLISH"
    if avg_rate < -0.01:
        return "BEARISH EXTREME"
    if avg_rate < -0.005:
        return "BEARISH"
    return "NEUTRAL"


def taker_buy_ratio(exchanges: List[Dict[str, Any]]) -> float:
    """主动买入占比（百分比），无数据时为 50"""
    if not exchanges:
        return 50.0
    total_buy = sum(float(ex.get("buy_volume") or ex.get("buy_vol_usd") or 0) for ex in exchanges)
    total_sell = sum(float(ex.get("sell_volume") or ex.get("sell_vol_usd") or 0) for ex in exchanges)
    total = total_buy + total_sell
    return total_buy / total * 100 if total > 0 else 50.0


def taker_sentiment(buy_ratio: float) -> str:
    if buy_ratio > 65:
        return "STRONG BUYING"
    if buy_ratio > 55:
        return "BUYING"
    if buy_ratio < 35:
        return "STRONG SELLING"
    if buy_ratio < 45:
        return "SELLING"
    return "BALANCED"


def basis_structure(basis_percent: float) -> str:
    if basis_percent > 0:
        return "CONTANGO"
    if basis_percent < 0:
        return "BACKWARDATION"
    return "FLAT"


def basis_signal(basis_percent: float) -> str:
    if basis_percent > 5:
        return "EXTREME SPECULATION"
    if basis_percent > 2:
        return "HIGH SPECULATION"
    if basis_percent < -2:
        return "STRONG BULLISH"
    if basis_percent < -1:
        return "BULLISH"
    return "NEUTRAL"


def long_short_sentiment(long_percent: float) -> str:
    """多空账户比：多头占比过高视为拥挤"""
    if long_percent > 60:
        return "LONG CROWDED"
    if long_percent < 40:
        return "SHORT CROWDED"
    return "BALANCED"
