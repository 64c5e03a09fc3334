"""
技术指标函数库
所有函数输入为 pandas Series / K 线 DataFrame（列：time, open, high, low, close, volume），
输出与输入等长，预热期数值为 NaN。
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def _as_series(values) -> pd.Series:
    if isinstance(values, pd.Series):
        return values.astype(float)
    return pd.Series(values, dtype=float)


def _nan_like(values: pd.Series) -> pd.Series:
    return pd.Series(np.nan, index=values.index, dtype=float)


# ── 均线类 ────────────────────────────────────────────────

def sma(values, period: int) -> pd.Series:
    """简单移动平均"""
    s = _as_series(values)
    if period <= 0:
        return _nan_like(s)
    return s.rolling(window=period, min_periods=period).mean()


def ema(values, period: int) -> pd.Series:
    """
    指数移动平均

    以前 period 个有效值的 SMA 作为种子，k = 2 / (period + 1)；
    输入中的前导 NaN 会被跳过，输出在对应位置保持 NaN。
    """
    s = _as_series(values)
    out = _nan_like(s)
    if period <= 0:
        return out
    valid = s.dropna()
    if len(valid) < period:
        return out
    k = 2.0 / (period + 1)
    arr = valid.to_numpy()
    result = np.full(len(arr), np.nan)
    prev = arr[:period].mean()
    result[period - 1] = prev
    for i in range(period, len(arr)):
        prev = (arr[i] - prev) * k + prev
        result[i] = prev
    out.loc[valid.index] = result
    return out


def ema_slope(ema_values, lookback: int = 3) -> float:
    """最近 lookback 个 EMA 值的平均逐根变化量，数据不足时返回 0"""
    s = _as_series(ema_values).dropna()
    if lookback < 2 or len(s) < lookback:
        return 0.0
    recent = s.iloc[-lookback:].to_numpy()
    return float(np.diff(recent).sum() / (lookback - 1))


def momentum(values, period: int = 14) -> pd.Series:
    s = _as_series(values)
    return s - s.shift(period)


def volume_sma(volumes, period: int = 20) -> pd.Series:
    return sma(volumes, period)


# ── 震荡类 ────────────────────────────────────────────────

def rsi(values, period: int = 14) -> pd.Series:
    """相对强弱指数（Wilder 平滑），首个有效值位于下标 period"""
    s = _as_series(values)
    out = _nan_like(s)
    if period <= 0 or len(s) <= period:
        return out
    arr = s.to_numpy()
    delta = np.diff(arr)
    gains = np.clip(delta, 0, None)
    losses = np.clip(-delta, 0, None)

    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    result = np.full(len(arr), np.nan)
    for i in range(period, len(arr)):
        if i > period:
            avg_gain = (avg_gain * (period - 1) + gains[i - 1]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i - 1]) / period
        rs = 100.0 if avg_loss == 0 else avg_gain / avg_loss
        result[i] = 100 - 100 / (1 + rs)
    return pd.Series(result, index=s.index)


def macd(values, fast: int = 12, slow: int = 26, signal: int = 9) -> pd.DataFrame:
    """MACD 线、信号线与柱状图"""
    s = _as_series(values)
    macd_line = ema(s, fast) - ema(s, slow)
    signal_line = ema(macd_line, signal)
    return pd.DataFrame({
        "macd": macd_line,
        "signal": signal_line,
        "histogram": macd_line - signal_line,
    })


def stochastic(candles: pd.DataFrame, k_period: int = 14, d_period: int = 3) -> pd.DataFrame:
    """随机指标 %K / %D，区间最高价等于最低价时 %K 取 50"""
    highest = candles["high"].rolling(window=k_period, min_periods=k_period).max()
    lowest = candles["low"].rolling(window=k_period, min_periods=k_period).min()
    span = highest - lowest
    k = ((candles["close"] - lowest) / span.replace(0, np.nan) * 100).astype(float)
    k = k.mask((span == 0) & highest.notna(), 50.0)
    d = k.rolling(window=d_period, min_periods=d_period).mean()
    return pd.DataFrame({"k": k, "d": d})


def cci(candles: pd.DataFrame, period: int = 20) -> pd.Series:
    typical = (candles["high"] + candles["low"] + candles["close"]) / 3
    mean = typical.rolling(window=period, min_periods=period).mean()
    mean_dev = typical.rolling(window=period, min_periods=period).apply(
        lambda w: np.abs(w - w.mean()).mean(), raw=True
    )
    out = (typical - mean) / (0.015 * mean_dev)
    return out.mask(mean_dev == 0, 0.0)


def roc(values, period: int = 12) -> pd.Series:
    """变动率（百分比），基准价为 0 时为 NaN"""
    s = _as_series(values)
    prev = s.shift(period)
    return (s - prev) / prev.replace(0, np.nan) * 100


def trix(values, period: int = 15, signal: int = 9) -> pd.DataFrame:
    third = ema(ema(ema(values, period), period), period)
    line = (third - third.shift(1)) / third.shift(1) * 100
    return pd.DataFrame({"trix": line, "signal": ema(line, signal)})


# ── 波动率与通道 ──────────────────────────────────────────

def bollinger(values, period: int = 20, mult: float = 2.0) -> pd.DataFrame:
    """布林带（总体标准差）"""
    s = _as_series(values)
    middle = sma(s, period)
    std = s.rolling(window=period, min_periods=period).std(ddof=0)
    return pd.DataFrame({
        "middle": middle,
        "upper": middle + mult * std,
        "lower": middle - mult * std,
    })


def true_range(candles: pd.DataFrame) -> pd.Series:
    """真实波动幅度，首根为 high - low"""
    prev_close = candles["close"].shift(1)
    tr = pd.concat([
        candles["high"] - candles["low"],
        (candles["high"] - prev_close).abs(),
        (candles["low"] - prev_close).abs(),
    ], axis=1).max(axis=1)
    if len(tr):
        tr.iloc[0] = candles["high"].iloc[0] - candles["low"].iloc[0]
    return tr.astype(float)


def atr(candles: pd.DataFrame, period: int = 14) -> pd.Series:
    """平均真实波动范围（Wilder 平滑，首值为前 period 根 TR 的均值）"""
    tr = true_range(candles)
    out = _nan_like(tr)
    if period <= 0 or len(tr) < period:
        return out
    arr = tr.to_numpy()
    result = np.full(len(arr), np.nan)
    prev = arr[:period].mean()
    result[period - 1] = prev
    for i in range(period, len(arr)):
        prev = (prev * (period - 1) + arr[i]) / period
        result[i] = prev
    return pd.Series(result, index=tr.index)


def keltner(
    candles: pd.DataFrame, ema_period: int = 20, atr_period: int = 10, mult: float = 1.5
) -> pd.DataFrame:
    center = ema(candles["close"], ema_period)
    band = atr(candles, atr_period) * mult
    return pd.DataFrame({"center": center, "upper": center + band, "lower": center - band})


def adx(candles: pd.DataFrame, period: int = 14) -> pd.Series:
    """平均趋向指数（Wilder 平滑）"""
    n = len(candles)
    out = pd.Series(np.nan, index=candles.index, dtype=float)
    if n <= period:
        return out

    high = candles["high"].to_numpy(dtype=float)
    low = candles["low"].to_numpy(dtype=float)
    tr = true_range(candles).to_numpy()
    up_move = np.zeros(n)
    down_move = np.zeros(n)
    up_move[1:] = high[1:] - high[:-1]
    down_move[1:] = low[:-1] - low[1:]
    plus_dm = np.where((up_move > down_move) & (up_move > 0), up_move, 0.0)
    minus_dm = np.where((down_move > up_move) & (down_move > 0), down_move, 0.0)

    sm_tr = tr[1:period + 1].sum()
    sm_plus = plus_dm[1:period + 1].sum()
    sm_minus = minus_dm[1:period + 1].sum()
    dx = np.full(n, np.nan)
    for i in range(period, n):
        if i > period:
            sm_tr = sm_tr - sm_tr / period + tr[i]
            sm_plus = sm_plus - sm_plus / period + plus_dm[i]
            sm_minus = sm_minus - sm_minus / period + minus_dm[i]
        if sm_tr == 0:
            dx[i] = 0.0
            continue
        plus_di = 100 * sm_plus / sm_tr
        minus_di = 100 * sm_minus / sm_tr
        denom = plus_di + minus_di
        dx[i] = 0.0 if denom == 0 else 100 * abs(plus_di - minus_di) / denom

    # 首个 ADX 为 period 个 DX 的均值，数据不足时取现有 DX 均值
    first = min(2 * period - 1, n - 1)
    result = np.full(n, np.nan)
    result[first] = dx[period:first + 1].mean()
    for i in range(first + 1, n):
        result[i] = (result[i - 1] * (period - 1) + dx[i]) / period
    return pd.Series(result, index=candles.index)


def parabolic_sar(candles: pd.DataFrame, step: float = 0.02, max_step: float = 0.2) -> pd.Series:
    n = len(candles)
    if n == 0:
        return pd.Series(dtype=float)
    high = candles["high"].to_numpy(dtype=float)
    low = candles["low"].to_numpy(dtype=float)
    result = np.full(n, np.nan)

    af, ep, sar, up = step, high[0], low[0], True
    result[0] = sar
    for i in range(1, n):
        sar = sar + af * (ep - sar)
        if up:
            if low[i] < sar:
                up, sar, ep, af = False, ep, low[i], step
            elif high[i] > ep:
                ep, af = high[i], min(max_step, af + step)
        else:
            if high[i] > sar:
                up, sar, ep, af = True, ep, high[i], step
            elif low[i] < ep:
                ep, af = low[i], min(max_step, af + step)
        result[i] = sar
    return pd.Series(result, index=candles.index)


# ── 成交量类 ──────────────────────────────────────────────

def vwap(candles: pd.DataFrame) -> pd.Series:
    """累计成交量加权均价，成交量为 0 的 K 线按 1 计权"""
    typical = (candles["high"] + candles["low"] + candles["close"]) / 3
    volume = candles["volume"].where(candles["volume"] > 0, 1.0)
    return (typical * volume).cumsum() / volume.cumsum()


def obv(candles: pd.DataFrame) -> pd.Series:
    direction = np.sign(candles["close"].diff()).fillna(0)
    return (direction * candles["volume"]).cumsum().astype(float)


def cmf(candles: pd.DataFrame, period: int = 21) -> pd.Series:
    """蔡金资金流"""
    span = (candles["high"] - candles["low"]).replace(0, np.nan)
    mfm = ((candles["close"] - candles["low"]) - (candles["high"] - candles["close"])) / span
    mfv = (mfm.fillna(0) * candles["volume"]).astype(float)
    vol_sum = candles["volume"].rolling(window=period, min_periods=period).sum()
    return mfv.rolling(window=period, min_periods=period).sum() / vol_sum.replace(0, np.nan)


# ── 一目均衡表 ────────────────────────────────────────────

def _midpoint(high: pd.Series, low: pd.Series, period: int) -> pd.Series:
    return (
        high.rolling(window=period, min_periods=period).max()
        + low.rolling(window=period, min_periods=period).min()
    ) / 2


def ichimoku(
    high,
    low,
    close,
    conversion: int = 9,
    base: int = 26,
    span_b: int = 52,
    displacement: int = 26,
) -> pd.DataFrame:
    """
    一目均衡表

    lead_span_a / lead_span_b 向前平移 displacement 根，因此当前 K 线对应的是
    displacement 根之前计算出的云层；lagging 为收盘价向后平移。
    """
    high, low, close = _as_series(high), _as_series(low), _as_series(close)
    conversion_line = _midpoint(high, low, conversion)
    base_line = _midpoint(high, low, base)
    return pd.DataFrame({
        "conversion": conversion_line,
        "base": base_line,
        "lead_span_a": ((conversion_line + base_line) / 2).shift(displacement),
        "lead_span_b": _midpoint(high, low, span_b).shift(displacement),
        "lagging": close.shift(-displacement),
    })


# ── 结构类：枢轴 / 背离 / 摆动点 ───────────────────────────

def pivot_points(high, low, lookback: int = 5) -> pd.DataFrame:
    """
    枢轴高低点

    第 i 根 K 线的最高价严格高于前后各 lookback 根的最高价时记为 pivot_high，
    最低价严格低于前后各 lookback 根时记为 pivot_low。末尾 lookback 根无法确认。
    """
    h = _as_series(high).to_numpy()
    l = _as_series(low).to_numpy()
    n = len(h)
    pivot_high = np.zeros(n, dtype=bool)
    pivot_low = np.zeros(n, dtype=bool)
    for i in range(lookback, n - lookback):
        neighbors = np.r_[i - lookback:i, i + 1:i + lookback + 1]
        pivot_high[i] = h[i] > h[neighbors].max()
        pivot_low[i] = l[i] < l[neighbors].min()
    index = high.index if isinstance(high, pd.Series) else None
    return pd.DataFrame({"pivot_high": pivot_high, "pivot_low": pivot_low}, index=index)


def rsi_divergence(rsi_values, close, pivot_highs, pivot_lows) -> pd.DataFrame:
    """
    RSI 背离

    相邻两个枢轴低点：价格创更低低点而 RSI 抬高 → bullish；
    相邻两个枢轴高点：价格创更高高点而 RSI 走低 → bearish。
    """
    r = _as_series(rsi_values).to_numpy()
    c = _as_series(close).to_numpy()
    ph = np.asarray(pivot_highs, dtype=bool)
    pl = np.asarray(pivot_lows, dtype=bool)
    n = len(c)
    bullish = np.zeros(n, dtype=bool)
    bearish = np.zeros(n, dtype=bool)

    prev = None
    for i in np.flatnonzero(pl):
        if np.isnan(r[i]):
            continue
        if prev is not None and c[i] < c[prev] and r[i] > r[prev]:
            bullish[i] = True
        prev = i

    prev = None
    for i in np.flatnonzero(ph):
        if np.isnan(r[i]):
            continue
        if prev is not None and c[i] > c[prev] and r[i] < r[prev]:
            bearish[i] = True
        prev = i

    index = close.index if isinstance(close, pd.Series) else None
    return pd.DataFrame({"bullish": bullish, "bearish": bearish}, index=index)


def swing_points(candles: pd.DataFrame, lookback: int = 5) -> List[Dict[str, Any]]:
    """摆动高低点列表 [{time, price, type}]，type 为 high / low"""
    pivots = pivot_points(candles["high"], candles["low"], lookback)
    points: List[Dict[str, Any]] = []
    for i in range(len(candles)):
        row = candles.iloc[i]
        if pivots["pivot_high"].iloc[i]:
            points.append({"time": int(row["time"]), "price": float(row["high"]), "type": "high"})
        if pivots["pivot_low"].iloc[i]:
            points.append({"time": int(row["time"]), "price": float(row["low"]), "type": "low"})
    return points


def liquidity_sweeps(
    candles: pd.DataFrame,
    swings: List[Dict[str, Any]],
    reversal_threshold: float = 0.002,
    window_seconds: int = 36000,
) -> List[Dict[str, Any]]:
    """
    流动性扫单：K 线刺破附近（window_seconds 内）的摆动点，
    随后 3 根 K 线内收盘价反向越过摆动点 reversal_threshold 以上。
    """
    sweeps: List[Dict[str, Any]] = []
    times = candles["time"].to_numpy()
    highs = candles["high"].to_numpy(dtype=float)
    lows = candles["low"].to_numpy(dtype=float)
    closes = candles["close"].to_numpy(dtype=float)

    for i in range(len(candles) - 3):
        next_closes = closes[i + 1:i + 4]
        for swing in swings:
            if abs(swing["time"] - times[i]) >= window_seconds:
                continue
            price = swing["price"]
            if swing["type"] == "high" and highs[i] > price:
                if (next_closes < price * (1 - reversal_threshold)).any():
                    sweeps.append({
                        "time": int(times[i]),
                        "price": float(highs[i]),
                        "type": "high",
                        "significance": (highs[i] - price) / price,
                    })
            elif swing["type"] == "low" and lows[i] < price:
                if (next_closes > price * (1 + reversal_threshold)).any():
                    sweeps.append({
                        "time": int(times[i]),
                        "price": float(lows[i]),
                        "type": "low",
                        "significance": (price - lows[i]) / price,
                    })
    return sweeps


def _cluster_prices(prices: List[float], threshold: float) -> List[float]:
    """相邻价格相对差值不超过 threshold 的归为一簇，返回各簇均值"""
    if not prices:
        return []
    ordered = sorted(prices)
    clusters: List[float] = []
    current = [ordered[0]]
    for prev, price in zip(ordered, ordered[1:]):
        if abs(price - prev) / prev <= threshold:
            current.append(price)
        else:
            clusters.append(sum(current) / len(current))
            current = [price]
    clusters.append(sum(current) / len(current))
    return clusters


def support_resistance(candles: pd.DataFrame, threshold: float = 0.005) -> Dict[str, List[float]]:
    swings = swing_points(candles)
    return {
        "support": _cluster_prices([s["price"] for s in swings if s["type"] == "low"], threshold),
        "resistance": _cluster_prices([s["price"] for s in swings if s["type"] == "high"], threshold),
    }


def previous_day_levels(candles: pd.DataFrame) -> Dict[str, Optional[float]]:
    """前一 UTC 自然日的最高价 / 最低价（PDH / PDL）"""
    empty = {"prev_high": None, "prev_low": None}
    if candles.empty:
        return empty
    days = candles["time"].map(
        lambda t: datetime.fromtimestamp(int(t), tz=timezone.utc).date()
    )
    earlier = days[days < days.iloc[-1]]
    if earlier.empty:
        return empty
    mask = days == earlier.max()
    return {
        "prev_high": float(candles.loc[mask, "high"].max()),
        "prev_low": float(candles.loc[mask, "low"].min()),
    }
