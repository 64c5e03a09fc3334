"""
Layer 3 – 数据处理层
对原始 K 线 / 价格日志进行清洗、格式化、标准化与周期聚合，生成上层可直接使用的数据集。
"""

import logging
from typing import Any, Dict, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)

CANDLE_COLUMNS = ["time", "open", "high", "low", "close", "volume"]

# 周期字符串 → 分钟数
TIMEFRAME_MINUTES: Dict[str, int] = {
    "1m": 1,
    "5m": 5,
    "15m": 15,
    "30m": 30,
    "1h": 60,
    "4h": 240,
    "1d": 1440,
}


def _to_epoch_seconds(series: pd.Series) -> pd.Series:
    """时间列统一为 Unix 秒：支持秒 / 毫秒整数与 ISO 时间字符串"""
    numeric = pd.to_numeric(series, errors="coerce")
    if numeric.notna().all():
        # 13 位时间戳按毫秒处理
        return numeric.where(numeric < 1e12, numeric // 1000)
    parsed = pd.to_datetime(series, errors="coerce", utc=True)
    return parsed.map(lambda ts: ts.timestamp() if pd.notna(ts) else None)


class ProcessingLayer:
    """数据处理层：清洗 + 格式化 + 标准化 + 聚合"""

    def normalize_ohlcv(self, records: List[Dict[str, Any]]) -> pd.DataFrame:
        """
        将原始 OHLCV 记录列表标准化为 DataFrame

        标准列：time（Unix 秒）, open, high, low, close, volume
        时间字段可以是 time / timestamp / date
        """
        if not records:
            return pd.DataFrame(columns=CANDLE_COLUMNS)

        df = pd.DataFrame(records)

        if "time" not in df.columns:
            for alias in ("timestamp", "date"):
                if alias in df.columns:
                    df = df.rename(columns={alias: "time"})
                    break

        # 确保必要列存在
        for col in CANDLE_COLUMNS:
            if col not in df.columns:
                df[col] = 0.0

        # 类型转换
        for col in ["open", "high", "low", "close", "volume"]:
            df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0.0).astype(float)

        df["time"] = _to_epoch_seconds(df["time"])
        df = df.dropna(subset=["time"])
        df["time"] = df["time"].astype("int64")

        # 删除重复时间，保留最新数据
        df = df.drop_duplicates(subset=["time"], keep="last")
        df = df.sort_values("time").reset_index(drop=True)

        return df[CANDLE_COLUMNS + [c for c in df.columns if c not in CANDLE_COLUMNS]]

    def to_records(self, df: pd.DataFrame) -> List[Dict[str, Any]]:
        """DataFrame 转换为字典列表，NaN 转为 None"""
        if df.empty:
            return []
        return df.astype(object).where(df.notna(), None).to_dict(orient="records")

    def filter_time_range(
        self,
        df: pd.DataFrame,
        start: Optional[int],
        end: Optional[int],
    ) -> pd.DataFrame:
        """按 Unix 秒时间范围过滤数据"""
        if df.empty:
            return df
        if start:
            df = df[df["time"] >= start]
        if end:
            df = df[df["time"] <= end]
        return df.reset_index(drop=True)

    def fill_missing(self, df: pd.DataFrame) -> pd.DataFrame:
        """填充缺失值（价格为 0 的字段前向填充）"""
        if df.empty:
            return df
        df = df.copy()
        price_cols = ["open", "high", "low", "close"]
        df[price_cols] = df[price_cols].mask(df[price_cols] == 0).ffill()
        return df

    def add_basic_metrics(self, df: pd.DataFrame) -> pd.DataFrame:
        """添加基础衍生指标（涨跌额、涨跌幅、振幅）"""
        if df.empty or "close" not in df.columns:
            return df
        df = df.copy()
        df["change"] = df["close"].diff().round(8)
        df["pct_chg"] = (df["close"].pct_change() * 100).round(4)
        prev_close = df["close"].shift(1)
        denominator = prev_close.where(prev_close != 0, df["close"])
        df["amplitude"] = ((df["high"] - df["low"]) / denominator * 100).round(4)
        return df

    # ── 周期聚合 ──────────────────────────────────────────

    def aggregate_candles(self, df: pd.DataFrame, timeframe_minutes: int) -> pd.DataFrame:
        """
        将小周期 K 线聚合为大周期

        每根输出 K 线的 time 为所在区间起点，open 取首根、close 取末根，
        high / low 取极值，volume 求和。
        """
        if df.empty or timeframe_minutes <= 1:
            return df
        interval = timeframe_minutes * 60
        bucket = (df["time"] // interval) * interval
        grouped = df.groupby(bucket, sort=True)
        out = pd.DataFrame({
            "open": grouped["open"].first(),
            "high": grouped["high"].max(),
            "low": grouped["low"].min(),
            "close": grouped["close"].last(),
            "volume": grouped["volume"].sum(),
        })
        out.index.name = "time"
        return out.reset_index()[CANDLE_COLUMNS]

    def candles_from_price_logs(
        self, logs: List[Dict[str, Any]], timeframe_minutes: int = 60, log_minutes: int = 1
    ) -> pd.DataFrame:
        """
        由价格日志（timestamp, price, volume）构建 K 线，只保留完整周期

        log_minutes 为日志间隔，一个完整周期需要 timeframe_minutes // log_minutes 条日志。
        """
        if timeframe_minutes < log_minutes:
            raise ValueError(f"聚合周期 {timeframe_minutes} 分钟小于日志间隔 {log_minutes} 分钟")
        if not logs:
            return pd.DataFrame(columns=CANDLE_COLUMNS)
        df = pd.DataFrame(logs)
        df["time"] = _to_epoch_seconds(df["timestamp"]).astype("int64")
        df["price"] = pd.to_numeric(df["price"], errors="coerce")
        if "volume" not in df.columns:
            df["volume"] = 0.0
        df["volume"] = pd.to_numeric(df["volume"], errors="coerce").fillna(0.0)
        df = df.dropna(subset=["price"]).sort_values("time")

        interval = timeframe_minutes * 60
        bucket = (df["time"] // interval) * interval
        grouped = df.groupby(bucket, sort=True)
        out = pd.DataFrame({
            "open": grouped["price"].first(),
            "high": grouped["price"].max(),
            "low": grouped["price"].min(),
            "close": grouped["price"].last(),
            "volume": grouped["volume"].sum(),
            "count": grouped["price"].count(),
        })
        out.index.name = "time"
        out = out[out["count"] >= max(1, timeframe_minutes // log_minutes)].drop(columns=["count"])
        return out.reset_index()[CANDLE_COLUMNS]


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
