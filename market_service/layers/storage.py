"""
持久化存储层
  - market_candles : K 线，唯一键 (symbol, timeframe, time)
  - price_logs     : 价格日志，唯一键 (symbol, interval, timestamp)
MongoDB 不可用时所有写入为空操作，读取返回空列表。
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import UpdateOne

from market_service.db import CANDLE_COLLECTION, PRICE_LOG_COLLECTION, get_collection

logger = logging.getLogger(__name__)

BATCH_SIZE = 500


class CandleStore:
    """K 线与价格日志存储"""

    async def upsert_candles(
        self, symbol: str, timeframe: str, records: List[Dict[str, Any]]
    ) -> int:
        """批量写入 K 线，已存在的 (symbol, timeframe, time) 覆盖更新，返回写入条数"""
        coll = get_collection(CANDLE_COLLECTION)
        if coll is None or not records:
            return 0
        now = datetime.now(tz=timezone.utc)
        written = 0
        for i in range(0, len(records), BATCH_SIZE):
            ops = [
                UpdateOne(
                    {"symbol": symbol, "timeframe": timeframe, "time": int(r["time"])},
                    {"$set": {
                        "symbol": symbol,
                        "timeframe": timeframe,
                        "time": int(r["time"]),
                        "open": float(r["open"]),
                        "high": float(r["high"]),
                        "low": float(r["low"]),
                        "close": float(r["close"]),
                        "volume": float(r.get("volume") or 0.0),
                        "updated_at": now,
                    }},
                    upsert=True,
                )
                for r in records[i:i + BATCH_SIZE]
            ]
            try:
                await coll.bulk_write(ops, ordered=False)
                written += len(ops)
            except Exception as exc:
                logger.error(f"❌ K 线写入失败 {symbol} {timeframe}: {exc}")
        logger.info(f"💾 {symbol} {timeframe} 写入 {written} 根 K 线")
        return written

    async def get_candles(
        self,
        symbol: str,
        timeframe: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """按时间升序返回最近 limit 根 K 线"""
        coll = get_collection(CANDLE_COLLECTION)
        if coll is None:
            return []
        query: Dict[str, Any] = {"symbol": symbol, "timeframe": timeframe}
        time_range: Dict[str, int] = {}
        if start is not None:
            time_range["$gte"] = int(start)
        if end is not None:
            time_range["$lte"] = int(end)
        if time_range:
            query["time"] = time_range
        try:
            cursor = coll.find(query, {"_id": 0, "updated_at": 0})
            docs = await cursor.sort("time", -1).limit(limit).to_list(length=limit)
        except Exception as exc:
            logger.error(f"❌ K 线读取失败 {symbol} {timeframe}: {exc}")
            return []
        return list(reversed(docs))

    async def insert_price_logs(
        self, symbol: str, interval: str, candles: List[Dict[str, Any]]
    ) -> int:
        """以收盘价记录价格日志，重复的 (symbol, interval, timestamp) 忽略"""
        coll = get_collection(PRICE_LOG_COLLECTION)
        if coll is None or not candles:
            return 0
        inserted = 0
        for i in range(0, len(candles), BATCH_SIZE):
            ops = [
                UpdateOne(
                    {"symbol": symbol, "interval": interval, "timestamp": int(c["time"])},
                    {"$setOnInsert": {
                        "symbol": symbol,
                        "interval": interval,
                        "timestamp": int(c["time"]),
                        "price": float(c["close"]),
                        "volume": float(c.get("volume") or 0.0),
                    }},
                    upsert=True,
                )
                for c in candles[i:i + BATCH_SIZE]
            ]
            try:
                result = await coll.bulk_write(ops, ordered=False)
                inserted += result.upserted_count
            except Exception as exc:
                logger.error(f"❌ 价格日志写入失败 {symbol} {interval}: {exc}")
        return inserted

    async def get_price_logs(
        self,
        symbol: str,
        interval: str = "1m",
        since: Optional[int] = None,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        coll = get_collection(PRICE_LOG_COLLECTION)
        if coll is None:
            return []
        query: Dict[str, Any] = {"symbol": symbol, "interval": interval}
        if since is not None:
            query["timestamp"] = {"$gte": int(since)}
        try:
            cursor = coll.find(query, {"_id": 0})
            docs = await cursor.sort("timestamp", -1).limit(limit).to_list(length=limit)
        except Exception as exc:
            logger.error(f"❌ 价格日志读取失败 {symbol}: {exc}")
            return []
        return list(reversed(docs))


# ── 模块级别单例 ──────────────────────────────────────────
_store: Optional[CandleStore] = None


def get_candle_store() -> CandleStore:
    global _store
    if _store is None:
        _store = CandleStore()
    return _store
