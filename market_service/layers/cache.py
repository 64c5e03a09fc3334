"""
Layer 2 – 缓存层
优先级：Redis（内存） → MongoDB（持久化） → 文件（本地）

每个条目保存为 {"value", "cached_at", "ttl"}：
  - get()        只返回未超过 ttl 的新鲜数据
  - get_stale()  上游失败时读取过期不超过 max_age 秒的旧数据
物理过期时间为 ttl + STALE_CACHE_MAX_AGE，保证旧数据在降级窗口内仍可读取。
"""

import hashlib
import json
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from market_service.config import settings
from market_service.db import CACHE_COLLECTION, get_collection, get_redis
from market_service.errors import MarketServiceError

logger = logging.getLogger(__name__)


def _make_key(namespace: str, *parts: str) -> str:
    """生成规范化缓存键"""
    raw = ":".join([namespace] + [str(p) for p in parts])
    if len(raw) > 200:
        raw = namespace + ":" + hashlib.md5(raw.encode()).hexdigest()
    return raw


class CacheLayer:
    """多级缓存层，自动根据可用连接选择后端"""

    def __init__(self, cache_dir: Optional[str] = None):
        self.cache_dir = cache_dir or settings.CACHE_DIR

    def _file_path(self, key: str) -> str:
        safe = key.replace(":", "_").replace("/", "_")
        return os.path.join(self.cache_dir, f"{safe}.json")

    # ── 读取 ──────────────────────────────────────────────

    async def _read_envelope(self, key: str) -> Optional[Dict[str, Any]]:
        """按 Redis → MongoDB → 文件顺序读取缓存信封"""
        redis = get_redis()
        if redis is not None:
            try:
                raw = await redis.get(key)
                if raw:
                    logger.debug(f"缓存命中（Redis）: {key}")
                    return json.loads(raw)
            except Exception as exc:
                logger.debug(f"Redis 读取失败: {exc}")

        coll = get_collection(CACHE_COLLECTION)
        if coll is not None:
            try:
                doc = await coll.find_one({"key": key})
                if doc:
                    expires_at = doc.get("expires_at")
                    if expires_at and expires_at.replace(tzinfo=timezone.utc) < datetime.now(tz=timezone.utc):
                        await coll.delete_one({"key": key})
                    else:
                        logger.debug(f"缓存命中（MongoDB）: {key}")
                        return {
                            "value": doc.get("value"),
                            "cached_at": doc.get("cached_at", 0),
                            "ttl": doc.get("ttl", settings.CACHE_TTL),
                        }
            except Exception as exc:
                logger.debug(f"MongoDB 读取失败: {exc}")

        path = self._file_path(key)
        if os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    doc = json.load(fh)
                if doc.get("expires_at", 0) < time.time():
                    os.remove(path)
                else:
                    logger.debug(f"缓存命中（文件）: {key}")
                    return doc
            except (OSError, ValueError) as exc:
                logger.debug(f"文件缓存读取失败: {exc}")

        return None

    async def get(self, namespace: str, *parts: str) -> Optional[Any]:
        """读取未过期的缓存值"""
        envelope = await self._read_envelope(_make_key(namespace, *parts))
        if envelope is None:
            return None
        age = time.time() - float(envelope.get("cached_at", 0))
        if age > float(envelope.get("ttl", settings.CACHE_TTL)):
            return None
        return envelope.get("value")

    async def get_stale(
        self, namespace: str, *parts: str, max_age: Optional[int] = None
    ) -> Optional[Tuple[Any, float]]:
        """读取过期不超过 max_age 秒的缓存值（未过期的也返回），返回 (value, 缓存年龄秒)"""
        if max_age is None:
            max_age = settings.STALE_CACHE_MAX_AGE
        envelope = await self._read_envelope(_make_key(namespace, *parts))
        if envelope is None:
            return None
        age = time.time() - float(envelope.get("cached_at", 0))
        # 降级窗口从 TTL 到期时开始计算
        if age - float(envelope.get("ttl", settings.CACHE_TTL)) > max_age:
            return None
        return envelope.get("value"), age

    # ── 写入 ──────────────────────────────────────────────

    async def set(
        self,
        value: Any,
        namespace: str,
        *parts: str,
        ttl: int = None,
    ) -> None:
        if ttl is None:
            ttl = settings.CACHE_TTL
        key = _make_key(namespace, *parts)
        now = time.time()
        retention = ttl + settings.STALE_CACHE_MAX_AGE
        envelope = {"value": value, "cached_at": now, "ttl": ttl}

        # L1: Redis
        redis = get_redis()
        if redis is not None:
            try:
                await redis.setex(key, retention, json.dumps(envelope, ensure_ascii=False, default=str))
                logger.debug(f"缓存写入（Redis）: {key}")
                return
            except Exception as exc:
                logger.debug(f"Redis 写入失败: {exc}")

        # L2: MongoDB
        coll = get_collection(CACHE_COLLECTION)
        if coll is not None:
            try:
                expires_at = datetime.now(tz=timezone.utc) + timedelta(seconds=retention)
                await coll.update_one(
                    {"key": key},
                    {"$set": {"key": key, **envelope, "expires_at": expires_at}},
                    upsert=True,
                )
                logger.debug(f"缓存写入（MongoDB）: {key}")
                return
            except Exception as exc:
                logger.debug(f"MongoDB 写入失败: {exc}")

        # L3: 文件
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
            with open(self._file_path(key), "w", encoding="utf-8") as fh:
                json.dump({**envelope, "expires_at": now + retention}, fh, ensure_ascii=False, default=str)
            logger.debug(f"缓存写入（文件）: {key}")
        except (OSError, TypeError) as exc:
            logger.debug(f"文件缓存写入失败: {exc}")

    async def get_or_fetch(
        self,
        namespace: str,
        *parts: str,
        ttl: int,
        fetch: Callable[[], Awaitable[Any]],
        fallback: Callable[[MarketServiceError], Any],
    ) -> Any:
        """
        缓存命中直接返回；否则调用 fetch 并写入缓存。

        fetch 抛出 MarketServiceError 时依次降级：
          1. 过期不超过 STALE_CACHE_MAX_AGE 秒的旧缓存（标记 cached / cache_age）
          2. fallback(exc) 生成的 unavailable 结构（不写入缓存）
        """
        cached = await self.get(namespace, *parts)
        if cached is not None:
            return cached
        try:
            value = await fetch()
        except MarketServiceError as exc:
            stale = await self.get_stale(namespace, *parts)
            if stale is not None:
                value, age = stale
                logger.warning(f"⚠️ {_make_key(namespace, *parts)} 上游失败，返回 {age:.0f}s 前的缓存: {exc.message}")
                if isinstance(value, dict):
                    return {**value, "cached": True, "cache_age": int(age)}
                return value
            logger.error(f"❌ {_make_key(namespace, *parts)} 上游失败且无可用缓存: {exc.message}")
            return fallback(exc)
        await self.set(value, namespace, *parts, ttl=ttl)
        return value

    async def delete(self, namespace: str, *parts: str) -> None:
        key = _make_key(namespace, *parts)
        redis = get_redis()
        if redis is not None:
            try:
                await redis.delete(key)
            except Exception as exc:
                logger.debug(f"Redis 删除失败: {exc}")
        coll = get_collection(CACHE_COLLECTION)
        if coll is not None:
            try:
                await coll.delete_one({"key": key})
            except Exception as exc:
                logger.debug(f"MongoDB 删除失败: {exc}")
        path = self._file_path(key)
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as exc:
                logger.debug(f"文件缓存删除失败: {exc}")

    async def stats(self) -> dict:
        """返回各缓存后端统计信息"""
        result: dict = {}
        redis = get_redis()
        if redis is not None:
            try:
                result["redis"] = {"keys": await redis.dbsize(), "status": "healthy"}
            except Exception as exc:
                result["redis"] = {"status": "error", "error": str(exc)}
        else:
            result["redis"] = {"status": "disabled"}

        coll = get_collection(CACHE_COLLECTION)
        if coll is not None:
            try:
                count = await coll.count_documents({})
                result["mongodb"] = {"documents": count, "status": "healthy"}
            except Exception as exc:
                result["mongodb"] = {"status": "error", "error": str(exc)}
        else:
            result["mongodb"] = {"status": "disabled"}

        try:
            file_count = len([
                f for f in os.listdir(self.cache_dir) if f.endswith(".json")
            ]) if os.path.exists(self.cache_dir) else 0
            result["file"] = {"files": file_count, "dir": self.cache_dir, "status": "healthy"}
        except OSError as exc:
            result["file"] = {"status": "error", "error": str(exc)}

        return result


# ── 模块级别单例 ──────────────────────────────────────────
_cache: Optional[CacheLayer] = None


def get_cache_layer() -> CacheLayer:
    global _cache
    if _cache is None:
        _cache = CacheLayer()
    return _cache
