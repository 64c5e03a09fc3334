"""
数据库连接管理模块

MongoDB 保存需要持久化的数据：
  data_cache      - 缓存层第二级（TTL 索引自动过期）
  market_candles  - 同步下来的 K 线（symbol + timeframe + time 唯一）
  price_logs      - 价格日志（symbol + interval + timestamp 唯一）
  users           - 登录用户

Redis 只作为缓存层第一级的热缓存。两者都允许缺席，缺席时服务降级运行。
"""

import logging
import time
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from redis.asyncio import Redis, ConnectionPool

from market_service.config import settings

logger = logging.getLogger(__name__)

CACHE_COLLECTION = "data_cache"
CANDLE_COLLECTION = "market_candles"
PRICE_LOG_COLLECTION = "price_logs"
USER_COLLECTION = "users"

# ── 全局连接实例 ─────────────────────────────────────────
_mongo_client: Optional[AsyncIOMotorClient] = None
_mongo_db: Optional[AsyncIOMotorDatabase] = None
_redis_client: Optional[Redis] = None
_redis_pool: Optional[ConnectionPool] = None


async def init_mongodb() -> bool:
    """连接 MongoDB 并 ping 一次，失败时保持未连接状态"""
    global _mongo_client, _mongo_db
    if not settings.MONGODB_ENABLED:
        logger.info("MongoDB 未启用，缓存与 K 线仅使用 Redis / 文件")
        return False

    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=settings.MONGO_MAX_CONNECTIONS,
        minPoolSize=settings.MONGO_MIN_CONNECTIONS,
        serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
        connectTimeoutMS=settings.MONGO_CONNECT_TIMEOUT_MS,
        socketTimeoutMS=settings.MONGO_SOCKET_TIMEOUT_MS,
    )
    try:
        await client.admin.command("ping")
    except Exception as exc:
        logger.warning(f"⚠️ MongoDB 不可用，降级运行: {exc}")
        client.close()
        return False

    _mongo_client = client
    _mongo_db = client[settings.MONGODB_DATABASE]
    logger.info(
        f"✅ MongoDB 已连接: {settings.MONGODB_HOST}:{settings.MONGODB_PORT}/{settings.MONGODB_DATABASE}"
    )
    return True


async def init_redis() -> bool:
    """连接 Redis 热缓存"""
    global _redis_client, _redis_pool
    if not settings.REDIS_ENABLED:
        logger.info("Redis 未启用，热缓存关闭")
        return False

    pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=10,
    )
    client = Redis(connection_pool=pool)
    try:
        await client.ping()
    except Exception as exc:
        logger.warning(f"⚠️ Redis 不可用，热缓存关闭: {exc}")
        await client.aclose()
        await pool.disconnect()
        return False

    _redis_pool = pool
    _redis_client = client
    logger.info(f"✅ Redis 已连接: {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    return True


async def ensure_indexes() -> None:
    if _mongo_db is None:
        return
    try:
        cache = _mongo_db[CACHE_COLLECTION]
        await cache.create_index("key", unique=True)
        # expires_at 到期后由 MongoDB 自动删除
        await cache.create_index("expires_at", expireAfterSeconds=0)
        await _mongo_db[CANDLE_COLLECTION].create_index(
            [("symbol", 1), ("timeframe", 1), ("time", 1)], unique=True
        )
        await _mongo_db[PRICE_LOG_COLLECTION].create_index(
            [("symbol", 1), ("interval", 1), ("timestamp", 1)], unique=True
        )
        await _mongo_db[USER_COLLECTION].create_index("username", unique=True)
        logger.info("✅ MongoDB 索引已就绪")
    except Exception as exc:
        logger.warning(f"⚠️ MongoDB 索引创建失败: {exc}")


async def close_connections():
    global _mongo_client, _mongo_db, _redis_client, _redis_pool
    if _mongo_client is not None:
        _mongo_client.close()
        logger.info("MongoDB 连接已关闭")
    _mongo_client = None
    _mongo_db = None

    if _redis_client is not None:
        await _redis_client.aclose()
    if _redis_pool is not None:
        await _redis_pool.disconnect()
        logger.info("Redis 连接已关闭")
    _redis_client = None
    _redis_pool = None


def get_collection(name: str) -> Optional[AsyncIOMotorCollection]:
    """获取集合；MongoDB 未连接时返回 None，调用方据此降级"""
    if _mongo_db is None:
        return None
    return _mongo_db[name]


def get_redis() -> Optional[Redis]:
    return _redis_client


# ── 健康检查 ─────────────────────────────────────────────

async def _ping_mongo() -> dict:
    if _mongo_client is None:
        return {"status": "disconnected" if settings.MONGODB_ENABLED else "disabled"}
    start = time.perf_counter()
    try:
        await _mongo_client.admin.command("ping")
    except Exception as exc:
        return {"status": "unhealthy", "error": str(exc)}
    return {
        "status": "healthy",
        "host": settings.MONGODB_HOST,
        "database": settings.MONGODB_DATABASE,
        "latency_ms": round((time.perf_counter() - start) * 1000, 1),
    }


async def _ping_redis() -> dict:
    if _redis_client is None:
        return {"status": "disconnected" if settings.REDIS_ENABLED else "disabled"}
    start = time.perf_counter()
    try:
        await _redis_client.ping()
    except Exception as exc:
        return {"status": "unhealthy", "error": str(exc)}
    return {
        "status": "healthy",
        "host": settings.REDIS_HOST,
        "latency_ms": round((time.perf_counter() - start) * 1000, 1),
    }


async def check_health() -> dict:
    """MongoDB / Redis 连接状态与 ping 耗时"""
    return {"mongodb": await _ping_mongo(), "redis": await _ping_redis()}
