"""
行情数据服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class MarketServiceSettings(BaseSettings):
    """行情数据服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── MongoDB 配置（支持服务发现） ───────────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="crypto_dashboard")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_ENABLED: bool = Field(default=True)
    MONGO_MAX_CONNECTIONS: int = Field(default=50)
    MONGO_MIN_CONNECTIONS: int = Field(default=5)
    MONGO_CONNECT_TIMEOUT_MS: int = Field(default=30000)
    MONGO_SOCKET_TIMEOUT_MS: int = Field(default=60000)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── Redis 配置（支持服务发现） ─────────────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── JWT / 认证配置 ─────────────────────────────────────
    JWT_SECRET: str = Field(default="change-me-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=60)
    ADMIN_USERNAME: str = Field(default="admin")
    ADMIN_PASSWORD: str = Field(default="admin123")

    # ── 数据提供商配置 ─────────────────────────────────────
    COINGLASS_API_KEY: str = Field(default="")
    COINGLASS_BASE_URL: str = Field(default="https://open-api-v4.coinglass.com")
    COINGLASS_MAX_REQUESTS_PER_MINUTE: int = Field(default=25)  # 官方限额 30/min，留余量
    TATUM_API_KEY: str = Field(default="")
    TATUM_BASE_URL: str = Field(default="https://api.tatum.io")
    CMC_API_KEY: str = Field(default="")
    CMC_BASE_URL: str = Field(default="https://pro-api.coinmarketcap.com")
    KRAKEN_BASE_URL: str = Field(default="https://api.kraken.com")
    KRAKEN_WS_URL: str = Field(default="wss://ws.kraken.com")
    PRICE_PROVIDER_ORDER: List[str] = Field(
        default_factory=lambda: ["kraken", "coinmarketcap", "tatum"]
    )
    HTTP_TIMEOUT: float = Field(default=15.0)

    # ── LLM 网关配置 ───────────────────────────────────────
    LLM_API_KEY: str = Field(default="")
    LLM_GATEWAY_URL: str = Field(default="https://ai.gateway.lovable.dev/v1")
    LLM_MODEL: str = Field(default="google/gemini-2.5-flash")
    LLM_TIMEOUT: float = Field(default=60.0)

    # ── 重试配置 ──────────────────────────────────────────
    RETRY_MAX_ATTEMPTS: int = Field(default=3)
    RETRY_INITIAL_DELAY: float = Field(default=0.5)
    RETRY_MAX_DELAY: float = Field(default=5.0)

    # ── 缓存配置（秒） ────────────────────────────────────
    CACHE_TTL: int = Field(default=60)                  # 通用缓存 TTL
    PRICE_CACHE_TTL: int = Field(default=30)
    QUOTES_CACHE_TTL: int = Field(default=60)
    GLOBAL_METRICS_CACHE_TTL: int = Field(default=300)
    CANDLES_CACHE_TTL: int = Field(default=60)
    PAIRS_CACHE_TTL: int = Field(default=86400)
    FUNDING_RATE_CACHE_TTL: int = Field(default=900)
    CURRENT_FUNDING_CACHE_TTL: int = Field(default=14400)
    FUNDING_RATE_LIST_CACHE_TTL: int = Field(default=600)
    DERIVATIVES_CACHE_TTL: int = Field(default=300)     # 持仓 / 爆仓 / 多空比 / 主动买卖
    FUTURES_BASIS_CACHE_TTL: int = Field(default=900)
    FEAR_GREED_CACHE_TTL: int = Field(default=3600)
    AI_SUMMARY_CACHE_TTL: int = Field(default=900)
    STALE_CACHE_MAX_AGE: int = Field(default=300)       # 上游失败时允许返回的旧缓存最大年龄
    CACHE_DIR: str = Field(default="./cache")           # 文件缓存目录

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    TZ: str = Field(default="UTC")


@lru_cache
def get_settings() -> MarketServiceSettings:
    """获取全局配置（单例）"""
    return MarketServiceSettings()


settings = get_settings()
