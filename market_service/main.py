"""
加密货币行情数据服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn market_service.main:app --host 0.0.0.0 --port 8002
    python -m market_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from market_service import __version__
from market_service.adapters.coinglass import get_coinglass_adapter
from market_service.adapters.coinmarketcap import get_cmc_adapter
from market_service.adapters.kraken import get_kraken_adapter
from market_service.adapters.llm import get_llm_adapter
from market_service.adapters.tatum import get_tatum_adapter
from market_service.config import settings
from market_service.db import close_connections, ensure_indexes, init_mongodb, init_redis
from market_service.errors import (
    InvalidSymbolError,
    MarketServiceError,
    ProviderError,
    ProviderNotConfiguredError,
    ResponseValidationError,
    UnsupportedSymbolError,
)
from market_service.routers import ai, auth, cache, derivatives, health, market, monitoring, stream, technical

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 Crypto Market DataService v{__version__} 启动中")
    logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info(f"   Providers : {', '.join(settings.PRICE_PROVIDER_ORDER)}")
    logger.info("=" * 60)

    # 初始化数据库连接（失败不阻断启动，降级运行）
    mongo_ok = await init_mongodb()
    if mongo_ok:
        await ensure_indexes()
    redis_ok = await init_redis()

    if mongo_ok and redis_ok:
        logger.info("✅ 所有数据库连接就绪")
    elif mongo_ok:
        logger.warning("⚠️ Redis 不可用，缓存降级为 MongoDB + 文件模式")
    elif redis_ok:
        logger.warning("⚠️ MongoDB 不可用，降级为 Redis + 文件模式，K 线与价格日志不会持久化")
    else:
        logger.warning("⚠️ 数据库均不可用，降级为文件缓存模式")

    for name, key in (
        ("CoinGlass", settings.COINGLASS_API_KEY),
        ("CoinMarketCap", settings.CMC_API_KEY),
        ("Tatum", settings.TATUM_API_KEY),
        ("LLM", settings.LLM_API_KEY),
    ):
        if not key:
            logger.warning(f"⚠️ {name} API Key 未配置，相关接口将返回 unavailable")

    yield

    logger.info("🔄 行情数据服务正在关闭...")
    for adapter in (
        get_kraken_adapter(),
        get_cmc_adapter(),
        get_tatum_adapter(),
        get_coinglass_adapter(),
        get_llm_adapter(),
    ):
        await adapter.aclose()
    await close_connections()
    logger.info("✅ 行情数据服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="Crypto Market 行情数据服务",
    description=(
        "加密货币行情与衍生品数据微服务，提供以下功能：\n"
        "- 📊 现货行情（Kraken / CoinMarketCap / Tatum）\n"
        "- 📉 衍生品数据（CoinGlass 资金费率 / 持仓 / 爆仓 / 多空比 / 基差）\n"
        "- 📈 技术指标与多因子共振信号\n"
        "- 🤖 AI 市场摘要与交易决策（LLM 网关）\n"
        "- 🔐 用户认证（JWT）\n"
        "- 🗄️ 多级缓存（Redis → MongoDB → 文件）\n\n"
        "**分层架构**\n"
        "```\n"
        "Adapters          ← 各数据提供商 REST / WebSocket 客户端（限流 + 重试）\n"
        "Validation Layer  ← 上游响应结构校验\n"
        "Cache Layer       ← Redis / MongoDB / 文件三级缓存\n"
        "Processing Layer  ← K 线清洗、聚合、标准化\n"
        "Analysis Layer    ← 技术指标与信号计算\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 异常处理 ──────────────────────────────────────────────
def _error_response(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "message": str(exc)},
    )


@app.exception_handler(InvalidSymbolError)
async def invalid_symbol_handler(request: Request, exc: InvalidSymbolError):
    return _error_response(400, "无效的交易对", exc)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error_response(400, "请求参数错误", exc)


@app.exception_handler(UnsupportedSymbolError)
async def unsupported_symbol_handler(request: Request, exc: UnsupportedSymbolError):
    return _error_response(422, "数据提供商不支持该交易对", exc)


@app.exception_handler(ProviderNotConfiguredError)
async def provider_not_configured_handler(request: Request, exc: ProviderNotConfiguredError):
    return _error_response(503, "数据提供商未配置", exc)


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    logger.error(f"上游调用失败: {exc}")
    return _error_response(502, "上游数据提供商错误", exc)


@app.exception_handler(ResponseValidationError)
async def response_validation_handler(request: Request, exc: ResponseValidationError):
    logger.error(f"上游响应校验失败: {exc}")
    return _error_response(502, "上游响应格式异常", exc)


@app.exception_handler(MarketServiceError)
async def market_service_error_handler(request: Request, exc: MarketServiceError):
    logger.error(f"行情服务异常: {exc}")
    return _error_response(500, "行情服务异常", exc)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "内部服务错误", "message": str(exc)},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(market.router)
app.include_router(derivatives.router)
app.include_router(technical.router)
app.include_router(ai.router)
app.include_router(monitoring.router)
app.include_router(cache.router)
app.include_router(stream.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Crypto Market DataService",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "market_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
