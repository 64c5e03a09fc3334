"""健康检查路由"""

import time
from pathlib import Path

from fastapi import APIRouter

from market_service import __version__
from market_service.config import settings
from market_service.db import check_health

router = APIRouter(tags=["健康检查"])


def _read_version() -> str:
    vf = Path(__file__).parent.parent.parent / "VERSION"
    try:
        if vf.exists():
            return vf.read_text(encoding="utf-8").strip()
    except OSError:
        pass
    return __version__


def _provider_config() -> dict:
    """各数据提供商 API Key 是否已配置（Kraken 为公开接口）"""
    return {
        "kraken": True,
        "coinglass": bool(settings.COINGLASS_API_KEY),
        "coinmarketcap": bool(settings.CMC_API_KEY),
        "tatum": bool(settings.TATUM_API_KEY),
        "llm": bool(settings.LLM_API_KEY),
    }


@router.get("/health")
async def health():
    """服务健康检查"""
    db_health = await check_health()
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": _read_version(),
            "timestamp": int(time.time()),
            "service": "Crypto Market DataService",
            "databases": db_health,
            "providers": _provider_config(),
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes 存活检查"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes 就绪检查"""
    return {"ready": True}
