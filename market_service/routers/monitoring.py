"""
上游监控路由
GET  /api/monitoring/providers  - 各端点成功率、耗时、限流器状态与计数器
POST /api/monitoring/reset      - 清空监控数据（管理员）
"""

from fastapi import APIRouter, Depends

from market_service.adapters.coinglass import get_coinglass_adapter
from market_service.adapters.coinmarketcap import get_cmc_adapter
from market_service.adapters.kraken import get_kraken_adapter
from market_service.adapters.llm import get_llm_adapter
from market_service.adapters.tatum import get_tatum_adapter
from market_service.models.response import ApiResponse
from market_service.routers.auth import get_current_user, require_admin
from market_service.services.monitoring import get_monitoring_service

router = APIRouter(prefix="/api/monitoring", tags=["监控"])


def _providers():
    return [
        get_kraken_adapter(),
        get_cmc_adapter(),
        get_tatum_adapter(),
        get_coinglass_adapter(),
        get_llm_adapter(),
    ]


@router.get("/providers", response_model=ApiResponse)
async def provider_health(current_user: dict = Depends(get_current_user)):
    monitor = get_monitoring_service()
    endpoints = monitor.all_health()
    for endpoint, stats in endpoints.items():
        stats["healthy"] = monitor.is_healthy(endpoint)

    providers = {
        p.name: {"configured": p.configured, "limiters": p.limiter_stats()}
        for p in _providers()
    }
    return ApiResponse.ok(data={
        "endpoints": endpoints,
        "providers": providers,
        "metrics": monitor.get_all_metrics(),
        "report": monitor.health_report(),
    })


@router.post("/reset", response_model=ApiResponse)
async def reset_monitoring(admin: dict = Depends(require_admin)):
    get_monitoring_service().reset()
    return ApiResponse.ok(message="监控数据已清空")
