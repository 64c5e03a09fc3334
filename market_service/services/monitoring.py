"""
上游调用监控
进程内记录每个端点最近 100 次调用的成功率、耗时与错误，并提供简单计数器。
"""

import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_CALLS_PER_ENDPOINT = 100
SLOW_CALL_MS = 5000


@dataclass
class CallRecord:
    endpoint: str
    symbol: str
    success: bool
    response_time_ms: float
    timestamp: float
    error: Optional[str] = None


class MonitoringService:
    """端点健康统计与计数器"""

    def __init__(self, max_calls: int = MAX_CALLS_PER_ENDPOINT):
        self.max_calls = max_calls
        self._calls: Dict[str, Deque[CallRecord]] = {}
        self._metrics: Dict[str, float] = {}

    # ── 调用记录 ──────────────────────────────────────────

    def track_call(self, record: CallRecord) -> None:
        calls = self._calls.setdefault(record.endpoint, deque(maxlen=self.max_calls))
        calls.append(record)
        if not record.success:
            logger.error(f"🔴 上游调用失败 [{record.endpoint}] {record.symbol}: {record.error}")
        elif record.response_time_ms > SLOW_CALL_MS:
            logger.warning(
                f"🐌 上游响应缓慢 [{record.endpoint}] {record.symbol}: {record.response_time_ms:.0f}ms"
            )

    async def monitored_call(
        self, endpoint: str, symbol: str, fn: Callable[[], Awaitable[T]]
    ) -> T:
        """执行 fn 并记录结果，异常原样抛出"""
        start = time.monotonic()
        try:
            result = await fn()
        except Exception as exc:
            self.track_call(CallRecord(
                endpoint=endpoint,
                symbol=symbol,
                success=False,
                response_time_ms=(time.monotonic() - start) * 1000,
                timestamp=time.time(),
                error=getattr(exc, "message", None) or str(exc),
            ))
            raise
        self.track_call(CallRecord(
            endpoint=endpoint,
            symbol=symbol,
            success=True,
            response_time_ms=(time.monotonic() - start) * 1000,
            timestamp=time.time(),
        ))
        return result

    # ── 健康统计 ──────────────────────────────────────────

    def endpoint_health(self, endpoint: str) -> Optional[Dict[str, Any]]:
        calls = self._calls.get(endpoint)
        if not calls:
            return None
        total = len(calls)
        success = sum(1 for c in calls if c.success)
        last_error = next((c for c in reversed(calls) if not c.success), None)
        return {
            "endpoint": endpoint,
            "total_calls": total,
            "success_count": success,
            "error_count": total - success,
            "average_response_time": round(sum(c.response_time_ms for c in calls) / total),
            "success_rate": round(success / total * 100, 2),
            "last_error": last_error.error if last_error else None,
            "last_error_time": last_error.timestamp if last_error else None,
        }

    def all_health(self) -> Dict[str, Dict[str, Any]]:
        result = {}
        for endpoint in self._calls:
            health = self.endpoint_health(endpoint)
            if health is not None:
                result[endpoint] = health
        return result

    def is_healthy(self, endpoint: str, min_success_rate: float = 70.0) -> bool:
        """无调用记录时视为健康"""
        health = self.endpoint_health(endpoint)
        if health is None:
            return True
        return health["success_rate"] >= min_success_rate

    def health_report(self) -> str:
        all_health = self.all_health()
        if not all_health:
            return "No API health data available"
        lines: List[str] = ["=== API Health Report ==="]
        now = time.time()
        for endpoint, h in all_health.items():
            rate = h["success_rate"]
            mark = "✅" if rate >= 90 else "⚠️" if rate >= 70 else "❌"
            lines.append(
                f"{mark} {endpoint}: {rate}% success ({h['success_count']}/{h['total_calls']}) "
                f"avg: {h['average_response_time']}ms"
            )
            if h["last_error"]:
                age = round(now - (h["last_error_time"] or 0))
                lines.append(f"   Last error ({age}s ago): {h['last_error']}")
        lines.append("========================")
        return "\n".join(lines)

    # ── 计数器 ────────────────────────────────────────────

    @staticmethod
    def _metric_key(name: str, context: Optional[Dict[str, str]] = None) -> str:
        if not context:
            return name
        return f"{name}:{json.dumps(context, sort_keys=True)}"

    def track_metric(self, name: str, value: float = 1, context: Optional[Dict[str, str]] = None) -> None:
        key = self._metric_key(name, context)
        self._metrics[key] = self._metrics.get(key, 0) + value
        logger.debug(f"metric {key} += {value}")

    def get_metric(self, name: str, context: Optional[Dict[str, str]] = None) -> float:
        return self._metrics.get(self._metric_key(name, context), 0)

    def get_all_metrics(self) -> Dict[str, float]:
        return dict(self._metrics)

    def reset(self) -> None:
        self._calls.clear()
        self._metrics.clear()


# ── 模块级别单例 ──────────────────────────────────────────
_monitoring: Optional[MonitoringService] = None


def get_monitoring_service() -> MonitoringService:
    global _monitoring
    if _monitoring is None:
        _monitoring = MonitoringService()
    return _monitoring
