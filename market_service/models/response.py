"""统一 API 响应模型"""

from typing import Any, Optional
from pydantic import BaseModel


class ApiResponse(BaseModel):
    """标准 API 响应封装"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "success") -> "ApiResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: str, message: str = "failed", data: Any = None) -> "ApiResponse":
        return cls(success=False, error=error, message=message, data=data)

    @classmethod
    def from_payload(cls, data: Any, message: str = "success") -> "ApiResponse":
        """上游降级时 data 带 unavailable 标记，success 仍为 True 以便前端展示占位数据"""
        if isinstance(data, dict) and data.get("unavailable"):
            return cls(success=True, data=data, message=data.get("message") or "数据暂不可用")
        if isinstance(data, dict) and data.get("cached"):
            return cls(success=True, data=data, message=f"上游不可用，返回 {data.get('cache_age', 0)}s 前的缓存")
        return cls(success=True, data=data, message=message)
