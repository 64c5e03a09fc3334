"""
领域异常定义
由 main.py 中注册的异常处理器统一映射为 JSON 响应
"""

from typing import List, Optional


class MarketServiceError(Exception):
    """行情服务异常基类"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidSymbolError(MarketServiceError):
    """交易对格式非法"""

    def __init__(self, symbol: Optional[str], reason: str):
        super().__init__(f"无效的交易对 {symbol!r}: {reason}")
        self.symbol = symbol
        self.reason = reason


class UnsupportedSymbolError(MarketServiceError):
    """数据提供商不支持该交易对"""

    def __init__(self, symbol: str, provider: str, reason: str = ""):
        super().__init__(reason or f"{provider} 不支持交易对 {symbol}")
        self.symbol = symbol
        self.provider = provider


class ProviderError(MarketServiceError):
    """数据提供商调用失败（网络错误或非 2xx 响应）"""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"[{provider}] {message}")
        self.provider = provider
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """429 与 5xx 可重试，其余 HTTP 错误直接失败"""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class ProviderNotConfiguredError(ProviderError):
    """数据提供商 API Key 未配置"""

    def __init__(self, provider: str, setting_name: str):
        super().__init__(provider, f"{setting_name} 未配置")
        self.setting_name = setting_name

    @property
    def retryable(self) -> bool:
        return False


class ResponseValidationError(MarketServiceError):
    """上游响应结构校验失败"""

    def __init__(self, source: str, errors: List[str], warnings: Optional[List[str]] = None):
        super().__init__(f"[{source}] 响应校验失败: {'; '.join(errors)}")
        self.source = source
        self.errors = errors
        self.warnings = warnings or []
