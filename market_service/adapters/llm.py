"""
LLM 网关适配器
OpenAI 兼容的 /chat/completions 接口，鉴权头 Authorization: Bearer <LLM_API_KEY>
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from market_service.adapters.http import ProviderClient, RetryPolicy
from market_service.config import settings
from market_service.errors import ProviderError

logger = logging.getLogger(__name__)


class LLMGatewayAdapter(ProviderClient):
    name = "llm"
    key_setting = "LLM_API_KEY"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url=base_url or settings.LLM_GATEWAY_URL,
            api_key=settings.LLM_API_KEY if api_key is None else api_key,
            retry=RetryPolicy(max_attempts=2, initial_delay=1.0, max_delay=4.0),
            timeout=settings.LLM_TIMEOUT,
            transport=transport,
        )
        self.model = model or settings.LLM_MODEL

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def chat_completion(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Dict[str, Any]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """返回网关原始响应（choices[0].message 中包含 content 或 tool_calls）"""
        body: Dict[str, Any] = {"model": self.model, "messages": messages}
        if tools:
            body["tools"] = tools
        if tool_choice:
            body["tool_choice"] = tool_choice
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens is not None:
            body["max_tokens"] = max_tokens

        data = await self.post_json("/chat/completions", body)
        if not isinstance(data, dict) or not data.get("choices"):
            raise ProviderError(self.name, "响应缺少 choices 字段")
        return data

    @staticmethod
    def message_of(data: Dict[str, Any]) -> Dict[str, Any]:
        return (data.get("choices") or [{}])[0].get("message") or {}

    async def ping(self) -> bool:
        """健康检查：发送一条最短对话"""
        try:
            await self.chat_completion(
                [{"role": "user", "content": "ping"}], max_tokens=1
            )
            return True
        except ProviderError as exc:
            logger.warning(f"LLM 网关不可用: {exc.message}")
            return False


# ── 模块级别单例 ──────────────────────────────────────────
_llm: Optional[LLMGatewayAdapter] = None


def get_llm_adapter() -> LLMGatewayAdapter:
    global _llm
    if _llm is None:
        _llm = LLMGatewayAdapter()
    return _llm
