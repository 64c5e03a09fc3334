"""
AI 分析路由
POST /api/ai/quick-summary     - 快速市场摘要（缓存 15 分钟）
POST /api/ai/trading-decision  - 日内交易决策（LONG / SHORT / NO TRADE）
POST /api/ai/chat              - 分析师多轮对话（可附带交易对行情上下文）
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from market_service.models.response import ApiResponse
from market_service.routers.auth import get_current_user
from market_service.services.ai_service import get_ai_service

router = APIRouter(prefix="/api/ai", tags=["AI 分析"])


class QuickSummaryRequest(BaseModel):
    query: Optional[str] = None
    symbol: Optional[str] = None


class TradingDecisionRequest(BaseModel):
    """多周期 K 线、EMA 与 CoinGlass 数据，字段由前端自由组织"""
    symbol: str
    data: Dict[str, Any] = Field(default_factory=dict)


@router.post("/quick-summary", response_model=ApiResponse)
async def quick_summary(body: QuickSummaryRequest, current_user: dict = Depends(get_current_user)):
    if not body.query or not body.query.strip() or not body.symbol:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="query 和 symbol 均不能为空")
    result = await get_ai_service().quick_summary(body.query, body.symbol)
    return ApiResponse.ok(data=result)


@router.post("/trading-decision", response_model=ApiResponse)
async def trading_decision(body: TradingDecisionRequest, current_user: dict = Depends(get_current_user)):
    decision = await get_ai_service().trading_decision({"symbol": body.symbol, **body.data})
    return ApiResponse.ok(data=decision)


class ChatMessage(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    """消息条数、角色与长度由服务层校验"""
    messages: List[ChatMessage] = Field(default_factory=list)
    symbol: Optional[str] = None


@router.post("/chat", response_model=ApiResponse)
async def chat(body: ChatRequest, current_user: dict = Depends(get_current_user)):
    messages = [m.model_dump() for m in body.messages]
    result = await get_ai_service().chat(messages, body.symbol)
    return ApiResponse.ok(data=result)
