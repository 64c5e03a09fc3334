"""
AI 分析服务
  - 快速摘要：LLM 工具调用 quick_analysis，结果缓存 15 分钟，失败时按关键词给出兜底结论
  - 交易决策：日内交易规则集系统提示词，解析回复中的第一个 JSON 对象，失败时返回 NO TRADE
  - 分析师对话：多轮对话，可附带交易对的本地行情上下文（最近 1h K 线与价格日志）
"""

import hashlib
import json
import logging
import re
from typing import Any, Dict, List, Optional

from market_service.adapters.llm import LLMGatewayAdapter, get_llm_adapter
from market_service.config import settings
from market_service.errors import MarketServiceError, ProviderError
from market_service.layers.cache import CacheLayer, get_cache_layer
from market_service.layers.storage import CandleStore, get_candle_store
from market_service.services.monitoring import get_monitoring_service
from market_service.symbols import normalize_symbol

logger = logging.getLogger(__name__)

SENTIMENT_SCALE: List[str] = [
    "EXTREME FEAR", "HIGH FEAR", "FEAR", "MILD FEAR", "NEUTRAL",
    "MILD GREED", "GREED", "HIGH GREED", "EXTREME GREED", "EUPHORIA", "MAX EUPHORIA",
]

QUICK_SYSTEM_PROMPT = (
    "You are a rapid trading analyst. Give a concise market read for the requested symbol "
    "in two or three sentences. Do not write Pine Script or any code. "
    "Always answer by calling the quick_analysis function."
)

QUICK_ANALYSIS_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "quick_analysis",
        "description": "Return a short structured market analysis",
        "parameters": {
            "type": "object",
            "properties": {
                "summary": {"type": "string", "description": "2-3 sentence market summary"},
                "signal": {"type": "string", "enum": ["LONG", "SHORT", "NEUTRAL"]},
                "sentiment": {"type": "string", "enum": SENTIMENT_SCALE},
                "confidence": {
                    "type": "string",
                    "pattern": "^[0-9]{1,3}%$",
                    "description": "Confidence as a percentage, e.g. 72%",
                },
            },
            "required": ["summary", "signal", "sentiment", "confidence"],
            "additionalProperties": False,
        },
    },
}

DECISION_SYSTEM_PROMPT = """You are a Day-Trading AI Decision Engine. You receive multi-timeframe price data (1m, 5m, 15m, 1h), EMAs, and CoinGlass sentiment data.

Your ONLY job is to decide: LONG, SHORT, or NO TRADE.

NEVER FORCE A TRADE. Only trade when ALL conditions align.

=== DAY TRADING RULESET ===

1. TREND CONFIRMATION
   - 15m must align with 1h trend; 5m must agree with 15m; 1m provides entry trigger
   - Bullish: price above 50 EMA on 5m, 15m, 1h + higher highs/lows + upward EMA slope
   - Bearish: price below 50 EMA on 5m, 15m, 1h + lower highs/lows + downward EMA slope
   - If any timeframe disagrees -> NO TRADE

2. COINGLASS MARKET BIAS
   - LONG allowed when funding is neutral or slightly negative, open interest rises with price,
     long/short ratio is NOT crowded and downside liquidity was swept
   - SHORT allowed when funding is positive and rising, open interest rises with falling price,
     long/short ratio is crowded on longs and upside liquidity was swept
   - If unclear -> NO TRADE

3. VOLUME CONFIRMATION
   - LONG: rising bullish volume, green delta > previous red delta
   - SHORT: rising bearish volume, red delta > previous green delta
   - If weak or inconsistent -> NO TRADE

4. LIQUIDITY CONDITIONS
   - Do NOT enter into liquidity; only trade AFTER a liquidity sweep (recent high/low sweep,
     stop-hunt wick, false breakout)
   - If no liquidity swept -> NO TRADE

5. ENTRY TRIGGER (1-MINUTE ONLY)
   - LONG: retest of 5m structure + bullish engulfing + RSI > 50 + volume spike + downside stop-hunt wick
   - SHORT: rejection from 5m structure + bearish engulfing + RSI < 50 + volume spike + upside stop-hunt wick
   - If no clear entry signal -> NO TRADE

6. RISK CONDITIONS
   - Safe market conditions only: low spread, stable volatility (no extreme wicks)
   - If risky -> NO TRADE

=== OUTPUT FORMAT ===
Return JSON with this EXACT structure:
{
  "decision": "LONG" | "SHORT" | "NO TRADE",
  "confidence": 0-100,
  "summary": {
    "trend": "explanation of multi-timeframe alignment",
    "volume": "explanation of volume conditions",
    "liquidity": "explanation of liquidity sweep status",
    "coinglass": "explanation of funding, OI, long/short sentiment",
    "entryTrigger": "explanation of 1m entry signal"
  },
  "action": {
    "entry": price level (if LONG or SHORT, otherwise null),
    "stopLoss": price level (if LONG or SHORT, otherwise null),
    "takeProfit": price level (if LONG or SHORT, otherwise null),
    "reason": "detailed explanation of why NO TRADE" (if NO TRADE, otherwise null)
  }
}"""

CHAT_SYSTEM_PROMPT = """You are a decisive crypto trading AI. Give SHORT, CLEAR signals - not long explanations.

When analyzing symbols with market data, provide:
1. SIGNAL: BUY / SELL / HOLD (pick ONE)
2. CONFIDENCE: High / Medium / Low
3. KEY REASON: One sentence why
4. PRICE TARGET: If buying/selling, where to enter/exit

Keep responses under 100 words. Be decisive. No hedging."""

MAX_CHAT_MESSAGES = 50
MAX_CHAT_MESSAGE_LENGTH = 10000
MAX_CHAT_SYMBOL_LENGTH = 20
CHAT_ROLES = ("user", "assistant")

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_CONFIDENCE_RE = re.compile(r"^[0-9]{1,3}%$")


def keyword_fallback(query: str, symbol: str) -> Dict[str, Any]:
    """LLM 不可用时按关键词给出方向"""
    q = query.lower()
    if any(word in q for word in ("bull", "buy", "long")):
        signal, sentiment = "LONG", "MILD GREED"
    elif any(word in q for word in ("bear", "sell", "short")):
        signal, sentiment = "SHORT", "MILD FEAR"
    else:
        signal, sentiment = "NEUTRAL", "NEUTRAL"
    return {
        "summary": (
            f"Quick analysis for {symbol} indicates a {signal.lower()} market bias "
            f"with {sentiment.lower()} sentiment."
        ),
        "signal": signal,
        "sentiment": sentiment,
        "confidence": "70%",
        "fallback": True,
    }


def no_trade_decision(reason: str, detail: str) -> Dict[str, Any]:
    return {
        "decision": "NO TRADE",
        "confidence": 0,
        "summary": {
            "trend": detail,
            "volume": detail,
            "liquidity": detail,
            "coinglass": detail,
            "entryTrigger": detail,
        },
        "action": {
            "entry": None,
            "stopLoss": None,
            "takeProfit": None,
            "reason": reason,
        },
    }


def parse_decision(content: str) -> Optional[Dict[str, Any]]:
    """提取回复中的第一个 JSON 对象，decision 字段缺失或非法时返回 None"""
    if not content:
        return None
    match = _JSON_OBJECT_RE.search(content)
    try:
        decision = json.loads(match.group(0) if match else content)
    except ValueError:
        return None
    if not isinstance(decision, dict) or decision.get("decision") not in ("LONG", "SHORT", "NO TRADE"):
        return None
    return decision


def validate_chat_messages(messages: Any) -> List[Dict[str, str]]:
    """校验对话历史：非空、最多 50 条、角色为 user / assistant、单条内容不超过 10000 字符"""
    if not isinstance(messages, list) or not messages:
        raise ValueError("messages 不能为空")
    if len(messages) > MAX_CHAT_MESSAGES:
        raise ValueError(f"对话消息过多（最多 {MAX_CHAT_MESSAGES} 条）")
    cleaned: List[Dict[str, str]] = []
    for msg in messages:
        if not isinstance(msg, dict):
            raise ValueError("消息格式错误")
        role, content = msg.get("role"), msg.get("content")
        if role not in CHAT_ROLES:
            raise ValueError(f"不支持的消息角色: {role!r}")
        if not isinstance(content, str) or not content.strip():
            raise ValueError("消息内容不能为空")
        if len(content) > MAX_CHAT_MESSAGE_LENGTH:
            raise ValueError(f"消息内容过长（最多 {MAX_CHAT_MESSAGE_LENGTH} 字符）")
        cleaned.append({"role": role, "content": content})
    return cleaned


def build_market_context(
    symbol: str, candles: List[Dict[str, Any]], price_logs: List[Dict[str, Any]]
) -> str:
    """本地 K 线（时间升序）与价格日志 → 附加在系统提示词后的行情摘要"""
    if not candles and not price_logs:
        return ""
    lines = [f"=== MARKET DATA FOR {symbol} ==="]
    if candles:
        oldest, latest = candles[0], candles[-1]
        open_price = float(oldest["open"])
        change = (float(latest["close"]) - open_price) / open_price * 100 if open_price else 0.0
        avg_volume = sum(float(c.get("volume") or 0) for c in candles) / len(candles)
        lines += [
            f"Recent Candles (1h, last {len(candles)}):",
            f"- Latest Close: ${float(latest['close'])}",
            f"- High: ${max(float(c['high']) for c in candles)}",
            f"- Low: ${min(float(c['low']) for c in candles)}",
            f"- Price Change: {change:.2f}%",
            f"- Avg Volume: {avg_volume:.2f}",
        ]
    if price_logs:
        lines.append(f"Price History ({len(price_logs)} data points available)")
    return "\n".join(lines)


def _parse_quick_analysis(message: Dict[str, Any]) -> Dict[str, Any]:
    calls = message.get("tool_calls") or []
    if not calls:
        raise ValueError("LLM 未调用 quick_analysis")
    args = json.loads(calls[0]["function"]["arguments"])
    if args.get("signal") not in ("LONG", "SHORT", "NEUTRAL"):
        raise ValueError(f"非法 signal: {args.get('signal')!r}")
    if args.get("sentiment") not in SENTIMENT_SCALE:
        raise ValueError(f"非法 sentiment: {args.get('sentiment')!r}")
    if not _CONFIDENCE_RE.match(str(args.get("confidence", ""))):
        raise ValueError(f"非法 confidence: {args.get('confidence')!r}")
    return {
        "summary": str(args.get("summary", "")),
        "signal": args["signal"],
        "sentiment": args["sentiment"],
        "confidence": args["confidence"],
    }


class AIService:
    """LLM 分析服务"""

    def __init__(
        self,
        llm: Optional[LLMGatewayAdapter] = None,
        cache: Optional[CacheLayer] = None,
        store: Optional[CandleStore] = None,
    ):
        self._llm = llm or get_llm_adapter()
        self._cache = cache or get_cache_layer()
        self._store = store or get_candle_store()
        self._monitor = get_monitoring_service()

    @staticmethod
    def quick_cache_key(query: str, symbol: str) -> str:
        raw = f"quick-{query.strip().lower()}-{symbol.upper()}"
        return hashlib.sha256(raw.encode()).hexdigest()

    async def quick_summary(self, query: str, symbol: str) -> Dict[str, Any]:
        if not query or not query.strip():
            raise ValueError("query 不能为空")
        symbol = normalize_symbol(symbol)
        key = self.quick_cache_key(query, symbol)

        cached = await self._cache.get("ai_quick", key)
        if cached is not None:
            logger.info(f"✅ 快速摘要缓存命中: {symbol}")
            return {**cached, "cached": True}

        try:
            data = await self._monitor.monitored_call(
                "llm_quick_summary", symbol,
                lambda: self._llm.chat_completion(
                    [
                        {"role": "system", "content": QUICK_SYSTEM_PROMPT},
                        {"role": "user", "content": f"Symbol: {symbol}\nQuestion: {query.strip()}"},
                    ],
                    tools=[QUICK_ANALYSIS_TOOL],
                    tool_choice={"type": "function", "function": {"name": "quick_analysis"}},
                ),
            )
            result = _parse_quick_analysis(LLMGatewayAdapter.message_of(data))
        except (MarketServiceError, ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning(f"⚠️ 快速摘要生成失败，使用关键词兜底 {symbol}: {exc}")
            self._monitor.track_metric("ai_quick_fallback", 1)
            return {**keyword_fallback(query, symbol), "symbol": symbol}

        result["symbol"] = symbol
        await self._cache.set(result, "ai_quick", key, ttl=settings.AI_SUMMARY_CACHE_TTL)
        logger.info(f"🤖 {symbol} 快速摘要: {result['signal']} / {result['sentiment']} ({result['confidence']})")
        return result

    async def trading_decision(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """payload 为多周期行情与 CoinGlass 数据，原样作为用户消息发送"""
        symbol = str(payload.get("symbol") or "UNKNOWN")
        logger.info(f"🤖 AI 决策引擎分析: {symbol}")
        try:
            data = await self._monitor.monitored_call(
                "llm_trading_decision", symbol,
                lambda: self._llm.chat_completion(
                    [
                        {"role": "system", "content": DECISION_SYSTEM_PROMPT},
                        {"role": "user", "content": json.dumps(payload, default=str)},
                    ],
                    temperature=0.3,
                    max_tokens=2000,
                ),
            )
        except MarketServiceError as exc:
            logger.error(f"❌ AI 决策调用失败 {symbol}: {exc.message}")
            return no_trade_decision(f"System error: {exc.message}", "Error occurred")

        content = LLMGatewayAdapter.message_of(data).get("content") or ""
        decision = parse_decision(content)
        if decision is None:
            logger.error(f"❌ AI 决策解析失败 {symbol}: {content[:200]}")
            return no_trade_decision("AI response parsing failed", "Unable to analyze")
        logger.info(f"✅ {symbol} AI 决策: {decision['decision']} ({decision.get('confidence')})")
        return decision

    async def chat(self, messages: Any, symbol: Optional[str] = None) -> Dict[str, Any]:
        """
        分析师多轮对话

        symbol 非空时从本地存储读取最近 100 根 1h K 线与 50 条价格日志作为上下文；
        LLM 调用失败时直接抛出，由路由层映射为 502 / 503。
        """
        history = validate_chat_messages(messages)
        context = ""
        if symbol:
            if len(symbol) > MAX_CHAT_SYMBOL_LENGTH:
                raise ValueError("symbol 格式错误")
            symbol = normalize_symbol(symbol)
            candles = await self._store.get_candles(symbol, "1h", limit=100)
            price_logs = await self._store.get_price_logs(symbol, limit=50)
            context = build_market_context(symbol, candles, price_logs)
            logger.info(f"💬 {symbol} 对话上下文: {len(candles)} 根 K 线, {len(price_logs)} 条价格日志")

        system_prompt = f"{CHAT_SYSTEM_PROMPT}\n\n{context}" if context else CHAT_SYSTEM_PROMPT
        data = await self._monitor.monitored_call(
            "llm_chat", symbol or "GENERAL",
            lambda: self._llm.chat_completion(
                [{"role": "system", "content": system_prompt}, *history]
            ),
        )
        reply = LLMGatewayAdapter.message_of(data).get("content") or ""
        if not reply.strip():
            raise ProviderError("llm", "对话回复为空")
        return {
            "reply": reply,
            "symbol": symbol,
            "model": data.get("model"),
            "context_included": bool(context),
        }


# ── 模块级别单例 ──────────────────────────────────────────
_ai_service: Optional[AIService] = None


def get_ai_service() -> AIService:
    global _ai_service
    if _ai_service is None:
        _ai_service = AIService()
    return _ai_service
