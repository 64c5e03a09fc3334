"""
交易对格式化与校验工具
统一处理 BTC / BTCUSDT / BTC-USD / XBT/USD 等不同写法在各数据提供商之间的转换
"""

import logging
import re
from typing import Dict, Optional, Tuple

from market_service.errors import InvalidSymbolError

logger = logging.getLogger(__name__)

_SYMBOL_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9/\-]*$")
_MAX_SYMBOL_LENGTH = 20
_QUOTE_SUFFIXES = ("USDT", "USDC", "USD")

# CoinGlass Hobbyist 套餐仅覆盖主流 USDT 永续合约
COINGLASS_MAJOR_COINS = frozenset(
    ["BTC", "ETH", "BNB", "XRP", "ADA", "SOL", "DOGE", "MATIC", "DOT", "AVAX"]
)

# 需要更高套餐的接口 → 允许的币种
_ENDPOINT_WHITELIST: Dict[str, frozenset] = {
    "futures_basis": frozenset(["BTC", "ETH"]),
}

# ── Kraken 交易对映射 ─────────────────────────────────────
KRAKEN_SYMBOL_MAP: Dict[str, str] = {
    "BTCUSDT": "XXBTZUSD",
    "ETHUSDT": "XETHZUSD",
    "XRPUSDT": "XXRPZUSD",
    "SOLUSDT": "SOLUSD",
    "BNBUSDT": "BNBUSD",
    "ADAUSDT": "ADAUSD",
    "DOGEUSDT": "XDGUSD",
    "MATICUSDT": "MATICUSD",
    "DOTUSDT": "DOTUSD",
    "AVAXUSDT": "AVAXUSD",
    "LINKUSDT": "LINKUSD",
    "UNIUSDT": "UNIUSD",
    "ATOMUSDT": "ATOMUSD",
    "LTCUSDT": "XLTCZUSD",
    "ETCUSDT": "XETCZUSD",
    "XLMUSDT": "XXLMZUSD",
    "PAXGUSDT": "PAXGUSD",
}

_KRAKEN_REVERSE_MAP: Dict[str, str] = {v: k for k, v in KRAKEN_SYMBOL_MAP.items()}

_KRAKEN_WS_MAP: Dict[str, str] = {
    "XXBTZUSD": "XBT/USD",
    "XETHZUSD": "ETH/USD",
    "XXRPZUSD": "XRP/USD",
    "XDGUSD": "DOGE/USD",
    "XLTCZUSD": "LTC/USD",
    "XETCZUSD": "ETC/USD",
    "XXLMZUSD": "XLM/USD",
}


def validate_symbol(symbol: Optional[str]) -> Tuple[bool, Optional[str]]:
    """校验交易对格式，返回 (是否合法, 错误原因)"""
    if symbol is None or not str(symbol).strip():
        return False, "交易对不能为空"
    s = str(symbol).strip()
    if len(s) > _MAX_SYMBOL_LENGTH:
        return False, f"交易对长度不能超过 {_MAX_SYMBOL_LENGTH} 个字符"
    if not _SYMBOL_RE.match(s):
        return False, "交易对只能包含字母、数字、'/' 或 '-'"
    return True, None


def normalize_symbol(symbol: Optional[str]) -> str:
    """校验并标准化为大写、去分隔符的形式（btc/usdt → BTCUSDT），非法时抛出 InvalidSymbolError"""
    ok, reason = validate_symbol(symbol)
    if not ok:
        raise InvalidSymbolError(symbol, reason)
    return str(symbol).strip().upper().replace("/", "").replace("-", "")


def base_symbol(symbol: str) -> str:
    """提取基础币种：BTCUSDT / BTCUSD / BTC → BTC"""
    s = symbol.strip().upper().replace("/", "").replace("-", "")
    for suffix in _QUOTE_SUFFIXES:
        if s.endswith(suffix) and len(s) > len(suffix):
            return s[: -len(suffix)]
    return s


def format_for_coinglass(symbol: str) -> str:
    """CoinGlass 衍生品接口使用 USDT 永续合约代码：BTC → BTCUSDT"""
    return f"{base_symbol(symbol)}USDT"


def is_coinglass_supported(symbol: str) -> bool:
    return base_symbol(symbol) in COINGLASS_MAJOR_COINS


def is_endpoint_supported(symbol: str, endpoint: str) -> Tuple[bool, Optional[str]]:
    """检查交易对在指定 CoinGlass 接口上是否可用"""
    base = base_symbol(symbol)
    if base not in COINGLASS_MAJOR_COINS:
        return False, get_unsupported_message(symbol)
    allowed = _ENDPOINT_WHITELIST.get(endpoint)
    if allowed is not None and base not in allowed:
        return False, f"{endpoint} 在当前套餐下仅支持 {', '.join(sorted(allowed))}"
    return True, None


def get_unsupported_message(symbol: str) -> str:
    return f"{base_symbol(symbol)} 的衍生品数据需要更高级别的 CoinGlass API 套餐"


# ── Kraken ───────────────────────────────────────────────

def translate_to_kraken(symbol: str) -> str:
    """标准交易对 → Kraken REST 交易对：BTCUSDT → XXBTZUSD，未知 USDT 交易对回退为 USD 交易对"""
    s = symbol.strip().upper().replace("/", "").replace("-", "")
    if not s.endswith(_QUOTE_SUFFIXES):
        s = f"{s}USDT"
    if s in KRAKEN_SYMBOL_MAP:
        return KRAKEN_SYMBOL_MAP[s]
    if s.endswith("USDT"):
        usd = s[:-4] + "USD"
        logger.debug(f"Kraken 交易对自动转换: {s} -> {usd}")
        return usd
    return s


def from_kraken(kraken_symbol: str) -> str:
    """Kraken 交易对 → 标准交易对：XXBTZUSD → BTCUSDT"""
    if kraken_symbol in _KRAKEN_REVERSE_MAP:
        return _KRAKEN_REVERSE_MAP[kraken_symbol]
    if kraken_symbol.endswith("USD"):
        return kraken_symbol[:-3] + "USDT"
    return kraken_symbol


def to_kraken_ws_format(kraken_symbol: str) -> str:
    """Kraken REST 交易对 → WebSocket v1 交易对：XXBTZUSD → XBT/USD"""
    if kraken_symbol in _KRAKEN_WS_MAP:
        return _KRAKEN_WS_MAP[kraken_symbol]
    if kraken_symbol.endswith("USD") and len(kraken_symbol) > 3:
        return f"{kraken_symbol[:-3]}/USD"
    return kraken_symbol
