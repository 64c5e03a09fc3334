"""
上游响应校验
在缓存写入之前校验 CoinGlass / CoinMarketCap 等响应结构，
校验失败时由服务层返回 unavailable_payload 生成的降级结构（不返回伪造数据）。
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    is_valid: bool
    data: Any = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _is_number(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    try:
        float(value)
    except (TypeError, ValueError):
        return False
    return True


def validate_coinglass_response(
    response: Any,
    data_validator: Optional[Callable[[Any], List[str]]] = None,
) -> ValidationResult:
    """校验 CoinGlass 响应信封：code 为 0 / "0" 且 data 存在"""
    errors: List[str] = []
    warnings: List[str] = []

    if not isinstance(response, dict):
        return ValidationResult(False, errors=["Invalid response: not an object"])

    if "code" not in response:
        errors.append("Missing required field: code")
    if "data" not in response:
        errors.append("Missing required field: data")

    code = response.get("code")
    if code not in ("0", 0):
        msg = response.get("msg") or "Unknown error"
        errors.append(f"API error code {code}: {msg}")
        lowered = str(msg).lower()
        if "upgrade" in lowered:
            warnings.append("API plan upgrade required for this endpoint")
        if "not found" in lowered or "invalid symbol" in lowered:
            warnings.append("Symbol not supported by this endpoint")

    data = response.get("data")
    if data is None:
        errors.append("Data field is null or undefined")
    elif data_validator is not None:
        errors.extend(data_validator(data))

    return ValidationResult(not errors, data=data, errors=errors, warnings=warnings)


def validate_array_data(data: Any, min_length: int = 1) -> List[str]:
    if not isinstance(data, list):
        return ["Data is not an array"]
    if len(data) < min_length:
        return [f"Insufficient data: expected at least {min_length} items, got {len(data)}"]
    return []


def validate_ohlc_data(data: Any) -> List[str]:
    """抽查前 3 条记录的 time / open / high / low / close 字段"""
    if not isinstance(data, list):
        return ["OHLC data is not an array"]
    errors: List[str] = []
    for i, item in enumerate(data[:3]):
        for name in ("time", "open", "high", "low", "close"):
            if name not in item:
                errors.append(f"Missing required OHLC field '{name}' in data item {i}")
            elif name != "time" and not _is_number(item[name]):
                errors.append(f"Invalid numeric value for '{name}' in data item {i}")
    return errors


def validate_liquidation_data(data: Any) -> List[str]:
    if not isinstance(data, list):
        return ["Liquidation data is not an array"]
    errors: List[str] = []
    for i, item in enumerate(data[:3]):
        has_long = "long_liquidation_usd" in item or "longLiquidation" in item
        has_short = "short_liquidation_usd" in item or "shortLiquidation" in item
        if not has_long and not has_short:
            errors.append(f"Missing liquidation fields in data item {i}")
        if "time" not in item:
            errors.append(f"Missing 'time' field in data item {i}")
    return errors


def validate_cmc_quote(data: Any) -> ValidationResult:
    """校验单个 CoinMarketCap 报价：symbol / name / quote.USD"""
    errors: List[str] = []
    warnings: List[str] = []
    if not isinstance(data, dict):
        return ValidationResult(False, errors=["Invalid CMC quote: not an object"])

    for name in ("symbol", "name", "quote"):
        if name not in data:
            errors.append(f"Missing required field: {name}")

    quote = data.get("quote")
    if isinstance(quote, dict):
        usd = quote.get("USD")
        if not usd:
            errors.append("Missing USD quote data")
        else:
            for name in ("price", "volume_24h", "market_cap", "percent_change_24h"):
                if usd.get(name) is None:
                    warnings.append(f"Missing or null field in quote: {name}")

    return ValidationResult(not errors, data=data, errors=errors, warnings=warnings)


def log_validation_result(endpoint: str, symbol: str, result: ValidationResult) -> None:
    if not result.is_valid:
        logger.error(f"❌ 校验失败 [{endpoint}] {symbol}: errors={result.errors} warnings={result.warnings}")
    elif result.warnings:
        logger.warning(f"⚠️ 校验警告 [{endpoint}] {symbol}: {result.warnings}")
    else:
        logger.debug(f"✅ 校验通过 [{endpoint}] {symbol}")


# ── 降级结构 ──────────────────────────────────────────────

def unavailable_payload(
    kind: str,
    symbol: str,
    errors: Optional[List[str]] = None,
    warnings: Optional[List[str]] = None,
    message: str = "Derivatives data not available for this symbol",
) -> Dict[str, Any]:
    """
    上游不可用时返回的显式降级结构

    kind: funding_rate / open_interest / liquidations / quote，其他类型只返回公共字段
    """
    base: Dict[str, Any] = {
        "symbol": symbol,
        "message": message,
        "unavailable": True,
        "errors": list(errors or []),
        "warnings": list(warnings or []),
        "timestamp": int(time.time() * 1000),
    }

    if kind == "funding_rate":
        next_funding = datetime.now(tz=timezone.utc) + timedelta(hours=8)
        base.update({
            "current": {
                "rate": "N/A",
                "rate_value": 0,
                "sentiment": "UNAVAILABLE",
                "next_funding": next_funding.isoformat(),
            },
            "history": [],
        })
    elif kind == "open_interest":
        base.update({
            "total": {
                "value": "N/A",
                "value_raw": 0,
                "change_24h": "N/A",
                "sentiment": "UNAVAILABLE",
            },
            "history": [],
            "by_exchange": [],
        })
    elif kind == "liquidations":
        base.update({
            "last_24h": {
                "total_longs": "N/A",
                "total_shorts": "N/A",
                "total": "N/A",
                "long_short_ratio": "N/A",
                "major_events": [],
            },
            "history": [],
        })
    elif kind == "quote":
        base.update({
            "name": symbol,
            "price": 0,
            "market_cap": 0,
            "volume_24h": 0,
            "percent_change_24h": 0,
        })
    return base
