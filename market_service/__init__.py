"""
加密货币行情数据服务
为交易看板提供行情、衍生品指标与 AI 交易信号的 HTTP 接口

架构分层：
  数据适配层 (Adapters)     → CoinGlass / Tatum / CoinMarketCap / Kraken / LLM 网关
  缓存层     (Cache)        → Redis / MongoDB / 文件三级 TTL 缓存
  处理层     (Processing)   → K 线清洗、标准化、周期聚合
  分析层     (Analysis)     → 技术指标与信号计算
"""

__version__ = "1.0.0"
