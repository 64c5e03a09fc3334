"""
数据流分层架构
  Cache       : 多级缓存（Redis → MongoDB → 文件）
  Storage     : K 线与价格日志持久化（MongoDB）
  Processing  : K 线清洗、标准化与周期聚合
  Indicators  : 技术指标计算
  Analysis    : 市场结构与指标汇总
  Signals     : 共振信号、交易信号与衍生品情绪
  Validation  : 上游响应校验
"""
