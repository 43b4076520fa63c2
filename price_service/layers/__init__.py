"""
数据流分层架构
  Staleness    : 新鲜度策略（陈旧天数 + 最少数据点）
  Coalescer    : 同 key 在途请求合并
  Acquisition  : 数据源回退链（限流退避 / 超时 / 陈旧缓存兜底）
  RateLimit    : 滑动窗口限流器
  Processing   : 数据清洗与标准化
  Cache        : 持久化缓存（MongoDB + Redis，降级为进程内存储）
"""
