"""
行情价格缓存服务
为上层（看板 / 模拟交易 / 对话）提供实时报价与历史 K 线，带明确的新鲜度保证

架构分层：
  限流层     (RateLimit)    → 对易触发限流的数据源做滑动窗口限流
  缓存层     (Cache)        → MongoDB 持久化 + Redis 报价热缓存 + 内存降级
  新鲜度策略 (Staleness)    → 按时间跨度判断缓存是否可用
  数据获取层 (Acquisition)  → 按优先级依次尝试数据源，区分可重试 / 终止失败
  请求合并   (Coalescer)    → 同一 (代码, 跨度) 同时只发起一次上游请求
  批量刷新   (Refresh)      → 分片、限时、可重入的全量刷新
"""

__version__ = "1.0.0"
