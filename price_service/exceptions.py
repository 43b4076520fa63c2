"""价格缓存服务异常定义"""


class PriceServiceError(Exception):
    """服务内所有自定义异常的基类"""


class InvalidHorizonError(PriceServiceError, ValueError):
    """未知的时间跨度"""


class ProviderError(PriceServiceError):
    """数据源调用失败"""

    def __init__(self, provider: str, message: str = ""):
        self.provider = provider
        super().__init__(f"[{provider}] {message}" if message else f"[{provider}]")


class TerminalProviderError(ProviderError):
    """终止型失败：代码无效、响应异常、非限流 HTTP 错误、超时。不在同一数据源重试"""


class RetryableProviderError(ProviderError):
    """可重试失败：被限流。退避后在同一数据源重试，预算耗尽后切换下一个"""


class CacheWriteError(PriceServiceError):
    """缓存写入失败，只记录日志，不向成功的请求方传播"""


class AllProvidersExhaustedError(PriceServiceError):
    """所有数据源均失败，且没有可回退的缓存数据"""

    def __init__(self, symbol: str, operation: str, attempts=None):
        self.symbol = symbol
        self.operation = operation
        self.attempts = attempts or []
        super().__init__(f"{symbol} 的 {operation} 数据暂不可用（所有数据源均失败）")
