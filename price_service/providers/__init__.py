"""
上游数据源
  klsescreener : 网页抓取，免费实时报价
  eodhd        : 付费日线 API（支持整批报价，经过限流器）
  yahoo        : yfinance 公共接口（经过限流器）
"""

from typing import Dict, Optional

from price_service.config import settings
from price_service.layers.ratelimit import get_rate_limiter
from price_service.providers.base import BULK_QUOTE, HISTORY, QUOTE, BaseProvider, ProviderProfile
from price_service.providers.eodhd import EODHDProvider
from price_service.providers.klsescreener import KLSEScreenerProvider
from price_service.providers.yahoo import YahooProvider


def build_providers() -> Dict[str, BaseProvider]:
    """按配置构造全部数据源，优先级取报价链 / 历史链中的先后顺序"""
    order = list(dict.fromkeys(settings.QUOTE_PROVIDER_ORDER + settings.HISTORY_PROVIDER_ORDER))

    def _profile(name: str) -> ProviderProfile:
        return ProviderProfile.from_settings(priority=order.index(name) + 1 if name in order else 100)

    return {
        "klsescreener": KLSEScreenerProvider(profile=_profile("klsescreener")),
        "eodhd": EODHDProvider(
            profile=_profile("eodhd"),
            rate_limiter=get_rate_limiter(
                "eodhd", settings.EODHD_RATE_LIMIT, settings.RATE_LIMIT_WINDOW_SECONDS
            ),
        ),
        "yahoo": YahooProvider(
            profile=_profile("yahoo"),
            rate_limiter=get_rate_limiter(
                "yahoo", settings.YAHOO_RATE_LIMIT, settings.RATE_LIMIT_WINDOW_SECONDS
            ),
        ),
    }


# ── 模块级别单例 ──────────────────────────────────────────
_providers: Optional[Dict[str, BaseProvider]] = None


def get_providers() -> Dict[str, BaseProvider]:
    global _providers
    if _providers is None:
        _providers = build_providers()
    return _providers


__all__ = [
    "BaseProvider",
    "ProviderProfile",
    "QUOTE",
    "HISTORY",
    "BULK_QUOTE",
    "build_providers",
    "get_providers",
]
