"""
KLSE Screener 报价抓取
解析个股页面 HTML 中的价格、涨跌、最高 / 最低价与成交量，仅提供报价。
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from price_service.config import settings
from price_service.exceptions import TerminalProviderError
from price_service.providers.base import BROWSER_HEADERS, QUOTE, BaseProvider

logger = logging.getLogger(__name__)

_PRICE_PATTERNS = [
    re.compile(r'<span\s+id="price"\s+data-value="([\d.]+)"', re.I),
    re.compile(r'id="price"[^>]*data-value="([\d.]+)"', re.I),
    re.compile(r'data-value="([\d.]+)"[^>]*id="price"', re.I),
]
_DIFF_PATTERN = re.compile(r'id="priceDiff"[^>]*>\s*([+-]?[\d.]+)\s*\(([+-]?[\d.]+)%\)', re.I)
_HIGH_PATTERN = re.compile(r'id="priceHigh"[^>]*>\s*([\d.]+)', re.I)
_LOW_PATTERN = re.compile(r'id="priceLow"[^>]*>\s*([\d.]+)', re.I)
_VOLUME_PATTERN = re.compile(r'id="volume"[^>]*>\s*([\d,]+)', re.I)


def to_screener_code(symbol: str) -> str:
    return re.sub(r"\.(KL|KLS|KLSE)$", "", symbol.upper())


def _first(patterns, html: str) -> Optional[re.Match]:
    for pattern in patterns:
        match = pattern.search(html)
        if match:
            return match
    return None


def parse_quote_html(html: str) -> Optional[Dict[str, Any]]:
    """从页面 HTML 解析报价，找不到价格返回 None"""
    price_match = _first(_PRICE_PATTERNS, html)
    if not price_match:
        return None

    price = float(price_match.group(1))
    diff = _DIFF_PATTERN.search(html)
    high = _HIGH_PATTERN.search(html)
    low = _LOW_PATTERN.search(html)
    volume = _VOLUME_PATTERN.search(html)

    change = float(diff.group(1)) if diff else 0.0
    return {
        "price": price,
        "change": change,
        "change_percent": float(diff.group(2)) if diff else 0.0,
        "previous_close": price - change,
        "open": price,
        "high": float(high.group(1)) if high else price,
        "low": float(low.group(1)) if low else price,
        "volume": int(volume.group(1).replace(",", "")) if volume else 0,
        "timestamp": datetime.now(tz=timezone.utc),
    }


class KLSEScreenerProvider(BaseProvider):
    """网页抓取型报价源（免费、实时，报价链首选）"""

    name = "klsescreener"
    operations = frozenset({QUOTE})

    async def fetch_quote(self, symbol: str) -> Dict[str, Any]:
        code = to_screener_code(symbol)
        resp = await self._get(
            f"{settings.KLSE_SCREENER_BASE_URL}/{code}",
            headers={**BROWSER_HEADERS, "Accept": "text/html,application/xhtml+xml"},
        )
        quote = parse_quote_html(resp.text)
        if quote is None:
            raise TerminalProviderError(self.name, f"无法解析 {code} 的价格")
        logger.debug(f"KLSE Screener 解析成功: {code} price={quote['price']}")
        return quote
