"""
EODHD 付费日线接口
报价取最近两个交易日的日线计算涨跌，历史数据按时间跨度的回看天数请求。
批量报价走 eod-bulk-last-day，一次请求覆盖整个交易所（或指定的一组代码），限流权重更高。
"""

import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from price_service.config import settings
from price_service.exceptions import TerminalProviderError
from price_service.models.market import Horizon
from price_service.providers.base import BULK_QUOTE, HISTORY, QUOTE, BaseProvider

logger = logging.getLogger(__name__)


def to_eodhd_symbol(symbol: str) -> str:
    code = symbol.upper()
    for suffix in (".KLSE", ".KLS", ".KL"):
        if code.endswith(suffix):
            code = code[: -len(suffix)]
            break
    return f"{code}.{settings.EODHD_EXCHANGE}"


def _quote_from_row(row: Dict[str, Any], previous: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    close = row.get("close")
    if previous is not None:
        prev_close = previous.get("close") or 0
    else:
        prev_close = row.get("prev_close") or 0
    change = (close - prev_close) if close is not None else None
    return {
        "price": close,
        "change": round(change, 3) if change is not None else None,
        "change_percent": round(change / prev_close * 100, 2) if change is not None and prev_close else 0.0,
        "previous_close": prev_close,
        "open": row.get("open"),
        "high": row.get("high"),
        "low": row.get("low"),
        "volume": row.get("volume"),
        "timestamp": row.get("date"),
    }


class EODHDProvider(BaseProvider):
    """付费 API：历史数据首选，报价链第二顺位，批量刷新时提供整批报价"""

    name = "eodhd"
    operations = frozenset({QUOTE, HISTORY, BULK_QUOTE})

    def __init__(self, *args, api_key: str = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._api_key = settings.EODHD_API_KEY if api_key is None else api_key

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    def weight(self, operation: str, horizon: Horizon = None) -> int:
        if operation == BULK_QUOTE:
            return settings.EODHD_BULK_WEIGHT
        return 1

    async def _get_rows(self, path: str, **params) -> List[Dict[str, Any]]:
        if not self._api_key:
            raise TerminalProviderError(self.name, "EODHD_API_KEY 未配置")
        resp = await self._get(
            f"{settings.EODHD_BASE_URL}/{path}",
            params={"api_token": self._api_key, "fmt": "json", **params},
            headers={"Accept": "application/json"},
        )
        try:
            data = resp.json()
        except ValueError as exc:
            raise TerminalProviderError(self.name, "响应不是合法 JSON") from exc
        if not isinstance(data, list):
            raise TerminalProviderError(self.name, f"响应格式异常: {type(data).__name__}")
        return data

    async def _eod(self, symbol: str, **params) -> List[Dict[str, Any]]:
        return await self._get_rows(f"eod/{to_eodhd_symbol(symbol)}", **params)

    async def fetch_quote(self, symbol: str) -> Dict[str, Any]:
        # 多取几天以跨过周末与节假日
        since = (date.today() - timedelta(days=7)).isoformat()
        rows = await self._eod(symbol, **{"from": since, "order": "d"})
        if not rows:
            raise TerminalProviderError(self.name, f"{symbol} 无日线数据")
        return _quote_from_row(rows[0], rows[1] if len(rows) > 1 else rows[0])

    async def fetch_quotes(self, symbols: List[str]) -> Dict[str, Dict[str, Any]]:
        wanted = {to_eodhd_symbol(s).rsplit(".", 1)[0]: s for s in symbols}
        rows = await self._get_rows(
            f"eod-bulk-last-day/{settings.EODHD_EXCHANGE}",
            symbols=",".join(to_eodhd_symbol(s) for s in symbols),
        )

        quotes = {}
        for row in rows:
            code = str(row.get("code") or "").upper()
            symbol = wanted.get(code)
            if symbol is not None and row.get("close") is not None:
                quotes[symbol] = _quote_from_row(row)
        logger.debug(f"EODHD 批量报价: 请求 {len(symbols)} 个，返回 {len(quotes)} 个")
        return quotes

    async def fetch_history(self, symbol: str, horizon: Horizon) -> List[Dict[str, Any]]:
        end = date.today()
        start = end - timedelta(days=horizon.policy.lookback_days)
        rows = await self._eod(symbol, **{"from": start.isoformat(), "to": end.isoformat(), "period": "d"})
        logger.debug(f"EODHD 返回 {symbol} {horizon.value} {len(rows)} 条日线")
        return [
            {
                "date": row.get("date"),
                "open": row.get("open"),
                "high": row.get("high"),
                "low": row.get("low"),
                "close": row.get("close"),
                "volume": row.get("volume"),
            }
            for row in rows
        ]
