"""
Yahoo Finance（通过 yfinance）
公共接口，容易被限流：所有调用经过滑动窗口限流器，YFRateLimitError 视为可重试。
yfinance 为同步库，放到工作线程执行。
"""

import asyncio
import logging
from typing import Any, Dict, List

from price_service.config import settings
from price_service.exceptions import RetryableProviderError, TerminalProviderError
from price_service.models.market import Horizon
from price_service.providers.base import HISTORY, BaseProvider

logger = logging.getLogger(__name__)
logging.getLogger("yfinance").setLevel(logging.CRITICAL)

# 1d 跨度只需日线，多取几天跨过周末
_PERIOD_MAP = {Horizon.ONE_DAY: "5d"}


def to_yahoo_symbol(symbol: str) -> str:
    code = symbol.upper()
    for suffix in (".KLSE", ".KLS", ".KL"):
        if code.endswith(suffix):
            code = code[: -len(suffix)]
            break
    return f"{code}{settings.YAHOO_SYMBOL_SUFFIX}"


def _frame_to_records(df) -> List[Dict[str, Any]]:
    if df is None or df.empty:
        return []
    records = []
    for ts, row in df.iterrows():
        records.append({
            "date": ts.strftime("%Y-%m-%d"),
            "open": row.get("Open"),
            "high": row.get("High"),
            "low": row.get("Low"),
            "close": row.get("Close"),
            "volume": row.get("Volume"),
        })
    return records


class YahooProvider(BaseProvider):
    """公共数据源：报价与历史数据的最后顺位"""

    name = "yahoo"

    def weight(self, operation: str, horizon: Horizon = None) -> int:
        if operation == HISTORY and horizon in (Horizon.FIVE_YEARS, Horizon.MAX):
            return 5
        return 1

    def _history(self, symbol: str, period: str):
        import yfinance as yf
        from yfinance.exceptions import YFRateLimitError

        yahoo_symbol = to_yahoo_symbol(symbol)
        try:
            return yf.Ticker(yahoo_symbol).history(
                period=period, interval="1d", auto_adjust=False, raise_errors=True
            )
        except YFRateLimitError as exc:
            raise RetryableProviderError(self.name, "Yahoo 限流") from exc
        except Exception as exc:
            raise TerminalProviderError(self.name, f"{yahoo_symbol}: {exc}") from exc

    async def fetch_history(self, symbol: str, horizon: Horizon) -> List[Dict[str, Any]]:
        period = _PERIOD_MAP.get(horizon, horizon.value)
        df = await asyncio.to_thread(self._history, symbol, period)
        records = _frame_to_records(df)
        if not records:
            raise TerminalProviderError(self.name, f"{symbol} 无历史数据")
        logger.debug(f"Yahoo 返回 {symbol} {horizon.value}（period={period}）{len(records)} 条日线")
        return records

    async def fetch_quote(self, symbol: str) -> Dict[str, Any]:
        df = await asyncio.to_thread(self._history, symbol, "5d")
        records = [r for r in _frame_to_records(df) if r["close"] == r["close"] and r["close"]]
        if not records:
            raise TerminalProviderError(self.name, f"{symbol} 无报价数据")

        latest = records[-1]
        prev_close = records[-2]["close"] if len(records) > 1 else latest["close"]
        return {
            "price": latest["close"],
            "change": latest["close"] - prev_close,
            "previous_close": prev_close,
            "open": latest["open"],
            "high": latest["high"],
            "low": latest["low"],
            "volume": latest["volume"],
            "timestamp": latest["date"],
        }


__all__ = ["YahooProvider", "to_yahoo_symbol"]
