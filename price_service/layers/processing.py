"""
数据处理层
将各数据源返回的原始记录清洗、格式化、标准化为 Bar / Quote。
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pandas as pd

from price_service.models.market import Bar, Quote

logger = logging.getLogger(__name__)

_PRICE_COLS = ["open", "high", "low", "close"]


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        if value is None or value == "":
            return default
        result = float(value)
        if result != result:  # NaN
            return default
        return result
    except (TypeError, ValueError):
        return default


class ProcessingLayer:
    """数据处理层：清洗 + 格式化 + 标准化"""

    def normalize_ohlcv(self, records: List[Dict[str, Any]]) -> pd.DataFrame:
        """
        将原始 OHLCV 记录列表标准化为 DataFrame

        标准列：date, open, high, low, close, volume
        - 收盘价缺失或非正的行直接丢弃
        - 开 / 高 / 低缺失时以收盘价补齐，成交量缺失记为 0
        - 同一日期保留最后一条，按日期升序
        """
        if not records:
            return pd.DataFrame(columns=["date"] + _PRICE_COLS + ["volume"])

        df = pd.DataFrame(records)

        for col in ["date"] + _PRICE_COLS + ["volume"]:
            if col not in df.columns:
                df[col] = None

        for col in _PRICE_COLS + ["volume"]:
            df[col] = pd.to_numeric(df[col], errors="coerce")

        df = df[df["close"].notna() & (df["close"] > 0)].copy()
        for col in ["open", "high", "low"]:
            df[col] = df[col].where(df[col].notna() & (df[col] > 0), df["close"])
        df["volume"] = df["volume"].fillna(0.0)

        # 日期格式统一（时间戳 / ISO 字符串均转为 UTC 日期）
        df["date"] = pd.to_datetime(df["date"], errors="coerce", utc=True)
        df = df.dropna(subset=["date"])
        df["date"] = df["date"].dt.strftime("%Y-%m-%d")

        # 删除重复日期，保留最新数据
        df = df.drop_duplicates(subset=["date"], keep="last")
        df = df.sort_values("date").reset_index(drop=True)

        return df[["date"] + _PRICE_COLS + ["volume"]]

    def to_bars(self, df: pd.DataFrame) -> List[Bar]:
        """DataFrame 转换为 Bar 列表"""
        if df.empty:
            return []
        return [Bar(**row) for row in df.to_dict(orient="records")]

    def normalize_bars(self, records: List[Dict[str, Any]]) -> List[Bar]:
        return self.to_bars(self.normalize_ohlcv(records))

    def normalize_quote(self, raw: Dict[str, Any], symbol: str, source: str) -> Optional[Quote]:
        """
        将原始报价字典标准化为 Quote

        价格缺失或非正返回 None；涨跌额 / 涨跌幅缺失时由前收盘价推算。
        """
        price = _to_float(raw.get("price"))
        if price <= 0:
            logger.debug(f"{source} 返回的 {symbol} 报价价格无效: {raw.get('price')!r}")
            return None

        change = raw.get("change")
        previous_close = _to_float(raw.get("previous_close"))
        if previous_close <= 0:
            previous_close = price - _to_float(change) if change is not None else price
        if change is None:
            change = price - previous_close
        change = _to_float(change)

        change_percent = raw.get("change_percent")
        if change_percent is None:
            change_percent = (change / previous_close * 100) if previous_close > 0 else 0.0

        timestamp = raw.get("timestamp")
        if isinstance(timestamp, (int, float)):
            timestamp = datetime.fromtimestamp(timestamp, tz=timezone.utc)
        elif isinstance(timestamp, str):
            parsed = pd.to_datetime(timestamp, errors="coerce", utc=True)
            timestamp = None if pd.isna(parsed) else parsed.to_pydatetime()
        if not isinstance(timestamp, datetime):
            timestamp = datetime.now(tz=timezone.utc)

        return Quote(
            symbol=symbol,
            price=price,
            change=round(change, 4),
            change_percent=round(_to_float(change_percent), 4),
            previous_close=previous_close,
            open=_to_float(raw.get("open"), price),
            day_high=_to_float(raw.get("high"), price),
            day_low=_to_float(raw.get("low"), price),
            volume=_to_float(raw.get("volume")),
            timestamp=timestamp,
            source=source,
        )


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
