"""行情数据模型：时间跨度、K 线、序列、报价"""

import datetime as dt
from enum import Enum
from typing import Dict, List, NamedTuple, Optional

from pydantic import BaseModel, Field

from price_service.exceptions import InvalidHorizonError


class Horizon(str, Enum):
    """历史数据时间跨度"""

    ONE_DAY = "1d"
    FIVE_DAYS = "5d"
    ONE_MONTH = "1mo"
    THREE_MONTHS = "3mo"
    SIX_MONTHS = "6mo"
    ONE_YEAR = "1y"
    FIVE_YEARS = "5y"
    MAX = "max"

    @classmethod
    def parse(cls, value) -> "Horizon":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(h.value for h in cls)
            raise InvalidHorizonError(f"无效的时间跨度 '{value}'，可选值: {valid}") from None

    @property
    def policy(self) -> "HorizonPolicy":
        return HORIZON_POLICIES[self]


class HorizonPolicy(NamedTuple):
    lookback_days: int        # 请求 / 读取的回看天数（含周末节假日缓冲）
    max_staleness_days: int   # 最新一根 K 线允许的最大陈旧天数，0 表示必须实时拉取
    min_data_points: int      # 视为完整所需的最少 K 线数量


HORIZON_POLICIES: Dict[Horizon, HorizonPolicy] = {
    Horizon.ONE_DAY: HorizonPolicy(5, 0, 1),
    Horizon.FIVE_DAYS: HorizonPolicy(10, 1, 3),
    Horizon.ONE_MONTH: HorizonPolicy(35, 1, 15),
    Horizon.THREE_MONTHS: HorizonPolicy(100, 2, 45),
    Horizon.SIX_MONTHS: HorizonPolicy(195, 3, 90),
    Horizon.ONE_YEAR: HorizonPolicy(380, 5, 200),
    Horizon.FIVE_YEARS: HorizonPolicy(1860, 7, 900),
    Horizon.MAX: HorizonPolicy(7300, 7, 1000),
}


class Bar(BaseModel):
    """单日 OHLCV 记录，(symbol, date) 唯一"""

    date: dt.date
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class Series(BaseModel):
    """某代码在某时间跨度内按日期升序排列的 K 线序列"""

    symbol: str
    horizon: Horizon
    bars: List[Bar] = Field(default_factory=list)
    source: str = ""
    stale: bool = False
    fetched_at: Optional[dt.datetime] = None

    @property
    def latest_date(self) -> Optional[dt.date]:
        return self.bars[-1].date if self.bars else None

    def __len__(self) -> int:
        return len(self.bars)


class Quote(BaseModel):
    """最新报价快照，每次刷新整体覆盖"""

    symbol: str
    price: float
    change: float = 0.0
    change_percent: float = 0.0
    previous_close: float = 0.0
    open: float = 0.0
    day_high: float = 0.0
    day_low: float = 0.0
    volume: float = 0.0
    timestamp: dt.datetime
    source: str = ""
    stale: bool = False
    fetched_at: Optional[dt.datetime] = None


EXCHANGE_SUFFIXES = (".KLSE", ".KLS", ".KL")


def normalize_symbol(raw: str) -> str:
    """统一代码格式：去空白、转大写、去掉交易所后缀（5398.KL 与 5398 共用缓存）"""
    symbol = (raw or "").strip().upper()
    for suffix in EXCHANGE_SUFFIXES:
        if symbol.endswith(suffix) and len(symbol) > len(suffix):
            return symbol[: -len(suffix)]
    return symbol
