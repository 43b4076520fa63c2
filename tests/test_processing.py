"""数据处理层测试"""

from datetime import datetime, timezone

from price_service.layers.processing import ProcessingLayer

from conftest import TODAY, daily_records


class TestNormalizeOhlcv:
    def setup_method(self):
        self.proc = ProcessingLayer()

    def test_empty(self):
        assert self.proc.normalize_ohlcv([]).empty
        assert self.proc.normalize_bars([]) == []

    def test_sorted_ascending(self):
        df = self.proc.normalize_ohlcv(daily_records(TODAY, 5)[::-1])
        dates = df["date"].tolist()
        assert dates == sorted(dates)
        assert list(df.columns) == ["date", "open", "high", "low", "close", "volume"]

    def test_drops_invalid_close(self):
        records = daily_records(TODAY, 3)
        records[0]["close"] = None
        records[1]["close"] = 0
        df = self.proc.normalize_ohlcv(records)
        assert df["date"].tolist() == [TODAY.isoformat()]

    def test_fills_missing_fields(self):
        df = self.proc.normalize_ohlcv([{"date": "2024-06-11", "close": "1.25"}])
        row = df.iloc[0]
        assert row["open"] == row["high"] == row["low"] == 1.25
        assert row["volume"] == 0

    def test_duplicate_dates_keep_last(self):
        records = [
            {"date": "2024-06-11", "open": 1, "high": 1, "low": 1, "close": 1.0},
            {"date": "2024-06-11", "open": 2, "high": 2, "low": 2, "close": 2.0},
        ]
        bars = self.proc.normalize_bars(records)
        assert len(bars) == 1
        assert bars[0].close == 2.0


class TestNormalizeQuote:
    def setup_method(self):
        self.proc = ProcessingLayer()

    def test_derives_change_from_previous_close(self):
        q = self.proc.normalize_quote({"price": 11.0, "previous_close": 10.0}, "5398", "eodhd")
        assert q.change == 1.0
        assert q.change_percent == 10.0
        assert q.source == "eodhd"

    def test_derives_previous_close_from_change(self):
        q = self.proc.normalize_quote({"price": "2.50", "change": "-0.10"}, "5398", "klsescreener")
        assert q.previous_close == 2.6
        assert q.day_high == 2.5

    def test_invalid_price(self):
        assert self.proc.normalize_quote({"price": 0}, "5398", "yahoo") is None
        assert self.proc.normalize_quote({"price": "n/a"}, "5398", "yahoo") is None

    def test_timestamp_formats(self):
        epoch = self.proc.normalize_quote({"price": 1, "timestamp": 1718157600}, "X", "yahoo")
        assert epoch.timestamp == datetime(2024, 6, 12, 2, 0, tzinfo=timezone.utc)
        iso = self.proc.normalize_quote({"price": 1, "timestamp": "2024-06-11"}, "X", "eodhd")
        assert iso.timestamp.date().isoformat() == "2024-06-11"
