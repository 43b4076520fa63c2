"""具体数据源测试（httpx.MockTransport / 假 yfinance，不访问外网）"""

import httpx
import pandas as pd
import pytest

from price_service.exceptions import RetryableProviderError, TerminalProviderError
from price_service.models.market import Horizon
from price_service.providers import build_providers
from price_service.providers.base import BULK_QUOTE, HISTORY, QUOTE, ProviderProfile
from price_service.providers.eodhd import EODHDProvider, to_eodhd_symbol
from price_service.providers.klsescreener import KLSEScreenerProvider, parse_quote_html, to_screener_code
from price_service.providers.yahoo import YahooProvider, to_yahoo_symbol

_PAGE = """
<div class="stock-price">
  <span id="price" data-value="4.350">4.350</span>
  <span id="priceDiff" class="up">+0.050 (1.16%)</span>
  <td id="priceHigh">4.400</td>
  <td id="priceLow">4.280</td>
  <td id="volume">1,234,500</td>
</div>
"""


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestSymbolMapping:
    def test_provider_forms(self):
        assert to_screener_code("5398.kl") == "5398"
        assert to_eodhd_symbol("5398.KL") == "5398.KLSE"
        assert to_eodhd_symbol("5398") == "5398.KLSE"
        assert to_yahoo_symbol("5398.KLSE") == "5398.KL"
        assert to_yahoo_symbol("5398") == "5398.KL"


class TestKLSEScreener:
    def test_parse_quote_html(self):
        quote = parse_quote_html(_PAGE)
        assert quote["price"] == 4.35
        assert quote["change"] == 0.05
        assert quote["change_percent"] == 1.16
        assert quote["high"] == 4.4 and quote["low"] == 4.28
        assert quote["volume"] == 1234500

    def test_parse_without_price(self):
        assert parse_quote_html("<html>maintenance</html>") is None

    def test_quote_only(self):
        provider = KLSEScreenerProvider()
        assert provider.supports(QUOTE) and not provider.supports(HISTORY)

    @pytest.mark.asyncio
    async def test_fetch_quote(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request.url.path)
            return httpx.Response(200, text=_PAGE)

        async with _client(handler) as client:
            quote = await KLSEScreenerProvider(client=client).fetch_quote("5398.KL")
        assert quote["price"] == 4.35
        assert seen[0].endswith("/5398")

    @pytest.mark.asyncio
    async def test_unparseable_page_is_terminal(self):
        async with _client(lambda r: httpx.Response(200, text="<html></html>")) as client:
            with pytest.raises(TerminalProviderError):
                await KLSEScreenerProvider(client=client).fetch_quote("5398")

    @pytest.mark.asyncio
    async def test_status_classification(self):
        async with _client(lambda r: httpx.Response(429)) as client:
            with pytest.raises(RetryableProviderError):
                await KLSEScreenerProvider(client=client).fetch_quote("5398")
        async with _client(lambda r: httpx.Response(503)) as client:
            with pytest.raises(TerminalProviderError):
                await KLSEScreenerProvider(client=client).fetch_quote("5398")

    @pytest.mark.asyncio
    async def test_transport_error_is_terminal(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(TerminalProviderError):
                await KLSEScreenerProvider(client=client).fetch_quote("5398")


class TestEODHD:
    _ROWS = [
        {"date": "2024-06-12", "open": 4.3, "high": 4.4, "low": 4.2, "close": 4.35, "volume": 1000},
        {"date": "2024-06-11", "open": 4.2, "high": 4.3, "low": 4.1, "close": 4.30, "volume": 900},
    ]

    def test_disabled_without_key(self):
        assert EODHDProvider(api_key="").enabled is False
        assert EODHDProvider(api_key="k").enabled is True

    @pytest.mark.asyncio
    async def test_missing_key_is_terminal(self):
        with pytest.raises(TerminalProviderError):
            await EODHDProvider(api_key="").fetch_history("5398", Horizon.ONE_MONTH)

    @pytest.mark.asyncio
    async def test_fetch_quote(self):
        params = {}

        def handler(request: httpx.Request):
            params.update(request.url.params)
            assert request.url.path.endswith("/eod/5398.KLSE")
            return httpx.Response(200, json=self._ROWS)

        async with _client(handler) as client:
            quote = await EODHDProvider(api_key="k", client=client).fetch_quote("5398")
        assert quote["price"] == 4.35
        assert quote["previous_close"] == 4.30
        assert quote["change"] == 0.05
        assert params["api_token"] == "k" and params["order"] == "d"

    @pytest.mark.asyncio
    async def test_fetch_history(self):
        async with _client(lambda r: httpx.Response(200, json=self._ROWS[::-1])) as client:
            rows = await EODHDProvider(api_key="k", client=client).fetch_history("5398", Horizon.ONE_MONTH)
        assert [r["date"] for r in rows] == ["2024-06-11", "2024-06-12"]

    @pytest.mark.asyncio
    async def test_fetch_quotes_bulk(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["path"] = request.url.path
            seen.update(request.url.params)
            return httpx.Response(200, json=[
                {"code": "5398", "exchange_short_name": "KLSE", "date": "2024-06-12",
                 "open": 4.3, "high": 4.4, "low": 4.28, "close": 4.35, "prev_close": 4.30, "volume": 1000},
                {"code": "1155", "exchange_short_name": "KLSE", "date": "2024-06-12", "close": None},
                {"code": "9999", "exchange_short_name": "KLSE", "date": "2024-06-12", "close": 1.0},
            ])

        async with _client(handler) as client:
            quotes = await EODHDProvider(api_key="k", client=client).fetch_quotes(["5398.KL", "1155"])
        assert seen["path"].endswith("/eod-bulk-last-day/KLSE")
        assert seen["symbols"] == "5398.KLSE,1155.KLSE"
        assert set(quotes) == {"5398.KL"}
        assert quotes["5398.KL"]["previous_close"] == 4.30
        assert quotes["5398.KL"]["change"] == 0.05

    def test_bulk_weight(self):
        provider = EODHDProvider(api_key="k")
        assert provider.supports(BULK_QUOTE)
        assert provider.weight(BULK_QUOTE) == 100
        assert provider.weight(QUOTE) == 1

    @pytest.mark.asyncio
    async def test_unexpected_payload_is_terminal(self):
        async with _client(lambda r: httpx.Response(200, json={"error": "bad symbol"})) as client:
            with pytest.raises(TerminalProviderError):
                await EODHDProvider(api_key="k", client=client).fetch_history("5398", Horizon.ONE_MONTH)


class _FakeTicker:
    frame = None
    error = None
    periods = []

    def __init__(self, symbol):
        self.symbol = symbol

    def history(self, period, interval, **kwargs):
        _FakeTicker.periods.append((self.symbol, period))
        if _FakeTicker.error is not None:
            raise _FakeTicker.error
        return _FakeTicker.frame


@pytest.fixture
def fake_yfinance(monkeypatch):
    import yfinance

    _FakeTicker.frame = pd.DataFrame(
        {
            "Open": [4.2, 4.3],
            "High": [4.3, 4.4],
            "Low": [4.1, 4.2],
            "Close": [4.30, 4.35],
            "Volume": [900, 1000],
        },
        index=pd.DatetimeIndex(["2024-06-11", "2024-06-12"], tz="Asia/Kuala_Lumpur"),
    )
    _FakeTicker.error = None
    _FakeTicker.periods = []
    monkeypatch.setattr(yfinance, "Ticker", _FakeTicker)
    return _FakeTicker


class TestYahoo:
    def test_weights(self):
        provider = YahooProvider(profile=ProviderProfile())
        assert provider.weight(QUOTE) == 1
        assert provider.weight(HISTORY, Horizon.ONE_YEAR) == 1
        assert provider.weight(HISTORY, Horizon.MAX) == 5

    @pytest.mark.asyncio
    async def test_fetch_history(self, fake_yfinance):
        rows = await YahooProvider().fetch_history("5398", Horizon.ONE_DAY)
        assert [r["date"] for r in rows] == ["2024-06-11", "2024-06-12"]
        assert fake_yfinance.periods == [("5398.KL", "5d")]

    @pytest.mark.asyncio
    async def test_fetch_quote(self, fake_yfinance):
        quote = await YahooProvider().fetch_quote("5398")
        assert quote["price"] == 4.35
        assert quote["previous_close"] == 4.30

    @pytest.mark.asyncio
    async def test_rate_limit_is_retryable(self, fake_yfinance):
        from yfinance.exceptions import YFRateLimitError
        fake_yfinance.error = YFRateLimitError()
        with pytest.raises(RetryableProviderError):
            await YahooProvider().fetch_history("5398", Horizon.ONE_YEAR)

    @pytest.mark.asyncio
    async def test_empty_frame_is_terminal(self, fake_yfinance):
        fake_yfinance.frame = pd.DataFrame()
        with pytest.raises(TerminalProviderError):
            await YahooProvider().fetch_quote("5398")


class TestRegistry:
    def test_build_providers(self):
        providers = build_providers()
        assert set(providers) == {"klsescreener", "eodhd", "yahoo"}
        assert providers["klsescreener"].profile.priority == 1
        assert providers["yahoo"].rate_limiter is not None
        assert providers["klsescreener"].rate_limiter is None
        assert providers["eodhd"].rate_limiter.limit == 1000
