"""
Unit tests for HTTP web-data providers.

Requests are answered by httpx.MockTransport; nothing leaves the process.
"""

import logging

import httpx
import pytest

from aura_guard.sdk.providers import (
    BRAVE_SEARCH_URL,
    COINGECKO_PRICE_URL,
    BraveSearchProvider,
    CoinGeckoProvider,
    GoogleSearchProvider,
    OpenWeatherProvider,
    ProviderError,
)


class RecordingTransport:
    """Builds a mock transport that remembers the requests it saw."""

    def __init__(self, status: int = 200, payload=None, content: bytes = None, error: Exception = None):
        self.status = status
        self.payload = payload if payload is not None else {}
        self.content = content
        self.error = error
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error:
            raise self.error
        if self.content is not None:
            return httpx.Response(self.status, content=self.content)
        return httpx.Response(self.status, json=self.payload)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class TestSearchProviders:
    """Test request shape of the search providers."""

    @pytest.mark.asyncio
    async def test_brave_request(self):
        """Brave gets the key header and past-day freshness."""
        transport = RecordingTransport(payload={"web": {"results": []}})
        async with transport.client() as client:
            payload = await BraveSearchProvider("brave-key", client=client).search("latest news")

        request = transport.requests[0]
        assert payload == {"web": {"results": []}}
        assert str(request.url).startswith(BRAVE_SEARCH_URL)
        assert request.headers["X-Subscription-Token"] == "brave-key"
        assert request.url.params["q"] == "latest news"
        assert request.url.params["count"] == "3"
        assert request.url.params["freshness"] == "pd"

    @pytest.mark.asyncio
    async def test_google_request(self):
        """Google gets key and engine id as parameters."""
        transport = RecordingTransport(payload={"items": []})
        async with transport.client() as client:
            await GoogleSearchProvider("g-key", "engine", client=client).search("latest news")

        params = transport.requests[0].url.params
        assert params["key"] == "g-key"
        assert params["cx"] == "engine"
        assert params["num"] == "3"

    def test_keys_required(self):
        """Providers that need keys refuse to start without them."""
        with pytest.raises(ValueError):
            BraveSearchProvider("")
        with pytest.raises(ValueError):
            GoogleSearchProvider("key", "")
        with pytest.raises(ValueError):
            OpenWeatherProvider(None)


class TestDataProviders:
    """Test weather and price providers."""

    @pytest.mark.asyncio
    async def test_openweather_metric_units(self):
        """Weather is requested in metric units."""
        transport = RecordingTransport(payload={"name": "Paris"})
        async with transport.client() as client:
            await OpenWeatherProvider("w-key", client=client).current("Paris")

        params = transport.requests[0].url.params
        assert params["q"] == "Paris"
        assert params["appid"] == "w-key"
        assert params["units"] == "metric"

    @pytest.mark.asyncio
    async def test_coingecko_request(self):
        """Prices are requested in USD with the 24 hour change."""
        transport = RecordingTransport(payload={"bitcoin": {"usd": 1.0}})
        async with transport.client() as client:
            payload = await CoinGeckoProvider(client=client).price("Bitcoin")

        request = transport.requests[0]
        assert payload == {"bitcoin": {"usd": 1.0}}
        assert str(request.url).startswith(COINGECKO_PRICE_URL)
        assert request.url.params["ids"] == "bitcoin"
        assert request.url.params["vs_currencies"] == "usd"
        assert request.url.params["include_24hr_change"] == "true"


class TestProviderErrors:
    """Test failure mapping onto ProviderError."""

    @pytest.mark.asyncio
    async def test_error_status(self):
        """HTTP errors carry the status code."""
        transport = RecordingTransport(status=500)
        async with transport.client() as client:
            with pytest.raises(ProviderError) as exc_info:
                await BraveSearchProvider("key", client=client).search("q")

        assert exc_info.value.status_code == 500
        assert exc_info.value.provider == "brave"

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Transport timeouts become ProviderError."""
        transport = RecordingTransport(error=httpx.ReadTimeout("slow"))
        async with transport.client() as client:
            with pytest.raises(ProviderError, match="timed out"):
                await CoinGeckoProvider(client=client).price("bitcoin")

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Transport failures become ProviderError."""
        transport = RecordingTransport(error=httpx.ConnectError("refused"))
        async with transport.client() as client:
            with pytest.raises(ProviderError, match="request failed"):
                await OpenWeatherProvider("key", client=client).current("Paris")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """A non-JSON body becomes ProviderError."""
        transport = RecordingTransport(content=b"<html>oops</html>")
        async with transport.client() as client:
            with pytest.raises(ProviderError, match="not JSON"):
                await GoogleSearchProvider("key", "cx", client=client).search("q")

    @pytest.mark.asyncio
    async def test_failures_are_logged(self, caplog):
        """Each failure is logged with the provider name before raising."""
        transport = RecordingTransport(status=503)
        with caplog.at_level(logging.WARNING, logger="aura_guard.sdk.providers"):
            async with transport.client() as client:
                with pytest.raises(ProviderError):
                    await BraveSearchProvider("key", client=client).search("q")

        assert "brave returned HTTP 503" in caplog.text
        assert "key" not in caplog.text
