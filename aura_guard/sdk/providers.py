"""
HTTP web-data providers.

Thin httpx clients for the hosted search, weather and price APIs. Each
returns the provider's raw JSON payload and raises ProviderError on any
transport failure, timeout or error status; normalizing payloads and
falling back between providers is the orchestrator's job.
"""

import logging
from typing import Any, Dict, Optional

import httpx

log = logging.getLogger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
OPENWEATHER_URL = "https://api.openweathermap.org/data/2.5/weather"
COINGECKO_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"

RESULT_COUNT = 3


class ProviderError(Exception):
    """A web-data provider could not answer."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class HttpProvider:
    """Shared GET-and-decode logic.

    Pass ``client`` to reuse one ``httpx.AsyncClient`` (and its connection
    pool) across calls; otherwise a client is opened per request.
    """

    name = "http"

    def __init__(self, timeout: float, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self.client = client

    async def _get_json(
        self,
        url: str,
        params: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        try:
            if self.client is not None:
                response = await self.client.get(url, params=params, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as e:
            log.warning("%s timed out after %ss", self.name, self.timeout)
            raise ProviderError(self.name, f"timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            log.warning("%s request failed: %s", self.name, type(e).__name__)
            raise ProviderError(self.name, f"request failed: {e}") from e

        if response.status_code >= 400:
            log.warning("%s returned HTTP %d", self.name, response.status_code)
            raise ProviderError(self.name, f"HTTP {response.status_code}", response.status_code)

        try:
            return response.json()
        except ValueError as e:
            log.warning("%s returned a non-JSON body", self.name)
            raise ProviderError(self.name, "response is not JSON") from e


class BraveSearchProvider(HttpProvider):
    """Brave Search web results from the past day."""

    name = "brave"

    def __init__(self, api_key: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        if not api_key:
            raise ValueError("Brave Search API key is required")
        super().__init__(timeout, client)
        self.api_key = api_key

    async def search(self, query: str) -> Any:
        return await self._get_json(
            BRAVE_SEARCH_URL,
            params={"q": query, "count": RESULT_COUNT, "safesearch": "moderate", "freshness": "pd"},
            headers={"X-Subscription-Token": self.api_key, "Accept": "application/json"},
        )


class GoogleSearchProvider(HttpProvider):
    """Google Custom Search JSON API."""

    name = "google"

    def __init__(
        self,
        api_key: str,
        search_engine_id: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        if not api_key or not search_engine_id:
            raise ValueError("Google API key and search engine id are required")
        super().__init__(timeout, client)
        self.api_key = api_key
        self.search_engine_id = search_engine_id

    async def search(self, query: str) -> Any:
        return await self._get_json(
            GOOGLE_SEARCH_URL,
            params={"key": self.api_key, "cx": self.search_engine_id, "q": query, "num": RESULT_COUNT},
        )


class OpenWeatherProvider(HttpProvider):
    """OpenWeather current conditions in metric units."""

    name = "openweather"

    def __init__(self, api_key: str, timeout: float = 3.0, client: Optional[httpx.AsyncClient] = None):
        if not api_key:
            raise ValueError("OpenWeather API key is required")
        super().__init__(timeout, client)
        self.api_key = api_key

    async def current(self, city: str) -> Any:
        return await self._get_json(
            OPENWEATHER_URL,
            params={"q": city, "appid": self.api_key, "units": "metric"},
        )


class CoinGeckoProvider(HttpProvider):
    """CoinGecko simple price endpoint; no API key needed."""

    name = "coingecko"

    def __init__(self, timeout: float = 3.0, client: Optional[httpx.AsyncClient] = None):
        super().__init__(timeout, client)

    async def price(self, coin_id: str) -> Any:
        return await self._get_json(
            COINGECKO_PRICE_URL,
            params={"ids": coin_id.lower(), "vs_currencies": "usd", "include_24hr_change": "true"},
        )
