"""
Guarded web-data lookups.

Every lookup runs the same sequence:

    validate -> user budget -> global budget -> cache -> reserve usage
    -> primary provider -> secondary provider -> None

Provider errors and timeouts are logged and fall through to the next
provider. When every provider fails the lookup returns None and nothing is
cached.
"""

import asyncio
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from aura_guard.config.loader import GuardConfig, PatternLibrary, get_pattern_library
from .cache import ResponseCache
from .monitor import UsageMonitor
from .rate_limiter import RateLimiter
from .validator import QueryValidator, ValidationResult

log = logging.getLogger(__name__)

SEARCH_TIMEOUT = 5.0
WEATHER_TIMEOUT = 3.0
CRYPTO_TIMEOUT = 3.0

MAX_RESULTS = 3
MAX_SEARCH_QUERY_LENGTH = 100
DEFAULT_CITY = "new york"
DEFAULT_COIN = "bitcoin"

_QUERY_FILLER = (
    re.compile(r"what.*happening.*with", re.IGNORECASE),
    re.compile(r"how.*doing", re.IGNORECASE),
    re.compile(r"price.*of", re.IGNORECASE),
    re.compile(r"latest.*on", re.IGNORECASE),
)
_MARKET_WORDS = re.compile(
    r"bitcoin|btc|crypto|ethereum|eth|market|price|stock|trading|investment", re.IGNORECASE
)
_ETHEREUM_WORDS = re.compile(r"\b(?:ethereum|eth)\b", re.IGNORECASE)
_WEATHER_WORDS = re.compile(
    r"weather|temperature|climate|forecast|raining|sunny|cold|hot|degrees", re.IGNORECASE
)
_CITY = re.compile(r"(?:weather|temperature|climate).*in\s+(\w+)", re.IGNORECASE)

# Validator categories that point at an attack rather than a bad query.
_INCIDENT_BY_CATEGORY = {
    "credential": "api_key_extraction",
    "script_injection": "injection_attempt",
    "sql_injection": "injection_attempt",
}


class SearchProvider(Protocol):
    name: str

    async def search(self, query: str) -> Any:
        ...


class WeatherProvider(Protocol):
    name: str

    async def current(self, city: str) -> Any:
        ...


class CryptoProvider(Protocol):
    name: str

    async def price(self, coin_id: str) -> Any:
        ...


@dataclass(frozen=True)
class SearchResult:
    """Normalized search results from one provider."""
    query: str
    provider: str
    results: List[Dict[str, str]]
    summary: str
    query_time: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchResult":
        return cls(**data)


@dataclass(frozen=True)
class WeatherReport:
    """Current conditions for a city, temperatures in Celsius."""
    city: str
    temperature: float
    description: str
    feels_like: float
    provider: str = "openweather"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WeatherReport":
        return cls(**data)


@dataclass(frozen=True)
class CryptoQuote:
    """Spot price in USD with the 24 hour change in percent."""
    coin: str
    price_usd: float
    change_24h: Optional[float] = None
    provider: str = "coingecko"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CryptoQuote":
        return cls(**data)


@dataclass(frozen=True)
class EnhancementResult:
    """Real-time data gathered for one message.

    ``cross_reference`` joins the data types found (e.g. ``web+crypto``)
    when there is more than one.
    """
    web_results: Optional[SearchResult] = None
    crypto: Optional[CryptoQuote] = None
    weather: Optional[WeatherReport] = None
    cross_reference: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def sources(self) -> List[str]:
        found = []
        if self.web_results is not None:
            found.append("web")
        if self.crypto is not None:
            found.append("crypto")
        if self.weather is not None:
            found.append("weather")
        return found

    def context_block(self) -> str:
        """Render the data as plain text for a system prompt."""
        lines = []
        if self.web_results is not None:
            lines.append(f"Web results ({self.web_results.provider}):")
            lines.append(self.web_results.summary)
        if self.crypto is not None:
            change = ""
            if self.crypto.change_24h is not None:
                change = f" ({self.crypto.change_24h:+.2f}% 24h)"
            lines.append(f"{self.crypto.coin} price: ${self.crypto.price_usd:,.2f}{change}")
        if self.weather is not None:
            lines.append(
                f"Weather in {self.weather.city}: {self.weather.temperature:.0f}°C, "
                f"{self.weather.description}, feels like {self.weather.feels_like:.0f}°C"
            )
        if self.cross_reference:
            lines.append(f"Combined sources: {self.cross_reference}")
        return "\n".join(lines)


def normalize_search_results(raw: Any, provider: str, query: str = "") -> Optional[SearchResult]:
    """Map a provider payload onto ``{title, description, url}`` entries.

    Understands Brave (``web.results``), Google Custom Search (``items``) and
    lists that are already normalized. Returns None when nothing usable is left.
    """
    if isinstance(raw, dict) and isinstance(raw.get("web"), dict):
        entries = [
            {"title": r.get("title", ""), "description": r.get("description", ""), "url": r.get("url", "")}
            for r in raw["web"].get("results") or []
        ]
    elif isinstance(raw, dict) and "items" in raw:
        entries = [
            {"title": r.get("title", ""), "description": r.get("snippet", ""), "url": r.get("link", "")}
            for r in raw.get("items") or []
        ]
    elif isinstance(raw, list):
        entries = [
            {"title": r.get("title", ""), "description": r.get("description", ""), "url": r.get("url", "")}
            for r in raw
            if isinstance(r, dict)
        ]
    else:
        return None

    entries = [e for e in entries if e["title"] or e["description"]][:MAX_RESULTS]
    if not entries:
        return None

    return SearchResult(
        query=query,
        provider=provider,
        results=entries,
        summary="\n".join(f"{e['title']}: {e['description']}" for e in entries),
        query_time=datetime.now().isoformat(),
    )


def normalize_weather(raw: Any, provider: str = "openweather") -> Optional[WeatherReport]:
    """Extract current conditions from an OpenWeather payload."""
    try:
        return WeatherReport(
            city=raw["name"],
            temperature=float(raw["main"]["temp"]),
            description=raw["weather"][0]["description"],
            feels_like=float(raw["main"]["feels_like"]),
            provider=provider,
        )
    except (KeyError, IndexError, TypeError, ValueError):
        log.warning("Unexpected weather payload from %s", provider)
        return None


def normalize_crypto(raw: Any, coin: str, provider: str = "coingecko") -> Optional[CryptoQuote]:
    """Extract a USD quote from a CoinGecko ``simple/price`` payload."""
    try:
        quote = raw[coin]
        change = quote.get("usd_24h_change")
        return CryptoQuote(
            coin=coin,
            price_usd=float(quote["usd"]),
            change_24h=float(change) if change is not None else None,
            provider=provider,
        )
    except (KeyError, TypeError, ValueError, AttributeError):
        log.warning("Unexpected price payload from %s for %s", provider, coin)
        return None


def extract_search_query(text: str) -> str:
    """Strip question filler from a message and keep the first 100 characters."""
    query = text
    for filler in _QUERY_FILLER:
        query = filler.sub("", query)
    query = query.strip() or text.strip()
    return query[:MAX_SEARCH_QUERY_LENGTH]


def extract_city(text: str) -> str:
    match = _CITY.search(text)
    return match.group(1) if match else DEFAULT_CITY


ProviderCall = Tuple[str, Callable[[], Awaitable[Any]]]


class SearchOrchestrator:
    """Runs guarded lookups against search, weather and price providers.

    Args:
        validator: Outbound query validator
        limiter: Call budgets
        cache: Response cache
        primary: First search provider tried
        secondary: Search provider tried when the primary fails
        weather_provider: Current conditions provider
        crypto_provider: Spot price provider
        monitor: Receives validation and rate-limit incidents
        config: Provider enablement flags
    """

    def __init__(
        self,
        validator: QueryValidator,
        limiter: RateLimiter,
        cache: ResponseCache,
        primary: Optional[SearchProvider] = None,
        secondary: Optional[SearchProvider] = None,
        weather_provider: Optional[WeatherProvider] = None,
        crypto_provider: Optional[CryptoProvider] = None,
        monitor: Optional[UsageMonitor] = None,
        config: Optional[GuardConfig] = None,
        patterns: Optional[PatternLibrary] = None,
        search_timeout: float = SEARCH_TIMEOUT,
        weather_timeout: float = WEATHER_TIMEOUT,
        crypto_timeout: float = CRYPTO_TIMEOUT
    ):
        self.validator = validator
        self.limiter = limiter
        self.cache = cache
        self.primary = primary
        self.secondary = secondary
        self.weather_provider = weather_provider
        self.crypto_provider = crypto_provider
        self.monitor = monitor
        self.config = config or GuardConfig()
        self.patterns = patterns or get_pattern_library()
        self.search_timeout = search_timeout
        self.weather_timeout = weather_timeout
        self.crypto_timeout = crypto_timeout

    def _enabled(self, provider: Optional[Any]) -> bool:
        return provider is not None and self.config.provider_enabled(provider.name)

    # -- guarded lookups --------------------------------------------------

    async def search(self, query: str, user_id: str = "anonymous", platform: str = "telegram") -> Optional[SearchResult]:
        """Web search with two-provider fallback.

        Returns:
            Normalized results tagged with the provider that answered, or None
        """
        calls: List[ProviderCall] = []
        for provider in (self.primary, self.secondary):
            if self._enabled(provider):
                calls.append((provider.name, self._search_call(provider, query)))

        data = await self._guarded("web_search", query, user_id, platform, calls, self.search_timeout)
        return SearchResult.from_dict(data) if data else None

    def _search_call(self, provider: SearchProvider, query: str) -> Callable[[], Awaitable[Any]]:
        async def call():
            result = normalize_search_results(await provider.search(query), provider.name, query)
            return result.to_dict() if result else None
        return call

    async def weather(self, city: str, user_id: str = "anonymous", platform: str = "telegram") -> Optional[WeatherReport]:
        """Current conditions for a city, or None."""
        calls: List[ProviderCall] = []
        if self._enabled(self.weather_provider):
            provider = self.weather_provider

            async def call():
                report = normalize_weather(await provider.current(city), provider.name)
                return report.to_dict() if report else None
            calls.append((provider.name, call))

        data = await self._guarded("weather", city, user_id, platform, calls, self.weather_timeout)
        return WeatherReport.from_dict(data) if data else None

    async def crypto_price(self, coin: str, user_id: str = "anonymous", platform: str = "telegram") -> Optional[CryptoQuote]:
        """USD spot price for a CoinGecko coin id, or None."""
        coin = coin.lower()
        calls: List[ProviderCall] = []
        if self._enabled(self.crypto_provider):
            provider = self.crypto_provider

            async def call():
                quote = normalize_crypto(await provider.price(coin), coin, provider.name)
                return quote.to_dict() if quote else None
            calls.append((provider.name, call))

        data = await self._guarded("crypto_price", coin, user_id, platform, calls, self.crypto_timeout)
        return CryptoQuote.from_dict(data) if data else None

    async def _guarded(
        self,
        api_type: str,
        query: str,
        user_id: str,
        platform: str,
        calls: List[ProviderCall],
        timeout: float
    ) -> Optional[Dict[str, Any]]:
        if not calls:
            log.debug("No %s provider enabled", api_type)
            return None

        validation = self.validator.validate(api_type, query)
        if not validation.valid:
            self._report_rejection(user_id, platform, api_type, validation, query)
            return None

        status = await self.limiter.check(user_id, platform, api_type)
        if not status.allowed:
            log.info("User %s:%s hit %s rate limit: %d/%s", platform, user_id, api_type, status.current, status.limit)
            self._record(user_id, platform, "rate_limit_exceeded", f"{api_type} {status.current}/{status.limit}")
            return None

        global_status = await self.limiter.check_global(api_type)
        if not global_status.allowed:
            log.warning("Global %s limit reached: %d/%s", api_type, global_status.current, global_status.limit)
            self._record(user_id, platform, "rate_limit_exceeded", f"global {api_type}")
            return None

        cached = await self.cache.get(api_type, query)
        if cached.hit:
            log.info("Cache hit for %s: %r (%ds old)", api_type, query, round(cached.age))
            return cached.data

        reservation = await self.limiter.reserve(user_id, platform, api_type)
        if not reservation.allowed:
            log.info("Lost %s reservation for %s:%s to a concurrent request", api_type, platform, user_id)
            return None

        for name, call in calls:
            log.info("%s call via %s: %r by %s:%s", api_type, name, query, platform, user_id)
            try:
                data = await asyncio.wait_for(call(), timeout)
            except asyncio.TimeoutError:
                log.warning("%s provider %s timed out after %ss", api_type, name, timeout)
                continue
            except Exception as e:
                log.warning("%s provider %s failed: %s", api_type, name, e)
                continue
            if data:
                await self.cache.set(api_type, query, data)
                return data
            log.info("%s provider %s returned nothing for %r", api_type, name, query)

        log.warning("All %s providers failed for %r", api_type, query)
        return None

    def _report_rejection(
        self,
        user_id: str,
        platform: str,
        api_type: str,
        validation: ValidationResult,
        query: str
    ) -> None:
        log.warning("Rejected %s query from %s:%s: %s", api_type, platform, user_id, validation.reason)
        kind = _INCIDENT_BY_CATEGORY.get(validation.category, "blocked_query")
        self._record(user_id, platform, kind, f"{validation.reason}: {query[:100]}")

    def _record(self, user_id: str, platform: str, kind: str, details: str) -> None:
        if self.monitor is not None:
            self.monitor.record_incident(user_id, platform, kind, details)

    # -- enhancement ------------------------------------------------------

    def needs_enhancement(self, text: str) -> bool:
        """True when the message asks about something current."""
        return self.patterns.first_match("search_triggers", text) is not None

    async def enhance(self, text: str, user_id: str = "anonymous", platform: str = "telegram") -> Optional[EnhancementResult]:
        """Gather web, price and weather data relevant to a message.

        Returns:
            EnhancementResult, or None when the message needs no real-time
            data or no lookup produced any
        """
        if not self.needs_enhancement(text):
            return None

        web = await self.search(extract_search_query(text), user_id, platform)

        crypto = None
        if _MARKET_WORDS.search(text):
            coin = "ethereum" if _ETHEREUM_WORDS.search(text) else DEFAULT_COIN
            crypto = await self.crypto_price(coin, user_id, platform)

        weather = None
        if _WEATHER_WORDS.search(text):
            weather = await self.weather(extract_city(text), user_id, platform)

        result = EnhancementResult(web_results=web, crypto=crypto, weather=weather)
        sources = result.sources
        if not sources:
            return None
        if len(sources) > 1:
            result = EnhancementResult(
                web_results=web,
                crypto=crypto,
                weather=weather,
                cross_reference="+".join(sources),
                timestamp=result.timestamp,
            )
        return result
