"""
Guard assembly.

Builds a SafetyGuard from configuration and credentials.
"""

import logging
import random
from typing import Optional

import httpx

from ..config.loader import GuardConfig, PatternLibrary, ProviderCredentials, get_pattern_library
from ..core.cache import ResponseCache
from ..core.guard import SafetyGuard
from ..core.input_sanitizer import InputSanitizer
from ..core.memory import ConversationMemory
from ..core.monitor import UsageMonitor
from ..core.output_sanitizer import OutputSanitizer
from ..core.phrases import MANIPULATION_DEFLECTIONS, OUTPUT_FALLBACKS, PhraseSampler
from ..core.rate_limiter import RateLimiter
from ..core.reply_budget import ReplyBudget
from ..core.search import CRYPTO_TIMEOUT, SEARCH_TIMEOUT, WEATHER_TIMEOUT, SearchOrchestrator
from ..core.validator import QueryValidator
from ..storage.db import DEFAULT_DB_PATH
from ..storage.repository import ConversationRepository, UsageRepository, initialize_schema
from ..storage.store import MemoryStore, RedisStore, Store
from .openai_client import DEFAULT_MODEL, OpenAIGenerator
from .providers import BraveSearchProvider, CoinGeckoProvider, GoogleSearchProvider, OpenWeatherProvider

log = logging.getLogger(__name__)


def build_guard(
    config: Optional[GuardConfig] = None,
    credentials: Optional[ProviderCredentials] = None,
    db_path: Optional[str] = DEFAULT_DB_PATH,
    redis_url: Optional[str] = None,
    model: str = DEFAULT_MODEL,
    patterns: Optional[PatternLibrary] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    rng: Optional[random.Random] = None
) -> SafetyGuard:
    """Wire every component of the reply pipeline.

    Providers without credentials are left out, and so is the generator, in
    which case replies fall back to the offline phrase.

    Args:
        config: Guard configuration (defaults apply when None)
        credentials: API keys (read from the environment when None)
        db_path: SQLite file for the durable tier, None to run without one
        redis_url: Redis URL for counters, cache and hot history; in-process when None
        model: OpenAI model name
        patterns: Pattern library (bundled library when None)
        http_client: Shared httpx client for all web-data providers
        rng: Random source for deflection and fallback phrases

    Returns:
        Ready SafetyGuard; call ``startup()`` to restore today's usage
    """
    config = config or GuardConfig()
    credentials = credentials or ProviderCredentials.from_env()
    patterns = patterns or get_pattern_library()

    store: Store
    if redis_url:
        store = RedisStore.from_url(redis_url)
        log.info("Using Redis store")
    else:
        store = MemoryStore()
        log.info("Using in-process store")

    conversations = None
    usage = None
    if db_path:
        initialize_schema(db_path)
        conversations = ConversationRepository(db_path)
        usage = UsageRepository(db_path)

    limiter = RateLimiter(store, config.limits, config.global_limits, usage_repository=usage)
    cache = ResponseCache(store, config.cache_ttl)
    monitor = UsageMonitor(limiter, cache, config.monitor)

    primary = None
    if credentials.brave_api_key:
        primary = BraveSearchProvider(credentials.brave_api_key, SEARCH_TIMEOUT, http_client)
    secondary = None
    if credentials.google_api_key and credentials.google_search_engine_id:
        secondary = GoogleSearchProvider(
            credentials.google_api_key, credentials.google_search_engine_id, SEARCH_TIMEOUT, http_client
        )
    weather = None
    if credentials.openweather_api_key:
        weather = OpenWeatherProvider(credentials.openweather_api_key, WEATHER_TIMEOUT, http_client)

    orchestrator = SearchOrchestrator(
        QueryValidator(patterns),
        limiter,
        cache,
        primary=primary,
        secondary=secondary,
        weather_provider=weather,
        crypto_provider=CoinGeckoProvider(CRYPTO_TIMEOUT, http_client),
        monitor=monitor,
        config=config,
        patterns=patterns,
    )

    generator = None
    if credentials.openai_api_key:
        generator = OpenAIGenerator(model, api_key=credentials.openai_api_key)
    else:
        log.warning("OPENAI_API_KEY not set; replies will use the offline phrase")

    memory = ConversationMemory(
        conversations,
        ephemeral=store,
        window=config.memory.window,
        ttl_seconds=config.memory.ttl_seconds,
    )

    return SafetyGuard(
        generator,
        InputSanitizer(patterns, PhraseSampler(MANIPULATION_DEFLECTIONS, rng)),
        OutputSanitizer(patterns, PhraseSampler(OUTPUT_FALLBACKS, rng)),
        ReplyBudget(config.replies.daily_cap),
        memory=memory,
        orchestrator=orchestrator,
        monitor=monitor,
        config=config,
    )
