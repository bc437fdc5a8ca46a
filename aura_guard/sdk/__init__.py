"""
SDK for aura-guard.

Provides the hosted collaborators and the guard factory.
"""

from .factory import build_guard
from .openai_client import OpenAIGenerator
from .providers import (
    BraveSearchProvider,
    CoinGeckoProvider,
    GoogleSearchProvider,
    OpenWeatherProvider,
    ProviderError,
)

__all__ = [
    "build_guard",
    "OpenAIGenerator",
    "BraveSearchProvider",
    "CoinGeckoProvider",
    "GoogleSearchProvider",
    "OpenWeatherProvider",
    "ProviderError",
]
