"""
Unit tests for SDK layer.

Tests the OpenAI generator wrapper and guard assembly.
"""

import os
import random
import tempfile
from unittest.mock import AsyncMock, Mock, patch

import pytest

from aura_guard.config.loader import GuardConfig, ProviderCredentials
from aura_guard.core.phrases import OFFLINE_REPLY
from aura_guard.sdk.factory import build_guard
from aura_guard.sdk.openai_client import DEFAULT_MODEL, OpenAIGenerator
from aura_guard.sdk.providers import BraveSearchProvider, CoinGeckoProvider
from aura_guard.storage.repository import ConversationRepository
from aura_guard.storage.store import MemoryStore


def _completion(content):
    response = Mock()
    if content is None:
        response.choices = []
    else:
        choice = Mock()
        choice.message.content = content
        response.choices = [choice]
    return response


class TestOpenAIGenerator:
    """Test OpenAIGenerator wrapper."""

    def setup_method(self):
        """Set up test environment."""
        self.client = Mock()
        self.client.chat.completions.create = AsyncMock(return_value=_completion("ngl that's fire"))

    def test_init_with_client(self):
        """Test initialization with an injected client."""
        generator = OpenAIGenerator(model="gpt-4o", client=self.client)

        assert generator.model == "gpt-4o"
        assert generator.client is self.client

    @patch('aura_guard.sdk.openai_client.AsyncOpenAI')
    def test_init_builds_client(self, mock_openai_class):
        """Test a client is created from the API key."""
        mock_openai_class.return_value = Mock()

        generator = OpenAIGenerator(api_key="sk-test")

        assert generator.model == DEFAULT_MODEL
        mock_openai_class.assert_called_once_with(api_key="sk-test")

    def test_init_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValueError, match="model is required"):
            OpenAIGenerator(model="", client=self.client)

        with pytest.raises(ValueError, match="model is required"):
            OpenAIGenerator(model=None, client=self.client)

    @pytest.mark.asyncio
    async def test_generate_builds_messages(self):
        """Test system prompt, history and user text are sent in order."""
        generator = OpenAIGenerator(client=self.client)
        history = [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "yo"},
        ]

        reply = await generator.generate("be chaotic", history, "what's up", 80, 0.9)

        assert reply == "ngl that's fire"
        self.client.chat.completions.create.assert_awaited_once_with(
            model=DEFAULT_MODEL,
            messages=[
                {"role": "system", "content": "be chaotic"},
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "yo"},
                {"role": "user", "content": "what's up"},
            ],
            max_tokens=80,
            temperature=0.9,
        )

    @pytest.mark.asyncio
    async def test_generate_empty_response(self):
        """Test missing choices or content give an empty string."""
        generator = OpenAIGenerator(client=self.client)

        self.client.chat.completions.create.return_value = _completion(None)
        assert await generator.generate("s", [], "u", 10, 0.5) == ""

        self.client.chat.completions.create.return_value = _completion("")
        assert await generator.generate("s", [], "u", 10, 0.5) == ""

    @pytest.mark.asyncio
    async def test_generate_propagates_errors(self):
        """Test client errors reach the caller unchanged."""
        self.client.chat.completions.create.side_effect = ConnectionError("reset")
        generator = OpenAIGenerator(client=self.client)

        with pytest.raises(ConnectionError):
            await generator.generate("s", [], "u", 10, 0.5)


class TestBuildGuard:
    """Test guard assembly from configuration and credentials."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @patch('aura_guard.sdk.factory.OpenAIGenerator')
    def test_full_credentials(self, mock_generator_class):
        """Test every collaborator is wired when keys are present."""
        credentials = ProviderCredentials(
            openai_api_key="sk-test",
            brave_api_key="brave",
            google_api_key="google",
            google_search_engine_id="cx",
            openweather_api_key="weather",
        )

        guard = build_guard(GuardConfig(), credentials, db_path=self.db_path, rng=random.Random(1))

        mock_generator_class.assert_called_once_with(DEFAULT_MODEL, api_key="sk-test")
        assert guard.generator is mock_generator_class.return_value
        assert isinstance(guard.orchestrator.primary, BraveSearchProvider)
        assert guard.orchestrator.secondary.name == "google"
        assert guard.orchestrator.weather_provider.name == "openweather"
        assert isinstance(guard.memory.durable, ConversationRepository)
        assert isinstance(guard.memory.ephemeral, MemoryStore)
        assert guard.budget.daily_cap == 1000
        assert os.path.exists(self.db_path)

    def test_missing_credentials(self):
        """Test keyless providers are skipped and CoinGecko is always present."""
        guard = build_guard(credentials=ProviderCredentials(), db_path=None)

        assert guard.generator is None
        assert guard.orchestrator.primary is None
        assert guard.orchestrator.secondary is None
        assert guard.orchestrator.weather_provider is None
        assert isinstance(guard.orchestrator.crypto_provider, CoinGeckoProvider)
        assert guard.memory.durable is None
        assert guard.monitor.limiter.usage_repository is None

    @pytest.mark.asyncio
    async def test_offline_guard_replies(self):
        """Test a guard without a generator still answers."""
        guard = build_guard(credentials=ProviderCredentials(), db_path=self.db_path)
        await guard.startup()

        reply = await guard.get_safe_reply("u1", "hello there")
        await guard.shutdown()

        assert reply == OFFLINE_REPLY

    @patch('aura_guard.sdk.factory.RedisStore')
    def test_redis_url(self, mock_store_class):
        """Test a Redis URL selects the Redis store."""
        guard = build_guard(credentials=ProviderCredentials(), db_path=None, redis_url="redis://localhost:6379/0")

        mock_store_class.from_url.assert_called_once_with("redis://localhost:6379/0")
        assert guard.memory.ephemeral is mock_store_class.from_url.return_value
