"""
Unit tests for tiered conversation memory.

Tests ordering, the window bound and fallback to the durable tier.
"""

import os
import tempfile
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from aura_guard.core.memory import ConversationMemory, history_key
from aura_guard.storage.models import ConversationTurn
from aura_guard.storage.repository import ConversationRepository, initialize_schema
from aura_guard.storage.store import MemoryStore


class FakeClock:
    """Wall clock that ticks one second per call."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def _failing_store() -> Mock:
    store = Mock()
    store.window = AsyncMock(side_effect=ConnectionError("redis down"))
    store.push_window = AsyncMock(side_effect=ConnectionError("redis down"))
    return store


class TestConversationMemory:
    """Test reads and writes across both tiers."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.durable = ConversationRepository(self.db_path)
        self.ephemeral = MemoryStore()
        self.clock = FakeClock()
        self.memory = ConversationMemory(self.durable, self.ephemeral, window=10, clock=self.clock)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def _exchanges(self, memory: ConversationMemory, count: int) -> None:
        for i in range(count):
            await memory.append_exchange("u1", "telegram", "c1", f"question {i}", f"answer {i}")

    @pytest.mark.asyncio
    async def test_append_then_read_is_chronological(self):
        """Turns come back oldest first, user before assistant."""
        await self._exchanges(self.memory, 2)
        await self.memory.flush()

        turns = await self.memory.read("u1", "telegram", "c1")

        assert [(t.role, t.content) for t in turns] == [
            ("user", "question 0"),
            ("assistant", "answer 0"),
            ("user", "question 1"),
            ("assistant", "answer 1"),
        ]

    @pytest.mark.asyncio
    async def test_read_is_bounded_by_window(self):
        """At most ``window`` turns are returned, the newest ones."""
        await self._exchanges(self.memory, 8)
        await self.memory.flush()

        turns = await self.memory.read("u1", "telegram", "c1")

        assert len(turns) == 10
        assert turns[0].content == "question 3"
        assert turns[-1].content == "answer 7"
        assert len(await self.ephemeral.window(history_key("u1", "telegram", "c1"))) == 10

    @pytest.mark.asyncio
    async def test_durable_tier_receives_turns(self):
        """Background writes land in the durable tier in order."""
        await self._exchanges(self.memory, 3)
        await self.memory.flush()

        turns = self.durable.recent_turns("u1", "telegram", "c1", limit=50)

        assert [t.content for t in turns] == [
            "question 0", "answer 0", "question 1", "answer 1", "question 2", "answer 2",
        ]

    @pytest.mark.asyncio
    async def test_cold_start_reads_durable_tier(self):
        """An empty ephemeral tier falls back to the durable tier."""
        await self._exchanges(self.memory, 2)
        await self.memory.flush()
        warm = await self.memory.read("u1", "telegram", "c1")

        restarted = ConversationMemory(self.durable, MemoryStore(), window=10, clock=self.clock)
        cold = await restarted.read("u1", "telegram", "c1")

        assert cold == warm

    @pytest.mark.asyncio
    async def test_cold_start_warms_ephemeral_tier(self):
        """Durable rows seed the ephemeral window so later appends extend it."""
        await self._exchanges(self.memory, 1)
        await self.memory.flush()

        store = MemoryStore()
        restarted = ConversationMemory(self.durable, store, window=10, clock=self.clock)
        await restarted.read("u1", "telegram", "c1")
        await restarted.append_exchange("u1", "telegram", "c1", "question 1", "answer 1")
        await restarted.flush()

        turns = await restarted.read("u1", "telegram", "c1")
        assert [t.content for t in turns] == ["question 0", "answer 0", "question 1", "answer 1"]

    @pytest.mark.asyncio
    async def test_failing_ephemeral_tier_falls_back(self):
        """An unavailable ephemeral tier is transparent to callers."""
        memory = ConversationMemory(self.durable, _failing_store(), window=10, clock=self.clock)

        await self._exchanges(memory, 2)
        await memory.flush()
        turns = await memory.read("u1", "telegram", "c1")

        assert [t.content for t in turns] == ["question 0", "answer 0", "question 1", "answer 1"]

    @pytest.mark.asyncio
    async def test_works_without_ephemeral_tier(self):
        """The durable tier alone is enough."""
        memory = ConversationMemory(self.durable, None, window=4, clock=self.clock)

        await self._exchanges(memory, 3)
        await memory.flush()
        turns = await memory.read("u1", "telegram", "c1")

        assert [t.content for t in turns] == ["question 1", "answer 1", "question 2", "answer 2"]

    @pytest.mark.asyncio
    async def test_works_without_durable_tier(self):
        """The ephemeral tier alone serves reads."""
        memory = ConversationMemory(None, MemoryStore(), window=10, clock=self.clock)

        await self._exchanges(memory, 1)

        assert len(await memory.read("u1", "telegram", "c1")) == 2

    @pytest.mark.asyncio
    async def test_durable_write_failure_is_not_raised(self):
        """A failing durable write is logged and the caller carries on."""
        durable = Mock()
        durable.append_turn.side_effect = Exception("disk full")
        memory = ConversationMemory(durable, MemoryStore(), window=10, clock=self.clock)

        await self._exchanges(memory, 1)
        await memory.flush()

        assert len(await memory.read("u1", "telegram", "c1")) == 2

    @pytest.mark.asyncio
    async def test_conversations_are_isolated(self):
        """Different chats keep separate histories."""
        await self.memory.append(ConversationTurn("u1", "telegram", "c1", "user", "one", self.clock()))
        await self.memory.append(ConversationTurn("u1", "telegram", "c2", "user", "two", self.clock()))
        await self.memory.flush()

        turns = await self.memory.read("u1", "telegram", "c2")

        assert [t.content for t in turns] == ["two"]

    def test_window_must_be_positive(self):
        """A zero window is rejected."""
        with pytest.raises(ValueError):
            ConversationMemory(None, window=0)
