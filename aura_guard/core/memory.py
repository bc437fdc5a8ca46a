"""
Tiered conversation memory.

The durable tier (sqlite) is authoritative. The ephemeral tier (a Store,
usually Redis) caches the newest turns of each conversation and may be
absent or failing at any time without affecting correctness.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Set

from aura_guard.storage.models import ConversationTurn
from aura_guard.storage.repository import ConversationRepository
from aura_guard.storage.store import Store

log = logging.getLogger(__name__)

DEFAULT_WINDOW = 10
DEFAULT_TTL_SECONDS = 3600


def history_key(user_id: str, platform: str, chat_id: str) -> str:
    return f"chat:{platform}:{user_id}:{chat_id}"


class ConversationMemory:
    """Bounded, chronologically ordered conversation history.

    Args:
        durable: Authoritative repository, or None to run ephemeral-only
        ephemeral: Optional fast store holding the newest turns
        window: Maximum number of turns returned by ``read``
        ttl_seconds: Ephemeral TTL, refreshed on every append
    """

    def __init__(
        self,
        durable: Optional[ConversationRepository],
        ephemeral: Optional[Store] = None,
        window: int = DEFAULT_WINDOW,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = datetime.now
    ):
        if window <= 0:
            raise ValueError("window must be > 0")
        self.durable = durable
        self.ephemeral = ephemeral
        self.window = window
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._pending: Set["asyncio.Task[None]"] = set()
        # Durable writes run one at a time, in append order.
        self._write_lock = asyncio.Lock()

    async def read(self, user_id: str, platform: str, chat_id: str) -> List[ConversationTurn]:
        """Most recent turns, oldest first, at most ``window`` of them."""
        turns = await self._read_ephemeral(user_id, platform, chat_id)
        if not turns:
            turns = await self._read_durable(user_id, platform, chat_id)
            await self._warm(turns)
        return turns[-self.window:]

    async def _warm(self, turns: List[ConversationTurn]) -> None:
        """Seed an empty ephemeral window from durable rows."""
        if self.ephemeral is None or not turns:
            return
        try:
            for turn in turns[-self.window:]:
                await self.ephemeral.push_window(
                    history_key(turn.user_id, turn.platform, turn.chat_id),
                    turn.to_dict(),
                    self.window,
                    self.ttl_seconds,
                )
        except Exception as e:
            log.warning("Could not warm ephemeral history: %s", e)

    async def _read_ephemeral(self, user_id: str, platform: str, chat_id: str) -> List[ConversationTurn]:
        if self.ephemeral is None:
            return []
        try:
            rows = await self.ephemeral.window(history_key(user_id, platform, chat_id))
            return [ConversationTurn.from_dict(row) for row in rows]
        except Exception as e:
            log.warning("Ephemeral history unavailable, using durable tier: %s", e)
            return []

    async def _read_durable(self, user_id: str, platform: str, chat_id: str) -> List[ConversationTurn]:
        if self.durable is None:
            return []
        try:
            return await asyncio.to_thread(
                self.durable.recent_turns, user_id, platform, chat_id, self.window
            )
        except Exception as e:
            log.error("Error reading conversation history: %s", e)
            return []

    async def append(self, turn: ConversationTurn) -> None:
        """Write through to the ephemeral tier; persist durably in the background."""
        if self.ephemeral is not None:
            try:
                await self.ephemeral.push_window(
                    history_key(turn.user_id, turn.platform, turn.chat_id),
                    turn.to_dict(),
                    self.window,
                    self.ttl_seconds,
                )
            except Exception as e:
                log.warning("Error storing turn in ephemeral tier: %s", e)

        if self.durable is not None:
            task = asyncio.create_task(self._persist(turn))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def append_exchange(
        self,
        user_id: str,
        platform: str,
        chat_id: str,
        user_text: str,
        reply: str
    ) -> None:
        """Append a user message and the assistant reply, in that order."""
        now = self.clock()
        await self.append(ConversationTurn(user_id, platform, chat_id, "user", user_text, now))
        await self.append(ConversationTurn(user_id, platform, chat_id, "assistant", reply, now))

    async def _persist(self, turn: ConversationTurn) -> None:
        async with self._write_lock:
            try:
                await asyncio.to_thread(self.durable.append_turn, turn)
            except Exception as e:
                log.error("Error storing turn in durable tier: %s", e)

    async def flush(self) -> None:
        """Wait for background durable writes to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending))
