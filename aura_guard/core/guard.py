"""
Safe reply pipeline.

The two entry points platform adapters call. Neither raises: every failure
resolves to an in-persona string (``get_safe_reply``) or None (``enhance``).

Reply Flow:
1. Empty text -> fixed phrase
2. Input sanitizer -> deflection for injection or manipulation, no generation
3. Reply budget reservation -> fixed phrase when exhausted
4. Conversation history and optional real-time context
5. Generation, then output sanitizer
6. History append and usage bookkeeping
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

import openai

from aura_guard.config.loader import GuardConfig
from .input_sanitizer import InputSanitizer, InputVerdict, SanitizedInput
from .memory import ConversationMemory
from .monitor import UsageMonitor
from .output_sanitizer import OutputSanitizer
from .phrases import (
    BAD_REQUEST_REPLY,
    CRASH_REPLY,
    DAILY_LIMIT_REPLY,
    EMPTY_INPUT_REPLY,
    OFFLINE_REPLY,
    QUOTA_REPLY,
    RATE_LIMITED_REPLY,
    REALTIME_PROMPT,
    persona_prompt,
)
from .reply_budget import ReplyBudget
from .search import EnhancementResult, SearchOrchestrator

log = logging.getLogger(__name__)


class TextGenerator(Protocol):
    async def generate(
        self,
        system_prompt: str,
        history: List[Dict[str, str]],
        user_text: str,
        max_tokens: int,
        temperature: float
    ) -> str:
        ...


def incident_kind(inspected: SanitizedInput) -> str:
    """Monitor incident kind for a deflected message."""
    if inspected.verdict == InputVerdict.MANIPULATION:
        return "manipulation_attempt"
    if inspected.category == "secret_extraction":
        return "api_key_extraction"
    return "injection_attempt"


def generation_error_reply(error: Exception) -> str:
    """Map a generator failure onto an in-persona reply."""
    if isinstance(error, openai.RateLimitError):
        if "insufficient_quota" in str(error):
            return QUOTA_REPLY
        return RATE_LIMITED_REPLY
    if isinstance(error, openai.BadRequestError):
        return BAD_REQUEST_REPLY
    return CRASH_REPLY


class SafetyGuard:
    """Wires the governance components around a text generator."""

    def __init__(
        self,
        generator: Optional[TextGenerator],
        input_sanitizer: InputSanitizer,
        output_sanitizer: OutputSanitizer,
        budget: ReplyBudget,
        memory: Optional[ConversationMemory] = None,
        orchestrator: Optional[SearchOrchestrator] = None,
        monitor: Optional[UsageMonitor] = None,
        config: Optional[GuardConfig] = None
    ):
        self.generator = generator
        self.input_sanitizer = input_sanitizer
        self.output_sanitizer = output_sanitizer
        self.budget = budget
        self.memory = memory
        self.orchestrator = orchestrator
        self.monitor = monitor
        self.config = config or GuardConfig()

    async def get_safe_reply(
        self,
        user_id: str,
        text: Any,
        platform: str = "telegram",
        chat_id: Optional[str] = None,
        family_friendly: Optional[bool] = None
    ) -> str:
        """Produce a persona reply to a user message.

        Args:
            user_id: Platform user identifier
            text: Untrusted message text
            platform: Platform name
            chat_id: Conversation identifier (defaults to the user id)
            family_friendly: Persona mode; None uses the configured default

        Returns:
            Non-empty, sanitized, in-persona text
        """
        try:
            return await self._reply(user_id, text, platform, chat_id, family_friendly)
        except Exception as e:
            log.error("Reply pipeline failed for %s:%s: %s", platform, user_id, e)
            return CRASH_REPLY

    async def _reply(
        self,
        user_id: str,
        text: Any,
        platform: str,
        chat_id: Optional[str],
        family_friendly: Optional[bool]
    ) -> str:
        if not isinstance(text, str) or not text.strip():
            return EMPTY_INPUT_REPLY

        chat_id = chat_id or user_id
        if family_friendly is None:
            family_friendly = self.config.family_friendly

        inspected = self.input_sanitizer.inspect(text)
        if not inspected.forwardable:
            if self.monitor is not None:
                self.monitor.record_incident(user_id, platform, incident_kind(inspected), text[:100])
            return inspected.text

        user_text = inspected.text
        if not user_text:
            return EMPTY_INPUT_REPLY

        if self.generator is None:
            return OFFLINE_REPLY

        if not self.budget.reserve():
            log.warning("Daily reply cap of %d reached", self.budget.daily_cap)
            return DAILY_LIMIT_REPLY

        history = []
        if self.memory is not None:
            history = await self.memory.read(user_id, platform, chat_id)

        system_prompt = persona_prompt(family_friendly)
        if self.config.replies.enhance_replies:
            enhancement = await self.enhance(user_text, user_id, platform)
            if enhancement is not None:
                log.info("Using real-time context (%s)", ", ".join(enhancement.sources))
                system_prompt += REALTIME_PROMPT.format(context=enhancement.context_block())

        try:
            raw = await self.generator.generate(
                system_prompt,
                [turn.as_message() for turn in history],
                user_text,
                self.config.replies.max_tokens,
                self.config.replies.temperature,
            )
        except Exception as e:
            self.budget.release()
            log.error("Generation failed for %s:%s: %s", platform, user_id, e)
            return generation_error_reply(e)

        reply = self.output_sanitizer.sanitize(raw, family_friendly)

        if self.memory is not None:
            await self.memory.append_exchange(user_id, platform, chat_id, user_text, reply)
        if self.monitor is not None:
            self.monitor.record_reply()
        return reply

    async def startup(self) -> None:
        """Reload today's global usage saved by a previous process."""
        if self.monitor is not None:
            restored = await self.monitor.limiter.restore()
            if restored:
                log.info("Restored usage snapshot: %s", restored)

    async def shutdown(self) -> None:
        """Wait for pending history writes."""
        if self.memory is not None:
            await self.memory.flush()

    async def enhance(self, text: str, user_id: str, platform: str = "telegram") -> Optional[EnhancementResult]:
        """Real-time data for a message, or None. Never raises."""
        if self.orchestrator is None:
            return None
        try:
            return await self.orchestrator.enhance(text, user_id, platform)
        except Exception as e:
            log.error("Enhancement failed for %s:%s: %s", platform, user_id, e)
            return None
