"""
Inbound text sanitization.

Defends the generation collaborator against prompt injection and
manipulation. Three stages, evaluated in order:

1. Injection patterns - the text is discarded and the fixed deflection returned
2. Manipulation patterns - a deflection sampled from a pool is returned
3. Benign text - truncated and stripped of control characters and
   template delimiters
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from aura_guard.config.loader import PatternLibrary, get_pattern_library
from .phrases import INJECTION_DEFLECTION, MANIPULATION_DEFLECTIONS, PhraseSampler

log = logging.getLogger(__name__)

MAX_INPUT_LENGTH = 500

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\u200b-\u200f\u202a-\u202e\u2066-\u2069]")
_TEMPLATE_DELIMITERS = re.compile(r"\{\{|\}\}|\{%|%\}|<%|%>|\$\{|#\{|`")
_WHITESPACE = re.compile(r"\s+")


class InputVerdict(Enum):
    """Classification of an inbound message."""
    CLEAN = "clean"
    INJECTION = "injection"
    MANIPULATION = "manipulation"


@dataclass(frozen=True)
class SanitizedInput:
    """Result of inspecting inbound text.

    ``text`` is what may be forwarded: the cleaned text for CLEAN, a
    deflection phrase otherwise.
    """
    text: str
    verdict: InputVerdict
    category: Optional[str] = None

    @property
    def forwardable(self) -> bool:
        return self.verdict == InputVerdict.CLEAN


class InputSanitizer:
    """Stateless classifier/rewriter for user text."""

    def __init__(
        self,
        patterns: Optional[PatternLibrary] = None,
        sampler: Optional[PhraseSampler] = None,
        max_length: int = MAX_INPUT_LENGTH
    ):
        self.patterns = patterns or get_pattern_library()
        self.sampler = sampler or PhraseSampler(MANIPULATION_DEFLECTIONS)
        self.max_length = max_length

    def inspect(self, raw_text: object) -> SanitizedInput:
        """Classify and rewrite inbound text. Never raises."""
        if not isinstance(raw_text, str):
            raw_text = "" if raw_text is None else str(raw_text)

        # Control characters can hide an instruction from the patterns.
        probe = _CONTROL_CHARS.sub("", raw_text)

        rule = self.patterns.first_match("injection", probe)
        if rule is not None:
            log.warning("Injection attempt detected (%s)", rule.category)
            return SanitizedInput(INJECTION_DEFLECTION, InputVerdict.INJECTION, rule.category)

        rule = self.patterns.first_match("manipulation", probe)
        if rule is not None:
            log.info("Manipulation attempt deflected (%s)", rule.category)
            return SanitizedInput(self.sampler.sample(), InputVerdict.MANIPULATION, rule.category)

        return SanitizedInput(self.clean(probe), InputVerdict.CLEAN)

    def sanitize(self, raw_text: object) -> str:
        """Return text that is safe to forward, or a deflection phrase."""
        return self.inspect(raw_text).text

    def clean(self, text: str) -> str:
        """Benign path: truncate and strip delimiters and control characters."""
        text = text[:self.max_length]
        text = _CONTROL_CHARS.sub("", text)
        text = _TEMPLATE_DELIMITERS.sub("", text)
        return _WHITESPACE.sub(" ", text).strip()
