"""
Model output sanitization.

Rewrites generated text before it reaches the end user.

Processing Order:
1. Secret redaction - credential-shaped substrings become a marker
2. Leak removal - instruction fragments and scripted refusals are cut out
3. Vocabulary masking (family-friendly mode only)
4. Degenerate check - too little left means a fallback phrase
5. Persona check - corporate tone without persona markers means a fallback phrase
6. Length cap - looser for factual text, cut at a sentence boundary
"""

import logging
import re
import unicodedata
from typing import Optional

from aura_guard.config.loader import PatternLibrary, get_pattern_library
from .phrases import (
    FORMAL_INDICATORS,
    OUTPUT_FALLBACKS,
    PERSONA_MARKERS,
    RESTRICTED_VOCABULARY,
    PhraseSampler,
)

log = logging.getLogger(__name__)

REDACTION_MARKER = "[REDACTED]"
STRICT_LENGTH_CAP = 160
FACTUAL_LENGTH_CAP = 280
MIN_MEANINGFUL_CHARS = 3

# Currency amounts, percentages and units mark time-sensitive factual content.
_FACTUAL = re.compile(
    r"[$€£¥]\s?\d"
    r"|\d+(?:[.,]\d+)?\s?%"
    r"|\d+(?:[.,]\d+)?\s?(?:°\s?[cf]?|degrees|km/h|mph|km|kg|usd|eur|btc|eth|k\b)",
    re.IGNORECASE,
)
_SENTENCE_END = re.compile(r"[.!?](?=\s|$)")
_WHITESPACE = re.compile(r"\s+")
_RESTRICTED = re.compile(
    r"\b(?:" + "|".join(re.escape(word) for word in RESTRICTED_VOCABULARY) + r")\b",
    re.IGNORECASE,
)
_WORD_MARKERS = re.compile(
    r"\b(?:" + "|".join(re.escape(m) for m in PERSONA_MARKERS if m.isascii()) + r")\b",
    re.IGNORECASE,
)
_SYMBOL_MARKERS = tuple(m for m in PERSONA_MARKERS if not m.isascii())
_FORMAL = re.compile(
    r"\b(?:" + "|".join(re.escape(phrase) for phrase in FORMAL_INDICATORS) + r")\b",
    re.IGNORECASE,
)


class OutputSanitizer:
    """Stateless rewriter for model output.

    ``sanitize`` always returns non-empty printable text no longer than
    ``factual_cap`` (``strict_cap`` for non-factual text).
    """

    def __init__(
        self,
        patterns: Optional[PatternLibrary] = None,
        sampler: Optional[PhraseSampler] = None,
        strict_cap: int = STRICT_LENGTH_CAP,
        factual_cap: int = FACTUAL_LENGTH_CAP
    ):
        if strict_cap <= 0 or factual_cap < strict_cap:
            raise ValueError("caps must satisfy 0 < strict_cap <= factual_cap")
        self.patterns = patterns or get_pattern_library()
        self.sampler = sampler or PhraseSampler(OUTPUT_FALLBACKS)
        self.strict_cap = strict_cap
        self.factual_cap = factual_cap

    def sanitize(self, model_text: object, family_friendly: bool = False) -> str:
        """Make generated text safe to show. Never raises."""
        if not isinstance(model_text, str):
            return self.fallback()

        text = self.redact_secrets(model_text)
        text = self.strip_leaks(text)
        if family_friendly:
            text = _RESTRICTED.sub(lambda m: "*" * len(m.group(0)), text)
        text = _printable(text)
        text = _WHITESPACE.sub(" ", text).strip(" ,;:-")

        if _meaningful_chars(text) < MIN_MEANINGFUL_CHARS:
            log.info("Degenerate model output replaced with fallback")
            return self.fallback()

        if self.breaks_persona(text):
            log.warning("Model output broke persona; replaced with fallback")
            return self.fallback()

        return self.cap_length(text)

    def fallback(self) -> str:
        return self.cap_length(self.sampler.sample())

    def redact_secrets(self, text: str) -> str:
        for rule in self.patterns.get("output_secrets"):
            text, count = rule.pattern.subn(REDACTION_MARKER, text)
            if count:
                log.warning("Redacted %d %s-shaped substring(s) from model output", count, rule.category)
        return text

    def strip_leaks(self, text: str) -> str:
        for rule in self.patterns.get("output_leaks"):
            text, count = rule.pattern.subn(" ", text)
            if count:
                log.warning("Removed %s fragment from model output", rule.category)
        return text

    def breaks_persona(self, text: str) -> bool:
        """True when the text sounds corporate and carries no persona marker."""
        if not _FORMAL.search(text):
            return False
        if _WORD_MARKERS.search(text):
            return False
        return not any(marker in text for marker in _SYMBOL_MARKERS)

    def length_cap(self, text: str) -> int:
        return self.factual_cap if _FACTUAL.search(text) else self.strict_cap

    def cap_length(self, text: str) -> str:
        """Cut at the last sentence end within the cap, else at the cap itself."""
        cap = self.length_cap(text)
        if len(text) <= cap:
            return text

        window = text[:cap]
        ends = [m.end() for m in _SENTENCE_END.finditer(text[:cap + 1]) if m.end() <= cap]
        if ends:
            return window[:ends[-1]].rstrip()
        return window.rstrip()


def _printable(text: str) -> str:
    return "".join(ch for ch in text if ch.isprintable() or ch in "\n\t")


def _meaningful_chars(text: str) -> int:
    return sum(
        1 for ch in text
        if not ch.isspace() and not unicodedata.category(ch).startswith("P")
    )
