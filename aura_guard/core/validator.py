"""
Outbound query validation.

Rejects malformed or abusive queries before they reach a web-data provider.

Check Order:
1. Type and emptiness
2. Hard length cap
3. Ordered blocklist (first match wins)
4. Per-api-type rules
"""

import re
from dataclasses import dataclass
from typing import Optional

from aura_guard.config.loader import PatternLibrary, get_pattern_library

MAX_QUERY_LENGTH = 200
MIN_SEARCH_LENGTH = 3

_PLACE_NAME = re.compile(r"^[a-zA-Z\s,.-]+$")


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one query."""
    valid: bool
    reason: Optional[str] = None
    category: Optional[str] = None
    pattern: Optional[str] = None


VALID = ValidationResult(valid=True)


class QueryValidator:
    """Stateless classifier for outbound queries.

    False positives are acceptable: results are only ever displayed, so a
    blocked benign query costs one missed enhancement.
    """

    def __init__(
        self,
        patterns: Optional[PatternLibrary] = None,
        max_length: int = MAX_QUERY_LENGTH
    ):
        self.patterns = patterns or get_pattern_library()
        self.max_length = max_length

    def validate(self, api_type: str, query: object) -> ValidationResult:
        """Validate a query for an api type.

        Args:
            api_type: Category of the protected call
            query: Untrusted query text

        Returns:
            ValidationResult; ``category`` is set when a blocklist rule matched
        """
        if not isinstance(query, str) or not query.strip():
            return ValidationResult(valid=False, reason="Invalid query format")

        if len(query) > self.max_length:
            return ValidationResult(valid=False, reason="Query too long")

        rule = self.patterns.first_match("validator", query)
        if rule is not None:
            return ValidationResult(
                valid=False,
                reason="Query contains blocked content",
                category=rule.category,
                pattern=rule.pattern.pattern,
            )

        if api_type == "web_search" and len(query.strip()) < MIN_SEARCH_LENGTH:
            return ValidationResult(valid=False, reason="Search query too short")

        if api_type == "weather" and not _PLACE_NAME.match(query):
            return ValidationResult(valid=False, reason="Invalid city name format")

        return VALID
