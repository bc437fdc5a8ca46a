"""
Configuration management and loading.

Handles guard settings, provider credentials and the pattern library.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml


DEFAULT_PATTERN_FILE = Path(__file__).parent / "patterns.yaml"

PATTERN_SECTIONS = (
    "validator",
    "injection",
    "manipulation",
    "output_secrets",
    "output_leaks",
    "search_triggers",
)

DEFAULT_LIMITS = {
    "web_search": 5,
    "crypto_price": 10,
    "weather": 3,
    "total_api": 15,
}

DEFAULT_GLOBAL_LIMITS = {
    "web_search": 500,
    "weather": 300,
}

DEFAULT_CACHE_TTL = {
    "crypto_price": 300,
    "weather": 1800,
    "web_search": 3600,
}

DEFAULT_PROVIDERS = {
    "brave": True,
    "google": True,
    "openweather": True,
    "coingecko": True,
}


@dataclass(frozen=True)
class AlertThreshold:
    """Warning/critical percentages of a daily global limit."""
    warning: int
    critical: int

    def __post_init__(self):
        """Validate thresholds are ordered percentages."""
        if not 0 < self.warning <= 100:
            raise ValueError("warning threshold must be between 1 and 100")
        if not 0 < self.critical <= 100:
            raise ValueError("critical threshold must be between 1 and 100")
        if self.warning > self.critical:
            raise ValueError("warning threshold must not exceed critical threshold")


def _default_thresholds() -> Dict[str, AlertThreshold]:
    return {
        "web_search": AlertThreshold(warning=70, critical=90),
        "weather": AlertThreshold(warning=60, critical=80),
    }


@dataclass(frozen=True)
class ReplyConfig:
    """Settings for AI replies."""
    daily_cap: int = 1000
    max_tokens: int = 80
    temperature: float = 0.9
    enhance_replies: bool = True

    def __post_init__(self):
        if self.daily_cap <= 0:
            raise ValueError("daily_cap must be > 0")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")


@dataclass(frozen=True)
class MemoryConfig:
    """Conversation memory window and ephemeral TTL."""
    window: int = 10
    ttl_seconds: int = 3600

    def __post_init__(self):
        if self.window <= 0:
            raise ValueError("window must be > 0")
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")


@dataclass(frozen=True)
class MonitorConfig:
    """Alerting and incident tracking settings."""
    thresholds: Dict[str, AlertThreshold] = field(default_factory=_default_thresholds)
    user_abuse: int = 3
    incident_window_seconds: int = 86400
    max_tracked_users: int = 50

    def __post_init__(self):
        if self.user_abuse <= 0:
            raise ValueError("user_abuse must be > 0")
        if self.incident_window_seconds <= 0:
            raise ValueError("incident_window_seconds must be > 0")
        if self.max_tracked_users <= 0:
            raise ValueError("max_tracked_users must be > 0")


@dataclass(frozen=True)
class GuardConfig:
    """Complete guard configuration.

    Every section has defaults, so ``GuardConfig()`` is a usable configuration.
    """
    limits: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_LIMITS))
    global_limits: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_GLOBAL_LIMITS))
    cache_ttl: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_CACHE_TTL))
    replies: ReplyConfig = field(default_factory=ReplyConfig)
    providers: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_PROVIDERS))
    family_friendly: bool = True
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)

    def hourly_limit(self, api_type: str) -> Optional[int]:
        """Get the per-user hourly limit for an api type, None if unlimited."""
        return self.limits.get(api_type)

    def global_limit(self, api_type: str) -> Optional[int]:
        """Get the global daily limit for an api type, None if unlimited."""
        return self.global_limits.get(api_type)

    def provider_enabled(self, name: str) -> bool:
        """Providers not mentioned in the configuration are enabled."""
        return self.providers.get(name, True)


@dataclass(frozen=True)
class ProviderCredentials:
    """API keys for the hosted collaborators."""
    openai_api_key: Optional[str] = None
    brave_api_key: Optional[str] = None
    google_api_key: Optional[str] = None
    google_search_engine_id: Optional[str] = None
    openweather_api_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ProviderCredentials":
        """Read credentials from environment variables."""
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            brave_api_key=os.getenv("BRAVE_SEARCH_API_KEY") or None,
            google_api_key=os.getenv("GOOGLE_API_KEY") or None,
            google_search_engine_id=os.getenv("GOOGLE_SEARCH_ENGINE_ID") or None,
            openweather_api_key=os.getenv("OPENWEATHER_API_KEY") or None,
        )


@dataclass(frozen=True)
class PatternRule:
    """A compiled pattern with the category it reports."""
    pattern: "re.Pattern[str]"
    category: str

    def search(self, text: str) -> Optional["re.Match[str]"]:
        return self.pattern.search(text)


@dataclass(frozen=True)
class PatternLibrary:
    """Ordered pattern lists for every classifier."""
    sections: Dict[str, Tuple[PatternRule, ...]]

    def get(self, section: str) -> Tuple[PatternRule, ...]:
        """Get the ordered rules of a section.

        Raises:
            KeyError: If the section is unknown
        """
        if section not in PATTERN_SECTIONS:
            raise KeyError(f"Unknown pattern section: {section}")
        return self.sections.get(section, ())

    def first_match(self, section: str, text: str) -> Optional[PatternRule]:
        """Return the first rule of ``section`` matching ``text``."""
        for rule in self.get(section):
            if rule.search(text):
                return rule
        return None


def _read_yaml(path: str, kind: str) -> Any:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"{kind} file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in {kind.lower()} file {path}: {e}")


def load_guard_config(path: str) -> GuardConfig:
    """Load and validate guard configuration from a YAML file.

    Strict validation ensures no silent misconfiguration: a typo in a limit
    name would otherwise leave that api type unlimited.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    raw_config = _read_yaml(path, "Guard config")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {
        'limits', 'global_limits', 'cache_ttl', 'replies',
        'providers', 'persona', 'memory', 'monitor',
    }
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    defaults = GuardConfig()
    kwargs: Dict[str, Any] = {}

    if 'limits' in raw_config:
        kwargs['limits'] = _parse_int_table(raw_config['limits'], "limits")
    if 'global_limits' in raw_config:
        kwargs['global_limits'] = _parse_int_table(raw_config['global_limits'], "global_limits")
    if 'cache_ttl' in raw_config:
        kwargs['cache_ttl'] = _parse_int_table(raw_config['cache_ttl'], "cache_ttl")

    if 'replies' in raw_config:
        data = _require_dict(raw_config['replies'], "replies")
        _reject_unknown(data, {'daily_cap', 'max_tokens', 'temperature', 'enhance_replies'}, "replies")
        kwargs['replies'] = ReplyConfig(
            daily_cap=_positive_int(data.get('daily_cap', defaults.replies.daily_cap), "replies.daily_cap"),
            max_tokens=_positive_int(data.get('max_tokens', defaults.replies.max_tokens), "replies.max_tokens"),
            temperature=_number(data.get('temperature', defaults.replies.temperature), "replies.temperature"),
            enhance_replies=_flag(data.get('enhance_replies', defaults.replies.enhance_replies), "replies.enhance_replies"),
        )

    if 'providers' in raw_config:
        data = _require_dict(raw_config['providers'], "providers")
        _reject_unknown(data, set(DEFAULT_PROVIDERS), "providers")
        providers = dict(DEFAULT_PROVIDERS)
        for name, enabled in data.items():
            providers[name] = _flag(enabled, f"providers.{name}")
        kwargs['providers'] = providers

    if 'persona' in raw_config:
        data = _require_dict(raw_config['persona'], "persona")
        _reject_unknown(data, {'family_friendly'}, "persona")
        if 'family_friendly' in data:
            kwargs['family_friendly'] = _flag(data['family_friendly'], "persona.family_friendly")

    if 'memory' in raw_config:
        data = _require_dict(raw_config['memory'], "memory")
        _reject_unknown(data, {'window', 'ttl_seconds'}, "memory")
        kwargs['memory'] = MemoryConfig(
            window=_positive_int(data.get('window', defaults.memory.window), "memory.window"),
            ttl_seconds=_positive_int(data.get('ttl_seconds', defaults.memory.ttl_seconds), "memory.ttl_seconds"),
        )

    if 'monitor' in raw_config:
        kwargs['monitor'] = _parse_monitor_config(raw_config['monitor'], defaults.monitor)

    return GuardConfig(**kwargs)


def _parse_monitor_config(raw: Any, defaults: MonitorConfig) -> MonitorConfig:
    """Parse and validate the monitor section.

    Args:
        raw: Monitor section data
        defaults: Values used for omitted keys

    Returns:
        Validated MonitorConfig

    Raises:
        ValueError: If configuration is invalid
    """
    data = _require_dict(raw, "monitor")
    _reject_unknown(
        data,
        {'thresholds', 'user_abuse', 'incident_window_seconds', 'max_tracked_users'},
        "monitor",
    )

    thresholds = dict(defaults.thresholds)
    if 'thresholds' in data:
        threshold_data = _require_dict(data['thresholds'], "monitor.thresholds")
        for api_type, levels in threshold_data.items():
            path = f"monitor.thresholds.{api_type}"
            levels = _require_dict(levels, path)
            _reject_unknown(levels, {'warning', 'critical'}, path)
            if 'warning' not in levels or 'critical' not in levels:
                raise ValueError(f"Missing 'warning' or 'critical' in {path}")
            try:
                thresholds[api_type] = AlertThreshold(
                    warning=_positive_int(levels['warning'], f"{path}.warning"),
                    critical=_positive_int(levels['critical'], f"{path}.critical"),
                )
            except ValueError as e:
                raise ValueError(f"Invalid thresholds in {path}: {e}")

    return MonitorConfig(
        thresholds=thresholds,
        user_abuse=_positive_int(data.get('user_abuse', defaults.user_abuse), "monitor.user_abuse"),
        incident_window_seconds=_positive_int(
            data.get('incident_window_seconds', defaults.incident_window_seconds),
            "monitor.incident_window_seconds",
        ),
        max_tracked_users=_positive_int(
            data.get('max_tracked_users', defaults.max_tracked_users),
            "monitor.max_tracked_users",
        ),
    )


def _require_dict(data: Any, path: str) -> Dict:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_int_table(data: Any, path: str) -> Dict[str, int]:
    """Parse a {api_type: positive int} table."""
    data = _require_dict(data, path)
    return {str(key): _positive_int(value, f"{path}.{key}") for key, value in data.items()}


def _positive_int(value: Any, path: str) -> int:
    # bool is an int subclass; "true" is never a valid limit
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{path}' must be a positive integer")
    return value


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _flag(value: Any, path: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"'{path}' must be true or false")
    return value


def load_pattern_library(path: Optional[str] = None) -> PatternLibrary:
    """Load and compile the pattern library.

    Patterns are compiled case-insensitively. Sections missing from the file
    are empty; unknown sections and invalid regular expressions are rejected.

    Args:
        path: Path to a YAML pattern file (defaults to the bundled library)

    Returns:
        Compiled PatternLibrary

    Raises:
        FileNotFoundError: If the pattern file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If an entry is malformed or a pattern does not compile
    """
    raw = _read_yaml(str(path or DEFAULT_PATTERN_FILE), "Pattern")
    if not raw:
        raise ValueError("Pattern file is empty")
    raw = _require_dict(raw, "patterns")
    _reject_unknown(raw, set(PATTERN_SECTIONS), "patterns")

    sections: Dict[str, Tuple[PatternRule, ...]] = {}
    for section, entries in raw.items():
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise ValueError(f"Pattern section '{section}' must be a list")
        sections[section] = tuple(
            _compile_rule(entry, f"{section}[{index}]")
            for index, entry in enumerate(entries)
        )
    return PatternLibrary(sections=sections)


def _compile_rule(entry: Any, path: str) -> PatternRule:
    entry = _require_dict(entry, path)
    _reject_unknown(entry, {'pattern', 'category'}, path)
    pattern = entry.get('pattern')
    category = entry.get('category')
    if not isinstance(pattern, str) or not pattern:
        raise ValueError(f"'pattern' in {path} must be a non-empty string")
    if not isinstance(category, str) or not category:
        raise ValueError(f"'category' in {path} must be a non-empty string")
    try:
        compiled = re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise ValueError(f"Invalid pattern in {path}: {e}")
    return PatternRule(pattern=compiled, category=category)


_default_library: Optional[PatternLibrary] = None


def get_pattern_library() -> PatternLibrary:
    """Get the bundled pattern library, loaded once per process."""
    global _default_library
    if _default_library is None:
        _default_library = load_pattern_library()
    return _default_library


def pattern_categories(library: PatternLibrary, section: str) -> List[str]:
    """List the distinct categories of a section in first-seen order."""
    seen: List[str] = []
    for rule in library.get(section):
        if rule.category not in seen:
            seen.append(rule.category)
    return seen
