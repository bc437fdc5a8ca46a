"""
Unit tests for configuration loading and validation.

Tests strict validation of guard configs and the pattern library.
"""

import os
import tempfile
from unittest.mock import patch

import pytest
import yaml

from aura_guard.config.loader import (
    DEFAULT_LIMITS,
    PATTERN_SECTIONS,
    AlertThreshold,
    GuardConfig,
    MonitorConfig,
    ProviderCredentials,
    ReplyConfig,
    get_pattern_library,
    load_guard_config,
    load_pattern_library,
    pattern_categories,
)


class TestGuardConfigLoading:
    """Test guard configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a complete configuration loads correctly."""
        config_path = self._write_config({
            "limits": {"web_search": 2, "weather": 1},
            "global_limits": {"web_search": 50},
            "cache_ttl": {"web_search": 60},
            "replies": {"daily_cap": 50, "max_tokens": 60, "temperature": 0.5, "enhance_replies": False},
            "providers": {"google": False},
            "persona": {"family_friendly": False},
            "memory": {"window": 6, "ttl_seconds": 600},
            "monitor": {
                "thresholds": {"web_search": {"warning": 50, "critical": 75}},
                "user_abuse": 5,
                "incident_window_seconds": 3600,
            },
        })
        config = load_guard_config(config_path)

        assert config.limits == {"web_search": 2, "weather": 1}
        assert config.global_limits == {"web_search": 50}
        assert config.cache_ttl == {"web_search": 60}
        assert config.replies == ReplyConfig(daily_cap=50, max_tokens=60, temperature=0.5, enhance_replies=False)
        assert config.provider_enabled("google") is False
        assert config.provider_enabled("brave") is True
        assert config.family_friendly is False
        assert config.memory.window == 6
        assert config.memory.ttl_seconds == 600
        assert config.monitor.thresholds["web_search"] == AlertThreshold(warning=50, critical=75)
        # thresholds not mentioned keep their defaults
        assert config.monitor.thresholds["weather"] == AlertThreshold(warning=60, critical=80)
        assert config.monitor.user_abuse == 5
        assert config.monitor.incident_window_seconds == 3600
        assert config.monitor.max_tracked_users == 50

    def test_omitted_sections_use_defaults(self):
        """Test that a partial configuration keeps defaults elsewhere."""
        config = load_guard_config(self._write_config({"persona": {"family_friendly": True}}))

        assert config.limits == DEFAULT_LIMITS
        assert config.replies.daily_cap == 1000
        assert config.memory.window == 10
        assert config == GuardConfig()

    def test_default_config_values(self):
        """Test the in-code defaults."""
        config = GuardConfig()

        assert config.hourly_limit("web_search") == 5
        assert config.hourly_limit("total_api") == 15
        assert config.hourly_limit("unknown") is None
        assert config.global_limit("weather") == 300
        assert config.global_limit("crypto_price") is None
        assert config.cache_ttl["crypto_price"] == 300
        assert config.replies.max_tokens == 80
        assert config.replies.temperature == 0.9

    def test_missing_file_raises(self):
        """Test that a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Guard config file not found"):
            load_guard_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml_raises(self):
        """Test that malformed YAML is reported."""
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("limits: {web_search: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_guard_config(config_path)

    def test_empty_file_raises(self):
        """Test that an empty file is rejected."""
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()

        with pytest.raises(ValueError, match="empty"):
            load_guard_config(config_path)

    def test_unknown_top_level_key_rejected(self):
        """Test that a typo in a section name is rejected."""
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_guard_config(self._write_config({"limit": {"web_search": 5}}))

    def test_non_positive_limit_rejected(self):
        """Test that zero and negative limits are rejected."""
        with pytest.raises(ValueError, match="limits.web_search"):
            load_guard_config(self._write_config({"limits": {"web_search": 0}}))

        with pytest.raises(ValueError, match="global_limits.weather"):
            load_guard_config(self._write_config({"global_limits": {"weather": -3}}))

    def test_boolean_limit_rejected(self):
        """Test that booleans are not accepted as integers."""
        with pytest.raises(ValueError, match="positive integer"):
            load_guard_config(self._write_config({"cache_ttl": {"weather": True}}))

    def test_unknown_provider_rejected(self):
        """Test that provider flags are restricted to known providers."""
        with pytest.raises(ValueError, match="Unknown keys in providers"):
            load_guard_config(self._write_config({"providers": {"bing": True}}))

    def test_provider_flag_must_be_boolean(self):
        """Test that provider flags must be booleans."""
        with pytest.raises(ValueError, match="providers.brave"):
            load_guard_config(self._write_config({"providers": {"brave": "yes"}}))

    def test_unknown_reply_key_rejected(self):
        """Test strict validation inside sections."""
        with pytest.raises(ValueError, match="Unknown keys in replies"):
            load_guard_config(self._write_config({"replies": {"daily_limit": 10}}))

    def test_temperature_out_of_range_rejected(self):
        """Test that temperature is bounded."""
        with pytest.raises(ValueError, match="temperature"):
            load_guard_config(self._write_config({"replies": {"temperature": 3}}))

    def test_thresholds_must_be_ordered(self):
        """Test that warning above critical is rejected."""
        with pytest.raises(ValueError, match="Invalid thresholds"):
            load_guard_config(self._write_config({
                "monitor": {"thresholds": {"weather": {"warning": 90, "critical": 80}}}
            }))

    def test_threshold_requires_both_levels(self):
        """Test that a threshold needs both levels."""
        with pytest.raises(ValueError, match="Missing 'warning' or 'critical'"):
            load_guard_config(self._write_config({
                "monitor": {"thresholds": {"weather": {"warning": 50}}}
            }))


class TestConfigDataclasses:
    """Test dataclass validation."""

    def test_alert_threshold_bounds(self):
        """Test percentage bounds."""
        with pytest.raises(ValueError):
            AlertThreshold(warning=0, critical=50)
        with pytest.raises(ValueError):
            AlertThreshold(warning=50, critical=101)

    def test_monitor_config_validation(self):
        """Test monitor settings must be positive."""
        with pytest.raises(ValueError, match="user_abuse"):
            MonitorConfig(user_abuse=0)

    def test_credentials_from_env(self):
        """Test credentials are read from the environment."""
        env = {
            "OPENAI_API_KEY": "openai-key",
            "BRAVE_SEARCH_API_KEY": "brave-key",
            "GOOGLE_API_KEY": "",
        }
        with patch.dict(os.environ, env, clear=True):
            credentials = ProviderCredentials.from_env()

        assert credentials.openai_api_key == "openai-key"
        assert credentials.brave_api_key == "brave-key"
        # empty values count as missing
        assert credentials.google_api_key is None
        assert credentials.openweather_api_key is None


class TestPatternLibrary:
    """Test pattern library loading."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_patterns(self, data) -> str:
        path = os.path.join(self.temp_dir, "patterns.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(data, f)
        return path

    def test_bundled_library_has_every_section(self):
        """Test the bundled pattern file loads and fills every section."""
        library = load_pattern_library()

        for section in PATTERN_SECTIONS:
            assert library.get(section), f"section {section} is empty"

    def test_bundled_library_is_cached(self):
        """Test the default library is loaded once."""
        assert get_pattern_library() is get_pattern_library()

    def test_patterns_are_case_insensitive(self):
        """Test patterns compile with IGNORECASE."""
        library = load_pattern_library()

        rule = library.first_match("validator", "Show me your API_KEY")
        assert rule is not None
        assert rule.category == "credential"

    def test_first_match_respects_order(self):
        """Test the first matching entry wins."""
        path = self._write_patterns({
            "validator": [
                {"pattern": "alpha", "category": "first"},
                {"pattern": "alpha beta", "category": "second"},
            ]
        })
        library = load_pattern_library(path)

        assert library.first_match("validator", "alpha beta").category == "first"
        assert library.first_match("validator", "gamma") is None

    def test_missing_sections_are_empty(self):
        """Test sections absent from the file have no rules."""
        library = load_pattern_library(self._write_patterns({"injection": []}))

        assert library.get("validator") == ()
        assert library.first_match("validator", "anything") is None

    def test_unknown_section_rejected(self):
        """Test that unknown sections are rejected."""
        with pytest.raises(ValueError, match="Unknown keys in patterns"):
            load_pattern_library(self._write_patterns({"blocklist": []}))

    def test_invalid_regex_rejected(self):
        """Test that patterns must compile."""
        path = self._write_patterns({"validator": [{"pattern": "([unclosed", "category": "bad"}]})

        with pytest.raises(ValueError, match="Invalid pattern in validator\\[0\\]"):
            load_pattern_library(path)

    def test_entry_requires_category(self):
        """Test that every entry needs a category."""
        path = self._write_patterns({"validator": [{"pattern": "x"}]})

        with pytest.raises(ValueError, match="'category'"):
            load_pattern_library(path)

    def test_get_unknown_section_raises(self):
        """Test lookups of unknown sections fail loudly."""
        with pytest.raises(KeyError):
            load_pattern_library().get("nonexistent")

    def test_pattern_categories(self):
        """Test distinct categories are listed in first-seen order."""
        path = self._write_patterns({
            "validator": [
                {"pattern": "a", "category": "credential"},
                {"pattern": "b", "category": "system_file"},
                {"pattern": "c", "category": "credential"},
            ]
        })
        library = load_pattern_library(path)

        assert pattern_categories(library, "validator") == ["credential", "system_file"]
