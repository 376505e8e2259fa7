"""Tests for the configuration system."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from webrecover.config import (
    DecisionConfig,
    GeneratorConfig,
    LibraryConfig,
    RecoveryConfig,
    format_config_for_display,
    get_config_path,
    load_config,
    profile_config,
    save_config,
)

CLEAN_ENV = {
    "ANTHROPIC_API_KEY": "",
    "WEBRECOVER_PROFILE": "default",
    "WEBRECOVER_RATE_LIMIT": "",
    "WEBRECOVER_DB_PATH": "",
    "WEBRECOVER_AUDIT_LOG": "",
}


# =============================================================================
# Sections
# =============================================================================


class TestSections:
    """Tests for section defaults and dict conversion."""

    def test_decision_defaults(self):
        config = DecisionConfig()
        assert config.complexity_threshold == 7
        assert config.failure_count_threshold == 2
        assert config.confidence_threshold == 0.7
        assert config.max_built_in_attempts == 3

    def test_generator_dict_hides_api_key(self):
        config = GeneratorConfig(api_key="sk-secret")
        assert "api_key" not in config.to_dict()
        assert config.to_dict(include_secrets=True)["api_key"] == "sk-secret"

    def test_library_weights_from_dict(self):
        config = LibraryConfig.from_dict({"weights": {"recency": 0.3}, "max_results": 3})
        assert config.weights.recency == 0.3
        assert config.weights.success_rate == 0.30
        assert config.max_results == 3

    def test_round_trip(self):
        config = RecoveryConfig()
        config.generator.max_requests_per_minute = 12
        restored = RecoveryConfig.from_dict(config.to_dict(include_secrets=True))
        assert restored.to_dict(include_secrets=True) == config.to_dict(include_secrets=True)


class TestDottedAccess:
    def test_get(self):
        config = RecoveryConfig()
        assert config.get("decision.confidence_threshold") == 0.7
        assert config.get("library.weights.recency") == 0.15
        assert config.get("decision.missing", "fallback") == "fallback"

    def test_set(self):
        config = RecoveryConfig()
        assert config.set("cache.max_size", 5) is True
        assert config.cache.max_size == 5
        assert config.set("cache.nope", 5) is False
        assert config.set("cache", 5) is False


# =============================================================================
# Validation
# =============================================================================


class TestValidate:
    """Tests for resetting out-of-range values."""

    def test_valid_config_has_no_warnings(self):
        assert RecoveryConfig().validate() == []

    def test_out_of_range_values_reset_to_defaults(self):
        config = RecoveryConfig()
        config.generator.max_requests_per_minute = 500
        config.decision.confidence_threshold = 1.5
        config.sandbox.timeout_ms = 10

        warnings = config.validate()

        assert len(warnings) == 3
        assert warnings[0] == (
            "GeneratorConfig.max_requests_per_minute=500 must be between 1 and 100; using default 30"
        )
        assert config.generator.max_requests_per_minute == 30
        assert config.decision.confidence_threshold == 0.7
        assert config.sandbox.timeout_ms == 30000


# =============================================================================
# Profiles
# =============================================================================


class TestProfiles:
    def test_test_profile(self):
        config = profile_config("test")
        assert config.profile == "test"
        assert config.generator.enabled is False
        assert config.audit.enabled is False
        assert config.library.db_path == ":memory:"

    def test_overrides_merge_over_profile(self):
        config = profile_config("production", {"generator": {"timeout_ms": 60000}})
        assert config.generator.max_requests_per_minute == 20
        assert config.generator.timeout_ms == 60000

    def test_unknown_profile(self):
        with pytest.raises(ValueError, match="Unknown profile: staging"):
            profile_config("staging")


# =============================================================================
# Loading and saving
# =============================================================================


class TestLoadSave:
    """Tests for reading and writing the TOML file."""

    def test_missing_file_gives_defaults(self):
        with tempfile.TemporaryDirectory() as tmpdir, patch.dict(os.environ, CLEAN_ENV):
            config = load_config(Path(tmpdir) / "config.toml")
        assert config.generator.max_requests_per_minute == 30
        assert config.last_modified is None
        assert config.warnings == []

    def test_save_then_load(self):
        with tempfile.TemporaryDirectory() as tmpdir, patch.dict(os.environ, CLEAN_ENV):
            path = Path(tmpdir) / "nested" / "config.toml"
            config = profile_config("development")
            config.cache.max_size = 42

            assert save_config(config, path) is True
            loaded = load_config(path)

        assert loaded.profile == "development"
        assert loaded.cache.max_size == 42
        assert loaded.decision.confidence_threshold == 0.6
        assert loaded.last_modified is not None

    def test_invalid_file_values_are_reported(self):
        with tempfile.TemporaryDirectory() as tmpdir, patch.dict(os.environ, CLEAN_ENV):
            path = Path(tmpdir) / "config.toml"
            path.write_text("[decision]\nconfidence_threshold = 2.0\n")
            config = load_config(path)

        assert config.decision.confidence_threshold == 0.7
        assert len(config.warnings) == 1

    def test_unparseable_file_falls_back_to_defaults(self):
        with tempfile.TemporaryDirectory() as tmpdir, patch.dict(os.environ, CLEAN_ENV):
            path = Path(tmpdir) / "config.toml"
            path.write_text("this is [not toml")
            config = load_config(path)
        assert config.generator.timeout_ms == 120000

    def test_environment_overrides(self):
        env = {
            **CLEAN_ENV,
            "ANTHROPIC_API_KEY": "sk-from-env",
            "WEBRECOVER_RATE_LIMIT": "10",
            "WEBRECOVER_SANDBOX_ENABLED": "false",
            "WEBRECOVER_DB_PATH": "/tmp/solutions.db",
        }
        with tempfile.TemporaryDirectory() as tmpdir, patch.dict(os.environ, env):
            config = load_config(Path(tmpdir) / "config.toml")

        assert config.generator.api_key == "sk-from-env"
        assert config.generator.max_requests_per_minute == 10
        assert config.sandbox.enabled is False
        assert config.library.db_path == "/tmp/solutions.db"

    def test_non_integer_rate_limit_is_ignored(self):
        env = {**CLEAN_ENV, "WEBRECOVER_RATE_LIMIT": "fast"}
        with tempfile.TemporaryDirectory() as tmpdir, patch.dict(os.environ, env):
            config = load_config(Path(tmpdir) / "config.toml")
        assert config.generator.max_requests_per_minute == 30

    def test_config_path_from_environment(self):
        with patch.dict(os.environ, {"WEBRECOVER_CONFIG": "/etc/webrecover.toml"}):
            assert get_config_path() == Path("/etc/webrecover.toml")


class TestDisplay:
    def test_api_key_is_masked(self):
        config = RecoveryConfig()
        config.generator.api_key = "sk-ant-1234567890"

        text = format_config_for_display(config)
        assert "api_key = sk-a***" in text
        assert "sk-ant-1234567890" not in text
        assert "sk-ant-1234567890" in format_config_for_display(config, show_secrets=True)

    def test_unset_api_key(self):
        assert "api_key = (not set)" in format_config_for_display(RecoveryConfig())
