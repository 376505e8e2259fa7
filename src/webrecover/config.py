"""Configuration for the webrecover recovery engine.

Configuration is stored at ~/.webrecover/config.toml and organized into
sections. There is no process-wide instance: load_config() returns a fresh
RecoveryConfig that callers pass to the engines they construct.

Configuration loading priority:
1. Environment variables (highest)
2. Config file (~/.webrecover/config.toml or $WEBRECOVER_CONFIG)
3. Profile / defaults (lowest)

Sections:
    [generator]  - External solution generator (model, rate limit, timeouts)
    [decision]   - Built-in vs generated decision thresholds
    [cache]      - Generated-solution cache size and TTL
    [sandbox]    - Command allow-list and execution timeout
    [audit]      - Append-only audit log location and retention
    [recovery]   - Orchestrator behaviour (fallback, session retention)
    [library]    - Solution store location, search weights, learning

Example:
    from webrecover.config import load_config

    config = load_config()
    print(config.generator.max_requests_per_minute)
    print(config.decision.confidence_threshold)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any

import tomli_w

logger = logging.getLogger(__name__)

# Default config location
DEFAULT_CONFIG_DIR = Path.home() / ".webrecover"
DEFAULT_CONFIG_FILE = "config.toml"

# Safe interaction primitives generated solutions may use
DEFAULT_ALLOWED_OPERATIONS: list[str] = [
    "click",
    "dblclick",
    "fill",
    "type",
    "press",
    "select_option",
    "check",
    "uncheck",
    "clear",
    "hover",
    "focus",
    "blur",
    "wait_for_selector",
    "wait_for_timeout",
    "wait_for_load_state",
    "goto",
    "reload",
    "go_back",
    "go_forward",
    "screenshot",
    "scroll_into_view",
    "locator",
    "get_by_role",
    "get_by_label",
    "get_by_text",
    "get_attribute",
    "text_content",
    "inner_html",
]


# =============================================================================
# Configuration Sections
# =============================================================================


@dataclass
class GeneratorConfig:
    """External solution generator settings.

    Attributes:
        enabled: Allow recovery to use generated solutions at all.
        api_key: API key for the generator backend (never written unmasked
            to display output).
        model: Model identifier passed to the backend.
        max_requests_per_minute: Sliding 60s admission window size.
        timeout_ms: Per-invocation timeout.
        max_retries: Backend-level retries for transient API errors.
        max_tokens: Response token cap.
        temperature: Sampling temperature.
    """

    enabled: bool = True
    api_key: str = ""
    model: str = "claude-sonnet-4-20250514"
    max_requests_per_minute: int = 30
    timeout_ms: int = 120000
    max_retries: int = 3
    max_tokens: int = 4000
    temperature: float = 0.1

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GeneratorConfig:
        """Create from dictionary."""
        return cls(
            enabled=data.get("enabled", True),
            api_key=data.get("api_key", ""),
            model=data.get("model", "claude-sonnet-4-20250514"),
            max_requests_per_minute=int(data.get("max_requests_per_minute", 30)),
            timeout_ms=int(data.get("timeout_ms", 120000)),
            max_retries=int(data.get("max_retries", 3)),
            max_tokens=int(data.get("max_tokens", 4000)),
            temperature=float(data.get("temperature", 0.1)),
        )

    def to_dict(self, include_secrets: bool = False) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {
            "enabled": self.enabled,
            "model": self.model,
            "max_requests_per_minute": self.max_requests_per_minute,
            "timeout_ms": self.timeout_ms,
            "max_retries": self.max_retries,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if include_secrets:
            result["api_key"] = self.api_key
        return result


@dataclass
class DecisionConfig:
    """Decision engine thresholds.

    Attributes:
        complexity_threshold: Complexity above which generation is preferred.
        failure_count_threshold: Built-in failures that saturate the failure factor.
        confidence_threshold: Minimum generated-solution confidence to cache or run.
        max_built_in_attempts: Retry count at which generation is forced.
    """

    complexity_threshold: int = 7
    failure_count_threshold: int = 2
    confidence_threshold: float = 0.7
    max_built_in_attempts: int = 3

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DecisionConfig:
        """Create from dictionary."""
        return cls(
            complexity_threshold=int(data.get("complexity_threshold", 7)),
            failure_count_threshold=int(data.get("failure_count_threshold", 2)),
            confidence_threshold=float(data.get("confidence_threshold", 0.7)),
            max_built_in_attempts=int(data.get("max_built_in_attempts", 3)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "complexity_threshold": self.complexity_threshold,
            "failure_count_threshold": self.failure_count_threshold,
            "confidence_threshold": self.confidence_threshold,
            "max_built_in_attempts": self.max_built_in_attempts,
        }


@dataclass
class CacheConfig:
    """Generated-solution cache settings."""

    enabled: bool = True
    max_size: int = 1000
    expiration_hours: float = 24.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheConfig:
        """Create from dictionary."""
        return cls(
            enabled=data.get("enabled", True),
            max_size=int(data.get("max_size", 1000)),
            expiration_hours=float(data.get("expiration_hours", 24.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "enabled": self.enabled,
            "max_size": self.max_size,
            "expiration_hours": self.expiration_hours,
        }


@dataclass
class SandboxConfig:
    """Sandbox settings.

    Attributes:
        enabled: Validate and time-box generated solutions. When disabled,
            commands still run through the interpreter but validation is
            skipped and a warning is attached to the result.
        timeout_ms: Hard execution timeout.
        allowed_operations: Operation names generated solutions may invoke.
    """

    enabled: bool = True
    timeout_ms: int = 30000
    allowed_operations: list[str] = field(
        default_factory=lambda: list(DEFAULT_ALLOWED_OPERATIONS)
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SandboxConfig:
        """Create from dictionary."""
        return cls(
            enabled=data.get("enabled", True),
            timeout_ms=int(data.get("timeout_ms", 30000)),
            allowed_operations=list(
                data.get("allowed_operations", DEFAULT_ALLOWED_OPERATIONS)
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "enabled": self.enabled,
            "timeout_ms": self.timeout_ms,
            "allowed_operations": list(self.allowed_operations),
        }


@dataclass
class AuditConfig:
    """Audit log settings."""

    enabled: bool = True
    log_path: str = "logs/generator-audit.jsonl"
    retention_days: int = 30
    max_memory_events: int = 10000

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditConfig:
        """Create from dictionary."""
        return cls(
            enabled=data.get("enabled", True),
            log_path=data.get("log_path", "logs/generator-audit.jsonl"),
            retention_days=int(data.get("retention_days", 30)),
            max_memory_events=int(data.get("max_memory_events", 10000)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "enabled": self.enabled,
            "log_path": self.log_path,
            "retention_days": self.retention_days,
            "max_memory_events": self.max_memory_events,
        }


@dataclass
class OrchestratorConfig:
    """Recovery orchestrator settings.

    Attributes:
        enable_generated_recovery: Allow the generated-solution path.
        fallback_to_built_in: Try the opposite path when the first one fails.
        log_successful_strategies: Log an info line for each recovered failure.
        track_performance_metrics: Maintain running timing averages.
        session_retention_seconds: How long finished sessions stay inspectable.
    """

    enable_generated_recovery: bool = True
    fallback_to_built_in: bool = True
    log_successful_strategies: bool = True
    track_performance_metrics: bool = True
    session_retention_seconds: float = 300.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrchestratorConfig:
        """Create from dictionary."""
        return cls(
            enable_generated_recovery=data.get("enable_generated_recovery", True),
            fallback_to_built_in=data.get("fallback_to_built_in", True),
            log_successful_strategies=data.get("log_successful_strategies", True),
            track_performance_metrics=data.get("track_performance_metrics", True),
            session_retention_seconds=float(data.get("session_retention_seconds", 300.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "enable_generated_recovery": self.enable_generated_recovery,
            "fallback_to_built_in": self.fallback_to_built_in,
            "log_successful_strategies": self.log_successful_strategies,
            "track_performance_metrics": self.track_performance_metrics,
            "session_retention_seconds": self.session_retention_seconds,
        }


@dataclass
class RelevanceWeights:
    """Weights for ranking stored solutions. Should sum to 1.0."""

    success_rate: float = 0.30
    confidence: float = 0.25
    recency: float = 0.15
    performance: float = 0.15
    compatibility: float = 0.15

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RelevanceWeights:
        """Create from dictionary."""
        return cls(
            success_rate=float(data.get("success_rate", 0.30)),
            confidence=float(data.get("confidence", 0.25)),
            recency=float(data.get("recency", 0.15)),
            performance=float(data.get("performance", 0.15)),
            compatibility=float(data.get("compatibility", 0.15)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class LibraryConfig:
    """Solution library and store settings."""

    db_path: str = "data/solution-library.db"
    max_results: int = 10
    weights: RelevanceWeights = field(default_factory=RelevanceWeights)
    search_cache_ttl_seconds: float = 300.0
    search_cache_size: int = 100
    max_concurrent_searches: int = 5
    enable_learning: bool = True
    evolution_enabled: bool = True
    generator_fallback: bool = True
    generator_timeout_ms: int = 30000
    backup_interval_hours: float = 24.0
    usage_retention_days: int = 90
    max_backups: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LibraryConfig:
        """Create from dictionary."""
        return cls(
            db_path=data.get("db_path", "data/solution-library.db"),
            max_results=int(data.get("max_results", 10)),
            weights=RelevanceWeights.from_dict(data.get("weights", {})),
            search_cache_ttl_seconds=float(data.get("search_cache_ttl_seconds", 300.0)),
            search_cache_size=int(data.get("search_cache_size", 100)),
            max_concurrent_searches=int(data.get("max_concurrent_searches", 5)),
            enable_learning=data.get("enable_learning", True),
            evolution_enabled=data.get("evolution_enabled", True),
            generator_fallback=data.get("generator_fallback", True),
            generator_timeout_ms=int(data.get("generator_timeout_ms", 30000)),
            backup_interval_hours=float(data.get("backup_interval_hours", 24.0)),
            usage_retention_days=int(data.get("usage_retention_days", 90)),
            max_backups=int(data.get("max_backups", 10)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "db_path": self.db_path,
            "max_results": self.max_results,
            "weights": self.weights.to_dict(),
            "search_cache_ttl_seconds": self.search_cache_ttl_seconds,
            "search_cache_size": self.search_cache_size,
            "max_concurrent_searches": self.max_concurrent_searches,
            "enable_learning": self.enable_learning,
            "evolution_enabled": self.evolution_enabled,
            "generator_fallback": self.generator_fallback,
            "generator_timeout_ms": self.generator_timeout_ms,
            "backup_interval_hours": self.backup_interval_hours,
            "usage_retention_days": self.usage_retention_days,
            "max_backups": self.max_backups,
        }


# =============================================================================
# Main Configuration
# =============================================================================


@dataclass
class RecoveryConfig:
    """Main configuration container.

    Contains all configuration sections. Engines receive the sections they
    need by injection; nothing here is cached at module level.
    """

    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    decision: DecisionConfig = field(default_factory=DecisionConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    recovery: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    library: LibraryConfig = field(default_factory=LibraryConfig)

    # Metadata
    profile: str = "default"
    config_version: str = "1.0"
    config_path: Path | None = None
    last_modified: datetime | None = None
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecoveryConfig:
        """Create configuration from dictionary."""
        meta = data.get("config", {})
        return cls(
            generator=GeneratorConfig.from_dict(data.get("generator", {})),
            decision=DecisionConfig.from_dict(data.get("decision", {})),
            cache=CacheConfig.from_dict(data.get("cache", {})),
            sandbox=SandboxConfig.from_dict(data.get("sandbox", {})),
            audit=AuditConfig.from_dict(data.get("audit", {})),
            recovery=OrchestratorConfig.from_dict(data.get("recovery", {})),
            library=LibraryConfig.from_dict(data.get("library", {})),
            profile=meta.get("profile", "default"),
            config_version=meta.get("version", "1.0"),
        )

    def to_dict(self, include_secrets: bool = False) -> dict[str, Any]:
        """Convert configuration to dictionary.

        Args:
            include_secrets: If True, include the generator API key.

        Returns:
            Dictionary representation of configuration.
        """
        return {
            "config": {"version": self.config_version, "profile": self.profile},
            "generator": self.generator.to_dict(include_secrets=include_secrets),
            "decision": self.decision.to_dict(),
            "cache": self.cache.to_dict(),
            "sandbox": self.sandbox.to_dict(),
            "audit": self.audit.to_dict(),
            "recovery": self.recovery.to_dict(),
            "library": self.library.to_dict(),
        }

    def apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if api_key := os.environ.get("ANTHROPIC_API_KEY"):
            self.generator.api_key = api_key

        if (enabled := os.environ.get("WEBRECOVER_GENERATOR_ENABLED")) is not None:
            self.generator.enabled = _env_bool(enabled)

        if rate := os.environ.get("WEBRECOVER_RATE_LIMIT"):
            try:
                self.generator.max_requests_per_minute = int(rate)
            except ValueError:
                logger.warning(f"Ignoring non-integer WEBRECOVER_RATE_LIMIT={rate!r}")

        if (sandbox := os.environ.get("WEBRECOVER_SANDBOX_ENABLED")) is not None:
            self.sandbox.enabled = _env_bool(sandbox)

        if db_path := os.environ.get("WEBRECOVER_DB_PATH"):
            self.library.db_path = db_path

        if audit_log := os.environ.get("WEBRECOVER_AUDIT_LOG"):
            self.audit.log_path = audit_log

    def validate(self) -> list[str]:
        """Reset out-of-range values to their defaults.

        Returns:
            One warning string per value that was reset.
        """
        warnings: list[str] = []

        def reset(section: Any, name: str, reason: str) -> None:
            default = getattr(type(section)(), name)
            warnings.append(
                f"{type(section).__name__}.{name}={getattr(section, name)!r} {reason}; "
                f"using default {default!r}"
            )
            setattr(section, name, default)

        gen = self.generator
        if not 1 <= gen.max_requests_per_minute <= 100:
            reset(gen, "max_requests_per_minute", "must be between 1 and 100")
        if not 5000 <= gen.timeout_ms <= 600000:
            reset(gen, "timeout_ms", "must be between 5s and 10min")
        if gen.max_retries < 0:
            reset(gen, "max_retries", "must not be negative")

        dec = self.decision
        if not 0.0 <= dec.confidence_threshold <= 1.0:
            reset(dec, "confidence_threshold", "must be within [0, 1]")
        if not 1 <= dec.complexity_threshold <= 10:
            reset(dec, "complexity_threshold", "must be between 1 and 10")
        if dec.failure_count_threshold < 1:
            reset(dec, "failure_count_threshold", "must be at least 1")
        if dec.max_built_in_attempts < 1:
            reset(dec, "max_built_in_attempts", "must be at least 1")

        if self.cache.max_size < 1:
            reset(self.cache, "max_size", "must be positive")
        if self.cache.expiration_hours <= 0:
            reset(self.cache, "expiration_hours", "must be positive")

        if not 1000 <= self.sandbox.timeout_ms <= 300000:
            reset(self.sandbox, "timeout_ms", "must be between 1s and 5min")

        if self.audit.retention_days < 1:
            reset(self.audit, "retention_days", "must be at least 1 day")

        if self.recovery.session_retention_seconds < 0:
            reset(self.recovery, "session_retention_seconds", "must not be negative")

        if self.library.max_concurrent_searches < 1:
            reset(self.library, "max_concurrent_searches", "must be at least 1")

        for warning in warnings:
            logger.warning(f"Invalid configuration: {warning}")

        return warnings

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key path.

        Example:
            config.get('decision.confidence_threshold')  # Returns 0.7
            config.get('library.weights.recency')        # Returns 0.15
        """
        obj: Any = self
        for part in key.split("."):
            if hasattr(obj, part):
                obj = getattr(obj, part)
            elif isinstance(obj, dict) and part in obj:
                obj = obj[part]
            else:
                return default
        return obj

    def set(self, key: str, value: Any) -> bool:
        """Set a configuration value by dotted key path.

        Returns:
            True if set successfully, False if the key does not exist.
        """
        parts = key.split(".")
        if len(parts) < 2:
            return False

        target: Any = self
        for part in parts[:-1]:
            if not hasattr(target, part):
                return False
            target = getattr(target, part)

        if not hasattr(target, parts[-1]):
            return False

        setattr(target, parts[-1], value)
        return True


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# Profiles
# =============================================================================


PROFILES: dict[str, dict[str, Any]] = {
    "development": {
        "generator": {"max_requests_per_minute": 60, "timeout_ms": 180000},
        "decision": {"confidence_threshold": 0.6},
        "audit": {"retention_days": 7},
    },
    "production": {
        "generator": {"max_requests_per_minute": 20},
        "decision": {"confidence_threshold": 0.8},
        "audit": {"retention_days": 90},
    },
    "test": {
        "generator": {"enabled": False, "max_requests_per_minute": 100, "timeout_ms": 5000},
        "cache": {"max_size": 10, "expiration_hours": 1.0},
        "sandbox": {"timeout_ms": 5000},
        "audit": {"enabled": False},
        "recovery": {"session_retention_seconds": 0.0},
        "library": {"db_path": ":memory:"},
    },
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def profile_config(name: str, overrides: dict[str, Any] | None = None) -> RecoveryConfig:
    """Build a configuration from a named profile.

    Args:
        name: One of 'development', 'production', 'test' or 'default'.
        overrides: Section dict deep-merged over the profile.

    Returns:
        A new RecoveryConfig (environment overrides are not applied).

    Raises:
        ValueError: If the profile name is unknown.
    """
    if name != "default" and name not in PROFILES:
        raise ValueError(f"Unknown profile: {name}")

    data = _deep_merge(PROFILES.get(name, {}), overrides or {})
    config = RecoveryConfig.from_dict(data)
    config.profile = name
    return config


# =============================================================================
# Configuration Loading/Saving
# =============================================================================


def get_config_path() -> Path:
    """Get the path to the configuration file."""
    if custom_path := os.environ.get("WEBRECOVER_CONFIG"):
        return Path(custom_path)
    return DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> RecoveryConfig:
    """Load configuration from TOML file.

    Args:
        config_path: Path to config file. Uses default if not specified.

    Returns:
        RecoveryConfig with profile, file and environment settings applied,
        then validated.
    """
    path = config_path or get_config_path()
    profile = os.environ.get("WEBRECOVER_PROFILE", "default")

    data: dict[str, Any] = {}
    last_modified: datetime | None = None

    if path.exists():
        try:
            try:
                import tomllib
            except ImportError:
                import tomli as tomllib  # type: ignore

            with open(path, "rb") as f:
                data = tomllib.load(f)
            last_modified = datetime.fromtimestamp(path.stat().st_mtime)

        except (OSError, ValueError) as e:
            logger.error(f"Failed to load config from {path}: {e}")
            data = {}

    profile = data.get("config", {}).get("profile", profile)
    try:
        config = profile_config(profile, data)
    except ValueError:
        logger.warning(f"Unknown profile {profile!r}, using defaults")
        config = profile_config("default", data)

    config.config_path = path
    config.last_modified = last_modified
    config.apply_env_overrides()
    config.warnings = config.validate()

    return config


def save_config(config: RecoveryConfig, config_path: Path | None = None) -> bool:
    """Save configuration to TOML file.

    Args:
        config: RecoveryConfig to save.
        config_path: Path to config file. Uses default if not specified.

    Returns:
        True if saved successfully, False otherwise.
    """
    path = config_path or config.config_path or get_config_path()

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            tomli_w.dump(config.to_dict(include_secrets=True), f)

        config.config_path = path
        config.last_modified = datetime.now()
        logger.info(f"Saved config to {path}")
        return True

    except OSError as e:
        logger.error(f"Failed to save config: {e}")
        return False


def format_config_for_display(config: RecoveryConfig, show_secrets: bool = False) -> str:
    """Format configuration for CLI display.

    Args:
        config: Configuration to format.
        show_secrets: If True, show the API key (masked by default).

    Returns:
        Formatted string for display.
    """
    lines = ["webrecover Configuration", "=" * 50, ""]

    if config.config_path:
        lines.append(f"Config file: {config.config_path}")
        if config.last_modified:
            lines.append(f"Last modified: {config.last_modified.strftime('%Y-%m-%d %H:%M:%S')}")
    lines.append(f"Profile: {config.profile}")
    lines.append("")

    data = config.to_dict(include_secrets=True)
    data.pop("config", None)

    for section, values in data.items():
        lines.append(f"[{section}]")
        for key, value in values.items():
            if key == "api_key":
                value = value if show_secrets else _mask(value)
            if isinstance(value, dict):
                for sub_key, sub_value in value.items():
                    lines.append(f"  {key}.{sub_key} = {sub_value}")
                continue
            if isinstance(value, list):
                value = ", ".join(str(v) for v in value)
            lines.append(f"  {key} = {value}")
        lines.append("")

    return "\n".join(lines)


def _mask(secret: str) -> str:
    if not secret:
        return "(not set)"
    return secret[:4] + "***" if len(secret) > 8 else "***"
