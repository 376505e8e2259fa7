"""Data models for the persistent solution library.

A StoredSolution is a generated solution plus everything learned about it
after the fact: the error shape it answers, usage counters, timing, and
whether it has been deprecated.
"""

from __future__ import annotations

import hashlib
import platform
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..generator.models import RiskLevel

# Recent success/failure timestamps kept per solution
RECENT_OUTCOMES = 10

KEYWORD_STOPLIST = ("error", "failed", "unable")
SEARCH_STOPLIST = ("error", "failed", "unable", "cannot")


class SolutionOrigin(str, Enum):
    """How a solution entered the library."""

    GENERATED = "generated"
    MANUAL = "manual"
    IMPORT = "import"


# =============================================================================
# Error shape helpers
# =============================================================================


def normalize_error_message(message: str) -> str:
    """Fold an error message to its shape.

    Digits become N, quote characters are dropped and whitespace runs
    collapse, so messages that differ only in those respects normalize
    identically.
    """
    normalized = message.lower()
    normalized = re.sub(r"\d+", "N", normalized)
    normalized = re.sub(r"['\"`]", "", normalized)
    normalized = re.sub(r"\s+", " ", normalized)
    return normalized.strip()


def error_signature(message: str) -> str:
    """Stable 16-hex-char hash of the normalized error message."""
    normalized = normalize_error_message(message)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


def extract_error_keywords(message: str) -> str:
    """First three meaningful words of a message, space separated."""
    words = re.sub(r"[^\w\s]", " ", message).split()
    meaningful = [w for w in words if len(w) > 3 and w.lower() not in KEYWORD_STOPLIST]
    return " ".join(meaningful[:3])


def extract_search_keywords(message: str, limit: int = 5) -> list[str]:
    """Lowercased search terms for full-text lookup."""
    words = re.sub(r"[^\w\s]", " ", message.lower()).split()
    return [w for w in words if len(w) > 3 and w not in SEARCH_STOPLIST][:limit]


def current_platform() -> str:
    return sys.platform


def current_versions() -> dict[str, str]:
    """Runtime versions recorded with backups and exports."""
    return {
        "python": platform.python_version(),
        "platform": current_platform(),
    }


def _parse_datetime(value: Any, default: datetime | None = None) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if value:
        try:
            return datetime.fromisoformat(str(value))
        except ValueError:
            pass
    return default


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# =============================================================================
# Stored solution parts
# =============================================================================


@dataclass
class VersionCompatibility:
    """Runtime a solution was produced and verified on.

    Attributes:
        python_version: Interpreter version, or a pattern containing `*`.
        driver_version: Automation driver version, if known.
        platform_compatible: Platforms (sys.platform values) known to work.
    """

    python_version: str | None = None
    driver_version: str | None = None
    platform_compatible: list[str] = field(default_factory=list)

    @classmethod
    def current(cls, driver_version: str | None = None) -> VersionCompatibility:
        return cls(
            python_version=platform.python_version(),
            driver_version=driver_version,
            platform_compatible=[current_platform()],
        )

    def score(self) -> float:
        """Compatibility with the running process, in [0, 1]."""
        score = 1.0
        if self.platform_compatible and current_platform() not in self.platform_compatible:
            score *= 0.5
        version = self.python_version
        if version and "*" not in version and version != platform.python_version():
            score *= 0.9
        return score

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "python_version": self.python_version,
            "driver_version": self.driver_version,
            "platform_compatible": list(self.platform_compatible),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VersionCompatibility:
        """Create from dictionary."""
        return cls(
            python_version=data.get("python_version"),
            driver_version=data.get("driver_version"),
            platform_compatible=list(data.get("platform_compatible") or []),
        )


@dataclass
class PerformanceMetrics:
    average_execution_time_ms: float = 0.0
    memory_usage: float | None = None
    cpu_usage: float | None = None
    network_requests: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "average_execution_time_ms": self.average_execution_time_ms,
            "memory_usage": self.memory_usage,
            "cpu_usage": self.cpu_usage,
            "network_requests": self.network_requests,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PerformanceMetrics:
        """Create from dictionary."""
        return cls(
            average_execution_time_ms=float(data.get("average_execution_time_ms") or 0.0),
            memory_usage=data.get("memory_usage"),
            cpu_usage=data.get("cpu_usage"),
            network_requests=data.get("network_requests"),
        )


@dataclass
class UsageStatistics:
    """Outcome counters for one stored solution."""

    total_uses: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_used: datetime = field(default_factory=datetime.now)
    first_used: datetime = field(default_factory=datetime.now)
    recent_failures: list[datetime] = field(default_factory=list)
    recent_successes: list[datetime] = field(default_factory=list)

    @property
    def success_rate(self) -> float | None:
        if self.total_uses == 0:
            return None
        return self.success_count / self.total_uses

    def record(self, success: bool, timestamp: datetime) -> None:
        """Count one outcome, keeping the newest RECENT_OUTCOMES timestamps."""
        self.total_uses += 1
        if success:
            self.success_count += 1
            self.recent_successes = [timestamp, *self.recent_successes[: RECENT_OUTCOMES - 1]]
        else:
            self.failure_count += 1
            self.recent_failures = [timestamp, *self.recent_failures[: RECENT_OUTCOMES - 1]]
        self.last_used = timestamp

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_uses": self.total_uses,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_used": self.last_used.isoformat(),
            "first_used": self.first_used.isoformat(),
            "recent_failures": [t.isoformat() for t in self.recent_failures],
            "recent_successes": [t.isoformat() for t in self.recent_successes],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsageStatistics:
        """Create from dictionary."""
        now = datetime.now()
        return cls(
            total_uses=int(data.get("total_uses") or 0),
            success_count=int(data.get("success_count") or 0),
            failure_count=int(data.get("failure_count") or 0),
            last_used=_parse_datetime(data.get("last_used"), now) or now,
            first_used=_parse_datetime(data.get("first_used"), now) or now,
            recent_failures=[
                t for t in (_parse_datetime(v) for v in data.get("recent_failures") or []) if t
            ],
            recent_successes=[
                t for t in (_parse_datetime(v) for v in data.get("recent_successes") or []) if t
            ],
        )


@dataclass
class SolutionRecordMetadata:
    """Provenance and lifecycle flags of a stored solution."""

    model: str = "unknown"
    created_by: str = "system"
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    source: SolutionOrigin = SolutionOrigin.GENERATED
    reasoning: str = ""
    required_permissions: list[str] = field(default_factory=list)
    side_effects: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    deprecated: bool = False
    deprecated_reason: str | None = None
    deprecated_at: datetime | None = None
    evolved_from: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "model": self.model,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "source": self.source.value,
            "reasoning": self.reasoning,
            "required_permissions": list(self.required_permissions),
            "side_effects": list(self.side_effects),
            "warnings": list(self.warnings),
            "deprecated": self.deprecated,
            "deprecated_reason": self.deprecated_reason,
            "deprecated_at": _iso(self.deprecated_at),
            "evolved_from": self.evolved_from,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SolutionRecordMetadata:
        """Create from dictionary, filling gaps with defaults."""
        now = datetime.now()
        try:
            source = SolutionOrigin(data.get("source") or "generated")
        except ValueError:
            source = SolutionOrigin.IMPORT
        return cls(
            model=data.get("model") or "unknown",
            created_by=data.get("created_by") or "system",
            created_at=_parse_datetime(data.get("created_at"), now) or now,
            updated_at=_parse_datetime(data.get("updated_at"), now) or now,
            source=source,
            reasoning=data.get("reasoning") or "",
            required_permissions=list(data.get("required_permissions") or []),
            side_effects=list(data.get("side_effects") or []),
            warnings=list(data.get("warnings") or []),
            deprecated=bool(data.get("deprecated", False)),
            deprecated_reason=data.get("deprecated_reason"),
            deprecated_at=_parse_datetime(data.get("deprecated_at")),
            evolved_from=data.get("evolved_from"),
        )


# =============================================================================
# Stored solution
# =============================================================================


@dataclass
class StoredSolution:
    """A generated solution with its learned track record.

    `actual_success_rate` is success_count / total_uses once the solution
    has been used, and the generator's estimate until then.
    """

    id: str
    error_pattern: str
    error_signature: str
    solution_code: str
    explanation: str
    confidence: float
    strategy: str
    estimated_success_rate: float = 0.5
    actual_success_rate: float = 0.5
    risk_level: RiskLevel = RiskLevel.MEDIUM
    tags: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    version_compatibility: VersionCompatibility = field(default_factory=VersionCompatibility)
    performance_metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    usage_statistics: UsageStatistics = field(default_factory=UsageStatistics)
    metadata: SolutionRecordMetadata = field(default_factory=SolutionRecordMetadata)

    @property
    def deprecated(self) -> bool:
        return self.metadata.deprecated

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "error_pattern": self.error_pattern,
            "error_signature": self.error_signature,
            "solution_code": self.solution_code,
            "explanation": self.explanation,
            "confidence": self.confidence,
            "estimated_success_rate": self.estimated_success_rate,
            "actual_success_rate": self.actual_success_rate,
            "risk_level": self.risk_level.value,
            "strategy": self.strategy,
            "tags": list(self.tags),
            "categories": list(self.categories),
            "version_compatibility": self.version_compatibility.to_dict(),
            "performance_metrics": self.performance_metrics.to_dict(),
            "usage_statistics": self.usage_statistics.to_dict(),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoredSolution:
        """Create from dictionary.

        Raises:
            KeyError: If id, error_pattern, solution_code or strategy is missing.
        """
        estimated = float(data.get("estimated_success_rate", 0.5))
        return cls(
            id=data["id"],
            error_pattern=data["error_pattern"],
            error_signature=data.get("error_signature") or error_signature(data["error_pattern"]),
            solution_code=data["solution_code"],
            explanation=data.get("explanation") or "",
            confidence=float(data.get("confidence", 0.5)),
            strategy=data["strategy"],
            estimated_success_rate=estimated,
            actual_success_rate=float(data.get("actual_success_rate", estimated)),
            risk_level=RiskLevel(data.get("risk_level") or "medium"),
            tags=list(data.get("tags") or []),
            categories=list(data.get("categories") or []),
            version_compatibility=VersionCompatibility.from_dict(
                data.get("version_compatibility") or {}
            ),
            performance_metrics=PerformanceMetrics.from_dict(data.get("performance_metrics") or {}),
            usage_statistics=UsageStatistics.from_dict(data.get("usage_statistics") or {}),
            metadata=SolutionRecordMetadata.from_dict(data.get("metadata") or {}),
        )


REQUIRED_IMPORT_FIELDS = ("id", "error_pattern", "solution_code", "strategy")


def is_valid_solution_data(data: Any) -> bool:
    """Check an imported record carries the fields a solution cannot lack."""
    return isinstance(data, dict) and all(data.get(name) for name in REQUIRED_IMPORT_FIELDS)


@dataclass
class UsageRecord:
    """One execution outcome reported against a stored solution."""

    solution_id: str
    success: bool
    execution_time_ms: float
    memory_usage: float | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"imported": self.imported, "skipped": self.skipped, "errors": self.errors}


# =============================================================================
# Search options
# =============================================================================

# Sort key -> (SQL expressions, natural direction)
SORT_MAPPINGS: dict[str, tuple[tuple[str, ...], str]] = {
    "relevance": (("actual_success_rate", "confidence"), "DESC"),
    "success_rate": (("actual_success_rate",), "DESC"),
    "last_used": (("json_extract(usage_statistics, '$.last_used')",), "DESC"),
    "confidence": (("confidence",), "DESC"),
    "performance": (("json_extract(performance_metrics, '$.average_execution_time_ms')",), "ASC"),
}


@dataclass
class SolutionSearchOptions:
    """Criteria for SolutionStore.search.

    Attributes:
        error_pattern: Substring of the stored error pattern.
        error_signature: Exact signature match.
        tags: Match solutions carrying any of these tags.
        categories: Match solutions in any of these categories.
        strategy: Exact strategy label.
        min_confidence: Lower bound on confidence.
        min_success_rate: Lower bound on actual success rate.
        max_risk_level: Highest acceptable risk.
        version_compatible: Only solutions whose python_version is unset,
            a wildcard, or equal to the running interpreter's.
        include_deprecated: Include deprecated solutions.
        sort_by: One of relevance, success_rate, last_used, confidence,
            performance.
        sort_order: "asc" or "desc"; defaults to the key's natural order.
        limit: Maximum rows, or None for all.
        offset: Rows to skip (only with limit).
    """

    error_pattern: str | None = None
    error_signature: str | None = None
    tags: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    strategy: str | None = None
    min_confidence: float | None = None
    min_success_rate: float | None = None
    max_risk_level: RiskLevel | None = None
    version_compatible: bool = False
    include_deprecated: bool = False
    sort_by: str = "relevance"
    sort_order: str | None = None
    limit: int | None = None
    offset: int = 0

    def to_sql_where(self) -> tuple[str, list[Any]]:
        """Convert options to a SQL WHERE clause.

        Returns:
            Tuple of (WHERE clause string, parameters list).
        """
        conditions = []
        params: list[Any] = []

        if self.error_pattern:
            conditions.append("error_pattern LIKE ?")
            params.append(f"%{self.error_pattern}%")

        if self.error_signature:
            conditions.append("error_signature = ?")
            params.append(self.error_signature)

        if self.strategy:
            conditions.append("strategy = ?")
            params.append(self.strategy)

        if self.min_confidence is not None:
            conditions.append("confidence >= ?")
            params.append(self.min_confidence)

        if self.min_success_rate is not None:
            conditions.append("actual_success_rate >= ?")
            params.append(self.min_success_rate)

        if self.max_risk_level is not None:
            allowed = [r.value for r in RiskLevel if r.rank <= self.max_risk_level.rank]
            placeholders = ",".join("?" * len(allowed))
            conditions.append(f"risk_level IN ({placeholders})")
            params.extend(allowed)

        if not self.include_deprecated:
            conditions.append("json_extract(metadata, '$.deprecated') IS NOT 1")

        if self.tags:
            tag_conditions = [
                "EXISTS (SELECT 1 FROM json_each(tags) WHERE json_each.value = ?)"
            ] * len(self.tags)
            conditions.append(f"({' OR '.join(tag_conditions)})")
            params.extend(self.tags)

        if self.categories:
            category_conditions = [
                "EXISTS (SELECT 1 FROM json_each(categories) WHERE json_each.value = ?)"
            ] * len(self.categories)
            conditions.append(f"({' OR '.join(category_conditions)})")
            params.extend(self.categories)

        if self.version_compatible:
            conditions.append(
                "(json_extract(version_compatibility, '$.python_version') IS NULL"
                " OR json_extract(version_compatibility, '$.python_version') = ?"
                " OR json_extract(version_compatibility, '$.python_version') LIKE '%*%')"
            )
            params.append(platform.python_version())

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        return where_clause, params

    def order_clause(self) -> str:
        """ORDER BY expression for the chosen sort key."""
        columns, natural = SORT_MAPPINGS.get(self.sort_by, SORT_MAPPINGS["relevance"])
        direction = (self.sort_order or natural).upper()
        if direction not in ("ASC", "DESC"):
            direction = natural
        return ", ".join(f"{column} {direction}" for column in columns)
