"""Searchable, self-improving library of generated solutions.

SolutionLibrary sits on top of SolutionStore and answers "what has worked
for an error shaped like this one?". Search runs in stages and stops at the
first stage that finds anything:

1. Exact error-signature match
2. Fuzzy similarity over error patterns
3. Category plus inferred strategy
4. Full-text search over keywords
5. Recommend falling back to the generator

Outcome feedback updates usage statistics and may spawn evolved solutions.
"""

from __future__ import annotations

import getpass
import hashlib
import json
import logging
import random
import re
import sqlite3
import string
import threading
import time
from collections import Counter, OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from ..config import LibraryConfig, RelevanceWeights
from ..errors import LibraryBusyError, StoreError
from ..generator.models import GeneratedSolution, RiskLevel
from ..recovery.models import ErrorCategory, Failure, RecoveryContext, RecoveryResult
from .models import (
    ImportResult,
    PerformanceMetrics,
    SolutionOrigin,
    SolutionRecordMetadata,
    SolutionSearchOptions,
    StoredSolution,
    UsageRecord,
    UsageStatistics,
    VersionCompatibility,
    current_versions,
    error_signature,
    extract_search_keywords,
)
from .store import SolutionStore

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0.0"
RECENCY_HORIZON_DAYS = 365
PERFORMANCE_HORIZON_MS = 60000
DEFAULT_DURATION_MS = 5000

EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TrustLevel(str, Enum):
    """How much an import source is trusted."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Trust level -> (minimum success rate, highest accepted risk)
TRUST_THRESHOLDS: dict[TrustLevel, tuple[float, RiskLevel]] = {
    TrustLevel.LOW: (0.1, RiskLevel.HIGH),
    TrustLevel.MEDIUM: (0.5, RiskLevel.MEDIUM),
    TrustLevel.HIGH: (0.8, RiskLevel.LOW),
}


# =============================================================================
# Requests and responses
# =============================================================================


@dataclass
class SolutionRequest:
    """A failure to find stored solutions for.

    Attributes:
        message: Failure message.
        category: Category assigned by classification.
        step_name: Flow step that failed.
        selector: Target selector, if any.
        value: Input value, if any.
        retry_count: Attempts already made.
        page_url: URL of the page when the failure happened.
        urgency: How urgently a fix is needed.
        time_limit_ms: Time available for recovery.
        fallback_allowed: Whether the generator may be recommended.
        exclude_solutions: Solution ids not to return.
    """

    message: str
    category: ErrorCategory = ErrorCategory.UNKNOWN
    step_name: str = ""
    selector: str | None = None
    value: str | None = None
    retry_count: int = 0
    page_url: str | None = None
    urgency: Urgency = Urgency.MEDIUM
    time_limit_ms: int | None = None
    fallback_allowed: bool = True
    exclude_solutions: list[str] = field(default_factory=list)

    @classmethod
    def from_failure(
        cls,
        failure: Failure,
        context: RecoveryContext,
        category: ErrorCategory,
        urgency: Urgency = Urgency.MEDIUM,
        page_url: str | None = None,
    ) -> SolutionRequest:
        return cls(
            message=failure.message,
            category=category,
            step_name=context.step_name,
            selector=context.selector,
            value=context.value,
            retry_count=context.retry_count,
            page_url=page_url,
            urgency=urgency,
            time_limit_ms=context.timeout_ms,
        )

    def cache_key(self) -> str:
        key_data = {
            "message": self.message,
            "urgency": self.urgency.value,
            "time_limit_ms": self.time_limit_ms,
            "exclude_solutions": sorted(self.exclude_solutions),
        }
        return hashlib.sha256(json.dumps(key_data, sort_keys=True).encode("utf-8")).hexdigest()[:16]


@dataclass
class RankedSolution:
    """A stored solution scored against one request."""

    solution: StoredSolution
    relevance_score: float
    estimated_duration_ms: float
    risk_assessment: str
    similarity: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            **self.solution.to_dict(),
            "relevance_score": self.relevance_score,
            "estimated_duration_ms": self.estimated_duration_ms,
            "risk_assessment": self.risk_assessment,
            "similarity": self.similarity,
        }


@dataclass
class SolutionResponse:
    """Result of a library search.

    Attributes:
        solutions: Candidates, best first.
        fallback_recommended: Nothing was found and the generator should be tried.
        search_strategy: Name of the stage that produced the result.
        total_search_time_ms: Time spent searching.
        cache_hit: Served from the search-result cache.
        metadata: Search terms and the request's filter criteria.
    """

    solutions: list[RankedSolution]
    fallback_recommended: bool
    search_strategy: str
    total_search_time_ms: float
    cache_hit: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def best(self) -> RankedSolution | None:
        return self.solutions[0] if self.solutions else None


@dataclass
class LearningFeedback:
    """Outcome of executing a stored solution."""

    solution_id: str
    success: bool
    execution_time_ms: float
    memory_usage: float | None = None
    error: str | None = None
    improvements: str | None = None


@dataclass
class SolutionEvolution:
    """Link between a solution and the one evolved from it."""

    original_solution_id: str
    evolved_solution_id: str
    reason: str
    improvements: list[str]
    confidence_increase: float = 0.05
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "original_solution_id": self.original_solution_id,
            "evolved_solution_id": self.evolved_solution_id,
            "reason": self.reason,
            "improvements": self.improvements,
            "confidence_increase": self.confidence_increase,
            "timestamp": self.timestamp.isoformat(),
        }


# =============================================================================
# Request analysis
# =============================================================================


def _category_value(category: ErrorCategory | str) -> str:
    return category.value if isinstance(category, ErrorCategory) else str(category)


def request_tags(request: SolutionRequest) -> list[str]:
    """Tags describing the context a solution was produced in."""
    tags = []
    if request.selector:
        tags.append("selector-based")
    if request.value:
        tags.append("input-related")
    if request.retry_count > 0:
        tags.append("retry-needed")
    if request.category:
        tags.append(f"category-{_category_value(request.category)}")
    if request.step_name:
        tags.append("step-" + re.sub(r"\s+", "-", request.step_name.lower()))
    return tags


def request_categories(request: SolutionRequest) -> list[str]:
    """Category labels a request falls under."""
    message = request.message.lower()
    categories = [_category_value(request.category)]
    if request.selector:
        categories.append("ui-interaction")
    if "timeout" in message:
        categories.append("timing")
    if "network" in message:
        categories.append("network")
    return [c for c in categories if c]


def infer_strategy(message: str) -> str:
    """Strategy family suggested by a failure message."""
    message = message.lower()
    if "timeout" in message:
        return "wait_strategy"
    if "not found" in message:
        return "element_location"
    if "click" in message:
        return "interaction_retry"
    if "network" in message:
        return "network_retry"
    return "generic_retry"


def assess_risk(solution: StoredSolution, urgency: Urgency) -> str:
    """Human-readable risk advice for a candidate."""
    risk = solution.risk_level
    rate = solution.actual_success_rate
    if risk == RiskLevel.HIGH and urgency == Urgency.CRITICAL:
        return "High risk solution for critical issue - use with extreme caution"
    if risk == RiskLevel.HIGH:
        return "High risk solution - thoroughly test before deployment"
    if rate < 0.5:
        return "Low success rate - consider as last resort"
    if risk == RiskLevel.LOW and rate > 0.8:
        return "Low risk, high success rate - recommended"
    return "Moderate risk - standard precautions apply"


def relevance_score(
    solution: StoredSolution,
    urgency: Urgency,
    weights: RelevanceWeights,
    similarity: float | None = None,
    now: datetime | None = None,
) -> float:
    """Weighted relevance of a stored solution.

    Combines success rate, confidence, recency of use, execution speed and
    runtime compatibility, then applies the similarity bonus (up to 1.5x)
    and, for critical requests, the risk preference.
    """
    now = now or datetime.now()

    days_since_use = (now - solution.usage_statistics.last_used).total_seconds() / 86400
    recency = max(0.0, 1 - days_since_use / RECENCY_HORIZON_DAYS)

    avg_time = solution.performance_metrics.average_execution_time_ms
    performance = max(0.0, 1 - avg_time / PERFORMANCE_HORIZON_MS) if avg_time > 0 else 0.5

    score = (
        solution.actual_success_rate * weights.success_rate
        + solution.confidence * weights.confidence
        + recency * weights.recency
        + performance * weights.performance
        + solution.version_compatibility.score() * weights.compatibility
    )

    if similarity is not None:
        score *= 1 + similarity * 0.5

    if urgency == Urgency.CRITICAL:
        if solution.risk_level == RiskLevel.LOW:
            score *= 1.2
        elif solution.risk_level == RiskLevel.HIGH:
            score *= 0.8

    return score


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (OSError, KeyError):
        return "unknown"


def _evolved_solution_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"sol-{int(time.time() * 1000)}-{suffix}"


# =============================================================================
# Library
# =============================================================================


class SolutionLibrary:
    """Staged search, ranking and learning over a SolutionStore.

    Example:
        library = SolutionLibrary(LibraryConfig(), store=SolutionStore())
        response = library.find_solutions(SolutionRequest(message="Timeout 30000ms exceeded"))
        if response.best:
            ...
    """

    def __init__(
        self,
        config: LibraryConfig | None = None,
        store: SolutionStore | None = None,
        generator_available: bool = False,
    ):
        """Initialize the library.

        Args:
            config: Library settings.
            store: Backing store. Defaults to one opened at config.db_path.
            generator_available: Whether a generator exists to fall back to.
        """
        self.config = config or LibraryConfig()
        self.store = store or SolutionStore(self.config.db_path, max_backups=self.config.max_backups)
        self.generator_available = generator_available

        self._search_cache: OrderedDict[str, tuple[float, SolutionResponse]] = OrderedDict()
        self._lock = threading.Lock()
        self._concurrent_searches = 0
        self._evolutions: dict[str, list[SolutionEvolution]] = {}

        self._searches = 0
        self._cache_hits = 0
        self._fallbacks = 0
        self._total_search_ms = 0.0
        self._feedback_count = 0

    # =========================================================================
    # Search
    # =========================================================================

    def find_solutions(self, request: SolutionRequest) -> SolutionResponse:
        """Find stored solutions for a failure, best first.

        Raises:
            LibraryBusyError: If the concurrent-search limit is reached.
        """
        with self._lock:
            if self._concurrent_searches >= self.config.max_concurrent_searches:
                raise LibraryBusyError("Too many concurrent searches, please try again")
            self._concurrent_searches += 1

        try:
            start = time.monotonic()
            key = request.cache_key()

            cached = self._cached_response(key)
            if cached is not None:
                with self._lock:
                    self._searches += 1
                    self._cache_hits += 1
                return cached

            response = self._search(request, start)

            with self._lock:
                self._searches += 1
                self._total_search_ms += response.total_search_time_ms
                if response.fallback_recommended:
                    self._fallbacks += 1
                self._cache_response(key, response)

            logger.debug(
                f"Library search '{response.search_strategy}' found {len(response.solutions)} "
                f"solutions in {response.total_search_time_ms:.1f}ms"
            )
            return response
        finally:
            with self._lock:
                self._concurrent_searches -= 1

    def _search(self, request: SolutionRequest, start: float) -> SolutionResponse:
        critical = request.urgency == Urgency.CRITICAL

        exact = self.store.search(
            SolutionSearchOptions(
                error_signature=error_signature(request.message),
                min_success_rate=0.5,
                max_risk_level=RiskLevel.LOW if critical else RiskLevel.HIGH,
                limit=5,
            )
        )
        candidates = self._exclude(request, [(s, None) for s in exact])
        if candidates:
            return self._respond(request, candidates, "exact_signature_match", start, rank=False)

        similar = self.store.find_similar(
            request.message,
            SolutionSearchOptions(
                min_success_rate=0.3,
                max_risk_level=RiskLevel.MEDIUM if critical else RiskLevel.HIGH,
                limit=10,
            ),
        )
        candidates = self._exclude(request, similar)
        if candidates:
            return self._respond(request, candidates, "fuzzy_similarity_match", start)

        by_category = self.store.search(
            SolutionSearchOptions(
                categories=request_categories(request),
                strategy=infer_strategy(request.message),
                min_success_rate=0.2,
                sort_by="success_rate",
                limit=5,
            )
        )
        candidates = self._exclude(request, [(s, None) for s in by_category])
        if candidates:
            return self._respond(request, candidates, "category_strategy_match", start)

        keywords = extract_search_keywords(request.message)
        if keywords:
            text_matches = self.store.full_text_search(
                keywords, SolutionSearchOptions(min_success_rate=0.1, limit=8)
            )
            candidates = self._exclude(request, [(s, None) for s in text_matches])
            if candidates:
                return self._respond(request, candidates, "full_text_search", start)

        if self.should_fallback(request):
            return self._respond(request, [], "generator_fallback", start, fallback=True)
        return self._respond(request, [], "no_match", start)

    def should_fallback(self, request: SolutionRequest) -> bool:
        """Whether an empty search should recommend the generator."""
        if not self.config.generator_fallback or not self.generator_available:
            return False
        if not request.fallback_allowed:
            return False
        if request.urgency in (Urgency.HIGH, Urgency.CRITICAL):
            return True
        return bool(request.time_limit_ms and request.time_limit_ms > self.config.generator_timeout_ms)

    @staticmethod
    def _exclude(
        request: SolutionRequest,
        found: list[tuple[StoredSolution, float | None]],
    ) -> list[tuple[StoredSolution, float | None]]:
        excluded = set(request.exclude_solutions)
        return [(s, sim) for s, sim in found if s.id not in excluded]

    def _respond(
        self,
        request: SolutionRequest,
        found: list[tuple[StoredSolution, float | None]],
        strategy: str,
        start: float,
        rank: bool = True,
        fallback: bool = False,
    ) -> SolutionResponse:
        now = datetime.now()
        ranked = [
            RankedSolution(
                solution=solution,
                relevance_score=relevance_score(
                    solution, request.urgency, self.config.weights, similarity, now
                ),
                estimated_duration_ms=solution.performance_metrics.average_execution_time_ms
                or DEFAULT_DURATION_MS,
                risk_assessment=assess_risk(solution, request.urgency),
                similarity=similarity,
            )
            for solution, similarity in found
        ]
        if rank:
            ranked.sort(key=lambda r: r.relevance_score, reverse=True)

        return SolutionResponse(
            solutions=ranked[: self.config.max_results],
            fallback_recommended=fallback,
            search_strategy=strategy,
            total_search_time_ms=(time.monotonic() - start) * 1000,
            metadata={
                "search_terms": extract_search_keywords(request.message),
                "filters": {
                    "urgency": request.urgency.value,
                    "time_limit_ms": request.time_limit_ms,
                    "exclude_solutions": list(request.exclude_solutions),
                },
            },
        )

    def rank(
        self,
        solutions: list[StoredSolution],
        urgency: Urgency = Urgency.MEDIUM,
    ) -> list[tuple[StoredSolution, float]]:
        """Score and sort solutions by relevance."""
        now = datetime.now()
        scored = [(s, relevance_score(s, urgency, self.config.weights, None, now)) for s in solutions]
        return sorted(scored, key=lambda pair: pair[1], reverse=True)

    # =========================================================================
    # Search cache
    # =========================================================================

    def _cached_response(self, key: str) -> SolutionResponse | None:
        with self._lock:
            entry = self._search_cache.get(key)
            if entry is None:
                return None
            stored_at, response = entry
            if time.monotonic() - stored_at >= self.config.search_cache_ttl_seconds:
                del self._search_cache[key]
                return None
        return replace(response, cache_hit=True)

    def _cache_response(self, key: str, response: SolutionResponse) -> None:
        if key not in self._search_cache and len(self._search_cache) >= self.config.search_cache_size:
            self._search_cache.popitem(last=False)
        self._search_cache[key] = (time.monotonic(), response)

    def sweep_search_cache(self) -> int:
        """Drop expired search results."""
        now = time.monotonic()
        with self._lock:
            expired = [
                key
                for key, (stored_at, _) in self._search_cache.items()
                if now - stored_at >= self.config.search_cache_ttl_seconds
            ]
            for key in expired:
                del self._search_cache[key]
        return len(expired)

    def invalidate_search_cache(self) -> None:
        with self._lock:
            self._search_cache.clear()

    # =========================================================================
    # Learning
    # =========================================================================

    def learn(self, feedback: LearningFeedback) -> StoredSolution | None:
        """Fold an execution outcome into a stored solution.

        A failure that comes with improvement notes evolves the solution
        when evolution is enabled.

        Returns:
            The evolved solution, if one was created.
        """
        if not self.config.enable_learning:
            return None

        updated = self.store.record_usage(
            UsageRecord(
                solution_id=feedback.solution_id,
                success=feedback.success,
                execution_time_ms=feedback.execution_time_ms,
                memory_usage=feedback.memory_usage,
                error=feedback.error,
            )
        )
        with self._lock:
            self._feedback_count += 1
        if updated is None:
            logger.warning(f"Feedback for unknown solution {feedback.solution_id}")
            return None

        # Cached results may now rank this solution wrongly
        self.invalidate_search_cache()
        logger.debug(
            f"Solution {feedback.solution_id} learning feedback processed: "
            f"{'success' if feedback.success else 'failure'}"
        )

        if self.config.evolution_enabled and not feedback.success and feedback.improvements:
            return self.evolve(updated, feedback.improvements)
        return None

    def evolve(self, original: StoredSolution, improvements: str) -> StoredSolution:
        """Create an improved copy of a solution with fresh usage statistics.

        The script itself is copied unchanged so it still passes sandbox
        validation; the improvement notes go into the explanation and
        reasoning only.
        """
        now = datetime.now()
        evolved = replace(
            original,
            id=_evolved_solution_id(),
            solution_code=original.solution_code,
            explanation=f"{original.explanation}\n\nEvolved based on feedback: {improvements}",
            estimated_success_rate=min(1.0, original.estimated_success_rate + 0.1),
            actual_success_rate=min(1.0, original.estimated_success_rate + 0.1),
            confidence=min(1.0, original.confidence + 0.05),
            tags=list(original.tags),
            categories=list(original.categories),
            performance_metrics=replace(original.performance_metrics),
            usage_statistics=UsageStatistics(last_used=now, first_used=now),
            metadata=replace(
                original.metadata,
                source=SolutionOrigin.GENERATED,
                created_at=now,
                updated_at=now,
                reasoning=f"Evolved from {original.id} due to: {improvements}",
                deprecated=False,
                deprecated_reason=None,
                deprecated_at=None,
                evolved_from=original.id,
            ),
        )
        self.store.store(evolved)

        evolution = SolutionEvolution(
            original_solution_id=original.id,
            evolved_solution_id=evolved.id,
            reason=improvements,
            improvements=[part.strip() for part in improvements.split(",") if part.strip()],
        )
        with self._lock:
            self._evolutions.setdefault(original.id, []).append(evolution)

        logger.info(f"Solution {original.id} evolved into {evolved.id}")
        return evolved

    def evolutions(self, solution_id: str | None = None) -> list[SolutionEvolution]:
        """Evolution history, for one solution or all."""
        with self._lock:
            if solution_id is not None:
                return list(self._evolutions.get(solution_id, []))
            return [e for history in self._evolutions.values() for e in history]

    def store_from_generator(
        self,
        solution: GeneratedSolution,
        request: SolutionRequest,
        result: RecoveryResult | None = None,
    ) -> str:
        """Persist a generated solution along with its first outcome.

        A solution already in the store (a cached generation) only gains a
        usage record.

        Returns:
            The stored solution id.
        """
        if result is not None and self.store.get(solution.id) is not None:
            self.learn(
                LearningFeedback(
                    solution_id=solution.id,
                    success=result.success,
                    execution_time_ms=result.duration_ms,
                    error=result.error,
                )
            )
            return solution.id

        now = datetime.now()
        usage = UsageStatistics(last_used=now, first_used=now)
        if result is not None:
            usage.record(result.success, now)

        stored = StoredSolution(
            id=solution.id,
            error_pattern=request.message,
            error_signature=error_signature(request.message),
            solution_code=solution.code,
            explanation=solution.explanation,
            confidence=solution.confidence,
            strategy=solution.strategy,
            estimated_success_rate=solution.estimated_success_rate,
            actual_success_rate=(
                (1.0 if result.success else 0.0) if result is not None else solution.estimated_success_rate
            ),
            risk_level=solution.risk_level,
            tags=request_tags(request),
            categories=request_categories(request),
            version_compatibility=VersionCompatibility.current(),
            performance_metrics=PerformanceMetrics(
                average_execution_time_ms=(result.duration_ms if result else 0) or solution.time_estimate_ms,
                memory_usage=0,
                cpu_usage=0,
                network_requests=0,
            ),
            usage_statistics=usage,
            metadata=SolutionRecordMetadata(
                model=solution.metadata.generator_id or "unknown",
                created_by="solution-generator",
                created_at=solution.metadata.timestamp,
                updated_at=now,
                source=SolutionOrigin.GENERATED,
                reasoning=solution.metadata.reasoning,
                required_permissions=list(solution.required_permissions),
            ),
        )
        try:
            self.store.store(stored)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to store generated solution: {e}") from e

        self.invalidate_search_cache()
        logger.info(f"Stored generated solution {stored.id} ({stored.strategy})")
        return stored.id

    # =========================================================================
    # Sharing
    # =========================================================================

    def export_for_community(
        self,
        anonymize: bool = False,
        min_success_rate: float = 0.7,
        include_metrics: bool = False,
        categories: list[str] | None = None,
    ) -> dict[str, Any]:
        """Export proven solutions in a shareable document."""
        solutions = self.store.search(
            SolutionSearchOptions(
                min_success_rate=min_success_rate,
                categories=categories or [],
                sort_by="success_rate",
                sort_order="desc",
            )
        )
        stats = self.store.get_statistics()

        records = []
        for solution in solutions:
            record = solution.to_dict()
            if anonymize:
                record["metadata"]["created_by"] = "anonymous"
                record["metadata"]["reasoning"] = EMAIL_RE.sub("[email]", record["metadata"]["reasoning"])
            records.append(record)

        category_counts = Counter(c for s in solutions for c in s.categories)
        statistics: dict[str, Any] = {
            "total_solutions": len(solutions),
            "average_success_rate": stats["average_success_rate"],
            "top_categories": [
                {"category": category, "count": count}
                for category, count in category_counts.most_common(10)
            ],
        }
        if include_metrics:
            statistics["performance_metrics"] = stats["performance_metrics"]

        return {
            "solutions": records,
            "metadata": {
                "exported_by": "anonymous" if anonymize else _current_user(),
                "exported_at": datetime.now().isoformat(),
                "version": EXPORT_VERSION,
                "compatibility": current_versions(),
                "anonymized": anonymize,
            },
            "statistics": statistics,
        }

    def import_solutions(
        self,
        data: str | dict[str, Any],
        overwrite: bool = False,
        validate: bool = True,
        trust_level: TrustLevel | str = TrustLevel.MEDIUM,
    ) -> ImportResult:
        """Import a community export, keeping only solutions the trust level accepts.

        Raises:
            StoreError: If the document is not a community export.
        """
        try:
            document = json.loads(data) if isinstance(data, str) else data
        except json.JSONDecodeError as e:
            raise StoreError(f"Failed to import solutions: {e}") from e

        if not (
            isinstance(document, dict)
            and isinstance(document.get("solutions"), list)
            and document.get("metadata")
            and document.get("statistics")
        ):
            raise StoreError("Failed to import solutions: Invalid import data format")

        min_rate, max_risk = TRUST_THRESHOLDS[TrustLevel(trust_level)]
        trusted = []
        for record in document["solutions"]:
            if not isinstance(record, dict):
                trusted.append(record)
                continue
            try:
                risk = RiskLevel(record.get("risk_level") or "medium")
                rate = float(record.get("actual_success_rate", 0.0))
            except (ValueError, TypeError):
                continue
            if rate >= min_rate and risk.rank <= max_risk.rank:
                trusted.append(record)

        result = self.store.import_solutions({"solutions": trusted}, overwrite=overwrite, validate=validate)
        result.skipped += len(document["solutions"]) - len(trusted)
        self.invalidate_search_cache()
        logger.info(f"Imported {result.imported} solutions ({result.skipped} skipped)")
        return result

    # =========================================================================
    # Health
    # =========================================================================

    def get_library_health(self) -> dict[str, Any]:
        """Store statistics plus search, learning and fallback counters."""
        with self._lock:
            searches = self._searches
            computed = searches - self._cache_hits
            health = {
                "cache": {
                    "size": len(self._search_cache),
                    "hit_rate": self._cache_hits / searches if searches else 0.0,
                },
                "search": {
                    "total_searches": searches,
                    "average_time_ms": self._total_search_ms / computed if computed else 0.0,
                    "concurrent_searches": self._concurrent_searches,
                },
                "learning": {
                    "feedback_count": self._feedback_count,
                    "evolutions_count": sum(len(h) for h in self._evolutions.values()),
                },
                "integration": {
                    "generator_available": self.generator_available,
                    "fallback_rate": self._fallbacks / computed if computed else 0.0,
                },
            }
        health["database"] = self.store.get_statistics()
        health["database"]["degraded"] = self.store.degraded
        return health

    def close(self) -> None:
        """Drop in-memory state and close the store."""
        with self._lock:
            self._search_cache.clear()
            self._evolutions.clear()
        self.store.close()
