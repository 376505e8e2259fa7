"""Built-in recovery path with outcome learning.

BuiltInRecovery ties the classifier, catalog and executor together:
- apply_known_fix: run the matched pattern's quick fix
- try_built_in_strategies: walk ranked candidates until one succeeds
- statistics, recommendations, and export/import of learned data
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from .classifier import ErrorClassifier, ErrorPattern
from .models import ErrorCategory, Failure, RecoveryContext, RecoveryResult, RecoveryStrategy
from .strategies import (
    EffectivenessTracker,
    StrategyCatalog,
    StrategyEffectiveness,
    StrategyExecutor,
)

logger = logging.getLogger(__name__)

MAX_RECENT_ERRORS = 1000


@dataclass
class RecentError:
    """One recovery outcome kept for trend analysis."""

    error: str
    category: ErrorCategory
    recovery: RecoveryStrategy
    success: bool
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "error": self.error,
            "category": self.category.value,
            "recovery": self.recovery.value,
            "success": self.success,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecentError:
        """Create from dictionary."""
        timestamp = datetime.now()
        if data.get("timestamp"):
            try:
                timestamp = datetime.fromisoformat(data["timestamp"])
            except (ValueError, TypeError):
                pass
        return cls(
            error=data.get("error", ""),
            category=ErrorCategory(data.get("category", "unknown")),
            recovery=RecoveryStrategy(data.get("recovery", "skip_step")),
            success=bool(data.get("success", False)),
            timestamp=timestamp,
        )


@dataclass
class Recommendation:
    """Suggested change to improve recovery outcomes."""

    type: str  # strategy | timeout | selector
    priority: str  # high | medium | low
    recommendation: str
    expected_improvement: float


PRIORITY_ORDER = {"high": 3, "medium": 2, "low": 1}


class BuiltInRecovery:
    """Deterministic recovery via the strategy catalog.

    Outcomes of every attempt feed the catalog's effectiveness tracker, so
    later failures of the same category try the historically best strategy
    first.
    """

    def __init__(
        self,
        classifier: ErrorClassifier | None = None,
        executor: StrategyExecutor | None = None,
        tracker: EffectivenessTracker | None = None,
    ):
        if classifier is None:
            classifier = ErrorClassifier(catalog=StrategyCatalog(tracker=tracker))
        self.classifier = classifier
        self.catalog = classifier.catalog
        self.executor = executor or StrategyExecutor()
        self.tracker = self.catalog.tracker
        self._recent: deque[RecentError] = deque(maxlen=MAX_RECENT_ERRORS)

    async def apply_known_fix(
        self, failure: Failure | BaseException | str, context: RecoveryContext
    ) -> RecoveryResult:
        """Run the quick fix of the pattern matching this failure.

        Raises:
            LookupError: If the failure is not a known issue or has no quick fix.
        """
        analysis = self.classifier.categorize(failure)
        if not analysis.is_known_issue or analysis.quick_fix is None:
            raise LookupError("No known fix available for this error")

        result = await self.executor.run(analysis.quick_fix, context)
        self.tracker.record(analysis.quick_fix, analysis.category, result.success, result.duration_ms)
        return result

    async def try_built_in_strategies(
        self,
        failure: Failure | BaseException | str,
        context: RecoveryContext,
        exclude: set[RecoveryStrategy] | None = None,
    ) -> RecoveryResult:
        """Try ranked strategies for the failure's category until one works.

        Args:
            failure: The failure to recover from.
            context: Recovery context.
            exclude: Strategies already tried by the caller.

        Returns:
            The first successful result, or a failed skip_step result listing
            the attempted strategies.
        """
        normalized = Failure.coerce(failure)
        analysis = self.classifier.categorize(normalized)
        start = time.monotonic()
        attempted: list[str] = []

        for option in self.catalog.ranked(analysis.category):
            if exclude and option.strategy in exclude:
                continue

            logger.debug(f"Attempting recovery strategy: {option.strategy.value}")
            attempted.append(option.strategy.value)
            result = await self.executor.run(option.strategy, context)
            self.tracker.record(option.strategy, analysis.category, result.success, result.duration_ms)

            if result.success:
                self._log_attempt(normalized, analysis.category, option.strategy, True)
                result.duration_ms = (time.monotonic() - start) * 1000
                result.metadata.setdefault("attempted_strategies", attempted)
                return result

            logger.debug(f"Recovery strategy {option.strategy.value} failed: {result.error}")

        self._log_attempt(normalized, analysis.category, RecoveryStrategy.SKIP_STEP, False)
        return RecoveryResult(
            success=False,
            strategy_used=RecoveryStrategy.SKIP_STEP,
            retry_count=context.retry_count,
            duration_ms=(time.monotonic() - start) * 1000,
            error="All recovery strategies failed",
            metadata={"attempted_strategies": attempted},
        )

    def _log_attempt(
        self,
        failure: Failure,
        category: ErrorCategory,
        strategy: RecoveryStrategy,
        success: bool,
    ) -> None:
        self._recent.append(
            RecentError(error=failure.message, category=category, recovery=strategy, success=success)
        )

    @property
    def recent_errors(self) -> list[RecentError]:
        return list(self._recent)

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_recovery_statistics(self) -> dict[str, Any]:
        """Summarize learned outcomes.

        Returns:
            Totals, the ten most effective (strategy, category) pairs, and
            per-day attempt counts for the last seven days.
        """
        stats = self.tracker.all()
        total = sum(s.total_attempts for s in stats)
        successes = sum(s.success_count for s in stats)

        top = sorted(stats, key=lambda s: s.effectiveness_score, reverse=True)[:10]

        return {
            "total_recovery_attempts": total,
            "successful_recoveries": successes,
            "overall_success_rate": successes / total if total else 0.0,
            "top_strategies": [
                {
                    "strategy": s.strategy.value,
                    "category": s.category.value,
                    "success_rate": s.success_rate,
                    "effectiveness_score": s.effectiveness_score,
                }
                for s in top
            ],
            "recent_trends": self._daily_trends(),
        }

    def _daily_trends(self, days: int = 7) -> list[dict[str, Any]]:
        today = datetime.now().date()
        trends = []
        for offset in range(days - 1, -1, -1):
            day = today - timedelta(days=offset)
            entries = [e for e in self._recent if e.timestamp.date() == day]
            trends.append(
                {
                    "date": day.isoformat(),
                    "attempts": len(entries),
                    "successes": sum(1 for e in entries if e.success),
                }
            )
        return trends

    def get_recovery_recommendations(self) -> list[Recommendation]:
        """Derive improvement suggestions from learned outcomes."""
        recommendations: list[Recommendation] = []

        for stats in self.tracker.all():
            if stats.success_rate < 0.3 and stats.total_attempts > 5:
                recommendations.append(
                    Recommendation(
                        type="strategy",
                        priority="high",
                        recommendation=(
                            f"Strategy '{stats.strategy.value}' for '{stats.category.value}' "
                            f"has low success rate ({round(stats.success_rate * 100)}%). "
                            "Consider alternative approaches or improve implementation."
                        ),
                        expected_improvement=0.3,
                    )
                )

        timeouts = [e for e in self._recent if e.category == ErrorCategory.TIMEOUT]
        if len(timeouts) > 10:
            rate = sum(1 for e in timeouts if e.success) / len(timeouts)
            if rate < 0.5:
                recommendations.append(
                    Recommendation(
                        type="timeout",
                        priority="medium",
                        recommendation=(
                            "High frequency of timeout errors detected. Consider increasing "
                            "default timeouts or improving wait strategies."
                        ),
                        expected_improvement=0.2,
                    )
                )

        not_found = [e for e in self._recent if e.category == ErrorCategory.ELEMENT_NOT_FOUND]
        if len(not_found) > 15:
            recommendations.append(
                Recommendation(
                    type="selector",
                    priority="medium",
                    recommendation=(
                        "Frequent element not found errors detected. Consider using more "
                        "robust selectors (data-testid attributes) or improving element "
                        "location strategies."
                    ),
                    expected_improvement=0.25,
                )
            )

        return sorted(recommendations, key=lambda r: PRIORITY_ORDER[r.priority], reverse=True)

    # =========================================================================
    # Export / Import
    # =========================================================================

    def export_recovery_data(self) -> dict[str, Any]:
        """Export patterns, learned statistics and recent errors."""
        return {
            "patterns": [p.to_dict() for p in self.classifier.patterns],
            "statistics": [s.to_dict() for s in self.tracker.all()],
            "recent_errors": [e.to_dict() for e in self._recent],
            "export_time": datetime.now().isoformat(),
        }

    def import_recovery_data(self, data: dict[str, Any]) -> None:
        """Merge previously exported recovery data.

        Patterns are merged by id, statistics replace existing entries for
        the same (strategy, category), and recent errors are merged in time
        order keeping the newest MAX_RECENT_ERRORS.
        """
        if data.get("patterns"):
            self.classifier.merge_patterns([ErrorPattern.from_dict(p) for p in data["patterns"]])

        for entry in data.get("statistics", []):
            self.tracker.replace(StrategyEffectiveness.from_dict(entry))

        if data.get("recent_errors"):
            merged = list(self._recent) + [RecentError.from_dict(e) for e in data["recent_errors"]]
            merged.sort(key=lambda e: e.timestamp)
            self._recent = deque(merged[-MAX_RECENT_ERRORS:], maxlen=MAX_RECENT_ERRORS)
