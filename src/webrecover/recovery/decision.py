"""Built-in vs generated recovery decision.

The engine short-circuits on explicit overrides, generator availability and
the built-in attempt ceiling. Otherwise it scores six normalized factors and
recommends the generator when the weighted sum exceeds 0.6.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, NamedTuple

import psutil

from ..config import DecisionConfig
from ..observability import AuditEventType, AuditLog
from .classifier import ErrorClassifier
from .models import ErrorCategory, Failure, RecoveryContext

logger = logging.getLogger(__name__)

DECISION_THRESHOLD = 0.6

# Base complexity per category; unmapped categories score 5
CATEGORY_COMPLEXITY: dict[ErrorCategory, int] = {
    ErrorCategory.TIMEOUT: 3,
    ErrorCategory.ELEMENT_NOT_FOUND: 4,
    ErrorCategory.NAVIGATION_FAILED: 5,
    ErrorCategory.NETWORK_ERROR: 4,
    ErrorCategory.INTERACTION_BLOCKED: 6,
    ErrorCategory.VALIDATION_ERROR: 5,
    ErrorCategory.PERMISSION_DENIED: 8,
    ErrorCategory.PAGE_LOAD_ERROR: 4,
    ErrorCategory.STALE_ELEMENT: 6,
    ErrorCategory.JAVASCRIPT_ERROR: 7,
    ErrorCategory.UNKNOWN: 9,
}

CRITICAL_KEYWORDS = ("login", "auth", "payment", "submit", "confirm")

LONG_STACK_CHARS = 500


@dataclass
class Decision:
    """Which recovery path to take, and why."""

    use_generated: bool
    reasoning: str
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "use_generated": self.use_generated,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
        }


@dataclass
class DecisionOverrides:
    """Caller-supplied overrides for one recovery.

    Attributes:
        force_generated: Use the generator regardless of scoring, if available.
        disable_generated: Never use the generator for this recovery.
    """

    force_generated: bool = False
    disable_generated: bool = False


class DecisionFactor(NamedTuple):
    """One weighted term of the decision score."""

    name: str
    score: float
    weight: float
    reasoning: str

    def describe(self) -> str:
        return f"{self.name}: {self.score * 100:.0f}% ({self.reasoning})"


class SystemSignals:
    """Live resource signals for the decision engine."""

    def system_load(self) -> float:
        """CPU utilisation since the previous call, in [0, 1]."""
        return min(max(psutil.cpu_percent(interval=None) / 100.0, 0.0), 1.0)


class StaticSignals(SystemSignals):
    """Fixed signals, for deterministic callers."""

    def __init__(self, load: float = 0.0):
        self.load = load

    def system_load(self) -> float:
        return self.load


def calculate_complexity(
    category: ErrorCategory,
    failure: Failure,
    context: RecoveryContext,
) -> int:
    """Score how hard a failure is to repair, from 0 to 10."""
    complexity = CATEGORY_COMPLEXITY.get(category, 5)

    if context.retry_count > 2:
        complexity += 2
    if not context.selector:
        complexity += 1
    if failure.stack and len(failure.stack) > LONG_STACK_CHARS:
        complexity += 1
    if "timeout" in failure.message:
        complexity += 1

    return min(complexity, 10)


def is_critical_path(step_name: str) -> bool:
    """Check if a step name looks like a high-stakes step."""
    lowered = step_name.lower()
    return any(keyword in lowered for keyword in CRITICAL_KEYWORDS)


class DecisionEngine:
    """Chooses between built-in strategies and a generated solution.

    Example:
        engine = DecisionEngine(DecisionConfig(), generator_available=True)
        decision = engine.decide(exc, context)
        if decision.use_generated:
            ...
    """

    def __init__(
        self,
        config: DecisionConfig | None = None,
        classifier: ErrorClassifier | None = None,
        generator_available: bool = False,
        generator_timeout_ms: int = 120000,
        signals: SystemSignals | None = None,
        audit: AuditLog | None = None,
        session_id: str = "",
    ):
        """Initialize the decision engine.

        Args:
            config: Thresholds and attempt ceiling.
            classifier: Classifier used for category and known-issue checks.
            generator_available: Whether a generator is configured and enabled.
            generator_timeout_ms: Time the generator needs for one invocation.
            signals: Source of the system load signal.
            audit: Audit log receiving decision events.
            session_id: Session id stamped on audit events.
        """
        self.config = config or DecisionConfig()
        self.classifier = classifier or ErrorClassifier()
        self.generator_available = generator_available
        self.generator_timeout_ms = generator_timeout_ms
        self.signals = signals or SystemSignals()
        self.audit = audit
        self.session_id = session_id

    def decide(
        self,
        failure: Failure | BaseException | str,
        context: RecoveryContext,
        overrides: DecisionOverrides | None = None,
        elapsed_ms: float = 0.0,
    ) -> Decision:
        """Decide which recovery path to take.

        Args:
            failure: The failure being recovered.
            context: Recovery context (retry count, selector, step, timeout).
            overrides: Caller overrides.
            elapsed_ms: Time already spent on this recovery.

        Returns:
            Decision. Never raises; internal errors fail closed to built-in.
        """
        overrides = overrides or DecisionOverrides()

        if overrides.force_generated and self.generator_available and not overrides.disable_generated:
            return Decision(True, "Generated recovery forced by option", 1.0)

        if not self.generator_available or overrides.disable_generated:
            return Decision(False, "Generated recovery not available or disabled", 1.0)

        if context.retry_count >= self.config.max_built_in_attempts:
            return Decision(
                True,
                f"Exceeded built-in attempt limit ({self.config.max_built_in_attempts})",
                0.8,
            )

        start = time.monotonic()
        try:
            decision, details = self._evaluate(Failure.coerce(failure), context, elapsed_ms)
        except Exception as e:
            logger.error(f"Decision engine error: {e}")
            decision = Decision(False, f"Decision engine error: {e}", 0.1)
            self._audit(AuditEventType.ERROR, start, {"decision": decision.to_dict(), "error": str(e)})
            return decision

        self._audit(AuditEventType.DECISION, start, {"decision": decision.to_dict(), **details})
        return decision

    def factors(
        self,
        failure: Failure,
        context: RecoveryContext,
        elapsed_ms: float = 0.0,
    ) -> list[DecisionFactor]:
        """Compute the six weighted decision factors."""
        analysis = self.classifier.categorize(failure)
        complexity = calculate_complexity(analysis.category, failure, context)
        failures = context.retry_count
        threshold = self.config.failure_count_threshold
        load = self.signals.system_load()
        available = self.available_time_ms(context, elapsed_ms)
        critical = is_critical_path(context.step_name)

        return [
            DecisionFactor(
                "complexity",
                min(complexity / 10, 1.0),
                0.30,
                f"Error complexity: {complexity}/10",
            ),
            DecisionFactor(
                "failures",
                min(failures / threshold, 1.0) if threshold > 0 else 1.0,
                0.25,
                f"Built-in failures: {failures}/{threshold}",
            ),
            DecisionFactor(
                "known_issue",
                0.2 if analysis.is_known_issue else 0.8,
                0.15,
                "Known issue: "
                + ("yes (prefer built-in)" if analysis.is_known_issue else "no (consider generator)"),
            ),
            DecisionFactor(
                "resources",
                1.0 - load,
                0.10,
                f"System load: {round(load * 100)}%",
            ),
            DecisionFactor(
                "time",
                1.0 if available > self.generator_timeout_ms else 0.3,
                0.10,
                f"Available time: {available}ms vs required {self.generator_timeout_ms}ms",
            ),
            DecisionFactor(
                "critical",
                0.9 if critical else 0.5,
                0.10,
                "Critical path: " + ("yes (high stakes)" if critical else "no"),
            ),
        ]

    def available_time_ms(self, context: RecoveryContext, elapsed_ms: float = 0.0) -> int:
        """Time left in the caller's budget for this recovery."""
        if context.timeout_ms is None:
            return self.generator_timeout_ms * 2
        return max(int(context.timeout_ms - elapsed_ms), 0)

    def _evaluate(
        self,
        failure: Failure,
        context: RecoveryContext,
        elapsed_ms: float,
    ) -> tuple[Decision, dict[str, Any]]:
        factors = self.factors(failure, context, elapsed_ms)
        weighted = sum(f.score * f.weight for f in factors)

        reasoning = "; ".join(
            [f"Decision score: {weighted * 100:.1f}% (threshold: {DECISION_THRESHOLD * 100:.0f}%)"]
            + [f.describe() for f in factors]
        )
        decision = Decision(
            use_generated=weighted > DECISION_THRESHOLD,
            reasoning=reasoning,
            confidence=abs(weighted - 0.5) * 2,
        )
        details = {
            "factors": {f.name: f.score for f in factors},
            "step_name": context.step_name,
            "retry_count": context.retry_count,
        }
        return decision, details

    def _audit(self, event_type: AuditEventType, start: float, data: dict[str, Any]) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            session_id=self.session_id,
            duration_ms=(time.monotonic() - start) * 1000,
            data=data,
        )
