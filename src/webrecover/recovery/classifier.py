"""Error classification for automation failures.

Maps a failure message to an ErrorCategory using an ordered table of
ErrorPatterns. The first pattern with a matching regex wins and contributes
its category, confidence and quick fix. Messages that match no pattern fall
back to keyword checks in a fixed priority order, and finally to UNKNOWN
with confidence 0.5.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from .models import ErrorCategory, Failure, RecoveryStrategy
from .strategies import StrategyCatalog, StrategyOption


@dataclass(frozen=True)
class ErrorPattern:
    """A known failure shape.

    Attributes:
        id: Stable identifier, used to merge imported pattern sets.
        name: Human-readable name.
        patterns: Regexes tried in order, case-insensitively.
        category: Category assigned when any regex matches.
        confidence: Confidence reported for a match.
        common_causes: Typical root causes, for display.
        quick_fix: Strategy to try first for this pattern, if any.
    """

    id: str
    name: str
    patterns: tuple[str, ...]
    category: ErrorCategory
    confidence: float
    common_causes: tuple[str, ...] = ()
    quick_fix: RecoveryStrategy | None = None

    def matches(self, message: str) -> bool:
        return any(re.search(p, message, re.IGNORECASE) for p in self.patterns)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "patterns": list(self.patterns),
            "category": self.category.value,
            "confidence": self.confidence,
            "common_causes": list(self.common_causes),
            "quick_fix": self.quick_fix.value if self.quick_fix else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorPattern:
        """Create from dictionary."""
        quick_fix = data.get("quick_fix")
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            patterns=tuple(data.get("patterns", [])),
            category=ErrorCategory(data.get("category", "unknown")),
            confidence=float(data.get("confidence", 0.5)),
            common_causes=tuple(data.get("common_causes", [])),
            quick_fix=RecoveryStrategy(quick_fix) if quick_fix else None,
        )


@dataclass
class ErrorAnalysis:
    """Result of categorizing a failure."""

    category: ErrorCategory
    confidence: float
    is_known_issue: bool
    suggested_strategies: list[StrategyOption] = field(default_factory=list)
    matched_pattern: ErrorPattern | None = None
    quick_fix: RecoveryStrategy | None = None


# Known failure shapes, checked in declaration order
KNOWN_PATTERNS: tuple[ErrorPattern, ...] = (
    ErrorPattern(
        id="playwright_timeout",
        name="Playwright Timeout",
        patterns=(
            r"timeout.*exceeded",
            r"waiting for.*timed out",
            r"locator.*timeout",
            r"page\.waitFor.*timeout",
        ),
        category=ErrorCategory.TIMEOUT,
        confidence=0.95,
        common_causes=("Slow page load", "Element not appearing", "Network delay"),
        quick_fix=RecoveryStrategy.WAIT_FOR_ELEMENT,
    ),
    ErrorPattern(
        id="network_timeout",
        name="Network Timeout",
        patterns=(
            r"net::ERR_TIMED_OUT",
            r"net::ERR_CONNECTION_TIMED_OUT",
            r"request timeout",
            r"fetch.*timeout",
        ),
        category=ErrorCategory.NETWORK_ERROR,
        confidence=0.9,
        common_causes=("Slow network", "Server overload", "DNS issues"),
        quick_fix=RecoveryStrategy.WAIT_FOR_NETWORK,
    ),
    ErrorPattern(
        id="element_not_found",
        name="Element Not Found",
        patterns=(
            r"no element matches",
            r"element not found",
            r"locator.*not found",
            r"unable to locate element",
            r"querySelector.*null",
        ),
        category=ErrorCategory.ELEMENT_NOT_FOUND,
        confidence=0.95,
        common_causes=("Dynamic content", "Changed selectors", "Page not loaded"),
        quick_fix=RecoveryStrategy.ALTERNATIVE_SELECTOR,
    ),
    ErrorPattern(
        id="stale_element",
        name="Stale Element Reference",
        patterns=(
            r"stale element reference",
            r"element is not attached",
            r"node is detached",
            r"element.*no longer attached",
        ),
        category=ErrorCategory.STALE_ELEMENT,
        confidence=0.9,
        common_causes=("DOM refresh", "Dynamic content update", "Page navigation"),
        quick_fix=RecoveryStrategy.WAIT_FOR_STABLE,
    ),
    ErrorPattern(
        id="navigation_failed",
        name="Navigation Failed",
        patterns=(
            r"navigation.*failed",
            r"net::ERR_NAME_NOT_RESOLVED",
            r"net::ERR_CONNECTION_REFUSED",
            r"page.*navigate.*failed",
        ),
        category=ErrorCategory.NAVIGATION_FAILED,
        confidence=0.9,
        common_causes=("Invalid URL", "Network issues", "Server down"),
        quick_fix=RecoveryStrategy.RETRY_WITH_BACKOFF,
    ),
    ErrorPattern(
        id="element_not_interactable",
        name="Element Not Interactable",
        patterns=(
            r"element not interactable",
            r"element.*not clickable",
            r"element.*obscured",
            r"element.*disabled",
            r"pointer-events.*none",
        ),
        category=ErrorCategory.INTERACTION_BLOCKED,
        confidence=0.85,
        common_causes=("Overlay blocking", "Element disabled", "CSS issues"),
        quick_fix=RecoveryStrategy.SCROLL_INTO_VIEW,
    ),
    ErrorPattern(
        id="javascript_error",
        name="JavaScript Error",
        patterns=(
            r"uncaught.*error",
            r"javascript.*error",
            r"console.*error",
            r"TypeError.*undefined",
            r"ReferenceError",
        ),
        category=ErrorCategory.JAVASCRIPT_ERROR,
        confidence=0.8,
        common_causes=("Script errors", "Missing dependencies", "Timing issues"),
        quick_fix=RecoveryStrategy.WAIT_FOR_STABLE,
    ),
    ErrorPattern(
        id="form_validation",
        name="Form Validation Error",
        patterns=(
            r"validation.*failed",
            r"invalid.*input",
            r"required.*field",
            r"form.*error",
            r"constraint validation",
        ),
        category=ErrorCategory.VALIDATION_ERROR,
        confidence=0.8,
        common_causes=("Invalid input format", "Missing required fields", "Business rules"),
        quick_fix=RecoveryStrategy.CLEAR_AND_RETRY,
    ),
    ErrorPattern(
        id="permission_denied",
        name="Permission Denied",
        patterns=(
            r"permission denied",
            r"access denied",
            r"unauthorized",
            r"403.*forbidden",
            r"authentication.*required",
        ),
        category=ErrorCategory.PERMISSION_DENIED,
        confidence=0.9,
        common_causes=("Authentication required", "Insufficient permissions", "Session expired"),
        quick_fix=RecoveryStrategy.SKIP_STEP,
    ),
)

# Keyword fallback, checked in order when no pattern matches
FALLBACK_KEYWORDS: tuple[tuple[tuple[str, ...], ErrorCategory], ...] = (
    (("timeout",), ErrorCategory.TIMEOUT),
    (("not found", "locate"), ErrorCategory.ELEMENT_NOT_FOUND),
    (("network", "fetch"), ErrorCategory.NETWORK_ERROR),
    (("navigate",), ErrorCategory.NAVIGATION_FAILED),
    (("click", "interact"), ErrorCategory.INTERACTION_BLOCKED),
    (("permission", "denied"), ErrorCategory.PERMISSION_DENIED),
    (("load",), ErrorCategory.PAGE_LOAD_ERROR),
    (("stale", "detached"), ErrorCategory.STALE_ELEMENT),
    (("javascript", "script"), ErrorCategory.JAVASCRIPT_ERROR),
    (("validation", "invalid"), ErrorCategory.VALIDATION_ERROR),
)

FALLBACK_CONFIDENCE = 0.5


class ErrorClassifier:
    """Categorizes failures against an ordered pattern table.

    Pure with respect to its pattern table: categorize() has no side
    effects other than tagging the Failure with its category.
    """

    def __init__(
        self,
        patterns: tuple[ErrorPattern, ...] | list[ErrorPattern] | None = None,
        catalog: StrategyCatalog | None = None,
    ):
        """Initialize the classifier.

        Args:
            patterns: Pattern table; defaults to KNOWN_PATTERNS.
            catalog: Strategy catalog used for suggested strategies.
        """
        self._patterns: list[ErrorPattern] = list(patterns if patterns is not None else KNOWN_PATTERNS)
        self.catalog = catalog or StrategyCatalog()

    @property
    def patterns(self) -> list[ErrorPattern]:
        return list(self._patterns)

    def match(self, failure: Failure | BaseException | str) -> ErrorPattern | None:
        """Return the first pattern matching the failure message."""
        message = Failure.coerce(failure).message
        for pattern in self._patterns:
            if pattern.matches(message):
                return pattern
        return None

    def categorize(self, failure: Failure | BaseException | str) -> ErrorAnalysis:
        """Categorize a failure.

        Args:
            failure: The failure, an exception, or a raw message.

        Returns:
            ErrorAnalysis with category, confidence and suggested strategies.
        """
        normalized = Failure.coerce(failure)
        pattern = self.match(normalized)

        if pattern is not None:
            normalized.category = pattern.category
            return ErrorAnalysis(
                category=pattern.category,
                confidence=pattern.confidence,
                is_known_issue=True,
                suggested_strategies=self.catalog.strategies_for(pattern.category),
                matched_pattern=pattern,
                quick_fix=pattern.quick_fix,
            )

        category = fallback_category(normalized.message)
        normalized.category = category
        return ErrorAnalysis(
            category=category,
            confidence=FALLBACK_CONFIDENCE,
            is_known_issue=False,
            suggested_strategies=self.catalog.strategies_for(category),
        )

    def is_known_issue(self, failure: Failure | BaseException | str) -> bool:
        """Check if any known pattern matches the failure."""
        return self.match(failure) is not None

    def merge_patterns(self, patterns: list[ErrorPattern]) -> int:
        """Append patterns whose ids are not already present.

        Returns:
            Number of patterns added.
        """
        existing = {p.id for p in self._patterns}
        added = [p for p in patterns if p.id not in existing]
        self._patterns.extend(added)
        return len(added)


def fallback_category(message: str) -> ErrorCategory:
    """Keyword-based categorization for messages no pattern matched."""
    lowered = message.lower()
    for keywords, category in FALLBACK_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return ErrorCategory.UNKNOWN


# Errors that should never be retried
NON_RECOVERABLE_MARKERS = (
    "permission denied",
    "access denied",
    "authentication required",
    "user aborted",
)


def should_attempt_recovery(
    failure: Failure | BaseException | str,
    retry_count: int,
    max_retries: int,
) -> bool:
    """Check whether a failure is worth recovering at all.

    Args:
        failure: The failure to check.
        retry_count: Attempts already made.
        max_retries: Attempt ceiling.

    Returns:
        False at the retry ceiling or for non-recoverable failures.
    """
    if retry_count >= max_retries:
        return False

    message = Failure.coerce(failure).message.lower()
    return not any(marker in message for marker in NON_RECOVERABLE_MARKERS)
