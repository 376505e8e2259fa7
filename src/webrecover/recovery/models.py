"""Core data model for browser-automation error recovery.

Defines the failure representation, the closed category and strategy enums,
the per-attempt recovery context, and the result every recovery path
returns.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .surface import AutomationSurface


class ErrorCategory(str, Enum):
    """Category of an automation failure."""

    TIMEOUT = "timeout"
    ELEMENT_NOT_FOUND = "element_not_found"
    NAVIGATION_FAILED = "navigation_failed"
    NETWORK_ERROR = "network_error"
    INTERACTION_BLOCKED = "interaction_blocked"
    VALIDATION_ERROR = "validation_error"
    PERMISSION_DENIED = "permission_denied"
    PAGE_LOAD_ERROR = "page_load_error"
    STALE_ELEMENT = "stale_element"
    JAVASCRIPT_ERROR = "javascript_error"
    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    """Built-in repair strategies."""

    RETRY_WITH_BACKOFF = "retry_with_backoff"
    ALTERNATIVE_SELECTOR = "alternative_selector"
    WAIT_FOR_ELEMENT = "wait_for_element"
    SCROLL_INTO_VIEW = "scroll_into_view"
    FORCE_CLICK = "force_click"
    PAGE_REFRESH = "page_refresh"
    WAIT_FOR_NETWORK = "wait_for_network"
    CLEAR_AND_RETRY = "clear_and_retry"
    USE_JAVASCRIPT_CLICK = "use_javascript_click"
    WAIT_FOR_STABLE = "wait_for_stable"
    BYPASS_VALIDATION = "bypass_validation"
    SKIP_STEP = "skip_step"


class SolutionSource(str, Enum):
    """Where a recovery outcome came from."""

    BUILT_IN = "built-in"
    GENERATED = "generated"
    CACHED_GENERATED = "cached-generated"


@dataclass
class Failure:
    """A normalized automation failure.

    Attributes:
        message: Error message as raised by the automation layer.
        stack: Stack trace text, if one was available.
        error_type: Exception class name, if the failure came from an exception.
        category: Assigned by classification; None until classified.
    """

    message: str
    stack: str | None = None
    error_type: str | None = None
    category: ErrorCategory | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> Failure:
        """Build a Failure from a raised exception."""
        import traceback

        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return cls(
            message=str(exc) or type(exc).__name__,
            stack=stack if exc.__traceback__ is not None else None,
            error_type=type(exc).__name__,
        )

    @classmethod
    def coerce(cls, value: Failure | BaseException | str | None) -> Failure:
        """Normalize whatever the caller has into a Failure."""
        if isinstance(value, Failure):
            return value
        if isinstance(value, BaseException):
            return cls.from_exception(value)
        if value is None:
            return cls(message="Unknown error")
        return cls(message=str(value))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "message": self.message,
            "stack": self.stack,
            "error_type": self.error_type,
            "category": self.category.value if self.category else None,
        }


@dataclass
class RecoveryContext:
    """Everything a strategy needs to act on the live automation surface.

    Owned by the caller of a single recovery; never persisted.

    Attributes:
        surface: Handle to the automation surface.
        step_name: Name of the flow step that failed.
        selector: Target element selector, if the step had one.
        value: Input value, if the step was a fill/type.
        retry_count: Attempts already made for this step.
        max_retries: Attempt ceiling for the step.
        timeout_ms: Time budget for recovering this step.
        variables: Flow variables available to the step.
        context_id: Identity used to serialize attempts on the same context.
    """

    surface: AutomationSurface
    step_name: str
    selector: str | None = None
    value: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    timeout_ms: int | None = None
    variables: dict[str, str] = field(default_factory=dict)
    context_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class RecoveryResult:
    """Outcome of one recovery path.

    Every result names exactly one strategy. Generated-solution results use
    the solution's strategy label.
    """

    success: bool
    strategy_used: RecoveryStrategy | str
    retry_count: int = 0
    duration_ms: float = 0.0
    error: str | None = None
    alternative_approach: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def strategy_name(self) -> str:
        """Strategy name as a plain string."""
        if isinstance(self.strategy_used, RecoveryStrategy):
            return self.strategy_used.value
        return str(self.strategy_used)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "strategy_used": self.strategy_name,
            "retry_count": self.retry_count,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "alternative_approach": self.alternative_approach,
            "metadata": self.metadata,
        }


@dataclass
class PageSnapshot:
    """Point-in-time page state reported by the automation surface."""

    url: str = ""
    title: str = ""
    ready_state: str = ""
    content: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self, max_content: int = 2000) -> dict[str, Any]:
        """Convert to dictionary, truncating page content."""
        return {
            "url": self.url,
            "title": self.title,
            "ready_state": self.ready_state,
            "content": self.content[:max_content],
            "timestamp": self.timestamp.isoformat(),
        }
