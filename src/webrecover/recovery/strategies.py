"""Built-in recovery strategies.

Provides:
- StrategyCatalog: static per-category candidate lists with prior success rates
- EffectivenessTracker: learned (strategy, category) effectiveness that re-ranks the priors
- StrategyExecutor: runs one strategy against the automation surface
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .models import ErrorCategory, RecoveryContext, RecoveryResult, RecoveryStrategy

logger = logging.getLogger(__name__)

# Speed is scored against this duration; anything slower scores zero
SPEED_BUDGET_MS = 10000.0
# Recency decays linearly to zero over this window
RECENCY_WINDOW_SECONDS = 7 * 24 * 60 * 60

SUCCESS_WEIGHT = 0.7
SPEED_WEIGHT = 0.2
RECENCY_WEIGHT = 0.1


@dataclass(frozen=True)
class StrategyOption:
    """A candidate strategy for a category."""

    strategy: RecoveryStrategy
    priority: int
    description: str
    estimated_success_rate: float


def _options(*rows: tuple[RecoveryStrategy, str, float]) -> tuple[StrategyOption, ...]:
    return tuple(
        StrategyOption(strategy=s, priority=i, description=d, estimated_success_rate=r)
        for i, (s, d, r) in enumerate(rows, start=1)
    )


S = RecoveryStrategy

STRATEGY_TABLE: dict[ErrorCategory, tuple[StrategyOption, ...]] = {
    ErrorCategory.TIMEOUT: _options(
        (S.WAIT_FOR_ELEMENT, "Wait for element to appear", 0.8),
        (S.WAIT_FOR_STABLE, "Wait for page to stabilize", 0.7),
        (S.PAGE_REFRESH, "Refresh page and retry", 0.6),
        (S.RETRY_WITH_BACKOFF, "Retry with exponential backoff", 0.5),
    ),
    ErrorCategory.ELEMENT_NOT_FOUND: _options(
        (S.ALTERNATIVE_SELECTOR, "Try alternative selectors", 0.85),
        (S.WAIT_FOR_ELEMENT, "Wait for element to load", 0.7),
        (S.SCROLL_INTO_VIEW, "Scroll to make element visible", 0.6),
        (S.PAGE_REFRESH, "Refresh and try again", 0.4),
    ),
    ErrorCategory.NAVIGATION_FAILED: _options(
        (S.RETRY_WITH_BACKOFF, "Retry navigation with delay", 0.8),
        (S.WAIT_FOR_NETWORK, "Wait for network to stabilize", 0.6),
        (S.SKIP_STEP, "Skip navigation step", 1.0),
    ),
    ErrorCategory.NETWORK_ERROR: _options(
        (S.WAIT_FOR_NETWORK, "Wait for network recovery", 0.7),
        (S.RETRY_WITH_BACKOFF, "Retry with exponential backoff", 0.6),
        (S.PAGE_REFRESH, "Refresh page", 0.5),
    ),
    ErrorCategory.INTERACTION_BLOCKED: _options(
        (S.SCROLL_INTO_VIEW, "Scroll element into view", 0.8),
        (S.FORCE_CLICK, "Force click on element", 0.7),
        (S.USE_JAVASCRIPT_CLICK, "Use JavaScript to click", 0.6),
        (S.WAIT_FOR_ELEMENT, "Wait for element to be interactable", 0.5),
    ),
    ErrorCategory.VALIDATION_ERROR: _options(
        (S.CLEAR_AND_RETRY, "Clear field and retry input", 0.8),
        (S.BYPASS_VALIDATION, "Bypass client-side validation", 0.6),
        (S.SKIP_STEP, "Skip validation step", 1.0),
    ),
    ErrorCategory.PERMISSION_DENIED: _options(
        (S.SKIP_STEP, "Skip unauthorized step", 1.0),
    ),
    ErrorCategory.PAGE_LOAD_ERROR: _options(
        (S.PAGE_REFRESH, "Refresh page", 0.8),
        (S.WAIT_FOR_NETWORK, "Wait for network", 0.6),
        (S.RETRY_WITH_BACKOFF, "Retry with delay", 0.5),
    ),
    ErrorCategory.STALE_ELEMENT: _options(
        (S.WAIT_FOR_STABLE, "Wait for DOM to stabilize", 0.8),
        (S.ALTERNATIVE_SELECTOR, "Find fresh element reference", 0.7),
        (S.PAGE_REFRESH, "Refresh page", 0.6),
    ),
    ErrorCategory.JAVASCRIPT_ERROR: _options(
        (S.WAIT_FOR_STABLE, "Wait for scripts to load", 0.7),
        (S.PAGE_REFRESH, "Refresh page", 0.6),
        (S.SKIP_STEP, "Skip problematic step", 1.0),
    ),
    ErrorCategory.UNKNOWN: _options(
        (S.RETRY_WITH_BACKOFF, "Retry with delay", 0.5),
        (S.WAIT_FOR_STABLE, "Wait for page stability", 0.4),
        (S.SKIP_STEP, "Skip problematic step", 1.0),
    ),
}

# Typical wall-clock cost of each strategy, in ms
RECOVERY_TIME_ESTIMATES: dict[RecoveryStrategy, int] = {
    S.RETRY_WITH_BACKOFF: 2000,
    S.ALTERNATIVE_SELECTOR: 3000,
    S.WAIT_FOR_ELEMENT: 5000,
    S.SCROLL_INTO_VIEW: 1000,
    S.FORCE_CLICK: 500,
    S.PAGE_REFRESH: 8000,
    S.WAIT_FOR_NETWORK: 10000,
    S.CLEAR_AND_RETRY: 1500,
    S.USE_JAVASCRIPT_CLICK: 500,
    S.WAIT_FOR_STABLE: 3000,
    S.BYPASS_VALIDATION: 1000,
    S.SKIP_STEP: 0,
}


def estimate_recovery_time(strategy: RecoveryStrategy) -> int:
    """Typical duration of a strategy in milliseconds."""
    return RECOVERY_TIME_ESTIMATES.get(strategy, 2000)


def backoff_delay_ms(retry_count: int) -> int:
    """Exponential backoff: 1s doubling per retry, capped at 10s."""
    return min(1000 * (2 ** max(retry_count, 0)), 10000)


# =============================================================================
# Learned effectiveness
# =============================================================================


StrategyKey = tuple[RecoveryStrategy, ErrorCategory]


@dataclass
class StrategyEffectiveness:
    """Running outcome aggregate for one (strategy, category) pair."""

    strategy: RecoveryStrategy
    category: ErrorCategory
    total_attempts: int = 0
    success_count: int = 0
    success_rate: float = 0.0
    average_duration_ms: float = 0.0
    last_used: datetime = field(default_factory=datetime.now)
    effectiveness_score: float = 0.0

    def compute_score(self, now: datetime | None = None) -> float:
        """Weighted success, speed and recency score."""
        now = now or datetime.now()
        speed = max(0.0, 1.0 - self.average_duration_ms / SPEED_BUDGET_MS)
        age = (now - self.last_used).total_seconds()
        recency = max(0.0, 1.0 - age / RECENCY_WINDOW_SECONDS)
        return (
            self.success_rate * SUCCESS_WEIGHT
            + speed * SPEED_WEIGHT
            + recency * RECENCY_WEIGHT
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "strategy": self.strategy.value,
            "category": self.category.value,
            "total_attempts": self.total_attempts,
            "success_count": self.success_count,
            "success_rate": self.success_rate,
            "average_duration_ms": self.average_duration_ms,
            "last_used": self.last_used.isoformat(),
            "effectiveness_score": self.effectiveness_score,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StrategyEffectiveness:
        """Create from dictionary."""
        last_used = datetime.now()
        if data.get("last_used"):
            try:
                last_used = datetime.fromisoformat(data["last_used"])
            except (ValueError, TypeError):
                pass
        return cls(
            strategy=RecoveryStrategy(data["strategy"]),
            category=ErrorCategory(data["category"]),
            total_attempts=int(data.get("total_attempts", 0)),
            success_count=int(data.get("success_count", 0)),
            success_rate=float(data.get("success_rate", 0.0)),
            average_duration_ms=float(data.get("average_duration_ms", 0.0)),
            last_used=last_used,
            effectiveness_score=float(data.get("effectiveness_score", 0.0)),
        )


class EffectivenessTracker:
    """Per (strategy, category) outcome statistics."""

    def __init__(self) -> None:
        self._stats: dict[StrategyKey, StrategyEffectiveness] = {}

    def get(self, strategy: RecoveryStrategy, category: ErrorCategory) -> StrategyEffectiveness | None:
        return self._stats.get((strategy, category))

    def record(
        self,
        strategy: RecoveryStrategy,
        category: ErrorCategory,
        success: bool,
        duration_ms: float,
    ) -> StrategyEffectiveness:
        """Fold one attempt into the running aggregate.

        The first attempt seeds the score at 0.5 for a success and 0.1 for a
        failure; later attempts use the weighted formula.
        """
        key = (strategy, category)
        stats = self._stats.get(key)
        now = datetime.now()

        if stats is None:
            stats = StrategyEffectiveness(
                strategy=strategy,
                category=category,
                total_attempts=1,
                success_count=1 if success else 0,
                success_rate=1.0 if success else 0.0,
                average_duration_ms=duration_ms,
                last_used=now,
                effectiveness_score=0.5 if success else 0.1,
            )
            self._stats[key] = stats
            return stats

        stats.total_attempts += 1
        if success:
            stats.success_count += 1
        stats.success_rate = stats.success_count / stats.total_attempts
        stats.average_duration_ms = (
            stats.average_duration_ms * (stats.total_attempts - 1) + duration_ms
        ) / stats.total_attempts
        stats.last_used = now
        stats.effectiveness_score = stats.compute_score(now)
        return stats

    def all(self) -> list[StrategyEffectiveness]:
        return list(self._stats.values())

    def replace(self, stats: StrategyEffectiveness) -> None:
        self._stats[(stats.strategy, stats.category)] = stats

    def __len__(self) -> int:
        return len(self._stats)


# =============================================================================
# Catalog
# =============================================================================


class StrategyCatalog:
    """Static candidate strategies per category, re-ranked by learned scores."""

    def __init__(
        self,
        table: dict[ErrorCategory, tuple[StrategyOption, ...]] | None = None,
        tracker: EffectivenessTracker | None = None,
    ):
        self.table = table or STRATEGY_TABLE
        self.tracker = tracker if tracker is not None else EffectivenessTracker()

    def strategies_for(self, category: ErrorCategory) -> list[StrategyOption]:
        """Static candidates for a category in priority order.

        Categories with no explicit mapping use the UNKNOWN list.
        """
        return list(self.table.get(category) or self.table[ErrorCategory.UNKNOWN])

    def ranked(self, category: ErrorCategory) -> list[StrategyOption]:
        """Candidates sorted by learned effectiveness, else by prior rate."""

        def score(option: StrategyOption) -> float:
            stats = self.tracker.get(option.strategy, category)
            if stats is not None:
                return stats.effectiveness_score
            return option.estimated_success_rate

        return sorted(self.strategies_for(category), key=score, reverse=True)


# =============================================================================
# Executor
# =============================================================================


# Fixed page script describing the element a selector points to
DESCRIBE_ELEMENT_SCRIPT = """
(selector) => {
  const el = document.querySelector(selector);
  if (!el) return null;
  const parent = el.parentElement;
  return {
    id: el.id || "",
    class_name: typeof el.className === "string" ? el.className : "",
    tag: el.tagName.toLowerCase(),
    text: (el.textContent || "").trim(),
    attributes: Object.fromEntries(Array.from(el.attributes).map(a => [a.name, a.value])),
    parent_tag: parent ? parent.tagName.toLowerCase() : "",
    index: parent ? Array.from(parent.children).indexOf(el) + 1 : 0,
  };
}
"""

JS_CLICK_SCRIPT = """
(selector) => {
  const el = document.querySelector(selector);
  if (el) el.click();
  return !!el;
}
"""

SET_VALUE_SCRIPT = """
([selector, value]) => {
  const el = document.querySelector(selector);
  if (!el) return false;
  el.value = value;
  el.dispatchEvent(new Event("input", { bubbles: true }));
  el.dispatchEvent(new Event("change", { bubbles: true }));
  return true;
}
"""

SELECTOR_ATTRIBUTES = ("data-testid", "data-test", "name", "type", "role")
ALTERNATIVE_PROBE_TIMEOUT_MS = 2000
MAX_TEXT_SELECTOR_LENGTH = 50


def alternative_selectors(description: dict[str, Any] | None) -> list[str]:
    """Build candidate selectors from an element description.

    Candidates are ordered: id, full class list, first class, tag with
    text, stable attributes, then parent > tag:nth-child.
    """
    if not description:
        return []

    candidates: list[str] = []
    tag = description.get("tag", "")

    if description.get("id"):
        candidates.append(f"#{description['id']}")

    classes = [c for c in str(description.get("class_name", "")).split() if c.strip()]
    if classes:
        candidates.append("." + ".".join(classes))
        candidates.append(f".{classes[0]}")

    text = str(description.get("text", "")).strip()
    if text and tag and len(text) < MAX_TEXT_SELECTOR_LENGTH:
        candidates.append(f'{tag}:has-text("{text}")')

    for name, value in (description.get("attributes") or {}).items():
        if name in SELECTOR_ATTRIBUTES:
            candidates.append(f'[{name}="{value}"]')

    if description.get("parent_tag") and tag and description.get("index"):
        candidates.append(f"{description['parent_tag']} > {tag}:nth-child({description['index']})")

    return list(dict.fromkeys(candidates))


class StrategyExecutor:
    """Runs one built-in strategy against the automation surface.

    Stateless between calls. Errors raised by the surface are captured in
    the returned result, never propagated.
    """

    def __init__(
        self,
        default_timeout_ms: int = 10000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the executor.

        Args:
            default_timeout_ms: Wait timeout when the context has none.
            sleep: Coroutine used for backoff delays (seconds).
        """
        self.default_timeout_ms = default_timeout_ms
        self._sleep = sleep

    async def run(self, strategy: RecoveryStrategy, context: RecoveryContext) -> RecoveryResult:
        """Execute a strategy.

        Args:
            strategy: The strategy to run.
            context: Recovery context with the surface and target descriptors.

        Returns:
            RecoveryResult naming the strategy, with timing.
        """
        start = time.monotonic()
        try:
            result = await self._dispatch(strategy, context)
        except Exception as e:
            logger.debug(f"Strategy {strategy.value} raised: {e}")
            result = RecoveryResult(
                success=False,
                strategy_used=strategy,
                retry_count=context.retry_count,
                error=str(e) or type(e).__name__,
            )
        result.duration_ms = (time.monotonic() - start) * 1000
        return result

    async def _dispatch(self, strategy: RecoveryStrategy, context: RecoveryContext) -> RecoveryResult:
        surface = context.surface
        selector = context.selector
        timeout_ms = context.timeout_ms or self.default_timeout_ms

        def ok(**kwargs: Any) -> RecoveryResult:
            return RecoveryResult(
                success=True, strategy_used=strategy, retry_count=context.retry_count, **kwargs
            )

        if strategy == S.RETRY_WITH_BACKOFF:
            await self._sleep(backoff_delay_ms(context.retry_count) / 1000)
            return ok()

        if strategy == S.ALTERNATIVE_SELECTOR:
            found = await self.find_alternative_selector(context)
            return RecoveryResult(
                success=found is not None,
                strategy_used=strategy,
                retry_count=context.retry_count,
                alternative_approach=found,
                error=None if found else "No alternative selector matched",
            )

        if strategy == S.WAIT_FOR_ELEMENT:
            if selector:
                await surface.wait_for_selector(selector, timeout_ms=timeout_ms, state="visible")
            else:
                await surface.wait_for_timeout(2000)
            return ok()

        if strategy == S.SCROLL_INTO_VIEW:
            if selector:
                await surface.scroll_into_view(selector)
                await surface.wait_for_timeout(500)
            return ok()

        if strategy == S.FORCE_CLICK:
            if selector:
                await surface.click(selector, force=True)
            return ok()

        if strategy == S.PAGE_REFRESH:
            await surface.reload()
            await surface.wait_for_load_state("domcontentloaded", timeout_ms=timeout_ms)
            await surface.wait_for_timeout(1000)
            return ok()

        if strategy == S.WAIT_FOR_NETWORK:
            await surface.wait_for_load_state("networkidle", timeout_ms=timeout_ms)
            return ok()

        if strategy == S.CLEAR_AND_RETRY:
            if selector:
                await surface.clear(selector)
                await surface.wait_for_timeout(500)
                if context.value:
                    await surface.fill(selector, context.value)
            return ok()

        if strategy == S.USE_JAVASCRIPT_CLICK:
            if selector:
                await surface.evaluate(JS_CLICK_SCRIPT, selector)
            return ok()

        if strategy == S.WAIT_FOR_STABLE:
            await surface.wait_for_ready_state(timeout_ms=timeout_ms)
            await surface.wait_for_timeout(1000)
            return ok()

        if strategy == S.BYPASS_VALIDATION:
            if selector and context.value is not None:
                await surface.evaluate(SET_VALUE_SCRIPT, [selector, context.value])
            return ok()

        if strategy == S.SKIP_STEP:
            return ok(metadata={"skipped": True})

        raise ValueError(f"Unknown recovery strategy: {strategy}")

    async def find_alternative_selector(self, context: RecoveryContext) -> str | None:
        """Probe candidate selectors for the context's target element.

        Returns:
            The first candidate that resolves within the probe timeout.
        """
        if not context.selector:
            return None

        try:
            description = await context.surface.evaluate(DESCRIBE_ELEMENT_SCRIPT, context.selector)
        except Exception as e:
            logger.debug(f"Could not describe {context.selector!r}: {e}")
            return None

        for candidate in alternative_selectors(description):
            if candidate == context.selector:
                continue
            try:
                await context.surface.wait_for_selector(
                    candidate, timeout_ms=ALTERNATIVE_PROBE_TIMEOUT_MS
                )
            except Exception:
                continue
            return candidate

        return None
