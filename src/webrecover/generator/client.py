"""Rate-limited, cached client for the external solution generator.

Invocation path:
1. Wait for the shared admission window (max requests per 60s)
2. Look up the solution cache by normalized failure shape
3. On a miss, prompt the backend and parse the JSON contract
4. Cache solutions at or above the confidence threshold

Execution path rejects low-confidence solutions, runs the rest through the
Sandbox, and feeds the outcome back into the cache counters. Every step is
written to the audit log.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import random
import string
import threading
import time
from collections import OrderedDict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from ..config import RecoveryConfig
from ..errors import GeneratorError, GeneratorTimeout
from ..observability import AuditEventType, AuditLog
from ..recovery.classifier import ErrorClassifier
from ..recovery.models import (
    ErrorCategory,
    Failure,
    PageSnapshot,
    RecoveryContext,
    RecoveryResult,
)
from ..solutions.models import normalize_error_message
from .backends import AnthropicBackend, SolutionBackend
from .models import GeneratedSolution, parse_solution_response
from .sandbox import ExecutionResult, Sandbox

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60.0

SYSTEM_PROMPT = (
    "You are an expert browser automation error recovery specialist. "
    "You answer with a single JSON object and nothing else."
)


def _random_suffix(length: int = 9) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


# =============================================================================
# Rate limiting
# =============================================================================


class RateLimiter:
    """Sliding-window admission control shared by all invocations.

    Callers that find the window full wait, in arrival order, until the
    oldest admission leaves the window.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = RATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._times: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _purge(self, now: float) -> None:
        while self._times and now - self._times[0] >= self.window_seconds:
            self._times.popleft()

    async def acquire(self) -> float:
        """Wait for admission.

        Returns:
            Seconds spent waiting.
        """
        waited = 0.0
        async with self._lock:
            now = self._clock()
            self._purge(now)
            if self.max_requests > 0 and len(self._times) >= self.max_requests:
                wait = self.window_seconds - (now - self._times[0])
                if wait > 0:
                    logger.debug(f"Generator rate limit reached; waiting {wait:.1f}s")
                    await self._sleep(wait)
                    waited = wait
                now = self._clock()
                self._purge(now)
            self._times.append(now)
        return waited

    @property
    def in_window(self) -> int:
        now = self._clock()
        return sum(1 for t in self._times if now - t < self.window_seconds)


# =============================================================================
# Solution cache
# =============================================================================


def cache_key(
    message: str,
    category: ErrorCategory | str,
    selector: str | None,
    url: str | None,
) -> str:
    """Cache key for a failure shape on a page."""
    key_data = {
        "error_message": normalize_error_message(message),
        "category": category.value if isinstance(category, ErrorCategory) else category,
        "selector": selector,
        "page_url": url,
    }
    encoded = json.dumps(key_data, sort_keys=True).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:16]


@dataclass
class CacheEntry:
    """A cached solution and how it has fared since."""

    key: str
    solution: GeneratedSolution
    success_count: int = 0
    failure_count: int = 0
    last_used: datetime = field(default_factory=datetime.now)
    created: datetime = field(default_factory=datetime.now)
    average_success_rate: float = 0.0

    @property
    def uses(self) -> int:
        return self.success_count + self.failure_count

    def is_expired(self, expiration_hours: float, now: datetime | None = None) -> bool:
        return (now or datetime.now()) - self.created > timedelta(hours=expiration_hours)


class SolutionCache:
    """LRU cache of generated solutions with a time-to-live.

    Safe to share between the foreground client and background sweeps.
    """

    def __init__(self, max_size: int = 1000, expiration_hours: float = 24.0):
        self.max_size = max_size
        self.expiration_hours = expiration_hours
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str, now: datetime | None = None) -> CacheEntry | None:
        """Return a live entry and mark it most recently used."""
        now = now or datetime.now()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.is_expired(self.expiration_hours, now):
                del self._entries[key]
                self.misses += 1
                return None
            entry.last_used = now
            self._entries.move_to_end(key)
            self.hits += 1
            return entry

    def put(self, key: str, solution: GeneratedSolution) -> CacheEntry | None:
        """Cache a solution.

        Returns:
            The evicted least-recently-used entry, if the cache was full.
        """
        evicted = None
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size > 0:
                _, evicted = self._entries.popitem(last=False)
            self._entries[key] = CacheEntry(
                key=key,
                solution=solution,
                average_success_rate=solution.estimated_success_rate,
            )
            self._entries.move_to_end(key)
        return evicted

    def record_outcome(self, solution_id: str, success: bool) -> bool:
        """Count an execution outcome against the entry holding a solution."""
        with self._lock:
            for entry in self._entries.values():
                if entry.solution.id != solution_id:
                    continue
                if success:
                    entry.success_count += 1
                else:
                    entry.failure_count += 1
                entry.average_success_rate = entry.success_count / entry.uses
                return True
        return False

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed.
        """
        now = now or datetime.now()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(self.expiration_hours, now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def statistics(self, now: datetime | None = None) -> dict[str, Any]:
        """Size, lookup hit rate, outcome success rate, age and top solutions."""
        now = now or datetime.now()
        with self._lock:
            entries = list(self._entries.values())

        uses = sum(e.uses for e in entries)
        successes = sum(e.success_count for e in entries)
        ages = [(now - e.created).total_seconds() for e in entries]
        lookups = self.hits + self.misses
        top = sorted((e for e in entries if e.uses), key=lambda e: e.average_success_rate, reverse=True)

        return {
            "size": len(entries),
            "hit_rate": self.hits / lookups if lookups else 0.0,
            "success_rate": successes / uses if uses else 0.0,
            "average_age_hours": (sum(ages) / len(ages)) / 3600 if ages else 0.0,
            "top_solutions": [
                {
                    "strategy": e.solution.strategy,
                    "success_rate": e.average_success_rate,
                    "uses": e.uses,
                }
                for e in top[:5]
            ],
        }


# =============================================================================
# Prompt
# =============================================================================


def build_prompt(
    failure: Failure,
    category: ErrorCategory,
    context: RecoveryContext,
    snapshot: PageSnapshot,
    allowed_operations: list[str],
) -> str:
    """Build the recovery prompt sent to the generator."""
    return f"""Analyze this browser automation error and provide a specific, executable solution.

ERROR DETAILS:
- Message: {failure.message}
- Category: {category.value}
- Step: {context.step_name}
- Retry Count: {context.retry_count}
- Selector: {context.selector or 'N/A'}
- Value: {context.value or 'N/A'}

BROWSER STATE:
- URL: {snapshot.url or 'Unknown'}
- Title: {snapshot.title or 'Unknown'}
- Ready State: {snapshot.ready_state or 'Unknown'}
- Content (truncated): {snapshot.content[:2000] or 'Unavailable'}

CONTEXT:
- Variables: {json.dumps(context.variables, indent=2)}

REQUIREMENTS:
1. Write the fix as `await page.<operation>(...)` statements, one per line
2. Use only literal string/number/boolean arguments
3. Use only these operations: {', '.join(allowed_operations)}
4. Include a confidence level (0-1) and an estimated success rate
5. Assess risk level: low, medium, or high
6. List any required permissions and explain the approach

Response should be valid JSON with this structure:
{{
  "strategy": "brief_strategy_name",
  "code": "await page.waitForSelector('#submit'); await page.click('#submit');",
  "explanation": "Detailed explanation of the solution",
  "confidence": 0.85,
  "estimatedSuccessRate": 0.9,
  "riskLevel": "low",
  "requiredPermissions": ["page_interaction"],
  "timeEstimate": 5000,
  "reasoning": "Why this solution should work"
}}

Provide ONLY the JSON response, no additional text."""


# =============================================================================
# Client
# =============================================================================


class SolutionGeneratorClient:
    """Invokes the external generator and executes its solutions.

    Example:
        client = SolutionGeneratorClient(config)
        solution = await client.invoke(exc, context)
        result = await client.execute(solution, context)
    """

    def __init__(
        self,
        config: RecoveryConfig | None = None,
        backend: SolutionBackend | None = None,
        classifier: ErrorClassifier | None = None,
        audit: AuditLog | None = None,
        sandbox: Sandbox | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        """Initialize the client.

        Args:
            config: Full configuration; generator, cache, sandbox, decision
                and audit sections are used.
            backend: Generator backend. Defaults to the Anthropic backend
                when an API key is configured.
            classifier: Classifier used to categorize failures for the prompt.
            audit: Audit log. Defaults to one built from the audit section.
            sandbox: Sandbox for executing solutions.
            rate_limiter: Shared admission window.
        """
        self.config = config or RecoveryConfig()
        gen = self.config.generator

        if backend is None and gen.api_key:
            backend = AnthropicBackend(gen)
        self.backend = backend
        self.classifier = classifier or ErrorClassifier()
        if audit is None:
            audit = AuditLog(
                path=self.config.audit.log_path,
                enabled=self.config.audit.enabled,
                retention_days=self.config.audit.retention_days,
                max_memory_events=self.config.audit.max_memory_events,
            )
        self.audit = audit
        self.sandbox = sandbox or Sandbox(
            self.config.sandbox.allowed_operations,
            timeout_ms=self.config.sandbox.timeout_ms,
        )
        self.rate_limiter = rate_limiter or RateLimiter(gen.max_requests_per_minute)
        self.cache = SolutionCache(self.config.cache.max_size, self.config.cache.expiration_hours)

        self.started_at = time.time()
        self.session_id = f"generator-{int(self.started_at * 1000)}-{_random_suffix()}"

    @property
    def available(self) -> bool:
        """Whether the generator is enabled and has a backend."""
        return self.config.generator.enabled and self.backend is not None

    async def invoke(
        self,
        failure: Failure | BaseException | str,
        context: RecoveryContext,
    ) -> GeneratedSolution:
        """Get a solution for a failure, from cache or from the generator.

        Raises:
            GeneratorError: If no generator is available, the call times out,
                or the response does not match the solution contract.
        """
        start = time.monotonic()
        failure = Failure.coerce(failure)
        analysis = self.classifier.categorize(failure)
        snapshot = await self._snapshot(context)
        key = cache_key(failure.message, analysis.category, context.selector, snapshot.url)
        error_context = {
            "message": failure.message,
            "category": analysis.category.value,
            "step_name": context.step_name,
            "selector": context.selector,
            "page_url": snapshot.url,
        }

        try:
            if not self.available:
                raise GeneratorError("Solution generator not available")

            await self.rate_limiter.acquire()

            if self.config.cache.enabled:
                entry = self.cache.get(key)
                if entry is not None:
                    solution = entry.solution.model_copy(deep=True)
                    solution.metadata.cache_hit = True
                    self._audit(
                        AuditEventType.INVOCATION,
                        start,
                        {"error_context": error_context, "cache_hit": True, "solution": solution.summary()},
                    )
                    return solution

            prompt = build_prompt(
                failure, analysis.category, context, snapshot, self.config.sandbox.allowed_operations
            )
            solution = await self._generate(prompt)

            threshold = self.config.decision.confidence_threshold
            if self.config.cache.enabled and solution.confidence >= threshold:
                evicted = self.cache.put(key, solution)
                self._audit(
                    AuditEventType.CACHE,
                    start,
                    {
                        "action": "cache_solution",
                        "key": key,
                        "solution_id": solution.id,
                        "evicted": evicted.key if evicted else None,
                    },
                )

            self._audit(
                AuditEventType.INVOCATION,
                start,
                {"error_context": error_context, "cache_hit": False, "solution": solution.summary()},
            )
            return solution

        except GeneratorError as e:
            self._audit(
                AuditEventType.ERROR,
                start,
                {"error_context": error_context, "invocation_error": str(e)},
            )
            raise

    async def _generate(self, prompt: str) -> GeneratedSolution:
        backend = self.backend
        if backend is None:
            raise GeneratorError("No generator backend configured")
        timeout_ms = self.config.generator.timeout_ms
        try:
            response = await asyncio.wait_for(
                backend.generate(prompt, system=SYSTEM_PROMPT),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError as e:
            raise GeneratorTimeout(f"Generator timeout after {timeout_ms}ms") from e
        except GeneratorError:
            raise
        except Exception as e:
            raise GeneratorError(f"Generator invocation failed: {e}") from e

        solution = parse_solution_response(response.text, generator_id=response.model or backend.name)
        solution.metadata.token_usage = response.token_usage
        return solution

    async def _snapshot(self, context: RecoveryContext) -> PageSnapshot:
        try:
            return await context.surface.snapshot()
        except Exception as e:
            logger.debug(f"Page snapshot unavailable: {e}")
            return PageSnapshot()

    async def execute(self, solution: GeneratedSolution, context: RecoveryContext) -> RecoveryResult:
        """Run a solution against the context's surface.

        Solutions below the confidence threshold are rejected without
        touching the surface. Never raises for solution-level failures.
        """
        start = time.monotonic()
        threshold = self.config.decision.confidence_threshold

        if solution.confidence < threshold:
            error = (
                f"Solution rejected: confidence below threshold "
                f"({solution.confidence:.2f} < {threshold:.2f})"
            )
            self._audit(
                AuditEventType.ERROR,
                start,
                {"solution": solution.summary(), "execution_error": error},
            )
            return RecoveryResult(
                success=False,
                strategy_used=solution.strategy,
                retry_count=context.retry_count,
                duration_ms=(time.monotonic() - start) * 1000,
                error=error,
                metadata={
                    "solution_id": solution.id,
                    "confidence": solution.confidence,
                    "risk_level": solution.risk_level.value,
                    "execution_failed": True,
                },
            )

        execution: ExecutionResult
        if self.config.sandbox.enabled:
            execution = await self.sandbox.execute(solution.code, context.surface)
        else:
            logger.warning(f"Sandbox disabled; running solution {solution.id} without validation")
            execution = await self.sandbox.execute_unsandboxed(solution.code, context.surface)

        result = RecoveryResult(
            success=execution.success,
            strategy_used=solution.strategy,
            retry_count=context.retry_count,
            duration_ms=(time.monotonic() - start) * 1000,
            error=execution.error,
            alternative_approach=solution.explanation,
            metadata={
                "solution_id": solution.id,
                "confidence": solution.confidence,
                "risk_level": solution.risk_level.value,
                "security_violations": execution.security_violations,
                "warnings": execution.warnings,
                "side_effects": execution.side_effects,
                "cache_hit": solution.metadata.cache_hit,
            },
        )

        if self.config.cache.enabled:
            self.cache.record_outcome(solution.id, execution.success)

        self._audit(
            AuditEventType.EXECUTION,
            start,
            {
                "solution": solution.summary(),
                "execution": execution.to_dict(),
                "success": execution.success,
            },
        )
        return result

    # =========================================================================
    # Maintenance and status
    # =========================================================================

    def sweep_cache(self) -> int:
        """Drop expired cache entries."""
        removed = self.cache.sweep_expired()
        if removed:
            logger.debug(f"Swept {removed} expired cached solutions")
        return removed

    def trim_audit(self) -> int:
        """Apply audit retention."""
        return self.audit.trim()

    def get_cache_statistics(self) -> dict[str, Any]:
        return self.cache.statistics()

    def get_audit_statistics(self) -> dict[str, Any]:
        return self.audit.statistics()

    def clear_cache(self) -> None:
        self.cache.clear()
        self._audit(AuditEventType.CACHE, time.monotonic(), {"action": "clear_cache"})

    def export_status(self) -> dict[str, Any]:
        """Configuration (API key masked), cache and audit statistics."""
        config = self.config.to_dict()
        config["generator"]["api_key"] = "***" if self.config.generator.api_key else ""
        return {
            "config": config,
            "available": self.available,
            "cache": self.get_cache_statistics(),
            "audit": self.get_audit_statistics(),
            "session_id": self.session_id,
            "uptime_seconds": time.time() - self.started_at,
        }

    async def cleanup(self) -> None:
        """Record a final audit event, release the backend and clear memory."""
        self._audit(
            AuditEventType.CACHE,
            time.monotonic(),
            {"action": "cleanup", "final_cache_size": len(self.cache), "final_audit_size": len(self.audit)},
        )
        if self.backend is not None:
            await self.backend.close()
        self.cache.clear()
        self.audit.clear()

    def _audit(self, event_type: AuditEventType, start: float, data: dict[str, Any]) -> None:
        self.audit.log(
            event_type,
            session_id=self.session_id,
            duration_ms=(time.monotonic() - start) * 1000,
            data=data,
        )
