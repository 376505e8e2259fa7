"""Top-level recovery orchestrator.

One recovery runs Classify -> Decide -> {built-in | generated} and, when the
chosen path fails, the opposite path as a fallback. Every attempt is kept
on a RecoverySession that stays inspectable for a while after it finishes.

Progress is reported through a polling accessor and optional asyncio.Queue
subscribers. Events for one session are produced in step order.

The orchestrator owns background maintenance for its generator and library.
It starts with the first recovery (or an explicit start()) and stops in
cleanup().
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..config import RecoveryConfig
from ..errors import GeneratorError, LibraryBusyError, StoreError
from ..generator.client import SolutionGeneratorClient
from ..generator.sandbox import Sandbox
from ..observability import AuditLog
from ..solutions.library import LearningFeedback, SolutionLibrary, SolutionRequest, Urgency
from .builtin import BuiltInRecovery
from .classifier import ErrorClassifier
from .decision import DecisionEngine, DecisionOverrides, SystemSignals
from .maintenance import MaintenanceScheduler
from .models import (
    ErrorCategory,
    Failure,
    RecoveryContext,
    RecoveryResult,
    RecoveryStrategy,
    SolutionSource,
)

logger = logging.getLogger(__name__)

NO_FALLBACK = "no_fallback_available"
GENERATED_FAILED = "generated_recovery_failed"
RECOVERY_FAILED = "error_recovery_failed"


def generate_session_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"recovery-{int(time.time() * 1000)}-{suffix}"


# =============================================================================
# Data types
# =============================================================================


@dataclass
class EnhancedRecoveryResult(RecoveryResult):
    """RecoveryResult with the source used and timing breakdown."""

    generated_used: bool = False
    built_in_strategies_attempted: list[str] = field(default_factory=list)
    confidence_score: float | None = None
    solution_source: SolutionSource = SolutionSource.BUILT_IN
    performance_metrics: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def wrap(cls, result: RecoveryResult, **extra: Any) -> EnhancedRecoveryResult:
        return cls(
            success=result.success,
            strategy_used=result.strategy_used,
            retry_count=result.retry_count,
            duration_ms=result.duration_ms,
            error=result.error,
            alternative_approach=result.alternative_approach,
            metadata=dict(result.metadata),
            **extra,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update(
            {
                "generated_used": self.generated_used,
                "built_in_strategies_attempted": self.built_in_strategies_attempted,
                "confidence_score": self.confidence_score,
                "solution_source": self.solution_source.value,
                "performance_metrics": self.performance_metrics,
            }
        )
        return data


@dataclass
class RecoveryAttempt:
    """One strategy or solution tried during a session."""

    strategy: str
    source: SolutionSource
    result: RecoveryResult
    duration_ms: float
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "strategy": self.strategy,
            "source": self.source.value,
            "result": self.result.to_dict(),
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ProgressEvent:
    """A step of a recovery session, in the order it happened."""

    session_id: str
    step: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "session_id": self.session_id,
            "step": self.step,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RecoverySession:
    """Everything that happened while recovering one failure."""

    session_id: str
    failure: Failure
    context: RecoveryContext
    started_at: datetime = field(default_factory=datetime.now)
    category: ErrorCategory = ErrorCategory.UNKNOWN
    attempts: list[RecoveryAttempt] = field(default_factory=list)
    progress: list[ProgressEvent] = field(default_factory=list)
    final_result: EnhancedRecoveryResult | None = None
    ended_at: datetime | None = None
    completed_monotonic: float | None = None

    @property
    def is_complete(self) -> bool:
        return self.final_result is not None

    def record(self, strategy: str, source: SolutionSource, result: RecoveryResult) -> None:
        self.attempts.append(
            RecoveryAttempt(strategy=strategy, source=source, result=result, duration_ms=result.duration_ms)
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "session_id": self.session_id,
            "failure": self.failure.to_dict(),
            "step_name": self.context.step_name,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "category": self.category.value,
            "attempts": [a.to_dict() for a in self.attempts],
            "final_result": self.final_result.to_dict() if self.final_result else None,
        }


@dataclass
class PerformanceStats:
    total_recoveries: int = 0
    generated_successes: int = 0
    built_in_successes: int = 0
    average_decision_time_ms: float = 0.0
    average_execution_time_ms: float = 0.0

    def update(self, result: EnhancedRecoveryResult, decision_ms: float, execution_ms: float) -> None:
        self.total_recoveries += 1
        if result.success:
            if result.generated_used:
                self.generated_successes += 1
            else:
                self.built_in_successes += 1
        n = self.total_recoveries
        self.average_decision_time_ms = (self.average_decision_time_ms * (n - 1) + decision_ms) / n
        self.average_execution_time_ms = (self.average_execution_time_ms * (n - 1) + execution_ms) / n


# =============================================================================
# Orchestrator
# =============================================================================


class RecoveryOrchestrator:
    """Recovers automation failures using built-in strategies and generated solutions.

    Example:
        orchestrator = RecoveryOrchestrator.from_config(load_config())
        result = await orchestrator.recover_from_error(exc, context)
        if not result.success:
            ...
    """

    def __init__(
        self,
        config: RecoveryConfig | None = None,
        generator: SolutionGeneratorClient | None = None,
        library: SolutionLibrary | None = None,
        built_in: BuiltInRecovery | None = None,
        classifier: ErrorClassifier | None = None,
        signals: SystemSignals | None = None,
        audit: AuditLog | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Full configuration.
            generator: Generator client for the generated path.
            library: Stored-solution library consulted before the generator.
            built_in: Built-in recovery. Defaults to one sharing the classifier.
            classifier: Error classifier shared by every component.
            signals: System load provider for the decision engine.
            audit: Audit log shared with the decision engine.
        """
        self.config = config or RecoveryConfig()
        self.built_in = built_in or BuiltInRecovery(classifier=classifier)
        self.classifier = classifier or self.built_in.classifier
        self.generator = generator
        self.library = library
        if audit is None:
            audit = generator.audit if generator else AuditLog(enabled=False)
        self.audit = audit
        self.sandbox = generator.sandbox if generator else Sandbox(
            self.config.sandbox.allowed_operations, timeout_ms=self.config.sandbox.timeout_ms
        )
        self.decision = DecisionEngine(
            config=self.config.decision,
            classifier=self.classifier,
            generator_available=self.generator_available,
            generator_timeout_ms=self.config.generator.timeout_ms,
            signals=signals,
            audit=self.audit,
            session_id=generator.session_id if generator else "",
        )
        if self.library is not None:
            self.library.generator_available = self.generator_available

        self.stats = PerformanceStats()
        self._sessions: dict[str, RecoverySession] = {}
        self._context_locks: dict[str, asyncio.Lock] = {}
        self._context_users: dict[str, int] = {}
        self._subscribers: list[asyncio.Queue[ProgressEvent]] = []
        self.maintenance = MaintenanceScheduler(self.config, generator=self.generator, library=self.library)

    @classmethod
    def from_config(cls, config: RecoveryConfig, signals: SystemSignals | None = None) -> RecoveryOrchestrator:
        """Build the orchestrator and every component it owns from configuration."""
        classifier = ErrorClassifier()
        generator = SolutionGeneratorClient(config, classifier=classifier)
        library = SolutionLibrary(config.library)
        return cls(config, generator=generator, library=library, classifier=classifier, signals=signals)

    @property
    def generator_available(self) -> bool:
        return (
            self.config.recovery.enable_generated_recovery
            and self.generator is not None
            and self.generator.available
        )

    async def start(self) -> None:
        """Start background maintenance on the running event loop."""
        if not self.maintenance.running:
            self.maintenance.start()

    # =========================================================================
    # Recovery
    # =========================================================================

    async def recover_from_error(
        self,
        error: Failure | BaseException | str,
        context: RecoveryContext,
        overrides: DecisionOverrides | None = None,
        urgency: Urgency = Urgency.MEDIUM,
    ) -> EnhancedRecoveryResult:
        """Recover from one failure.

        Attempts on the same context are serialized. Never raises; a failure
        of both paths is returned as a failed result listing every strategy
        attempted.
        """
        await self.start()
        self._expire_sessions()
        failure = Failure.coerce(error)
        session = RecoverySession(session_id=generate_session_id(), failure=failure, context=context)
        self._sessions[session.session_id] = session

        context_id = context.context_id
        lock = self._context_locks.setdefault(context_id, asyncio.Lock())
        self._context_users[context_id] = self._context_users.get(context_id, 0) + 1
        try:
            async with lock:
                return await self._recover(session, failure, context, overrides, urgency)
        finally:
            self._context_users[context_id] -= 1
            if not self._context_users[context_id]:
                del self._context_users[context_id]
                self._context_locks.pop(context_id, None)

    async def _recover(
        self,
        session: RecoverySession,
        failure: Failure,
        context: RecoveryContext,
        overrides: DecisionOverrides | None,
        urgency: Urgency,
    ) -> EnhancedRecoveryResult:
        start = time.monotonic()
        decision_ms = 0.0
        execution_ms = 0.0

        try:
            analysis = self.classifier.categorize(failure)
            failure.category = analysis.category
            session.category = analysis.category
            self._emit(
                session,
                "classify",
                f"Classified as {analysis.category.value}",
                {"confidence": analysis.confidence, "known_issue": analysis.is_known_issue},
            )

            decision_start = time.monotonic()
            decision = self.decision.decide(
                failure, context, overrides, elapsed_ms=(decision_start - start) * 1000
            )
            decision_ms = (time.monotonic() - decision_start) * 1000
            self._emit(session, "decide", decision.reasoning, decision.to_dict())

            if decision.use_generated and self.generator_available:
                result = await self._attempt_generated(session, failure, context, urgency)
            else:
                result = await self._attempt_built_in(session, failure, context)
            execution_ms = result.duration_ms

            if not result.success and self.config.recovery.fallback_to_built_in:
                fallback = await self._attempt_fallback(session, failure, context, urgency, result)
                execution_ms += fallback.duration_ms
                result = fallback if fallback.success else self._total_failure(session, result, fallback)

        except Exception as e:
            logger.error(f"Recovery session {session.session_id} failed: {e}")
            result = EnhancedRecoveryResult(
                success=False,
                strategy_used=RECOVERY_FAILED,
                retry_count=context.retry_count,
                duration_ms=(time.monotonic() - start) * 1000,
                error=f"Enhanced recovery failed: {e}",
            )

        result.performance_metrics = {
            "decision_time_ms": decision_ms,
            "execution_time_ms": execution_ms,
            "total_time_ms": (time.monotonic() - start) * 1000,
            "cache_hit": bool(result.metadata.get("cache_hit", False)),
        }

        session.final_result = result
        session.ended_at = datetime.now()
        session.completed_monotonic = time.monotonic()

        if self.config.recovery.track_performance_metrics:
            self.stats.update(result, decision_ms, execution_ms)

        self._emit(
            session,
            "finalize",
            "Recovered" if result.success else f"Recovery failed: {result.error}",
            {"success": result.success, "strategy": result.strategy_name},
        )
        if result.success and self.config.recovery.log_successful_strategies:
            self._log_success(session, result)
        return result

    async def _attempt_built_in(
        self,
        session: RecoverySession,
        failure: Failure,
        context: RecoveryContext,
    ) -> EnhancedRecoveryResult:
        self._emit(session, "built_in", "Trying built-in strategies")
        tried: list[str] = []
        exclude: set[RecoveryStrategy] = set()

        if self.classifier.is_known_issue(failure):
            try:
                known = await self.built_in.apply_known_fix(failure, context)
            except LookupError:
                known = None
            if known is not None:
                tried.append(known.strategy_name)
                session.record(known.strategy_name, SolutionSource.BUILT_IN, known)
                if isinstance(known.strategy_used, RecoveryStrategy):
                    exclude.add(known.strategy_used)
                if known.success:
                    return EnhancedRecoveryResult.wrap(known, built_in_strategies_attempted=tried)

        result = await self.built_in.try_built_in_strategies(failure, context, exclude=exclude)
        session.record(result.strategy_name, SolutionSource.BUILT_IN, result)
        tried.extend(result.metadata.get("attempted_strategies", []))
        result.duration_ms = sum(a.duration_ms for a in session.attempts if a.source == SolutionSource.BUILT_IN)
        return EnhancedRecoveryResult.wrap(result, built_in_strategies_attempted=tried)

    async def _attempt_generated(
        self,
        session: RecoverySession,
        failure: Failure,
        context: RecoveryContext,
        urgency: Urgency,
    ) -> EnhancedRecoveryResult:
        generator = self.generator
        if generator is None:
            raise GeneratorError("No solution generator configured")
        start = time.monotonic()
        request = SolutionRequest.from_failure(failure, context, session.category, urgency)

        stored = await self._attempt_stored(session, request, context)
        if stored is not None and stored.success:
            return stored

        self._emit(session, "generated", "Requesting a generated solution")
        try:
            solution = await generator.invoke(failure, context)
        except GeneratorError as e:
            logger.warning(f"Generated recovery unavailable: {e}")
            failed = RecoveryResult(
                success=False,
                strategy_used=GENERATED_FAILED,
                retry_count=context.retry_count,
                duration_ms=(time.monotonic() - start) * 1000,
                error=str(e),
            )
            session.record(GENERATED_FAILED, SolutionSource.GENERATED, failed)
            return EnhancedRecoveryResult.wrap(
                failed, generated_used=True, solution_source=SolutionSource.GENERATED
            )

        result = await generator.execute(solution, context)
        source = SolutionSource.CACHED_GENERATED if solution.metadata.cache_hit else SolutionSource.GENERATED
        session.record(solution.strategy, source, result)
        result.duration_ms = (time.monotonic() - start) * 1000

        if self.library is not None and result.success:
            try:
                await asyncio.to_thread(self.library.store_from_generator, solution, request, result)
            except StoreError as e:
                logger.warning(f"Could not store generated solution {solution.id}: {e}")

        return EnhancedRecoveryResult.wrap(
            result,
            generated_used=True,
            solution_source=source,
            confidence_score=solution.confidence,
        )

    async def _attempt_stored(
        self,
        session: RecoverySession,
        request: SolutionRequest,
        context: RecoveryContext,
    ) -> EnhancedRecoveryResult | None:
        """Run the best stored solution for the request, if the library has one."""
        if self.library is None:
            return None
        try:
            response = await asyncio.to_thread(self.library.find_solutions, request)
        except (LibraryBusyError, StoreError) as e:
            logger.debug(f"Solution library search skipped: {e}")
            return None

        best = response.best
        threshold = self.config.decision.confidence_threshold
        if best is None or best.solution.confidence < threshold:
            return None

        stored = best.solution
        self._emit(
            session,
            "library",
            f"Trying stored solution {stored.id}",
            {"search_strategy": response.search_strategy, "relevance": best.relevance_score},
        )
        execution = await self.sandbox.execute(stored.solution_code, context.surface)
        result = RecoveryResult(
            success=execution.success,
            strategy_used=stored.strategy,
            retry_count=context.retry_count,
            duration_ms=execution.execution_time_ms,
            error=execution.error,
            alternative_approach=stored.explanation,
            metadata={
                "solution_id": stored.id,
                "confidence": stored.confidence,
                "risk_level": stored.risk_level.value,
                "security_violations": execution.security_violations,
                "search_strategy": response.search_strategy,
                "library_hit": True,
            },
        )
        session.record(stored.strategy, SolutionSource.CACHED_GENERATED, result)

        try:
            await asyncio.to_thread(
                self.library.learn,
                LearningFeedback(
                    solution_id=stored.id,
                    success=execution.success,
                    execution_time_ms=execution.execution_time_ms,
                    error=execution.error,
                ),
            )
        except StoreError as e:
            logger.warning(f"Could not record feedback for {stored.id}: {e}")

        return EnhancedRecoveryResult.wrap(
            result,
            generated_used=True,
            solution_source=SolutionSource.CACHED_GENERATED,
            confidence_score=stored.confidence,
        )

    async def _attempt_fallback(
        self,
        session: RecoverySession,
        failure: Failure,
        context: RecoveryContext,
        urgency: Urgency,
        primary: EnhancedRecoveryResult,
    ) -> EnhancedRecoveryResult:
        if primary.solution_source != SolutionSource.BUILT_IN:
            self._emit(session, "fallback", "Falling back to built-in strategies")
            fallback = await self._attempt_built_in(session, failure, context)
        elif self.generator_available:
            self._emit(session, "fallback", "Falling back to a generated solution")
            fallback = await self._attempt_generated(session, failure, context, urgency)
        else:
            fallback = EnhancedRecoveryResult(
                success=False,
                strategy_used=NO_FALLBACK,
                retry_count=context.retry_count,
                error="No fallback strategy available",
            )

        fallback.metadata.update(
            {"fallback_used": True, "primary_source": primary.solution_source.value}
        )
        return fallback

    def _total_failure(
        self,
        session: RecoverySession,
        primary: EnhancedRecoveryResult,
        fallback: EnhancedRecoveryResult,
    ) -> EnhancedRecoveryResult:
        """Failed result for a session where both paths came up empty."""
        errors = [
            f"{source}: {result.error}"
            for source, result in (
                (primary.solution_source.value, primary),
                ("fallback", fallback),
            )
            if result.error
        ]
        result = EnhancedRecoveryResult.wrap(
            primary,
            generated_used=primary.generated_used or fallback.generated_used,
            built_in_strategies_attempted=(
                primary.built_in_strategies_attempted + fallback.built_in_strategies_attempted
            ),
            confidence_score=primary.confidence_score or fallback.confidence_score,
            solution_source=primary.solution_source,
        )
        result.error = "All recovery paths failed: " + "; ".join(errors)
        result.duration_ms = primary.duration_ms + fallback.duration_ms
        result.metadata.update(
            {
                "attempted_strategies": [a.strategy for a in session.attempts],
                "fallback_used": fallback.strategy_used != NO_FALLBACK,
                "primary_source": primary.solution_source.value,
            }
        )
        if fallback.strategy_used == NO_FALLBACK:
            result.metadata["fallback_reason"] = NO_FALLBACK
        return result

    # =========================================================================
    # Progress
    # =========================================================================

    def subscribe(self, maxsize: int = 0) -> asyncio.Queue[ProgressEvent]:
        """Queue receiving every progress event from now on."""
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ProgressEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def progress(self, session_id: str) -> list[ProgressEvent]:
        """Progress events of a session, in step order."""
        session = self._sessions.get(session_id)
        return list(session.progress) if session else []

    def _emit(
        self,
        session: RecoverySession,
        step: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        event = ProgressEvent(session_id=session.session_id, step=step, message=message, data=data or {})
        session.progress.append(event)
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(f"Progress subscriber full; dropped {step} event")

    # =========================================================================
    # Sessions
    # =========================================================================

    def _expire_sessions(self, now: float | None = None) -> int:
        now = time.monotonic() if now is None else now
        retention = self.config.recovery.session_retention_seconds
        expired = [
            sid
            for sid, s in self._sessions.items()
            if s.completed_monotonic is not None and now - s.completed_monotonic >= retention
        ]
        for sid in expired:
            del self._sessions[sid]
        return len(expired)

    def get_active_sessions(self) -> list[dict[str, Any]]:
        """Summaries of sessions still held in memory."""
        self._expire_sessions()
        return [
            {
                "session_id": s.session_id,
                "started_at": s.started_at.isoformat(),
                "error_category": s.category.value,
                "attempts_count": len(s.attempts),
                "is_complete": s.is_complete,
            }
            for s in self._sessions.values()
        ]

    def get_session_details(self, session_id: str) -> RecoverySession | None:
        self._expire_sessions()
        return self._sessions.get(session_id)

    def clear_completed_sessions(self) -> int:
        """Drop finished sessions.

        Returns:
            Number of sessions dropped.
        """
        completed = [sid for sid, s in self._sessions.items() if s.is_complete]
        for sid in completed:
            del self._sessions[sid]
        return len(completed)

    # =========================================================================
    # Statistics and lifecycle
    # =========================================================================

    def get_performance_stats(self) -> dict[str, Any]:
        stats = self.stats
        total = stats.total_recoveries
        successes = stats.generated_successes + stats.built_in_successes
        return {
            "total_recoveries": total,
            "success_rate": successes / total if total else 0.0,
            "generated_success_rate": stats.generated_successes / total if total else 0.0,
            "built_in_success_rate": stats.built_in_successes / total if total else 0.0,
            "average_decision_time_ms": stats.average_decision_time_ms,
            "average_execution_time_ms": stats.average_execution_time_ms,
            "active_sessions_count": len(self._sessions),
        }

    def export_status(self) -> dict[str, Any]:
        """Options, performance, sessions and component status for monitoring."""
        return {
            "options": self.config.recovery.to_dict(),
            "performance": self.get_performance_stats(),
            "active_sessions": self.get_active_sessions(),
            "generator_status": self.generator.export_status() if self.generator else None,
            "library_health": self.library.get_library_health() if self.library else None,
            "built_in": self.built_in.get_recovery_statistics(),
            "maintenance": self.maintenance.status(),
        }

    async def cleanup(self) -> None:
        """Stop maintenance, release components and reset sessions and statistics."""
        await self.maintenance.stop()
        self._sessions.clear()
        self._subscribers.clear()
        if self.generator is not None:
            await self.generator.cleanup()
        if self.library is not None:
            self.library.close()
        self.stats = PerformanceStats()

    def _log_success(self, session: RecoverySession, result: EnhancedRecoveryResult) -> None:
        entry = {
            "session_id": session.session_id,
            "strategy": result.strategy_name,
            "source": result.solution_source.value,
            "generated_used": result.generated_used,
            "confidence": result.confidence_score,
            "duration_ms": round(result.duration_ms, 1),
            "error_category": session.category.value,
            "built_in_strategies_attempted": result.built_in_strategies_attempted,
            "total_attempts": len(session.attempts),
            "cache_hit": result.performance_metrics.get("cache_hit", False),
        }
        logger.info(f"Recovery succeeded: {json.dumps(entry)}")
