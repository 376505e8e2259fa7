"""Tests for the generator client, its cache and rate limiter."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from webrecover.config import RecoveryConfig
from webrecover.errors import GeneratorError, GeneratorTimeout
from webrecover.generator.backends import SolutionBackend
from webrecover.generator.client import (
    RateLimiter,
    SolutionCache,
    SolutionGeneratorClient,
    build_prompt,
    cache_key,
)
from webrecover.generator.models import GeneratedSolution
from webrecover.observability import AuditEventType, AuditLog
from webrecover.recovery.models import ErrorCategory, Failure, PageSnapshot, RecoveryContext

from conftest import FakeBackend, FakeSurface


class ManualClock:
    def __init__(self):
        self.now = 0.0
        self.slept: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds


def make_client(backend: SolutionBackend | None = None, **overrides) -> SolutionGeneratorClient:
    config = RecoveryConfig()
    for name, value in overrides.items():
        section, attr = name.split("__")
        setattr(getattr(config, section), attr, value)
    return SolutionGeneratorClient(config, backend=backend or FakeBackend(), audit=AuditLog())


def make_solution(confidence: float, code: str = "await page.click('#pay')") -> GeneratedSolution:
    return GeneratedSolution(
        id="solution-1",
        strategy="click_pay",
        code=code,
        explanation="Click again",
        confidence=confidence,
    )


# =============================================================================
# Rate limiter
# =============================================================================


class TestRateLimiter:
    """Tests for sliding-window admission."""

    def test_admits_up_to_limit_without_waiting(self):
        clock = ManualClock()
        limiter = RateLimiter(2, clock=clock, sleep=clock.sleep)

        async def run():
            return [await limiter.acquire() for _ in range(2)]

        assert asyncio.run(run()) == [0.0, 0.0]
        assert clock.slept == []
        assert limiter.in_window == 2

    def test_waits_for_oldest_admission_to_expire(self):
        clock = ManualClock()
        limiter = RateLimiter(2, clock=clock, sleep=clock.sleep)

        async def run():
            await limiter.acquire()
            clock.now = 10.0
            await limiter.acquire()
            clock.now = 20.0
            return await limiter.acquire()

        assert asyncio.run(run()) == pytest.approx(40.0)
        assert clock.now == pytest.approx(60.0)
        assert limiter.in_window == 2

    def test_in_window_is_read_only(self):
        clock = ManualClock()
        limiter = RateLimiter(2, clock=clock, sleep=clock.sleep)
        asyncio.run(limiter.acquire())
        clock.now = 61.0

        assert limiter.in_window == 0
        assert len(limiter._times) == 1

    def test_window_slides(self):
        clock = ManualClock()
        limiter = RateLimiter(1, clock=clock, sleep=clock.sleep)

        async def run():
            await limiter.acquire()
            clock.now = 61.0
            return await limiter.acquire()

        assert asyncio.run(run()) == 0.0


# =============================================================================
# Cache
# =============================================================================


class TestSolutionCache:
    """Tests for the LRU solution cache."""

    def test_key_normalizes_volatile_details(self):
        first = cache_key("Timeout 3000ms exceeded for #a", ErrorCategory.TIMEOUT, "#a", "https://x.test/a")
        second = cache_key("Timeout 5000ms exceeded for #a", ErrorCategory.TIMEOUT, "#a", "https://x.test/a")
        other_page = cache_key("Timeout 5000ms exceeded for #a", ErrorCategory.TIMEOUT, "#a", "https://x.test/b")
        assert first == second
        assert first != other_page
        assert len(first) == 16

    def test_lru_eviction(self):
        cache = SolutionCache(max_size=2)
        cache.put("a", make_solution(0.9))
        cache.put("b", make_solution(0.9))
        cache.get("a")
        evicted = cache.put("c", make_solution(0.9))

        assert evicted.key == "b"
        assert "a" in cache and "c" in cache
        assert len(cache) == 2

    def test_expired_entries_miss(self):
        cache = SolutionCache(expiration_hours=1)
        cache.put("a", make_solution(0.9))
        later = datetime.now() + timedelta(hours=2)

        assert cache.get("a", now=later) is None
        assert cache.misses == 1
        assert len(cache) == 0

    def test_sweep_expired(self):
        cache = SolutionCache(expiration_hours=1)
        cache.put("a", make_solution(0.9))
        assert cache.sweep_expired(now=datetime.now() + timedelta(hours=2)) == 1

    def test_outcomes_update_statistics(self):
        cache = SolutionCache()
        cache.put("a", make_solution(0.9))
        cache.get("a")
        cache.get("missing")
        cache.record_outcome("solution-1", True)
        cache.record_outcome("solution-1", False)

        stats = cache.statistics()
        assert stats["size"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["success_rate"] == 0.5
        assert stats["top_solutions"] == [{"strategy": "click_pay", "success_rate": 0.5, "uses": 2}]


# =============================================================================
# Prompt
# =============================================================================


class TestBuildPrompt:
    def test_prompt_includes_failure_and_page(self, context):
        prompt = build_prompt(
            Failure("element not found"),
            ErrorCategory.ELEMENT_NOT_FOUND,
            context,
            PageSnapshot(url="https://shop.example.com/checkout", title="Checkout"),
            ["click", "fill"],
        )
        assert "- Message: element not found" in prompt
        assert "- Selector: #pay" in prompt
        assert "- URL: https://shop.example.com/checkout" in prompt
        assert "Use only these operations: click, fill" in prompt


# =============================================================================
# Invocation
# =============================================================================


class TestInvoke:
    """Tests for obtaining solutions."""

    def test_unavailable_generator_raises(self, context):
        client = SolutionGeneratorClient(RecoveryConfig(), backend=None, audit=AuditLog())
        assert client.available is False
        with pytest.raises(GeneratorError, match="Solution generator not available"):
            asyncio.run(client.invoke("element not found", context))
        assert client.audit.events()[0].event_type == AuditEventType.ERROR

    def test_generation_without_backend_raises_typed_error(self):
        client = make_client()
        client.backend = None
        with pytest.raises(GeneratorError, match="No generator backend configured"):
            asyncio.run(client._generate("prompt"))

    def test_generated_solution_is_parsed(self, context):
        backend = FakeBackend()
        client = make_client(backend)
        solution = asyncio.run(client.invoke("element not found", context))

        assert solution.strategy == "wait_then_click"
        assert solution.metadata.generator_id == "fake-model"
        assert solution.metadata.token_usage == 120
        assert solution.metadata.cache_hit is False
        assert backend.calls == 1

    def test_second_identical_failure_hits_cache(self, context):
        backend = FakeBackend()
        client = make_client(backend)

        async def run():
            first = await client.invoke("Timeout 3000ms exceeded", context)
            second = await client.invoke("Timeout 3000ms exceeded", context)
            return first, second

        first, second = asyncio.run(run())
        assert backend.calls == 1
        assert second.metadata.cache_hit is True
        assert first.metadata.cache_hit is False
        assert second.id == first.id

        types = [e.event_type for e in client.audit.events()]
        assert types.count(AuditEventType.CACHE) == 1
        assert types.count(AuditEventType.INVOCATION) == 2

    def test_low_confidence_solutions_are_not_cached(self, context):
        backend = FakeBackend({**FakeBackend().payload, "confidence": 0.4})
        client = make_client(backend)

        async def run():
            await client.invoke("element not found", context)
            await client.invoke("element not found", context)

        asyncio.run(run())
        assert backend.calls == 2
        assert len(client.cache) == 0

    def test_cache_disabled(self, context):
        backend = FakeBackend()
        client = make_client(backend, cache__enabled=False)

        async def run():
            await client.invoke("element not found", context)
            await client.invoke("element not found", context)

        asyncio.run(run())
        assert backend.calls == 2

    def test_timeout(self, context):
        client = make_client(FakeBackend(delay=1.0), generator__timeout_ms=10)
        with pytest.raises(GeneratorTimeout, match="Generator timeout after 10ms"):
            asyncio.run(client.invoke("element not found", context))

    def test_backend_errors_are_wrapped(self, context):
        client = make_client(FakeBackend(error=ConnectionError("reset by peer")))
        with pytest.raises(GeneratorError, match="Generator invocation failed: reset by peer"):
            asyncio.run(client.invoke("element not found", context))

    def test_invalid_response_raises(self, context):
        client = make_client(FakeBackend({"explanation": "no strategy"}))
        with pytest.raises(GeneratorError, match="Missing required field: strategy"):
            asyncio.run(client.invoke("element not found", context))

    def test_snapshot_failure_is_tolerated(self):
        surface = FakeSurface(failing={"snapshot": "page closed"})
        context = RecoveryContext(surface=surface, step_name="pay", selector="#pay")
        solution = asyncio.run(make_client().invoke("element not found", context))
        assert solution.strategy == "wait_then_click"


# =============================================================================
# Execution
# =============================================================================


class TestExecute:
    """Tests for running solutions."""

    def test_low_confidence_is_rejected_before_execution(self, context, surface):
        client = make_client()
        result = asyncio.run(client.execute(make_solution(0.4), context))

        assert result.success is False
        assert "confidence below threshold" in result.error
        assert result.error == "Solution rejected: confidence below threshold (0.40 < 0.70)"
        assert result.metadata["execution_failed"] is True
        assert surface.calls == []

    def test_successful_execution(self, context, surface):
        client = make_client()
        result = asyncio.run(client.execute(make_solution(0.9), context))

        assert result.success
        assert result.strategy_used == "click_pay"
        assert result.metadata["solution_id"] == "solution-1"
        assert result.metadata["side_effects"] == ['await page.click("#pay");']
        assert surface.called("click") == 1

        execution = [e for e in client.audit.events() if e.event_type == AuditEventType.EXECUTION]
        assert execution[0].data["success"] is True

    def test_security_violations_are_reported(self, context, surface):
        client = make_client()
        result = asyncio.run(client.execute(make_solution(0.9, code="eval('x')"), context))

        assert result.success is False
        assert result.error == "Code validation failed"
        assert result.metadata["security_violations"]
        assert surface.calls == []

    def test_unsandboxed_execution_warns(self, context):
        client = make_client(sandbox__enabled=False)
        result = asyncio.run(client.execute(make_solution(0.9), context))
        assert result.success
        assert result.metadata["warnings"] == ["Executed without sandboxing"]

    def test_outcome_feeds_cache(self, context):
        client = make_client()

        async def run():
            solution = await client.invoke("element not found", context)
            await client.execute(solution, context)

        asyncio.run(run())
        assert client.get_cache_statistics()["success_rate"] == 1.0


# =============================================================================
# Status and cleanup
# =============================================================================


class TestStatus:
    def test_export_status_masks_api_key(self):
        client = make_client(generator__api_key="sk-secret")
        status = client.export_status()

        assert status["config"]["generator"]["api_key"] == "***"
        assert status["available"] is True
        assert status["session_id"].startswith("generator-")

    def test_cleanup_closes_backend(self):
        backend = FakeBackend()
        client = make_client(backend)
        asyncio.run(client.cleanup())

        assert backend.closed
        assert len(client.audit) == 0
