"""Tests for the built-in vs generated decision engine."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from webrecover.config import DecisionConfig
from webrecover.observability import AuditEventType, AuditLog
from webrecover.recovery.decision import (
    DecisionEngine,
    DecisionOverrides,
    StaticSignals,
    calculate_complexity,
    is_critical_path,
)
from webrecover.recovery.models import ErrorCategory, Failure, RecoveryContext


def make_engine(**kwargs) -> DecisionEngine:
    kwargs.setdefault("generator_available", True)
    kwargs.setdefault("signals", StaticSignals(0.0))
    return DecisionEngine(DecisionConfig(), **kwargs)


class TestShortCircuits:
    """Tests for decisions taken before scoring."""

    def test_attempt_ceiling_forces_generator(self, surface):
        context = RecoveryContext(surface=surface, step_name="click", selector="#a", retry_count=3)
        decision = make_engine().decide("element not found", context)

        assert decision.use_generated is True
        assert decision.confidence == 0.8
        assert "Exceeded built-in attempt limit (3)" in decision.reasoning

    def test_force_override(self, context):
        decision = make_engine().decide("element not found", context, DecisionOverrides(force_generated=True))
        assert decision.use_generated is True
        assert decision.confidence == 1.0

    def test_force_ignored_without_generator(self, context):
        decision = make_engine(generator_available=False).decide(
            "element not found", context, DecisionOverrides(force_generated=True)
        )
        assert decision.use_generated is False

    def test_disable_override_wins(self, surface):
        context = RecoveryContext(surface=surface, step_name="pay", retry_count=5)
        decision = make_engine().decide(
            "element not found", context, DecisionOverrides(force_generated=True, disable_generated=True)
        )
        assert decision.use_generated is False
        assert decision.reasoning == "Generated recovery not available or disabled"

    def test_unavailable_generator(self, context):
        decision = make_engine(generator_available=False).decide("something odd", context)
        assert decision.use_generated is False
        assert decision.confidence == 1.0


class TestScoring:
    """Tests for the weighted factor score."""

    def test_known_simple_failure_stays_built_in(self, surface):
        context = RecoveryContext(surface=surface, step_name="open menu", selector="#menu")
        decision = make_engine().decide("Timeout 30000ms exceeded waiting for selector", context)

        assert decision.use_generated is False
        assert decision.reasoning.startswith("Decision score:")
        assert "complexity:" in decision.reasoning

    def test_unknown_critical_failure_uses_generator(self, surface):
        context = RecoveryContext(surface=surface, step_name="submit payment", retry_count=2)
        decision = make_engine().decide("something odd happened", context)

        assert decision.use_generated is True

    def test_decision_is_deterministic(self, context):
        engine = make_engine()
        first = engine.decide("element not found", context)
        second = engine.decide("element not found", context)
        assert first == second

    def test_factor_weights_sum_to_one(self, context):
        factors = make_engine().factors(Failure("element not found"), context)
        assert [f.name for f in factors] == ["complexity", "failures", "known_issue", "resources", "time", "critical"]
        assert sum(f.weight for f in factors) == pytest.approx(1.0)

    def test_short_budget_lowers_time_score(self, surface):
        context = RecoveryContext(surface=surface, step_name="x", selector="#x", timeout_ms=60000)
        factors = {f.name: f.score for f in make_engine().factors(Failure("element not found"), context)}
        assert factors["time"] == 0.3

    def test_system_load_reduces_resource_score(self, context):
        factors = {f.name: f.score for f in make_engine(signals=StaticSignals(0.75)).factors(Failure("x"), context)}
        assert factors["resources"] == pytest.approx(0.25)

    def test_internal_error_fails_closed(self, context):
        signals = MagicMock()
        signals.system_load.side_effect = RuntimeError("sensor offline")
        audit = AuditLog()
        decision = make_engine(signals=signals, audit=audit).decide("element not found", context)

        assert decision.use_generated is False
        assert decision.confidence == 0.1
        assert decision.reasoning == "Decision engine error: sensor offline"
        assert audit.events()[0].event_type == AuditEventType.ERROR

    def test_decision_is_audited(self, context):
        audit = AuditLog()
        make_engine(audit=audit, session_id="s-1").decide("element not found", context)

        events = audit.events()
        assert len(events) == 1
        assert events[0].event_type == AuditEventType.DECISION
        assert events[0].session_id == "s-1"
        assert "factors" in events[0].data


class TestComplexity:
    """Tests for complexity scoring."""

    def test_base_complexity(self, context):
        assert calculate_complexity(ErrorCategory.TIMEOUT, Failure("slow"), context) == 3

    def test_complexity_adjustments(self, surface):
        context = RecoveryContext(surface=surface, step_name="x", retry_count=3)
        failure = Failure("timeout while waiting", stack="x" * 600)
        # 9 + 2 retries + 1 no selector + 1 stack + 1 timeout, capped
        assert calculate_complexity(ErrorCategory.UNKNOWN, failure, context) == 10

    @pytest.mark.parametrize("step,expected", [("Login form", True), ("Confirm order", True), ("scroll list", False)])
    def test_critical_path(self, step, expected):
        assert is_critical_path(step) is expected
