"""Failure classification, built-in strategies and the recovery decision.

The orchestrator and background maintenance live in
``webrecover.recovery.orchestrator`` and ``webrecover.recovery.maintenance``;
they depend on the generator and solutions packages and are not re-exported
here.
"""

from .builtin import BuiltInRecovery, Recommendation
from .classifier import (
    KNOWN_PATTERNS,
    ErrorAnalysis,
    ErrorClassifier,
    ErrorPattern,
    fallback_category,
    should_attempt_recovery,
)
from .decision import (
    Decision,
    DecisionEngine,
    DecisionOverrides,
    StaticSignals,
    SystemSignals,
    calculate_complexity,
)
from .models import (
    ErrorCategory,
    Failure,
    PageSnapshot,
    RecoveryContext,
    RecoveryResult,
    RecoveryStrategy,
    SolutionSource,
)
from .strategies import (
    EffectivenessTracker,
    StrategyCatalog,
    StrategyEffectiveness,
    StrategyExecutor,
    backoff_delay_ms,
    estimate_recovery_time,
)
from .surface import AutomationSurface

__all__ = [
    # Models
    "ErrorCategory",
    "Failure",
    "PageSnapshot",
    "RecoveryContext",
    "RecoveryResult",
    "RecoveryStrategy",
    "SolutionSource",
    "AutomationSurface",
    # Classification
    "KNOWN_PATTERNS",
    "ErrorAnalysis",
    "ErrorClassifier",
    "ErrorPattern",
    "fallback_category",
    "should_attempt_recovery",
    # Strategies
    "EffectivenessTracker",
    "StrategyCatalog",
    "StrategyEffectiveness",
    "StrategyExecutor",
    "backoff_delay_ms",
    "estimate_recovery_time",
    "BuiltInRecovery",
    "Recommendation",
    # Decision
    "Decision",
    "DecisionEngine",
    "DecisionOverrides",
    "StaticSignals",
    "SystemSignals",
    "calculate_complexity",
]
