"""Persistent solution store and the library that searches and learns over it."""

from .library import (
    LearningFeedback,
    RankedSolution,
    SolutionLibrary,
    SolutionRequest,
    SolutionResponse,
    TrustLevel,
    Urgency,
)
from .models import (
    ImportResult,
    SolutionSearchOptions,
    StoredSolution,
    UsageRecord,
    error_signature,
    normalize_error_message,
)
from .store import SolutionStore

__all__ = [
    # Store
    "SolutionStore",
    "StoredSolution",
    "SolutionSearchOptions",
    "UsageRecord",
    "ImportResult",
    "error_signature",
    "normalize_error_message",
    # Library
    "SolutionLibrary",
    "SolutionRequest",
    "SolutionResponse",
    "RankedSolution",
    "LearningFeedback",
    "TrustLevel",
    "Urgency",
]
