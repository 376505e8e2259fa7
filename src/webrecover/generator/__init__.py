"""Generated solutions: response contract, script compiler and sandbox.

``SolutionGeneratorClient`` is in ``webrecover.generator.client``.
"""

from .backends import AnthropicBackend, GeneratorResponse, SolutionBackend
from .models import (
    CommandOp,
    GeneratedSolution,
    RiskLevel,
    SolutionCommand,
    SolutionMetadata,
    parse_solution_response,
)
from .sandbox import ExecutionResult, Sandbox, ValidationResult
from .script import compile_script, render_script

__all__ = [
    # Models
    "CommandOp",
    "GeneratedSolution",
    "RiskLevel",
    "SolutionCommand",
    "SolutionMetadata",
    "parse_solution_response",
    # Scripts
    "compile_script",
    "render_script",
    # Sandbox
    "ExecutionResult",
    "Sandbox",
    "ValidationResult",
    # Backends
    "AnthropicBackend",
    "GeneratorResponse",
    "SolutionBackend",
]
