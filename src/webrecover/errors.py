"""Exceptions and error display helpers for webrecover.

The exception hierarchy covers the infrastructure failures the recovery
engine degrades around (generator, sandbox, store). The ErrorInfo helpers
give the CLI consistent output with:
- Human-friendly messages
- Suggested fixes
- Hidden stack traces (unless debug mode)
"""

from __future__ import annotations

import os
import sys
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rich.console import Console

# Debug mode enabled by WEBRECOVER_DEBUG=1 or --debug flag
_debug_mode = os.environ.get("WEBRECOVER_DEBUG", "0") == "1"


# =============================================================================
# Exceptions
# =============================================================================


class WebRecoverError(Exception):
    """Base class for all webrecover errors."""


class ConfigError(WebRecoverError):
    """Invalid or unreadable configuration."""


class GeneratorError(WebRecoverError):
    """The solution generator could not produce a usable solution."""


class RateLimitExceeded(GeneratorError):
    """The generator admission window did not open in time."""


class GeneratorTimeout(GeneratorError):
    """The generator did not answer within its timeout."""


class SolutionParseError(GeneratorError):
    """The generator response did not match the solution contract."""


class SandboxViolation(WebRecoverError):
    """Generated code failed sandbox validation."""

    def __init__(self, message: str, violations: list[str] | None = None):
        super().__init__(message)
        self.violations = violations or []


class StoreError(WebRecoverError):
    """The solution store failed an operation."""


class LibraryBusyError(WebRecoverError):
    """Too many concurrent solution searches."""


# =============================================================================
# CLI Error Display
# =============================================================================


class ErrorKind(str, Enum):
    """Kinds of CLI errors for consistent formatting."""

    CONFIG = "config"
    FILE = "file"
    GENERATOR = "generator"
    STORE = "store"
    INTERNAL = "internal"


@dataclass
class ErrorInfo:
    """Structured error information for consistent display."""

    message: str
    kind: ErrorKind
    suggestion: str | None = None
    details: str | None = None
    original_error: Exception | None = None


def set_debug_mode(enabled: bool) -> None:
    """Enable or disable debug mode for verbose error output."""
    global _debug_mode
    _debug_mode = enabled


def is_debug_mode() -> bool:
    """Check if debug mode is enabled."""
    return _debug_mode


def format_error(error: ErrorInfo, console: Console) -> None:
    """Format and display an error with consistent styling.

    Args:
        error: Structured error information
        console: Rich console for output
    """
    console.print(f"[bold red]Error:[/bold red] {error.message}")

    if error.details:
        if _debug_mode or len(error.details) < 200:
            console.print(f"[dim]{error.details}[/dim]")

    if error.suggestion:
        console.print()
        console.print(f"[yellow]Suggestion:[/yellow] {error.suggestion}")

    if _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Stack trace (debug mode):[/dim]")
        tb_lines = traceback.format_exception(
            type(error.original_error),
            error.original_error,
            error.original_error.__traceback__,
        )
        for line in tb_lines:
            console.print(f"[dim]{line.rstrip()}[/dim]")

    if not _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Set WEBRECOVER_DEBUG=1 or use --debug for more details[/dim]")


def classify_exception(exception: Exception, context: str = "operation") -> ErrorInfo:
    """Classify an exception into an ErrorInfo.

    Args:
        exception: The exception to classify
        context: Description of what was being done

    Returns:
        ErrorInfo with appropriate categorization
    """
    if isinstance(exception, ConfigError):
        return ErrorInfo(
            message=f"Configuration error: {exception}",
            kind=ErrorKind.CONFIG,
            suggestion="Run 'webrecover config validate' to check the configuration",
            original_error=exception,
        )

    if isinstance(exception, RateLimitExceeded):
        return ErrorInfo(
            message=f"Generator rate limit reached during {context}",
            kind=ErrorKind.GENERATOR,
            suggestion="Lower request volume or raise generator.max_requests_per_minute",
            original_error=exception,
        )

    if isinstance(exception, SandboxViolation):
        return ErrorInfo(
            message=f"Generated code rejected by the sandbox: {exception}",
            kind=ErrorKind.GENERATOR,
            suggestion="Review sandbox.allowed_operations or regenerate the solution",
            original_error=exception,
        )

    if isinstance(exception, GeneratorError):
        return ErrorInfo(
            message=f"Solution generator failed during {context}: {exception}",
            kind=ErrorKind.GENERATOR,
            suggestion="Check ANTHROPIC_API_KEY and network connectivity",
            original_error=exception,
        )

    if isinstance(exception, StoreError):
        return ErrorInfo(
            message=f"Solution store error: {exception}",
            kind=ErrorKind.STORE,
            suggestion="Check library.db_path and file permissions",
            original_error=exception,
        )

    if isinstance(exception, FileNotFoundError):
        return ErrorInfo(
            message=f"File not found: {exception.filename or exception}",
            kind=ErrorKind.FILE,
            suggestion="Check the path and ensure the file exists",
            original_error=exception,
        )

    if isinstance(exception, PermissionError):
        return ErrorInfo(
            message=f"Permission denied: {exception}",
            kind=ErrorKind.FILE,
            suggestion="Check file permissions or run with appropriate access",
            original_error=exception,
        )

    return ErrorInfo(
        message=f"Unexpected error during {context}: {exception}",
        kind=ErrorKind.INTERNAL,
        original_error=exception,
    )


def handle_exception(
    console: Console,
    exception: Exception,
    context: str = "operation",
    exit_code: int = 1,
    exit_on_error: bool = True,
) -> ErrorInfo:
    """Display a formatted error for an exception and optionally exit.

    Args:
        console: Rich console for output
        exception: The exception to handle
        context: Description of what was being done
        exit_code: Exit code to use if exit_on_error is True
        exit_on_error: Whether to exit after displaying the error

    Returns:
        ErrorInfo for the error (useful if not exiting)
    """
    error = classify_exception(exception, context)
    format_error(error, console)

    if exit_on_error:
        sys.exit(exit_code)

    return error
