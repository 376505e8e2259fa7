"""Tests for exceptions and CLI error display."""

from __future__ import annotations

import io

import pytest
from rich.console import Console

from webrecover.errors import (
    ConfigError,
    ErrorInfo,
    ErrorKind,
    GeneratorError,
    GeneratorTimeout,
    LibraryBusyError,
    RateLimitExceeded,
    SandboxViolation,
    SolutionParseError,
    StoreError,
    WebRecoverError,
    classify_exception,
    format_error,
    handle_exception,
    is_debug_mode,
    set_debug_mode,
)


def render(error: ErrorInfo) -> str:
    string_io = io.StringIO()
    format_error(error, Console(file=string_io, force_terminal=False, width=200))
    return string_io.getvalue()


# =============================================================================
# Exceptions
# =============================================================================


class TestHierarchy:
    """Tests for the exception hierarchy."""

    @pytest.mark.parametrize("exc_type", [RateLimitExceeded, GeneratorTimeout, SolutionParseError])
    def test_generator_errors(self, exc_type):
        assert issubclass(exc_type, GeneratorError)
        assert issubclass(exc_type, WebRecoverError)

    @pytest.mark.parametrize("exc_type", [ConfigError, SandboxViolation, StoreError, LibraryBusyError])
    def test_top_level_errors(self, exc_type):
        assert issubclass(exc_type, WebRecoverError)
        assert not issubclass(exc_type, GeneratorError)

    def test_sandbox_violation_carries_violations(self):
        error = SandboxViolation("blocked", ["eval", "require"])
        assert str(error) == "blocked"
        assert error.violations == ["eval", "require"]
        assert SandboxViolation("blocked").violations == []


# =============================================================================
# Display
# =============================================================================


class TestDebugMode:
    def teardown_method(self) -> None:
        set_debug_mode(False)

    def test_toggle(self):
        set_debug_mode(True)
        assert is_debug_mode() is True
        set_debug_mode(False)
        assert is_debug_mode() is False


class TestFormatError:
    """Tests for format_error."""

    def teardown_method(self) -> None:
        set_debug_mode(False)

    def test_message_and_suggestion(self):
        output = render(
            ErrorInfo(message="Store locked", kind=ErrorKind.STORE, suggestion="Close other writers")
        )
        assert "Error: Store locked" in output
        assert "Suggestion: Close other writers" in output

    def test_long_details_hidden_outside_debug(self):
        output = render(ErrorInfo(message="Bad", kind=ErrorKind.CONFIG, details="x" * 300))
        assert "x" * 300 not in output

    def test_debug_hint_without_debug_mode(self):
        set_debug_mode(False)
        output = render(ErrorInfo(message="Bad", kind=ErrorKind.INTERNAL, original_error=ValueError("v")))
        assert "--debug" in output

    def test_stack_trace_in_debug_mode(self):
        set_debug_mode(True)
        try:
            raise ValueError("broken")
        except ValueError as e:
            output = render(ErrorInfo(message="Bad", kind=ErrorKind.INTERNAL, original_error=e))
        assert "Stack trace" in output
        assert "ValueError: broken" in output


class TestClassifyException:
    """Tests for mapping exceptions to ErrorInfo."""

    @pytest.mark.parametrize(
        ("exception", "kind"),
        [
            (ConfigError("bad toml"), ErrorKind.CONFIG),
            (RateLimitExceeded("slow down"), ErrorKind.GENERATOR),
            (SolutionParseError("not json"), ErrorKind.GENERATOR),
            (SandboxViolation("eval", ["eval"]), ErrorKind.GENERATOR),
            (StoreError("locked"), ErrorKind.STORE),
            (FileNotFoundError(2, "missing", "a.json"), ErrorKind.FILE),
            (PermissionError("denied"), ErrorKind.FILE),
            (RuntimeError("boom"), ErrorKind.INTERNAL),
        ],
    )
    def test_kinds(self, exception, kind):
        info = classify_exception(exception, "importing")
        assert info.kind == kind
        assert info.original_error is exception

    def test_rate_limit_message(self):
        info = classify_exception(RateLimitExceeded("x"), "recovery")
        assert info.message == "Generator rate limit reached during recovery"

    def test_file_not_found_uses_filename(self):
        info = classify_exception(FileNotFoundError(2, "missing", "a.json"))
        assert info.message == "File not found: a.json"


class TestHandleException:
    def test_exits_with_code(self):
        console = Console(file=io.StringIO())
        with pytest.raises(SystemExit) as exc_info:
            handle_exception(console, StoreError("locked"), exit_code=3)
        assert exc_info.value.code == 3

    def test_returns_info_without_exit(self):
        string_io = io.StringIO()
        info = handle_exception(Console(file=string_io), ConfigError("bad"), exit_on_error=False)

        assert info.kind == ErrorKind.CONFIG
        assert "Configuration error: bad" in string_io.getvalue()
