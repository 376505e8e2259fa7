"""Sandboxed execution of generated solutions.

Generated code is never evaluated. A script is scanned against a deny-list
of dangerous constructs and an allow-list of surface operations, compiled
into SolutionCommands, and interpreted by dispatching each command to the
matching AutomationSurface method under a hard timeout.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from ..errors import SandboxViolation, SolutionParseError
from ..recovery.surface import AutomationSurface
from .models import CommandOp, SolutionCommand
from .script import compile_script, to_snake

logger = logging.getLogger(__name__)

# Constructs rejected anywhere in a script, including inside literals
DENY_PATTERNS: tuple[str, ...] = (
    r"eval\s*\(",
    r"new\s+Function\s*\(",
    r"document\.write",
    r"window\.open",
    r"location\.(href|replace|assign)",
    r"fetch\s*\(",
    r"XMLHttpRequest",
    r"localStorage",
    r"sessionStorage",
    r"process\.",
    r"require\s*\(",
    r"import\s+",
    r"fs\.",
    r"child_process",
    r"__import__",
    r"\bexec\s*\(",
    r"subprocess",
    r"os\.system",
)

PAGE_CALL_RE = re.compile(r"page\.(\w+)\(")
METHOD_CALL_RE = re.compile(r"\.(\w+)\(")

DEFAULT_WAIT_MS = 10000


@dataclass
class ValidationResult:
    valid: bool
    violations: list[str] = field(default_factory=list)
    commands: list[SolutionCommand] = field(default_factory=list)


@dataclass
class ExecutionResult:
    """Outcome of running a generated solution.

    A failed result assumes no side effects are safe to build on; callers
    must not retry without fresh page state.
    """

    success: bool
    result: Any = None
    error: str | None = None
    execution_time_ms: float = 0.0
    side_effects: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    security_violations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "error": self.error,
            "execution_time_ms": self.execution_time_ms,
            "side_effects": self.side_effects,
            "warnings": self.warnings,
            "security_violations": self.security_violations,
        }


def extract_operations(code: str) -> list[str]:
    """Method names invoked in a script, normalized to snake_case."""
    names = PAGE_CALL_RE.findall(code) + METHOD_CALL_RE.findall(code)
    return list(dict.fromkeys(to_snake(n) for n in names))


class Sandbox:
    """Validates and interprets generated scripts.

    Attributes:
        allowed_operations: Surface operations a script may invoke.
        timeout_ms: Hard limit for one execution.
    """

    def __init__(self, allowed_operations: list[str] | tuple[str, ...], timeout_ms: int = 30000):
        self.allowed_operations = set(allowed_operations)
        self.timeout_ms = timeout_ms
        self._deny = [(p, re.compile(p)) for p in DENY_PATTERNS]

    def validate(self, code: str) -> ValidationResult:
        """Check a script against the deny-list and the allow-list.

        Every violation is reported, not just the first.
        """
        violations: list[str] = []

        for source, pattern in self._deny:
            if pattern.search(code):
                violations.append(f"Dangerous operation detected: {source}")

        for op in extract_operations(code):
            if op not in self.allowed_operations:
                violations.append(f"Unauthorized operation: {op}")

        commands: list[SolutionCommand] = []
        try:
            commands = compile_script(code)
        except SolutionParseError as e:
            violations.append(f"Uncompilable script: {e}")

        for command in commands:
            violation = f"Unauthorized operation: {command.op.value}"
            if command.op.value not in self.allowed_operations and violation not in violations:
                violations.append(violation)

        return ValidationResult(valid=not violations, violations=violations, commands=commands)

    def check(self, code: str) -> list[SolutionCommand]:
        """Validate a script and return its compiled commands.

        Raises:
            SandboxViolation: If the script breaks any rule; every violation is listed.
        """
        validation = self.validate(code)
        if not validation.valid:
            raise SandboxViolation("; ".join(validation.violations), validation.violations)
        return validation.commands

    async def execute(
        self,
        code: str,
        surface: AutomationSurface,
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """Validate then interpret a script under the hard timeout."""
        try:
            commands = self.check(code)
        except SandboxViolation as e:
            logger.warning(f"Generated code rejected: {e}")
            return ExecutionResult(
                success=False,
                error="Code validation failed",
                security_violations=e.violations,
            )

        return await self._run(commands, surface, timeout_ms or self.timeout_ms)

    async def execute_unsandboxed(
        self,
        code: str,
        surface: AutomationSurface,
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """Interpret a script without deny/allow checks.

        The script must still compile; nothing is ever evaluated.
        """
        try:
            commands = compile_script(code)
        except SolutionParseError as e:
            return ExecutionResult(success=False, error=str(e))

        result = await self._run(commands, surface, timeout_ms or self.timeout_ms)
        result.warnings.append("Executed without sandboxing")
        return result

    async def _run(
        self,
        commands: list[SolutionCommand],
        surface: AutomationSurface,
        timeout_ms: int,
    ) -> ExecutionResult:
        start = time.monotonic()
        side_effects: list[str] = []
        try:
            value = await asyncio.wait_for(
                self.run_commands(commands, surface, side_effects),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            return ExecutionResult(
                success=False,
                error="Execution timeout",
                execution_time_ms=(time.monotonic() - start) * 1000,
                side_effects=side_effects,
            )
        except Exception as e:
            return ExecutionResult(
                success=False,
                error=str(e) or type(e).__name__,
                execution_time_ms=(time.monotonic() - start) * 1000,
                side_effects=side_effects,
            )

        return ExecutionResult(
            success=True,
            result=value,
            execution_time_ms=(time.monotonic() - start) * 1000,
            side_effects=side_effects,
        )

    async def run_commands(
        self,
        commands: list[SolutionCommand],
        surface: AutomationSurface,
        side_effects: list[str] | None = None,
    ) -> Any:
        """Dispatch commands in order.

        Returns:
            The value of the last read operation, if any.
        """
        result: Any = None
        for command in commands:
            value = await dispatch(command, surface)
            if value is not None:
                result = value
            if side_effects is not None:
                side_effects.append(command.render())
        return result


async def dispatch(command: SolutionCommand, surface: AutomationSurface) -> Any:
    """Run one command against the surface."""
    op = command.op
    sel = command.selector or ""

    if op == CommandOp.CLICK:
        await surface.click(sel, force=command.force, timeout_ms=command.timeout_ms)
    elif op == CommandOp.DBLCLICK:
        await surface.dblclick(sel)
    elif op == CommandOp.FILL:
        await surface.fill(sel, command.value or "")
    elif op == CommandOp.TYPE:
        await surface.type(sel, command.value or "")
    elif op == CommandOp.PRESS:
        await surface.press(sel, command.key or "")
    elif op == CommandOp.SELECT_OPTION:
        await surface.select_option(sel, command.value or "")
    elif op == CommandOp.CHECK:
        await surface.check(sel)
    elif op == CommandOp.UNCHECK:
        await surface.uncheck(sel)
    elif op == CommandOp.CLEAR:
        await surface.clear(sel)
    elif op == CommandOp.HOVER:
        await surface.hover(sel)
    elif op == CommandOp.FOCUS:
        await surface.focus(sel)
    elif op == CommandOp.BLUR:
        await surface.blur(sel)
    elif op == CommandOp.SCROLL_INTO_VIEW:
        await surface.scroll_into_view(sel)
    elif op == CommandOp.WAIT_FOR_SELECTOR:
        await surface.wait_for_selector(
            sel,
            timeout_ms=command.timeout_ms or DEFAULT_WAIT_MS,
            state=command.state or "visible",
        )
    elif op == CommandOp.WAIT_FOR_TIMEOUT:
        await surface.wait_for_timeout(command.timeout_ms or 0)
    elif op == CommandOp.WAIT_FOR_LOAD_STATE:
        await surface.wait_for_load_state(command.state or "load", timeout_ms=command.timeout_ms)
    elif op == CommandOp.GOTO:
        await surface.goto(command.url or "")
    elif op == CommandOp.RELOAD:
        await surface.reload()
    elif op == CommandOp.GO_BACK:
        await surface.go_back()
    elif op == CommandOp.GO_FORWARD:
        await surface.go_forward()
    elif op == CommandOp.SCREENSHOT:
        return await surface.screenshot(command.value)
    elif op in (CommandOp.LOCATOR, CommandOp.GET_BY_ROLE, CommandOp.GET_BY_LABEL, CommandOp.GET_BY_TEXT):
        await surface.wait_for_selector(
            sel, timeout_ms=command.timeout_ms or DEFAULT_WAIT_MS, state="attached"
        )
    elif op == CommandOp.GET_ATTRIBUTE:
        return await surface.get_attribute(sel, command.attribute or "")
    elif op == CommandOp.TEXT_CONTENT:
        return await surface.text_content(sel)
    elif op == CommandOp.INNER_HTML:
        return await surface.inner_html(sel)
    else:
        raise ValueError(f"Unknown command: {op}")
    return None
