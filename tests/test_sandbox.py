"""Tests for the script compiler, response parser and sandbox."""

from __future__ import annotations

import asyncio
import json

import pytest

from webrecover.config import DEFAULT_ALLOWED_OPERATIONS
from webrecover.errors import SandboxViolation, SolutionParseError
from webrecover.generator.models import CommandOp, RiskLevel, SolutionCommand, parse_solution_response
from webrecover.generator.sandbox import Sandbox, extract_operations
from webrecover.generator.script import compile_script, parse_literal, render_script, split_statements

from conftest import FakeSurface


def make_sandbox(**kwargs) -> Sandbox:
    return Sandbox(DEFAULT_ALLOWED_OPERATIONS, **kwargs)


# =============================================================================
# Script compiler
# =============================================================================


class TestCompileScript:
    """Tests for compiling page scripts into commands."""

    def test_wait_then_click(self):
        commands = compile_script(
            "await page.waitForSelector('#submit', { timeout: 5000 });\n"
            "await page.locator('#submit').click();"
        )
        assert commands == [
            SolutionCommand(op=CommandOp.WAIT_FOR_SELECTOR, selector="#submit", timeout_ms=5000),
            SolutionCommand(op=CommandOp.CLICK, selector="#submit"),
        ]

    def test_fill_and_press(self):
        commands = compile_script('await page.fill("#email", "a@b.co"); await page.press("#email", "Enter")')
        assert commands[0].value == "a@b.co"
        assert commands[1].key == "Enter"

    def test_get_by_role_selector(self):
        [command] = compile_script("await page.getByRole('button', { name: 'Pay' }).click({ force: true })")
        assert command.selector == 'role=button[name="Pay"]'
        assert command.force is True

    def test_comments_are_ignored(self):
        commands = compile_script("// wait for the overlay\nawait page.waitForTimeout(500) // short")
        assert commands == [SolutionCommand(op=CommandOp.WAIT_FOR_TIMEOUT, timeout_ms=500)]

    def test_comment_markers_inside_strings_survive(self):
        [command] = compile_script("await page.goto('https://example.com/cart')")
        assert command.url == "https://example.com/cart"

    @pytest.mark.parametrize(
        "code",
        [
            "",
            "const x = 1",
            "await page.click(selector)",
            "await page.evaluate('1 + 1')",
            "await page.locator('#a').locator('#b').click()",
            "await page.click(`#${id}`)",
            "await page.click('#a'",
        ],
    )
    def test_rejected_scripts(self, code):
        with pytest.raises(SolutionParseError):
            compile_script(code)

    def test_render_is_canonical(self):
        code = "await page.waitForSelector('#a', {timeout: 100, state: 'attached'})"
        rendered = render_script(compile_script(code))
        assert rendered == 'await page.waitForSelector("#a", { timeout: 100, state: "attached" });'
        assert compile_script(rendered) == compile_script(code)

    def test_split_statements(self):
        assert split_statements("a(';');\nb()") == ["a(';')", "b()"]

    def test_parse_literal(self):
        assert parse_literal("{ a: 1, 'b c': 'x\\'y', d: true, e: null }") == {
            "a": 1,
            "b c": "x'y",
            "d": True,
            "e": None,
        }


# =============================================================================
# Response parsing
# =============================================================================


class TestParseSolutionResponse:
    """Tests for parsing generator responses."""

    def test_parses_embedded_json(self):
        response = "Here you go:\n" + json.dumps(
            {
                "strategy": "wait_then_click",
                "code": "await page.locator('#pay').click()",
                "explanation": "Button renders late",
                "confidence": 0.85,
                "riskLevel": "low",
                "timeEstimate": 3000,
            }
        )
        solution = parse_solution_response(response, generator_id="gen-1")

        assert solution.strategy == "wait_then_click"
        assert solution.code == 'await page.click("#pay");'
        assert solution.risk_level == RiskLevel.LOW
        assert solution.time_estimate_ms == 3000
        assert solution.estimated_success_rate == 0.5
        assert solution.metadata.generator_id == "gen-1"
        assert solution.id.startswith("solution-")

    def test_commands_array(self):
        response = json.dumps(
            {
                "strategy": "reload",
                "commands": [{"op": "reload"}, {"op": "wait_for_load_state", "state": "networkidle"}],
                "explanation": "Stale page",
                "confidence": 0.7,
            }
        )
        solution = parse_solution_response(response)
        assert [c.op for c in solution.commands] == [CommandOp.RELOAD, CommandOp.WAIT_FOR_LOAD_STATE]

    def test_uncompilable_code_is_kept_raw(self):
        response = json.dumps(
            {"strategy": "x", "code": "eval('boom')", "explanation": "x", "confidence": 0.9}
        )
        solution = parse_solution_response(response)
        assert solution.code == "eval('boom')"
        assert solution.commands == []

    def test_confidence_is_clamped(self):
        response = json.dumps({"strategy": "x", "code": "await page.reload()", "explanation": "x", "confidence": 1.4})
        assert parse_solution_response(response).confidence == 1.0

    @pytest.mark.parametrize(
        "response,message",
        [
            ("not json", "Invalid solution response format"),
            (json.dumps({"code": "x", "explanation": "x", "confidence": 0.5}), "Missing required field: strategy"),
            (json.dumps({"strategy": "x", "explanation": "x", "confidence": 0.5}), "Missing required field: code"),
        ],
    )
    def test_invalid_responses(self, response, message):
        with pytest.raises(SolutionParseError, match=message):
            parse_solution_response(response)


# =============================================================================
# Sandbox
# =============================================================================


class TestValidation:
    """Tests for static validation."""

    def test_valid_script(self):
        result = make_sandbox().validate("await page.locator('#a').click()")
        assert result.valid
        assert len(result.commands) == 1

    def test_reports_every_violation(self):
        result = make_sandbox().validate("eval('x'); fetch('/steal'); localStorage.clear()")
        assert not result.valid
        assert "Dangerous operation detected: eval\\s*\\(" in result.violations
        assert "Dangerous operation detected: fetch\\s*\\(" in result.violations
        assert "Dangerous operation detected: localStorage" in result.violations
        assert any(v.startswith("Uncompilable script") for v in result.violations)

    def test_operation_outside_allow_list(self):
        sandbox = Sandbox(["click"])
        result = sandbox.validate("await page.reload()")
        assert result.violations == ["Unauthorized operation: reload"]

    def test_check_raises_with_every_violation(self):
        sandbox = Sandbox(["click"])
        with pytest.raises(SandboxViolation) as exc_info:
            sandbox.check("await page.reload(); fetch('/x')")
        assert "Unauthorized operation: reload" in exc_info.value.violations
        assert "Dangerous operation detected: fetch\\s*\\(" in exc_info.value.violations

    def test_check_returns_commands(self):
        [command] = make_sandbox().check("await page.click('#a')")
        assert command.op == CommandOp.CLICK

    def test_extract_operations(self):
        assert extract_operations("await page.getByText('Go').click()") == ["get_by_text", "click"]


class TestExecution:
    """Tests for interpreting validated scripts."""

    def test_execute_dispatches_commands(self, surface):
        result = asyncio.run(
            make_sandbox().execute("await page.fill('#q', 'shoes'); await page.press('#q', 'Enter')", surface)
        )
        assert result.success
        assert surface.calls == [("fill", ("#q", "shoes")), ("press", ("#q", "Enter"))]
        assert result.side_effects == ['await page.fill("#q", "shoes");', 'await page.press("#q", "Enter");']

    def test_rejected_script_never_touches_surface(self, surface):
        result = asyncio.run(make_sandbox().execute("window.open('x')", surface))
        assert result.success is False
        assert result.error == "Code validation failed"
        assert result.security_violations
        assert surface.calls == []

    def test_surface_error_fails_execution(self):
        surface = FakeSurface(failing={"click": "Element is detached"})
        result = asyncio.run(make_sandbox().execute("await page.click('#a')", surface))
        assert result.success is False
        assert result.error == "Element is detached"

    def test_read_result_is_returned(self, surface):
        result = asyncio.run(make_sandbox().execute("await page.textContent('#total')", surface))
        assert result.success
        assert result.result == ""

    def test_timeout(self, surface):
        async def slow(ms):
            await asyncio.sleep(1)

        surface.wait_for_timeout = slow
        result = asyncio.run(make_sandbox(timeout_ms=10).execute("await page.waitForTimeout(5000)", surface))
        assert result.success is False
        assert result.error == "Execution timeout"

    def test_unsandboxed_skips_validation_but_warns(self, surface):
        result = asyncio.run(Sandbox(["click"]).execute_unsandboxed("await page.reload()", surface))
        assert result.success
        assert result.warnings == ["Executed without sandboxing"]
        assert surface.called("reload") == 1
