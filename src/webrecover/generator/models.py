"""Data models for generated recovery solutions."""

from __future__ import annotations

import json
import random
import re
import string
import time
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..errors import SolutionParseError


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 1, "medium": 2, "high": 3}[self.value]


class CommandOp(str, Enum):
    """Interaction primitives a generated solution may use."""

    CLICK = "click"
    DBLCLICK = "dblclick"
    FILL = "fill"
    TYPE = "type"
    PRESS = "press"
    SELECT_OPTION = "select_option"
    CHECK = "check"
    UNCHECK = "uncheck"
    CLEAR = "clear"
    HOVER = "hover"
    FOCUS = "focus"
    BLUR = "blur"
    SCROLL_INTO_VIEW = "scroll_into_view"
    WAIT_FOR_SELECTOR = "wait_for_selector"
    WAIT_FOR_TIMEOUT = "wait_for_timeout"
    WAIT_FOR_LOAD_STATE = "wait_for_load_state"
    GOTO = "goto"
    RELOAD = "reload"
    GO_BACK = "go_back"
    GO_FORWARD = "go_forward"
    SCREENSHOT = "screenshot"
    LOCATOR = "locator"
    GET_BY_ROLE = "get_by_role"
    GET_BY_LABEL = "get_by_label"
    GET_BY_TEXT = "get_by_text"
    GET_ATTRIBUTE = "get_attribute"
    TEXT_CONTENT = "text_content"
    INNER_HTML = "inner_html"


class SolutionCommand(BaseModel):
    """One typed step of a generated solution.

    Only the fields the op uses are set. `value` carries fill/type/select
    text, the screenshot path, or the load state for wait_for_load_state.
    """

    op: CommandOp
    selector: str | None = None
    value: str | None = None
    url: str | None = None
    timeout_ms: int | None = None
    key: str | None = None
    attribute: str | None = None
    state: str | None = None
    force: bool = False

    def render(self) -> str:
        """Render as one canonical `await page.<op>(...)` statement."""
        from .script import render_command

        return render_command(self)


class SolutionMetadata(BaseModel):
    generator_id: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)
    reasoning: str = ""
    token_usage: int | None = None
    cache_hit: bool = False


class GeneratedSolution(BaseModel):
    """A solution produced by the external generator.

    `code` always holds the canonical script. `commands` is the compiled
    form when the script could be compiled at parse time.
    """

    id: str
    strategy: str
    code: str
    explanation: str
    confidence: float = Field(ge=0.0, le=1.0)
    estimated_success_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    risk_level: RiskLevel = RiskLevel.MEDIUM
    required_permissions: list[str] = Field(default_factory=list)
    time_estimate_ms: int = 10000
    commands: list[SolutionCommand] = Field(default_factory=list)
    metadata: SolutionMetadata = Field(default_factory=SolutionMetadata)

    @field_validator("confidence", "estimated_success_rate", mode="before")
    @classmethod
    def _clamp_unit(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return max(0.0, min(1.0, float(value)))
        return value

    def summary(self) -> dict[str, Any]:
        """Compact form used in audit events."""
        return {
            "id": self.id,
            "strategy": self.strategy,
            "confidence": self.confidence,
            "risk_level": self.risk_level.value,
            "command_count": len(self.commands),
        }


def generate_solution_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"solution-{int(time.time() * 1000)}-{suffix}"


REQUIRED_FIELDS = ("strategy", "explanation", "confidence")

JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def parse_solution_response(response: str, generator_id: str = "") -> GeneratedSolution:
    """Parse a generator response into a GeneratedSolution.

    The response must contain one JSON object with strategy, explanation,
    confidence and either `code` or a `commands` array. Surrounding text is
    ignored. Missing optional fields default to an estimated success rate
    of 0.5, medium risk and a 10s time estimate.

    Raises:
        SolutionParseError: If the response is not valid JSON or a required
            field is missing.
    """
    from .script import compile_script, render_script

    cleaned = response.strip()
    match = JSON_OBJECT_RE.search(cleaned)
    try:
        parsed = json.loads(match.group(0) if match else cleaned)
    except json.JSONDecodeError as e:
        raise SolutionParseError(f"Invalid solution response format: {e}") from e

    if not isinstance(parsed, dict):
        raise SolutionParseError("Invalid solution response format: expected a JSON object")

    for name in REQUIRED_FIELDS:
        if name not in parsed:
            raise SolutionParseError(f"Missing required field: {name}")
    if "code" not in parsed and "commands" not in parsed:
        raise SolutionParseError("Missing required field: code")

    try:
        if parsed.get("commands"):
            commands = [SolutionCommand.model_validate(c) for c in parsed["commands"]]
            code = render_script(commands)
        else:
            code = str(parsed["code"])
            try:
                commands = compile_script(code)
                code = render_script(commands)
            except SolutionParseError:
                # Kept verbatim for the sandbox to reject with a violation
                commands = []

        return GeneratedSolution(
            id=generate_solution_id(),
            strategy=str(parsed["strategy"]),
            code=code,
            explanation=str(parsed["explanation"]),
            confidence=parsed["confidence"],
            estimated_success_rate=parsed.get("estimatedSuccessRate") or 0.5,
            risk_level=RiskLevel(parsed.get("riskLevel") or "medium"),
            required_permissions=list(parsed.get("requiredPermissions") or []),
            time_estimate_ms=int(parsed.get("timeEstimate") or 10000),
            commands=commands,
            metadata=SolutionMetadata(
                generator_id=generator_id,
                reasoning=str(parsed.get("reasoning") or parsed["explanation"]),
            ),
        )
    except (ValidationError, ValueError, TypeError) as e:
        raise SolutionParseError(f"Invalid solution response format: {e}") from e
