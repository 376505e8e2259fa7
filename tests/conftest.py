"""Shared fixtures for webrecover tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from webrecover.generator.backends import GeneratorResponse, SolutionBackend
from webrecover.generator.models import RiskLevel
from webrecover.recovery.models import PageSnapshot, RecoveryContext
from webrecover.recovery.surface import AutomationSurface
from webrecover.solutions.models import StoredSolution, error_signature


class FakeSurface(AutomationSurface):
    """In-memory automation surface.

    Every call is appended to `calls` as (method, args). Methods listed in
    `failing` raise RuntimeError with the configured message; `fail_times`
    limits how many times they do so before succeeding.
    """

    def __init__(self, failing: dict[str, str] | None = None, fail_times: int | None = None):
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.failing = dict(failing or {})
        self.fail_times = fail_times
        self._failures: dict[str, int] = {}
        self.evaluate_result: Any = None
        self.page = PageSnapshot(
            url="https://shop.example.com/checkout",
            title="Checkout",
            ready_state="complete",
            content="<html><body><button id='pay'>Pay</button></body></html>",
        )

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.failing:
            count = self._failures.get(name, 0)
            if self.fail_times is None or count < self.fail_times:
                self._failures[name] = count + 1
                raise RuntimeError(self.failing[name])

    def called(self, name: str) -> int:
        return sum(1 for method, _ in self.calls if method == name)

    async def click(self, selector, *, force=False, timeout_ms=None):
        self._record("click", selector, force)

    async def dblclick(self, selector):
        self._record("dblclick", selector)

    async def fill(self, selector, value):
        self._record("fill", selector, value)

    async def type(self, selector, text):
        self._record("type", selector, text)

    async def press(self, selector, key):
        self._record("press", selector, key)

    async def select_option(self, selector, value):
        self._record("select_option", selector, value)

    async def check(self, selector):
        self._record("check", selector)

    async def uncheck(self, selector):
        self._record("uncheck", selector)

    async def clear(self, selector):
        self._record("clear", selector)

    async def hover(self, selector):
        self._record("hover", selector)

    async def focus(self, selector):
        self._record("focus", selector)

    async def blur(self, selector):
        self._record("blur", selector)

    async def scroll_into_view(self, selector):
        self._record("scroll_into_view", selector)

    async def wait_for_selector(self, selector, *, timeout_ms=10000, state="visible"):
        self._record("wait_for_selector", selector, timeout_ms, state)

    async def wait_for_timeout(self, ms):
        self._record("wait_for_timeout", ms)

    async def wait_for_load_state(self, state="load", *, timeout_ms=None):
        self._record("wait_for_load_state", state)

    async def wait_for_ready_state(self, *, timeout_ms=None):
        self._record("wait_for_ready_state")

    async def goto(self, url):
        self._record("goto", url)

    async def reload(self):
        self._record("reload")

    async def go_back(self):
        self._record("go_back")

    async def go_forward(self):
        self._record("go_forward")

    async def screenshot(self, path=None):
        self._record("screenshot", path)
        return b""

    async def get_attribute(self, selector, name):
        self._record("get_attribute", selector, name)
        return None

    async def text_content(self, selector):
        self._record("text_content", selector)
        return ""

    async def inner_html(self, selector):
        self._record("inner_html", selector)
        return ""

    async def evaluate(self, script, arg=None):
        self._record("evaluate", script, arg)
        return self.evaluate_result

    async def snapshot(self):
        self._record("snapshot")
        return self.page


@pytest.fixture
def surface() -> FakeSurface:
    return FakeSurface()


@pytest.fixture
def context(surface: FakeSurface) -> RecoveryContext:
    return RecoveryContext(surface=surface, step_name="submit payment", selector="#pay")


def make_stored_solution(
    solution_id: str = "sol-1",
    error_pattern: str = "Timeout 30000ms exceeded waiting for #pay",
    **overrides: Any,
) -> StoredSolution:
    """Stored solution with sensible defaults; keyword overrides replace fields."""
    solution = StoredSolution(
        id=solution_id,
        error_pattern=error_pattern,
        error_signature=error_signature(error_pattern),
        solution_code='await page.waitForSelector("#pay");',
        explanation="Wait for the overlay to clear",
        confidence=0.8,
        strategy="wait_strategy",
        estimated_success_rate=0.8,
        actual_success_rate=0.8,
        risk_level=RiskLevel.LOW,
        tags=["selector-based"],
        categories=["timeout", "timing"],
    )
    for name, value in overrides.items():
        setattr(solution, name, value)
    return solution


class FakeBackend(SolutionBackend):
    """Backend returning a canned solution and counting calls."""

    name = "fake"

    def __init__(self, payload: dict | None = None, delay: float = 0.0, error: Exception | None = None):
        self.payload = payload or {
            "strategy": "wait_then_click",
            "code": "await page.waitForSelector('#pay'); await page.click('#pay')",
            "explanation": "The button renders after the price loads",
            "confidence": 0.85,
            "estimatedSuccessRate": 0.8,
            "riskLevel": "low",
        }
        self.delay = delay
        self.error = error
        self.calls = 0
        self.closed = False

    async def generate(self, prompt, *, system):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return GeneratorResponse(text=json.dumps(self.payload), token_usage=120, model="fake-model")

    async def close(self):
        self.closed = True
