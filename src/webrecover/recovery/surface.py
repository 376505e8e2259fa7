"""Abstract automation surface.

The recovery engine never drives a browser itself. It issues operations
against an AutomationSurface supplied by the automation layer, typically a
thin adapter over a Playwright page. All methods are coroutines; failures
are raised as ordinary exceptions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from .models import PageSnapshot


class AutomationSurface(ABC):
    """Named interaction primitives the recovery engine may invoke."""

    # Interaction

    @abstractmethod
    async def click(self, selector: str, *, force: bool = False, timeout_ms: int | None = None) -> None:
        ...

    @abstractmethod
    async def dblclick(self, selector: str) -> None:
        ...

    @abstractmethod
    async def fill(self, selector: str, value: str) -> None:
        ...

    @abstractmethod
    async def type(self, selector: str, text: str) -> None:
        ...

    @abstractmethod
    async def press(self, selector: str, key: str) -> None:
        ...

    @abstractmethod
    async def select_option(self, selector: str, value: str) -> None:
        ...

    @abstractmethod
    async def check(self, selector: str) -> None:
        ...

    @abstractmethod
    async def uncheck(self, selector: str) -> None:
        ...

    @abstractmethod
    async def clear(self, selector: str) -> None:
        ...

    @abstractmethod
    async def hover(self, selector: str) -> None:
        ...

    @abstractmethod
    async def focus(self, selector: str) -> None:
        ...

    @abstractmethod
    async def blur(self, selector: str) -> None:
        ...

    @abstractmethod
    async def scroll_into_view(self, selector: str) -> None:
        ...

    # Waiting

    @abstractmethod
    async def wait_for_selector(
        self, selector: str, *, timeout_ms: int = 10000, state: str = "visible"
    ) -> None:
        """Wait until an element matching selector reaches state.

        Raises on timeout.
        """

    @abstractmethod
    async def wait_for_timeout(self, ms: int) -> None:
        ...

    @abstractmethod
    async def wait_for_load_state(self, state: str = "load", *, timeout_ms: int | None = None) -> None:
        ...

    @abstractmethod
    async def wait_for_ready_state(self, *, timeout_ms: int | None = None) -> None:
        """Wait until the document reports readyState == 'complete'."""

    # Navigation

    @abstractmethod
    async def goto(self, url: str) -> None:
        ...

    @abstractmethod
    async def reload(self) -> None:
        ...

    @abstractmethod
    async def go_back(self) -> None:
        ...

    @abstractmethod
    async def go_forward(self) -> None:
        ...

    # Reads and capture

    @abstractmethod
    async def screenshot(self, path: str | None = None) -> bytes:
        ...

    @abstractmethod
    async def get_attribute(self, selector: str, name: str) -> str | None:
        ...

    @abstractmethod
    async def text_content(self, selector: str) -> str | None:
        ...

    @abstractmethod
    async def inner_html(self, selector: str) -> str:
        ...

    @abstractmethod
    async def evaluate(self, script: str, arg: Any = None) -> Any:
        """Run a fixed page script. Only built-in strategies call this."""

    @abstractmethod
    async def snapshot(self) -> PageSnapshot:
        """Capture URL, title, ready state and serialized content."""
