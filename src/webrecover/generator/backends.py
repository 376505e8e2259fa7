"""Backends that turn a recovery prompt into a generator response."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import anthropic
from anthropic import AsyncAnthropic

from ..config import GeneratorConfig
from ..errors import GeneratorError, GeneratorTimeout, RateLimitExceeded

logger = logging.getLogger(__name__)


@dataclass
class GeneratorResponse:
    """Raw text returned by a backend."""

    text: str
    token_usage: int | None = None
    model: str = ""


class SolutionBackend(ABC):
    """Something that answers recovery prompts."""

    name = "backend"

    @abstractmethod
    async def generate(self, prompt: str, *, system: str) -> GeneratorResponse:
        """Send a prompt and return the response text.

        Raises:
            GeneratorError: If the backend cannot produce a response.
        """

    async def close(self) -> None:
        """Release network resources."""
        return None


class AnthropicBackend(SolutionBackend):
    """Generator backed by the Anthropic Messages API."""

    name = "anthropic"

    def __init__(self, config: GeneratorConfig, client: Any = None):
        """Initialize the backend.

        Args:
            config: Model, token and retry settings.
            client: Pre-built AsyncAnthropic client. Built lazily when omitted.
        """
        self.config = config
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = AsyncAnthropic(
                api_key=self.config.api_key or None,
                max_retries=self.config.max_retries,
                timeout=self.config.timeout_ms / 1000,
            )
        return self._client

    async def generate(self, prompt: str, *, system: str) -> GeneratorResponse:
        try:
            response = await self.client.messages.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.RateLimitError as e:
            raise RateLimitExceeded(f"Generator rate limited: {e}") from e
        except anthropic.APITimeoutError as e:
            raise GeneratorTimeout(f"Generator request timed out: {e}") from e
        except anthropic.APIError as e:
            raise GeneratorError(f"Generator request failed: {e}") from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        usage = getattr(response, "usage", None)
        tokens = (usage.input_tokens + usage.output_tokens) if usage is not None else None
        logger.debug(f"Generator answered with {len(text)} chars ({tokens} tokens)")
        return GeneratorResponse(text=text, token_usage=tokens, model=self.config.model)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
