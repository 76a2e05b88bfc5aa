"""Base LLM provider interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from loguru import logger


@dataclass
class ToolCallRequest:
    """A tool call requested by the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class LLMResponse:
    """Response from an LLM provider."""

    content: str | None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)
    reasoning_content: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_tool_calls(self) -> bool:
        """Check if response contains tool calls."""
        return len(self.tool_calls) > 0


class LLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    Implementations turn an OpenAI-style message list plus function-calling
    tool definitions into one engine turn. Transport failures are reported
    as an ``LLMResponse`` with ``finish_reason="error"`` rather than raised;
    ``"context_overflow"`` marks a prompt the engine refused as too long.
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @property
    def name(self) -> str:
        return "openai"

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Send one chat turn and return the parsed response."""
        pass

    @abstractmethod
    def get_default_model(self) -> str:
        """Get the default model for this provider."""
        pass

    def _log_response_debug(self, response: LLMResponse, model: str | None = None) -> None:
        calls = ", ".join(tc.name for tc in response.tool_calls) or "-"
        preview = (response.content or "")[:200]
        logger.debug(
            f"{self.name} response model={model or self.get_default_model()} "
            f"finish={response.finish_reason} calls=[{calls}] content={preview!r}"
        )
