"""LLM provider abstraction module."""

from gatebot.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from gatebot.providers.responses_provider import ResponsesProvider

__all__ = ["LLMProvider", "LLMResponse", "ToolCallRequest", "ResponsesProvider"]
