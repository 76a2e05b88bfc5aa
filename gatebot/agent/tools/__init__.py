"""Agent tools module."""

from gatebot.agent.tools.base import Tool, ToolResult
from gatebot.agent.tools.registry import ToolRegistry

__all__ = ["Tool", "ToolResult", "ToolRegistry"]
