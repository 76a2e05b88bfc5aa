"""Tool registry for dynamic tool management."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Iterable

from loguru import logger

from gatebot.agent.tools.base import Tool, ToolResult
from gatebot.errors import ToolError, ToolTimeout, UnknownTool


class ToolRegistry:
    """
    Registry for agent tools.

    Process-scoped and read-only once startup registration is done. Order of
    registration is the order tools are offered to the reasoning engine.
    """

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool. Names are unique for the registry lifetime."""
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def list(self) -> list[Tool]:
        """All registered tools in registration order."""
        return list(self._tools.values())

    @property
    def tool_names(self) -> list[str]:
        """Get list of registered tool names."""
        return list(self._tools.keys())

    def get_definitions(self, tools: Iterable[Tool] | None = None) -> list[dict[str, Any]]:
        """Get tool definitions in OpenAI format, for all tools or the given subset."""
        selected = self.list() if tools is None else list(tools)
        return [tool.to_schema() for tool in selected]

    async def execute(
        self,
        name: str,
        params: dict[str, Any],
        *,
        call_id: str = "",
        timeout: float | None = None,
    ) -> ToolResult:
        """
        Execute a tool by name and normalise the outcome.

        Every failure short of cancellation is converted into a failed
        ToolResult here; nothing an executor raises escapes this boundary.

        Args:
            name: Tool name.
            params: Tool parameters.
            call_id: Call identifier echoed into the result.
            timeout: Default bound in seconds when the tool has none of its own.

        Returns:
            ToolResult for this call.
        """
        tool = self._tools.get(name)
        if not tool:
            return self._failure(call_id, name, UnknownTool(f"Tool '{name}' not found"))

        if not isinstance(params, dict):
            return self._failure(
                call_id,
                name,
                ToolError(f"Invalid parameters for tool '{name}': arguments must be an object"),
            )

        try:
            errors = tool.validate_params(params)
            if errors:
                return self._failure(
                    call_id,
                    name,
                    ToolError(f"Invalid parameters for tool '{name}': " + "; ".join(errors)),
                )
            bound = tool.timeout if tool.timeout is not None else timeout
            if bound is not None and bound > 0:
                content = await asyncio.wait_for(tool.execute(**params), timeout=bound)
            else:
                content = await tool.execute(**params)
        except asyncio.TimeoutError:
            return self._failure(
                call_id, name, ToolTimeout(f"Tool '{name}' timed out after {bound} seconds")
            )
        except ToolError as e:
            return self._failure(call_id, name, e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Tool {name} raised {type(e).__name__}: {e}")
            return ToolResult(
                call_id=call_id,
                name=name,
                content=f"Error [executor_failure]: {name} failed: {e}",
                ok=False,
                error_kind="executor_failure",
                fault=True,
            )

        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False, default=str)
        return ToolResult(call_id=call_id, name=name, content=content)

    @staticmethod
    def _failure(call_id: str, name: str, error: ToolError) -> ToolResult:
        return ToolResult(
            call_id=call_id,
            name=name,
            content=error.render(),
            ok=False,
            error_kind=error.kind,
        )

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
