"""Direct tool invocation, outside any reply cycle."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from http import HTTPStatus
from typing import Any

from loguru import logger

from gatebot.agent.policy import InvocationContext, PolicyFilter, is_sandboxed
from gatebot.agent.tools.registry import ToolRegistry
from gatebot.config.schema import Config


def _error(kind: str, message: str) -> dict[str, Any]:
    return {"ok": False, "error": {"type": kind, "message": message}}


class ToolInvokeHandler:
    """
    Handle `{tool, args, sessionKey}` requests against the shared registry.

    The same policy filter as the reply loop decides visibility, but nothing
    is appended to any conversation. Transport-independent: the gateway
    server maps HTTP query strings and WebSocket frames onto `handle`.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        policy: PolicyFilter,
        config: Config,
        *,
        agent_id: str | None = None,
        provider: str = "",
        model: str = "",
    ):
        self.registry = registry
        self.policy = policy
        self.config = config
        self.agent_id = agent_id or config.agents.default_agent
        self.provider = provider
        self.model = model or config.agent(self.agent_id).model or ""

    def context_for(self, session_key: str) -> InvocationContext:
        return InvocationContext(
            session_key=session_key,
            agent_id=self.agent_id,
            provider=self.provider,
            model=self.model,
            sandboxed=is_sandboxed(self.config, self.agent_id, session_key),
        )

    async def handle(self, payload: Any) -> tuple[HTTPStatus, dict[str, Any]]:
        if not isinstance(payload, Mapping):
            return HTTPStatus.BAD_REQUEST, _error("bad_request", "body must be a JSON object")

        name = payload.get("tool")
        if not isinstance(name, str) or not name.strip():
            return HTTPStatus.BAD_REQUEST, _error("bad_request", "'tool' must be a non-empty string")
        name = name.strip()

        args = payload.get("args")
        if args is None:
            args = {}
        if not isinstance(args, Mapping):
            return HTTPStatus.BAD_REQUEST, _error("bad_request", "'args' must be a JSON object")

        session_key = payload.get("sessionKey", payload.get("session_key"))
        if session_key is None:
            session_key = self.config.agent(self.agent_id).main_session_key or "cli:direct"
        if not isinstance(session_key, str) or not session_key.strip():
            return HTTPStatus.BAD_REQUEST, _error("bad_request", "'sessionKey' must be a non-empty string")

        tool = self.registry.get(name)
        if tool is None:
            logger.warning(f"Invoke of unknown tool: {name}")
            return HTTPStatus.NOT_FOUND, _error("unknown_tool", f"Tool '{name}' not found")

        context = self.context_for(session_key.strip())
        decision = self.policy.decide([tool], context)[0]
        if not decision.allowed:
            logger.warning(f"Invoke of {name} denied for {context.session_key}: {decision.reason}")
            return HTTPStatus.FORBIDDEN, _error("policy_denied", f"Tool '{name}' {decision.reason}")

        call_id = f"invoke_{uuid.uuid4().hex[:12]}"
        logger.info(f"Invoke: {name} for {context.session_key}")
        result = await self.registry.execute(
            name, dict(args), call_id=call_id, timeout=self.config.tools.timeout_s
        )
        body = result.to_payload()
        body["callId"] = call_id
        return HTTPStatus.OK, body
