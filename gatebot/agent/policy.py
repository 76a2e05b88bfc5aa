"""Layered tool policy: decide which registered tools a reply cycle may see."""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from gatebot.agent.tools.base import Tool
from gatebot.config.schema import Config, ToolPolicyConfig

GROUP_PREFIX = "group:"


@dataclass(frozen=True)
class InvocationContext:
    """
    Per-reply-cycle inputs. Created by the caller, read-only to the core.

    `history` is a snapshot of the conversation so far; the loop never mutates
    it and only appends new request/result pairs to its own working list.
    """

    session_key: str
    agent_id: str = "main"
    provider: str = ""
    model: str = ""
    sandboxed: bool = False
    history: tuple[dict[str, Any], ...] = ()
    channel: str = ""
    chat_id: str = ""


@dataclass(frozen=True)
class PolicyDecision:
    tool: str
    allowed: bool
    layer: str | None = None
    reason: str | None = None


def _normalize(entries: Iterable[str]) -> tuple[str, ...]:
    out = []
    for raw in entries or ():
        if not isinstance(raw, str):
            continue
        entry = raw.strip().lower()
        if entry:
            out.append(entry)
    return tuple(dict.fromkeys(out))


def matches(entry: str, tool: Tool) -> bool:
    """Whether one policy entry (name, group:<scope>, '*' or glob) covers a tool."""
    if entry == "*":
        return True
    if entry.startswith(GROUP_PREFIX):
        return entry[len(GROUP_PREFIX):] in {s.lower() for s in tool.scopes}
    name = tool.name.lower()
    if any(ch in entry for ch in "*?["):
        return fnmatch.fnmatchcase(name, entry)
    return name == entry


@dataclass(frozen=True)
class PolicyLayer:
    """One narrowing filter. A tool passes if not denied and, when an allowlist is set, allowed."""

    name: str
    allow: tuple[str, ...] = ()
    deny: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, name: str, config: ToolPolicyConfig | None) -> "PolicyLayer":
        if config is None:
            return cls(name)
        return cls(name, _normalize(config.allow), _normalize(config.deny))

    @property
    def empty(self) -> bool:
        return not self.allow and not self.deny

    def check(self, tool: Tool) -> str | None:
        """Return a denial reason, or None if the tool passes this layer."""
        for entry in self.deny:
            if matches(entry, tool):
                return f"denied by {self.name} rule '{entry}'"
        if self.allow and not any(matches(entry, tool) for entry in self.allow):
            return f"not in {self.name} allowlist"
        return None


@dataclass
class PolicyFilter:
    """
    Computes the effective tool set for an invocation context.

    Layers are applied left to right in a fixed order (global, agent,
    provider, sandbox). Each layer only sees what the previous layers let
    through, so no later layer can bring back a tool an earlier one removed.
    """

    global_layer: PolicyLayer = field(default_factory=lambda: PolicyLayer("global"))
    agent_layers: dict[str, PolicyLayer] = field(default_factory=dict)
    provider_layers: dict[str, PolicyLayer] = field(default_factory=dict)
    sandbox_layer: PolicyLayer = field(default_factory=lambda: PolicyLayer("sandbox"))
    fatal: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: Config) -> "PolicyFilter":
        tools_cfg = config.tools
        return cls(
            global_layer=PolicyLayer(
                "global", _normalize(tools_cfg.allow), _normalize(tools_cfg.deny)
            ),
            agent_layers={
                agent_id: PolicyLayer.from_config("agent", agent_cfg.tools)
                for agent_id, agent_cfg in config.agents.list.items()
            },
            provider_layers={
                key.strip().lower(): PolicyLayer.from_config("provider", layer_cfg)
                for key, layer_cfg in tools_cfg.by_provider.items()
            },
            sandbox_layer=PolicyLayer.from_config("sandbox", tools_cfg.sandbox),
            fatal=_normalize(tools_cfg.fatal),
        )

    def layers_for(self, context: InvocationContext) -> list[PolicyLayer]:
        layers = [self.global_layer]
        if agent_layer := self.agent_layers.get(context.agent_id):
            layers.append(agent_layer)
        provider = (context.provider or "").strip().lower()
        model = (context.model or "").strip().lower()
        if provider:
            if layer := self.provider_layers.get(provider):
                layers.append(layer)
            if model and (layer := self.provider_layers.get(f"{provider}/{model}")):
                layers.append(layer)
        if context.sandboxed:
            layers.append(self.sandbox_layer)
        return [layer for layer in layers if not layer.empty]

    def decide(self, tools: Sequence[Tool], context: InvocationContext) -> list[PolicyDecision]:
        """Classify every tool as allowed or denied, in input order."""
        layers = self.layers_for(context)
        decisions: list[PolicyDecision] = []
        for tool in tools:
            decision = PolicyDecision(tool=tool.name, allowed=True)
            for layer in layers:
                reason = layer.check(tool)
                if reason is not None:
                    decision = PolicyDecision(
                        tool=tool.name, allowed=False, layer=layer.name, reason=reason
                    )
                    break
            decisions.append(decision)
        return decisions

    def effective_tools(self, tools: Sequence[Tool], context: InvocationContext) -> list[Tool]:
        """The allowed subset of `tools`, order preserved."""
        allowed = list(tools)
        for layer in self.layers_for(context):
            allowed = [tool for tool in allowed if layer.check(tool) is None]
        return allowed

    def is_fatal(self, tool: Tool | None) -> bool:
        """Whether an uncontrolled fault from this tool aborts the cycle."""
        if tool is None or not self.fatal:
            return False
        return any(matches(entry, tool) for entry in self.fatal)


def is_sandboxed(config: Config, agent_id: str, session_key: str) -> bool:
    """Resolve the agent's sandbox mode for one session."""
    agent = config.agent(agent_id)
    if agent.sandbox == "all":
        return True
    if agent.sandbox == "non-main":
        return session_key != agent.main_session_key
    return False
