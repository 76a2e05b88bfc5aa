"""Agent core module."""

from gatebot.agent.context import ContextBuilder
from gatebot.agent.loop import AgentLoop, CycleResult, LoopState
from gatebot.agent.policy import InvocationContext, PolicyFilter

__all__ = ["AgentLoop", "ContextBuilder", "CycleResult", "InvocationContext", "LoopState", "PolicyFilter"]
