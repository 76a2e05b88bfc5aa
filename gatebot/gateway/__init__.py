"""Gateway server and direct tool invocation."""

from gatebot.gateway.invoke import ToolInvokeHandler
from gatebot.gateway.server import GatewayServer

__all__ = ["GatewayServer", "ToolInvokeHandler"]
