"""Message bus module for decoupled channel-agent communication."""

from gatebot.bus.events import InboundMessage, OutboundMessage
from gatebot.bus.queue import MessageBus

__all__ = ["MessageBus", "InboundMessage", "OutboundMessage"]
