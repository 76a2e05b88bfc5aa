"""Message tool for sending messages to users."""

from typing import Any, Awaitable, Callable

from gatebot.agent.tools.base import Tool
from gatebot.bus.events import OutboundMessage
from gatebot.errors import ExecutorFailure


class MessageTool(Tool):
    """
    Tool to send messages to users on chat channels.

    The registry is shared by every reply cycle, so the routing target is
    passed in the arguments (or defaulted by the loop) rather than kept on
    the instance.
    """

    def __init__(self, send_callback: Callable[[OutboundMessage], Awaitable[None]] | None = None):
        self._send_callback = send_callback

    @property
    def name(self) -> str:
        return "message"

    @property
    def description(self) -> str:
        return (
            "Send a message to a chat. Supports text content and optional media file paths/URLs "
            "(channel-dependent). Your final answer is delivered automatically; use this for "
            "other chats or for media."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "content": {
                    "type": "string",
                    "description": "Text content to send (use empty string when sending only media)",
                },
                "media": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Optional media file paths or URLs to send",
                },
                "channel": {"type": "string", "description": "Target channel (web, cli, ...)"},
                "chat_id": {"type": "string", "description": "Target chat/user ID"},
            },
            "required": ["content"],
        }

    @property
    def scopes(self) -> frozenset[str]:
        return frozenset({"messaging"})

    async def execute(
        self,
        content: str = "",
        media: list[str] | None = None,
        channel: str | None = None,
        chat_id: str | None = None,
        **kwargs: Any,
    ) -> str:
        if not channel or not chat_id:
            raise ExecutorFailure("No target channel/chat specified")

        if not self._send_callback:
            raise ExecutorFailure("Message sending not configured")

        content = content.strip()
        cleaned_media = [m.strip() for m in (media or []) if isinstance(m, str) and m.strip()]
        if not content and not cleaned_media:
            raise ExecutorFailure("Provide at least one of 'content' or 'media'")

        msg = OutboundMessage(
            channel=channel,
            chat_id=chat_id,
            content=content,
            media=cleaned_media,
            metadata={"tool": self.name},
        )

        try:
            await self._send_callback(msg)
        except Exception as e:
            raise ExecutorFailure(f"Error sending message: {e}") from e
        if cleaned_media:
            return f"Message sent to {channel}:{chat_id} with {len(cleaned_media)} media item(s)"
        return f"Message sent to {channel}:{chat_id}"
