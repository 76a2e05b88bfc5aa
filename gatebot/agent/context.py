"""Context builder for assembling agent prompts."""

import json
import platform
from datetime import datetime
from pathlib import Path
from typing import Any

from gatebot import __logo__


class ContextBuilder:
    """
    Builds the context (system prompt + messages) for the agent.

    Only a minimal identity block plus the workspace bootstrap files are
    assembled here; everything else the model learns from tool schemas.
    """

    BOOTSTRAP_FILES = ["AGENTS.md", "USER.md", "TOOLS.md", "IDENTITY.md"]
    CHARS_PER_TOKEN = 4

    def __init__(self, workspace: Path):
        self.workspace = workspace

    def build_system_prompt(self) -> str:
        parts = [self._get_identity()]
        bootstrap = self._load_bootstrap_files()
        if bootstrap:
            parts.append(bootstrap)
        return "\n\n---\n\n".join(parts)

    def _get_identity(self) -> str:
        now = datetime.now().strftime("%Y-%m-%d %H:%M (%A)")
        workspace_path = str(self.workspace.expanduser().resolve())
        system = platform.system()
        runtime = f"{'macOS' if system == 'Darwin' else system} {platform.machine()}, Python {platform.python_version()}"

        return f"""# gatebot {__logo__}

You are gatebot, a helpful AI assistant with tools for files, shell commands,
web pages, a Chrome browser and chat messaging.

## Current Time
{now}

## Runtime
{runtime}

## Workspace
Your workspace is at: {workspace_path}

## Browser
Take a snapshot before acting on a page. Refs are only valid for the latest
snapshot of a tab; after navigation or a stale_ref error take a new snapshot.

When you are done, answer the user directly without calling a tool."""

    def _load_bootstrap_files(self) -> str:
        """Load all bootstrap files from workspace."""
        parts = []
        for filename in self.BOOTSTRAP_FILES:
            file_path = self.workspace / filename
            if file_path.exists():
                content = file_path.read_text(encoding="utf-8")
                parts.append(f"## {filename}\n\n{content}")
        return "\n\n".join(parts)

    def build_messages(
        self,
        history: list[dict[str, Any]],
        current_message: str,
        channel: str | None = None,
        chat_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        Build the complete message list for an LLM call.

        Args:
            history: Previous conversation messages.
            current_message: The new user message.
            channel: Current channel (web, cli, ...).
            chat_id: Current chat/user ID.

        Returns:
            List of messages including system prompt.
        """
        system_prompt = self.build_system_prompt()
        if channel and chat_id:
            system_prompt += f"\n\n## Current Session\nChannel: {channel}\nChat ID: {chat_id}"

        messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        messages.extend(history)
        messages.append({"role": "user", "content": current_message})
        return messages

    def add_tool_result(
        self,
        messages: list[dict[str, Any]],
        tool_call_id: str,
        tool_name: str,
        result: str,
    ) -> list[dict[str, Any]]:
        messages.append({
            "role": "tool",
            "tool_call_id": tool_call_id,
            "name": tool_name,
            "content": result,
        })
        return messages

    def add_assistant_message(
        self,
        messages: list[dict[str, Any]],
        content: str | None,
        tool_calls: list[dict[str, Any]] | None = None,
        reasoning_content: str | None = None,
    ) -> list[dict[str, Any]]:
        msg: dict[str, Any] = {"role": "assistant"}

        # Omit empty content; some backends reject empty text blocks
        if content:
            msg["content"] = content
        if tool_calls:
            msg["tool_calls"] = tool_calls
        if reasoning_content:
            msg["reasoning_content"] = reasoning_content

        messages.append(msg)
        return messages

    @classmethod
    def estimate_tokens(cls, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None = None) -> int:
        """Rough prompt size estimate: serialized characters divided by four."""
        chars = sum(len(json.dumps(m, ensure_ascii=False, default=str)) for m in messages)
        if tools:
            chars += len(json.dumps(tools, ensure_ascii=False))
        return chars // cls.CHARS_PER_TOKEN
