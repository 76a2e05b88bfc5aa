"""File system tools: read, write, edit, list."""

from pathlib import Path
from typing import Any

from gatebot.agent.tools.base import Tool
from gatebot.errors import ExecutorFailure


def _resolve_path(path: str, allowed_dir: Path | None = None) -> Path:
    """Resolve path and optionally enforce directory restriction."""
    resolved = Path(path).expanduser().resolve()
    if allowed_dir:
        root = allowed_dir.resolve()
        if resolved != root and root not in resolved.parents:
            raise ExecutorFailure(f"Path {path} is outside allowed directory {allowed_dir}")
    return resolved


class _FileTool(Tool):
    def __init__(self, allowed_dir: Path | None = None):
        self._allowed_dir = allowed_dir

    @property
    def scopes(self) -> frozenset[str]:
        return frozenset({"fs"})


class ReadFileTool(_FileTool):
    """Tool to read file contents."""

    _MAX_CHARS = 100_000

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return "Read the contents of a file at the given path."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {"path": {"type": "string", "description": "The file path to read"}},
            "required": ["path"],
        }

    @property
    def concurrency_safe(self) -> bool:
        return True

    async def execute(self, path: str, **kwargs: Any) -> str:
        file_path = _resolve_path(path, self._allowed_dir)
        if not file_path.exists():
            raise ExecutorFailure(f"File not found: {path}")
        if not file_path.is_file():
            raise ExecutorFailure(f"Not a file: {path}")
        try:
            content = file_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ExecutorFailure(f"File is not UTF-8 text: {path}") from e
        if len(content) > self._MAX_CHARS:
            return content[: self._MAX_CHARS] + f"\n... (truncated, {len(content) - self._MAX_CHARS} more chars)"
        return content


class WriteFileTool(_FileTool):
    """Tool to write content to a file."""

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return "Write content to a file at the given path. Creates parent directories if needed."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to write to"},
                "content": {"type": "string", "description": "The content to write"},
            },
            "required": ["path", "content"],
        }

    async def execute(self, path: str, content: str, **kwargs: Any) -> str:
        file_path = _resolve_path(path, self._allowed_dir)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding="utf-8")
        return f"Successfully wrote {len(content)} bytes to {path}"


class EditFileTool(_FileTool):
    """Tool to edit a file by replacing text."""

    @property
    def name(self) -> str:
        return "edit_file"

    @property
    def description(self) -> str:
        return "Edit a file by replacing old_text with new_text. The old_text must exist exactly once in the file."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to edit"},
                "old_text": {"type": "string", "description": "The exact text to find and replace"},
                "new_text": {"type": "string", "description": "The text to replace with"},
            },
            "required": ["path", "old_text", "new_text"],
        }

    async def execute(self, path: str, old_text: str, new_text: str, **kwargs: Any) -> str:
        file_path = _resolve_path(path, self._allowed_dir)
        if not file_path.exists():
            raise ExecutorFailure(f"File not found: {path}")

        content = file_path.read_text(encoding="utf-8")
        count = content.count(old_text)
        if count == 0:
            raise ExecutorFailure("old_text not found in file. Make sure it matches exactly.")
        if count > 1:
            raise ExecutorFailure(
                f"old_text appears {count} times. Please provide more context to make it unique."
            )

        file_path.write_text(content.replace(old_text, new_text, 1), encoding="utf-8")
        return f"Successfully edited {path}"


class ListDirTool(_FileTool):
    """Tool to list directory contents."""

    @property
    def name(self) -> str:
        return "list_dir"

    @property
    def description(self) -> str:
        return "List the contents of a directory."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {"path": {"type": "string", "description": "The directory path to list"}},
            "required": ["path"],
        }

    @property
    def concurrency_safe(self) -> bool:
        return True

    async def execute(self, path: str, **kwargs: Any) -> str:
        dir_path = _resolve_path(path, self._allowed_dir)
        if not dir_path.exists():
            raise ExecutorFailure(f"Directory not found: {path}")
        if not dir_path.is_dir():
            raise ExecutorFailure(f"Not a directory: {path}")

        items = []
        for item in sorted(dir_path.iterdir()):
            prefix = "📁 " if item.is_dir() else "📄 "
            items.append(f"{prefix}{item.name}")

        if not items:
            return f"Directory {path} is empty"
        return "\n".join(items)
