"""Shell execution tool."""

import asyncio
import os
import re
from pathlib import Path
from typing import Any

from gatebot.agent.tools.base import Tool
from gatebot.errors import ExecutorFailure, PolicyDenied


class ExecTool(Tool):
    """Tool to execute shell commands."""

    _MAX_OUTPUT = 10000

    def __init__(
        self,
        timeout: int = 60,
        working_dir: str | None = None,
        deny_patterns: list[str] | None = None,
        allow_patterns: list[str] | None = None,
        restrict_to_workspace: bool = False,
    ):
        self._timeout = timeout
        self.working_dir = working_dir
        self.deny_patterns = deny_patterns or [
            r"\brm\s+-[rf]{1,2}\b",  # rm -r, rm -rf, rm -fr
            r"\bdel\s+/[fq]\b",  # del /f, del /q
            r"\brmdir\s+/s\b",  # rmdir /s
            r"\b(format|mkfs|diskpart)\b",  # disk operations
            r"\bdd\s+if=",  # dd
            r">\s*/dev/sd",  # write to disk
            r"\b(shutdown|reboot|poweroff)\b",  # system power
            r":\(\)\s*\{.*\};\s*:",  # fork bomb
        ]
        self.allow_patterns = allow_patterns or []
        self.restrict_to_workspace = restrict_to_workspace

    @property
    def name(self) -> str:
        return "exec"

    @property
    def description(self) -> str:
        return "Execute a shell command and return its output."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to execute"},
                "working_dir": {
                    "type": "string",
                    "description": "Optional working directory for the command",
                },
            },
            "required": ["command"],
        }

    @property
    def scopes(self) -> frozenset[str]:
        return frozenset({"runtime"})

    @property
    def timeout(self) -> float | None:
        return float(self._timeout)

    async def execute(self, command: str, working_dir: str | None = None, **kwargs: Any) -> str:
        cwd = working_dir or self.working_dir or os.getcwd()
        self._guard_command(command, cwd)
        return await self._run_command(command, cwd)

    async def _run_command(self, command: str, cwd: str) -> str:
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except OSError as e:
            raise ExecutorFailure(f"Could not start command: {e}") from e

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            # Timeout or cycle cancellation; do not leave the process behind
            process.kill()
            await process.wait()
            raise

        output_parts = []

        if stdout:
            output_parts.append(stdout.decode("utf-8", errors="replace"))

        if stderr:
            stderr_text = stderr.decode("utf-8", errors="replace")
            if stderr_text.strip():
                output_parts.append(f"STDERR:\n{stderr_text}")

        if process.returncode != 0:
            output_parts.append(f"\nExit code: {process.returncode}")

        result = "\n".join(output_parts) if output_parts else "(no output)"

        if len(result) > self._MAX_OUTPUT:
            result = result[: self._MAX_OUTPUT] + f"\n... (truncated, {len(result) - self._MAX_OUTPUT} more chars)"

        return result

    def _guard_command(self, command: str, cwd: str) -> None:
        """Best-effort safety guard for potentially destructive commands."""
        cmd = command.strip()
        lower = cmd.lower()

        for pattern in self.deny_patterns:
            if re.search(pattern, lower):
                raise PolicyDenied("Command blocked by safety guard (dangerous pattern detected)")

        if self.allow_patterns:
            if not any(re.search(p, lower) for p in self.allow_patterns):
                raise PolicyDenied("Command blocked by safety guard (not in allowlist)")

        if self.restrict_to_workspace:
            if "..\\" in cmd or "../" in cmd:
                raise PolicyDenied("Command blocked by safety guard (path traversal detected)")

            cwd_path = Path(cwd).resolve()

            win_paths = re.findall(r"[A-Za-z]:\\[^\\\"']+", cmd)
            # Absolute paths only; ".venv/bin/python" must not yield "/bin/python"
            posix_paths = re.findall(r"(?:^|[\s|>])(/[^\s\"'>]+)", cmd)

            for raw in win_paths + posix_paths:
                try:
                    p = Path(raw.strip()).resolve()
                except (OSError, RuntimeError):
                    continue
                if p.is_absolute() and cwd_path not in p.parents and p != cwd_path:
                    raise PolicyDenied("Command blocked by safety guard (path outside working dir)")
