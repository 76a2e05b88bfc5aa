"""Browser tool: tabs, snapshots with refs, and ref-addressed actions."""

from __future__ import annotations

from typing import Any

from loguru import logger

from gatebot.agent.tools.base import Tool
from gatebot.browser.driver import BrowserDriver
from gatebot.browser.refs import BrowserTarget, RefCache
from gatebot.browser.snapshot import SnapshotBuilder, SnapshotOptions
from gatebot.errors import ExecutorFailure, ToolError

_ACTIONS = ["tabs", "open", "navigate", "snapshot", "act", "close"]
_ACT_KINDS = ["click", "type", "press", "hover"]


class BrowserTool(Tool):
    """Drive a Chrome tab through snapshot refs."""

    def __init__(
        self,
        driver: BrowserDriver,
        cache: RefCache,
        *,
        default_mode: str = "auto",
        max_chars: int | None = 20000,
        timeout: float | None = None,
    ):
        self.driver = driver
        self.cache = cache
        self.builder = SnapshotBuilder(driver, cache)
        self.default_mode = default_mode
        self.max_chars = max_chars
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "browser"

    @property
    def description(self) -> str:
        return (
            "Control a Chrome tab. action=snapshot returns the page structure with refs "
            "([ref=e12] or [12]); action=act performs click/type/press/hover on a ref from the "
            "LATEST snapshot of that tab. Refs expire whenever a new snapshot is taken or the "
            "tab navigates; on a stale_ref error take a fresh snapshot."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": _ACTIONS},
                "target_id": {
                    "type": "string",
                    "description": "Tab id from action=tabs (defaults to the first tab)",
                },
                "url": {"type": "string", "description": "URL for open/navigate"},
                "ref": {
                    "anyOf": [{"type": "string"}, {"type": "integer"}],
                    "description": "Element ref from the latest snapshot",
                },
                "role_ref": {
                    "type": "object",
                    "description": "Alternative to ref: {role, name, nth} from a role snapshot",
                    "properties": {
                        "role": {"type": "string"},
                        "name": {"type": "string"},
                        "nth": {"type": "integer", "minimum": 0},
                    },
                    "required": ["role"],
                },
                "kind": {"type": "string", "enum": _ACT_KINDS},
                "text": {"type": "string", "description": "Text for kind=type"},
                "key": {"type": "string", "description": "Key for kind=press, e.g. Enter"},
                "mode": {"type": "string", "enum": ["auto", "aria", "role"]},
                "interactive": {"type": "boolean"},
                "compact": {"type": "boolean"},
                "max_depth": {"type": "integer", "minimum": 0},
                "efficient": {
                    "type": "boolean",
                    "description": "interactive + compact + depth 6",
                },
                "frame": {"type": "string", "description": "Frame id to scope the snapshot to"},
            },
            "required": ["action"],
        }

    @property
    def scopes(self) -> frozenset[str]:
        return frozenset({"browser", "ui"})

    @property
    def timeout(self) -> float | None:
        return self._timeout

    async def execute(self, action: str, target_id: str | None = None, **kwargs: Any) -> str:
        if action == "tabs":
            return await self._tabs()
        if action == "open":
            tab = await self.driver.open_tab(kwargs.get("url") or "about:blank")
            return f"Opened tab {tab.target_id} ({tab.url})"

        target = await self._target(target_id)
        if action == "navigate":
            url = kwargs.get("url")
            if not url:
                raise ToolError("navigate needs a url")
            self.cache.invalidate(target)
            await self.driver.navigate(target.target_id, url)
            return f"Navigated tab {target.target_id} to {url}. Previous refs are no longer valid."
        if action == "close":
            self.cache.invalidate(target)
            await self.driver.close_tab(target.target_id)
            return f"Closed tab {target.target_id}"
        if action == "snapshot":
            return await self._snapshot(target, kwargs)
        if action == "act":
            return await self._act(target, kwargs)
        raise ToolError(f"Unknown action: {action}")

    async def _tabs(self) -> str:
        tabs = await self.driver.list_tabs()
        if not tabs:
            return "No open tabs. Use action=open."
        return "\n".join(f"{t.target_id}: {t.title or '(untitled)'} - {t.url}" for t in tabs)

    async def _target(self, target_id: str | None) -> BrowserTarget:
        if target_id:
            return BrowserTarget(self.driver.endpoint, target_id)
        tabs = await self.driver.list_tabs()
        if not tabs:
            raise ExecutorFailure("No open tabs", hint="Use action=open with a url first")
        return BrowserTarget(self.driver.endpoint, tabs[0].target_id)

    async def _snapshot(self, target: BrowserTarget, kwargs: dict[str, Any]) -> str:
        overrides: dict[str, Any] = {
            "mode": kwargs.get("mode") or self.default_mode,
            "frame": kwargs.get("frame"),
            "max_chars": self.max_chars,
        }
        for flag in ("interactive", "compact", "max_depth"):
            if kwargs.get(flag) is not None:
                overrides[flag] = kwargs[flag]
        if kwargs.get("efficient"):
            options = SnapshotOptions.efficient(**overrides)
        else:
            options = SnapshotOptions(**overrides)

        snap = await self.builder.snapshot(target, options)
        header = (
            f"Snapshot of tab {target.target_id} ({snap.mode} refs, "
            f"{snap.stats.rendered_refs}/{snap.stats.refs} refs shown)"
        )
        return f"{header}\n{snap.text}"

    async def _act(self, target: BrowserTarget, kwargs: dict[str, Any]) -> str:
        kind = kwargs.get("kind") or "click"
        ref = kwargs.get("ref")
        role_ref = kwargs.get("role_ref")
        if ref is None and role_ref is None:
            if kind != "press":
                raise ToolError(f"act kind={kind} needs a ref")
            return await self.driver.perform(target.target_id, None, "press", key=kwargs.get("key"))

        resolved = self.cache.resolve(target, role_ref if ref is None else ref)
        logger.debug(f"browser act {kind} on {resolved.ref} ({resolved.descriptor.describe()})")
        return await self.driver.perform(
            target.target_id,
            resolved,
            kind,
            text=kwargs.get("text"),
            key=kwargs.get("key"),
        )
