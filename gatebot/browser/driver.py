"""Interface of the browser automation layer the core depends on."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Protocol

if TYPE_CHECKING:
    from gatebot.browser.ax import AXNode
    from gatebot.browser.refs import ResolvedRef

ActionKind = Literal["click", "type", "press", "hover"]


@dataclass(frozen=True)
class TabInfo:
    target_id: str
    url: str = ""
    title: str = ""
    ws_url: str | None = None


class BrowserDriver(Protocol):
    """
    Automation layer contract.

    Implementations may hand back a different in-process handle for the same
    live tab on every call; callers identify tabs only by (endpoint, target_id).
    """

    endpoint: str

    async def list_tabs(self) -> list[TabInfo]: ...

    async def open_tab(self, url: str = "about:blank") -> TabInfo: ...

    async def close_tab(self, target_id: str) -> None: ...

    async def navigate(self, target_id: str, url: str) -> None: ...

    async def accessibility_tree(
        self, target_id: str, frame_id: str | None = None
    ) -> list[AXNode]: ...

    async def perform(
        self,
        target_id: str,
        resolved: ResolvedRef | None,
        action: ActionKind,
        *,
        text: str | None = None,
        key: str | None = None,
    ) -> str: ...
