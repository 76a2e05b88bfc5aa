"""Chrome DevTools Protocol driver for the browser tool."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from urllib.parse import quote

import httpx
from loguru import logger
from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from gatebot.browser.ax import AXNode, locate_role, parse_ax_nodes
from gatebot.browser.driver import ActionKind, TabInfo
from gatebot.browser.refs import ResolvedRef, normalize_endpoint
from gatebot.errors import ExecutorFailure

_ENDPOINT_HINT = "Start Chrome with --remote-debugging-port and check tools.browser.endpoint"
_RESNAPSHOT_HINT = "The page changed since the snapshot; take a new snapshot"


class CDPSession:
    """
    One DevTools WebSocket connection to a page.

    The driver opens a fresh session for every call, so two calls against the
    same tab never share a session object.
    """

    def __init__(self, ws: Any, timeout: float):
        self._ws = ws
        self._timeout = timeout
        self._next_id = 0

    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self._next_id += 1
        msg_id = self._next_id
        await self._ws.send(json.dumps({"id": msg_id, "method": method, "params": params or {}}))
        while True:
            raw = await asyncio.wait_for(self._ws.recv(), timeout=self._timeout)
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if data.get("id") != msg_id:
                # Protocol events interleave with responses
                continue
            if "error" in data:
                err = data.get("error") or {}
                raise ExecutorFailure(f"{method} failed: {err.get('message') or err}")
            result = data.get("result")
            return result if isinstance(result, dict) else {}


class CDPDriver:
    """BrowserDriver implementation over the DevTools HTTP + WebSocket endpoints."""

    def __init__(self, endpoint: str, timeout: float = 20.0):
        self.endpoint = normalize_endpoint(endpoint)
        self.timeout = timeout

    async def _http(self, method: str, path: str) -> Any:
        url = f"{self.endpoint}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url)
        except httpx.HTTPError as e:
            raise ExecutorFailure(
                f"Browser endpoint {self.endpoint} unreachable: {e}", hint=_ENDPOINT_HINT
            ) from e
        if response.status_code >= 400:
            raise ExecutorFailure(
                f"Browser endpoint returned HTTP {response.status_code} for {path}"
            )
        try:
            return response.json()
        except ValueError:
            return response.text

    async def list_tabs(self) -> list[TabInfo]:
        data = await self._http("GET", "/json/list")
        tabs: list[TabInfo] = []
        for item in data if isinstance(data, list) else []:
            if not isinstance(item, dict) or item.get("type") != "page":
                continue
            target_id = item.get("id")
            if not isinstance(target_id, str) or not target_id:
                continue
            tabs.append(
                TabInfo(
                    target_id=target_id,
                    url=str(item.get("url") or ""),
                    title=str(item.get("title") or ""),
                    ws_url=item.get("webSocketDebuggerUrl"),
                )
            )
        return tabs

    async def open_tab(self, url: str = "about:blank") -> TabInfo:
        data = await self._http("PUT", f"/json/new?{quote(url, safe=':/?&=#%')}")
        if not isinstance(data, dict) or not data.get("id"):
            raise ExecutorFailure("Browser did not report the new tab")
        return TabInfo(
            target_id=str(data["id"]),
            url=str(data.get("url") or url),
            title=str(data.get("title") or ""),
            ws_url=data.get("webSocketDebuggerUrl"),
        )

    async def close_tab(self, target_id: str) -> None:
        await self._http("GET", f"/json/close/{quote(target_id)}")

    async def _ws_url(self, target_id: str) -> str:
        for tab in await self.list_tabs():
            if tab.target_id == target_id:
                if tab.ws_url:
                    return tab.ws_url
                break
        raise ExecutorFailure(
            f"Tab {target_id} not found at {self.endpoint}",
            hint="List tabs again; the tab may have been closed",
        )

    @asynccontextmanager
    async def session(self, target_id: str) -> AsyncIterator[CDPSession]:
        ws_url = await self._ws_url(target_id)
        try:
            async with connect(ws_url, max_size=None, open_timeout=self.timeout) as ws:
                yield CDPSession(ws, self.timeout)
        except (OSError, WebSocketException) as e:
            raise ExecutorFailure(f"DevTools connection to tab {target_id} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise ExecutorFailure(f"DevTools call on tab {target_id} timed out") from e

    async def navigate(self, target_id: str, url: str) -> None:
        async with self.session(target_id) as cdp:
            result = await cdp.send("Page.navigate", {"url": url})
            if error_text := result.get("errorText"):
                raise ExecutorFailure(f"Navigation to {url} failed: {error_text}")
            await self._wait_ready(cdp)

    async def _wait_ready(self, cdp: CDPSession, attempts: int = 40) -> None:
        for _ in range(attempts):
            state = await cdp.send(
                "Runtime.evaluate", {"expression": "document.readyState", "returnByValue": True}
            )
            if (state.get("result") or {}).get("value") == "complete":
                return
            await asyncio.sleep(0.25)
        logger.debug("Page did not reach readyState=complete; continuing")

    async def accessibility_tree(
        self, target_id: str, frame_id: str | None = None
    ) -> list[AXNode]:
        params: dict[str, Any] = {}
        if frame_id:
            params["frameId"] = frame_id
        async with self.session(target_id) as cdp:
            await cdp.send("Accessibility.enable")
            result = await cdp.send("Accessibility.getFullAXTree", params)
        nodes = result.get("nodes")
        if not isinstance(nodes, list):
            raise ExecutorFailure("Accessibility.getFullAXTree returned unexpected payload")
        return parse_ax_nodes(nodes)

    async def perform(
        self,
        target_id: str,
        resolved: ResolvedRef | None,
        action: ActionKind,
        *,
        text: str | None = None,
        key: str | None = None,
    ) -> str:
        async with self.session(target_id) as cdp:
            if action == "press" and resolved is None:
                await self._press(cdp, key or "Enter")
                return f"Pressed {key or 'Enter'}"
            if resolved is None:
                raise ExecutorFailure(f"Action '{action}' needs a ref")

            backend_id = await self._backend_node_id(cdp, resolved)
            await cdp.send("DOM.scrollIntoViewIfNeeded", {"backendNodeId": backend_id})

            if action in ("click", "hover"):
                x, y = await self._center(cdp, backend_id)
                await cdp.send("Input.dispatchMouseEvent", {"type": "mouseMoved", "x": x, "y": y})
                if action == "click":
                    for event in ("mousePressed", "mouseReleased"):
                        await cdp.send(
                            "Input.dispatchMouseEvent",
                            {"type": event, "x": x, "y": y, "button": "left", "clickCount": 1},
                        )
            elif action == "type":
                await cdp.send("DOM.focus", {"backendNodeId": backend_id})
                await cdp.send("Input.insertText", {"text": text or ""})
            elif action == "press":
                await cdp.send("DOM.focus", {"backendNodeId": backend_id})
                await self._press(cdp, key or "Enter")
            else:
                raise ExecutorFailure(f"Unsupported action: {action}")
        return f"{action} on ref {resolved.ref} done"

    async def _backend_node_id(self, cdp: CDPSession, resolved: ResolvedRef) -> int:
        if resolved.backend_node_id is not None:
            return resolved.backend_node_id
        role_ref = resolved.role_ref
        if role_ref is None:
            raise ExecutorFailure(f"Ref {resolved.ref} has no locator")
        params: dict[str, Any] = {}
        if resolved.frame_scope:
            params["frameId"] = resolved.frame_scope
        result = await cdp.send("Accessibility.getFullAXTree", params)
        node = locate_role(parse_ax_nodes(result.get("nodes") or []), role_ref)
        if node is None or node.backend_node_id is None:
            raise ExecutorFailure(
                f"Element {role_ref.describe()} for ref {resolved.ref} is no longer on the page",
                hint=_RESNAPSHOT_HINT,
            )
        return node.backend_node_id

    async def _center(self, cdp: CDPSession, backend_id: int) -> tuple[float, float]:
        box = await cdp.send("DOM.getBoxModel", {"backendNodeId": backend_id})
        quad = (box.get("model") or {}).get("content") or []
        if len(quad) < 8:
            raise ExecutorFailure("Element has no layout box", hint=_RESNAPSHOT_HINT)
        xs, ys = quad[0::2], quad[1::2]
        return sum(xs) / len(xs), sum(ys) / len(ys)

    async def _press(self, cdp: CDPSession, key: str) -> None:
        for event in ("keyDown", "keyUp"):
            await cdp.send("Input.dispatchKeyEvent", {"type": event, "key": key})
