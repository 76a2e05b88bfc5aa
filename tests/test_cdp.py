import contextlib
import json
from http import HTTPStatus
from typing import Any

import pytest
from websockets.asyncio.server import ServerConnection, serve
from websockets.datastructures import Headers
from websockets.http11 import Request, Response

from gatebot.browser.cdp import CDPDriver
from gatebot.browser.refs import BrowserTarget, RefCache
from gatebot.browser.snapshot import SnapshotBuilder, SnapshotOptions
from gatebot.errors import ExecutorFailure

AX_TREE = [
    {"nodeId": "1", "role": {"value": "RootWebArea"}, "name": {"value": "Shop"}, "childIds": ["2", "3", "4"]},
    {"nodeId": "2", "parentId": "1", "role": {"value": "button"}, "name": {"value": "Add"}, "backendDOMNodeId": 102},
    {"nodeId": "3", "parentId": "1", "role": {"value": "button"}, "name": {"value": "Add"}, "backendDOMNodeId": 103},
    {"nodeId": "4", "parentId": "1", "role": {"value": "textbox"}, "name": {"value": "Qty"}, "backendDOMNodeId": 104},
]


class FakeDevTools:
    """Serves /json/list over HTTP and answers CDP commands over the page socket."""

    def __init__(self, nodes: list[dict[str, Any]]):
        self.nodes = nodes
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.port = 0

    def _json(self, payload: Any) -> Response:
        body = json.dumps(payload).encode()
        headers = Headers([("Content-Type", "application/json"), ("Content-Length", str(len(body)))])
        return Response(HTTPStatus.OK.value, "OK", headers, body)

    async def http(self, connection: ServerConnection, request: Request) -> Response | None:
        if request.path == "/json/list":
            return self._json(
                [
                    {
                        "id": "T1",
                        "type": "page",
                        "url": "https://shop.example/",
                        "title": "Shop",
                        "webSocketDebuggerUrl": f"ws://127.0.0.1:{self.port}/devtools/page/T1",
                    },
                    {"id": "W1", "type": "service_worker", "url": "https://shop.example/sw.js"},
                ]
            )
        return None

    async def page(self, ws: ServerConnection) -> None:
        async for raw in ws:
            msg = json.loads(raw)
            method, params = msg["method"], msg.get("params") or {}
            self.calls.append((method, params))
            # Unsolicited event first; the client must skip it
            await ws.send(json.dumps({"method": "Page.frameNavigated", "params": {}}))
            if method == "Accessibility.getFullAXTree":
                result: dict[str, Any] = {"nodes": self.nodes}
            elif method == "DOM.getBoxModel":
                result = {"model": {"content": [0, 0, 10, 0, 10, 20, 0, 20]}}
            elif method == "Runtime.evaluate":
                result = {"result": {"type": "string", "value": "complete"}}
            elif method == "Page.navigate" and "bad" in params.get("url", ""):
                result = {"errorText": "net::ERR_NAME_NOT_RESOLVED"}
            else:
                result = {}
            await ws.send(json.dumps({"id": msg["id"], "result": result}))


@contextlib.asynccontextmanager
async def devtools(nodes=AX_TREE):
    fake = FakeDevTools(nodes)
    async with serve(fake.page, "127.0.0.1", 0, process_request=fake.http) as server:
        fake.port = list(server.sockets)[0].getsockname()[1]
        yield fake, CDPDriver(f"127.0.0.1:{fake.port}", timeout=5.0)


@pytest.mark.asyncio
async def test_list_tabs_keeps_pages_only() -> None:
    async with devtools() as (_, driver):
        tabs = await driver.list_tabs()
    assert [t.target_id for t in tabs] == ["T1"]
    assert tabs[0].title == "Shop"


@pytest.mark.asyncio
async def test_role_snapshot_then_click_relocates_by_occurrence() -> None:
    async with devtools() as (fake, driver):
        cache = RefCache()
        target = BrowserTarget(driver.endpoint, "T1")
        snap = await SnapshotBuilder(driver, cache).snapshot(target, SnapshotOptions(mode="role"))
        assert '[ref=e2] [nth=1]' in snap.text

        resolved = cache.resolve(target, "e2")
        message = await driver.perform("T1", resolved, "click")

    assert message == "click on ref e2 done"
    methods = [m for m, _ in fake.calls]
    assert methods[:2] == ["Accessibility.enable", "Accessibility.getFullAXTree"]
    scroll = next(p for m, p in fake.calls if m == "DOM.scrollIntoViewIfNeeded")
    assert scroll == {"backendNodeId": 103}
    presses = [p for m, p in fake.calls if m == "Input.dispatchMouseEvent"]
    assert [p["type"] for p in presses] == ["mouseMoved", "mousePressed", "mouseReleased"]
    assert (presses[1]["x"], presses[1]["y"]) == (5, 10)


@pytest.mark.asyncio
async def test_aria_ref_types_into_node_handle() -> None:
    async with devtools() as (fake, driver):
        cache = RefCache()
        target = BrowserTarget(driver.endpoint, "T1")
        await SnapshotBuilder(driver, cache).snapshot(target)
        await driver.perform("T1", cache.resolve(target, "3"), "type", text="2")

    assert ("DOM.focus", {"backendNodeId": 104}) in fake.calls
    assert ("Input.insertText", {"text": "2"}) in fake.calls


@pytest.mark.asyncio
async def test_vanished_element_and_failed_navigation() -> None:
    async with devtools() as (fake, driver):
        cache = RefCache()
        target = BrowserTarget(driver.endpoint, "T1")
        await SnapshotBuilder(driver, cache).snapshot(target, SnapshotOptions(mode="role"))
        resolved = cache.resolve(target, "e2")

        fake.nodes = AX_TREE[:2]
        with pytest.raises(ExecutorFailure, match="no longer on the page"):
            await driver.perform("T1", resolved, "click")

        with pytest.raises(ExecutorFailure, match="ERR_NAME_NOT_RESOLVED"):
            await driver.navigate("T1", "https://bad.example/")

        with pytest.raises(ExecutorFailure, match="not found"):
            await driver.accessibility_tree("T9")


@pytest.mark.asyncio
async def test_unreachable_endpoint() -> None:
    driver = CDPDriver("127.0.0.1:9", timeout=1.0)
    with pytest.raises(ExecutorFailure) as exc:
        await driver.list_tabs()
    assert exc.value.hint
