import asyncio
from typing import Any

import pytest

from gatebot.agent.tools.base import Tool
from gatebot.browser.ax import AXNode
from gatebot.browser.driver import TabInfo
from gatebot.browser.refs import ResolvedRef
from gatebot.providers.base import LLMProvider, LLMResponse, ToolCallRequest


class ScriptedProvider(LLMProvider):
    """Replays a fixed list of engine turns and records what it was sent."""

    def __init__(self, turns: list[LLMResponse], provider_name: str = "openai"):
        super().__init__(api_key="test")
        self.turns = list(turns)
        self.calls: list[dict[str, Any]] = []
        self._provider_name = provider_name

    @property
    def name(self) -> str:
        return self._provider_name

    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        self.calls.append({"messages": list(messages), "tools": tools, "model": model})
        if not self.turns:
            return LLMResponse(content="done")
        return self.turns.pop(0)

    def get_default_model(self) -> str:
        return "test-model"

    def offered(self, index: int = 0) -> list[str]:
        tools = self.calls[index]["tools"] or []
        return [t["function"]["name"] for t in tools]


def call(call_id: str, name: str, **arguments: Any) -> ToolCallRequest:
    return ToolCallRequest(id=call_id, name=name, arguments=arguments)


def turn(*calls: ToolCallRequest, content: str | None = None) -> LLMResponse:
    return LLMResponse(content=content, tool_calls=list(calls))


class RecordingTool(Tool):
    """Configurable test tool that logs start/finish order."""

    def __init__(
        self,
        name: str,
        *,
        delay: float = 0.0,
        safe: bool = False,
        scopes: frozenset[str] = frozenset(),
        timeout: float | None = None,
        fail: Exception | None = None,
        log: list[str] | None = None,
    ):
        self._name = name
        self.delay = delay
        self.safe = safe
        self._scopes = scopes
        self._timeout = timeout
        self.fail = fail
        self.log = log if log is not None else []

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return f"{self._name} test tool"

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {"value": {"type": "string"}}}

    @property
    def scopes(self) -> frozenset[str]:
        return self._scopes

    @property
    def timeout(self) -> float | None:
        return self._timeout

    @property
    def concurrency_safe(self) -> bool:
        return self.safe

    async def execute(self, value: str = "", **kwargs: Any) -> str:
        self.log.append(f"start:{self._name}:{value}")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        self.log.append(f"end:{self._name}:{value}")
        return f"{self._name}:{value}"


def ax(
    node_id: str,
    role: str,
    name: str = "",
    *,
    parent: str | None = None,
    children: tuple[str, ...] = (),
    backend: int | None = None,
    **properties: Any,
) -> AXNode:
    return AXNode(
        node_id=node_id,
        role=role,
        name=name,
        parent_id=parent,
        child_ids=children,
        backend_node_id=backend,
        properties=properties,
    )


def three_buttons(with_handles: bool = False) -> list[AXNode]:
    """Form with three buttons, two of them named 'Add'."""
    def handle(n: int) -> int | None:
        return n if with_handles else None

    return [
        ax("1", "RootWebArea", "Shop", children=("2", "6")),
        ax("2", "form", "", parent="1", children=("3", "4", "5")),
        ax("3", "button", "Add", parent="2", backend=handle(103)),
        ax("4", "button", "Add", parent="2", backend=handle(104)),
        ax("5", "button", "Remove", parent="2", backend=handle(105)),
        ax("6", "heading", "Cart", parent="1", children=("7",)),
        ax("7", "StaticText", "Cart", parent="6"),
    ]


class FakeDriver:
    """In-memory browser driver: one or more tabs with fixed AX trees."""

    def __init__(self, trees: dict[str, list[AXNode]] | None = None, endpoint: str = "http://127.0.0.1:9222"):
        self.endpoint = endpoint
        self.trees = trees if trees is not None else {"T1": three_buttons()}
        self.performed: list[tuple[str, ResolvedRef | None, str, dict[str, Any]]] = []
        self.navigations: list[tuple[str, str]] = []
        self.closed: list[str] = []

    async def list_tabs(self) -> list[TabInfo]:
        return [TabInfo(target_id=tid, url="https://shop.example/", title="Shop") for tid in self.trees]

    async def open_tab(self, url: str = "about:blank") -> TabInfo:
        tid = f"T{len(self.trees) + 1}"
        self.trees[tid] = []
        return TabInfo(target_id=tid, url=url)

    async def close_tab(self, target_id: str) -> None:
        self.closed.append(target_id)
        self.trees.pop(target_id, None)

    async def navigate(self, target_id: str, url: str) -> None:
        self.navigations.append((target_id, url))

    async def accessibility_tree(self, target_id: str, frame_id: str | None = None) -> list[AXNode]:
        return list(self.trees.get(target_id, []))

    async def perform(self, target_id, resolved, action, *, text=None, key=None) -> str:
        self.performed.append((target_id, resolved, action, {"text": text, "key": key}))
        what = resolved.descriptor.describe() if resolved else "page"
        return f"{action} {what}"


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()
