"""
Accessibility (AX) tree model shared by the snapshot builder and the driver.

The automation layer hands back raw CDP AX nodes; everything above this
module works on `AXNode` and on the document-order walk defined here, so the
order used to assign refs is the same order used to re-locate them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterator

if TYPE_CHECKING:
    from gatebot.browser.refs import RoleRef

INTERACTIVE_ROLES = frozenset(
    {
        "button",
        "checkbox",
        "combobox",
        "link",
        "listbox",
        "menuitem",
        "menuitemcheckbox",
        "menuitemradio",
        "option",
        "radio",
        "searchbox",
        "slider",
        "spinbutton",
        "switch",
        "tab",
        "textbox",
        "treeitem",
    }
)

CONTENT_ROLES = frozenset(
    {
        "alert",
        "article",
        "cell",
        "columnheader",
        "dialog",
        "gridcell",
        "heading",
        "img",
        "listitem",
        "main",
        "navigation",
        "region",
        "rowheader",
    }
)

# Pure layout noise; skipped like ignored nodes
_SKIPPED_ROLES = frozenset({"InlineTextBox", "LineBreak"})


@dataclass(frozen=True)
class AXNode:
    node_id: str
    role: str
    name: str = ""
    parent_id: str | None = None
    child_ids: tuple[str, ...] = ()
    backend_node_id: int | None = None
    ignored: bool = False
    value: str | None = None
    properties: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def interactive(self) -> bool:
        return self.role.lower() in INTERACTIVE_ROLES


def _ax_value(value: Any) -> Any:
    """CDP AXValue is usually a dict with {type,value}. Return the underlying value."""
    if isinstance(value, dict) and "value" in value:
        return value.get("value")
    return value


def parse_ax_nodes(raw_nodes: list[Any]) -> list[AXNode]:
    """Convert `Accessibility.getFullAXTree` nodes into AXNode objects."""
    out: list[AXNode] = []
    for raw in raw_nodes or []:
        if not isinstance(raw, dict) or "nodeId" not in raw:
            continue
        props: dict[str, Any] = {}
        for p in raw.get("properties") or []:
            if isinstance(p, dict) and isinstance(p.get("name"), str):
                props[p["name"]] = _ax_value(p.get("value"))
        backend = raw.get("backendDOMNodeId")
        value = _ax_value(raw.get("value"))
        out.append(
            AXNode(
                node_id=str(raw["nodeId"]),
                role=str(_ax_value(raw.get("role")) or ""),
                name=" ".join(str(_ax_value(raw.get("name")) or "").split()),
                parent_id=str(raw["parentId"]) if raw.get("parentId") is not None else None,
                child_ids=tuple(str(c) for c in raw.get("childIds") or []),
                backend_node_id=int(backend) if isinstance(backend, (int, float)) else None,
                ignored=bool(raw.get("ignored")),
                value=str(value) if value not in (None, "") else None,
                properties=props,
            )
        )
    return out


def build_tree(nodes: list[AXNode]) -> tuple[list[AXNode], dict[str, list[AXNode]]]:
    """
    Return (roots, children) with ignored and layout-only nodes spliced out.

    Children of a skipped node are promoted to its nearest kept ancestor, in
    place, so document order is preserved.
    """
    by_id = {n.node_id: n for n in nodes}

    def skipped(node: AXNode) -> bool:
        return node.ignored or node.role in _SKIPPED_ROLES

    def kept_children(node: AXNode) -> list[AXNode]:
        out: list[AXNode] = []
        for cid in node.child_ids:
            child = by_id.get(cid)
            if child is None:
                continue
            if skipped(child):
                out.extend(kept_children(child))
            else:
                out.append(child)
        return out

    raw_roots = [n for n in nodes if n.parent_id is None or n.parent_id not in by_id]
    roots: list[AXNode] = []
    for node in raw_roots:
        if skipped(node):
            roots.extend(kept_children(node))
        else:
            roots.append(node)

    children: dict[str, list[AXNode]] = {}
    for node in nodes:
        if not skipped(node):
            children[node.node_id] = kept_children(node)
    return roots, children


def walk(nodes: list[AXNode]) -> Iterator[tuple[AXNode, int]]:
    """Yield (node, depth) in document order (pre-order), skipping ignored nodes."""
    roots, children = build_tree(nodes)
    stack: list[tuple[AXNode, int]] = [(root, 0) for root in reversed(roots)]
    seen: set[str] = set()
    while stack:
        node, depth = stack.pop()
        if node.node_id in seen:
            continue
        seen.add(node.node_id)
        yield node, depth
        for child in reversed(children.get(node.node_id, [])):
            stack.append((child, depth + 1))


def _norm(text: str | None) -> str:
    return " ".join((text or "").split()).casefold()


def role_key(role: str | None, name: str | None) -> tuple[str, str]:
    """Identity of an element for occurrence counting and re-location."""
    return _norm(role), _norm(name)


def locate_role(nodes: list[AXNode], role_ref: "RoleRef") -> AXNode | None:
    """Re-locate an element by role + accessible name + occurrence index, in document order."""
    key = role_key(role_ref.role, role_ref.name)
    matches = [node for node, _depth in walk(nodes) if role_key(node.role, node.name) == key]
    index = role_ref.nth or 0
    if index >= len(matches):
        return None
    return matches[index]
