"""
Snapshot builder: textual page structure for the model, plus the ref table.

Two grounding strategies, one per snapshot:

- aria: integer refs for interactive nodes that carry an automation-layer
  node handle, rendered as a flat `role: name [N]` listing.
- role: synthetic `eN` refs backed by (role, name, nth), rendered as an
  indented role tree. Used when node handles are unavailable.

Refs are assigned over the full tree before any filter runs. The interactive,
compact and depth filters only decide which lines are rendered; the full
table is always handed to the RefCache.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, replace
from typing import Literal

from loguru import logger

from gatebot.browser.ax import CONTENT_ROLES, INTERACTIVE_ROLES, AXNode, build_tree, role_key, walk
from gatebot.browser.driver import BrowserDriver
from gatebot.browser.refs import AriaRef, BrowserTarget, RefCache, RefCacheEntry, RefDescriptor, RoleRef

_TRUNCATED_MARKER = "\n[...truncated; take a narrower snapshot (interactive/compact/max_depth)]"


@dataclass(frozen=True)
class SnapshotOptions:
    interactive: bool = False
    compact: bool = False
    max_depth: int | None = None
    mode: Literal["auto", "aria", "role"] = "auto"
    frame: str | None = None
    max_chars: int | None = None

    @classmethod
    def efficient(cls, **overrides) -> "SnapshotOptions":
        """Interactive + compact + bounded depth."""
        return replace(cls(interactive=True, compact=True, max_depth=6), **overrides)


@dataclass(frozen=True)
class SnapshotStats:
    lines: int
    chars: int
    refs: int
    rendered_refs: int


@dataclass(frozen=True)
class Snapshot:
    text: str
    entry: RefCacheEntry
    stats: SnapshotStats
    truncated: bool = False

    @property
    def mode(self) -> str:
        return self.entry.mode

    @property
    def target(self) -> BrowserTarget:
        return self.entry.target


def _wants_role_ref(node: AXNode) -> bool:
    role = node.role.lower()
    if role in INTERACTIVE_ROLES:
        return True
    return role in CONTENT_ROLES and bool(node.name)


def _quote(text: str) -> str:
    return '"' + text.replace('"', '\\"') + '"'


class SnapshotBuilder:
    """Takes snapshots through the driver and records their ref tables."""

    def __init__(self, driver: BrowserDriver, cache: RefCache):
        self.driver = driver
        self.cache = cache

    async def snapshot(
        self, target: BrowserTarget, options: SnapshotOptions | None = None
    ) -> Snapshot:
        options = options or SnapshotOptions()
        nodes = await self.driver.accessibility_tree(target.target_id, frame_id=options.frame)
        ordered = [node for node, _depth in walk(nodes)]
        mode = self._pick_mode(ordered, options.mode)

        if mode == "aria":
            refs_by_node, table = self._assign_aria_refs(target, ordered)
        else:
            refs_by_node, table = self._assign_role_refs(target, ordered)

        # Always recorded, even when the rendered text ends up empty
        entry = self.cache.remember(target, table, mode=mode, frame_scope=options.frame)

        if mode == "aria":
            lines, rendered_refs = self._render_aria(nodes, refs_by_node, options)
        else:
            lines, rendered_refs = self._render_role(nodes, refs_by_node, table, options)

        text = "\n".join(lines)
        if not text:
            text = "(no interactive elements)" if options.interactive else "(empty page)"

        truncated = False
        if options.max_chars and len(text) > options.max_chars:
            cut = text.rfind("\n", 0, options.max_chars)
            text = text[: cut if cut > 0 else options.max_chars] + _TRUNCATED_MARKER
            truncated = True

        stats = SnapshotStats(
            lines=len(lines),
            chars=len(text),
            refs=len(table),
            rendered_refs=rendered_refs,
        )
        logger.debug(
            f"Snapshot {target.key}: mode={mode} refs={stats.refs} rendered={stats.rendered_refs} chars={stats.chars}"
        )
        return Snapshot(text=text, entry=entry, stats=stats, truncated=truncated)

    @staticmethod
    def _pick_mode(ordered: list[AXNode], requested: str) -> str:
        if requested == "role":
            return "role"
        interactive = [n for n in ordered if n.interactive]
        has_handles = bool(interactive) and all(n.backend_node_id is not None for n in interactive)
        if requested == "aria" and not has_handles:
            logger.warning("aria refs unavailable for this page (missing node handles); using role refs")
        return "aria" if has_handles else "role"

    def _assign_aria_refs(
        self, target: BrowserTarget, ordered: list[AXNode]
    ) -> tuple[dict[str, str], dict[str, RefDescriptor]]:
        candidates = [n for n in ordered if n.interactive and n.backend_node_id is not None]
        first = self.cache.allocate(target, len(candidates))
        refs_by_node: dict[str, str] = {}
        table: dict[str, RefDescriptor] = {}
        for offset, node in enumerate(candidates):
            number = first + offset
            token = str(number)
            refs_by_node[node.node_id] = token
            table[token] = AriaRef(
                ref=number, role=node.role, name=node.name, backend_node_id=node.backend_node_id
            )
        return refs_by_node, table

    def _assign_role_refs(
        self, target: BrowserTarget, ordered: list[AXNode]
    ) -> tuple[dict[str, str], dict[str, RefDescriptor]]:
        candidates = [n for n in ordered if _wants_role_ref(n)]
        totals = Counter(role_key(n.role, n.name) for n in candidates)
        seen: Counter[tuple[str, str]] = Counter()
        first = self.cache.allocate(target, len(candidates))
        refs_by_node: dict[str, str] = {}
        table: dict[str, RefDescriptor] = {}
        for offset, node in enumerate(candidates):
            key = role_key(node.role, node.name)
            index = seen[key]
            seen[key] += 1
            token = f"e{first + offset}"
            refs_by_node[node.node_id] = token
            table[token] = RoleRef(
                role=node.role,
                name=node.name or None,
                nth=index if totals[key] > 1 else None,
            )
        return refs_by_node, table

    @staticmethod
    def _states(node: AXNode) -> str:
        parts = []
        for prop in ("checked", "selected", "expanded", "disabled", "focused"):
            value = node.properties.get(prop)
            if value is True or value == "true":
                parts.append(prop)
            elif prop == "checked" and value == "mixed":
                parts.append("mixed")
        return "".join(f" [{p}]" for p in parts)

    def _render_aria(
        self,
        nodes: list[AXNode],
        refs_by_node: dict[str, str],
        options: SnapshotOptions,
    ) -> tuple[list[str], int]:
        lines: list[str] = []
        rendered = 0
        for node, depth in walk(nodes):
            if options.max_depth is not None and depth > options.max_depth:
                continue
            ref = refs_by_node.get(node.node_id)
            if ref is None and (options.interactive or options.compact or not node.name):
                continue
            label = node.role or "node"
            desc = node.name
            if node.value:
                desc = f"{desc} = {_quote(node.value)}" if desc else _quote(node.value)
            line = f"{label}: {desc}" if desc else label
            line += self._states(node)
            if ref is not None:
                line += f" [{ref}]"
                rendered += 1
            lines.append(line)
        return lines, rendered

    def _render_role(
        self,
        nodes: list[AXNode],
        refs_by_node: dict[str, str],
        table: dict[str, RefDescriptor],
        options: SnapshotOptions,
    ) -> tuple[list[str], int]:
        roots, children = build_tree(nodes)
        has_ref: dict[str, bool] = {}

        def subtree_has_ref(node: AXNode) -> bool:
            cached = has_ref.get(node.node_id)
            if cached is not None:
                return cached
            has_ref[node.node_id] = False
            found = node.node_id in refs_by_node or any(
                subtree_has_ref(child) for child in children.get(node.node_id, [])
            )
            has_ref[node.node_id] = found
            return found

        lines: list[str] = []
        rendered = 0
        stack: list[tuple[AXNode, int, int]] = [(root, 0, 0) for root in reversed(roots)]
        while stack:
            node, depth, indent = stack.pop()
            if options.max_depth is not None and depth > options.max_depth:
                continue
            ref = refs_by_node.get(node.node_id)
            if options.compact and not subtree_has_ref(node):
                continue
            if options.interactive:
                show = ref is not None and node.interactive
            elif options.compact:
                show = ref is not None or bool(node.name)
            else:
                show = True

            if show:
                lines.append("  " * indent + self._role_line(node, ref, table))
                if ref is not None:
                    rendered += 1
            child_indent = indent + 1 if show and not options.interactive else indent
            for child in reversed(children.get(node.node_id, [])):
                stack.append((child, depth + 1, child_indent))
        return lines, rendered

    def _role_line(self, node: AXNode, ref: str | None, table: dict[str, RefDescriptor]) -> str:
        role = node.role or "node"
        if role == "StaticText":
            return f"- text: {_quote(node.name)}"
        line = f"- {role}"
        if node.name:
            line += f" {_quote(node.name)}"
        line += self._states(node)
        if ref is not None:
            line += f" [ref={ref}]"
            descriptor = table.get(ref)
            if isinstance(descriptor, RoleRef) and descriptor.nth:
                line += f" [nth={descriptor.nth}]"
        if node.value:
            line += f": {_quote(node.value)}"
        return line
