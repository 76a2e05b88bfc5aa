"""
Reference resolver: maps snapshot refs to element locators per browser tab.

Entries are keyed by the stable external identity of a tab (DevTools endpoint
plus target id), never by a driver handle. Each snapshot replaces the entry
for its tab wholesale, so only refs from the latest snapshot resolve.
"""

from __future__ import annotations

import re
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Literal, Union
from urllib.parse import urlsplit, urlunsplit

from loguru import logger

from gatebot.browser.ax import role_key
from gatebot.errors import StaleRef, ToolError, UnknownTarget

RefMode = Literal["aria", "role"]
MODES: tuple[str, ...] = ("aria", "role")

_REF_TOKEN = re.compile(r"^e?(\d+)$")


def normalize_endpoint(endpoint: str) -> str:
    raw = (endpoint or "").strip()
    if not raw:
        raise ValueError("Browser endpoint must not be empty")
    if "://" not in raw:
        raw = f"http://{raw}"
    parts = urlsplit(raw)
    return urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), parts.path.rstrip("/"), "", "")
    )


@dataclass(frozen=True)
class BrowserTarget:
    """One live tab: automation endpoint address plus target id."""

    endpoint: str
    target_id: str

    def __post_init__(self) -> None:
        if not isinstance(self.target_id, str) or not self.target_id.strip():
            raise ValueError("Browser target id must not be empty")
        object.__setattr__(self, "endpoint", normalize_endpoint(self.endpoint))
        object.__setattr__(self, "target_id", self.target_id.strip())

    @property
    def key(self) -> str:
        return f"{self.endpoint}#{self.target_id}"


@dataclass(frozen=True)
class RoleRef:
    """Synthetic ref: re-located by role + accessible name + occurrence index."""

    role: str
    name: str | None = None
    nth: int | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RoleRef":
        role = data.get("role")
        if not isinstance(role, str) or not role.strip():
            raise ToolError("Role ref needs a non-empty 'role'")
        name = data.get("name")
        nth = data.get("nth")
        if nth is not None and (isinstance(nth, bool) or not isinstance(nth, int) or nth < 0):
            raise ToolError("Role ref 'nth' must be a non-negative integer")
        return cls(role=role.strip(), name=(str(name) if name else None), nth=nth)

    def same_element(self, other: "RoleRef") -> bool:
        return (
            role_key(self.role, self.name) == role_key(other.role, other.name)
            and (self.nth or 0) == (other.nth or 0)
        )

    def describe(self) -> str:
        text = self.role
        if self.name:
            text += f' "{self.name}"'
        if self.nth:
            text += f" nth={self.nth}"
        return text


@dataclass(frozen=True)
class AriaRef:
    """Integer ref recorded against the automation layer's own node handle."""

    ref: int
    role: str
    name: str
    backend_node_id: int

    def describe(self) -> str:
        return f'{self.role} "{self.name}"' if self.name else self.role


RefDescriptor = Union[RoleRef, AriaRef]


@dataclass(frozen=True)
class RefCacheEntry:
    target: BrowserTarget
    refs: Mapping[str, RefDescriptor]
    mode: RefMode
    frame_scope: str | None
    snapshot_id: int
    created_at: float


@dataclass(frozen=True)
class ResolvedRef:
    """A locator descriptor handed to the driver at action time."""

    target: BrowserTarget
    ref: str
    mode: RefMode
    descriptor: RefDescriptor
    frame_scope: str | None
    snapshot_id: int

    @property
    def role_ref(self) -> RoleRef | None:
        return self.descriptor if isinstance(self.descriptor, RoleRef) else None

    @property
    def backend_node_id(self) -> int | None:
        if isinstance(self.descriptor, AriaRef):
            return self.descriptor.backend_node_id
        return None


def parse_ref_token(ref: Any, mode: RefMode) -> str:
    """Normalise '12', 'e12', '@e12', 'ref=e12', '[ref=e12]' or 12 into the table key."""
    if isinstance(ref, bool):
        raise ToolError(f"Invalid ref: {ref!r}")
    if isinstance(ref, int):
        number = str(ref)
    elif isinstance(ref, str):
        token = ref.strip().strip("[]").strip()
        if token.startswith("ref="):
            token = token[4:]
        token = token.lstrip("@").strip()
        match = _REF_TOKEN.match(token)
        if not match:
            raise ToolError(f"Invalid ref: {ref!r}", hint="Use a ref from the latest snapshot, e.g. e12")
        number = match.group(1)
    else:
        raise ToolError(f"Invalid ref: {ref!r}")
    return f"e{number}" if mode == "role" else number


class RefCache:
    """
    Per-target ref tables with per-target locking.

    Replacement and resolution for one target are serialised on that
    target's lock; different targets never share a lock.
    """

    def __init__(self, ttl_s: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: dict[str, RefCacheEntry] = {}
        self._counters: dict[str, int] = {}
        self._snapshot_ids: dict[str, int] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, target: BrowserTarget) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(target.key)
            if lock is None:
                lock = self._locks[target.key] = threading.Lock()
            return lock

    def allocate(self, target: BrowserTarget, count: int) -> int:
        """
        Reserve `count` consecutive ref numbers for the next snapshot of `target`.

        The counter only moves forward, so a ref number is never reissued for
        the same tab and an old ref can never alias an element of a newer table.
        """
        with self._lock(target):
            first = self._counters.get(target.key, 0) + 1
            self._counters[target.key] = first + max(0, count) - 1
            return first

    def remember(
        self,
        target: BrowserTarget,
        refs: Mapping[str, RefDescriptor],
        *,
        mode: RefMode,
        frame_scope: str | None = None,
    ) -> RefCacheEntry:
        """Replace the entry for `target` atomically."""
        if mode not in MODES:
            raise ValueError(f"Unknown ref mode: {mode!r}")
        table = MappingProxyType(dict(refs))
        with self._lock(target):
            snapshot_id = self._snapshot_ids.get(target.key, 0) + 1
            self._snapshot_ids[target.key] = snapshot_id
            entry = RefCacheEntry(
                target=target,
                refs=table,
                mode=mode,
                frame_scope=frame_scope,
                snapshot_id=snapshot_id,
                created_at=self._clock(),
            )
            self._entries[target.key] = entry
        logger.debug(
            f"Ref table for {target.key}: {len(table)} {mode} refs (snapshot {snapshot_id})"
        )
        return entry

    def entry(self, target: BrowserTarget) -> RefCacheEntry | None:
        with self._lock(target):
            return self._entries.get(target.key)

    def invalidate(self, target: BrowserTarget) -> bool:
        """Drop the entry for `target` (navigation, tab close, explicit reset)."""
        with self._lock(target):
            dropped = self._entries.pop(target.key, None) is not None
        if dropped:
            logger.debug(f"Ref table for {target.key} invalidated")
        return dropped

    def resolve(self, target: BrowserTarget, ref: Any) -> ResolvedRef:
        """
        Resolve a ref against the current table for `target`.

        Raises:
            UnknownTarget: no snapshot exists for the tab.
            StaleRef: the ref is not in the current table, or the table expired.
        """
        with self._lock(target):
            entry = self._entries.get(target.key)
        if entry is None:
            raise UnknownTarget(
                f"No snapshot has been taken for tab {target.target_id}",
                hint="Take a snapshot of the tab before acting on refs",
            )
        if self.ttl_s is not None and self._clock() - entry.created_at > self.ttl_s:
            raise StaleRef(
                f"Refs for tab {target.target_id} expired",
                hint="Take a new snapshot and use its refs",
            )

        if isinstance(ref, (RoleRef, Mapping)):
            return self._resolve_role(entry, ref)

        token = parse_ref_token(ref, entry.mode)
        descriptor = entry.refs.get(token)
        if descriptor is None:
            raise StaleRef(
                f"Ref {token} is not part of the latest snapshot of tab {target.target_id}",
                hint="Take a new snapshot and use its refs",
            )
        return ResolvedRef(
            target=target,
            ref=token,
            mode=entry.mode,
            descriptor=descriptor,
            frame_scope=entry.frame_scope,
            snapshot_id=entry.snapshot_id,
        )

    def _resolve_role(self, entry: RefCacheEntry, ref: RoleRef | Mapping[str, Any]) -> ResolvedRef:
        wanted = ref if isinstance(ref, RoleRef) else RoleRef.from_mapping(ref)
        for token, descriptor in entry.refs.items():
            if isinstance(descriptor, RoleRef) and descriptor.same_element(wanted):
                return ResolvedRef(
                    target=entry.target,
                    ref=token,
                    mode=entry.mode,
                    descriptor=descriptor,
                    frame_scope=entry.frame_scope,
                    snapshot_id=entry.snapshot_id,
                )
        raise StaleRef(
            f"No element {wanted.describe()} in the latest snapshot of tab {entry.target.target_id}",
            hint="Take a new role snapshot and use its refs",
        )

    def __len__(self) -> int:
        with self._locks_guard:
            return len(self._entries)
