"""Browser automation: ref cache, snapshot builder and DevTools driver."""

from gatebot.browser.refs import BrowserTarget, RefCache, ResolvedRef, RoleRef
from gatebot.browser.snapshot import Snapshot, SnapshotBuilder, SnapshotOptions

__all__ = [
    "BrowserTarget",
    "RefCache",
    "ResolvedRef",
    "RoleRef",
    "Snapshot",
    "SnapshotBuilder",
    "SnapshotOptions",
]
