from dataclasses import replace

import pytest

from conftest import FakeDriver, ax, three_buttons
from gatebot.browser.ax import locate_role, parse_ax_nodes, walk
from gatebot.browser.refs import BrowserTarget, RefCache, RoleRef
from gatebot.browser.snapshot import SnapshotBuilder, SnapshotOptions
from gatebot.errors import StaleRef

TARGET = BrowserTarget("http://127.0.0.1:9222", "T1")


def builder_for(nodes, cache: RefCache | None = None) -> SnapshotBuilder:
    return SnapshotBuilder(FakeDriver({"T1": nodes}), cache if cache is not None else RefCache())


@pytest.mark.asyncio
async def test_role_snapshot_assigns_nth_for_duplicates() -> None:
    cache = RefCache()
    snap = await builder_for(three_buttons(), cache).snapshot(TARGET, SnapshotOptions(mode="role"))

    assert snap.mode == "role"
    assert dict(snap.entry.refs) == {
        "e1": RoleRef("button", "Add", 0),
        "e2": RoleRef("button", "Add", 1),
        "e3": RoleRef("button", "Remove", None),
        "e4": RoleRef("heading", "Cart", None),
    }
    assert snap.text.splitlines() == [
        '- RootWebArea "Shop"',
        "  - form",
        '    - button "Add" [ref=e1]',
        '    - button "Add" [ref=e2] [nth=1]',
        '    - button "Remove" [ref=e3]',
        '  - heading "Cart" [ref=e4]',
        '    - text: "Cart"',
    ]

    resolved = cache.resolve(TARGET, {"role": "button", "name": "Add", "nth": 1})
    assert resolved.ref == "e2"
    node = locate_role(three_buttons(), resolved.role_ref)
    assert node is not None and node.node_id == "4"


@pytest.mark.asyncio
async def test_names_differing_only_by_case_count_as_one_element_kind() -> None:
    nodes = [
        ax("1", "RootWebArea", "Shop", children=("2", "3")),
        ax("2", "button", "Add", parent="1"),
        ax("3", "button", "add", parent="1"),
    ]
    cache = RefCache()
    await builder_for(nodes, cache).snapshot(TARGET, SnapshotOptions(mode="role"))

    second = cache.resolve(TARGET, "e2")
    assert second.descriptor == RoleRef("button", "add", 1)
    assert locate_role(nodes, second.role_ref).node_id == "3"
    assert locate_role(nodes, cache.resolve(TARGET, "e1").role_ref).node_id == "2"
    assert cache.resolve(TARGET, {"role": "button", "name": "ADD", "nth": 1}).ref == "e2"


@pytest.mark.asyncio
async def test_interactive_filter_hides_lines_but_keeps_full_table() -> None:
    cache = RefCache()
    snap = await builder_for(three_buttons(), cache).snapshot(
        TARGET, SnapshotOptions(mode="role", interactive=True)
    )

    assert snap.text.splitlines() == [
        '- button "Add" [ref=e1]',
        '- button "Add" [ref=e2] [nth=1]',
        '- button "Remove" [ref=e3]',
    ]
    assert snap.stats.refs == 4
    assert snap.stats.rendered_refs == 3
    # The heading was not rendered, but its ref still resolves
    assert cache.resolve(TARGET, "e4").descriptor.role == "heading"


@pytest.mark.asyncio
async def test_filters_do_not_change_ref_assignment() -> None:
    plain = await builder_for(three_buttons()).snapshot(TARGET, SnapshotOptions(mode="role"))
    narrow = await builder_for(three_buttons()).snapshot(
        TARGET, SnapshotOptions(mode="role", interactive=True, compact=True, max_depth=1)
    )
    assert dict(plain.entry.refs) == dict(narrow.entry.refs)


@pytest.mark.asyncio
async def test_compact_and_depth_filters() -> None:
    compact = await builder_for(three_buttons()).snapshot(
        TARGET, SnapshotOptions(mode="role", compact=True)
    )
    assert "form" not in compact.text
    assert "text:" not in compact.text
    assert '  - button "Remove" [ref=e3]' in compact.text.splitlines()

    shallow = await builder_for(three_buttons()).snapshot(
        TARGET, SnapshotOptions(mode="role", max_depth=1)
    )
    assert "button" not in shallow.text
    assert '  - heading "Cart" [ref=e4]' in shallow.text.splitlines()
    assert shallow.stats.refs == 4


@pytest.mark.asyncio
async def test_aria_snapshot_uses_node_handles() -> None:
    cache = RefCache()
    builder = builder_for(three_buttons(with_handles=True), cache)
    snap = await builder.snapshot(TARGET)

    assert snap.mode == "aria"
    assert snap.text.splitlines() == [
        "RootWebArea: Shop",
        "button: Add [1]",
        "button: Add [2]",
        "button: Remove [3]",
        "heading: Cart",
        "StaticText: Cart",
    ]
    assert cache.resolve(TARGET, "2").backend_node_id == 104

    interactive = await builder.snapshot(TARGET, SnapshotOptions(interactive=True))
    assert interactive.text.splitlines() == [
        "button: Add [4]",
        "button: Add [5]",
        "button: Remove [6]",
    ]
    with pytest.raises(StaleRef):
        cache.resolve(TARGET, "2")
    assert cache.resolve(TARGET, "e5").backend_node_id == 104


@pytest.mark.asyncio
async def test_aria_request_without_handles_falls_back_to_role() -> None:
    snap = await builder_for(three_buttons()).snapshot(TARGET, SnapshotOptions(mode="aria"))
    assert snap.mode == "role"
    assert "[ref=e1]" in snap.text


@pytest.mark.asyncio
async def test_empty_page_still_records_entry() -> None:
    cache = RefCache()
    builder = builder_for([], cache)

    snap = await builder.snapshot(TARGET)
    assert snap.text == "(empty page)"
    assert cache.entry(TARGET) is not None

    snap = await builder.snapshot(TARGET, SnapshotOptions(interactive=True))
    assert snap.text == "(no interactive elements)"
    assert cache.entry(TARGET).snapshot_id == 2


@pytest.mark.asyncio
async def test_max_chars_truncates_text_only() -> None:
    cache = RefCache()
    snap = await builder_for(three_buttons(), cache).snapshot(
        TARGET, SnapshotOptions(mode="role", max_chars=40)
    )
    assert snap.truncated
    assert snap.text.endswith("take a narrower snapshot (interactive/compact/max_depth)]")
    assert cache.resolve(TARGET, "e4").ref == "e4"


@pytest.mark.asyncio
async def test_states_and_values_are_rendered() -> None:
    nodes = [
        ax("1", "RootWebArea", "Form", children=("2", "3")),
        ax("2", "checkbox", "Agree", parent="1", checked=True),
        ax("3", "textbox", "Email", parent="1", disabled="true"),
    ]
    nodes[2] = replace(nodes[2], value="a@b.c")
    snap = await builder_for(nodes).snapshot(TARGET, SnapshotOptions(mode="role"))
    lines = snap.text.splitlines()
    assert '  - checkbox "Agree" [checked] [ref=e1]' in lines
    assert '  - textbox "Email" [disabled] [ref=e2]: "a@b.c"' in lines


def test_parse_ax_nodes_and_walk_skip_ignored() -> None:
    raw = [
        {"nodeId": 1, "role": {"value": "RootWebArea"}, "name": {"value": "Page"}, "childIds": [2, 4]},
        {"nodeId": 2, "parentId": 1, "ignored": True, "role": {"value": "generic"}, "childIds": [3]},
        {
            "nodeId": 3,
            "parentId": 2,
            "role": {"value": "link"},
            "name": {"value": "  Docs \n home "},
            "backendDOMNodeId": 33,
            "properties": [{"name": "focused", "value": {"type": "boolean", "value": True}}],
        },
        {"nodeId": 4, "parentId": 1, "role": {"value": "InlineTextBox"}, "name": {"value": "x"}},
        "garbage",
    ]
    nodes = parse_ax_nodes(raw)
    assert len(nodes) == 4
    link = nodes[2]
    assert link.name == "Docs home"
    assert link.backend_node_id == 33
    assert link.properties["focused"] is True

    order = [(n.node_id, depth) for n, depth in walk(nodes)]
    assert order == [("1", 0), ("3", 1)]
