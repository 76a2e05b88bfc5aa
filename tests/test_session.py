from pathlib import Path

from gatebot.session.manager import Session, SessionManager


def test_session_round_trip(tmp_path: Path) -> None:
    manager = SessionManager(tmp_path)
    session = manager.get_or_create("web:abc")
    session.add_message("user", "hello")
    session.extend(
        [
            {"role": "assistant", "tool_calls": [{"id": "c1", "type": "function"}]},
            {"role": "tool", "tool_call_id": "c1", "name": "echo", "content": "ok"},
            {"role": "assistant", "content": "done"},
        ]
    )
    manager.save(session)

    loaded = SessionManager(tmp_path).get_or_create("web:abc")
    assert loaded is not session
    history = loaded.get_history()
    assert [m["role"] for m in history] == ["user", "assistant", "tool", "assistant"]
    assert history[1]["tool_calls"] == [{"id": "c1", "type": "function"}]
    assert history[2] == {"role": "tool", "content": "ok", "tool_call_id": "c1", "name": "echo"}
    assert (tmp_path / "sessions" / "web_abc.jsonl").exists()


def test_history_window_never_opens_on_tool_results() -> None:
    session = Session(key="cli:direct")
    session.add_message("user", "q")
    session.add_message("assistant", None, tool_calls=[{"id": "c1"}])
    session.add_message("tool", "r1", tool_call_id="c1", name="echo")
    session.add_message("tool", "r2", tool_call_id="c2", name="echo")
    session.add_message("assistant", "a")

    history = session.get_history(max_messages=3)
    assert [m["role"] for m in history] == ["assistant"]


def test_delete_removes_file_and_cached_copy(tmp_path: Path) -> None:
    manager = SessionManager(tmp_path)
    session = manager.get_or_create("cli:one")
    session.add_message("user", "hi")
    manager.save(session)

    assert manager.delete("cli:one") is True
    assert manager.delete("cli:one") is False
    assert not (tmp_path / "sessions" / "cli_one.jsonl").exists()
    assert manager.get_or_create("cli:one").messages == []


def test_corrupt_session_file_starts_fresh(tmp_path: Path) -> None:
    manager = SessionManager(tmp_path)
    (tmp_path / "sessions" / "cli_bad.jsonl").write_text("{not json\n")
    assert manager.get_or_create("cli:bad").messages == []
