import json
from pathlib import Path

from gatebot.config.loader import load_config, save_config
from gatebot.config.schema import Config


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    config = Config(
        agents={"defaults": {"sandbox": "non-main"}, "list": {"ops": {"model": "gpt-mini"}}},
        tools={"deny": ["exec"], "byProvider": {"openai": {"allow": ["group:fs"]}}},
        gateway={"token": "t"},
    )
    save_config(config, path)

    raw = json.loads(path.read_text())
    assert raw["tools"]["byProvider"]["openai"]["allow"] == ["group:fs"]
    assert raw["agents"]["defaults"]["maxToolIterations"] == 20

    loaded = load_config(path)
    assert loaded.agents.defaults.sandbox == "non-main"
    assert loaded.agent("ops").model == "gpt-mini"
    assert loaded.agent("ops").main_session_key == "cli:direct"
    assert loaded.tools.deny == ["exec"]
    assert loaded.gateway.token == "t"


def test_invalid_config_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text('{"agents": {"defaults": {"sandbox": "sometimes"}}}')
    assert load_config(path).agents.defaults.sandbox == "off"

    path.write_text("{broken")
    assert load_config(path).tools.sandbox.deny == ["group:runtime"]


def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.json")
    assert config.gateway.host == "127.0.0.1"
    assert config.tools.browser.endpoint == "http://127.0.0.1:9222"
