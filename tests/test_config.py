import pytest
import yaml

from tether.engine.config import TetherConfig
from tether.engine.yaml_config import load_yaml_config


def test_defaults() -> None:
    config = TetherConfig()

    assert config.provider == "claude"
    assert config.max_concurrent_queries == 3
    assert config.query_timeout_seconds == 180.0
    assert config.streaming_throttle_seconds == 0.5
    assert "think hard" in config.thinking_deep_keywords
    assert config.session_file.endswith("session.json")


def test_from_env_overrides(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("TETHER_PROVIDER", "codex")
    monkeypatch.setenv("TETHER_WORKING_DIR", str(tmp_path))
    monkeypatch.setenv("TETHER_ALLOWED_PATHS", "/srv/a, /srv/b ,")
    monkeypatch.setenv("TETHER_MAX_CONCURRENT_QUERIES", "5")
    monkeypatch.setenv("TETHER_QUERY_TIMEOUT", "60")
    monkeypatch.setenv("TETHER_THINKING_KEYWORDS", "Ponder,Reflect")
    monkeypatch.setenv("TETHER_CLAUDE_CLI_PATH", "  ")

    config = TetherConfig.from_env()

    assert config.provider == "codex"
    assert config.working_dir == str(tmp_path)
    assert config.allowed_paths == ["/srv/a", "/srv/b"]
    assert config.max_concurrent_queries == 5
    assert config.query_timeout_seconds == 60.0
    assert config.thinking_keywords == ["ponder", "reflect"]
    assert config.claude_cli_path is None


def test_yaml_layers_over_base(tmp_path) -> None:
    path = tmp_path / "tether.yaml"
    path.write_text(yaml.safe_dump({
        "engine": {"provider": "codex", "max_concurrent_queries": "2", "log_level": "DEBUG"},
        "thinking": {"keywords": ["Think"], "deep_budget": 64000},
        "safety": {"allowed_paths": "/srv/a,/srv/b"},
        "persistence": {"save_debounce_seconds": 1},
        "mcp_servers": {"ask-user": {"command": "ask-user-server"}},
    }))
    base = TetherConfig(working_dir=str(tmp_path), system_prompt="base prompt")

    config = load_yaml_config(path, base=base)

    assert config.provider == "codex"
    assert config.max_concurrent_queries == 2
    assert config.log_level == "DEBUG"
    assert config.thinking_keywords == ["think"]
    assert config.thinking_deep_budget == 64000
    assert config.allowed_paths == ["/srv/a", "/srv/b"]
    assert config.save_debounce_seconds == 1.0
    assert config.mcp_servers == {"ask-user": {"command": "ask-user-server"}}
    assert config.working_dir == str(tmp_path)
    assert config.system_prompt == "base prompt"
    assert base.provider == "claude"


def test_yaml_unknown_keys_are_ignored(tmp_path, caplog) -> None:
    path = tmp_path / "tether.yaml"
    path.write_text("engine:\n  colour: blue\n  provider: codex\n")

    config = load_yaml_config(path, base=TetherConfig())

    assert config.provider == "codex"
    assert "unknown key 'engine.colour'" in caplog.text


def test_yaml_missing_file_raises(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml", base=TetherConfig())


def test_yaml_top_level_must_be_mapping(tmp_path) -> None:
    path = tmp_path / "tether.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(yaml.YAMLError):
        load_yaml_config(path, base=TetherConfig())
