from pathlib import Path

import pytest

import tool_relay.config as config_module
from tool_relay.config import Config
from tool_relay.exceptions import ConfigurationError


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  provider: ollama\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  provider: ollama\n"
            "  model: qwen2.5:7b\n"
            "orchestrator:\n"
            "  max_iterations: 5\n"
            "budget:\n"
            "  tool_limits:\n"
            "    read_file: 300\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model == "qwen2.5:7b"
    assert cfg.orchestrator.max_iterations == 5
    assert cfg.orchestrator.max_consecutive_tool_only == 3
    assert cfg.budget.tool_limits == {"read_file": 300}


def test_load_falls_back_to_home_config(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    home_cfg = tmp_path / "home" / "config.yaml"
    home_cfg.parent.mkdir()
    home_cfg.write_text("model:\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    assert Config.load().model.model == "llama3.2"


def test_missing_config_uses_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")

    cfg = Config.load()

    assert cfg.orchestrator.max_iterations == 12
    assert cfg.budget.turn_ceiling == 6000
    assert cfg.budget.shared_tool_ceiling == 800
    assert cfg.orchestrator.empty_tool_message_placeholder == "(Executing tools...)"


def test_env_overrides_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.yaml").write_text("orchestrator:\n  max_iterations: 5\n", encoding="utf-8")
    monkeypatch.setenv("RELAY_ORCHESTRATOR__MAX_ITERATIONS", "7")
    monkeypatch.setenv("RELAY_MODEL__STREAMING", "true")

    cfg = Config.load()

    assert cfg.orchestrator.max_iterations == 7
    assert cfg.model.streaming is True


def test_save_round_trips(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    target = tmp_path / "out" / "config.yaml"
    cfg = Config()
    cfg.budget.floor = 64
    cfg.save(target)

    loaded = Config.from_yaml(target)

    assert loaded.budget.floor == 64


def test_malformed_yaml_raises_configuration_error(tmp_path: Path):
    path = tmp_path / "broken.yaml"
    path.write_text("model: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        Config.from_yaml(path)


def test_non_mapping_yaml_raises_configuration_error(tmp_path: Path):
    path = tmp_path / "list.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="must contain a mapping"):
        Config.from_yaml(path)
