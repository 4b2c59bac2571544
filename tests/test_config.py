from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from agentwatch.config import AgentWatchConfig, load_yaml_config


def test_defaults() -> None:
    config = AgentWatchConfig()
    assert config.resolution_timeout_seconds == 10.0
    assert config.lookup_attempts == 20
    assert config.channel_queue_size == 5000
    assert config.codex_root == Path.home() / ".codex"
    assert config.cursor_root == Path.home() / ".cursor"
    assert config.profile_overrides == {}


def test_from_env(tmp_path: Path) -> None:
    env = {
        "AGENTWATCH_CODEX_ROOT": str(tmp_path / "codex"),
        "AGENTWATCH_CURSOR_ROOT": str(tmp_path / "cursor"),
        "AGENTWATCH_RESOLUTION_TIMEOUT": "3.5",
        "AGENTWATCH_LOOKUP_ATTEMPTS": "4",
        "AGENTWATCH_LOG_LEVEL": "DEBUG",
    }
    with patch.dict(os.environ, env, clear=False):
        config = AgentWatchConfig.from_env()
    assert config.codex_root == tmp_path / "codex"
    assert config.cursor_root == tmp_path / "cursor"
    assert config.resolution_timeout_seconds == 3.5
    assert config.lookup_attempts == 4
    assert config.log_level == "DEBUG"


def test_load_yaml_config(tmp_path: Path) -> None:
    path = tmp_path / "agentwatch.yaml"
    path.write_text(
        "engine:\n"
        "  resolution_timeout_seconds: 15\n"
        "  poll_interval_seconds: 0.25\n"
        f"  gemini_root: {tmp_path / 'gemini'}\n"
        "profiles:\n"
        "  codex:\n"
        "    binary: /usr/local/bin/codex\n"
        "    args: [exec, --json]\n"
        "  broken: 3\n",
        encoding="utf-8",
    )
    config = load_yaml_config(path, base=AgentWatchConfig())
    assert config.resolution_timeout_seconds == 15.0
    assert config.poll_interval_seconds == 0.25
    assert config.gemini_root == tmp_path / "gemini"
    assert config.profile_overrides == {
        "codex": {"binary": "/usr/local/bin/codex", "args": ["exec", "--json"]},
    }


def test_load_yaml_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml", base=AgentWatchConfig())


def test_load_yaml_config_parse_error(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("engine: [unclosed\n", encoding="utf-8")
    with pytest.raises(yaml.YAMLError):
        load_yaml_config(path, base=AgentWatchConfig())


def test_non_mapping_yaml_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    config = load_yaml_config(path, base=AgentWatchConfig())
    assert config.resolution_timeout_seconds == 10.0
