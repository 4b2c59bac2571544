from __future__ import annotations

import json
from pathlib import Path

import pytest

from agentwatch.cli import main


def _write_config(tmp_path: Path) -> Path:
    path = tmp_path / "agentwatch.yaml"
    path.write_text(
        "engine:\n"
        f"  claude_root: {tmp_path / 'claude'}\n"
        f"  codex_root: {tmp_path / 'codex'}\n"
        f"  gemini_root: {tmp_path / 'gemini'}\n"
        f"  opencode_root: {tmp_path / 'opencode'}\n"
        f"  cursor_root: {tmp_path / 'cursor'}\n"
        "  lookup_attempts: 1\n"
        "profiles:\n"
        "  codex:\n"
        "    variants:\n"
        "      fast:\n"
        "        args: [exec, --json]\n",
        encoding="utf-8",
    )
    return path


def test_profiles_lists_catalog(tmp_path: Path, capsys) -> None:
    main(["--config", str(_write_config(tmp_path)), "profiles"])
    profiles = json.loads(capsys.readouterr().out)
    labels = {p["label"]: p for p in profiles}
    assert set(labels) == {"claude-code", "codex", "gemini", "opencode", "cursor"}
    assert labels["codex"]["variants"] == [{"label": "fast"}]


def test_projects_empty_roots(tmp_path: Path, capsys) -> None:
    main(["--config", str(_write_config(tmp_path)), "projects"])
    assert json.loads(capsys.readouterr().out) == []


def test_logs_unknown_session_exits_nonzero(tmp_path: Path, capsys) -> None:
    with pytest.raises(SystemExit) as info:
        main(["--config", str(_write_config(tmp_path)), "logs", "CODEX:abc:def"])
    assert info.value.code == 1
    assert "Session not found" in capsys.readouterr().out


def test_missing_config_file(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as info:
        main(["--config", str(tmp_path / "absent.yaml"), "profiles"])
    assert info.value.code == 1
