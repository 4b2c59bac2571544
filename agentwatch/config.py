"""Configuration loaded from environment variables and YAML.

All settings have sensible defaults. Override via AGENTWATCH_* env vars
or an ``agentwatch.yaml`` file.

Example YAML:
    engine:
      resolution_timeout_seconds: 15
      poll_interval_seconds: 0.25
      codex_root: /data/codex
      cursor_root: /data/cursor

    profiles:
      codex:
        binary: /usr/local/bin/codex
        args: [exec, --json, --skip-git-repo-check]
      gemini:
        env:
          GEMINI_API_KEY: "..."
        variants:
          pro:
            args: [-y, "@google/gemini-cli@latest", --yolo, --model, gemini-2.5-pro]
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


def _path_env(name: str, default: Path) -> Path:
    value = os.getenv(name)
    return Path(value).expanduser() if value else default


@dataclass
class AgentWatchConfig:
    """Execution and log streaming configuration."""

    # Agent storage roots
    claude_root: Path = field(
        default_factory=lambda: Path.home() / ".claude"
    )
    codex_root: Path = field(
        default_factory=lambda: Path.home() / ".codex"
    )
    gemini_root: Path = field(
        default_factory=lambda: Path.home() / ".gemini"
    )
    opencode_root: Path = field(
        default_factory=lambda: (
            Path.home() / ".local" / "share" / "opencode" / "storage"
        )
    )
    cursor_root: Path = field(
        default_factory=lambda: Path.home() / ".cursor"
    )

    # Upper bound for discovering the session id an agent mints.
    resolution_timeout_seconds: float = 10.0

    # Session lookups that race a just-started process.
    lookup_attempts: int = 20
    lookup_delay_seconds: float = 0.25

    # Live tail polling
    poll_interval_seconds: float = 0.5

    # Outbound patch channel size per stream
    channel_queue_size: int = 5000

    log_level: str = "INFO"

    # Raw per-profile command overrides from YAML (label -> mapping).
    profile_overrides: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> AgentWatchConfig:
        """Load configuration from AGENTWATCH_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTWATCH_")
        }
        if overrides:
            logger.info(
                "AgentWatchConfig.from_env: env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )

        defaults = cls()
        config = cls(
            claude_root=_path_env(
                "AGENTWATCH_CLAUDE_ROOT", defaults.claude_root
            ),
            codex_root=_path_env("AGENTWATCH_CODEX_ROOT", defaults.codex_root),
            gemini_root=_path_env(
                "AGENTWATCH_GEMINI_ROOT", defaults.gemini_root
            ),
            opencode_root=_path_env(
                "AGENTWATCH_OPENCODE_ROOT", defaults.opencode_root
            ),
            cursor_root=_path_env(
                "AGENTWATCH_CURSOR_ROOT", defaults.cursor_root
            ),
            resolution_timeout_seconds=float(os.getenv(
                "AGENTWATCH_RESOLUTION_TIMEOUT",
                str(cls.resolution_timeout_seconds),
            )),
            lookup_attempts=int(os.getenv(
                "AGENTWATCH_LOOKUP_ATTEMPTS", str(cls.lookup_attempts)
            )),
            lookup_delay_seconds=float(os.getenv(
                "AGENTWATCH_LOOKUP_DELAY", str(cls.lookup_delay_seconds)
            )),
            poll_interval_seconds=float(os.getenv(
                "AGENTWATCH_POLL_INTERVAL", str(cls.poll_interval_seconds)
            )),
            channel_queue_size=int(os.getenv(
                "AGENTWATCH_QUEUE_SIZE", str(cls.channel_queue_size)
            )),
            log_level=os.getenv("AGENTWATCH_LOG_LEVEL", cls.log_level),
        )
        logger.debug(
            "AgentWatchConfig.from_env: resolution_timeout=%.1fs poll=%.2fs",
            config.resolution_timeout_seconds, config.poll_interval_seconds,
        )
        return config


def load_yaml_config(
    path: str | Path,
    base: AgentWatchConfig | None = None,
) -> AgentWatchConfig:
    """Load an ``agentwatch.yaml`` file on top of *base* (or env defaults).

    ``engine`` keys override scalar settings; ``profiles`` entries are kept
    raw and merged into the profile catalog by ``ProfileRegistry``.
    """
    path = Path(path)
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path)
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        logger.warning(
            "load_yaml_config: %s does not contain a mapping, ignoring", path,
        )
        raw = {}

    config = base or AgentWatchConfig.from_env()

    engine_raw = raw.get("engine") or {}
    for key in (
        "claude_root", "codex_root", "gemini_root", "opencode_root", "cursor_root",
    ):
        if engine_raw.get(key):
            setattr(config, key, Path(str(engine_raw[key])).expanduser())
    if "resolution_timeout_seconds" in engine_raw:
        config.resolution_timeout_seconds = float(
            engine_raw["resolution_timeout_seconds"]
        )
    if "lookup_attempts" in engine_raw:
        config.lookup_attempts = int(engine_raw["lookup_attempts"])
    if "lookup_delay_seconds" in engine_raw:
        config.lookup_delay_seconds = float(engine_raw["lookup_delay_seconds"])
    if "poll_interval_seconds" in engine_raw:
        config.poll_interval_seconds = float(
            engine_raw["poll_interval_seconds"]
        )
    if "channel_queue_size" in engine_raw:
        config.channel_queue_size = int(engine_raw["channel_queue_size"])
    if "log_level" in engine_raw:
        config.log_level = str(engine_raw["log_level"])

    profiles_raw = raw.get("profiles") or {}
    if isinstance(profiles_raw, dict):
        config.profile_overrides = {
            str(label): dict(cfg)
            for label, cfg in profiles_raw.items()
            if isinstance(cfg, dict)
        }

    logger.info(
        "Loaded config %s (sections: %s, profile overrides: %s)",
        path.name,
        ", ".join(sorted(raw.keys())) or "(empty)",
        ", ".join(sorted(config.profile_overrides)) or "none",
    )
    return config
