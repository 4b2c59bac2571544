"""Built-in agent profiles and their process parameter builders.

A profile definition is a plain mapping (the same shape YAML overrides
use) so it can be normalized by ``ProfileRegistry``::

    {"label": ..., "command": {"binary": ..., "args": [...], "env": {...}},
     "variants": [{"label": ..., "command": {...}}],
     "build_parameters": callable}
"""
from __future__ import annotations

import functools
from pathlib import Path
from typing import Any

from agentwatch.config import AgentWatchConfig
from agentwatch.errors import ConfigurationError
from agentwatch.logs.ids import ExecutorType, encode_path, parse_session_id
from agentwatch.logs.sources.cursor import workspace_hash
from agentwatch.logs.sources.gemini import project_hash

from .models import CommandConfig, LaunchRequest, ProcessParameters
from .resolvers import (
    ClaudeStdoutResolver,
    CodexStdoutResolver,
    OpenCodeStdoutResolver,
    resolve_codex_session,
    resolve_cursor_session,
    resolve_gemini_session,
    resolve_opencode_session,
)

CLAUDE_CODE = "claude-code"
CODEX = "codex"
GEMINI = "gemini"
OPENCODE = "opencode"
CURSOR = "cursor"

PROFILE_EXECUTORS: dict[str, ExecutorType] = {
    CLAUDE_CODE: ExecutorType.CLAUDE_CODE,
    CODEX: ExecutorType.CODEX,
    GEMINI: ExecutorType.GEMINI,
    OPENCODE: ExecutorType.OPENCODE,
    CURSOR: ExecutorType.CURSOR,
}


def executor_for_profile(profile_label: str) -> ExecutorType | None:
    return PROFILE_EXECUTORS.get(profile_label)


def actual_project_id_for(executor_type: str, workspace_path: str) -> str:
    """Adapter-level project key of *workspace_path* for *executor_type*."""
    if executor_type == ExecutorType.GEMINI.value:
        return project_hash(workspace_path)
    if executor_type == ExecutorType.CURSOR.value:
        return workspace_hash(workspace_path)
    return encode_path(workspace_path)


def native_session_id(profile_label: str, request: LaunchRequest) -> str:
    """Agent-native id of the session a follow-up continues."""
    parsed = parse_session_id(request.session_id)
    if parsed is None:
        raise ConfigurationError(
            profile_label, f"invalid session id for follow-up: {request.session_id!r}",
        )
    return parsed.native_session_id


def default_parameters(command: CommandConfig, request: LaunchRequest) -> ProcessParameters:
    """Command args as-is, prompt or message on stdin."""
    return ProcessParameters(args=list(command.args), stdin_payload=request.payload or None)


def build_claude_parameters(command: CommandConfig, request: LaunchRequest) -> ProcessParameters:
    params = default_parameters(command, request)
    if request.kind == "follow-up":
        params.args += ["--resume", native_session_id(CLAUDE_CODE, request)]
    else:
        params.stdout_resolver_factory = ClaudeStdoutResolver
    return params


def build_codex_parameters(
    command: CommandConfig, request: LaunchRequest, *, root: Path,
) -> ProcessParameters:
    message = request.payload
    if not message.strip():
        raise ConfigurationError(CODEX, "a prompt or message is required")
    args = [*command.args, "--cd", request.context.workspace_path]
    # "-" makes codex read the prompt from stdin
    if request.kind == "follow-up":
        args += ["resume", native_session_id(CODEX, request), "-"]
        return ProcessParameters(args=args, stdin_payload=message)
    args.append("-")
    return ProcessParameters(
        args=args,
        stdin_payload=message,
        stdout_resolver_factory=CodexStdoutResolver,
        filesystem_resolver=functools.partial(resolve_codex_session, root=root),
    )


def build_gemini_parameters(
    command: CommandConfig, request: LaunchRequest, *, root: Path,
) -> ProcessParameters:
    params = default_parameters(command, request)
    if request.kind == "follow-up":
        # no resume flag; the composite id is validated only
        native_session_id(GEMINI, request)
    else:
        params.filesystem_resolver = functools.partial(resolve_gemini_session, root=root)
    return params


def build_opencode_parameters(
    command: CommandConfig, request: LaunchRequest, *, root: Path,
) -> ProcessParameters:
    params = default_parameters(command, request)
    if request.kind == "follow-up":
        params.args += ["--session", native_session_id(OPENCODE, request)]
    else:
        params.stdout_resolver_factory = OpenCodeStdoutResolver
        params.filesystem_resolver = functools.partial(resolve_opencode_session, root=root)
    return params


def build_cursor_parameters(
    command: CommandConfig, request: LaunchRequest, *, root: Path,
) -> ProcessParameters:
    params = default_parameters(command, request)
    if request.kind == "follow-up":
        native_session_id(CURSOR, request)
    else:
        params.filesystem_resolver = functools.partial(resolve_cursor_session, root=root)
    return params


def default_profile_definitions(config: AgentWatchConfig | None = None) -> list[dict[str, Any]]:
    """The built-in profile catalog, with resolvers bound to *config* roots."""
    config = config or AgentWatchConfig()
    claude_args = ["-y", "@anthropic-ai/claude-code@latest", "-p"]
    stream_args = ["--verbose", "--output-format=stream-json"]
    gemini_args = ["-y", "@google/gemini-cli@latest", "--yolo"]
    return [
        {
            "label": CLAUDE_CODE,
            "command": {
                "binary": "npx",
                "args": [*claude_args, "--dangerously-skip-permissions", *stream_args],
            },
            "variants": [
                {
                    "label": "plan",
                    "command": {
                        "binary": "npx",
                        "args": [*claude_args, "--permission-mode=plan", *stream_args],
                    },
                },
            ],
            "build_parameters": build_claude_parameters,
        },
        {
            "label": CODEX,
            "command": {
                "binary": "npx",
                "args": [
                    "-y", "@openai/codex", "exec", "--json",
                    "--dangerously-bypass-approvals-and-sandbox",
                    "--skip-git-repo-check",
                ],
            },
            "build_parameters": functools.partial(build_codex_parameters, root=config.codex_root),
        },
        {
            "label": GEMINI,
            "command": {"binary": "npx", "args": gemini_args},
            "variants": [
                {
                    "label": "flash",
                    "command": {
                        "binary": "npx",
                        "args": [*gemini_args, "--model", "gemini-2.5-flash"],
                    },
                },
            ],
            "build_parameters": functools.partial(build_gemini_parameters, root=config.gemini_root),
        },
        {
            "label": OPENCODE,
            "command": {
                "binary": "npx",
                "args": ["-y", "opencode-ai@latest", "run", "--print-logs"],
            },
            "build_parameters": functools.partial(
                build_opencode_parameters, root=config.opencode_root,
            ),
        },
        {
            "label": CURSOR,
            "command": {
                "binary": "cursor-agent",
                "args": ["-p", "--output-format=stream-json", "--force"],
            },
            "build_parameters": functools.partial(build_cursor_parameters, root=config.cursor_root),
        },
    ]
