"""Composite project/session identifiers.

Project:  ``EXECUTOR_TYPE:<actual project id>``
Session:  ``EXECUTOR_TYPE:<actual project id>:<native session id>``

The actual project id is usually the workspace path encoded as unpadded
base64url; Gemini uses its own project hash instead. Native session ids
may themselves contain ``:``.
"""
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from enum import Enum


class ExecutorType(str, Enum):
    """Agent families with a log source adapter."""
    CLAUDE_CODE = "CLAUDE_CODE"
    CODEX = "CODEX"
    GEMINI = "GEMINI"
    OPENCODE = "OPENCODE"
    CURSOR = "CURSOR"


def encode_path(path: str) -> str:
    """Encode a filesystem path as unpadded base64url."""
    return base64.urlsafe_b64encode(path.encode("utf-8")).decode("ascii").rstrip("=")


def decode_path(value: str) -> str | None:
    """Decode a base64url (or plain base64) path, or None if it is not one."""
    if not value:
        return None
    normalized = value.replace("+", "-").replace("/", "_")
    normalized += "=" * (-len(normalized) % 4)
    try:
        return base64.urlsafe_b64decode(normalized).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None


@dataclass(frozen=True)
class ParsedProjectId:
    executor_type: str
    actual_project_id: str

    @property
    def path(self) -> str | None:
        return decode_path(self.actual_project_id)


@dataclass(frozen=True)
class ParsedSessionId:
    executor_type: str
    actual_project_id: str
    native_session_id: str

    @property
    def path(self) -> str | None:
        return decode_path(self.actual_project_id)

    @property
    def project_id(self) -> str:
        return join_project_id(self.executor_type, self.actual_project_id)


def _executor_value(executor_type: str | ExecutorType) -> str:
    if isinstance(executor_type, ExecutorType):
        return executor_type.value
    return executor_type


def join_project_id(executor_type: str | ExecutorType, actual_project_id: str) -> str:
    return f"{_executor_value(executor_type)}:{actual_project_id}"


def join_session_id(
    executor_type: str | ExecutorType,
    actual_project_id: str,
    native_session_id: str,
) -> str:
    return f"{_executor_value(executor_type)}:{actual_project_id}:{native_session_id}"


def compose_project_id(executor_type: str | ExecutorType, path: str) -> str:
    return join_project_id(executor_type, encode_path(path))


def compose_session_id(
    executor_type: str | ExecutorType,
    path: str,
    native_session_id: str,
) -> str:
    return join_session_id(executor_type, encode_path(path), native_session_id)


def parse_project_id(project_id: str) -> ParsedProjectId | None:
    executor_type, sep, rest = (project_id or "").partition(":")
    if not executor_type or not sep or not rest:
        return None
    return ParsedProjectId(executor_type=executor_type, actual_project_id=rest)


def parse_session_id(session_id: str) -> ParsedSessionId | None:
    parts = (session_id or "").split(":")
    if len(parts) < 3 or not parts[0] or not parts[1]:
        return None
    native = ":".join(parts[2:])
    if not native:
        return None
    return ParsedSessionId(
        executor_type=parts[0],
        actual_project_id=parts[1],
        native_session_id=native,
    )


def canonical_session_id(session_id: str) -> str:
    """*session_id* in the form launches register it under.

    Path-derived project ids are minted unpadded; a padded spelling of the
    same path is folded onto it. Unparseable ids come back unchanged.
    """
    parsed = parse_session_id(session_id)
    if parsed is None:
        return session_id
    actual = parsed.actual_project_id
    if actual.endswith("=") and decode_path(actual) is not None:
        actual = actual.rstrip("=")
    return join_session_id(parsed.executor_type, actual, parsed.native_session_id)
