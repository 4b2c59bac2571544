"""Normalization helpers shared by the log source adapters."""

from __future__ import annotations

import json
import os
import re
from datetime import datetime, timezone
from typing import Any

_INSTRUCTION_TAG_RE = re.compile(
    r"<\s*/?\s*(user_instructions|environment_context)\b", re.IGNORECASE,
)
_INSTRUCTION_BLOCK_RES = (
    re.compile(r"<user_instructions>.*?</user_instructions>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<environment_context>.*?</environment_context>", re.IGNORECASE | re.DOTALL),
    re.compile(r"</\s*(user_instructions|environment_context)\s*>", re.IGNORECASE),
    re.compile(r"<(user_instructions|environment_context)\b[^>]*>", re.IGNORECASE),
)
_WHITESPACE_RE = re.compile(r"\s+")

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)
TITLE_MAX_LENGTH = 200


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO strings or epoch numbers into aware UTC datetimes.

    Numbers above 1e12 are taken as milliseconds, smaller ones as seconds.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not value or not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def iso_timestamp(value: Any) -> str | None:
    """Render a record timestamp as an ISO string for entry payloads."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    parsed = parse_timestamp(value)
    return parsed.isoformat() if parsed else None


def file_times(stat: os.stat_result) -> tuple[datetime, datetime]:
    """(created, updated) for a stat result; birth time where the OS has one."""
    birth = getattr(stat, "st_birthtime", None) or stat.st_ctime
    created = datetime.fromtimestamp(min(birth, stat.st_mtime), tz=timezone.utc)
    updated = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
    return created, updated


def coerce_text(value: Any) -> str:
    """Render arbitrary values into stable text for entry content."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        return str(value)


def safe_json_loads(value: Any) -> Any:
    """Decode JSON strings, returning the input unchanged when it is not JSON."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text:
        return value
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return value


def contains_instruction_tags(text: str) -> bool:
    return bool(text) and bool(_INSTRUCTION_TAG_RE.search(text))


def strip_instruction_tags(text: str) -> str:
    """Remove injected ``<user_instructions>``/``<environment_context>`` blocks."""
    if not text:
        return ""
    for pattern in _INSTRUCTION_BLOCK_RES:
        text = pattern.sub("", text)
    return text.strip()


def make_title(text: str | None, max_length: int = TITLE_MAX_LENGTH) -> str | None:
    """Single-line session title from a first user message."""
    if not text:
        return None
    cleaned = strip_instruction_tags(text).replace("`", "")
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    if not cleaned:
        return None
    if len(cleaned) > max_length:
        return cleaned[: max_length - 3].rstrip() + "..."
    return cleaned


def extract_text_from_blocks(blocks: Any, *, include_thinking: bool = False) -> str:
    """Extract visible text from provider content blocks."""
    if blocks is None:
        return ""
    if isinstance(blocks, str):
        return blocks
    if isinstance(blocks, dict):
        if isinstance(blocks.get("text"), str):
            return blocks["text"]
        if isinstance(blocks.get("content"), str):
            return blocks["content"]
        return coerce_text(blocks)
    if not isinstance(blocks, list):
        return coerce_text(blocks)

    parts: list[str] = []
    for block in blocks:
        if isinstance(block, str):
            if block:
                parts.append(block)
            continue
        if not isinstance(block, dict):
            continue

        block_type = str(block.get("type") or "").lower()
        if block_type in {"input_text", "output_text", "text", "summary_text"}:
            text = block.get("text")
            if isinstance(text, str) and text:
                parts.append(text)
            continue
        if block_type == "thinking":
            if include_thinking and isinstance(block.get("thinking"), str):
                parts.append(block["thinking"])
            continue
        if block_type in {"tool_use", "tool_result", "image"}:
            continue
        if isinstance(block.get("text"), str):
            parts.append(block["text"])

    return "\n\n".join(part for part in parts if part).strip()


def relative_to(path: str, cwd: str | None) -> str:
    """Show *path* relative to *cwd* when it lives underneath it."""
    if not path or not cwd or not os.path.isabs(path):
        return path
    try:
        rel = os.path.relpath(path, cwd)
    except ValueError:
        return path
    if rel.startswith(".."):
        return path
    return rel


def normalize_path(value: Any) -> str | None:
    if not value or not isinstance(value, str):
        return None
    return os.path.abspath(os.path.expanduser(value))
