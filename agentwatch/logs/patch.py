"""JSON Patch operations over the ``/entries`` list of a conversation.

Every builder returns a single-element list so results can be
concatenated and sent as one ``json_patch`` event.
"""
from __future__ import annotations

from typing import Any

from .models import NormalizedEntry, PatchValueType

PatchOperation = dict[str, Any]


def entry_path(entry_index: int | str) -> str:
    return f"/entries/{escape_json_pointer_segment(str(entry_index))}"


def escape_json_pointer_segment(segment: str) -> str:
    """Escape one JSON Pointer reference token (RFC 6901)."""
    return segment.replace("~", "~0").replace("/", "~1")


def _value(value_type: PatchValueType, content: Any) -> dict[str, Any]:
    if isinstance(content, NormalizedEntry):
        content = content.to_dict()
    return {"type": value_type.value, "content": content}


class ConversationPatch:
    """Builders for conversation patches."""

    @staticmethod
    def add_normalized_entry(
        entry_index: int, entry: NormalizedEntry,
    ) -> list[PatchOperation]:
        return [{
            "op": "add",
            "path": entry_path(entry_index),
            "value": _value(PatchValueType.NORMALIZED_ENTRY, entry),
        }]

    @staticmethod
    def add_stdout(entry_index: int, content: str) -> list[PatchOperation]:
        return [{
            "op": "add",
            "path": entry_path(entry_index),
            "value": _value(PatchValueType.STDOUT, content),
        }]

    @staticmethod
    def add_stderr(entry_index: int, content: str) -> list[PatchOperation]:
        return [{
            "op": "add",
            "path": entry_path(entry_index),
            "value": _value(PatchValueType.STDERR, content),
        }]

    @staticmethod
    def add_diff(entry_index: int | str, diff: dict[str, Any]) -> list[PatchOperation]:
        return [{
            "op": "add",
            "path": entry_path(entry_index),
            "value": _value(PatchValueType.DIFF, diff),
        }]

    @staticmethod
    def replace(entry_index: int, entry: NormalizedEntry) -> list[PatchOperation]:
        return [{
            "op": "replace",
            "path": entry_path(entry_index),
            "value": _value(PatchValueType.NORMALIZED_ENTRY, entry),
        }]

    @staticmethod
    def replace_diff(
        entry_index: int | str, diff: dict[str, Any],
    ) -> list[PatchOperation]:
        return [{
            "op": "replace",
            "path": entry_path(entry_index),
            "value": _value(PatchValueType.DIFF, diff),
        }]

    @staticmethod
    def remove(entry_index: int | str) -> list[PatchOperation]:
        return [{"op": "remove", "path": entry_path(entry_index)}]

    remove_diff = remove
