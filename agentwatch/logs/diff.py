"""Unified diff helpers for file-edit entries."""
from __future__ import annotations

import difflib

_DIFF_LINE_PREFIXES = (" ", "+", "-")


def _counts(lines: list[str]) -> tuple[int, int]:
    old = sum(1 for line in lines if line.startswith(("-", " ")))
    new = sum(1 for line in lines if line.startswith(("+", " ")))
    return old, new


def create_unified_diff_hunk(old_text: str, new_text: str) -> str:
    """Diff two texts and return only the hunk lines (no file headers)."""
    if not old_text.endswith("\n"):
        old_text += "\n"
    if not new_text.endswith("\n"):
        new_text += "\n"
    diff_lines = list(difflib.unified_diff(
        old_text.splitlines(), new_text.splitlines(),
        lineterm="", n=3,
    ))
    for i, line in enumerate(diff_lines):
        if line.startswith("@@"):
            return "\n".join(diff_lines[i:])
    return ""


def extract_unified_diff_hunks(unified_diff: str) -> list[str]:
    """Split a (possibly sloppy) unified diff into hunks.

    Non-diff lines are tolerated. Text with no ``@@`` header at all is
    treated as one hunk; bare ``@@`` headers get synthesized line counts.
    """
    lines = unified_diff.split("\n")
    if not any(line.startswith("@@") for line in lines):
        body = [line for line in lines if line.startswith(_DIFF_LINE_PREFIXES)]
        if not body:
            return []
        old_count, new_count = _counts(lines)
        return [f"@@ -1,{old_count} +1,{new_count} @@\n" + "\n".join(body)]

    hunks: list[list[str]] = []
    current: list[str] | None = None
    for line in lines:
        if line.startswith("@@"):
            current = [line]
            hunks.append(current)
        elif current is not None:
            if line.startswith(_DIFF_LINE_PREFIXES):
                current.append(line)
            else:
                current = None

    fixed: list[str] = []
    for hunk in hunks:
        if len(hunk) < 2:
            continue
        header, body = hunk[0], hunk[1:]
        if header.strip() == "@@":
            old_count, new_count = _counts(body)
            header = f"@@ -1,{old_count} +1,{new_count} @@"
        fixed.append("\n".join([header, *body]))
    return fixed


def concatenate_diff_hunks(file_path: str, hunks: list[str]) -> str:
    """Join hunks under ``--- a/<path>`` / ``+++ b/<path>`` headers."""
    out = f"--- a/{file_path}\n+++ b/{file_path}\n"
    if hunks:
        body = [
            line
            for hunk in hunks
            for line in hunk.split("\n")
            if line.startswith(("@@ ", *_DIFF_LINE_PREFIXES))
        ]
        out += "\n".join(body)
        if not out.endswith("\n"):
            out += "\n"
    return out


def create_unified_diff(file_path: str, old_text: str, new_text: str) -> str:
    """Full unified diff for one file, suitable for an edit change."""
    hunk = create_unified_diff_hunk(old_text, new_text)
    return concatenate_diff_hunks(file_path, [hunk] if hunk else [])
