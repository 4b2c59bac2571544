from __future__ import annotations

from agentwatch.logs.diff import (
    concatenate_diff_hunks,
    create_unified_diff,
    create_unified_diff_hunk,
    extract_unified_diff_hunks,
)


def test_create_unified_diff_has_headers_and_hunk() -> None:
    diff = create_unified_diff("src/app.py", "a\nb\n", "a\nc\n")
    lines = diff.splitlines()
    assert lines[0] == "--- a/src/app.py"
    assert lines[1] == "+++ b/src/app.py"
    assert lines[2].startswith("@@ ")
    assert "-b" in lines and "+c" in lines


def test_identical_texts_produce_empty_hunk() -> None:
    assert create_unified_diff_hunk("same", "same") == ""
    assert create_unified_diff("f", "same", "same") == "--- a/f\n+++ b/f\n"


def test_extract_hunks_skips_noise_between_hunks() -> None:
    raw = "\n".join([
        "*** Begin Patch",
        "@@ -1,2 +1,2 @@",
        " keep",
        "-old",
        "+new",
        "*** End Patch",
        "@@ -10 +10 @@",
        "-x",
        "+y",
    ])
    hunks = extract_unified_diff_hunks(raw)
    assert len(hunks) == 2
    assert hunks[0].splitlines()[0] == "@@ -1,2 +1,2 @@"
    assert hunks[1].splitlines() == ["@@ -10 +10 @@", "-x", "+y"]


def test_extract_hunks_synthesizes_headers() -> None:
    assert extract_unified_diff_hunks("-a\n+b\n c") == ["@@ -1,2 +1,2 @@\n-a\n+b\n c"]
    assert extract_unified_diff_hunks("@@\n-a\n+b") == ["@@ -1,1 +1,1 @@\n-a\n+b"]
    assert extract_unified_diff_hunks("no diff here") == []


def test_concatenate_diff_hunks() -> None:
    out = concatenate_diff_hunks("f.txt", ["@@ -1 +1 @@\n-a\n+b"])
    assert out == "--- a/f.txt\n+++ b/f.txt\n@@ -1 +1 @@\n-a\n+b\n"
