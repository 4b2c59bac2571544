from __future__ import annotations

from agentwatch.execution.active_registry import ActiveExecutionRegistry


def test_register_and_unregister() -> None:
    registry = ActiveExecutionRegistry()
    registry.register("CODEX:a:1")
    assert registry.is_active("CODEX:a:1")
    assert len(registry) == 1
    registry.unregister("CODEX:a:1")
    assert not registry.is_active("CODEX:a:1")
    registry.unregister("CODEX:a:1")


def test_rename_moves_the_id() -> None:
    registry = ActiveExecutionRegistry()
    registry.register("old")
    assert registry.update_session_id("old", "new") is True
    assert not registry.is_active("old")
    assert registry.is_active("new")


def test_rename_of_unknown_id_is_noop() -> None:
    registry = ActiveExecutionRegistry()
    registry.register("other")
    assert registry.update_session_id("old", "new") is False
    assert not registry.is_active("new")
    assert registry.snapshot() == frozenset({"other"})


def test_rename_rejects_empty_and_equal_ids() -> None:
    registry = ActiveExecutionRegistry()
    registry.register("a")
    assert registry.update_session_id("a", "") is False
    assert registry.update_session_id("a", "a") is False
    assert registry.is_active("a")


def test_instances_are_isolated() -> None:
    first, second = ActiveExecutionRegistry(), ActiveExecutionRegistry()
    first.register("x")
    assert not second.is_active("x")
    assert not first.is_active("")
