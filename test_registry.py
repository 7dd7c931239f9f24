"""Tests for the task context registry and message helpers."""

import time

import pytest

from runtime.messages import (
    IMAGE_ONLY_PROMPT,
    ImageBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    compose_user_message,
    message_from_dict,
    repair_history,
    unmatched_tool_uses,
)
from runtime.registry import DEFAULT_TASK_ID, TaskBusy, TaskContextRegistry
from sessions import SessionStore


def test_acquire_defaults_to_default_id():
    registry = TaskContextRegistry()
    ctx = registry.acquire()
    assert ctx.task_id == DEFAULT_TASK_ID
    assert registry.is_active(DEFAULT_TASK_ID)


def test_second_acquire_of_live_task_is_busy():
    registry = TaskContextRegistry()
    registry.acquire("t1")
    with pytest.raises(TaskBusy) as exc:
        registry.acquire("t1")
    assert exc.value.task_id == "t1"


def test_distinct_ids_are_isolated():
    registry = TaskContextRegistry()
    a = registry.acquire("a")
    b = registry.acquire("b")
    a.history.append(Message.user_text("only in a"))
    assert b.history == []
    assert a.cancel is not b.cancel


def test_stale_context_is_force_reset():
    registry = TaskContextRegistry(stale_seconds=1)
    old = registry.acquire("t1")
    old.last_activity_at = time.time() - 10
    fresh = registry.acquire("t1")
    assert fresh is not old
    assert old.cancel.cancelled
    assert not fresh.cancel.cancelled


def test_replaced_context_releases_without_touching_its_successor(tmp_path):
    store = SessionStore(str(tmp_path / "sessions"))
    registry = TaskContextRegistry(store, stale_seconds=1)
    old = registry.acquire("t1")
    old.history.append(Message.user_text("old run"))
    old.last_activity_at = time.time() - 10
    fresh = registry.acquire("t1")
    fresh.history.append(Message.user_text("new run"))

    registry.release(old)
    assert registry.get("t1") is fresh
    assert store.load("t1") is None

    registry.release(fresh)
    assert not registry.is_active("t1")
    assert message_from_dict(store.load("t1").history[-1]).text == "new run"


def test_rebind_carries_iteration_count():
    registry = TaskContextRegistry()
    ctx = registry.acquire("t1")
    ctx.iterations = 4
    fresh = registry.rebind(ctx, [Message.user_text("continue")])
    assert fresh.task_id != "t1"
    assert fresh.iterations == 4
    assert ctx.latest() is fresh


def test_release_persists_and_acquire_restores(tmp_path):
    store = SessionStore(str(tmp_path / "sessions"))
    registry = TaskContextRegistry(store)
    ctx = registry.acquire("t1", project_id="p1")
    ctx.history.append(Message.user_text("hello"))
    registry.release(ctx, model_id="m")
    assert not registry.is_active("t1")

    restored = registry.acquire("t1")
    assert restored.history == [Message.user_text("hello")]
    assert restored.project_id == "p1"
    assert store.load("t1").model_id == "m"


def test_rebind_moves_to_new_id_and_forwards(tmp_path):
    store = SessionStore(str(tmp_path / "sessions"))
    registry = TaskContextRegistry(store)
    ctx = registry.acquire("t1")
    ctx.artifacts.append({"path": "/a", "name": "a", "type": "file"})
    fresh = registry.rebind(ctx, [Message.user_text("condensed")])

    assert fresh.task_id != "t1"
    assert fresh.cancel is ctx.cancel
    assert fresh.artifacts == ctx.artifacts
    assert registry.active_ids() == [fresh.task_id]
    assert registry.resolve("t1") is fresh
    assert store.load("t1").continued_as == fresh.task_id


def test_compose_user_message_with_images():
    msg = compose_user_message("", ["data:image/png;base64,AAAA", "not-a-data-url"])
    assert msg.content == [ImageBlock("image/png", "AAAA"), TextBlock(IMAGE_ONLY_PROMPT)]
    assert compose_user_message("   ").content == []


def test_repair_history_pairs_orphans():
    history = [
        Message.user_text("go"),
        Message(role="assistant", content=[ToolUseBlock("a", "list_dir", {}), ToolUseBlock("b", "read_file", {})]),
        Message(role="user", content=[ToolResultBlock("a", "ok")]),
        Message(role="assistant", content=[ToolUseBlock("c", "list_dir", {})]),
    ]
    assert repair_history(history) == 2
    assert [r.tool_use_id for r in history[2].tool_results] == ["b", "a"]
    assert history[-1].role == "user"
    assert history[-1].tool_results[0].tool_use_id == "c"
    assert unmatched_tool_uses(history) == []


def test_message_from_dict_accepts_string_and_list_results():
    msg = message_from_dict({"role": "user", "content": [
        {"type": "tool_result", "tool_use_id": "x", "content": [{"type": "text", "text": "done"}]},
    ]})
    assert msg.tool_results == [ToolResultBlock("x", "done")]
    assert message_from_dict({"role": "assistant", "content": "hi"}).text == "hi"
