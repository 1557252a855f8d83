"""Tests for the persistent per-session message queue."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from agentdesk.db import ThreadSafeConnection
from agentdesk.services import queue_store

S1 = "11111111-1111-1111-1111-111111111111"
S2 = "22222222-2222-2222-2222-222222222222"


def _contents(db: ThreadSafeConnection, session: str = S1) -> list[str]:
    return [i["content"] for i in queue_store.list_queue(db, session)]


class TestEnqueue:
    def test_returns_item(self, db: ThreadSafeConnection) -> None:
        item = queue_store.enqueue(db, S1, "hello")
        assert item["content"] == "hello"
        assert item["session_uuid"] == S1
        assert item["is_executed"] is False
        assert isinstance(item["created_at"], int)
        assert queue_store.get_item(db, S1, item["id"])["content"] == "hello"

    def test_fifo_order(self, db: ThreadSafeConnection) -> None:
        for text in ("a", "b", "c", "d"):
            queue_store.enqueue(db, S1, text)
        assert _contents(db) == ["a", "b", "c", "d"]

    def test_same_millisecond_keeps_call_order(self, db: ThreadSafeConnection) -> None:
        with patch.object(queue_store, "_now_ms", return_value=1_000):
            items = [queue_store.enqueue(db, S1, t) for t in ("x", "y", "z")]
        assert [i["created_at"] for i in items] == [1_000, 1_001, 1_002]
        assert _contents(db) == ["x", "y", "z"]

    def test_empty_content_rejected(self, db: ThreadSafeConnection) -> None:
        with pytest.raises(ValueError):
            queue_store.enqueue(db, S1, "   ")
        assert queue_store.count_queue(db, S1) == 0

    def test_sessions_are_isolated(self, db: ThreadSafeConnection) -> None:
        queue_store.enqueue(db, S1, "mine")
        queue_store.enqueue(db, S2, "theirs")
        assert _contents(db, S1) == ["mine"]
        assert _contents(db, S2) == ["theirs"]

    def test_order_unaffected_by_edits_elsewhere(self, db: ThreadSafeConnection) -> None:
        a = queue_store.enqueue(db, S1, "a")
        b = queue_store.enqueue(db, S1, "b")
        queue_store.enqueue(db, S1, "c")
        queue_store.update_item(db, S1, b["id"], "B")
        queue_store.delete_item(db, S1, a["id"])
        queue_store.enqueue(db, S1, "d")
        assert _contents(db) == ["B", "c", "d"]


class TestMutations:
    def test_update_is_scoped_to_session(self, db: ThreadSafeConnection) -> None:
        item = queue_store.enqueue(db, S1, "orig")
        assert queue_store.update_item(db, S2, item["id"], "hijack") == 0
        assert queue_store.update_item(db, S1, item["id"], "edited") == 1
        assert _contents(db) == ["edited"]

    def test_update_missing_item(self, db: ThreadSafeConnection) -> None:
        assert queue_store.update_item(db, S1, "nope", "x") == 0

    def test_delete_is_scoped_to_session(self, db: ThreadSafeConnection) -> None:
        item = queue_store.enqueue(db, S1, "keep")
        assert queue_store.delete_item(db, S2, item["id"]) == 0
        assert queue_store.delete_item(db, S1, item["id"]) == 1
        assert queue_store.count_queue(db, S1) == 0

    def test_swap_twice_restores_order(self, db: ThreadSafeConnection) -> None:
        a = queue_store.enqueue(db, S1, "a")
        queue_store.enqueue(db, S1, "b")
        c = queue_store.enqueue(db, S1, "c")
        assert queue_store.swap_order(db, S1, a["id"], c["id"]) is True
        assert _contents(db) == ["c", "b", "a"]
        assert queue_store.swap_order(db, S1, a["id"], c["id"]) is True
        assert _contents(db) == ["a", "b", "c"]

    def test_swap_with_missing_item_changes_nothing(self, db: ThreadSafeConnection) -> None:
        a = queue_store.enqueue(db, S1, "a")
        queue_store.enqueue(db, S1, "b")
        assert queue_store.swap_order(db, S1, a["id"], "missing") is False
        assert _contents(db) == ["a", "b"]

    def test_swap_across_sessions_refused(self, db: ThreadSafeConnection) -> None:
        a = queue_store.enqueue(db, S1, "a")
        b = queue_store.enqueue(db, S2, "b")
        assert queue_store.swap_order(db, S1, a["id"], b["id"]) is False

    def test_swap_with_itself(self, db: ThreadSafeConnection) -> None:
        a = queue_store.enqueue(db, S1, "a")
        assert queue_store.swap_order(db, S1, a["id"], a["id"]) is True

    def test_mark_executed_hides_item(self, db: ThreadSafeConnection) -> None:
        a = queue_store.enqueue(db, S1, "a")
        queue_store.enqueue(db, S1, "b")
        assert queue_store.mark_executed(db, S1, a["id"]) == 1
        assert queue_store.mark_executed(db, S1, a["id"]) == 0
        assert _contents(db) == ["b"]
        stored = queue_store.get_item(db, S1, a["id"])
        assert stored["is_executed"] is True
        assert stored["executed_at"] is not None

    def test_update_ignores_executed_item(self, db: ThreadSafeConnection) -> None:
        a = queue_store.enqueue(db, S1, "a")
        queue_store.mark_executed(db, S1, a["id"])
        assert queue_store.update_item(db, S1, a["id"], "rewritten") == 0
        assert queue_store.get_item(db, S1, a["id"])["content"] == "a"

    def test_swap_with_executed_item_refused(self, db: ThreadSafeConnection) -> None:
        a = queue_store.enqueue(db, S1, "a")
        b = queue_store.enqueue(db, S1, "b")
        c = queue_store.enqueue(db, S1, "c")
        queue_store.mark_executed(db, S1, a["id"])
        assert queue_store.swap_order(db, S1, a["id"], c["id"]) is False
        assert _contents(db) == ["b", "c"]
        assert queue_store.get_item(db, S1, c["id"])["created_at"] > b["created_at"]

    def test_restore_puts_item_back_in_place(self, db: ThreadSafeConnection) -> None:
        a = queue_store.enqueue(db, S1, "a")
        queue_store.enqueue(db, S1, "b")
        queue_store.delete_item(db, S1, a["id"])
        queue_store.restore_item(db, a)
        assert _contents(db) == ["a", "b"]
        assert queue_store.peek(db, S1)["id"] == a["id"]


class TestClear:
    def test_clear_empty_queue_returns_zero(self, db: ThreadSafeConnection) -> None:
        assert queue_store.clear_queue(db, S1) == 0
        assert queue_store.clear_queue(db, S1) == 0

    def test_clear_only_touches_session(self, db: ThreadSafeConnection) -> None:
        queue_store.enqueue(db, S1, "a")
        queue_store.enqueue(db, S1, "b")
        queue_store.enqueue(db, S2, "other")
        assert queue_store.clear_queue(db, S1) == 2
        assert queue_store.count_queue(db, S1) == 0
        assert queue_store.count_queue(db, S2) == 1

    def test_delete_session_queue_removes_rows(self, db: ThreadSafeConnection) -> None:
        a = queue_store.enqueue(db, S1, "a")
        queue_store.clear_queue(db, S1)
        assert queue_store.delete_session_queue(db, S1) == 1
        assert queue_store.get_item(db, S1, a["id"]) is None


class TestReads:
    def test_peek_returns_head(self, db: ThreadSafeConnection) -> None:
        assert queue_store.peek(db, S1) is None
        queue_store.enqueue(db, S1, "first")
        queue_store.enqueue(db, S1, "second")
        assert queue_store.peek(db, S1)["content"] == "first"
        assert queue_store.count_queue(db, S1) == 2

    def test_search_case_insensitive(self, db: ThreadSafeConnection) -> None:
        queue_store.enqueue(db, S1, "Fix the Parser")
        queue_store.enqueue(db, S1, "write docs")
        queue_store.enqueue(db, S1, "parser tests")
        found = [i["content"] for i in queue_store.search_queue(db, S1, "PARSER")]
        assert found == ["Fix the Parser", "parser tests"]
        assert len(queue_store.search_queue(db, S1, "")) == 3
