"""Tests for the serialized sqlite connection wrapper."""

from __future__ import annotations

import pytest

from agentdesk.db import ThreadSafeConnection


def _titles(db: ThreadSafeConnection) -> list[str]:
    return [r["title"] for r in db.execute_fetchall("SELECT title FROM agent_conversations ORDER BY id")]


def _insert(conn, session_id: str) -> None:
    conn.execute(
        "INSERT INTO agent_conversations (session_id, title, created_at, updated_at) VALUES (?, ?, 'now', 'now')",
        (session_id, session_id),
    )


class TestTransaction:
    def test_commit(self, db: ThreadSafeConnection) -> None:
        with db.transaction() as conn:
            _insert(conn, "a")
        assert _titles(db) == ["a"]

    def test_rollback_on_error(self, db: ThreadSafeConnection) -> None:
        with pytest.raises(RuntimeError):
            with db.transaction() as conn:
                _insert(conn, "a")
                raise RuntimeError("boom")
        assert _titles(db) == []

    def test_nested_block_joins_outer_transaction(self, db: ThreadSafeConnection) -> None:
        with pytest.raises(RuntimeError):
            with db.transaction() as conn:
                with db.transaction() as inner:
                    _insert(inner, "inner")
                _insert(conn, "outer")
                raise RuntimeError("boom")
        assert _titles(db) == []

    def test_nested_commit_waits_for_outer(self, db: ThreadSafeConnection) -> None:
        with db.transaction() as conn:
            with db.transaction() as inner:
                _insert(inner, "inner")
            assert conn.in_transaction
            _insert(conn, "outer")
        assert _titles(db) == ["inner", "outer"]

    def test_usable_after_rollback(self, db: ThreadSafeConnection) -> None:
        with pytest.raises(RuntimeError):
            with db.transaction():
                raise RuntimeError("boom")
        with db.transaction() as conn:
            _insert(conn, "later")
        assert _titles(db) == ["later"]
