"""SQLite data access for the per-session pending message queue.

Items are ordered by ``created_at`` (integer milliseconds) ascending, ties broken
by ``id``. There is no rank column: moving an item swaps its ``created_at`` with
a neighbour's, so a move across several positions is a series of pairwise swaps.
"""

from __future__ import annotations

import time
import uuid
from typing import Any

from ..db import ThreadSafeConnection

_ORDER = "ORDER BY created_at ASC, id ASC"


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _uuid() -> str:
    return str(uuid.uuid4())


def _require_content(content: str | None) -> str:
    if content is None or not content.strip():
        raise ValueError("Queue item content must not be empty")
    return content


def _to_item(row: Any) -> dict[str, Any]:
    item = dict(row)
    item["is_executed"] = bool(item["is_executed"])
    return item


def enqueue(db: ThreadSafeConnection, session_uuid: str, content: str) -> dict[str, Any]:
    """Append ``content`` to the end of the session's queue."""
    _require_content(content)
    item_id = _uuid()
    with db.transaction() as conn:
        last = conn.execute(
            "SELECT MAX(created_at) FROM session_message_queue WHERE session_uuid = ?",
            (session_uuid,),
        ).fetchone()[0]
        created_at = _now_ms()
        # Two enqueues in the same millisecond must still sort in call order.
        if last is not None and created_at <= last:
            created_at = last + 1
        conn.execute(
            "INSERT INTO session_message_queue (id, session_uuid, content, is_executed, created_at)"
            " VALUES (?, ?, ?, 0, ?)",
            (item_id, session_uuid, content, created_at),
        )
    return {
        "id": item_id,
        "session_uuid": session_uuid,
        "content": content,
        "is_executed": False,
        "created_at": created_at,
        "executed_at": None,
    }


def list_queue(db: ThreadSafeConnection, session_uuid: str) -> list[dict[str, Any]]:
    rows = db.execute_fetchall(
        f"SELECT * FROM session_message_queue WHERE session_uuid = ? AND is_executed = 0 {_ORDER}",
        (session_uuid,),
    )
    return [_to_item(r) for r in rows]


def peek(db: ThreadSafeConnection, session_uuid: str) -> dict[str, Any] | None:
    row = db.execute_fetchone(
        f"SELECT * FROM session_message_queue WHERE session_uuid = ? AND is_executed = 0 {_ORDER} LIMIT 1",
        (session_uuid,),
    )
    return _to_item(row) if row else None


def get_item(db: ThreadSafeConnection, session_uuid: str, item_id: str) -> dict[str, Any] | None:
    row = db.execute_fetchone(
        "SELECT * FROM session_message_queue WHERE id = ? AND session_uuid = ?",
        (item_id, session_uuid),
    )
    return _to_item(row) if row else None


def count_queue(db: ThreadSafeConnection, session_uuid: str) -> int:
    row = db.execute_fetchone(
        "SELECT COUNT(*) FROM session_message_queue WHERE session_uuid = ? AND is_executed = 0",
        (session_uuid,),
    )
    return row[0] if row else 0


def search_queue(db: ThreadSafeConnection, session_uuid: str, keyword: str) -> list[dict[str, Any]]:
    if not keyword:
        return list_queue(db, session_uuid)
    rows = db.execute_fetchall(
        "SELECT * FROM session_message_queue"
        " WHERE session_uuid = ? AND is_executed = 0 AND instr(lower(content), lower(?)) > 0"
        f" {_ORDER}",
        (session_uuid, keyword),
    )
    return [_to_item(r) for r in rows]


def update_item(db: ThreadSafeConnection, session_uuid: str, item_id: str, content: str) -> int:
    """Replace a pending item's content. Returns the number of rows changed (0 if not pending in this session)."""
    _require_content(content)
    with db.transaction() as conn:
        cur = conn.execute(
            "UPDATE session_message_queue SET content = ?"
            " WHERE id = ? AND session_uuid = ? AND is_executed = 0",
            (content, item_id, session_uuid),
        )
        return cur.rowcount


def delete_item(db: ThreadSafeConnection, session_uuid: str, item_id: str) -> int:
    with db.transaction() as conn:
        cur = conn.execute(
            "DELETE FROM session_message_queue WHERE id = ? AND session_uuid = ?",
            (item_id, session_uuid),
        )
        return cur.rowcount


def restore_item(db: ThreadSafeConnection, item: dict[str, Any]) -> None:
    """Put a removed item back with its original id and ``created_at``, so it keeps its place."""
    with db.transaction() as conn:
        conn.execute(
            "INSERT OR REPLACE INTO session_message_queue"
            " (id, session_uuid, content, is_executed, created_at, executed_at)"
            " VALUES (?, ?, ?, 0, ?, NULL)",
            (item["id"], item["session_uuid"], item["content"], item["created_at"]),
        )


def swap_order(db: ThreadSafeConnection, session_uuid: str, id1: str, id2: str) -> bool:
    """Exchange the ``created_at`` of two items. Both writes commit together or not at all."""
    with db.transaction() as conn:
        rows = conn.execute(
            "SELECT id, created_at FROM session_message_queue"
            " WHERE session_uuid = ? AND is_executed = 0 AND id IN (?, ?)",
            (session_uuid, id1, id2),
        ).fetchall()
        stamps = {r["id"]: r["created_at"] for r in rows}
        if id1 not in stamps or id2 not in stamps:
            return False
        if id1 == id2:
            return True
        conn.execute(
            "UPDATE session_message_queue SET created_at = ? WHERE id = ?",
            (stamps[id2], id1),
        )
        conn.execute(
            "UPDATE session_message_queue SET created_at = ? WHERE id = ?",
            (stamps[id1], id2),
        )
    return True


def mark_executed(db: ThreadSafeConnection, session_uuid: str, item_id: str) -> int:
    with db.transaction() as conn:
        cur = conn.execute(
            "UPDATE session_message_queue SET is_executed = 1, executed_at = ?"
            " WHERE id = ? AND session_uuid = ? AND is_executed = 0",
            (_now_ms(), item_id, session_uuid),
        )
        return cur.rowcount


def clear_queue(db: ThreadSafeConnection, session_uuid: str) -> int:
    """Mark every pending item executed. Rows are kept for the audit trail."""
    with db.transaction() as conn:
        cur = conn.execute(
            "UPDATE session_message_queue SET is_executed = 1, executed_at = ?"
            " WHERE session_uuid = ? AND is_executed = 0",
            (_now_ms(), session_uuid),
        )
        return cur.rowcount


def delete_session_queue(db: ThreadSafeConnection, session_uuid: str) -> int:
    with db.transaction() as conn:
        cur = conn.execute(
            "DELETE FROM session_message_queue WHERE session_uuid = ?",
            (session_uuid,),
        )
        return cur.rowcount
