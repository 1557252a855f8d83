"""SQLite data access layer for agent conversations, their messages and queue snapshots."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from ..db import ThreadSafeConnection
from . import queue_store

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 100

# Columns update_agent_conversation() may touch; keys never reach SQL unchecked.
_UPDATABLE_COLUMNS = {
    "status",
    "title",
    "cwd",
    "sdk_session_id",
    "message_count",
    "turn_count",
    "total_cost_usd",
    "api_profile_id",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _conversation(row: Any) -> dict[str, Any]:
    conv = dict(row)
    conv["cwd_auto"] = bool(conv["cwd_auto"])
    return conv


# --- Conversations ---


def create_agent_conversation(
    db: ThreadSafeConnection,
    session_id: str,
    *,
    type: str = "chat",
    title: str = "",
    cwd: str | None = None,
    cwd_auto: bool = False,
    api_profile_id: str | None = None,
) -> dict[str, Any]:
    now = _now()
    with db.transaction() as conn:
        cur = conn.execute(
            "INSERT INTO agent_conversations"
            " (session_id, type, title, cwd, cwd_auto, api_profile_id, created_at, updated_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (session_id, type, title, cwd, 1 if cwd_auto else 0, api_profile_id, now, now),
        )
        row_id = cur.lastrowid
    return {
        "id": row_id,
        "session_id": session_id,
        "type": type,
        "status": "idle",
        "title": title,
        "cwd": cwd,
        "cwd_auto": cwd_auto,
        "api_profile_id": api_profile_id,
        "created_at": now,
        "updated_at": now,
    }


def get_agent_conversation(db: ThreadSafeConnection, session_id: str) -> dict[str, Any] | None:
    row = db.execute_fetchone("SELECT * FROM agent_conversations WHERE session_id = ?", (session_id,))
    if not row:
        return None
    return _conversation(row)


def list_agent_conversations(
    db: ThreadSafeConnection,
    *,
    include_closed: bool = True,
    limit: int = DEFAULT_PAGE_LIMIT,
) -> list[dict[str, Any]]:
    if include_closed:
        rows = db.execute_fetchall(
            "SELECT * FROM agent_conversations ORDER BY updated_at DESC LIMIT ?",
            (limit,),
        )
    else:
        rows = db.execute_fetchall(
            "SELECT * FROM agent_conversations WHERE status != 'closed' ORDER BY updated_at DESC LIMIT ?",
            (limit,),
        )
    return [_conversation(r) for r in rows]


def update_agent_conversation(db: ThreadSafeConnection, session_id: str, **fields: Any) -> int:
    unknown = set(fields) - _UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Cannot update conversation column(s): {', '.join(sorted(unknown))}")
    if not fields:
        return 0
    assignments = ", ".join(f"{name} = ?" for name in fields)
    with db.transaction() as conn:
        cur = conn.execute(
            f"UPDATE agent_conversations SET {assignments}, updated_at = ? WHERE session_id = ?",
            (*fields.values(), _now(), session_id),
        )
        return cur.rowcount


def update_agent_conversation_title(db: ThreadSafeConnection, session_id: str, title: str) -> int:
    return update_agent_conversation(db, session_id, title=title)


def close_agent_conversation(db: ThreadSafeConnection, session_id: str) -> int:
    return update_agent_conversation(db, session_id, status="closed")


def close_all_active_agent_conversations(db: ThreadSafeConnection) -> int:
    """Mark rows a previous process left open as closed."""
    with db.transaction() as conn:
        cur = conn.execute(
            "UPDATE agent_conversations SET status = 'closed', updated_at = ? WHERE status != 'closed'",
            (_now(),),
        )
        return cur.rowcount


def delete_agent_conversation(db: ThreadSafeConnection, session_id: str) -> bool:
    """Hard delete: the conversation row, its messages and its queue rows."""
    with db.transaction() as conn:
        queue_store.delete_session_queue(db, session_id)
        cur = conn.execute("DELETE FROM agent_conversations WHERE session_id = ?", (session_id,))
        return cur.rowcount > 0


# --- Messages ---


def insert_agent_message(
    db: ThreadSafeConnection,
    conversation_id: int,
    *,
    msg_id: str,
    role: str,
    content: str | None = None,
    tool_name: str | None = None,
    tool_input: Any = None,
    tool_output: Any = None,
    interrupted: bool = False,
    timestamp: str | None = None,
) -> dict[str, Any]:
    ts = timestamp or _now()
    with db.transaction() as conn:
        cur = conn.execute(
            "INSERT INTO agent_messages"
            " (conversation_id, msg_id, role, content, tool_name, tool_input, tool_output, interrupted, timestamp)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                conversation_id,
                msg_id,
                role,
                content,
                tool_name,
                json.dumps(tool_input) if tool_input is not None else None,
                json.dumps(tool_output) if tool_output is not None else None,
                1 if interrupted else 0,
                ts,
            ),
        )
        conn.execute(
            "UPDATE agent_conversations SET updated_at = ? WHERE id = ?",
            (ts, conversation_id),
        )
        row_id = cur.lastrowid
    return {
        "id": row_id,
        "conversation_id": conversation_id,
        "msg_id": msg_id,
        "role": role,
        "content": content,
        "tool_name": tool_name,
        "interrupted": interrupted,
        "timestamp": ts,
    }


def list_agent_messages(db: ThreadSafeConnection, conversation_id: int) -> list[dict[str, Any]]:
    rows = db.execute_fetchall(
        "SELECT * FROM agent_messages WHERE conversation_id = ? ORDER BY id",
        (conversation_id,),
    )
    result = []
    for r in rows:
        d = dict(r)
        tool_input = d.pop("tool_input")
        tool_output = d.pop("tool_output")
        d["input"] = json.loads(tool_input) if tool_input else None
        d["output"] = json.loads(tool_output) if tool_output else None
        d["interrupted"] = bool(d["interrupted"])
        result.append(d)
    return result


# --- Queue snapshot ---


def save_queue_snapshot(db: ThreadSafeConnection, session_id: str, items: list[dict[str, Any]]) -> int:
    """Cache the pending queue on the conversation row. The queue table stays authoritative."""
    snapshot = [{"id": i["id"], "content": i["content"], "created_at": i["created_at"]} for i in items]
    with db.transaction() as conn:
        cur = conn.execute(
            "UPDATE agent_conversations SET queued_messages = ?, updated_at = ? WHERE session_id = ?",
            (json.dumps(snapshot), _now(), session_id),
        )
        return cur.rowcount


def load_queue_snapshot(db: ThreadSafeConnection, session_id: str) -> list[dict[str, Any]]:
    row = db.execute_fetchone(
        "SELECT queued_messages FROM agent_conversations WHERE session_id = ?",
        (session_id,),
    )
    if not row or not row["queued_messages"]:
        return []
    try:
        snapshot = json.loads(row["queued_messages"])
    except json.JSONDecodeError:
        logger.warning("Discarding unreadable queue snapshot for session %s", session_id)
        return []
    return snapshot if isinstance(snapshot, list) else []
