"""Rich-based terminal output for the inspection commands."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

console = Console()

_STATUS_STYLES = {
    "idle": "[green]● idle[/green]",
    "streaming": "[yellow]● streaming[/yellow]",
    "compacting": "[cyan]● compacting[/cyan]",
    "closed": "[grey62]○ closed[/grey62]",
}


def _truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def _format_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def render_sessions(sessions: list[dict[str, Any]]) -> None:
    if not sessions:
        console.print("\n[grey62]No agent sessions recorded.[/grey62]\n")
        return

    table = Table(title="Agent Sessions", show_header=True, header_style="bold")
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Turns", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Queued", justify="right")

    for s in sessions:
        status = s.get("status", "unknown")
        table.add_row(
            s["id"],
            escape(_truncate(s.get("title") or "", 40)),
            s.get("type", "?"),
            _STATUS_STYLES.get(status, f"[grey62]○ {status}[/grey62]"),
            str(s.get("turn_count", 0)),
            f"${s.get('total_cost_usd') or 0.0:.4f}",
            str(s.get("queue_length", 0)),
        )

    console.print()
    console.print(table)


def render_queue(session_id: str, items: list[dict[str, Any]]) -> None:
    if not items:
        console.print(f"\n[grey62]Queue for {escape(session_id)} is empty.[/grey62]\n")
        return

    table = Table(title=f"Queue {session_id}", show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Item", style="cyan", no_wrap=True)
    table.add_column("Queued at")
    table.add_column("Content")

    for position, item in enumerate(items, 1):
        table.add_row(
            str(position),
            item["id"],
            _format_ms(item["created_at"]),
            escape(_truncate(item["content"], 60)),
        )

    console.print()
    console.print(table)
