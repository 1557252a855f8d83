"""CLI entry point for the agentdesk command."""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn

from .config import AppConfig, _get_config_path, load_config
from .db import init_db


def _load_config_or_exit() -> AppConfig:
    try:
        return load_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        print(f"  Check {_get_config_path()} or the AGENTDESK_* environment variables.", file=sys.stderr)
        sys.exit(1)


def _configure_logging(config: AppConfig) -> None:
    logging.basicConfig(
        level=config.logging.numeric_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _serve(config: AppConfig) -> None:
    from .app import create_app

    app = create_app(config)

    url = f"http://{config.app.host}:{config.app.port}"
    print(f"\nStarting AgentDesk at {url}")
    print(f"  Agent command: {config.agent.command}")
    print(f"  Data dir: {config.app.data_dir}")
    print(f"  API token: {app.state.auth_token}")

    if config.app.host in ("0.0.0.0", "::"):
        print("  WARNING: Binding to all interfaces. The app is accessible from the network.", file=sys.stderr)

    uvicorn.run(app, host=config.app.host, port=config.app.port, log_level=config.logging.level.lower())


def _show_sessions(config: AppConfig) -> None:
    from .cli.renderer import render_sessions
    from .services import queue_store, storage

    db = init_db(config.app.data_dir / "agentdesk.db")
    try:
        sessions = []
        for row in storage.list_agent_conversations(db):
            sessions.append({
                "id": row["session_id"],
                "title": row["title"],
                "type": row["type"],
                "status": row["status"],
                "turn_count": row["turn_count"],
                "total_cost_usd": row["total_cost_usd"],
                "queue_length": queue_store.count_queue(db, row["session_id"]),
            })
        render_sessions(sessions)
    finally:
        db.close()


def _show_queue(config: AppConfig, session_id: str) -> None:
    from .cli.renderer import render_queue
    from .services import queue_store

    db = init_db(config.app.data_dir / "agentdesk.db")
    try:
        render_queue(session_id, queue_store.list_queue(db, session_id))
    finally:
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(prog="agentdesk", description="AgentDesk - sessions for command-line AI agents")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the API server (default)")
    sub.add_parser("sessions", help="List recorded agent sessions")
    queue_parser = sub.add_parser("queue", help="Show the pending message queue of a session")
    queue_parser.add_argument("session_id")
    args = parser.parse_args()

    config = _load_config_or_exit()
    _configure_logging(config)

    if args.command == "sessions":
        _show_sessions(config)
    elif args.command == "queue":
        _show_queue(config, args.session_id)
    else:
        _serve(config)


if __name__ == "__main__":
    main()
