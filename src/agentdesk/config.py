"""Configuration loader: YAML file with environment variable fallbacks."""

from __future__ import annotations

import logging
import os
import shlex
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_AGENT_ARGS = [
    "--print",
    "--verbose",
    "--input-format",
    "stream-json",
    "--output-format",
    "stream-json",
    "--include-partial-messages",
]

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class AgentConfig:
    command: str = "claude"
    args: list[str] = field(default_factory=lambda: list(DEFAULT_AGENT_ARGS))
    output_base_dir: Path = field(default_factory=lambda: Path.home() / "agentdesk-output")
    compact_command: str = "/compact"
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class AppSettings:
    host: str = "127.0.0.1"
    port: int = 8765
    data_dir: Path = field(default_factory=lambda: Path.home() / ".agentdesk")


@dataclass
class LoggingSettings:
    level: str = "INFO"

    @property
    def numeric_level(self) -> int:
        return getattr(logging, self.level)


@dataclass
class AppConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    app: AppSettings = field(default_factory=AppSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


def _get_config_path(data_dir: Path | None = None) -> Path:
    if data_dir:
        return data_dir / "config.yaml"
    return Path.home() / ".agentdesk" / "config.yaml"


def _parse_args(value: Any) -> list[str]:
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, list):
        return [str(v) for v in value]
    raise ValueError(f"'agent.args' must be a list or a string, got {type(value).__name__}")


def load_config(config_path: Path | None = None) -> AppConfig:
    raw: dict[str, Any] = {}
    path = config_path or _get_config_path()

    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    agent_raw = raw.get("agent", {}) or {}
    command = agent_raw.get("command") or os.environ.get("AGENTDESK_AGENT_COMMAND", "claude")
    if not str(command).strip():
        raise ValueError(f"'agent.command' must not be empty ({path})")

    args_raw = agent_raw.get("args")
    if args_raw is None:
        env_args = os.environ.get("AGENTDESK_AGENT_ARGS")
        args = shlex.split(env_args) if env_args else list(DEFAULT_AGENT_ARGS)
    else:
        args = _parse_args(args_raw)

    output_dir = agent_raw.get("output_base_dir") or os.environ.get(
        "AGENTDESK_OUTPUT_DIR", "~/agentdesk-output"
    )
    agent = AgentConfig(
        command=str(command),
        args=args,
        output_base_dir=Path(os.path.expanduser(str(output_dir))),
        compact_command=agent_raw.get("compact_command", "/compact"),
        env={str(k): str(v) for k, v in (agent_raw.get("env") or {}).items()},
    )

    app_raw = raw.get("app", {}) or {}
    data_dir = Path(
        os.path.expanduser(app_raw.get("data_dir") or os.environ.get("AGENTDESK_DATA_DIR", "~/.agentdesk"))
    )
    port_raw = app_raw.get("port", os.environ.get("AGENTDESK_PORT", 8765))
    try:
        port = int(port_raw)
    except (TypeError, ValueError):
        raise ValueError(f"'app.port' must be an integer, got {port_raw!r}")
    app_settings = AppSettings(
        host=app_raw.get("host") or os.environ.get("AGENTDESK_HOST", "127.0.0.1"),
        port=port,
        data_dir=data_dir,
    )

    log_raw = raw.get("logging", {}) or {}
    level = str(log_raw.get("level") or os.environ.get("AGENTDESK_LOG_LEVEL", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"'logging.level' must be one of {', '.join(_LOG_LEVELS)}, got {level!r}")

    app_settings.data_dir.mkdir(parents=True, exist_ok=True)
    try:
        app_settings.data_dir.chmod(stat.S_IRWXU)  # 0700
        if path.exists():
            path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
    except OSError:
        pass  # May fail on Windows or non-owned files

    return AppConfig(agent=agent, app=app_settings, logging=LoggingSettings(level=level))
