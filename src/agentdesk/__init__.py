"""Desktop session manager for command-line AI agents."""

from importlib.metadata import version as _v

try:
    __version__ = _v("agentdesk")
except Exception:
    __version__ = "0.0.0"
