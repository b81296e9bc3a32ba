"""Read-only terminal observation for AI assistants over MCP (tmux and GNU screen)."""

from .backends import BackendError, ScreenBackend, TerminalBackend, TmuxBackend, create_backend
from .server import StartupError, WingmanServer

__all__ = [
    "BackendError",
    "ScreenBackend",
    "StartupError",
    "TerminalBackend",
    "TmuxBackend",
    "WingmanServer",
    "create_backend",
]
