"""Terminal multiplexer backends - read-only access to tmux and GNU screen sessions.

Every operation shells out to the multiplexer binary and parses its text
output. Output formats drift between multiplexer versions, so parsing falls
back to documented placeholder values instead of failing where it can.
"""

import logging
import os
import re
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "mcp-wingman"
DEFAULT_COMMAND_TIMEOUT = 10.0
DEFAULT_SCREEN_SCROLLBACK = 1000

# Returned by list_windows when the multiplexer cannot enumerate windows
FALLBACK_WINDOW = {"id": "0", "name": "default"}


# =============================================================================
# ERRORS
# =============================================================================

class BackendError(Exception):
    """Base class for multiplexer failures. Messages name the failing operation."""


class BackendUnavailable(BackendError):
    """The multiplexer binary is not installed or not on PATH."""


class SessionCreateFailed(BackendError):
    pass


class BackendQueryFailed(BackendError):
    pass


class CaptureFailed(BackendError):
    pass


class ScrollbackFailed(BackendError):
    pass


class KillFailed(BackendError):
    pass


class ListFailed(BackendError):
    pass


# =============================================================================
# PROCESS INVOCATION
# =============================================================================

@dataclass
class CommandResult:
    """Outcome of one multiplexer invocation."""
    success: bool
    stdout: str = ""
    stderr: str = ""
    returncode: Optional[int] = None
    error: Optional[str] = None

    def describe(self) -> str:
        """Short failure description for error messages."""
        if self.error:
            return self.error
        detail = self.stderr.strip() or self.stdout.strip()
        if detail:
            return f"exit status {self.returncode} (stderr: {detail})"
        return f"exit status {self.returncode}"


def run_multiplexer(binary: str, *args: str, timeout: float = DEFAULT_COMMAND_TIMEOUT,
                    env: Optional[dict[str, str]] = None) -> CommandResult:
    """Run a multiplexer command and capture its output.

    A missing binary raises BackendUnavailable; every other failure is reported
    through the returned CommandResult.
    """
    cmd = [binary, *args]
    logger.debug("running %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env)
    except FileNotFoundError as e:
        raise BackendUnavailable(f"{binary} is not installed or not on PATH: {e}") from e
    except subprocess.TimeoutExpired:
        logger.warning("%s timed out after %ss", " ".join(cmd), timeout)
        return CommandResult(success=False, error="Command timed out")
    except OSError as e:
        return CommandResult(success=False, error=str(e))
    return CommandResult(
        success=result.returncode == 0,
        stdout=result.stdout,
        stderr=result.stderr,
        returncode=result.returncode,
    )


# =============================================================================
# BACKEND INTERFACE
# =============================================================================

class TerminalBackend(ABC):
    """Read-only view of one multiplexer session.

    The only mutable state is the selected window. An empty window id means
    the multiplexer's current window.
    """

    kind = ""
    binary = ""

    def __init__(self, session_name: str = DEFAULT_SESSION, window_id: str = "",
                 command_timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.session_name = session_name or DEFAULT_SESSION
        self.window_id = window_id
        self.command_timeout = command_timeout

    def run(self, *args: str, env: Optional[dict[str, str]] = None) -> CommandResult:
        return run_multiplexer(self.binary, *args, timeout=self.command_timeout, env=env)

    def ensure_session(self) -> None:
        """Create the session detached unless it already exists."""
        try:
            exists = self.session_exists()
        except BackendUnavailable:
            raise
        except BackendError as e:
            raise BackendQueryFailed(f"failed to check session: {e}") from e
        if exists:
            logger.debug("%s session %r already exists", self.kind, self.session_name)
            return
        result = self.run(*self._create_session_args())
        if not result.success:
            raise SessionCreateFailed(
                f"failed to create {self.kind} session {self.session_name!r}: {result.describe()}"
            )
        logger.info("created %s session %r", self.kind, self.session_name)

    def set_window(self, window_id: str) -> None:
        self.window_id = window_id

    def get_window(self) -> str:
        return self.window_id

    @abstractmethod
    def _create_session_args(self) -> list[str]:
        ...

    @abstractmethod
    def session_exists(self) -> bool:
        ...

    @abstractmethod
    def capture_pane(self) -> str:
        ...

    @abstractmethod
    def get_pane_info(self) -> dict[str, str]:
        ...

    @abstractmethod
    def get_scrollback_history(self, lines: int) -> str:
        ...

    @abstractmethod
    def kill_session(self) -> None:
        ...

    @abstractmethod
    def list_windows(self) -> list[dict[str, str]]:
        ...

    @abstractmethod
    def list_sessions(self) -> list[str]:
        ...


# =============================================================================
# TMUX
# =============================================================================

TMUX_PANE_INFO_FORMAT = "#{pane_width},#{pane_height},#{pane_current_path},#{pane_index}"


class TmuxBackend(TerminalBackend):
    """tmux session backend.

    Scrollback reads n lines of history above the visible pane.
    """

    kind = "tmux"
    binary = "tmux"

    @property
    def target(self) -> str:
        if self.window_id:
            return f"{self.session_name}:{self.window_id}"
        return self.session_name

    def _create_session_args(self) -> list[str]:
        return ["new-session", "-d", "-s", self.session_name]

    def session_exists(self) -> bool:
        result = self.run("has-session", "-t", self.session_name)
        if result.success:
            return True
        # Exit code 1 means the session (or the whole server) is absent
        if result.returncode == 1:
            return False
        raise BackendQueryFailed(f"failed to query tmux session: {result.describe()}")

    def capture_pane(self) -> str:
        result = self.run("capture-pane", "-p", "-t", self.target)
        if not result.success:
            raise CaptureFailed(f"failed to capture pane: {result.describe()}")
        return result.stdout

    def get_pane_info(self) -> dict[str, str]:
        result = self.run("display-message", "-p", "-t", self.target, TMUX_PANE_INFO_FORMAT)
        if not result.success:
            raise BackendQueryFailed(f"failed to get pane info: {result.describe()}")
        # current_path may itself contain commas
        parts = result.stdout.strip().split(",")
        if len(parts) < 4:
            raise BackendQueryFailed(f"unexpected pane info format: {result.stdout.strip()!r}")
        return {
            "width": parts[0],
            "height": parts[1],
            "current_path": ",".join(parts[2:-1]),
            "pane_index": parts[-1],
        }

    def get_scrollback_history(self, lines: int) -> str:
        result = self.run("capture-pane", "-p", "-t", self.target, "-S", f"-{lines}")
        if not result.success:
            raise ScrollbackFailed(f"failed to capture scrollback: {result.describe()}")
        return result.stdout

    def kill_session(self) -> None:
        result = self.run("kill-session", "-t", self.session_name)
        if not result.success:
            raise KillFailed(f"failed to kill tmux session {self.session_name!r}: {result.describe()}")

    def list_windows(self) -> list[dict[str, str]]:
        try:
            result = self.run("list-windows", "-t", self.session_name,
                              "-F", "#{window_index}\t#{window_name}")
        except BackendUnavailable as e:
            logger.debug("tmux list-windows unavailable: %s", e)
            return [dict(FALLBACK_WINDOW)]
        if not result.success:
            logger.debug("tmux list-windows failed: %s", result.describe())
            return [dict(FALLBACK_WINDOW)]
        windows = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            index, _, name = line.partition("\t")
            windows.append({"id": index.strip(), "name": name.strip() or index.strip()})
        return windows or [dict(FALLBACK_WINDOW)]

    def list_sessions(self) -> list[str]:
        result = self.run("list-sessions", "-F", "#{session_name}")
        if not result.success:
            # "no server running" exits 1 when there are no sessions at all
            if result.returncode == 1:
                return []
            raise ListFailed(f"failed to list sessions: {result.describe()}")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]


# =============================================================================
# GNU SCREEN
# =============================================================================

SCREEN_SESSION_RE = re.compile(r"^\s*\d+\.(\S+)\s+.*\((?:Attached|Detached|Multi, attached|Multi, detached)\)")
SCREEN_WINDOW_RE = re.compile(r"(?<!\S)(\d+)([*\-$!@&Z]*)\s+(\S+)")
SCREEN_SIZE_RE = re.compile(r"/\((\d+),(\d+)\)")


def screen_scrollback_limit(screenrc: Optional[Path] = None) -> int:
    """Return the positive defscrollback from ~/.screenrc.

    Missing, unparsable or non-positive entries fall back to DEFAULT_SCREEN_SCROLLBACK.
    """
    path = screenrc if screenrc is not None else Path.home() / ".screenrc"
    try:
        text = path.read_text(errors="replace")
    except OSError:
        return DEFAULT_SCREEN_SCROLLBACK
    for line in text.splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[0] == "defscrollback":
            try:
                configured = int(fields[1])
            except ValueError:
                continue
            if configured > 0:
                return configured
    return DEFAULT_SCREEN_SCROLLBACK


def parse_screen_sessions(output: str) -> list[str]:
    """Extract session names from `screen -ls` output (PID.name lines)."""
    sessions = []
    for line in output.splitlines():
        match = SCREEN_SESSION_RE.match(line)
        if match:
            sessions.append(match.group(1))
    return sessions


def parse_screen_windows(output: str) -> list[dict[str, str]]:
    """Parse `screen -Q windows` output such as "0- bash  1* vim".

    Flags (* current, - previous, $ logged in, ...) stay on the display name.
    Titles containing spaces are cut at the first space.
    """
    titles: dict[int, str] = {}
    for match in SCREEN_WINDOW_RE.finditer(output):
        number, flags, title = int(match.group(1)), match.group(2), match.group(3)
        titles.setdefault(number, f"{title}{flags}")
    return [{"id": str(n), "name": f"{n} {titles[n]}"} for n in sorted(titles)]


class ScreenBackend(TerminalBackend):
    """GNU screen session backend.

    Content is read through `hardcopy` into a per-call temporary file.
    Scrollback returns the last n lines of the hardcopy including history,
    clamped to the configured defscrollback.
    """

    kind = "screen"
    binary = "screen"

    def _window_args(self) -> list[str]:
        args = ["-S", self.session_name]
        if self.window_id:
            args.extend(["-p", self.window_id])
        return args

    def _create_session_args(self) -> list[str]:
        return ["-dmS", self.session_name]

    def session_exists(self) -> bool:
        try:
            return self.session_name in self.list_sessions()
        except ListFailed as e:
            raise BackendQueryFailed(f"failed to query screen session: {e}") from e

    def _hardcopy(self, *extra: str) -> tuple[CommandResult, str]:
        with tempfile.TemporaryDirectory(prefix="wingman-screen-") as tmpdir:
            path = Path(tmpdir) / "hardcopy"
            result = self.run(*self._window_args(), "-X", "hardcopy", *extra, str(path))
            if not result.success:
                return result, ""
            try:
                content = path.read_text(errors="replace")
            except OSError as e:
                return CommandResult(success=False, error=f"failed to read captured content: {e}"), ""
        return result, content

    def capture_pane(self) -> str:
        result, content = self._hardcopy()
        if not result.success:
            raise CaptureFailed(f"failed to capture screen content: {result.describe()}")
        return content

    def get_pane_info(self) -> dict[str, str]:
        info = {
            "width": "80",
            "height": "24",
            "current_path": "unknown",
            "window_id": self.window_id,
        }
        result = self.run(*self._window_args(), "-Q", "info")
        if not result.success:
            # Older screen releases lack -Q; callers get the placeholders
            logger.debug("screen -Q info failed: %s", result.describe())
            return info
        raw = result.stdout.strip()
        info["info"] = raw
        size = SCREEN_SIZE_RE.search(raw)
        if size:
            info["width"], info["height"] = size.group(1), size.group(2)
        return info

    def get_scrollback_history(self, lines: int) -> str:
        lines = max(0, min(lines, screen_scrollback_limit()))
        result, content = self._hardcopy("-h")
        if not result.success:
            raise ScrollbackFailed(f"failed to capture scrollback: {result.describe()}")
        all_lines = content.splitlines(keepends=True)
        # [-0:] would be the whole hardcopy
        return "".join(all_lines[len(all_lines) - lines:]) if lines else ""

    def kill_session(self) -> None:
        result = self.run("-S", self.session_name, "-X", "quit")
        if not result.success:
            raise KillFailed(f"failed to kill screen session {self.session_name!r}: {result.describe()}")

    def list_windows(self) -> list[dict[str, str]]:
        # -Q windows output is cut to the terminal width
        env = {**os.environ, "COLUMNS": "500", "LINES": "50"}
        try:
            result = self.run("-S", self.session_name, "-Q", "windows", env=env)
        except BackendUnavailable as e:
            logger.debug("screen -Q windows unavailable: %s", e)
            return [dict(FALLBACK_WINDOW)]
        if not result.success or not result.stdout.strip():
            return [dict(FALLBACK_WINDOW)]
        return parse_screen_windows(result.stdout) or [dict(FALLBACK_WINDOW)]

    def list_sessions(self) -> list[str]:
        result = self.run("-ls")
        sessions = parse_screen_sessions(result.stdout)
        if result.success or sessions:
            return sessions
        # screen -ls exits 1 when there are no sockets
        if result.returncode == 1:
            return []
        raise ListFailed(f"failed to list sessions: {result.describe()}")


BACKENDS: dict[str, type[TerminalBackend]] = {
    TmuxBackend.kind: TmuxBackend,
    ScreenBackend.kind: ScreenBackend,
}


def create_backend(kind: str, session_name: str = DEFAULT_SESSION, window_id: str = "",
                   command_timeout: float = DEFAULT_COMMAND_TIMEOUT) -> TerminalBackend:
    """Instantiate the backend for a terminal type ("tmux" or "screen")."""
    try:
        backend_cls = BACKENDS[kind]
    except KeyError:
        raise ValueError(f"invalid terminal type: {kind!r}, must be one of {', '.join(BACKENDS)}") from None
    return backend_cls(session_name, window_id, command_timeout)
