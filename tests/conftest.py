"""Shared fixtures: an in-memory backend and subprocess result helpers."""

import io
import subprocess

import pytest

from wingman_mcp.backends import CaptureFailed, ScrollbackFailed, TerminalBackend
from wingman_mcp.server import WingmanServer


class FakeBackend(TerminalBackend):
    """Backend that records calls instead of shelling out."""

    kind = "tmux"

    def __init__(self, session_name="test-session", window_id=""):
        super().__init__(session_name, window_id)
        self.content = "$ echo hello\nhello\n"
        self.history = "old line\n$ echo hello\nhello\n"
        self.info = {"width": "120", "height": "40", "current_path": "/home/dev", "pane_index": "0"}
        self.windows = [{"id": "0", "name": "bash"}, {"id": "1", "name": "vim"}]
        self.sessions = ["test-session"]
        self.fail_capture = False
        self.scrollback_requests = []
        self.ensure_calls = 0

    def _create_session_args(self):
        return []

    def ensure_session(self):
        self.ensure_calls += 1
        if self.session_name not in self.sessions:
            self.sessions.append(self.session_name)

    def session_exists(self):
        return self.session_name in self.sessions

    def capture_pane(self):
        if self.fail_capture:
            raise CaptureFailed("failed to capture pane: can't find session: test-session")
        return self.content

    def get_pane_info(self):
        return dict(self.info)

    def get_scrollback_history(self, lines):
        self.scrollback_requests.append(lines)
        if self.fail_capture:
            raise ScrollbackFailed("failed to capture scrollback: exit status 1")
        return self.history

    def kill_session(self):
        self.sessions.remove(self.session_name)

    def list_windows(self):
        return list(self.windows)

    def list_sessions(self):
        return list(self.sessions)


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def server(backend):
    return WingmanServer(backend, io.StringIO(), io.StringIO(), version="1.2.3")
