"""Thin libtmux wrapper used by the tmux session adapter."""

import logging
import shlex
from typing import List, Optional

import libtmux

from cli_agent_respawn.constants import TMUX_HISTORY_LINES

logger = logging.getLogger(__name__)


class TmuxClient:
    """Addresses panes by (session name, optional window name)."""

    def __init__(self, server: Optional[libtmux.Server] = None):
        self._server = server

    @property
    def server(self) -> libtmux.Server:
        if self._server is None:
            self._server = libtmux.Server()
        return self._server

    def session_exists(self, session_name: str) -> bool:
        return self.server.sessions.get(session_name=session_name, default=None) is not None

    def get_pane(self, session_name: str, window_name: Optional[str] = None):
        """Active pane of the named window (or of the session's active window)."""
        session = self.server.sessions.get(session_name=session_name, default=None)
        if session is None:
            raise ValueError(f"Session '{session_name}' not found")
        if window_name:
            window = session.windows.get(window_name=window_name, default=None)
            if window is None:
                raise ValueError(f"Window '{window_name}' not found in session '{session_name}'")
        else:
            window = session.active_window
        return window.active_pane

    def send_keys(self, session_name: str, window_name: Optional[str], keys: str, enter: bool = False) -> None:
        """Type ``keys`` literally, then optionally press Enter."""
        pane = self.get_pane(session_name, window_name)
        if keys:
            pane.send_keys(keys, enter=False, suppress_history=False, literal=True)
        if enter:
            pane.enter()

    def get_history(
        self, session_name: str, window_name: Optional[str], tail_lines: int = TMUX_HISTORY_LINES
    ) -> str:
        pane = self.get_pane(session_name, window_name)
        lines: List[str] = pane.capture_pane(start=-tail_lines)
        return "\n".join(lines)

    def pipe_pane(self, session_name: str, window_name: Optional[str], file_path: str) -> None:
        """Append everything the pane prints to ``file_path``."""
        pane = self.get_pane(session_name, window_name)
        pane.cmd("pipe-pane", "-o", f"cat >> {shlex.quote(file_path)}")
        logger.info(f"Piping {session_name}:{window_name or '<active>'} to {file_path}")

    def stop_pipe_pane(self, session_name: str, window_name: Optional[str]) -> None:
        pane = self.get_pane(session_name, window_name)
        pane.cmd("pipe-pane")


tmux_client = TmuxClient()
