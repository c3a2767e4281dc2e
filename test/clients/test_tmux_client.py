"""Tests for the libtmux wrapper."""

from unittest.mock import MagicMock

import pytest

from cli_agent_respawn.clients.tmux import TmuxClient


@pytest.fixture
def server():
    return MagicMock()


@pytest.fixture
def pane(server):
    session = server.sessions.get.return_value
    window = session.windows.get.return_value
    return window.active_pane


class TestTmuxClient:
    def test_session_exists(self, server):
        """session_exists reflects the tmux server."""
        client = TmuxClient(server)
        assert client.session_exists("work") is True
        server.sessions.get.assert_called_with(session_name="work", default=None)

        server.sessions.get.return_value = None
        assert client.session_exists("work") is False

    def test_get_pane_by_window_name(self, server, pane):
        """Named window -> its active pane."""
        client = TmuxClient(server)
        assert client.get_pane("work", "claude") is pane
        session = server.sessions.get.return_value
        session.windows.get.assert_called_once_with(window_name="claude", default=None)

    def test_get_pane_defaults_to_active_window(self, server):
        """No window name -> the active window."""
        client = TmuxClient(server)
        session = server.sessions.get.return_value
        assert client.get_pane("work") is session.active_window.active_pane
        session.windows.get.assert_not_called()

    def test_get_pane_missing_window(self, server):
        """Unknown window -> ValueError."""
        server.sessions.get.return_value.windows.get.return_value = None
        with pytest.raises(ValueError, match="Window 'claude' not found"):
            TmuxClient(server).get_pane("work", "claude")

    def test_get_pane_missing_session(self, server):
        """Unknown session -> ValueError."""
        server.sessions.get.return_value = None
        with pytest.raises(ValueError, match="Session 'work' not found"):
            TmuxClient(server).get_pane("work", "claude")

    def test_send_keys_literal_then_enter(self, server, pane):
        """Text is sent literally, then Enter separately."""
        TmuxClient(server).send_keys("work", "claude", "/clear", enter=True)

        pane.send_keys.assert_called_once_with("/clear", enter=False, suppress_history=False, literal=True)
        pane.enter.assert_called_once()

    def test_send_enter_only(self, server, pane):
        """Empty text -> Enter only."""
        TmuxClient(server).send_keys("work", "claude", "", enter=True)

        pane.send_keys.assert_not_called()
        pane.enter.assert_called_once()

    def test_get_history(self, server, pane):
        """History is the captured pane lines joined."""
        pane.capture_pane.return_value = ["line 1", "❯ "]
        assert TmuxClient(server).get_history("work", "claude", tail_lines=50) == "line 1\n❯ "
        pane.capture_pane.assert_called_once_with(start=-50)

    def test_pipe_pane_quotes_path(self, server, pane):
        """pipe-pane command quotes the log path."""
        client = TmuxClient(server)
        client.pipe_pane("work", "claude", "/tmp/my logs/work.log")
        pane.cmd.assert_called_once_with("pipe-pane", "-o", "cat >> '/tmp/my logs/work.log'")

        client.stop_pipe_pane("work", "claude")
        pane.cmd.assert_called_with("pipe-pane")
