"""Tests for the tmux session adapter."""

import asyncio
from unittest.mock import MagicMock

import pytest

from cli_agent_respawn.services.terminal_service import TmuxTerminalSession


@pytest.fixture
def client():
    mock = MagicMock()
    mock.session_exists.return_value = True
    return mock


@pytest.fixture
def terminal(client, tmp_path):
    return TmuxTerminalSession("work", "claude", client=client, log_dir=tmp_path, poll_interval=0.01)


class TestTmuxTerminalSession:
    def test_id_and_log_path(self, client, tmp_path):
        """Session id is session:window and the log lives under the terminal log dir."""
        named = TmuxTerminalSession("work", "claude", client=client, log_dir=tmp_path)
        active = TmuxTerminalSession("work", client=client, log_dir=tmp_path)

        assert named.id == "work:claude"
        assert active.id == "work"
        assert named.log_path == tmp_path / "work-claude.log"
        assert active.log_path == tmp_path / "work-active.log"

    def test_attach_pipes_pane_to_log(self, terminal, client):
        """attach() pipes the pane into the log file."""
        terminal.attach()

        assert terminal.log_path.exists()
        client.pipe_pane.assert_called_once_with("work", "claude", str(terminal.log_path))

    def test_attach_missing_session(self, terminal, client):
        """attach() on a missing session raises ValueError."""
        client.session_exists.return_value = False
        with pytest.raises(ValueError, match="not found"):
            terminal.attach()
        client.pipe_pane.assert_not_called()

    def test_detach_stops_pipe(self, terminal, client):
        """detach() stops the pane pipe."""
        terminal.detach()
        client.stop_pipe_pane.assert_not_called()

        terminal.attach()
        terminal.detach()
        client.stop_pipe_pane.assert_called_once_with("work", "claude")

    async def test_write_with_enter(self, terminal, client):
        """Payload ending in Enter -> literal text then Enter."""
        assert await terminal.write("/clear\r") is True
        client.send_keys.assert_called_once_with("work", "claude", "/clear", True)

    async def test_write_without_enter(self, terminal, client):
        """Payload without Enter -> literal text only."""
        assert await terminal.write("partial") is True
        client.send_keys.assert_called_once_with("work", "claude", "partial", False)

    async def test_write_failure_returns_false(self, terminal, client):
        """tmux errors -> write() returns False."""
        client.send_keys.side_effect = ValueError("Window 'claude' not found")
        assert await terminal.write("hello\r") is False

    async def test_stream_delivers_new_output_only(self, terminal):
        """stream() forwards only output appended after attach."""
        terminal.attach()
        terminal.log_path.write_bytes("old output\n".encode("utf-8"))
        received = []
        stop = asyncio.Event()

        task = asyncio.create_task(terminal.stream(received.append, stop))
        await asyncio.sleep(0.05)
        with open(terminal.log_path, "ab") as f:
            # A multi-byte character split across two writes
            data = "✻ Worked for 5s\n".encode("utf-8")
            f.write(data[:1])
            f.flush()
            await asyncio.sleep(0.05)
            f.write(data[1:])
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

        assert "".join(received) == "✻ Worked for 5s\n"
