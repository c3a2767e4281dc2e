"""Tmux session adapter: feeds pane output to a controller and injects input."""

import asyncio
import codecs
import logging
from pathlib import Path
from typing import Callable, Optional

from cli_agent_respawn.clients.tmux import TmuxClient, tmux_client
from cli_agent_respawn.constants import ENTER_KEY, TERMINAL_LOG_DIR, TMUX_POLL_INTERVAL

logger = logging.getLogger(__name__)

# Bytes read from the pipe-pane log per poll
READ_CHUNK_SIZE = 64 * 1024


class TmuxTerminalSession:
    """One tmux window running Claude Code.

    Output is collected with ``pipe-pane`` into a log file which ``stream``
    tails, so the controller sees the raw byte stream (control sequences
    included) rather than rendered screen captures.
    """

    def __init__(
        self,
        session_name: str,
        window_name: Optional[str] = None,
        client: Optional[TmuxClient] = None,
        log_dir: Optional[Path] = None,
        poll_interval: float = TMUX_POLL_INTERVAL,
    ):
        self.session_name = session_name
        self.window_name = window_name
        self.client = client or tmux_client
        self.poll_interval = poll_interval
        log_dir = Path(log_dir) if log_dir else TERMINAL_LOG_DIR
        self.log_path = log_dir / f"{session_name}-{window_name or 'active'}.log"
        self._attached = False

    @property
    def id(self) -> str:
        return f"{self.session_name}:{self.window_name}" if self.window_name else self.session_name

    def attach(self) -> None:
        if not self.client.session_exists(self.session_name):
            raise ValueError(f"Session '{self.session_name}' not found")
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path.touch()
        self.client.pipe_pane(self.session_name, self.window_name, str(self.log_path))
        self._attached = True
        logger.info(f"Attached to tmux {self.id}")

    def detach(self) -> None:
        if not self._attached:
            return
        try:
            self.client.stop_pipe_pane(self.session_name, self.window_name)
        except Exception as e:
            logger.warning(f"Failed to stop pipe-pane for {self.id}: {e}")
        self._attached = False
        logger.info(f"Detached from tmux {self.id}")

    async def write(self, text: str) -> bool:
        """Type ``text``; a trailing carriage return becomes an Enter key press."""
        submit = text.endswith(ENTER_KEY)
        body = text[: -len(ENTER_KEY)] if submit else text
        try:
            await asyncio.to_thread(
                self.client.send_keys, self.session_name, self.window_name, body, submit
            )
        except Exception as e:
            logger.error(f"Failed to send input to {self.id}: {e}")
            return False
        logger.debug(f"Sent {len(text)} chars to {self.id}")
        return True

    async def stream(self, on_data: Callable[[str], None], stop: asyncio.Event) -> None:
        """Call ``on_data`` with every new piece of output until ``stop`` is set."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        with open(self.log_path, "rb") as f:
            f.seek(0, 2)
            while not stop.is_set():
                raw = await asyncio.to_thread(f.read, READ_CHUNK_SIZE)
                if raw:
                    text = decoder.decode(raw)
                    if text:
                        on_data(text)
                    continue
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
