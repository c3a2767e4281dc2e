"""Bounded text accumulator for terminal output."""

from cli_agent_respawn.constants import RESPAWN_BUFFER_MAX_SIZE, RESPAWN_BUFFER_TRIM_SIZE


class RespawnBuffer:
    """Append-only text buffer with a hard size ceiling.

    When an append pushes the buffer past ``max_size`` it is trimmed to the
    most recent ``trim_size`` characters. ``total_appended`` counts every
    character ever appended and never goes backwards, so callers can remember
    a position and later ask for the text appended after it.
    """

    def __init__(
        self,
        max_size: int = RESPAWN_BUFFER_MAX_SIZE,
        trim_size: int = RESPAWN_BUFFER_TRIM_SIZE,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        if not 0 <= trim_size <= max_size:
            raise ValueError("trim_size must be between 0 and max_size")
        self.max_size = max_size
        self.trim_size = trim_size
        self._value = ""
        self._total_appended = 0

    @property
    def value(self) -> str:
        return self._value

    @property
    def total_appended(self) -> int:
        return self._total_appended

    @property
    def is_empty(self) -> bool:
        return not self._value

    def __len__(self) -> int:
        return len(self._value)

    def append(self, data: str) -> None:
        if not data:
            return
        self._value += data
        self._total_appended += len(data)
        if len(self._value) > self.max_size:
            self._value = self._value[-self.trim_size :] if self.trim_size else ""

    def since(self, position: int) -> str:
        """Return the retained text appended after ``position``.

        Text that was already trimmed away is not recoverable; in that case
        the whole retained buffer is returned.
        """
        pending = self._total_appended - position
        if pending <= 0:
            return ""
        if pending >= len(self._value):
            return self._value
        return self._value[-pending:]

    def tail(self, size: int) -> str:
        """Return at most the last ``size`` characters."""
        if size <= 0:
            return ""
        return self._value[-size:]

    def clear(self) -> None:
        """Drop retained text. ``total_appended`` keeps counting."""
        self._value = ""
