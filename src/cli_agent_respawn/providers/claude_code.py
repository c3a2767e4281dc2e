"""Claude Code output signal extraction.

Pure functions over terminal text. None of them mutate their input and none
of them raise on odd input, so the controller can run all of them on every
terminal-data event.
"""

import logging
import re
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


# Regex patterns for terminal control sequences
ANSI_CODE_PATTERN = r"\x1b\[[0-?]*[ -/]*[@-~]"
OSC_PATTERN = r"\x1b\][^\x07]*(?:\x07|\x1b\\)"
CHARSET_PATTERN = r"\x1b[()][A-Za-z0-9]|\x1b[=>78]"
CONTROL_CHAR_PATTERN = r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]"

# Regex patterns for Claude Code output analysis
# Completion summary printed when a turn ends: "✻ Worked for 1m 23s"
COMPLETION_PATTERN = r"\bWorked for\s+(\d+\s*[hms](?:\s*\d+\s*[hms])*)"
# Match Claude Code processing spinners:
# - "✽ Cooking… (esc to interrupt)" / "✶ Thinking… (6s · ↓ 174 tokens)"
# - braille spinners used while tools run
# A glyph inside quoted text also matches; this over-triggers on purpose.
SPINNER_PATTERN = r"[✶✢✽✻✳✺·]\s*\w+…"
BRAILLE_SPINNER_PATTERN = r"[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]"
THINKING_PATTERN = r"\bThinking(?:…|\.\.\.)"
INTERRUPT_HINT_PATTERN = r"esc to interrupt"
WORKING_PATTERN = "|".join(
    [SPINNER_PATTERN, BRAILLE_SPINNER_PATTERN, THINKING_PATTERN, INTERRUPT_HINT_PATTERN]
)
# Prompt at start of line, may include placeholder text (e.g. ❯ Try "how do I…")
IDLE_PROMPT_PATTERN = r"^[>❯](?:\s|$)"
# Token counter reading, e.g. "↓ 174 tokens", "12.5k tokens", "1.2M tokens"
TOKEN_COUNT_PATTERN = r"(?<![\d.])(\d+(?:\.\d+)?)\s*([kKM]?)\s+tokens\b"
TOKEN_MULTIPLIERS = {"": 1, "k": 1_000, "K": 1_000, "M": 1_000_000}
# Plan mode menu: numbered options plus the arrow cursor on one of them
NUMBERED_OPTION_PATTERN = r"^\s*(?:❯\s*)?(\d+)\.\s+\S"
SELECTOR_PATTERN = r"❯\s*(\d+)\.\s+\S"

# Output shorter than this (non-whitespace, after stripping) is cursor noise
SUBSTANTIAL_OUTPUT_MIN_CHARS = 3


class SignalReport(BaseModel):
    """All signals extracted from one piece of terminal text."""

    completion: Optional[str] = None
    working: bool = False
    prompt: bool = False
    token_count: Optional[int] = None
    plan_mode_ui: bool = False


def strip_control_sequences(text: str) -> str:
    """Strip ANSI/OSC escape sequences and normalize line endings."""
    if not text:
        return ""
    text = re.sub(OSC_PATTERN, "", text)
    text = re.sub(ANSI_CODE_PATTERN, "", text)
    text = re.sub(CHARSET_PATTERN, "", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return re.sub(CONTROL_CHAR_PATTERN, "", text)


def detect_completion_message(buf: str) -> Optional[str]:
    """Return the duration of the last "Worked for <duration>" message.

    The duration string is informational only.
    """
    last = None
    for m in re.finditer(COMPLETION_PATTERN, strip_control_sequences(buf)):
        last = m
    if last is None:
        return None
    return re.sub(r"\s+", " ", last.group(1)).strip()


def detect_working(buf: str) -> bool:
    """Return True when the text contains a transient "still working" indicator."""
    return re.search(WORKING_PATTERN, strip_control_sequences(buf)) is not None


def detect_prompt(buf: str) -> bool:
    """Return True when the agent's ready-for-input marker is present."""
    return re.search(IDLE_PROMPT_PATTERN, strip_control_sequences(buf), re.MULTILINE) is not None


def extract_token_count(buf: str) -> Optional[int]:
    """Parse the last token counter reading, honouring k/M suffixes.

    Malformed numbers yield None.
    """
    last = None
    for m in re.finditer(TOKEN_COUNT_PATTERN, strip_control_sequences(buf)):
        last = m
    if last is None:
        return None
    number, suffix = last.groups()
    try:
        return int(float(number) * TOKEN_MULTIPLIERS[suffix])
    except (KeyError, ValueError, OverflowError):
        return None


def detect_plan_mode_ui(buf: str) -> bool:
    """Return True when a plan-mode selection menu is on screen.

    Requires at least two numbered options and a ``❯ N.`` selector that
    belongs to the most recent menu (it sits at or after that menu's first
    option). A working indicator before the selector is fine; one after it
    means the menu is stale and being re-rendered over, so it is rejected.
    """
    text = strip_control_sequences(buf)

    options = list(re.finditer(NUMBERED_OPTION_PATTERN, text, re.MULTILINE))
    if len(options) < 2:
        return False

    selector = None
    for m in re.finditer(SELECTOR_PATTERN, text):
        selector = m
    if selector is None:
        return False

    # The latest menu starts at the last "1." option
    menu_start = options[0].start()
    for m in options:
        if m.group(1) == "1":
            menu_start = m.start()
    if selector.start() < menu_start:
        return False

    menu_options = [m for m in options if m.start() >= menu_start]
    if len(menu_options) < 2:
        return False

    if re.search(WORKING_PATTERN, text[selector.end() :]):
        logger.debug("Plan menu rejected: working indicator after selector")
        return False
    return True


def is_substantial_output(chunk: str) -> bool:
    """Return True when a chunk carries real content rather than cursor noise."""
    visible = re.sub(r"\s+", "", strip_control_sequences(chunk))
    return len(visible) >= SUBSTANTIAL_OUTPUT_MIN_CHARS


def analyze_output(text: str) -> SignalReport:
    """Run every extractor over ``text``."""
    return SignalReport(
        completion=detect_completion_message(text),
        working=detect_working(text),
        prompt=detect_prompt(text),
        token_count=extract_token_count(text),
        plan_mode_ui=detect_plan_mode_ui(text),
    )
