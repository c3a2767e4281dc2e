"""Constants for the CLI agent respawn controller.

This module defines the tuning constants shared by the respawn controller,
its verifier adapters, the tmux session adapter and the CLI.

The respawn controller watches a Claude Code session running inside tmux,
decides when the agent has gone idle and replays the update/clear/init/kickstart
sequence so long-running agent loops keep going without supervision.
"""

from pathlib import Path

# =============================================================================
# Respawn Buffer
# =============================================================================
# Hard ceiling for the accumulated terminal text (characters)
RESPAWN_BUFFER_MAX_SIZE = 1024 * 1024

# Size the buffer is trimmed back to once the ceiling is exceeded
# Keeping headroom avoids trimming on every append
RESPAWN_BUFFER_TRIM_SIZE = 512 * 1024

# =============================================================================
# Verifier Configuration
# =============================================================================
# Max characters of terminal text sent to the idle verifier (~4k tokens)
IDLE_VERIFIER_MAX_CONTEXT = 16000

# Max characters sent to the plan verifier (plan mode UI is compact)
PLAN_VERIFIER_MAX_CONTEXT = 8000

# Default model for the verifier oracles
DEFAULT_VERIFIER_MODEL = "claude-opus-4-5-20251101"

# Anthropic Messages API endpoint used by the HTTP oracle transport
ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_API_VERSION = "2023-06-01"

# =============================================================================
# Cycle Configuration
# =============================================================================
# Attempts to inject a step payload before the cycle is aborted
MAX_STEP_WRITE_ATTEMPTS = 3

# Enter keystroke appended to every injected step payload
ENTER_KEY = "\r"

# Observational history sizes
ACTION_LOG_SIZE = 50
CYCLE_METRICS_SIZE = 20

# =============================================================================
# Adaptive Timing
# =============================================================================
# Rolling window of successful cycles the adaptive confirmation window learns from
ADAPTIVE_TIMING_MAX_SAMPLES = 20

# Below this many samples the configured completion_confirm_ms is used as is
ADAPTIVE_TIMING_MIN_SAMPLES = 3

# Confirmation window as a fraction of the median time the agent worked before
# going idle (a 5 minute turn waits 15s), clamped to the configured min/max
ADAPTIVE_CONFIRM_RATIO = 0.05

# =============================================================================
# Circuit Breaker Thresholds
# =============================================================================
# closed -> half_open
BREAKER_HALF_OPEN_NO_PROGRESS = 2

# closed/half_open -> open
BREAKER_OPEN_NO_PROGRESS = 3

# closed -> open when the same error repeats this many cycles in a row
BREAKER_OPEN_SAME_ERROR = 5

# =============================================================================
# Tmux Configuration
# =============================================================================
# Lines of pane history returned by TmuxClient.get_history
TMUX_HISTORY_LINES = 200

# Seconds between reads of the pipe-pane log when no new output arrived
TMUX_POLL_INTERVAL = 0.5

# =============================================================================
# Agent Teams
# =============================================================================
# Claude Code agent-team state (teams and their task lists)
CLAUDE_HOME_DIR = Path.home() / ".claude"
TEAMS_DIR = CLAUDE_HOME_DIR / "teams"
TASKS_DIR = CLAUDE_HOME_DIR / "tasks"

# =============================================================================
# Configuration Files
# =============================================================================
# Environment variable prefix for configuration overrides
ENV_PREFIX = "RESPAWN_"

# Default configuration file looked up in the working directory
DEFAULT_CONFIG_FILE = "respawn.config.json"

# =============================================================================
# Directories
# =============================================================================
RESPAWN_HOME_DIR = Path.home() / ".cli-agent-respawn"
LOG_DIR = RESPAWN_HOME_DIR / "logs"
TERMINAL_LOG_DIR = LOG_DIR / "terminal"  # pipe-pane output per watched window
