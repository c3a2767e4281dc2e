"""Configuration loading: defaults < JSON file < RESPAWN_* environment variables."""

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from cli_agent_respawn.constants import DEFAULT_CONFIG_FILE, ENV_PREFIX
from cli_agent_respawn.models.config import ConfigUpdateError, RespawnConfig

logger = logging.getLogger(__name__)

# (json_key, env_var_name, value_type)
_CONFIG_KEYS: List[Tuple[str, str, type]] = [
    ("enabled",                          "ENABLED",                          bool),
    ("idle_timeout_ms",                  "IDLE_TIMEOUT_MS",                  int),
    ("completion_confirm_ms",            "COMPLETION_CONFIRM_MS",            int),
    ("no_output_timeout_ms",             "NO_OUTPUT_TIMEOUT_MS",             int),
    ("inter_step_delay_ms",              "INTER_STEP_DELAY_MS",              int),
    ("clear_fallback_ms",                "CLEAR_FALLBACK_MS",                int),
    ("init_fallback_ms",                 "INIT_FALLBACK_MS",                 int),
    ("init_monitor_ms",                  "INIT_MONITOR_MS",                  int),
    ("update_prompt",                    "UPDATE_PROMPT",                    str),
    ("clear_command",                    "CLEAR_COMMAND",                    str),
    ("init_command",                     "INIT_COMMAND",                     str),
    ("kickstart_prompt",                 "KICKSTART_PROMPT",                 str),
    ("send_clear",                       "SEND_CLEAR",                       bool),
    ("send_init",                        "SEND_INIT",                        bool),
    ("idle_verifier_enabled",            "IDLE_VERIFIER_ENABLED",            bool),
    ("idle_verifier_cooldown_ms",        "IDLE_VERIFIER_COOLDOWN_MS",        int),
    ("idle_verifier_timeout_ms",         "IDLE_VERIFIER_TIMEOUT_MS",         int),
    ("plan_verifier_enabled",            "PLAN_VERIFIER_ENABLED",            bool),
    ("plan_verifier_cooldown_ms",        "PLAN_VERIFIER_COOLDOWN_MS",        int),
    ("plan_verifier_timeout_ms",         "PLAN_VERIFIER_TIMEOUT_MS",         int),
    ("max_consecutive_verifier_errors",  "MAX_CONSECUTIVE_VERIFIER_ERRORS",  int),
    ("auto_accept_prompts",              "AUTO_ACCEPT_PROMPTS",              bool),
    ("auto_accept_delay_ms",             "AUTO_ACCEPT_DELAY_MS",             int),
    ("skip_clear_when_low_context",      "SKIP_CLEAR_WHEN_LOW_CONTEXT",      bool),
    ("skip_clear_threshold_tokens",      "SKIP_CLEAR_THRESHOLD_TOKENS",      int),
    ("adaptive_timing_enabled",          "ADAPTIVE_TIMING_ENABLED",          bool),
    ("adaptive_min_confirm_ms",          "ADAPTIVE_MIN_CONFIRM_MS",          int),
    ("adaptive_max_confirm_ms",          "ADAPTIVE_MAX_CONFIRM_MS",          int),
]

VALID_KEYS = {json_key for json_key, _, _ in _CONFIG_KEYS}

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_env(env_var: str, typ: type) -> Optional[object]:
    """Read env var; return None if unset or empty string (treated as unset)."""
    raw = os.environ.get(env_var)
    if raw is None or raw == "":
        return None
    if typ is bool:
        lowered = raw.strip().lower()
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
        raise ConfigUpdateError(f"{env_var} must be a boolean, got {raw!r}")
    if typ is int:
        try:
            return int(raw)
        except ValueError as e:
            raise ConfigUpdateError(f"{env_var} must be an integer, got {raw!r}") from e
    return raw


def read_config_file(path: Union[str, Path]) -> Dict[str, object]:
    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigUpdateError(f"Config file not found: {config_path}")
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigUpdateError(f"Invalid JSON in config file {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigUpdateError(f"Config file {config_path} must contain a JSON object")

    unknown = set(data) - VALID_KEYS
    if unknown:
        raise ConfigUpdateError(f"Unknown config keys: {', '.join(sorted(unknown))}")
    return data


def load_config(path: Optional[Union[str, Path]] = None) -> RespawnConfig:
    """Build a RespawnConfig from an optional JSON file plus environment overrides.

    Precedence (highest to lowest): env vars > JSON file > model defaults.
    Empty env vars are treated as unset. Without an explicit ``path`` the
    default config file in the working directory is used when present.
    """
    if path is None and Path(DEFAULT_CONFIG_FILE).is_file():
        path = DEFAULT_CONFIG_FILE

    overrides: Dict[str, object] = {}
    if path is not None:
        overrides.update(read_config_file(path))
        logger.info(f"Loaded respawn config from {path}")

    for json_key, env_name, typ in _CONFIG_KEYS:
        env_val = _parse_env(f"{ENV_PREFIX}{env_name}", typ)
        if env_val is not None:
            overrides[json_key] = env_val

    config = RespawnConfig()
    if overrides:
        # version stays 0 for a freshly loaded config
        config = config.apply_update(overrides).model_copy(update={"version": 0})
    return config
