"""Watch command: attach a respawn controller to a tmux window."""

import asyncio
import logging
from typing import Optional

import click

from cli_agent_respawn.clients.oracle import AnthropicOracle, ClaudeCliOracle
from cli_agent_respawn.config import load_config
from cli_agent_respawn.constants import DEFAULT_VERIFIER_MODEL
from cli_agent_respawn.models.config import ConfigUpdateError, RespawnConfig
from cli_agent_respawn.services.respawn_controller import RespawnController
from cli_agent_respawn.services.team_watcher import TeamWatcher
from cli_agent_respawn.services.terminal_service import TmuxTerminalSession
from cli_agent_respawn.utils.events import RespawnEvent

logger = logging.getLogger(__name__)

ORACLES = ["claude-cli", "anthropic", "none"]
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str, log_file: Optional[str]) -> None:
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT, handlers=handlers)


def build_oracle(kind: str, model: str, api_key: Optional[str]):
    if kind == "claude-cli":
        return ClaudeCliOracle(model=model)
    if kind == "anthropic":
        if not api_key:
            raise click.ClickException("The anthropic oracle needs ANTHROPIC_API_KEY")
        return AnthropicOracle(api_key=api_key, model=model)
    return None


def format_event(event: RespawnEvent, payload: dict) -> str:
    parts = []
    for key, value in payload.items():
        parts.append(f"{key}={getattr(value, 'value', value)}")
    return f"[{event.value}] {' '.join(parts)}".rstrip()


async def run_watch(
    session: TmuxTerminalSession,
    config: RespawnConfig,
    oracle,
    team_watcher: Optional[TeamWatcher],
    quiet: bool,
    team_session_id: Optional[str] = None,
) -> None:
    controller = RespawnController(
        session.id,
        session,
        config=config,
        idle_oracle=oracle,
        plan_oracle=oracle,
        team_watcher=team_watcher,
        team_session_id=team_session_id,
    )
    if not quiet:
        controller.events.on_any(lambda event, payload: click.echo(format_event(event, payload)))

    stop = asyncio.Event()
    session.attach()
    try:
        if not controller.start():
            raise click.ClickException("Respawn controller refused to start")
        await session.stream(controller.handle_terminal_data, stop)
    finally:
        stop.set()
        await controller.aclose()
        session.detach()
        if hasattr(oracle, "aclose"):
            await oracle.aclose()


@click.command()
@click.option("--session", "session_name", required=True, help="tmux session running Claude Code")
@click.option("--window", "window_name", help="tmux window (default: the active window)")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    help="JSON config file (default: ./respawn.config.json when present)",
)
@click.option(
    "--oracle",
    type=click.Choice(ORACLES),
    default="claude-cli",
    envvar="RESPAWN_ORACLE",
    show_default=True,
    help="Verifier transport ('none' disables both verifiers)",
)
@click.option(
    "--model", default=DEFAULT_VERIFIER_MODEL, envvar="RESPAWN_ORACLE_MODEL", help="Verifier model"
)
@click.option("--api-key", envvar="ANTHROPIC_API_KEY", help="API key for the anthropic oracle")
@click.option(
    "--claude-session-id",
    envvar="RESPAWN_CLAUDE_SESSION_ID",
    help="Claude Code session id of the agent (the leadSessionId in its team files)",
)
@click.option("--no-teams", is_flag=True, help="Do not check for active agent teammates")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default="INFO")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also write logs to this file")
@click.option("--quiet", is_flag=True, help="Do not print controller events")
def watch(
    session_name,
    window_name,
    config_path,
    oracle,
    model,
    api_key,
    claude_session_id,
    no_teams,
    log_level,
    log_file,
    quiet,
):
    """Watch a Claude Code tmux window and respawn it whenever it goes idle."""
    setup_logging(log_level, log_file)
    try:
        config = load_config(config_path)
    except ConfigUpdateError as e:
        raise click.ClickException(str(e))

    verifier = build_oracle(oracle, model, api_key)
    session = TmuxTerminalSession(session_name, window_name)
    team_watcher = None
    if not no_teams:
        if claude_session_id:
            team_watcher = TeamWatcher()
        else:
            click.echo("Team check off: pass --claude-session-id to wait for active teammates")

    click.echo(f"Watching {session.id} (oracle: {oracle}, config v{config.version})")
    try:
        asyncio.run(
            run_watch(
                session, config, verifier, team_watcher, quiet, team_session_id=claude_session_id
            )
        )
    except KeyboardInterrupt:
        click.echo("Stopped")
    except click.ClickException:
        raise
    except Exception as e:
        raise click.ClickException(str(e))
