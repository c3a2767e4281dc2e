"""Main CLI entry point for CLI Agent Respawn."""

import click

from cli_agent_respawn.cli.commands.check import check
from cli_agent_respawn.cli.commands.watch import watch


@click.group()
def cli():
    """CLI Agent Respawn - keep unattended Claude Code sessions moving."""
    pass


cli.add_command(watch)
cli.add_command(check)


if __name__ == "__main__":
    cli()
