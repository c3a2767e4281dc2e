"""Check command: run the signal extractor over captured terminal text."""

import click

from cli_agent_respawn.clients.tmux import tmux_client
from cli_agent_respawn.providers.claude_code import analyze_output


@click.command()
@click.argument("source", type=click.File("r", encoding="utf-8", errors="replace"), default="-")
@click.option("--session", "session_name", help="Capture the pane of this tmux session instead")
@click.option("--window", "window_name", help="tmux window (default: the active window)")
@click.option("--json", "as_json", is_flag=True, help="Print the findings as JSON")
def check(source, session_name, window_name, as_json):
    """Show which idle/working/plan signals SOURCE contains (default: stdin)."""
    if session_name:
        try:
            text = tmux_client.get_history(session_name, window_name)
        except ValueError as e:
            raise click.ClickException(str(e))
    else:
        text = source.read()
    report = analyze_output(text)

    if as_json:
        click.echo(report.model_dump_json(indent=2))
        return

    click.echo(f"Completion message: {report.completion or 'none'}")
    click.echo(f"Working indicator:  {'yes' if report.working else 'no'}")
    click.echo(f"Prompt marker:      {'yes' if report.prompt else 'no'}")
    token_count = report.token_count if report.token_count is not None else "none"
    click.echo(f"Token count:        {token_count}")
    click.echo(f"Plan mode menu:     {'yes' if report.plan_mode_ui else 'no'}")
