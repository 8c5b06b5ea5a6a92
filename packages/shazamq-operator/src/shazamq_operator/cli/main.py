"""Shazamq operator CLI - reconciles ShazamqCluster resources."""

import logging

import typer
from rich.logging import RichHandler

from shazamq_operator.cli.events import events_command
from shazamq_operator.cli.run import render_command, run_command

app = typer.Typer(
    name="shazamq-operator",
    help="Kubernetes operator for Shazamq clusters",
    no_args_is_help=True,
)


@app.callback()
def configure(
    log_level: str = typer.Option(
        "INFO", "--log-level", "-l", envvar="SHAZAMQ_OPERATOR_LOG_LEVEL", help="Log level"
    ),
) -> None:
    """Install rich logging for every command."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


app.command("run")(run_command)
app.command("render")(render_command)
app.command("events")(events_command)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
