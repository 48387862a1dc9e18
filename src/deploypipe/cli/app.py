"""deploypipe command-line application."""

from __future__ import annotations

import typer

from deploypipe.cli.commands import plan, run, tag
from deploypipe.cli.common import console
from deploypipe.meta import __app_name__, __description__, __version__

app = typer.Typer(
    name=__app_name__,
    help=__description__,
    no_args_is_help=True,
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"{__app_name__} {__version__}", highlight=False)
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """Deployment pipeline orchestrator."""


app.command("run")(run)
app.command("plan")(plan)
app.command("tag")(tag)


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":
    main()
