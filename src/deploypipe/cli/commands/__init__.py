"""CLI commands."""

from deploypipe.cli.commands.plan import plan
from deploypipe.cli.commands.run import run
from deploypipe.cli.commands.tag import tag

__all__ = [
    "plan",
    "run",
    "tag",
]
