"""Plain command stage."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from deploypipe.pipeline.models import StageDefinition
    from deploypipe.pipeline.stages.base import StageRun


class CommandStage:
    """Run the stage invocations in order; the first hard failure fails the stage."""

    def execute(self, stage: StageDefinition, run: StageRun) -> None:
        """Execute the stage body."""
        run.run_body(stage.invocations)


__all__ = [
    "CommandStage",
]
