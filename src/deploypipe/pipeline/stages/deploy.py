"""Deploy stage: render a manifest, validate it server-side, apply it.

The rendered manifest is kept under ``<report_dir>/manifests`` as the
record of what was applied. The server-side dry run must succeed before
the real apply, so a manifest the cluster rejects is never half-applied.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from deploypipe.credentials.models import CredentialBinding
from deploypipe.pipeline.exceptions import TemplateError
from deploypipe.pipeline.models import Invocation

if TYPE_CHECKING:
    from deploypipe.pipeline.models import StageDefinition
    from deploypipe.pipeline.stages.base import StageRun

logger = logging.getLogger(__name__)


def kubectl_bindings(credential: str | None) -> tuple[CredentialBinding, ...]:
    """Bind a kubeconfig credential to ``KUBECONFIG``."""
    if not credential:
        return ()
    return (CredentialBinding(credential, target="KUBECONFIG"),)


class DeployStage:
    """Apply a manifest template to the run namespace.

    Options:
        manifest: Manifest template path, relative to the workspace.
        kubectl: kubectl executable (default ``kubectl``).
        credential: Kubeconfig credential reference.
        timeout: Per-call timeout for kubectl.
    """

    def execute(self, stage: StageDefinition, run: StageRun) -> None:
        """Run the body, then dry-run and apply the rendered manifest.

        Raises:
            TemplateError: The manifest cannot be read or rendered.
            StageError: kubectl failed or timed out.
        """
        run.run_body(stage.invocations)

        options = stage.options
        template = run.workspace_path(run.render(str(options["manifest"])))
        try:
            text = template.read_text(encoding="utf-8")
        except OSError as exc:
            raise TemplateError(stage.name, f"cannot read manifest {template}: {exc}") from exc

        target = run.context.report_dir / "manifests" / f"{stage.name}.yaml"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(run.render(text), encoding="utf-8")
        run.details["manifest"] = str(target)

        kubectl = str(options.get("kubectl", "kubectl"))
        timeout = float(options["timeout"]) if options.get("timeout") else None
        credentials = kubectl_bindings(options.get("credential"))
        args = ("apply", "-f", str(target), "-n", run.context.namespace)

        run.invoke(
            Invocation(command=kubectl, args=(*args, "--dry-run=server"), credentials=credentials, timeout=timeout)
        )
        logger.info("Stage '%s': manifest accepted by the cluster, applying", stage.name)
        run.invoke(Invocation(command=kubectl, args=args, credentials=credentials, timeout=timeout))


__all__ = [
    "DeployStage",
    "kubectl_bindings",
]
