"""deploypipe: declarative build-test-scan-publish-deploy pipelines.

The engine runs an ordered list of stages against external tools
(version control, build tool, static analysis, vulnerability scanner,
container registry, Kubernetes) and always runs the terminal cleanup
block, whatever happened before it.

Examples:
    >>> from deploypipe.pipeline import PipelineEngine, RunParameters
    >>> from deploypipe.pipeline.workflow import standard_workflow
    >>> spec = standard_workflow({"name": "inventory"})  # doctest: +SKIP
    >>> report = PipelineEngine().run(spec, RunParameters(build_number=7))  # doctest: +SKIP
"""

from deploypipe.meta import __app_name__, __version__

__all__ = [
    "__app_name__",
    "__version__",
]
