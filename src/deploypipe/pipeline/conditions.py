"""Run-conditions: predicates over run parameters and prior stage results.

Conditions are small frozen dataclasses so that a :class:`PipelineSpec`
stays immutable and printable. Configuration syntax::

    when: always
    when: {param: skip_tests, equals: false}
    when: {param: deploy_environment, in: [qa, prod]}
    when: {stage_succeeded: image-push}
    when: {all: [...]}          # also: any, not
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from deploypipe.pipeline.exceptions import PipelineConfigError

if TYPE_CHECKING:
    from deploypipe.pipeline.context import RunContext


class RunCondition(Protocol):
    """Predicate deciding whether a stage runs."""

    def __call__(self, context: RunContext) -> bool:
        """Evaluate against the current run context."""
        ...

    def describe(self) -> str:
        """Short human-readable form."""
        ...


@dataclass(frozen=True, slots=True)
class Always:
    """Always true."""

    def __call__(self, context: RunContext) -> bool:
        return True

    def describe(self) -> str:
        return "always"


@dataclass(frozen=True, slots=True)
class ParamEquals:
    """True when parameter ``name`` equals ``value``."""

    name: str
    value: Any

    def __call__(self, context: RunContext) -> bool:
        return _normalize(context.param(self.name)) == _normalize(self.value)

    def describe(self) -> str:
        return f"{self.name} == {self.value!r}"


@dataclass(frozen=True, slots=True)
class ParamIn:
    """True when parameter ``name`` is one of ``values``."""

    name: str
    values: tuple[Any, ...]

    def __call__(self, context: RunContext) -> bool:
        current = _normalize(context.param(self.name))
        return any(current == _normalize(value) for value in self.values)

    def describe(self) -> str:
        return f"{self.name} in {list(self.values)!r}"


@dataclass(frozen=True, slots=True)
class StageSucceeded:
    """True when an earlier stage succeeded."""

    stage: str

    def __call__(self, context: RunContext) -> bool:
        return context.stage_succeeded(self.stage)

    def describe(self) -> str:
        return f"{self.stage} succeeded"


@dataclass(frozen=True, slots=True)
class AllOf:
    """True when every nested condition is true."""

    conditions: tuple[RunCondition, ...]

    def __call__(self, context: RunContext) -> bool:
        return all(condition(context) for condition in self.conditions)

    def describe(self) -> str:
        return " and ".join(f"({c.describe()})" for c in self.conditions)


@dataclass(frozen=True, slots=True)
class AnyOf:
    """True when at least one nested condition is true."""

    conditions: tuple[RunCondition, ...]

    def __call__(self, context: RunContext) -> bool:
        return any(condition(context) for condition in self.conditions)

    def describe(self) -> str:
        return " or ".join(f"({c.describe()})" for c in self.conditions)


@dataclass(frozen=True, slots=True)
class Not:
    """Negation."""

    condition: RunCondition

    def __call__(self, context: RunContext) -> bool:
        return not self.condition(context)

    def describe(self) -> str:
        return f"not ({self.condition.describe()})"


ALWAYS = Always()


def _normalize(value: Any) -> Any:
    # Enum members compare by value; "false"/"true" strings from env-expanded
    # YAML compare as booleans.
    raw = getattr(value, "value", value)
    if isinstance(raw, str) and raw.lower() in ("true", "false"):
        return raw.lower() == "true"
    return raw


def param_false(name: str) -> ParamEquals:
    """Shortcut for ``{param: name, equals: false}`` (skip flags)."""
    return ParamEquals(name, False)


def parse_condition(raw: Any) -> RunCondition:
    """Parse a ``when`` value from configuration.

    Args:
        raw: ``None``, ``"always"`` or a single-key mapping.

    Returns:
        The parsed condition.

    Raises:
        PipelineConfigError: If the value is not understood.

    Examples:
        >>> parse_condition({"param": "skip_tests", "equals": False}).describe()
        'skip_tests == False'
        >>> parse_condition(None).describe()
        'always'
    """
    if raw is None or raw == "always":
        return ALWAYS
    if not isinstance(raw, Mapping):
        raise PipelineConfigError(f"Invalid condition {raw!r}")

    if "param" in raw:
        name = str(raw["param"])
        if "equals" in raw:
            return ParamEquals(name, raw["equals"])
        if "in" in raw:
            values = raw["in"]
            if not isinstance(values, (list, tuple)):
                raise PipelineConfigError(f"Condition on {name!r}: 'in' must be a list")
            return ParamIn(name, tuple(values))
        raise PipelineConfigError(f"Condition on {name!r} requires 'equals' or 'in'")

    if len(raw) != 1:
        raise PipelineConfigError(f"Invalid condition {dict(raw)!r}")
    key, value = next(iter(raw.items()))
    if key == "stage_succeeded":
        return StageSucceeded(str(value))
    if key in ("all", "any"):
        if not isinstance(value, (list, tuple)) or not value:
            raise PipelineConfigError(f"Condition '{key}' requires a non-empty list")
        nested = tuple(parse_condition(item) for item in value)
        return AllOf(nested) if key == "all" else AnyOf(nested)
    if key == "not":
        return Not(parse_condition(value))
    raise PipelineConfigError(f"Unknown condition {key!r}")


__all__ = [
    "ALWAYS",
    "AllOf",
    "Always",
    "AnyOf",
    "Not",
    "ParamEquals",
    "ParamIn",
    "RunCondition",
    "StageSucceeded",
    "param_false",
    "parse_condition",
]
