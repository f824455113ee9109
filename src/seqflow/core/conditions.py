"""
Conditions deciding whether a process takes part in a run.

Conditions are evaluated once, at graph build time, against the resolved
parameters. A process whose condition is false is excluded together with
everything that consumes its outputs.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

from pydantic import BaseModel


def _param(params: BaseModel | dict[str, Any], name: str) -> Any:
    if isinstance(params, dict):
        return params.get(name)
    return getattr(params, name, None)


@dataclass(frozen=True)
class ParamSet:
    """True when the parameter has a value (not None, not empty)."""

    name: str

    def evaluate(self, params: BaseModel | dict[str, Any]) -> bool:
        value = _param(params, self.name)
        return value is not None and value != "" and value != [] and value is not False

    def describe(self) -> str:
        return f"--{self.name} is set"


@dataclass(frozen=True)
class ParamTrue:
    """True when the parameter is truthy."""

    name: str

    def evaluate(self, params: BaseModel | dict[str, Any]) -> bool:
        return bool(_param(params, self.name))

    def describe(self) -> str:
        return f"--{self.name} is true"


@dataclass(frozen=True)
class FileExists:
    """True when the path held by the parameter exists on disk."""

    name: str

    def evaluate(self, params: BaseModel | dict[str, Any]) -> bool:
        value = _param(params, self.name)
        return value is not None and Path(str(value)).exists()

    def describe(self) -> str:
        return f"file --{self.name} exists"


@dataclass(frozen=True)
class Not:
    condition: Condition

    def evaluate(self, params: BaseModel | dict[str, Any]) -> bool:
        return not evaluate(self.condition, params)

    def describe(self) -> str:
        return f"not ({describe(self.condition)})"


@dataclass(frozen=True)
class AllOf:
    conditions: tuple[Condition, ...]

    def evaluate(self, params: BaseModel | dict[str, Any]) -> bool:
        return all(evaluate(c, params) for c in self.conditions)

    def describe(self) -> str:
        return " and ".join(describe(c) for c in self.conditions)


@dataclass(frozen=True)
class AnyOf:
    conditions: tuple[Condition, ...]

    def evaluate(self, params: BaseModel | dict[str, Any]) -> bool:
        return any(evaluate(c, params) for c in self.conditions)

    def describe(self) -> str:
        return " or ".join(describe(c) for c in self.conditions)


Condition = Union[
    ParamSet, ParamTrue, FileExists, Not, AllOf, AnyOf, bool, Callable[[Any], bool]
]


def evaluate(condition: Condition | None, params: BaseModel | dict[str, Any]) -> bool:
    """Evaluate a condition; None means always active."""
    if condition is None:
        return True
    if isinstance(condition, bool):
        return condition
    if isinstance(condition, (ParamSet, ParamTrue, FileExists, Not, AllOf, AnyOf)):
        return condition.evaluate(params)
    return bool(condition(params))


def describe(condition: Condition | None) -> str:
    """Human-readable form of a condition for reports."""
    if condition is None:
        return "always"
    if isinstance(condition, bool):
        return str(condition).lower()
    if isinstance(condition, (ParamSet, ParamTrue, FileExists, Not, AllOf, AnyOf)):
        return condition.describe()
    return getattr(condition, "__name__", "custom condition")
