"""
Task specification and task instance models.

A TaskSpec is the immutable, declarative description of one unit of
external work: its typed input and output ports, the command template,
resource hints and error strategy. A TaskInstance is one concrete,
scheduled execution of a TaskSpec bound to specific input values.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Self

from pydantic import BaseModel, Field, field_validator, model_validator

from seqflow.core.units import parse_duration, parse_memory

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

PortKind = Literal["val", "path", "tuple", "each"]
OutputKind = Literal["val", "path", "tuple"]


class InputPort(BaseModel):
    """Typed input port of a TaskSpec.

    Ports are declared with the factory classmethods:

        InputPort.val("sample_id")
        InputPort.path("reads")
        InputPort.tuple_of(InputPort.val("sample_id"), InputPort.path("reads"))
        InputPort.each("molecule")
    """

    kind: PortKind
    name: str | None = None
    elements: tuple[InputPort, ...] = ()
    stage_as: str | None = Field(
        default=None,
        description="File name used when staging a path input (defaults to the source name).",
    )

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def validate_shape(self) -> Self:
        if self.kind == "tuple":
            if not self.elements:
                msg = "tuple input port needs at least one element"
                raise ValueError(msg)
            if any(e.kind in ("tuple", "each") for e in self.elements):
                msg = "tuple input ports may only contain val and path elements"
                raise ValueError(msg)
        else:
            if not self.name or not _IDENTIFIER.match(self.name):
                msg = f"{self.kind} input port needs an identifier name, got {self.name!r}"
                raise ValueError(msg)
            if self.elements:
                msg = f"{self.kind} input port cannot have elements"
                raise ValueError(msg)
        return self

    @classmethod
    def val(cls, name: str) -> InputPort:
        return cls(kind="val", name=name)

    @classmethod
    def path(cls, name: str, stage_as: str | None = None) -> InputPort:
        return cls(kind="path", name=name, stage_as=stage_as)

    @classmethod
    def tuple_of(cls, *elements: InputPort) -> InputPort:
        return cls(kind="tuple", elements=tuple(elements))

    @classmethod
    def each(cls, name: str) -> InputPort:
        return cls(kind="each", name=name)

    @property
    def names(self) -> tuple[str, ...]:
        """Template variable names bound by this port."""
        if self.kind == "tuple":
            return tuple(e.name for e in self.elements if e.name)
        return (self.name,) if self.name else ()


class OutputPort(BaseModel):
    """Typed output port of a TaskSpec.

    ``pattern`` is a template rendered with the instance's input bindings.
    For path ports it is a glob relative to the instance working directory;
    for val ports the rendered string itself is emitted.
    """

    kind: OutputKind
    pattern: str | None = None
    elements: tuple[OutputPort, ...] = ()
    optional: bool = False
    emit: str | None = Field(default=None, description="Name for accessing this output channel")

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def validate_shape(self) -> Self:
        if self.kind == "tuple":
            if not self.elements:
                msg = "tuple output port needs at least one element"
                raise ValueError(msg)
            if any(e.kind == "tuple" for e in self.elements):
                msg = "tuple output ports cannot be nested"
                raise ValueError(msg)
        elif not self.pattern:
            msg = f"{self.kind} output port needs a pattern"
            raise ValueError(msg)
        return self

    @classmethod
    def val(cls, pattern: str, *, emit: str | None = None) -> OutputPort:
        return cls(kind="val", pattern=pattern, emit=emit)

    @classmethod
    def path(cls, pattern: str, *, optional: bool = False, emit: str | None = None) -> OutputPort:
        return cls(kind="path", pattern=pattern, optional=optional, emit=emit)

    @classmethod
    def tuple_of(cls, *elements: OutputPort, emit: str | None = None) -> OutputPort:
        return cls(kind="tuple", elements=tuple(elements), emit=emit)

    @property
    def path_patterns(self) -> tuple[OutputPort, ...]:
        """All path sub-ports (self included when it is a path port)."""
        if self.kind == "tuple":
            return tuple(e for e in self.elements if e.kind == "path")
        return (self,) if self.kind == "path" else ()


class ResourceHints(BaseModel):
    """Resources a task instance needs while running.

    Accepts ``memory`` and ``time`` as human-readable strings
    (``"4 GB"``, ``"2h"``) in addition to the normalized fields.
    """

    cpus: int = Field(default=1, ge=1, description="CPU slots")
    memory_mb: int | None = Field(default=None, ge=0, description="Memory in megabytes")
    time_s: float | None = Field(default=None, gt=0, description="Wall-time limit in seconds")

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def parse_human_units(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "memory" in data:
                data["memory_mb"] = parse_memory(data.pop("memory"))
            if "time" in data:
                data["time_s"] = parse_duration(data.pop("time"))
        return data

    def scaled(
        self,
        factor: float,
        *,
        max_cpus: int | None = None,
        max_memory_mb: int | None = None,
        max_time_s: float | None = None,
    ) -> ResourceHints:
        """Return hints multiplied by ``factor`` and capped at the given ceilings."""
        cpus = max(1, int(round(self.cpus * factor)))
        if max_cpus is not None:
            cpus = min(cpus, max_cpus)

        memory = None
        if self.memory_mb is not None:
            memory = int(round(self.memory_mb * factor))
            if max_memory_mb is not None:
                memory = min(memory, max_memory_mb)

        time_s = None
        if self.time_s is not None:
            time_s = self.time_s * factor
            if max_time_s is not None:
                time_s = min(time_s, max_time_s)

        return ResourceHints(cpus=cpus, memory_mb=memory, time_s=time_s)


class ErrorStrategy(BaseModel):
    """Failure policy applied when a task instance fails.

    Policies:
        terminate: cancel every instance that has not started and abort
            the run once running instances finish (default).
        ignore: mark the instance failed and keep scheduling independent
            branches.
        retry: re-queue the instance up to ``max_retries`` times, waiting
            ``backoff_seconds * 2 ** (attempt - 2)`` before each retry and
            multiplying resource hints by ``resource_scale ** (attempt - 1)``.
    """

    policy: Literal["terminate", "ignore", "retry"] = "terminate"
    max_retries: int = Field(default=1, ge=0)
    backoff_seconds: float = Field(default=0.0, ge=0.0)
    resource_scale: float = Field(default=1.0, ge=1.0)
    on_exhausted: Literal["terminate", "ignore"] = Field(
        default="terminate",
        description="What a retry strategy does once retries are used up.",
    )

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def validate_retry(self) -> Self:
        if self.policy == "retry" and self.max_retries < 1:
            msg = "retry error strategy needs max_retries >= 1"
            raise ValueError(msg)
        return self

    @classmethod
    def terminate(cls) -> ErrorStrategy:
        return cls(policy="terminate")

    @classmethod
    def ignore(cls) -> ErrorStrategy:
        return cls(policy="ignore")

    @classmethod
    def retry(
        cls,
        max_retries: int = 1,
        *,
        backoff_seconds: float = 0.0,
        resource_scale: float = 1.0,
        on_exhausted: Literal["terminate", "ignore"] = "terminate",
    ) -> ErrorStrategy:
        return cls(
            policy="retry",
            max_retries=max_retries,
            backoff_seconds=backoff_seconds,
            resource_scale=resource_scale,
            on_exhausted=on_exhausted,
        )

    def allows_retry(self, attempt: int) -> bool:
        """True if an instance that failed on ``attempt`` may run again."""
        return self.policy == "retry" and attempt <= self.max_retries

    def final_policy(self) -> Literal["terminate", "ignore"]:
        """Policy applied once no retry is left."""
        if self.policy == "retry":
            return self.on_exhausted
        return self.policy

    def backoff_for(self, attempt: int) -> float:
        """Delay before starting ``attempt`` (attempts count from 1)."""
        if attempt <= 1 or self.backoff_seconds == 0:
            return 0.0
        return self.backoff_seconds * 2 ** (attempt - 2)


class TaskSpec(BaseModel):
    """
    Declarative template for a unit of external work.

    The command is a template: ``{name}`` is replaced with the value bound
    to the input named ``name``; staged path inputs resolve to their file
    name inside the working directory. ``{task.cpus}``, ``{task.memory_mb}``,
    ``{task.attempt}`` and ``{task.name}`` expose the instance context.

    Example:
        >>> spec = TaskSpec(
        ...     name="count_lines",
        ...     inputs=(InputPort.path("input"),),
        ...     outputs=(OutputPort.path("{input}.count"),),
        ...     command="wc -l {input} > {input}.count",
        ... )
    """

    name: str
    inputs: tuple[InputPort, ...] = ()
    outputs: tuple[OutputPort, ...] = ()
    command: str
    resources: ResourceHints = Field(default_factory=ResourceHints)
    label: str | None = Field(default=None, description="Grouping label for display and config")
    tag: str | None = Field(default=None, description="Per-instance display template")
    error_strategy: ErrorStrategy = Field(default_factory=ErrorStrategy)
    publish_dir: str | None = Field(
        default=None,
        description="Directory under the run outdir that receives copies of path outputs",
    )
    container: str | None = Field(default=None, description="Container image (docker profile)")
    tools: tuple[str, ...] = Field(default=(), description="Executables required on PATH")
    shell: tuple[str, ...] = ("bash", "-ue")

    model_config = {"frozen": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not _IDENTIFIER.match(value):
            msg = f"Task name must be an identifier, got {value!r}"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def validate_ports(self) -> Self:
        seen: set[str] = set()
        for port in self.inputs:
            for name in port.names:
                if name in seen:
                    msg = f"Duplicate input name '{name}' in task '{self.name}'"
                    raise ValueError(msg)
                if name == "task":
                    msg = "'task' is reserved for the instance context"
                    raise ValueError(msg)
                seen.add(name)

        emits = [o.emit for o in self.outputs if o.emit]
        if len(emits) != len(set(emits)):
            msg = f"Duplicate output emit names in task '{self.name}'"
            raise ValueError(msg)
        return self

    @property
    def input_names(self) -> tuple[str, ...]:
        names: list[str] = []
        for port in self.inputs:
            names.extend(port.names)
        return tuple(names)

    def identity(self) -> dict[str, Any]:
        """Fields that define what the task computes (used for fingerprints).

        Resources, labels and error strategies do not change the result and
        are left out so that tuning them keeps cached results valid.
        """
        return {
            "name": self.name,
            "command": self.command,
            "inputs": [p.model_dump() for p in self.inputs],
            "outputs": [p.model_dump(exclude={"emit"}) for p in self.outputs],
            "shell": list(self.shell),
            "container": self.container,
        }


class TaskStatus(str, Enum):
    """Lifecycle state of a task instance."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CACHED = "cached"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TaskStatus.SUCCEEDED,
            TaskStatus.FAILED,
            TaskStatus.CACHED,
            TaskStatus.CANCELLED,
        )

    @property
    def is_success(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.CACHED)


@dataclass
class TaskInstance:
    """One concrete invocation of a TaskSpec.

    Mutated only by the scheduler's bookkeeping loop.

    Attributes:
        index: Run-wide creation order (1-based).
        spec: The TaskSpec being executed.
        ordinal: Position among the instances of the same process (1-based).
        bindings: Template variables (input names to bound values).
        staged: Files to link into the working directory, as (name, source).
        fingerprint: Content/parameter hash identifying the instance.
        workdir: Namespace directory owned by this instance.
    """

    index: int
    spec: TaskSpec
    ordinal: int
    bindings: dict[str, Any]
    staged: list[tuple[str, Path]] = field(default_factory=list)
    fingerprint: str = ""
    workdir: Path | None = None
    status: TaskStatus = TaskStatus.PENDING
    attempt: int = 1
    resources: ResourceHints = field(default_factory=ResourceHints)
    submitted_at: float | None = None
    started_at: float | None = None
    completed_at: float | None = None
    exit_code: int | None = None
    error: str | None = None
    propagated_from: str | None = None
    not_before: float = 0.0
    outputs: tuple[Any, ...] | None = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def tag(self) -> str:
        if self.spec.tag:
            try:
                return self.spec.tag.format_map(_display_bindings(self.bindings))
            except (KeyError, IndexError, AttributeError, ValueError):
                return str(self.ordinal)
        return str(self.ordinal)

    @property
    def label(self) -> str:
        return f"{self.spec.name} ({self.tag})"

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at


def _display_bindings(bindings: dict[str, Any]) -> dict[str, Any]:
    return {
        k: (v.name if isinstance(v, Path) else v)
        for k, v in bindings.items()
    }
