"""
Pydantic configuration models for seqflow runs.

A RunConfig holds everything that controls how a pipeline executes (where
artifacts live, resource ceilings, executor behaviour, report outputs)
plus the ``params`` overrides for the pipeline itself. Configuration can be
loaded from YAML files with named ``profiles`` and is then overridden from
the CLI.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal, Self

from pydantic import BaseModel, Field, field_validator, model_validator

from seqflow.core.units import parse_duration, parse_memory

logger = logging.getLogger(__name__)


class ResourceLimits(BaseModel):
    """Global resource ceiling shared by all concurrently running tasks."""

    max_cpus: int = Field(
        default_factory=lambda: os.cpu_count() or 1,
        ge=1,
        description="CPU slots available to the run",
    )
    max_memory_mb: int | None = Field(
        default=None,
        ge=1,
        description="Memory available to the run in megabytes (None for unlimited)",
    )
    max_time_s: float | None = Field(
        default=None,
        gt=0,
        description="Upper bound applied to scaled per-task wall-time hints",
    )

    @model_validator(mode="before")
    @classmethod
    def parse_human_units(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "max_memory" in data:
                data["max_memory_mb"] = parse_memory(data.pop("max_memory"))
            if "max_time" in data:
                data["max_time_s"] = parse_duration(data.pop("max_time"))
        return data

    model_config = {"frozen": True}


class DockerConfig(BaseModel):
    """Settings for running tasks inside containers."""

    enabled: bool = Field(default=False, description="Run tasks with a container image under docker")
    run_options: tuple[str, ...] = Field(
        default=(),
        description="Extra arguments inserted after 'docker run'",
    )
    user_mapping: bool = Field(
        default=True,
        description="Run containers as the invoking user so outputs stay writable",
    )

    @field_validator("run_options", mode="before")
    @classmethod
    def split_options(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(value.split())
        return value

    model_config = {"frozen": True}


class ExecutorConfig(BaseModel):
    """Local executor behaviour."""

    kill_on_abort: bool = Field(
        default=False,
        description=(
            "On a terminate abort, stop running tasks (SIGTERM then SIGKILL) "
            "instead of letting them finish"
        ),
    )
    kill_timeout: float = Field(
        default=10.0,
        ge=0,
        description="Seconds between SIGTERM and SIGKILL when stopping a task",
    )
    max_workers: int | None = Field(
        default=None,
        ge=1,
        description="Worker threads (defaults to the CPU ceiling)",
    )
    docker: DockerConfig = Field(default_factory=DockerConfig)

    @field_validator("kill_timeout", mode="before")
    @classmethod
    def parse_kill_timeout(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_duration(value)
        return value

    model_config = {"frozen": True}


class ReportConfig(BaseModel):
    """Which run artifacts the completion step writes to ``<outdir>/pipeline_info``."""

    trace: bool = Field(default=True, description="Write execution_trace.tsv")
    summary: bool = Field(default=True, description="Write summary.json")
    html: bool = Field(default=True, description="Write the HTML execution report")
    dag: Path | None = Field(default=None, description="Write the dependency graph in DOT format")
    log_file: bool = Field(default=True, description="Write seqflow.log next to the trace")

    model_config = {"frozen": True}


class RunConfig(BaseModel):
    """
    Complete configuration for one pipeline run.

    Example YAML:

        workdir: work
        outdir: results
        cache: deep
        limits:
          max_cpus: 8
          max_memory: 32 GB
        params:
          molecules: protein,dayhoff
        profiles:
          docker:
            executor:
              docker:
                enabled: true
          test:
            params:
              reads: tests/data/*_R{1,2}.fastq.gz
    """

    workdir: Path = Field(default=Path("work"), description="Artifact store root")
    outdir: Path = Field(default=Path("results"), description="Published results directory")
    resume: bool = Field(default=False, description="Reuse completed task namespaces")
    cache_mode: Literal["standard", "deep"] = Field(
        default="standard",
        description="Input file identity: path+size+mtime (standard) or content hash (deep)",
    )
    limits: ResourceLimits = Field(default_factory=ResourceLimits)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)
    params: dict[str, Any] = Field(
        default_factory=dict,
        description="Pipeline parameter overrides",
    )
    profiles: tuple[str, ...] = Field(default=(), description="Active profile names")

    @model_validator(mode="before")
    @classmethod
    def accept_cache_alias(cls, data: Any) -> Any:
        if isinstance(data, dict) and "cache" in data:
            data = dict(data)
            data["cache_mode"] = data.pop("cache")
        return data

    model_config = {"frozen": True}

    @property
    def info_dir(self) -> Path:
        """Directory receiving trace, summary and report files."""
        return self.outdir / "pipeline_info"

    @classmethod
    def from_yaml(cls, path: Path, profiles: tuple[str, ...] | list[str] = ()) -> RunConfig:
        """
        Load run configuration from a YAML file.

        Sections under ``profiles:`` are deep-merged over the base
        configuration in the order the profiles are given.

        Raises:
            FileNotFoundError: If the YAML file does not exist.
            ValueError: If the file is not a mapping or a profile is unknown.
        """
        import yaml

        raw = yaml.safe_load(path.read_text()) or {}
        if not isinstance(raw, dict):
            msg = f"YAML config must be a mapping, got {type(raw).__name__}"
            raise ValueError(msg)

        return cls.from_mapping(raw, profiles)

    @classmethod
    def from_mapping(
        cls,
        raw: dict[str, Any],
        profiles: tuple[str, ...] | list[str] = (),
    ) -> RunConfig:
        """Build a config from a parsed mapping, applying named profiles."""
        raw = dict(raw)
        available = raw.pop("profiles", None) or {}
        if not isinstance(available, dict):
            msg = "'profiles' must be a mapping of profile name to settings"
            raise ValueError(msg)

        merged = raw
        for name in profiles:
            if name not in available:
                known = ", ".join(sorted(available)) or "none defined"
                msg = f"Unknown profile '{name}' (available: {known})"
                raise ValueError(msg)
            logger.debug("Applying profile '%s'", name)
            merged = deep_merge(merged, available[name] or {})

        merged["profiles"] = tuple(profiles)
        return cls(**merged)

    def with_overrides(self, **overrides: Any) -> RunConfig:
        """Return a copy with top-level fields replaced (None values are skipped)."""
        updates = {k: v for k, v in overrides.items() if v is not None}
        if not updates:
            return self
        data = self.model_dump()
        for key, value in updates.items():
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key] = deep_merge(data[key], value)
            else:
                data[key] = value
        return RunConfig(**data)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``.

    Example:
        >>> deep_merge({"a": {"x": 1, "y": 2}}, {"a": {"y": 3}})
        {'a': {'x': 1, 'y': 3}}
    """
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result
