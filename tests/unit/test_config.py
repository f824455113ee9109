"""
Unit tests for run configuration models.

Tests RunConfig defaults, YAML loading with profiles, CLI overrides and
deep_merge.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from seqflow.models.config import (
    DockerConfig,
    ExecutorConfig,
    ResourceLimits,
    RunConfig,
    deep_merge,
)


class TestResourceLimits:
    """Tests for ResourceLimits."""

    def test_defaults_to_cpu_count(self) -> None:
        limits = ResourceLimits()
        assert limits.max_cpus >= 1
        assert limits.max_memory_mb is None

    def test_human_units(self) -> None:
        limits = ResourceLimits(max_cpus=4, max_memory="16 GB", max_time="48h")
        assert limits.max_memory_mb == 16384
        assert limits.max_time_s == 48 * 3600

    def test_invalid_cpus(self) -> None:
        with pytest.raises(ValidationError):
            ResourceLimits(max_cpus=0)


class TestExecutorConfig:
    def test_docker_options_from_string(self) -> None:
        docker = DockerConfig(enabled=True, run_options="--network host --shm-size 1g")
        assert docker.run_options == ("--network", "host", "--shm-size", "1g")

    def test_kill_timeout_duration(self) -> None:
        assert ExecutorConfig(kill_timeout="1m").kill_timeout == 60.0


class TestRunConfig:
    """Tests for RunConfig construction and loading."""

    def test_defaults(self) -> None:
        config = RunConfig()
        assert config.workdir == Path("work")
        assert config.outdir == Path("results")
        assert config.cache_mode == "standard"
        assert config.resume is False
        assert config.info_dir == Path("results/pipeline_info")
        assert config.report.trace is True

    def test_cache_alias(self) -> None:
        assert RunConfig(cache="deep").cache_mode == "deep"

    def test_invalid_cache_mode(self) -> None:
        with pytest.raises(ValidationError):
            RunConfig(cache_mode="sometimes")

    def test_config_is_frozen(self) -> None:
        config = RunConfig()
        with pytest.raises(ValidationError):
            config.resume = True

    def test_from_yaml_with_profiles(self, temp_dir: Path) -> None:
        """Profiles are merged over the base in the order given."""
        path = temp_dir / "seqflow.yaml"
        path.write_text(
            "workdir: scratch\n"
            "limits:\n"
            "  max_cpus: 8\n"
            "params:\n"
            "  molecules: protein\n"
            "profiles:\n"
            "  small:\n"
            "    limits:\n"
            "      max_cpus: 2\n"
            "  dayhoff:\n"
            "    params:\n"
            "      molecules: dayhoff\n"
        )
        config = RunConfig.from_yaml(path, ["small", "dayhoff"])
        assert config.workdir == Path("scratch")
        assert config.limits.max_cpus == 2
        assert config.params == {"molecules": "dayhoff"}
        assert config.profiles == ("small", "dayhoff")

    def test_from_yaml_without_profiles(self, temp_dir: Path) -> None:
        path = temp_dir / "seqflow.yaml"
        path.write_text("limits:\n  max_cpus: 3\nprofiles:\n  small:\n    limits:\n      max_cpus: 1\n")
        assert RunConfig.from_yaml(path).limits.max_cpus == 3

    def test_from_yaml_rejects_list(self, temp_dir: Path) -> None:
        path = temp_dir / "seqflow.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="must be a mapping"):
            RunConfig.from_yaml(path)

    def test_unknown_profile(self) -> None:
        with pytest.raises(ValueError, match="Unknown profile 'gpu'"):
            RunConfig.from_mapping({"profiles": {"test": {}}}, ["gpu"])

    def test_empty_profile_body(self) -> None:
        config = RunConfig.from_mapping({"profiles": {"noop": None}}, ["noop"])
        assert config.profiles == ("noop",)

    def test_with_overrides(self) -> None:
        """None values are skipped and nested mappings are merged."""
        config = RunConfig(limits={"max_cpus": 8, "max_memory": "8 GB"})
        updated = config.with_overrides(
            workdir=Path("/tmp/w"),
            outdir=None,
            limits={"max_cpus": 2},
        )
        assert updated.workdir == Path("/tmp/w")
        assert updated.outdir == Path("results")
        assert updated.limits.max_cpus == 2
        assert updated.limits.max_memory_mb == 8192

    def test_with_overrides_no_changes(self) -> None:
        config = RunConfig()
        assert config.with_overrides(resume=None) is config


class TestDeepMerge:
    def test_nested_merge(self) -> None:
        assert deep_merge({"a": {"x": 1, "y": 2}}, {"a": {"y": 3}}) == {"a": {"x": 1, "y": 3}}

    def test_does_not_mutate_base(self) -> None:
        base = {"a": {"x": 1}}
        deep_merge(base, {"a": {"x": 2}, "b": 1})
        assert base == {"a": {"x": 1}}

    def test_scalar_replaces_mapping(self) -> None:
        assert deep_merge({"a": {"x": 1}}, {"a": 5}) == {"a": 5}
