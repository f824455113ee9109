"""
Loading pipeline definitions and resolving their parameters.

A pipeline definition is a Python module exposing:

- ``build(flow)``: wires channels and processes (required)
- ``Params``: a pydantic model declaring the parameters (optional)
- ``PROFILES``: named configuration profiles shipped with the pipeline
  (optional; a config file's profiles of the same name win)

The module is addressed either by a file path or by the name of a bundled
pipeline.
"""

from __future__ import annotations

import importlib
import importlib.util
import inspect
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any

from pydantic import BaseModel, ValidationError

from seqflow.core.exceptions import (
    ConfigurationError,
    MissingParameterError,
    PipelineLoadError,
)
from seqflow.models.config import RunConfig, deep_merge
from seqflow.pipelines import BUNDLED

logger = logging.getLogger(__name__)


class GenericParams(BaseModel):
    """Parameters of a pipeline that declares no ``Params`` model."""

    model_config = {"extra": "allow", "frozen": True}


@dataclass
class PipelineDefinition:
    """An imported pipeline definition.

    Attributes:
        name: Display name (module stem or bundled name).
        source: File path or module name it was loaded from.
        build: The ``build(flow)`` function.
        params_model: Pydantic model for the parameters.
        profiles: Profiles shipped with the pipeline.
        description: First line of the module docstring.
    """

    name: str
    source: str
    build: Callable[..., Any]
    params_model: type[BaseModel] = GenericParams
    profiles: dict[str, Any] = field(default_factory=dict)
    description: str = ""


def load_pipeline(target: str | Path) -> PipelineDefinition:
    """
    Import a pipeline definition from a file path or a bundled name.

    Raises:
        PipelineLoadError: If the target cannot be found or imported, or
            does not define a callable ``build``.
    """
    target_str = str(target)
    if target_str in BUNDLED:
        name = target_str
        module = _import_bundled(target_str)
    else:
        path = Path(target_str)
        if not path.is_file():
            reason = "no such file" if not path.exists() else "not a file"
            raise PipelineLoadError(target_str, reason)
        name = path.stem
        module = _import_file(path)

    build = getattr(module, "build", None)
    if not callable(build):
        raise PipelineLoadError(target_str, "module does not define a build(flow) function")

    params_model = getattr(module, "Params", GenericParams)
    if not (inspect.isclass(params_model) and issubclass(params_model, BaseModel)):
        raise PipelineLoadError(target_str, "'Params' must be a pydantic BaseModel subclass")

    profiles = getattr(module, "PROFILES", {}) or {}
    if not isinstance(profiles, dict):
        raise PipelineLoadError(target_str, "'PROFILES' must be a mapping")

    doc = (module.__doc__ or "").strip().splitlines()
    logger.debug("Loaded pipeline '%s' from %s", name, getattr(module, "__file__", target_str))
    return PipelineDefinition(
        name=name,
        source=target_str,
        build=build,
        params_model=params_model,
        profiles=profiles,
        description=doc[0] if doc else "",
    )


def _import_bundled(name: str) -> ModuleType:
    try:
        return importlib.import_module(BUNDLED[name])
    except ImportError as e:
        raise PipelineLoadError(name, f"import failed: {e}") from e


def _import_file(path: Path) -> ModuleType:
    module_name = f"seqflow_pipeline_{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise PipelineLoadError(str(path), "not an importable Python module")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(module_name, None)
        raise PipelineLoadError(str(path), f"{type(e).__name__}: {e}") from e
    return module


def load_run_config(
    definition: PipelineDefinition,
    config_file: Path | None = None,
    profiles: tuple[str, ...] | list[str] = (),
) -> RunConfig:
    """
    Build the RunConfig from an optional YAML file and named profiles.

    Profiles shipped with the pipeline are available alongside those in the
    config file; a config-file profile with the same name is merged over the
    shipped one.

    Raises:
        ConfigurationError: If the file cannot be read or parsed, a profile
            is unknown, or a setting is invalid.
    """
    import yaml

    raw: dict[str, Any] = {}
    if config_file is not None:
        try:
            loaded = yaml.safe_load(config_file.read_text())
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read config file {config_file}: {e}",
                suggestion="Check the --config path.",
            ) from e
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in {config_file}: {e}",
                suggestion="Fix the syntax error reported above.",
            ) from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(
                f"Config file {config_file} must contain a mapping, got {type(loaded).__name__}"
            )
        raw = dict(loaded or {})

    raw["profiles"] = deep_merge(definition.profiles, raw.get("profiles") or {})
    try:
        return RunConfig.from_mapping(raw, profiles)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration: {_first_validation_message(e)}",
            suggestion="Check the config file and command line options.",
        ) from e
    except ValueError as e:
        raise ConfigurationError(
            str(e),
            suggestion="Use --profile with one of the listed profile names.",
        ) from e


def resolve_params(
    definition: PipelineDefinition,
    config: RunConfig,
    cli_params: dict[str, Any] | None = None,
) -> BaseModel:
    """
    Merge parameters once at startup and validate them.

    Precedence (lowest first): model defaults, config ``params:`` (profile
    params already merged in), command line ``--name value``.

    Returns:
        Frozen instance of the pipeline's Params model.

    Raises:
        MissingParameterError: If a required parameter has no value.
        ConfigurationError: If a value fails validation.
    """
    merged = {**config.params, **(cli_params or {})}
    model = definition.params_model

    if model.model_config.get("extra") != "allow":
        unknown = sorted(set(merged) - set(model.model_fields))
        for key in unknown:
            logger.warning("Ignoring unknown parameter '%s' for pipeline '%s'", key, definition.name)
            merged.pop(key)

    frozen = _frozen_model(model)
    try:
        return frozen(**merged)
    except ValidationError as e:
        for err in e.errors():
            if err["type"] == "missing":
                name = ".".join(str(p) for p in err["loc"])
                description = model.model_fields[name].description if name in model.model_fields else ""
                raise MissingParameterError(name, description or "") from e
        raise ConfigurationError(
            f"Invalid parameter: {_first_validation_message(e)}",
            suggestion="Check the --<name> values and the params section of the config file.",
        ) from e


def _frozen_model(model: type[BaseModel]) -> type[BaseModel]:
    if model.model_config.get("frozen"):
        return model
    return type(
        model.__name__,
        (model,),
        {
            "__module__": model.__module__,
            "__qualname__": model.__qualname__,
            "model_config": {**model.model_config, "frozen": True},
        },
    )


def _first_validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    loc = ".".join(str(p) for p in first["loc"])
    return f"{loc}: {first['msg']}" if loc else first["msg"]
