"""
Artifact store: per-instance namespaces under the run work directory.

Each task instance owns ``<workdir>/<fp[:2]>/<fp[2:32]>/`` where ``fp`` is
its fingerprint. The namespace holds the staged inputs (symlinks), the
files written by the command, the ``.command.*`` bookkeeping files and the
completion manifest ``.seqflow.json``. The manifest is written atomically
and only after every declared output was found, so a namespace with a
manifest is always a complete result that ``--resume`` can reuse.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from seqflow.core.channels import expand_braces
from seqflow.core.exceptions import MissingOutputError, TaskFailure
from seqflow.external.base import validate_path_safe
from seqflow.models.task import InputPort, OutputPort, TaskInstance, TaskSpec

logger = logging.getLogger(__name__)

MANIFEST_NAME = ".seqflow.json"
COMMAND_FILES = (".command.sh", ".command.out", ".command.err", ".exitcode", MANIFEST_NAME)

CacheMode = Literal["standard", "deep"]


class StagedFiles(tuple):
    """Names of several staged files; formats as a space-separated list."""

    def __str__(self) -> str:
        return " ".join(str(x) for x in self)

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)


@dataclass
class BoundInputs:
    """Input values of one instance, resolved for templating and hashing.

    Attributes:
        bindings: Template variables (staged file names for path inputs).
        staged: (name inside the namespace, source path) pairs to link.
        identity: Raw values used to compute the fingerprint.
    """

    bindings: dict[str, Any] = field(default_factory=dict)
    staged: list[tuple[str, Path]] = field(default_factory=list)
    identity: dict[str, Any] = field(default_factory=dict)
    _used: dict[str, int] = field(default_factory=dict, repr=False)

    def stage(self, source: Any, stage_as: str | None) -> Any:
        if isinstance(source, (list, tuple)):
            names = []
            for i, item in enumerate(source, start=1):
                pattern = stage_as.replace("*", str(i)) if stage_as and "*" in stage_as else None
                names.append(self._stage_one(Path(str(item)), pattern))
            return StagedFiles(names)
        pattern = stage_as.replace("*", "") if stage_as else None
        return self._stage_one(Path(str(source)), pattern)

    def _stage_one(self, source: Path, name: str | None) -> str:
        name = name or source.name
        count = self._used.get(name, 0)
        self._used[name] = count + 1
        if count:
            name = f"{count}/{name}"
        self.staged.append((name, source))
        return name


def bind_inputs(spec: TaskSpec, values: tuple[Any, ...]) -> BoundInputs:
    """Destructure one value per input port into template bindings.

    Raises:
        TaskFailure: If a tuple item does not match its port's arity.
    """
    bound = BoundInputs()
    for port, value in zip(spec.inputs, values):
        if port.kind == "tuple":
            if not isinstance(value, (tuple, list)) or len(value) != len(port.elements):
                raise TaskFailure(
                    spec.name,
                    f"Task '{spec.name}' expected a {len(port.elements)}-tuple, got {value!r}",
                    suggestion="Check the channel feeding this tuple input (e.g. a missing map()).",
                )
            for element, item in zip(port.elements, value):
                _bind_one(bound, element, item)
        else:
            _bind_one(bound, port, value)
    return bound


def _bind_one(bound: BoundInputs, port: InputPort, value: Any) -> None:
    assert port.name is not None
    is_file = port.kind == "path" or (port.kind == "each" and isinstance(value, Path))
    if is_file:
        bound.bindings[port.name] = bound.stage(value, port.stage_as)
    else:
        bound.bindings[port.name] = value
    bound.identity[port.name] = value


def canonical_json(obj: Any) -> str:
    """Deterministic JSON encoding used for fingerprints."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def file_sha256(path: Path, chunk_size: int = 1 << 20) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


class ArtifactStore:
    """
    Content-addressed namespaces for task instances.

    Args:
        root: Work directory holding every namespace.
        cache_mode: How input files contribute to fingerprints:
            ``standard`` uses path, size and modification time;
            ``deep`` hashes file contents.
    """

    def __init__(self, root: Path, cache_mode: CacheMode = "standard"):
        self.root = root.resolve()
        self.cache_mode = cache_mode
        self._assigned: dict[str, int] = {}

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    def _value_identity(self, value: Any) -> Any:
        if isinstance(value, Path):
            return self._file_identity(value)
        if isinstance(value, (list, tuple)):
            return [self._value_identity(v) for v in value]
        if isinstance(value, dict):
            return {str(k): self._value_identity(v) for k, v in value.items()}
        return value

    def _file_identity(self, path: Path) -> dict[str, Any]:
        resolved = path.resolve()
        if not resolved.exists():
            return {"path": str(resolved), "missing": True}
        if self.cache_mode == "deep" and resolved.is_file():
            return {"name": path.name, "sha256": file_sha256(resolved)}
        stat = resolved.stat()
        return {"path": str(resolved), "size": stat.st_size, "mtime_ns": stat.st_mtime_ns}

    def fingerprint(self, spec: TaskSpec, identity: dict[str, Any]) -> str:
        """SHA-256 over the task identity and the resolved input values."""
        payload = {
            "task": spec.identity(),
            "inputs": {k: self._value_identity(v) for k, v in identity.items()},
        }
        return hashlib.sha256(canonical_json(payload).encode()).hexdigest()

    def namespace(self, fingerprint: str) -> Path:
        return self.root / fingerprint[:2] / fingerprint[2:32]

    def assign(self, instance: TaskInstance, identity: dict[str, Any]) -> None:
        """Set the instance's fingerprint and namespace.

        Identical fingerprints within one run get a counter-derived suffix
        in creation order, so every namespace has exactly one owner.
        """
        fingerprint = self.fingerprint(instance.spec, identity)
        seen = self._assigned.get(fingerprint, 0) + 1
        self._assigned[fingerprint] = seen
        if seen > 1:
            fingerprint = hashlib.sha256(f"{fingerprint}:{seen}".encode()).hexdigest()
            logger.debug("Duplicate fingerprint for %s, using copy #%d", instance.label, seen)
        instance.fingerprint = fingerprint
        instance.workdir = self.namespace(fingerprint)

    # -------------------------------------------------------------------------
    # Namespace lifecycle
    # -------------------------------------------------------------------------

    def prepare(self, instance: TaskInstance) -> Path:
        """Create a clean namespace and link the staged inputs into it.

        Raises:
            TaskFailure: If a staged input does not exist.
        """
        workdir = _require_workdir(instance)
        if workdir.exists():
            shutil.rmtree(workdir)
        workdir.mkdir(parents=True)

        for name, source in instance.staged:
            if not source.exists():
                raise TaskFailure(
                    instance.label,
                    f"Input file of task '{instance.label}' does not exist: {source}",
                    suggestion="Check that the upstream step produced the file.",
                )
            target = workdir / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.symlink_to(validate_path_safe(source))
        return workdir

    def lookup(self, instance: TaskInstance) -> bool:
        """True if the namespace holds a complete result for this fingerprint."""
        manifest = self.read_manifest(instance)
        if manifest is None:
            return False
        if manifest.get("fingerprint") != instance.fingerprint:
            return False
        if manifest.get("status") != "succeeded":
            return False
        workdir = _require_workdir(instance)
        missing = [p for p in manifest.get("outputs", []) if not (workdir / p).exists()]
        if missing:
            logger.debug("Cache miss for %s: missing %s", instance.label, missing[0])
            return False
        return True

    def read_manifest(self, instance: TaskInstance) -> dict[str, Any] | None:
        path = _require_workdir(instance) / MANIFEST_NAME
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable manifest %s: %s", path, e)
            return None
        return data if isinstance(data, dict) else None

    def write_manifest(self, instance: TaskInstance, outputs: tuple[Any, ...]) -> Path:
        """Record the instance as complete (temp file + rename)."""
        workdir = _require_workdir(instance)
        manifest = {
            "fingerprint": instance.fingerprint,
            "task": instance.name,
            "label": instance.label,
            "status": "succeeded",
            "attempt": instance.attempt,
            "exit_code": instance.exit_code,
            "outputs": sorted(
                str(p.relative_to(workdir)) for p in iter_output_paths(outputs)
            ),
            "completed_at": time.time(),
        }
        fd, tmp_name = tempfile.mkstemp(dir=workdir, prefix=".seqflow.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(manifest, f, indent=2)
            os.replace(tmp_name, workdir / MANIFEST_NAME)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return workdir / MANIFEST_NAME

    # -------------------------------------------------------------------------
    # Outputs
    # -------------------------------------------------------------------------

    def collect_outputs(self, instance: TaskInstance) -> tuple[Any, ...]:
        """Resolve every output port against the namespace.

        Returns one value per output port: a path (one match), a sorted
        list of paths (several matches), a rendered string (val ports) or a
        tuple of those. An optional path port without matches yields None.

        Raises:
            MissingOutputError: If a non-optional path port matches nothing.
        """
        workdir = _require_workdir(instance)
        context = _render_context(instance)
        excluded = {name for name, _ in instance.staged} | set(COMMAND_FILES)
        values = []
        for port in instance.spec.outputs:
            if port.kind == "tuple":
                values.append(
                    tuple(self._resolve(instance, e, workdir, context, excluded) for e in port.elements)
                )
            else:
                values.append(self._resolve(instance, port, workdir, context, excluded))
        return tuple(values)

    def _resolve(
        self,
        instance: TaskInstance,
        port: OutputPort,
        workdir: Path,
        context: dict[str, Any],
        excluded: set[str],
    ) -> Any:
        assert port.pattern is not None
        rendered = port.pattern.format_map(context)
        if port.kind == "val":
            return rendered

        matches: set[Path] = set()
        for candidate in expand_braces(rendered):
            for path in workdir.glob(candidate):
                if str(path.relative_to(workdir)) not in excluded:
                    matches.add(path)
        found = sorted(matches)
        if not found:
            if port.optional:
                return None
            raise MissingOutputError(instance.label, rendered, workdir)
        return found[0] if len(found) == 1 else found

    def publish(self, instance: TaskInstance, outputs: tuple[Any, ...], outdir: Path) -> list[Path]:
        """Copy path outputs into ``outdir/<publish_dir>`` when missing or changed."""
        if not instance.spec.publish_dir:
            return []
        target_dir = outdir / instance.spec.publish_dir.format_map(_render_context(instance))
        target_dir.mkdir(parents=True, exist_ok=True)

        published = []
        for source in iter_output_paths(outputs):
            target = target_dir / source.name
            if source.is_dir():
                shutil.copytree(source, target, dirs_exist_ok=True)
            elif not _same_file(source, target):
                shutil.copy2(source, target)
            published.append(target)
        logger.debug("Published %d file(s) of %s to %s", len(published), instance.label, target_dir)
        return published


def iter_output_paths(outputs: Any) -> list[Path]:
    """Flatten every path contained in collected output values."""
    found: list[Path] = []
    if isinstance(outputs, Path):
        found.append(outputs)
    elif isinstance(outputs, (list, tuple)):
        for item in outputs:
            found.extend(iter_output_paths(item))
    return found


def _same_file(source: Path, target: Path) -> bool:
    if not target.exists():
        return False
    src, dst = source.stat(), target.stat()
    return src.st_size == dst.st_size and int(src.st_mtime) == int(dst.st_mtime)


def _require_workdir(instance: TaskInstance) -> Path:
    if instance.workdir is None:
        msg = f"Instance {instance.label} has no namespace assigned"
        raise RuntimeError(msg)
    return instance.workdir


def _render_context(instance: TaskInstance) -> dict[str, Any]:
    return {**instance.bindings, "task": TaskContext.of(instance)}


@dataclass(frozen=True)
class TaskContext:
    """The ``{task.*}`` variables available to templates."""

    name: str
    index: int
    attempt: int
    cpus: int
    memory_mb: int | None
    time_s: float | None
    workdir: str

    @classmethod
    def of(cls, instance: TaskInstance) -> TaskContext:
        return cls(
            name=instance.name,
            index=instance.index,
            attempt=instance.attempt,
            cpus=instance.resources.cpus,
            memory_mb=instance.resources.memory_mb,
            time_s=instance.resources.time_s,
            workdir=str(instance.workdir),
        )


def render_command(instance: TaskInstance) -> str:
    """Substitute the instance's bindings into the command template."""
    return instance.spec.command.format_map(_render_context(instance))
