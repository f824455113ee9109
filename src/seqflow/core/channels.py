"""
Channels: ordered streams of items that connect processes.

A Channel is a build-time handle. Each one records the operator that
produces its items (a closed set of frozen dataclass variants below) and
its kind:

- queue channels carry a sequence of items, each consumed once, and may be
  wired into at most one consumer;
- value channels carry a single item that is replayed to every consumer.

Nothing flows at build time. The runtime in ``seqflow.core.dataflow``
walks the operators and pushes items through them while the run executes.

Example:
    >>> reads = from_file_pairs("data/*_R{1,2}.fastq.gz")
    >>> qc_in, trim_in = reads.into(2)
    >>> pairs = of(1, 2).combine(value(9))   # yields (1, 9), (2, 9)
"""

from __future__ import annotations

import glob
import itertools
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from seqflow.core.exceptions import (
    ChannelConsumedError,
    ConfigurationError,
    EmptyChannelError,
    GraphError,
    InputFileNotFoundError,
)

if TYPE_CHECKING:
    from seqflow.core.flow import ProcessNode

logger = logging.getLogger(__name__)

ChannelKind = Literal["queue", "value"]

_MISSING: Any = object()


@dataclass(frozen=True)
class Poison:
    """Marker item standing in for the output of a failed task instance."""

    source: str

    def __repr__(self) -> str:
        return f"Poison({self.source})"


def is_poisoned(item: Any) -> bool:
    """True if the item is, or contains at top level, a Poison marker."""
    if isinstance(item, Poison):
        return True
    if isinstance(item, (tuple, list)):
        return any(isinstance(x, Poison) for x in item)
    return False


def poison_source(item: Any) -> str | None:
    if isinstance(item, Poison):
        return item.source
    if isinstance(item, (tuple, list)):
        for x in item:
            if isinstance(x, Poison):
                return x.source
    return None


# =============================================================================
# Operator variants
# =============================================================================


@dataclass(frozen=True)
class Source:
    items: tuple[Any, ...]


@dataclass(frozen=True)
class MapOp:
    upstream: Channel
    fn: Callable[[Any], Any]


@dataclass(frozen=True)
class FilterOp:
    upstream: Channel
    predicate: Callable[[Any], bool]


@dataclass(frozen=True)
class SplitOp:
    upstream: Channel
    branch: int
    width: int


@dataclass(frozen=True)
class CombineOp:
    left: Channel
    right: Channel


@dataclass(frozen=True)
class GroupTupleOp:
    upstream: Channel
    by: tuple[int, ...]
    size: int | None
    remainder: bool


@dataclass(frozen=True)
class CollectOp:
    upstream: Channel


@dataclass(frozen=True)
class IfEmptyOp:
    upstream: Channel
    error: str | None
    default: Any = _MISSING

    @property
    def has_default(self) -> bool:
        return self.default is not _MISSING


@dataclass(frozen=True)
class MixOp:
    upstreams: tuple[Channel, ...]


@dataclass(frozen=True)
class ProcessOutput:
    node: ProcessNode
    port: int


@dataclass(frozen=True)
class Placeholder:
    label: str


Operator = (
    Source
    | MapOp
    | FilterOp
    | SplitOp
    | CombineOp
    | GroupTupleOp
    | CollectOp
    | IfEmptyOp
    | MixOp
    | ProcessOutput
    | Placeholder
)


def upstreams_of(op: Operator) -> tuple[Channel, ...]:
    """Channels an operator reads from (placeholders are resolved separately)."""
    if isinstance(op, (MapOp, FilterOp, SplitOp, GroupTupleOp, CollectOp, IfEmptyOp)):
        return (op.upstream,)
    if isinstance(op, CombineOp):
        return (op.left, op.right)
    if isinstance(op, MixOp):
        return op.upstreams
    return ()


# =============================================================================
# Channel handle
# =============================================================================


class Channel:
    """Build-time handle for a stream of items.

    Attributes:
        op: Operator producing this channel's items.
        kind: "queue" or "value".
        name: Display name used in errors, DAG exports and reports.
        disabled: True when the producer was excluded by a false condition.
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        op: Operator,
        kind: ChannelKind = "queue",
        *,
        name: str | None = None,
        disabled: bool = False,
    ):
        self.id = next(Channel._ids)
        self.op = op
        self.kind: ChannelKind = kind
        self.name = name or f"{_op_label(op)}_{self.id}"
        self.disabled = disabled
        self.consumer: str | None = None
        self.value_consumers: list[str] = []
        self.bound: Channel | None = None

    def __repr__(self) -> str:
        flags = " disabled" if self.disabled else ""
        return f"<Channel {self.name} {self.kind}{flags}>"

    @property
    def is_value(self) -> bool:
        return self.kind == "value"

    @property
    def is_placeholder(self) -> bool:
        return isinstance(self.op, Placeholder)

    def set_name(self, name: str) -> Channel:
        self.name = name
        return self

    def mark_consumed(self, consumer: str) -> None:
        """Register a consumer, enforcing single consumption of queue channels."""
        if self.is_value:
            self.value_consumers.append(consumer)
            return
        if self.consumer is not None:
            raise ChannelConsumedError(self.name, self.consumer, consumer)
        self.consumer = consumer

    def _derive(self, op: Operator, kind: ChannelKind, *sources: Channel) -> Channel:
        child = Channel(op, kind, disabled=any(s.disabled for s in sources))
        for source in sources:
            source.mark_consumed(child.name)
        return child

    # -------------------------------------------------------------------------
    # Operators
    # -------------------------------------------------------------------------

    def map(self, fn: Callable[[Any], Any]) -> Channel:
        """Apply ``fn`` to every item, preserving order."""
        return self._derive(MapOp(self, fn), self.kind, self)

    def filter(self, predicate: Callable[[Any], bool]) -> Channel:
        """Keep items for which ``predicate`` is true, preserving order."""
        return self._derive(FilterOp(self, predicate), self.kind, self)

    def into(self, n: int) -> tuple[Channel, ...]:
        """Split into ``n`` independent channels that each replay every item."""
        if n < 1:
            msg = f"into() needs at least one branch, got {n}"
            raise ValueError(msg)
        branches = tuple(
            Channel(SplitOp(self, i, n), self.kind, name=f"{self.name}[{i}]", disabled=self.disabled)
            for i in range(n)
        )
        self.mark_consumed(f"into({n})")
        return branches

    def combine(self, other: Channel) -> Channel:
        """Cartesian product with ``other``.

        Items are emitted in strict left-major order: for every item of this
        channel, in order, one pairing with each item of ``other``, in order.
        Tuple items are concatenated; scalars count as 1-tuples.
        """
        kind: ChannelKind = "value" if self.is_value and other.is_value else "queue"
        return self._derive(CombineOp(self, other), kind, self, other)

    def group_tuple(
        self,
        by: int | Iterable[int] = 0,
        *,
        size: int | None = None,
        remainder: bool = False,
    ) -> Channel:
        """Group tuple items sharing the key fields given by ``by``.

        Groups are emitted in first-seen key order once upstream completes,
        or as soon as a group reaches ``size`` items. With ``size`` set,
        incomplete groups are dropped unless ``remainder`` is true.
        """
        keys = (by,) if isinstance(by, int) else tuple(by)
        if not keys:
            msg = "group_tuple() needs at least one key index"
            raise ValueError(msg)
        if size is not None and size < 1:
            msg = f"group_tuple() size must be positive, got {size}"
            raise ValueError(msg)
        return self._derive(GroupTupleOp(self, keys, size, remainder), "queue", self)

    def collect(self) -> Channel:
        """Gather every item into one list, emitted as a value channel."""
        return self._derive(CollectOp(self), "value", self)

    def if_empty(self, *, error: str | None = None, value: Any = _MISSING) -> Channel:
        """Raise EmptyChannelError with ``error``, or emit ``value``, if no item arrives.

        A disabled channel is known to be empty while the graph is built, so
        ``error`` is raised immediately and ``value`` becomes an enabled
        channel holding the default.
        """
        if (error is None) == (value is _MISSING):
            msg = "if_empty() takes exactly one of error= or value="
            raise ValueError(msg)
        if self.disabled:
            if error is not None:
                raise EmptyChannelError(self.name, error)
            child = Channel(Source((value,)), self.kind)
            self.mark_consumed(child.name)
            return child
        return self._derive(IfEmptyOp(self, error, value), self.kind, self)

    def mix(self, *others: Channel) -> Channel:
        """Merge items of several channels in arrival order.

        Disabled channels are ignored; the result is disabled only if every
        input is.
        """
        sources = (self, *others)
        child = Channel(MixOp(sources), "queue", disabled=all(s.disabled for s in sources))
        for source in sources:
            source.mark_consumed(child.name)
        return child

    def bind(self, target: Channel) -> Channel:
        """Attach the producer of a placeholder channel."""
        if not self.is_placeholder:
            msg = f"Channel '{self.name}' is not a placeholder and cannot be bound"
            raise GraphError(msg, "Only channels created with placeholder() can be bound.")
        if self.bound is not None:
            msg = f"Placeholder '{self.name}' is already bound to '{self.bound.name}'"
            raise GraphError(msg, "Bind each placeholder exactly once.")
        target.mark_consumed(self.name)
        self.bound = target
        self.kind = target.kind
        self.disabled = target.disabled
        return self


def _op_label(op: Operator) -> str:
    label = type(op).__name__
    if label.endswith("Op"):
        label = label[:-2]
    return re.sub(r"(?<!^)(?=[A-Z])", "_", label).lower()


# =============================================================================
# Factories
# =============================================================================


def of(*items: Any, name: str | None = None) -> Channel:
    """Queue channel emitting the given items in order."""
    return Channel(Source(tuple(items)), "queue", name=name)


def value(item: Any, *, name: str | None = None) -> Channel:
    """Value channel holding a single item."""
    return Channel(Source((item,)), "value", name=name)


def from_list(items: Iterable[Any], *, name: str | None = None) -> Channel:
    return Channel(Source(tuple(items)), "queue", name=name)


def placeholder(name: str, kind: ChannelKind = "queue") -> Channel:
    """Forward reference bound later with ``bind()``."""
    return Channel(Placeholder(name), kind, name=name)


def disabled(name: str) -> Channel:
    """Channel produced by something that is switched off."""
    return Channel(Source(()), "queue", name=name, disabled=True)


def expand_braces(pattern: str) -> list[str]:
    """Expand ``{a,b}`` alternatives in a glob pattern.

    Example:
        >>> expand_braces("s_R{1,2}.fq")
        ['s_R1.fq', 's_R2.fq']
    """
    match = re.search(r"\{([^{}]*,[^{}]*)\}", pattern)
    if not match:
        return [pattern]
    expanded: list[str] = []
    for alternative in match.group(1).split(","):
        candidate = pattern[: match.start()] + alternative + pattern[match.end() :]
        expanded.extend(expand_braces(candidate))
    return expanded


def glob_paths(pattern: str | Path) -> list[Path]:
    """Sorted, de-duplicated files matching a glob with brace alternatives."""
    found: set[str] = set()
    for candidate in expand_braces(str(pattern)):
        if glob.has_magic(candidate):
            found.update(glob.glob(candidate, recursive=True))
        elif Path(candidate).exists():
            found.add(candidate)
    return sorted(Path(p) for p in found)


def from_path(
    pattern: str | Path,
    *,
    param_name: str | None = None,
    allow_empty: bool = False,
    name: str | None = None,
) -> Channel:
    """Queue channel of files matching ``pattern`` (sorted by path).

    Raises:
        InputFileNotFoundError: If nothing matches and ``allow_empty`` is false.
    """
    paths = glob_paths(pattern)
    if not paths and not allow_empty:
        raise InputFileNotFoundError(pattern, param_name)
    logger.debug("from_path(%s) matched %d file(s)", pattern, len(paths))
    return Channel(Source(tuple(paths)), "queue", name=name or param_name)


def _pair_key_regex(file_pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    i = 0
    while i < len(file_pattern):
        ch = file_pattern[i]
        if ch == "*":
            parts.append("(.*?)")
        elif ch == "?":
            parts.append(".")
        elif ch == "{":
            end = file_pattern.index("}", i)
            alternatives = file_pattern[i + 1 : end].split(",")
            parts.append("(?:" + "|".join(re.escape(a) for a in alternatives) + ")")
            i = end
        else:
            parts.append(re.escape(ch))
        i += 1
    return re.compile("^" + "".join(parts) + "$")


def from_file_pairs(
    pattern: str,
    *,
    size: int = 2,
    param_name: str | None = None,
    name: str | None = None,
) -> Channel:
    """Queue channel of ``(sample_id, [file, ...])`` grouped by the wildcard part.

    The sample id is the text matched by the ``*`` wildcards in the file
    name; brace alternatives (``{1,2}``) distinguish the members of a group.
    Groups with a different number of files than ``size`` are skipped with
    a warning (``size=-1`` accepts any number).

    Example:
        ``data/*_R{1,2}.fastq.gz`` turns ``data/s1_R1.fastq.gz`` and
        ``data/s1_R2.fastq.gz`` into ``("s1", [Path(...R1...), Path(...R2...)])``.
    """
    key_regex = _pair_key_regex(Path(pattern).name)
    groups: dict[str, list[Path]] = {}
    for path in glob_paths(pattern):
        match = key_regex.match(path.name)
        if not match:
            continue
        key = "".join(match.groups()) or path.name
        groups.setdefault(key, []).append(path)

    items = []
    for key in sorted(groups):
        files = sorted(groups[key])
        if size != -1 and len(files) != size:
            logger.warning(
                "Skipping '%s': expected %d file(s) matching %s, found %d",
                key, size, pattern, len(files),
            )
            continue
        items.append((key, files))

    if not items:
        raise InputFileNotFoundError(pattern, param_name)
    return Channel(Source(tuple(items)), "queue", name=name or param_name)


def from_samplesheet(
    path: str | Path,
    *,
    id_column: str = "sample_id",
    file_columns: tuple[str, ...] = ("read1", "read2"),
    param_name: str | None = None,
    name: str | None = None,
) -> Channel:
    """Queue channel of ``(sample_id, [file, ...])`` rows from a CSV samplesheet.

    Relative file paths are resolved against the samplesheet's directory.
    Empty file cells are skipped, so single-end rows yield one file.
    """
    import polars as pl

    sheet = Path(path)
    if not sheet.exists():
        raise InputFileNotFoundError(sheet, param_name)

    df = pl.read_csv(sheet, infer_schema_length=0)
    missing = [c for c in (id_column, *file_columns[:1]) if c not in df.columns]
    if missing:
        raise ConfigurationError(
            f"Samplesheet {sheet} lacks column(s): {', '.join(missing)}",
            suggestion=f"Expected a header with {id_column},{','.join(file_columns)}",
        )

    present = [c for c in file_columns if c in df.columns]
    items = []
    for row in df.iter_rows(named=True):
        files = []
        for column in present:
            cell = (row.get(column) or "").strip()
            if cell:
                file_path = Path(cell)
                if not file_path.is_absolute():
                    file_path = sheet.parent / file_path
                files.append(file_path)
        items.append((str(row[id_column]).strip(), files))

    if not items:
        raise InputFileNotFoundError(sheet, param_name)
    return Channel(Source(tuple(items)), "queue", name=name or param_name)


def as_channel(obj: Any) -> Channel:
    """Wrap a literal as a value channel; channels are returned unchanged."""
    if isinstance(obj, Channel):
        return obj
    return value(obj)
