"""
Build-time API handed to pipeline definitions.

A pipeline definition is a function ``build(flow)`` that creates channels
and wires them into processes:

    def build(flow):
        files = flow.from_path(flow.params.input)
        counts = flow.process(COUNT_LINES, files)
        flow.on_complete(report_counts, collect={"counts": counts[0]})

Processes never name each other. Dependencies exist only through the
channel objects they share.
"""

from __future__ import annotations

import logging
import string
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from seqflow.core import channels as ch
from seqflow.core.channels import Channel, ProcessOutput
from seqflow.core.conditions import Condition, describe, evaluate
from seqflow.core.exceptions import ConfigurationError, GraphError, PortArityError
from seqflow.models.task import TaskSpec

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ProcessNode:
    """A TaskSpec wired to concrete input channels.

    Attributes:
        name: Unique node name (the spec name unless aliased).
        spec: Task specification executed by each instance.
        inputs: One channel per declared input port.
        outputs: One channel per declared output port.
        excluded: True when a false condition or a disabled input removed it.
        exclusion_reason: Why the node was excluded.
        order: Creation order, used for deterministic graph ordering.
    """

    name: str
    spec: TaskSpec
    inputs: tuple[Channel, ...]
    order: int
    condition: Condition | None = None
    excluded: bool = False
    exclusion_reason: str | None = None
    outputs: tuple[Channel, ...] = ()

    @property
    def runs_once(self) -> bool:
        """True when every input is a value channel (or there are none).

        Such a process produces exactly one instance and its outputs are
        value channels.
        """
        if any(p.kind == "each" for p in self.spec.inputs):
            return False
        return all(c.is_value for c in self.inputs)


@dataclass
class CompletionHookSpec:
    fn: Callable[..., Any]
    collect: dict[str, Channel] = field(default_factory=dict)


class ProcessOutputs:
    """Output channels of a process, indexable by position or emit name.

    Emit names are also readable as attributes (``counts.count``), so they
    may not shadow the attributes defined here.
    """

    RESERVED_NAMES = frozenset({"node", "out"})

    def __init__(self, node: ProcessNode):
        self._node = node
        clashes = sorted(
            port.emit for port in node.spec.outputs if port.emit in self.RESERVED_NAMES
        )
        if clashes:
            msg = f"Process '{node.name}' uses reserved output name(s): {', '.join(clashes)}"
            raise GraphError(msg, "Pick another emit name for the output.")
        self._by_name = {
            port.emit: chan
            for port, chan in zip(node.spec.outputs, node.outputs)
            if port.emit
        }

    @property
    def node(self) -> ProcessNode:
        return self._node

    def __getitem__(self, key: int | str) -> Channel:
        if isinstance(key, str):
            try:
                return self._by_name[key]
            except KeyError:
                msg = f"Process '{self._node.name}' has no output named '{key}'"
                raise KeyError(msg) from None
        return self._node.outputs[key]

    def __getattr__(self, name: str) -> Channel:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._by_name[name]
        except KeyError:
            raise AttributeError(
                f"Process '{self._node.name}' has no output named '{name}'"
            ) from None

    def __len__(self) -> int:
        return len(self._node.outputs)

    def __iter__(self) -> Iterator[Channel]:
        return iter(self._node.outputs)

    @property
    def out(self) -> Channel:
        """The single output channel of a one-output process."""
        if len(self._node.outputs) != 1:
            msg = (
                f"Process '{self._node.name}' has {len(self._node.outputs)} outputs; "
                "index them explicitly"
            )
            raise GraphError(msg, "Use outputs[i] or outputs.<emit name>.")
        return self._node.outputs[0]


def template_fields(template: str) -> set[str]:
    """Root variable names referenced by a ``str.format`` template."""
    names: set[str] = set()
    for _, field_name, _, _ in string.Formatter().parse(template):
        if field_name:
            root = field_name.split(".", 1)[0].split("[", 1)[0]
            names.add(root)
    return names


class Flow:
    """Collects channels, processes and completion hooks of one pipeline.

    Attributes:
        params: Resolved, frozen pipeline parameters.
        nodes: Process nodes in creation order (excluded ones included).
        hooks: Registered completion hooks.
    """

    def __init__(self, params: BaseModel | None = None, name: str = "pipeline"):
        self.params = params
        self.name = name
        self.nodes: list[ProcessNode] = []
        self.hooks: list[CompletionHookSpec] = []
        self.placeholders: list[Channel] = []
        self._names: set[str] = set()

    # -------------------------------------------------------------------------
    # Channel factories
    # -------------------------------------------------------------------------

    def of(self, *items: Any, name: str | None = None) -> Channel:
        return ch.of(*items, name=name)

    def value(self, item: Any, *, name: str | None = None) -> Channel:
        return ch.value(item, name=name)

    def from_list(self, items: Any, *, name: str | None = None) -> Channel:
        return ch.from_list(items, name=name)

    def from_path(self, pattern: str | Path, **kwargs: Any) -> Channel:
        return ch.from_path(pattern, **kwargs)

    def from_file_pairs(self, pattern: str, **kwargs: Any) -> Channel:
        return ch.from_file_pairs(pattern, **kwargs)

    def from_samplesheet(self, path: str | Path, **kwargs: Any) -> Channel:
        return ch.from_samplesheet(path, **kwargs)

    def placeholder(self, name: str, kind: ch.ChannelKind = "queue") -> Channel:
        chan = ch.placeholder(name, kind)
        self.placeholders.append(chan)
        return chan

    def disabled(self, name: str) -> Channel:
        """A channel that never carries items; its consumers are excluded."""
        return ch.disabled(name)

    # -------------------------------------------------------------------------
    # Processes and hooks
    # -------------------------------------------------------------------------

    def process(
        self,
        spec: TaskSpec,
        *inputs: Any,
        when: Condition | None = None,
        name: str | None = None,
    ) -> ProcessOutputs:
        """Wire ``spec`` to one channel (or literal) per input port.

        Literals become value channels. ``each`` ports accept a list literal
        or a channel; a queue channel given to an ``each`` port is collected
        first.

        Raises:
            PortArityError: If the number of inputs differs from the ports.
            GraphError: If the node name is already used.
            ConfigurationError: If a template references an unknown variable.
        """
        node_name = name or spec.name
        if node_name in self._names:
            raise GraphError(
                f"Process name '{node_name}' is used twice",
                suggestion="Pass name=... to give the second use of the task its own name.",
            )
        if len(inputs) != len(spec.inputs):
            raise PortArityError(node_name, len(spec.inputs), len(inputs))
        _check_templates(spec)
        if node_name != spec.name:
            spec = spec.model_copy(update={"name": node_name})

        wired: list[Channel] = []
        for port, obj in zip(spec.inputs, inputs):
            if port.kind == "each" and not isinstance(obj, Channel):
                obj = ch.value(list(obj), name=f"{node_name}.{port.name}")
            chan = ch.as_channel(obj)
            if port.kind == "each" and not chan.is_value:
                chan = chan.collect()
            wired.append(chan)

        node = ProcessNode(
            name=node_name,
            spec=spec,
            inputs=tuple(wired),
            order=len(self.nodes),
            condition=when,
        )
        for chan in wired:
            chan.mark_consumed(node_name)

        params = self.params if self.params is not None else {}
        if not evaluate(when, params):
            node.excluded = True
            node.exclusion_reason = f"condition not met: {describe(when)}"
        else:
            disabled_inputs = [c.name for c in wired if c.disabled]
            if disabled_inputs:
                node.excluded = True
                node.exclusion_reason = f"input '{disabled_inputs[0]}' is disabled"

        kind: ch.ChannelKind = "value" if node.runs_once else "queue"
        node.outputs = tuple(
            Channel(
                ProcessOutput(node, i),
                kind,
                name=f"{node_name}.{port.emit or i}",
                disabled=node.excluded,
            )
            for i, port in enumerate(spec.outputs)
        )

        if node.excluded:
            logger.info("Process '%s' excluded (%s)", node_name, node.exclusion_reason)

        self._names.add(node_name)
        self.nodes.append(node)
        return ProcessOutputs(node)

    def on_complete(
        self,
        fn: Callable[..., Any],
        collect: dict[str, Channel] | None = None,
    ) -> None:
        """Register ``fn(summary, collected)`` to run once the run is quiescent.

        ``collected`` maps each key of ``collect`` to the list of items that
        arrived on that channel (outputs of failed instances left out).
        """
        collect = dict(collect or {})
        for key, chan in collect.items():
            chan.mark_consumed(f"on_complete[{key}]")
        self.hooks.append(CompletionHookSpec(fn=fn, collect=collect))

    @property
    def active_nodes(self) -> list[ProcessNode]:
        return [n for n in self.nodes if not n.excluded]

    @property
    def excluded_nodes(self) -> list[ProcessNode]:
        return [n for n in self.nodes if n.excluded]


def _check_templates(spec: TaskSpec) -> None:
    known = set(spec.input_names) | {"task"}
    templates = [("command", spec.command)]
    if spec.tag:
        templates.append(("tag", spec.tag))
    for port in spec.outputs:
        for sub in (port, *port.elements):
            if sub.pattern:
                templates.append(("output", sub.pattern))

    for where, template in templates:
        try:
            fields = template_fields(template)
        except ValueError as e:
            raise ConfigurationError(
                f"Malformed {where} template in task '{spec.name}': {e}",
                suggestion="Escape literal braces as '{{' and '}}'.",
            ) from e
        unknown = sorted(fields - known)
        if unknown:
            raise ConfigurationError(
                f"The {where} template of task '{spec.name}' references unknown "
                f"variable(s): {', '.join(unknown)}",
                suggestion=(
                    "Use the names of the task's input ports, or escape literal "
                    "braces (e.g. shell ${VAR}) as '${{VAR}}'."
                ),
            )
