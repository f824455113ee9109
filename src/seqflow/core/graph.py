"""
Dependency graph construction and validation.

ExecutionGraph turns the channels and process nodes collected by a Flow
into a validated DAG:

- every placeholder is bound (DanglingChannelError)
- the wiring has no cycle (CycleDetectedError); ordering is a
  deterministic Kahn topological sort
- every active process fits the global resource ceiling
  (ResourceExhaustionError)

The graph can be exported as DOT for inspection.
"""

from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path

from seqflow.core.channels import Channel, Placeholder, ProcessOutput, Source, upstreams_of
from seqflow.core.exceptions import (
    CycleDetectedError,
    DanglingChannelError,
    ResourceExhaustionError,
)
from seqflow.core.flow import Flow, ProcessNode
from seqflow.models.config import ResourceLimits

logger = logging.getLogger(__name__)


def _channel_key(chan: Channel) -> str:
    return f"channel:{chan.id}"


def _process_key(node: ProcessNode) -> str:
    return f"process:{node.name}"


@dataclass
class ExecutionGraph:
    """Validated dependency graph of one pipeline.

    Attributes:
        flow: The Flow the graph was built from.
        order: Vertex keys in topological order.
        channels: Reachable channels by vertex key.
        processes: Active process nodes in topological order.
        excluded: Process nodes removed by conditions.
        edges: (upstream, downstream) vertex keys.
    """

    flow: Flow
    order: list[str] = field(default_factory=list)
    channels: dict[str, Channel] = field(default_factory=dict)
    processes: list[ProcessNode] = field(default_factory=list)
    excluded: list[ProcessNode] = field(default_factory=list)
    edges: list[tuple[str, str]] = field(default_factory=list)

    @classmethod
    def build(cls, flow: Flow, limits: ResourceLimits | None = None) -> ExecutionGraph:
        """
        Validate the wiring of ``flow`` and compute a deterministic order.

        Raises:
            DanglingChannelError: If a placeholder was never bound.
            CycleDetectedError: If the wiring contains a cycle.
            ResourceExhaustionError: If a process needs more than the ceiling.
        """
        graph = cls(flow=flow)

        for chan in flow.placeholders:
            if chan.bound is None:
                raise DanglingChannelError(chan.name)

        rank: dict[str, tuple[int, int]] = {}
        process_by_key: dict[str, ProcessNode] = {}
        stack: list[Channel] = []

        for node in flow.nodes:
            key = _process_key(node)
            process_by_key[key] = node
            rank[key] = (1, node.order)
            for chan in node.inputs:
                graph.edges.append((_channel_key(chan), key))
                stack.append(chan)
            for chan in node.outputs:
                graph.edges.append((key, _channel_key(chan)))
                stack.append(chan)

        for hook in flow.hooks:
            stack.extend(hook.collect.values())

        seen: set[int] = set()
        while stack:
            chan = stack.pop()
            if chan.id in seen:
                continue
            seen.add(chan.id)
            key = _channel_key(chan)
            graph.channels[key] = chan
            rank[key] = (0, chan.id)

            if isinstance(chan.op, Placeholder):
                if chan.bound is None:
                    raise DanglingChannelError(chan.name)
                parents: tuple[Channel, ...] = (chan.bound,)
            else:
                parents = upstreams_of(chan.op)
            for parent in parents:
                graph.edges.append((_channel_key(parent), key))
                stack.append(parent)

        labels = {k: c.name for k, c in graph.channels.items()}
        labels.update({k: n.name for k, n in process_by_key.items()})
        graph.order = _toposort(list(rank), graph.edges, rank, labels)
        graph.processes = [
            process_by_key[k]
            for k in graph.order
            if k in process_by_key and not process_by_key[k].excluded
        ]
        graph.excluded = [n for n in flow.nodes if n.excluded]

        if limits is not None:
            graph.check_resources(limits)

        logger.debug(
            "Built graph: %d active process(es), %d excluded, %d channel(s)",
            len(graph.processes), len(graph.excluded), len(graph.channels),
        )
        return graph

    def check_resources(self, limits: ResourceLimits) -> None:
        for node in self.processes:
            hints = node.spec.resources
            if hints.cpus > limits.max_cpus:
                raise ResourceExhaustionError(node.name, "cpus", hints.cpus, limits.max_cpus)
            if (
                limits.max_memory_mb is not None
                and hints.memory_mb is not None
                and hints.memory_mb > limits.max_memory_mb
            ):
                raise ResourceExhaustionError(
                    node.name, "memory_mb", hints.memory_mb, limits.max_memory_mb
                )

    def upstream_processes(self, node: ProcessNode) -> list[str]:
        """Names of the processes whose outputs feed ``node`` (directly or via operators)."""
        parents: dict[str, list[str]] = defaultdict(list)
        for up, down in self.edges:
            parents[down].append(up)

        found: list[str] = []
        stack = list(parents[_process_key(node)])
        visited: set[str] = set()
        while stack:
            key = stack.pop()
            if key in visited:
                continue
            visited.add(key)
            if key.startswith("process:"):
                found.append(key.split(":", 1)[1])
                continue
            stack.extend(parents[key])
        return sorted(found)

    def to_dot(self) -> str:
        """Render the graph in Graphviz DOT format."""
        lines = ["digraph seqflow {", "  rankdir=TB;"]
        names: dict[str, str] = {}
        for key in self.order:
            if key.startswith("process:"):
                name = key.split(":", 1)[1]
                node = next(n for n in self.flow.nodes if n.name == name)
                style = "style=dashed,color=grey" if node.excluded else "style=filled,fillcolor=lightblue"
                lines.append(f'  p{len(names)} [label="{name}",shape=box,{style}];')
            else:
                chan = self.channels[key]
                if isinstance(chan.op, Source):
                    shape = "point" if not chan.op.items else "invhouse"
                elif isinstance(chan.op, ProcessOutput):
                    shape = "point"
                else:
                    shape = "ellipse"
                color = ",color=grey" if chan.disabled else ""
                lines.append(f'  p{len(names)} [label="{chan.name}",shape={shape}{color}];')
            names[key] = f"p{len(names)}"

        for up, down in self.edges:
            if up in names and down in names:
                lines.append(f"  {names[up]} -> {names[down]};")
        lines.append("}")
        return "\n".join(lines) + "\n"

    def write_dot(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_dot())


def _toposort(
    keys: list[str],
    edges: list[tuple[str, str]],
    rank: dict[str, tuple[int, int]],
    labels: dict[str, str],
) -> list[str]:
    """Kahn's algorithm with a priority queue for deterministic ordering."""
    indegree: dict[str, int] = {k: 0 for k in keys}
    children: dict[str, list[str]] = defaultdict(list)
    for up, down in set(edges):
        children[up].append(down)
        indegree[down] += 1

    ready = [(rank[k], k) for k, d in indegree.items() if d == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        _, key = heapq.heappop(ready)
        order.append(key)
        for child in children[key]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(ready, (rank[child], child))

    if len(order) != len(keys):
        stuck = sorted((k for k, d in indegree.items() if d > 0), key=lambda k: rank[k])
        raise CycleDetectedError([labels.get(k, k) for k in stuck])
    return order

