"""
Runtime propagation of items through the channel network.

Every reachable channel gets a ChannelState holding the items emitted so
far. Operators subscribe to the states they read from and push derived
items into their own state. Process nodes buffer one item per input port
and hand complete bindings to the scheduler, which later reports the
instance outcome back through ``Dataflow.deliver``.

Everything here runs on the scheduler's bookkeeping thread.
"""

from __future__ import annotations

import itertools
import logging
from collections import deque
from collections.abc import Callable
from contextlib import contextmanager
from typing import Any, Iterator

from seqflow.core.channels import (
    Channel,
    CollectOp,
    CombineOp,
    FilterOp,
    GroupTupleOp,
    IfEmptyOp,
    MapOp,
    MixOp,
    Placeholder,
    Poison,
    ProcessOutput,
    Source,
    SplitOp,
    is_poisoned,
    poison_source,
)
from seqflow.core.exceptions import EmptyChannelError, RunAbortedError, SeqflowError
from seqflow.core.flow import ProcessNode
from seqflow.core.graph import ExecutionGraph

logger = logging.getLogger(__name__)

BindingCallback = Callable[[ProcessNode, tuple[Any, ...]], None]

_UNSET: Any = object()


class ChannelState:
    """Items emitted on one channel during the run."""

    def __init__(self, channel: Channel):
        self.channel = channel
        self.items: list[Any] = []
        self.closed = False
        self._listeners: list[Callable[[Any], None]] = []
        self._close_listeners: list[Callable[[], None]] = []

    def subscribe(self, on_item: Callable[[Any], None], on_close: Callable[[], None]) -> None:
        self._listeners.append(on_item)
        self._close_listeners.append(on_close)

    def emit(self, item: Any) -> None:
        if self.closed:
            msg = f"Channel '{self.channel.name}' received an item after closing"
            raise RuntimeError(msg)
        if self.channel.is_value and self.items:
            msg = f"Value channel '{self.channel.name}' received a second item"
            raise RuntimeError(msg)
        self.items.append(item)
        for listener in list(self._listeners):
            listener(item)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for listener in list(self._close_listeners):
            listener()


def _as_tuple(item: Any) -> tuple[Any, ...]:
    return item if isinstance(item, tuple) else (item,)


@contextmanager
def _user_code(channel: Channel) -> Iterator[None]:
    """Turn errors raised by user callbacks into a run abort."""
    try:
        yield
    except SeqflowError:
        raise
    except Exception as e:
        raise RunAbortedError(
            channel.name, f"operator on channel '{channel.name}' raised {type(e).__name__}: {e}"
        ) from e


class Dataflow:
    """Push-based runtime for an ExecutionGraph.

    Args:
        graph: Validated execution graph.
        on_binding: Called with (node, values) for every complete input
            binding; values holds one item per input port.
    """

    def __init__(self, graph: ExecutionGraph, on_binding: BindingCallback):
        self.graph = graph
        self.on_binding = on_binding
        self.halted = False
        self.states: dict[int, ChannelState] = {
            chan.id: ChannelState(chan) for chan in graph.channels.values()
        }
        self.processes: dict[str, ProcessRuntime] = {}
        self.collected: list[dict[str, list[Any]]] = []
        self._wire()

    def state(self, channel: Channel) -> ChannelState:
        return self.states[channel.id]

    # -------------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------------

    def _wire(self) -> None:
        for chan in sorted(self.graph.channels.values(), key=lambda c: c.id):
            if chan.disabled:
                continue
            self._wire_channel(chan)

        for node in self.graph.processes:
            self.processes[node.name] = ProcessRuntime(self, node)

        for hook in self.graph.flow.hooks:
            bucket: dict[str, list[Any]] = {key: [] for key in hook.collect}
            for key, chan in hook.collect.items():
                self.state(chan).subscribe(
                    lambda item, k=key: None if is_poisoned(item) else bucket[k].append(item),
                    lambda: None,
                )
            self.collected.append(bucket)

    def _wire_channel(self, chan: Channel) -> None:
        op = chan.op
        out = self.state(chan)

        if isinstance(op, MapOp):
            def on_map(item: Any) -> None:
                if is_poisoned(item):
                    out.emit(Poison(poison_source(item) or "?"))
                    return
                with _user_code(chan):
                    mapped = op.fn(item)
                out.emit(mapped)

            self.state(op.upstream).subscribe(on_map, out.close)

        elif isinstance(op, FilterOp):
            def on_filter(item: Any) -> None:
                if is_poisoned(item):
                    out.emit(item)
                    return
                with _user_code(chan):
                    keep = op.predicate(item)
                if keep:
                    out.emit(item)

            self.state(op.upstream).subscribe(on_filter, out.close)

        elif isinstance(op, SplitOp):
            self.state(op.upstream).subscribe(out.emit, out.close)

        elif isinstance(op, Placeholder):
            assert chan.bound is not None
            self.state(chan.bound).subscribe(out.emit, out.close)

        elif isinstance(op, CombineOp):
            _CombineRuntime(self.state(op.left), self.state(op.right), out)

        elif isinstance(op, GroupTupleOp):
            _GroupRuntime(chan, op, self.state(op.upstream), out)

        elif isinstance(op, CollectOp):
            _CollectRuntime(self.state(op.upstream), out)

        elif isinstance(op, IfEmptyOp):
            _IfEmptyRuntime(chan, op, self.state(op.upstream), out)

        elif isinstance(op, MixOp):
            _MixRuntime([self.state(u) for u in op.upstreams], out)

        elif isinstance(op, (Source, ProcessOutput)):
            pass

    # -------------------------------------------------------------------------
    # Run-time entry points
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Close disabled channels and emit every source.

        Raises:
            EmptyChannelError: If an ``if_empty(error=...)`` guard fires
                while the sources are emitted.
        """
        for chan in sorted(self.graph.channels.values(), key=lambda c: c.id):
            if chan.disabled:
                self.state(chan).close()

        for chan in sorted(self.graph.channels.values(), key=lambda c: c.id):
            if chan.disabled or not isinstance(chan.op, Source):
                continue
            state = self.state(chan)
            for item in chan.op.items:
                state.emit(item)
            state.close()

        for runtime in self.processes.values():
            runtime.try_bind()
            runtime.try_finish()

    def deliver(self, node: ProcessNode, outputs: tuple[Any, ...] | None, failed_label: str | None = None) -> None:
        """Report a finished instance of ``node``.

        Successful instances pass their output values; failed ones pass
        ``failed_label`` and emit Poison on every output channel.
        """
        self.processes[node.name].instance_done(outputs, failed_label)

    def halt(self) -> None:
        """Stop creating new bindings."""
        self.halted = True


class ProcessRuntime:
    """Input buffering and binding for one process node."""

    def __init__(self, dataflow: Dataflow, node: ProcessNode):
        self.dataflow = dataflow
        self.node = node
        self.outstanding = 0
        self.fired = False
        self.finished = False
        self.outputs = [dataflow.state(c) for c in node.outputs]

        self.queues: dict[int, deque[Any]] = {}
        self.values: dict[int, Any] = {}
        self.inputs = [dataflow.state(c) for c in node.inputs]

        for i, state in enumerate(self.inputs):
            if state.channel.is_value:
                self.values[i] = _UNSET
                state.subscribe(
                    lambda item, i=i: self._on_value(i, item),
                    self.try_finish,
                )
            else:
                self.queues[i] = deque()
                state.subscribe(
                    lambda item, i=i: self._on_item(i, item),
                    self.try_finish,
                )

    def _on_item(self, port: int, item: Any) -> None:
        self.queues[port].append(item)
        self.try_bind()

    def _on_value(self, port: int, item: Any) -> None:
        self.values[port] = item
        self.try_bind()

    def try_bind(self) -> None:
        if self.dataflow.halted or self.finished:
            return
        if any(v is _UNSET for v in self.values.values()):
            return

        if not self.queues:
            if not self.fired:
                self.fired = True
                self._dispatch({})
            return

        while all(q for q in self.queues.values()):
            popped = {i: q.popleft() for i, q in self.queues.items()}
            self._dispatch(popped)

    def _dispatch(self, popped: dict[int, Any]) -> None:
        ports = self.node.spec.inputs
        base = [popped[i] if i in popped else self.values[i] for i in range(len(ports))]

        each_ports = [i for i, p in enumerate(ports) if p.kind == "each"]
        if not each_ports:
            combos: list[list[Any]] = [base]
        else:
            choices = []
            for i in each_ports:
                value = base[i]
                choices.append([value] if isinstance(value, Poison) else list(value))
            combos = []
            for picked in itertools.product(*choices):
                values = list(base)
                for i, choice in zip(each_ports, picked):
                    values[i] = choice
                combos.append(values)

        for values in combos:
            self.outstanding += 1
            self.dataflow.on_binding(self.node, tuple(values))

    def _exhausted(self) -> bool:
        if any(v is _UNSET and self.inputs[i].closed for i, v in self.values.items()):
            return True
        if not self.queues:
            return self.fired
        return any(not q and self.inputs[i].closed for i, q in self.queues.items())

    def try_finish(self) -> None:
        if self.finished or self.outstanding or self.dataflow.halted:
            return
        if not self._exhausted():
            return
        self.finished = True
        for state in self.outputs:
            state.close()

    def instance_done(self, outputs: tuple[Any, ...] | None, failed_label: str | None) -> None:
        self.outstanding -= 1
        if failed_label is not None:
            for state in self.outputs:
                state.emit(Poison(failed_label))
        elif outputs is not None:
            for state, value in zip(self.outputs, outputs):
                if value is not None:
                    state.emit(value)
        self.try_finish()


class _CombineRuntime:
    """Strict left-major cartesian product; the right side is buffered until it closes."""

    def __init__(self, left: ChannelState, right: ChannelState, out: ChannelState):
        self.out = out
        self.left_items: list[Any] = []
        self.right_items: list[Any] = []
        self.left_closed = False
        self.right_closed = False
        left.subscribe(self._on_left, self._on_left_close)
        right.subscribe(self.right_items.append, self._on_right_close)

    def _pairs(self, left_item: Any) -> None:
        for right_item in self.right_items:
            if is_poisoned(left_item) or is_poisoned(right_item):
                source = poison_source(left_item) or poison_source(right_item) or "?"
                self.out.emit(Poison(source))
            else:
                self.out.emit(_as_tuple(left_item) + _as_tuple(right_item))

    def _on_left(self, item: Any) -> None:
        if self.right_closed:
            self._pairs(item)
        else:
            self.left_items.append(item)

    def _on_right_close(self) -> None:
        self.right_closed = True
        pending, self.left_items = self.left_items, []
        for item in pending:
            self._pairs(item)
        if self.left_closed:
            self.out.close()

    def _on_left_close(self) -> None:
        self.left_closed = True
        if self.right_closed:
            self.out.close()


class _GroupRuntime:
    def __init__(self, chan: Channel, op: GroupTupleOp, upstream: ChannelState, out: ChannelState):
        self.chan = chan
        self.op = op
        self.out = out
        self.groups: dict[tuple[Any, ...], list[tuple[Any, ...]]] = {}
        upstream.subscribe(self._on_item, self._on_close)

    def _on_item(self, item: Any) -> None:
        if is_poisoned(item):
            self.out.emit(Poison(poison_source(item) or "?"))
            return
        with _user_code(self.chan):
            if not isinstance(item, (tuple, list)):
                msg = f"group_tuple expects tuple items, got {item!r}"
                raise TypeError(msg)
            key = tuple(item[i] for i in self.op.by)
        group = self.groups.setdefault(key, [])
        group.append(tuple(item))
        if self.op.size is not None and len(group) == self.op.size:
            del self.groups[key]
            self.out.emit(self._merge(key, group))

    def _merge(self, key: tuple[Any, ...], group: list[tuple[Any, ...]]) -> tuple[Any, ...]:
        arity = len(group[0])
        merged = []
        for i in range(arity):
            if i in self.op.by:
                merged.append(key[self.op.by.index(i)])
            else:
                with _user_code(self.chan):
                    merged.append([member[i] for member in group])
        return tuple(merged)

    def _on_close(self) -> None:
        for key, group in list(self.groups.items()):
            if self.op.size is not None and len(group) < self.op.size and not self.op.remainder:
                logger.debug("group_tuple dropped incomplete group %r (%d item(s))", key, len(group))
                continue
            self.out.emit(self._merge(key, group))
        self.groups.clear()
        self.out.close()


class _CollectRuntime:
    def __init__(self, upstream: ChannelState, out: ChannelState):
        self.out = out
        self.items: list[Any] = []
        self.poison: str | None = None
        upstream.subscribe(self._on_item, self._on_close)

    def _on_item(self, item: Any) -> None:
        if is_poisoned(item) and self.poison is None:
            self.poison = poison_source(item) or "?"
        self.items.append(item)

    def _on_close(self) -> None:
        if self.poison is not None:
            self.out.emit(Poison(self.poison))
        elif self.items:
            self.out.emit(list(self.items))
        self.out.close()


class _IfEmptyRuntime:
    def __init__(self, chan: Channel, op: IfEmptyOp, upstream: ChannelState, out: ChannelState):
        self.chan = chan
        self.op = op
        self.out = out
        self.seen = 0
        upstream.subscribe(self._on_item, self._on_close)

    def _on_item(self, item: Any) -> None:
        self.seen += 1
        self.out.emit(item)

    def _on_close(self) -> None:
        if not self.seen:
            if self.op.has_default:
                self.out.emit(self.op.default)
            else:
                raise EmptyChannelError(self.op.upstream.name, self.op.error)
        self.out.close()


class _MixRuntime:
    def __init__(self, upstreams: list[ChannelState], out: ChannelState):
        self.out = out
        self.open = len(upstreams)
        for state in upstreams:
            state.subscribe(out.emit, self._on_close)

    def _on_close(self) -> None:
        self.open -= 1
        if self.open == 0:
            self.out.close()
