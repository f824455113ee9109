"""
Unit tests for process input binding in the dataflow runtime.
"""

from __future__ import annotations

from typing import Any

from seqflow.core import channels as ch
from seqflow.core.dataflow import Dataflow
from seqflow.core.flow import Flow, ProcessNode
from seqflow.core.graph import ExecutionGraph
from seqflow.models.task import InputPort, OutputPort, TaskSpec


def _start(flow: Flow) -> tuple[Dataflow, list[tuple[str, tuple[Any, ...]]]]:
    bindings: list[tuple[str, tuple[Any, ...]]] = []

    def on_binding(node: ProcessNode, values: tuple[Any, ...]) -> None:
        bindings.append((node.name, values))

    dataflow = Dataflow(ExecutionGraph.build(flow), on_binding)
    dataflow.start()
    return dataflow, bindings


def _two_inputs(name: str = "pair") -> TaskSpec:
    return TaskSpec(
        name=name,
        inputs=(InputPort.val("a"), InputPort.val("b")),
        outputs=(OutputPort.val("{a}{b}"),),
        command="echo {a} {b}",
    )


class TestBinding:
    """Tests for how input items become bindings."""

    def test_one_binding_per_item(self) -> None:
        spec = TaskSpec(name="t", inputs=(InputPort.val("x"),), command="echo {x}")
        flow = Flow()
        flow.process(spec, ch.of(1, 2, 3))
        _, bindings = _start(flow)
        assert bindings == [("t", (1,)), ("t", (2,)), ("t", (3,))]

    def test_queues_zip_in_order(self) -> None:
        """Two queue inputs bind pairwise; the surplus is never bound."""
        flow = Flow()
        flow.process(_two_inputs(), ch.of(1, 2, 3), ch.of("x", "y"))
        _, bindings = _start(flow)
        assert [v for _, v in bindings] == [(1, "x"), (2, "y")]

    def test_value_replayed_for_every_item(self) -> None:
        flow = Flow()
        flow.process(_two_inputs(), ch.of(1, 2), "db")
        _, bindings = _start(flow)
        assert [v for _, v in bindings] == [(1, "db"), (2, "db")]

    def test_each_fans_out(self) -> None:
        spec = TaskSpec(
            name="index",
            inputs=(InputPort.val("peptides"), InputPort.each("molecule")),
            command="echo {peptides} {molecule}",
        )
        flow = Flow()
        flow.process(spec, ch.of("p1", "p2"), ["protein", "dayhoff"])
        _, bindings = _start(flow)
        assert [v for _, v in bindings] == [
            ("p1", "protein"),
            ("p1", "dayhoff"),
            ("p2", "protein"),
            ("p2", "dayhoff"),
        ]

    def test_runs_once_with_values(self) -> None:
        flow = Flow()
        flow.process(_two_inputs(), 1, 2)
        _, bindings = _start(flow)
        assert bindings == [("pair", (1, 2))]

    def test_no_inputs_runs_once(self) -> None:
        flow = Flow()
        flow.process(TaskSpec(name="hello", command="echo hello"))
        _, bindings = _start(flow)
        assert bindings == [("hello", ())]

    def test_empty_queue_never_binds(self) -> None:
        flow = Flow()
        flow.process(_two_inputs(), ch.of(), "db")
        _, bindings = _start(flow)
        assert bindings == []

    def test_halt_stops_binding(self) -> None:
        flow = Flow()
        first = flow.process(_two_inputs("first"), ch.of(1), "db")
        flow.process(_two_inputs("second"), first.out, "db")
        dataflow, bindings = _start(flow)
        dataflow.halt()
        dataflow.deliver(first.node, ("1db",))
        assert [name for name, _ in bindings] == ["first"]


class TestDelivery:
    """Tests for output emission and channel closing."""

    def test_outputs_feed_downstream(self) -> None:
        flow = Flow()
        first = flow.process(_two_inputs("first"), ch.of(1, 2), "db")
        flow.process(_two_inputs("second"), first.out, "x")
        dataflow, bindings = _start(flow)

        dataflow.deliver(first.node, ("2db",))
        dataflow.deliver(first.node, ("1db",))
        second = [v for name, v in bindings if name == "second"]
        assert second == [("2db", "x"), ("1db", "x")]

    def test_output_closes_after_last_instance(self) -> None:
        flow = Flow()
        first = flow.process(_two_inputs("first"), ch.of(1, 2), "db")
        collected = first.out.collect()
        flow.on_complete(lambda s, c: None, collect={"all": collected})
        dataflow, _ = _start(flow)

        out_state = dataflow.state(first.out)
        dataflow.deliver(first.node, ("1db",))
        assert not out_state.closed
        dataflow.deliver(first.node, ("2db",))
        assert out_state.closed
        assert dataflow.collected == [{"all": [["1db", "2db"]]}]

    def test_failed_instance_emits_poison(self) -> None:
        flow = Flow()
        first = flow.process(_two_inputs("first"), ch.of(1), "db")
        flow.process(_two_inputs("second"), first.out, "x")
        dataflow, bindings = _start(flow)

        dataflow.deliver(first.node, None, "first (1)")
        second = [v for name, v in bindings if name == "second"]
        assert second == [(ch.Poison("first (1)"), "x")]

    def test_optional_output_skipped(self) -> None:
        flow = Flow()
        first = flow.process(_two_inputs("first"), ch.of(1), "db")
        dataflow, _ = _start(flow)
        dataflow.deliver(first.node, (None,))
        state = dataflow.state(first.out)
        assert state.items == []
        assert state.closed

    def test_hook_collection_skips_poison(self) -> None:
        flow = Flow()
        first = flow.process(_two_inputs("first"), ch.of(1, 2), "db")
        flow.on_complete(lambda s, c: None, collect={"out": first.out})
        dataflow, _ = _start(flow)
        dataflow.deliver(first.node, ("1db",))
        dataflow.deliver(first.node, None, "first (2)")
        assert dataflow.collected == [{"out": ["1db"]}]
