"""
Scheduler: turns input bindings into task instances and runs them.

A single bookkeeping loop owns all run state. Instances execute on a
ThreadPoolExecutor (one external process per worker thread); the loop only
blocks in ``concurrent.futures.wait(..., FIRST_COMPLETED)`` with a timeout
equal to the next retry due time.

Admission control uses a global CPU and memory budget. Queued instances
are considered in queue order and any instance that fits is dispatched
(backfill), so a large task waiting for resources does not block smaller
ones behind it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from seqflow.core.channels import is_poisoned, poison_source
from seqflow.core.context import RunContext
from seqflow.core.dataflow import Dataflow
from seqflow.core.exceptions import RunAbortedError, SeqflowError, TaskExecutionError, TaskFailure
from seqflow.core.executor import LocalExecutor
from seqflow.core.flow import ProcessNode
from seqflow.core.graph import ExecutionGraph
from seqflow.core.store import bind_inputs
from seqflow.models.task import ResourceHints, TaskInstance, TaskStatus

logger = logging.getLogger(__name__)


class ResourceBudget:
    """Thread-safe pool of CPU slots and memory shared by running instances.

    Args:
        cpus: Total CPU slots.
        memory_mb: Total memory in megabytes (None for unlimited).
    """

    def __init__(self, cpus: int, memory_mb: int | None = None):
        self.total_cpus = cpus
        self.total_memory_mb = memory_mb
        self._free_cpus = cpus
        self._free_memory_mb = memory_mb
        self._lock = threading.Lock()

    @property
    def free_cpus(self) -> int:
        with self._lock:
            return self._free_cpus

    @property
    def free_memory_mb(self) -> int | None:
        with self._lock:
            return self._free_memory_mb

    def fits_ceiling(self, hints: ResourceHints) -> bool:
        if hints.cpus > self.total_cpus:
            return False
        if self.total_memory_mb is not None and (hints.memory_mb or 0) > self.total_memory_mb:
            return False
        return True

    def try_acquire(self, hints: ResourceHints) -> bool:
        """Reserve ``hints`` if they fit in what is currently free."""
        with self._lock:
            if hints.cpus > self._free_cpus:
                return False
            memory = hints.memory_mb or 0
            if self._free_memory_mb is not None and memory > self._free_memory_mb:
                return False
            self._free_cpus -= hints.cpus
            if self._free_memory_mb is not None:
                self._free_memory_mb -= memory
            return True

    def release(self, hints: ResourceHints) -> None:
        with self._lock:
            self._free_cpus = min(self.total_cpus, self._free_cpus + hints.cpus)
            if self._free_memory_mb is not None and self.total_memory_mb is not None:
                self._free_memory_mb = min(
                    self.total_memory_mb, self._free_memory_mb + (hints.memory_mb or 0)
                )


@dataclass
class RunOutcome:
    """What the scheduler hands to the completion step."""

    instances: list[TaskInstance] = field(default_factory=list)
    aborted: bool = False
    abort_reason: str | None = None
    abort_task: str | None = None
    collected: list[dict[str, list[Any]]] = field(default_factory=list)
    started_at: float = 0.0
    completed_at: float = 0.0


class Scheduler:
    """
    Execute an ExecutionGraph.

    Args:
        graph: Validated execution graph.
        context: Run context (config, store, budget).
        executor: Executor running single instances (defaults to LocalExecutor).
    """

    def __init__(
        self,
        graph: ExecutionGraph,
        context: RunContext,
        executor: LocalExecutor | None = None,
    ):
        self.graph = graph
        self.context = context
        self.config = context.config
        self.store = context.store
        self.budget = context.budget
        self.executor = executor or LocalExecutor(context.store, context.config)

        self.instances: list[TaskInstance] = []
        self._nodes: dict[int, ProcessNode] = {}
        self._ordinals: dict[str, int] = {}
        self._arrivals: deque[tuple[TaskInstance, str | None]] = deque()
        self._queue: list[TaskInstance] = []
        self._running: dict[Future, TaskInstance] = {}
        self.outcome = RunOutcome()
        self.dataflow = Dataflow(graph, self._on_binding)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def prime(self) -> None:
        """Emit every source item.

        An operator callback that raises aborts the run, which then still
        completes and is reported.

        Raises:
            ConfigurationError: If an empty-channel guard fires on the sources.
        """
        self.outcome.started_at = time.time()
        try:
            self.dataflow.start()
        except RunAbortedError as e:
            logger.error("%s", e.message)
            self._abort(None, e.message, stop_running=False)

    def run(self) -> RunOutcome:
        """Run until no instance is queued or running.

        ``prime()`` is called first if it has not been already.
        """
        if not self.outcome.started_at:
            self.prime()

        workers = self.config.executor.max_workers or self.budget.total_cpus
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="seqflow-task") as pool:
            try:
                self._loop(pool)
            except KeyboardInterrupt:
                logger.error("Interrupted, stopping running tasks")
                self._abort(None, "interrupted by user", stop_running=True)
                self._drain_running()

        self.outcome.instances = self.instances
        self.outcome.collected = self.dataflow.collected
        self.outcome.completed_at = time.time()
        return self.outcome

    # -------------------------------------------------------------------------
    # Bookkeeping loop
    # -------------------------------------------------------------------------

    def _loop(self, pool: ThreadPoolExecutor) -> None:
        while True:
            self._process_arrivals()
            self._dispatch(pool)

            if not self._running and not self._queue and not self._arrivals:
                break

            timeout = self._next_due()
            if self._running:
                done, _ = wait(list(self._running), timeout=timeout, return_when=FIRST_COMPLETED)
                finished = sorted(done, key=lambda f: self._running[f].index)
                for future in finished:
                    self._on_finished(self._running.pop(future), future)
            elif timeout is not None:
                time.sleep(max(timeout, 0.01))

    def _drain_running(self) -> None:
        while self._running:
            done, _ = wait(list(self._running), return_when=FIRST_COMPLETED)
            for future in sorted(done, key=lambda f: self._running[f].index):
                self._on_finished(self._running.pop(future), future)

    def _next_due(self) -> float | None:
        """Seconds until the earliest delayed instance may start (None if none waits)."""
        now = time.monotonic()
        delayed = [i.not_before for i in self._queue if i.not_before > now]
        if not delayed:
            return None
        return min(delayed) - now

    def _on_binding(self, node: ProcessNode, values: tuple[Any, ...]) -> None:
        ordinal = self._ordinals.get(node.name, 0) + 1
        self._ordinals[node.name] = ordinal
        instance = TaskInstance(
            index=len(self.instances) + 1,
            spec=node.spec,
            ordinal=ordinal,
            bindings={},
            resources=node.spec.resources,
        )
        self.instances.append(instance)
        self._nodes[instance.index] = node

        poisoned = next((poison_source(v) for v in values if is_poisoned(v)), None)
        if poisoned is None:
            try:
                bound = bind_inputs(node.spec, values)
            except TaskFailure as e:
                instance.error = e.message
                self._arrivals.append((instance, None))
                return
            instance.bindings = bound.bindings
            instance.staged = bound.staged
            self.store.assign(instance, bound.identity)
        self._arrivals.append((instance, poisoned))

    def _process_arrivals(self) -> None:
        while self._arrivals:
            instance, poisoned = self._arrivals.popleft()
            if self.outcome.aborted:
                instance.status = TaskStatus.CANCELLED
                continue

            if poisoned is not None:
                instance.status = TaskStatus.FAILED
                instance.propagated_from = poisoned
                instance.error = f"upstream task '{poisoned}' failed"
                logger.info("%s not run: %s", instance.label, instance.error)
                self._deliver(instance, None, poisoned)
                continue

            if instance.error is not None:
                self._fail(instance, instance.error)
                continue

            if self.config.resume and self.store.lookup(instance):
                try:
                    outputs = self.store.collect_outputs(instance)
                except TaskFailure:
                    outputs = None
                if outputs is not None:
                    instance.status = TaskStatus.CACHED
                    instance.exit_code = 0
                    instance.outputs = outputs
                    self.store.publish(instance, outputs, self.config.outdir)
                    logger.info("[cached] %s", instance.label)
                    self._deliver(instance, outputs, None)
                    continue

            instance.status = TaskStatus.QUEUED
            instance.submitted_at = time.time()
            self._queue.append(instance)

    def _dispatch(self, pool: ThreadPoolExecutor) -> None:
        if self.outcome.aborted:
            return
        now = time.monotonic()
        for instance in list(self._queue):
            if instance.not_before > now:
                continue
            if not self.budget.try_acquire(instance.resources):
                continue
            self._queue.remove(instance)
            instance.status = TaskStatus.RUNNING
            instance.started_at = time.time()
            logger.info("[submit] %s", instance.label)
            future = pool.submit(self.executor.execute, instance)
            self._running[future] = instance

    def _on_finished(self, instance: TaskInstance, future: Future) -> None:
        self.budget.release(instance.resources)
        instance.completed_at = time.time()
        try:
            outputs = future.result()
        except TaskExecutionError as e:
            instance.exit_code = e.exit_code
            self._handle_failure(instance, e.message)
            return
        except TaskFailure as e:
            self._handle_failure(instance, e.message)
            return
        except SeqflowError as e:
            self._handle_failure(instance, e.message)
            return
        except Exception as e:
            logger.exception("Unexpected error while running %s", instance.label)
            self._handle_failure(instance, f"{type(e).__name__}: {e}")
            return

        instance.status = TaskStatus.SUCCEEDED
        instance.outputs = outputs
        instance.error = None
        logger.info("[done] %s", instance.label)
        if not self.outcome.aborted:
            self._deliver(instance, outputs, None)

    # -------------------------------------------------------------------------
    # Failure handling
    # -------------------------------------------------------------------------

    def _handle_failure(self, instance: TaskInstance, message: str) -> None:
        instance.error = message
        if self.outcome.aborted and self.executor.was_stopped(instance):
            instance.status = TaskStatus.CANCELLED
            return

        strategy = instance.spec.error_strategy
        if not self.outcome.aborted and strategy.allows_retry(instance.attempt):
            instance.attempt += 1
            limits = self.config.limits
            factor = strategy.resource_scale ** (instance.attempt - 1)
            instance.resources = instance.spec.resources.scaled(
                factor,
                max_cpus=limits.max_cpus,
                max_memory_mb=limits.max_memory_mb,
                max_time_s=limits.max_time_s,
            )
            instance.not_before = time.monotonic() + strategy.backoff_for(instance.attempt)
            instance.status = TaskStatus.QUEUED
            instance.started_at = None
            instance.completed_at = None
            self._queue.append(instance)
            logger.warning(
                "%s failed, retrying (attempt %d of %d)",
                instance.label, instance.attempt, strategy.max_retries + 1,
            )
            return

        self._fail(instance, message)

    def _fail(self, instance: TaskInstance, message: str) -> None:
        instance.status = TaskStatus.FAILED
        instance.error = message
        if self.outcome.aborted:
            return

        if instance.spec.error_strategy.final_policy() == "ignore":
            logger.warning("%s failed (ignored): %s", instance.label, message.splitlines()[0])
            self._deliver(instance, None, instance.label)
            return

        logger.error("%s failed: %s", instance.label, message)
        self._abort(instance, message, stop_running=self.config.executor.kill_on_abort)

    def _abort(self, instance: TaskInstance | None, reason: str, *, stop_running: bool) -> None:
        if self.outcome.aborted:
            return
        self.outcome.aborted = True
        self.outcome.abort_reason = reason.splitlines()[0] if reason else reason
        self.outcome.abort_task = instance.label if instance else None
        self.dataflow.halt()

        cancelled = 0
        for queued in self._queue:
            queued.status = TaskStatus.CANCELLED
            cancelled += 1
        self._queue.clear()
        while self._arrivals:
            pending, _ = self._arrivals.popleft()
            pending.status = TaskStatus.CANCELLED
            cancelled += 1

        logger.error(
            "Run aborted; %d pending task(s) cancelled, %d running", cancelled, len(self._running)
        )
        if stop_running and self._running:
            self.executor.stop_all()

    def _deliver(self, instance: TaskInstance, outputs: tuple[Any, ...] | None, failed: str | None) -> None:
        node = self._nodes[instance.index]
        try:
            self.dataflow.deliver(node, outputs, failed)
        except SeqflowError as e:
            logger.error("%s", e.message)
            self._abort(instance, e.message, stop_running=self.config.executor.kill_on_abort)
