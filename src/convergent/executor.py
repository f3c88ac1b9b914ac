"""Runs a task graph concurrently, dependencies first."""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any

from convergent.context import RunContext
from convergent.errors import (
    ApplyError,
    ChangesDetectedError,
    ConfigurationError,
    ConvergentError,
    DiscoveryError,
    InsufficientAccessError,
    LifecycleViolation,
)
from convergent.graph import TaskGraph
from convergent.models import (
    ChangeDescriptor,
    Lifecycle,
    RunOptions,
    RunResult,
    TaskFailure,
    TaskOutcome,
    TaskSkip,
    TaskState,
)
from convergent.targets import DryRunTarget
from convergent.task import Deletion, Task

logger = logging.getLogger(__name__)


class _Scheduler:
    """Dependency-count scheduler over a ThreadPoolExecutor.

    Only the coordinating thread touches scheduler state. Workers run
    ``work(item)`` and hand back a TaskOutcome; the outcome is merged, and
    dependents released, after the worker's future has completed.
    """

    def __init__(
        self,
        ctx: RunContext,
        graph: TaskGraph,
        items: Mapping[str, Any],
        work: Callable[[Any], ChangeDescriptor | None],
    ):
        self._ctx = ctx
        self._options = ctx.options
        self._graph = graph
        self._items = items
        self._work = work
        self._lock = threading.Lock()
        self._outcomes = {name: TaskOutcome(name=name) for name in graph.names}
        self._remaining = {name: len(graph.dependencies(name)) for name in graph.names}
        self._ready: deque[str] = deque()
        self._failures: list[TaskFailure] = []
        self._skipped: list[TaskSkip] = []
        self._timed_out: str | None = None

    @property
    def _stopped(self) -> bool:
        return self._ctx.cancelled or self._timed_out is not None

    @property
    def _stop_reason(self) -> str | None:
        return self._ctx.cancel_reason or self._timed_out

    def run(self) -> RunResult:
        timeout = self._options.timeout
        deadline = time.monotonic() + timeout if timeout else None
        max_workers = self._options.max_workers

        with self._lock:
            for name in self._graph.names:
                if self._remaining[name] == 0:
                    self._mark_ready(name)

        in_flight: dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="convergent") as pool:
            while self._ready or in_flight:
                if deadline is not None and time.monotonic() >= deadline:
                    # The timeout ends this run only; the context stays usable.
                    self._timed_out = f"timed out after {timeout}s"
                    logger.warning("Run %s; waiting for running tasks", self._timed_out)
                    deadline = None

                if not self._stopped:
                    with self._lock:
                        while self._ready and len(in_flight) < max_workers:
                            name = self._ready.popleft()
                            self._outcomes[name].state = TaskState.RUNNING
                            in_flight[pool.submit(self._execute, name)] = name

                if not in_flight:
                    break

                done, _ = wait(
                    in_flight, timeout=self._wait_timeout(deadline), return_when=FIRST_COMPLETED
                )
                for future in done:
                    name = in_flight.pop(future)
                    self._complete(name, future.result())

        if self._stopped:
            self._skip_unstarted(f"run cancelled: {self._stop_reason}")

        order = {name: i for i, name in enumerate(self._graph.order())}
        return RunResult(
            outcomes=dict(self._outcomes),
            failures=sorted(self._failures, key=lambda f: order[f.task_name]),
            skipped=sorted(self._skipped, key=lambda s: order[s.task_name]),
            cancelled=self._stopped,
            cancel_reason=self._stop_reason,
        )

    def _wait_timeout(self, deadline: float | None) -> float:
        interval = self._options.poll_interval
        if deadline is None:
            return interval
        return max(0.0, min(interval, deadline - time.monotonic()))

    def _execute(self, name: str) -> TaskOutcome:
        """Worker body. Never raises; failures come back in the outcome."""
        item = self._items[name]
        lifecycle = getattr(item, "lifecycle", Lifecycle.SYNC)
        logger.debug("Running %s", name)

        try:
            change = self._work(item)
        except InsufficientAccessError as e:
            if lifecycle == Lifecycle.WARN_IF_INSUFFICIENT_ACCESS:
                self._ctx.warn(name, str(e))
                return TaskOutcome(name=name, state=TaskState.SKIPPED, cause="insufficient access")
            logger.error("%s", e)
            return TaskOutcome(name=name, state=TaskState.FAILED, error=e)
        except LifecycleViolation as e:
            if self._options.lifecycle_violations_warn_only:
                self._ctx.warn(name, str(e))
                return TaskOutcome(
                    name=name,
                    state=TaskState.SUCCEEDED,
                    change=ChangeDescriptor.no_change(name, getattr(item, "kind", "")),
                )
            logger.error("%s", e)
            return TaskOutcome(name=name, state=TaskState.FAILED, error=e)
        except ConvergentError as e:
            logger.error("%s", e)
            return TaskOutcome(name=name, state=TaskState.FAILED, error=e)
        except Exception as e:
            logger.exception("Unexpected error running %s", name)
            return TaskOutcome(name=name, state=TaskState.FAILED, error=e)

        return TaskOutcome(name=name, state=TaskState.SUCCEEDED, change=change)

    def _complete(self, name: str, result: TaskOutcome) -> None:
        with self._lock:
            outcome = self._outcomes[name]
            outcome.state = result.state
            outcome.change = result.change
            outcome.error = result.error
            outcome.cause = result.cause
            outcome.warnings = self._ctx.warnings_for(name)
            logger.debug("%s -> %s", name, outcome.state)

            taint = self._options.taint_on_warning and bool(outcome.warnings or outcome.tainted)
            if outcome.state == TaskState.FAILED:
                deps = self._graph.dependencies(name)
                self._failures.append(TaskFailure(name, outcome.error, deps))
                self._block_dependents(name, f"blocked by failed dependency {name}")
            elif outcome.state == TaskState.SKIPPED:
                self._skipped.append(TaskSkip(name, outcome.cause or "skipped", (name,)))
                if self._options.tolerate_skipped_dependencies:
                    self._release_dependents(name, taint)
                else:
                    self._block_dependents(name, f"blocked by skipped dependency {name}")
            else:
                self._release_dependents(name, taint)

    def _mark_ready(self, name: str) -> None:
        self._outcomes[name].state = TaskState.READY
        self._ready.append(name)

    def _release_dependents(self, name: str, taint: bool) -> None:
        for dependent in self._graph.dependents(name):
            outcome = self._outcomes[dependent]
            if outcome.state != TaskState.PENDING:
                continue
            if taint:
                outcome.tainted = True
            self._remaining[dependent] -= 1
            if self._remaining[dependent] == 0:
                self._mark_ready(dependent)

    def _block_dependents(self, name: str, cause: str) -> None:
        for dependent in self._graph.transitive_dependents(name):
            outcome = self._outcomes[dependent]
            if outcome.state.terminal or outcome.state == TaskState.RUNNING:
                continue
            if outcome.state == TaskState.READY:
                self._ready.remove(dependent)
            outcome.state = TaskState.SKIPPED
            outcome.cause = cause
            chain = tuple(self._graph.path_between(name, dependent))
            self._skipped.append(TaskSkip(dependent, cause, chain))
            logger.warning("Skipping %s: %s", dependent, cause)

    def _skip_unstarted(self, cause: str) -> None:
        with self._lock:
            for name, outcome in self._outcomes.items():
                if outcome.state in (TaskState.PENDING, TaskState.READY):
                    outcome.state = TaskState.SKIPPED
                    outcome.cause = cause
                    self._skipped.append(TaskSkip(name, cause, (name,)))
            self._ready.clear()


def run_tasks(ctx: RunContext, tasks: Mapping[str, Task]) -> RunResult:
    """Reconcile every task against the provider, dependencies first.

    Configuration errors (cycles, self-references, invalid task settings)
    are raised before any task is looked up. Everything that goes wrong
    after that is reported in the returned RunResult.
    """
    for task in tasks.values():
        task.validate()
    graph = TaskGraph.from_tasks(tasks)

    ctx.target.reset()
    ctx.begin_run()
    logger.info(
        "Running %d task(s) in %d layer(s) with up to %d worker(s)",
        len(graph),
        len(graph.topological_layers()),
        ctx.options.max_workers,
    )
    result = _Scheduler(ctx, graph, tasks, lambda task: task.run(ctx)).run()
    if not result.success:
        logger.warning(
            "Run finished with %d failure(s) and %d skipped task(s)",
            len(result.failures),
            len(result.skipped),
        )
    return result


def collect_deletions(ctx: RunContext, tasks: Mapping[str, Task]) -> list[Deletion]:
    """Ask every fully managed task for live objects it wants pruned."""
    deletions: list[Deletion] = []
    for name, task in tasks.items():
        if task.lifecycle != Lifecycle.SYNC:
            continue
        try:
            found = task.find_deletions(ctx)
        except ConvergentError:
            raise
        except Exception as e:
            raise DiscoveryError(name, e) from e
        if found:
            logger.info("%s: %d object(s) to prune", name, len(found))
        deletions.extend(found)
    return deletions


def run_deletions(ctx: RunContext, deletions: Iterable[Deletion]) -> RunResult:
    """Run a garbage-collection pass; dependents are removed before dependencies."""
    by_name: dict[str, Deletion] = {}
    for deletion in deletions:
        if deletion.task_name in by_name:
            raise ConfigurationError(f"Duplicate deletion {deletion.task_name!r}")
        by_name[deletion.task_name] = deletion

    graph = TaskGraph.from_tasks(by_name).reversed()

    def delete(deletion: Deletion) -> None:
        try:
            ctx.target.delete(ctx, deletion)
        except ConvergentError:
            raise
        except Exception as e:
            raise ApplyError(deletion.task_name, str(e)) from e

    ctx.begin_run()
    logger.info("Running %d deletion(s)", len(graph))
    return _Scheduler(ctx, graph, by_name, delete).run()


def check_no_changes(
    cloud: Any,
    tasks: Mapping[str, Task],
    options: RunOptions | None = None,
) -> RunResult:
    """Dry-run ``tasks`` and raise ChangesDetectedError unless nothing would change."""
    target = DryRunTarget()
    ctx = RunContext(target=target, cloud=cloud, options=options or RunOptions())
    result = run_tasks(ctx, tasks)
    result.raise_for_status()
    changes = target.changes()
    if changes:
        raise ChangesDetectedError(changes)
    return result
