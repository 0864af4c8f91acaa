"""Convergence runner: reconcile a task collection in dependency order.

SCHEDULING:
- The dependency graph is built and validated first; a malformed graph
  aborts the run before any provider call
- A task is released once every task it depends on is Applied or Skipped
- Up to max_concurrency reconciliations run at once on the event loop
- A failed task poisons its transitive dependents: they are marked Failed
  with DependencyFailedError and never reach the provider
- With fail_fast, no new task starts after the first failure; tasks
  already in flight finish, the rest stay Pending

Failures are aggregated into one ConvergenceFailedError on the result.
There is no rollback of resources applied earlier in the run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .backoff import RetryExecutor
from .config import EngineConfig
from .errors import ConvergenceFailedError, DependencyFailedError, ProviderFatalError
from .graph import DependencyGraph, build_graph
from .provider import Provider
from .reconciler import TaskOutcome, TaskReconciler, TaskState, reconciler_for
from .tasks import ResourceTask

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    """Aggregate status of a convergence run."""

    CONVERGED = "Converged"
    CONVERGED_WITH_NO_CHANGES = "ConvergedWithNoChanges"
    FAILED = "Failed"


@dataclass
class RunResult:
    """Per-task outcomes of one run, in dependency order."""

    outcomes: dict[str, TaskOutcome] = field(default_factory=dict)
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def failed(self) -> list[str]:
        return [name for name, o in self.outcomes.items() if o.state == TaskState.FAILED]

    @property
    def not_attempted(self) -> list[str]:
        """Tasks left Pending because the run stopped scheduling."""
        return [name for name, o in self.outcomes.items() if o.state == TaskState.PENDING]

    @property
    def applied_count(self) -> int:
        return sum(1 for o in self.outcomes.values() if o.state == TaskState.APPLIED)

    @property
    def status(self) -> RunStatus:
        if self.failed or self.not_attempted:
            return RunStatus.FAILED
        if self.applied_count:
            return RunStatus.CONVERGED
        return RunStatus.CONVERGED_WITH_NO_CHANGES

    @property
    def success(self) -> bool:
        return self.status != RunStatus.FAILED

    @property
    def error(self) -> ConvergenceFailedError | None:
        """Aggregate error naming every failed task, or None."""
        failures = {
            name: outcome.error
            for name, outcome in self.outcomes.items()
            if outcome.state == TaskState.FAILED and outcome.error is not None
        }
        if not failures:
            return None
        return ConvergenceFailedError(failures)

    def raise_for_status(self) -> None:
        """Raise the aggregate error if any task failed."""
        error = self.error
        if error is not None:
            raise error

    def to_dict(self) -> dict[str, Any]:
        """Plain run report for JSON or YAML output."""
        return {
            "status": self.status.value,
            "applied_count": self.applied_count,
            "duration_seconds": self.duration_seconds,
            "failed": self.failed,
            "not_attempted": self.not_attempted,
            "tasks": [outcome.to_dict() for outcome in self.outcomes.values()],
        }


class ConvergenceRunner:
    """Drives a collection of tasks toward the provider's actual state."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        executor: RetryExecutor | None = None,
    ) -> None:
        """Initialize runner.

        Args:
            config: Engine configuration (defaults apply when omitted).
            executor: Retry executor shared by every reconciler.
        """
        self.config = config or EngineConfig()
        self._executor = executor or RetryExecutor()

    async def run(self, tasks: Mapping[str, ResourceTask], provider: Provider) -> RunResult:
        """Reconcile every task against provider.

        Args:
            tasks: Mapping of task name to desired state.
            provider: Source of per-kind adapters.

        Returns:
            RunResult with one outcome per task.

        Raises:
            GraphMalformedError: If the tasks do not form a valid DAG.
        """
        graph = build_graph(tasks)
        order = graph.topological_sort()

        result = RunResult(
            outcomes={name: TaskOutcome(name=name, kind=tasks[name].kind) for name in order},
            start_time=datetime.now(UTC),
        )

        logger.info(
            "Starting convergence run",
            extra={
                "task_count": len(order),
                "max_concurrency": self.config.max_concurrency,
                "fail_fast": self.config.fail_fast,
            },
        )

        await self._schedule(graph, tasks, provider, result)

        result.end_time = datetime.now(UTC)
        log = logger.info if result.success else logger.error
        log(
            "Convergence run finished",
            extra={
                "status": result.status.value,
                "applied_count": result.applied_count,
                "failed": result.failed,
                "not_attempted": result.not_attempted,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    async def _schedule(
        self,
        graph: DependencyGraph,
        tasks: Mapping[str, ResourceTask],
        provider: Provider,
        result: RunResult,
    ) -> None:
        satisfied: set[str] = set()
        started: set[str] = set()
        failed_roots: dict[str, set[str]] = {}
        reconcilers: dict[type[ResourceTask], TaskReconciler[Any]] = {}
        in_flight: dict[asyncio.Task[TaskOutcome], str] = {}
        stopped = False

        def release() -> None:
            for name in graph.get_ready(satisfied, started):
                if len(in_flight) >= self.config.max_concurrency:
                    return
                started.add(name)
                coro = self._reconcile(name, tasks[name], provider, reconcilers)
                in_flight[asyncio.create_task(coro)] = name

        release()
        while in_flight:
            done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for finished in done:
                name = in_flight.pop(finished)
                outcome = finished.result()
                result.outcomes[name] = outcome

                if outcome.success:
                    satisfied.add(name)
                    continue

                self._poison(graph, name, started, failed_roots, result)
                if self.config.fail_fast and not stopped:
                    stopped = True
                    logger.warning(
                        "Task failed, not starting further tasks",
                        extra={"task": name, "in_flight": sorted(in_flight.values())},
                    )

            if not stopped:
                release()

    async def _reconcile(
        self,
        name: str,
        task: ResourceTask,
        provider: Provider,
        reconcilers: dict[type[ResourceTask], TaskReconciler[Any]],
    ) -> TaskOutcome:
        try:
            reconciler = reconcilers.get(type(task))
            if reconciler is None:
                reconciler = self._build_reconciler(task, provider)
                reconcilers[type(task)] = reconciler
        except (LookupError, ProviderFatalError) as e:
            logger.error(
                "No way to reconcile task",
                extra={"task": name, "kind": task.kind, "error": str(e)},
            )
            outcome = TaskOutcome(name=name, kind=task.kind, start_time=datetime.now(UTC))
            outcome.fail(e)
            outcome.end_time = outcome.start_time
            return outcome

        return await reconciler.reconcile(name, task)

    def _build_reconciler(self, task: ResourceTask, provider: Provider) -> TaskReconciler[Any]:
        reconciler_cls = reconciler_for(type(task))
        return reconciler_cls(
            provider.adapter_for(task.kind),
            executor=self._executor,
            read_backoff=self.config.read_backoff,
            write_backoff=self.config.write_backoff,
            call_timeout_seconds=self.config.call_timeout_seconds,
        )

    def _poison(
        self,
        graph: DependencyGraph,
        failed: str,
        started: set[str],
        failed_roots: dict[str, set[str]],
        result: RunResult,
    ) -> None:
        """Mark every transitive dependent of failed as Failed without running it."""
        for dependent in sorted(graph.dependents_of(failed)):
            roots = failed_roots.setdefault(dependent, set())
            roots.add(failed)
            started.add(dependent)

            outcome = result.outcomes[dependent]
            outcome.error = DependencyFailedError(sorted(roots))
            if outcome.state != TaskState.FAILED:
                outcome.transition(TaskState.FAILED)
                logger.error(
                    "Task skipped, dependency failed",
                    extra={"task": dependent, "failed_dependency": failed},
                )
