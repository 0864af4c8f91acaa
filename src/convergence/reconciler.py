"""Per-task reconciliation: Find, Diff, Apply.

This module drives one task from desired state to actual state:
1. Find: ask the provider adapter for the actual resource (read backoff)
2. Diff: compute the ChangeSet and validate it (required and immutable fields)
3. Lifecycle: decide whether divergence is an error, a warning or a fix
4. Apply: create, update only the changed fields, or do nothing (write backoff)

STATE MACHINE (per task, per run):
    Pending -> Found -> Diffed -> Applied | Skipped | Failed

There is no rolled-back state: effects of earlier tasks persist even when
a later task fails.

Each resource kind gets one TaskReconciler subclass, registered with
@reconciles, consuming one narrow adapter.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from .backoff import READ_BACKOFF, WRITE_BACKOFF, BackoffPolicy, RetryExecutor
from .config import DEFAULT_CALL_TIMEOUT_SECONDS
from .errors import (
    CannotChangeFieldError,
    LifecycleViolationError,
    ProviderError,
    ProviderFatalError,
    RequiredFieldError,
    RetryExhaustedError,
    TaskError,
    TransientProviderError,
)
from .fields import coerce
from .provider import LookupKey, Record, ResourceAdapter
from .tasks import ChangeSet, Lifecycle, ResourceTask

logger = logging.getLogger(__name__)

TaskT = TypeVar("TaskT", bound=ResourceTask)


class TaskState(str, Enum):
    """Reconciliation state of a task within one run."""

    PENDING = "Pending"
    FOUND = "Found"
    DIFFED = "Diffed"
    APPLIED = "Applied"
    SKIPPED = "Skipped"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.APPLIED, TaskState.SKIPPED, TaskState.FAILED)


class ApplyAction(str, Enum):
    """What the Apply step did."""

    CREATE = "create"
    UPDATE = "update"
    NONE = "none"


@dataclass
class TaskOutcome:
    """Result of reconciling a single task."""

    name: str
    kind: str
    state: TaskState = TaskState.PENDING
    action: ApplyAction | None = None
    resource_id: str | None = None
    changes: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    error: BaseException | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.state in (TaskState.APPLIED, TaskState.SKIPPED)

    def transition(self, state: TaskState) -> None:
        logger.debug(
            "Task state change",
            extra={"task": self.name, "from_state": self.state.value, "to_state": state.value},
        )
        self.state = state

    def fail(self, error: BaseException) -> None:
        self.error = error
        self.transition(TaskState.FAILED)

    def to_dict(self) -> dict[str, Any]:
        """Plain representation for reports."""
        data: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind,
            "state": self.state.value,
            "duration_seconds": self.duration_seconds,
        }
        if self.action is not None:
            data["action"] = self.action.value
        if self.resource_id is not None:
            data["id"] = self.resource_id
        if self.changes:
            data["changes"] = dict(self.changes)
        if self.warnings:
            data["warnings"] = list(self.warnings)
        if self.error is not None:
            data["error"] = str(self.error)
            data["error_type"] = type(self.error).__name__
        return data


class TaskReconciler(Generic[TaskT]):
    """Drives tasks of one kind through Find, Diff and Apply.

    Subclasses bind a task type with @reconciles and override the hooks
    that differ for their kind (lookup, record parsing, create/update
    rendering, extra validation).
    """

    task_type: ClassVar[type[ResourceTask]] = ResourceTask
    record_model: ClassVar[type[BaseModel] | None] = None

    def __init__(
        self,
        adapter: ResourceAdapter,
        *,
        executor: RetryExecutor | None = None,
        read_backoff: BackoffPolicy = READ_BACKOFF,
        write_backoff: BackoffPolicy = WRITE_BACKOFF,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize reconciler.

        Args:
            adapter: Provider adapter for this kind.
            executor: Retry executor shared across reconcilers.
            read_backoff: Policy for find calls.
            write_backoff: Policy for create and update calls.
            call_timeout_seconds: Upper bound on a single adapter call.
        """
        self._adapter = adapter
        self._executor = executor or RetryExecutor()
        self._read_backoff = read_backoff
        self._write_backoff = write_backoff
        self._call_timeout_seconds = call_timeout_seconds

    @property
    def kind(self) -> str:
        return self.task_type.kind

    async def reconcile(self, name: str, task: TaskT) -> TaskOutcome:
        """Reconcile one task against the provider.

        Never raises for task-level failures; they are recorded on the
        returned outcome.

        Args:
            name: Task name in the run.
            task: Desired state. Transient fields are populated in place.

        Returns:
            TaskOutcome in a terminal state.
        """
        outcome = TaskOutcome(name=name, kind=self.kind, start_time=datetime.now(UTC))

        try:
            task.resolve_references()

            actual = await self.find(task)
            outcome.transition(TaskState.FOUND)

            changes = self.diff(actual, task)
            outcome.changes = changes.summary()
            outcome.transition(TaskState.DIFFED)

            if not self.check_lifecycle(actual, task, changes, outcome):
                if actual is not None:
                    self.populate(task, actual)
                outcome.action = ApplyAction.NONE
                outcome.transition(TaskState.SKIPPED)
            else:
                outcome.action = await self.apply(actual, task, changes)
                outcome.transition(
                    TaskState.SKIPPED if outcome.action == ApplyAction.NONE else TaskState.APPLIED
                )

            outcome.resource_id = task.id.get()

        except (RequiredFieldError, CannotChangeFieldError) as e:
            logger.error(
                "Invalid change for task",
                extra={"task": name, "kind": self.kind, "field": e.field, "error": str(e)},
            )
            outcome.fail(e)
        except LifecycleViolationError as e:
            logger.error(
                "Lifecycle violation",
                extra={"task": name, "kind": self.kind, "lifecycle": task.lifecycle.value, "error": str(e)},
            )
            outcome.fail(e)
        except RetryExhaustedError as e:
            logger.error(
                "Provider call kept failing",
                extra={"task": name, "kind": self.kind, "attempts": e.attempts, "error": str(e)},
            )
            outcome.fail(e)
        except ProviderError as e:
            logger.error(
                "Provider error",
                extra={"task": name, "kind": self.kind, "error": str(e)},
            )
            outcome.fail(e)
        except TaskError as e:
            logger.error("Task failed", extra={"task": name, "kind": self.kind, "error": str(e)})
            outcome.fail(e)
        except Exception as e:
            logger.exception(
                "Unexpected error during reconciliation",
                extra={"task": name, "kind": self.kind},
            )
            outcome.fail(e)

        outcome.end_time = datetime.now(UTC)
        self._log_outcome(outcome)
        return outcome

    async def find(self, task: TaskT) -> TaskT | None:
        """Query the provider for the actual state of task.

        Returns:
            The actual task, or None when the resource does not exist.
        """
        key = self.lookup_key(task)
        if key is None:
            return None

        raw = await self._call(
            self._adapter.find,
            key,
            policy=self._read_backoff,
            description=f"find {self.kind} {key}",
        )
        if raw is None:
            logger.debug("Resource not found", extra={"kind": self.kind, "key": str(key)})
            return None
        return self.from_record(self.parse_record(raw), task)

    def diff(self, actual: TaskT | None, expected: TaskT) -> ChangeSet:
        """Compute and validate the ChangeSet between actual and expected.

        Raises:
            RequiredFieldError: Creating without a mandatory field.
            CannotChangeFieldError: Changing an immutable field.
        """
        changes = ChangeSet.compute(actual, expected)
        self.check_changes(actual, expected, changes)
        return changes

    def check_changes(self, actual: TaskT | None, expected: TaskT, changes: ChangeSet) -> None:
        """Validate a proposed ChangeSet.

        Subclasses extend this for kind-specific rules.

        A task naming an identifier the provider does not know cannot be
        created: the provider assigns identifiers.
        """
        if actual is None:
            if expected.id.is_set:
                raise CannotChangeFieldError("id")
            for name in expected.required_fields:
                if not getattr(expected, name).is_set:
                    raise RequiredFieldError(name)
        else:
            for name in expected.immutable_fields:
                if name in changes:
                    raise CannotChangeFieldError(name)

    def check_lifecycle(
        self,
        actual: TaskT | None,
        expected: TaskT,
        changes: ChangeSet,
        outcome: TaskOutcome,
    ) -> bool:
        """Apply the task's lifecycle policy.

        Returns:
            True to proceed to Apply, False to skip it.

        Raises:
            LifecycleViolationError: If the policy forbids the divergence.
        """
        lifecycle = expected.lifecycle
        if lifecycle == Lifecycle.SYNC:
            return True

        if actual is None:
            raise LifecycleViolationError(
                f"Lifecycle is {lifecycle.value}, but {self.kind} "
                f"'{expected.display_name()}' was not found"
            )

        if changes.is_empty:
            return True

        if lifecycle == Lifecycle.EXISTS_AND_VALIDATES:
            raise LifecycleViolationError(
                f"Lifecycle is {lifecycle.value}, but {self.kind} "
                f"'{expected.display_name()}' did not match: {changes.summary()}"
            )

        warning = (
            f"{self.kind} '{expected.display_name()}' differs from desired state "
            f"and will not be changed: {changes.summary()}"
        )
        logger.warning(
            "Drift detected, not correcting",
            extra={
                "task": outcome.name,
                "kind": self.kind,
                "lifecycle": lifecycle.value,
                "changes": changes.summary(),
            },
        )
        outcome.warnings.append(warning)
        return False

    async def apply(self, actual: TaskT | None, expected: TaskT, changes: ChangeSet) -> ApplyAction:
        """Create, update or leave the resource, then populate expected.

        Returns:
            The action taken.
        """
        if actual is None:
            spec = self.render_create(expected)
            logger.info(
                "Creating resource",
                extra={"kind": self.kind, "resource_name": expected.display_name()},
            )
            raw = await self._call(
                self._adapter.create,
                spec,
                policy=self._write_backoff,
                description=f"create {self.kind} {expected.display_name()}",
                retry_on_timeout=False,
            )
            self.populate(expected, self.from_record(self.parse_record(raw), expected))
            return ApplyAction.CREATE

        if changes.is_empty:
            self.populate(expected, actual)
            return ApplyAction.NONE

        resource_id = actual.id.value
        if resource_id is None:
            raise ProviderFatalError(f"{self.kind} '{expected.display_name()}' has no identifier")

        delta = self.render_update(actual, expected, changes)
        logger.info(
            "Updating resource",
            extra={
                "kind": self.kind,
                "resource_name": expected.display_name(),
                "resource_id": resource_id,
                "changes": changes.summary(),
            },
        )
        raw = await self._call(
            self._adapter.update,
            resource_id,
            delta,
            policy=self._write_backoff,
            description=f"update {self.kind} {resource_id}",
        )
        self.populate(expected, self.from_record(self.parse_record(raw), expected))
        return ApplyAction.UPDATE

    # -------------------------------------------------------------------------
    # Kind hooks
    # -------------------------------------------------------------------------

    def lookup_key(self, task: TaskT) -> LookupKey | None:
        """Key used by find; None means the resource cannot exist yet."""
        if task.id.is_set:
            return LookupKey(id=task.id.value, name=task.name.get())
        if task.name.is_set:
            return LookupKey(name=task.name.value)
        return None

    def parse_record(self, raw: Any) -> Record:
        """Validate a provider record at the boundary.

        Raises:
            ProviderFatalError: If the record is malformed.
        """
        if not isinstance(raw, dict):
            raise ProviderFatalError(
                f"{self.kind} adapter returned {type(raw).__name__}, expected a mapping"
            )
        if self.record_model is None:
            return dict(raw)
        try:
            return self.record_model.model_validate(raw).model_dump()
        except ValidationError as e:
            errors = ", ".join(
                f"{'.'.join(str(x) for x in error['loc'])}: {error['msg']}" for error in e.errors()
            )
            raise ProviderFatalError(f"Malformed {self.kind} record: {errors}") from e

    def from_record(self, record: Record, expected: TaskT) -> TaskT:
        """Build the actual task from a validated record."""
        fields = expected.managed_fields + expected.transient_fields
        values = {name: record.get(name) for name in fields}
        return self.task_type(**values, lifecycle=expected.lifecycle)  # type: ignore[return-value]

    def render_create(self, expected: TaskT) -> Record:
        """Create payload: every field expected manages, minus the identifier."""
        spec: Record = {}
        for name in expected.managed_fields:
            value = getattr(expected, name)
            if name == "id" or value.is_unset:
                continue
            spec[name] = value.get()
        return spec

    def render_update(self, actual: TaskT, expected: TaskT, changes: ChangeSet) -> Record:
        """Update payload: only the changed fields."""
        return {change.field: change.after.get() for change in changes}

    def populate(self, expected: TaskT, actual: TaskT) -> None:
        """Copy identifier and provider-assigned fields onto expected."""
        if actual.id.is_set:
            expected.assign_id(actual.id.value)
        for name in expected.transient_fields:
            value = getattr(actual, name)
            if not value.is_unset:
                setattr(expected, name, coerce(value))

    # -------------------------------------------------------------------------
    # Provider calls
    # -------------------------------------------------------------------------

    async def _call(
        self,
        method: Callable[..., Any],
        *args: Any,
        policy: BackoffPolicy,
        description: str,
        retry_on_timeout: bool = True,
    ) -> Any:
        """Invoke an adapter method under backoff and a per-call timeout.

        A call that exceeds the timeout counts as a transient failure,
        unless retry_on_timeout is False: a sync call keeps running in its
        worker thread after the timeout, so repeating it could apply it
        twice.
        """

        async def attempt() -> Any:
            if inspect.iscoroutinefunction(method):
                pending = method(*args)
            else:
                loop = asyncio.get_running_loop()
                pending = loop.run_in_executor(None, lambda: method(*args))
            try:
                return await asyncio.wait_for(pending, timeout=self._call_timeout_seconds)
            except TimeoutError as e:
                message = f"{description} timed out after {self._call_timeout_seconds}s"
                if not retry_on_timeout:
                    raise ProviderFatalError(f"{message}, outcome unknown") from e
                raise TransientProviderError(message) from e

        return await self._executor.run(policy, attempt, description=description)

    def _log_outcome(self, outcome: TaskOutcome) -> None:
        extra: dict[str, Any] = {
            "task": outcome.name,
            "kind": outcome.kind,
            "state": outcome.state.value,
            "duration_seconds": outcome.duration_seconds,
        }
        if outcome.resource_id is not None:
            extra["resource_id"] = outcome.resource_id
        if outcome.changes:
            extra["changes"] = outcome.changes

        if outcome.state == TaskState.FAILED:
            extra["error"] = str(outcome.error)
            logger.error("Task reconciliation failed", extra=extra)
        elif outcome.state == TaskState.APPLIED:
            logger.info("Task applied", extra=extra)
        else:
            logger.info("Task unchanged", extra=extra)


_RECONCILERS: dict[type[ResourceTask], type[TaskReconciler[Any]]] = {}


def reconciles(
    task_type: type[ResourceTask],
) -> Callable[[type[TaskReconciler[Any]]], type[TaskReconciler[Any]]]:
    """Class decorator binding a reconciler to the task type it handles."""

    def register(cls: type[TaskReconciler[Any]]) -> type[TaskReconciler[Any]]:
        cls.task_type = task_type
        _RECONCILERS[task_type] = cls
        return cls

    return register


def reconciler_for(task_type: type[ResourceTask]) -> type[TaskReconciler[Any]]:
    """Find the reconciler registered for task_type or its closest base.

    Raises:
        LookupError: If no reconciler handles this task type.
    """
    for cls in task_type.__mro__:
        reconciler = _RECONCILERS.get(cls)
        if reconciler is not None:
            return reconciler
    raise LookupError(f"No reconciler registered for task type {task_type.__name__}")
