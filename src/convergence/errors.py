"""Error taxonomy for the convergence engine.

Three families, by blast radius:
- Task errors fail the owning task (and, through the runner, its dependents)
- Provider errors are raised by adapters; transient ones are retried
- Graph errors abort the whole run before any provider call is made
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence


class TaskError(Exception):
    """Raised when a single task cannot be reconciled."""

    pass


class RequiredFieldError(TaskError):
    """Raised when creating a resource that is missing a mandatory field."""

    def __init__(self, field: str) -> None:
        super().__init__(f"Field is required: {field}")
        self.field = field


class CannotChangeFieldError(TaskError):
    """Raised when a change would mutate an immutable field."""

    def __init__(self, field: str) -> None:
        super().__init__(f"Field cannot be changed: {field}")
        self.field = field


class LifecycleViolationError(TaskError):
    """Raised when actual state breaks the task's lifecycle policy."""

    pass


class DependencyFailedError(TaskError):
    """Raised for a task that was never attempted because a dependency failed."""

    def __init__(self, dependencies: Sequence[str]) -> None:
        super().__init__(f"Dependencies failed: {sorted(dependencies)}")
        self.dependencies = sorted(dependencies)


class RetryExhaustedError(TaskError):
    """Raised when the backoff attempt budget is spent without success.

    Timeout-class error, distinct from a fatal operation error.
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception | None) -> None:
        message = f"{operation} did not succeed after {attempts} attempts"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class ProviderError(Exception):
    """Base class for errors raised by provider adapters."""

    pass


class TransientProviderError(ProviderError):
    """Retryable provider failure (throttling, timeouts, 5xx)."""

    pass


class ProviderFatalError(ProviderError):
    """Non-retryable provider failure (permission denied, bad request)."""

    pass


class GraphMalformedError(Exception):
    """Raised when the task collection does not form a valid graph."""

    pass


class GraphCycleError(GraphMalformedError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, nodes: Sequence[str]) -> None:
        super().__init__(f"Circular dependency detected involving: {sorted(nodes)}")
        self.nodes = sorted(nodes)


class UnknownDependencyError(GraphMalformedError):
    """Raised when a task references a task outside the collection."""

    pass


class DuplicateTaskError(GraphMalformedError):
    """Raised when one task object is registered under several names."""

    pass


class ConvergenceFailedError(Exception):
    """Aggregate error naming every task that failed during a run."""

    def __init__(self, failures: Mapping[str, BaseException]) -> None:
        names = sorted(failures)
        super().__init__(f"{len(names)} task(s) failed: {names}")
        self.failures = dict(failures)

    @property
    def task_names(self) -> list[str]:
        return sorted(self.failures)
