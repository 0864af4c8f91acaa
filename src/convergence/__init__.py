"""Declarative resource convergence engine.

Compares desired-state resource tasks against a provider's actual state
and applies the minimal changes in dependency order.
"""

from .backoff import READ_BACKOFF, WRITE_BACKOFF, BackoffPolicy, RetryExecutor, retry
from .config import ConfigurationError, EngineConfig
from .errors import (
    CannotChangeFieldError,
    ConvergenceFailedError,
    DependencyFailedError,
    GraphCycleError,
    GraphMalformedError,
    LifecycleViolationError,
    ProviderError,
    ProviderFatalError,
    RequiredFieldError,
    RetryExhaustedError,
    TaskError,
    TransientProviderError,
)
from .fields import CLEARED, UNSET, FieldState, Opt
from .graph import DependencyGraph, build_graph
from .provider import AdapterRegistry, LookupKey, Provider, ResourceAdapter
from .reconciler import ApplyAction, TaskOutcome, TaskReconciler, TaskState, reconciles
from .resources import LoadBalancer, Network, Subnet, Volume
from .runner import ConvergenceRunner, RunResult, RunStatus
from .tasks import ChangeSet, ChangeType, Lifecycle, ResourceTask

__version__ = "0.1.0"

__all__ = [
    "CLEARED",
    "READ_BACKOFF",
    "UNSET",
    "WRITE_BACKOFF",
    "AdapterRegistry",
    "ApplyAction",
    "BackoffPolicy",
    "CannotChangeFieldError",
    "ChangeSet",
    "ChangeType",
    "ConfigurationError",
    "ConvergenceFailedError",
    "ConvergenceRunner",
    "DependencyFailedError",
    "DependencyGraph",
    "EngineConfig",
    "FieldState",
    "GraphCycleError",
    "GraphMalformedError",
    "Lifecycle",
    "LifecycleViolationError",
    "LoadBalancer",
    "LookupKey",
    "Network",
    "Opt",
    "Provider",
    "ProviderError",
    "ProviderFatalError",
    "RequiredFieldError",
    "ResourceAdapter",
    "ResourceTask",
    "RetryExecutor",
    "RetryExhaustedError",
    "RunResult",
    "RunStatus",
    "Subnet",
    "TaskError",
    "TaskOutcome",
    "TaskReconciler",
    "TaskState",
    "TransientProviderError",
    "Volume",
    "build_graph",
    "reconciles",
    "retry",
]
