"""Entry points shared by the CLI and embedding programs.

Desired state and providers are supplied as import references of the
form "package.module:attribute". The attribute may be the object itself
or a zero-argument callable producing it.
"""

from __future__ import annotations

import importlib
import json
import logging
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from .config import EngineConfig
from .provider import Provider
from .runner import ConvergenceRunner, RunResult
from .tasks import ResourceTask

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class LoadError(Exception):
    """Raised when an import reference cannot be resolved."""

    pass


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output on stderr.

    stdout is left to command output (run reports, graph listings).
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("asyncio").setLevel(logging.WARNING)


def load_reference(reference: str) -> Any:
    """Resolve "module:attribute" to the object it names.

    Raises:
        LoadError: If the reference is malformed or cannot be imported.
    """
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        raise LoadError(f"Reference must look like 'module:attribute': {reference}")

    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as e:
        raise LoadError(f"Cannot import module '{module_name}': {e}") from e

    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise LoadError(f"Module '{module_name}' has no attribute '{attribute}'") from e
    return target


def load_tasks(reference: str) -> Mapping[str, ResourceTask]:
    """Load a task mapping from an import reference.

    Raises:
        LoadError: If the reference does not yield a mapping of tasks.
    """
    target = load_reference(reference)
    tasks = target() if callable(target) else target

    if not isinstance(tasks, Mapping):
        raise LoadError(f"{reference} did not produce a mapping, got {type(tasks).__name__}")
    invalid = sorted(
        str(name) for name, task in tasks.items() if not isinstance(task, ResourceTask)
    )
    if invalid:
        raise LoadError(f"{reference} contains entries that are not resource tasks: {invalid}")
    return tasks


def load_provider(reference: str) -> Provider:
    """Load a provider from an import reference.

    A class or factory is called without arguments; any other object is
    used as is.

    Raises:
        LoadError: If the result has no adapter_for method.
    """
    target = load_reference(reference)
    if isinstance(target, type) or not hasattr(target, "adapter_for"):
        provider = target() if callable(target) else target
    else:
        provider = target
    if not callable(getattr(provider, "adapter_for", None)):
        raise LoadError(f"{reference} did not produce a provider with adapter_for(kind)")
    return provider  # type: ignore[no-any-return]


async def converge(
    tasks: Mapping[str, ResourceTask],
    provider: Provider,
    config: EngineConfig | None = None,
) -> RunResult:
    """Run one convergence pass with a fresh runner.

    Raises:
        GraphMalformedError: If the tasks do not form a valid DAG.
    """
    return await ConvergenceRunner(config).run(tasks, provider)
