"""Provider adapter interfaces.

The engine never talks to a cloud API directly. Each resource kind is
served by one narrow adapter exposing find/create/update; a Provider hands
out the adapter for a kind.

Adapters exchange plain records (dicts) with the engine and signal
failures by raising:
- TransientProviderError for retryable failures
- ProviderFatalError for permanent ones

Adapter methods may be plain functions (run in a worker thread) or
coroutines. Adapters do not retry; the engine supplies backoff uniformly.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from .errors import ProviderFatalError

logger = logging.getLogger(__name__)

Record = dict[str, Any]


@dataclass(frozen=True)
class LookupKey:
    """How to find a resource: by identifier when known, else by name."""

    id: str | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        if self.id is None and self.name is None:
            raise ValueError("LookupKey needs an id or a name")

    def __str__(self) -> str:
        return f"id={self.id}" if self.id is not None else f"name={self.name}"


@runtime_checkable
class ResourceAdapter(Protocol):
    """Remote operations the reconciler needs for one resource kind."""

    def find(self, key: LookupKey) -> Record | None:
        """Return the resource record, or None if it does not exist."""
        ...

    def create(self, spec: Record) -> Record:
        """Create a resource and return its record."""
        ...

    def update(self, resource_id: str, delta: Record) -> Record:
        """Apply changed fields to an existing resource and return its record."""
        ...


class Provider(Protocol):
    """Hands out the adapter serving a resource kind."""

    def adapter_for(self, kind: str) -> ResourceAdapter:
        ...


class AdapterRegistry:
    """Provider assembled from one adapter per resource kind."""

    def __init__(self, adapters: Mapping[str, ResourceAdapter] | None = None) -> None:
        self._adapters: dict[str, ResourceAdapter] = dict(adapters or {})

    def register(self, kind: str, adapter: ResourceAdapter) -> None:
        """Register the adapter for kind, replacing any previous one."""
        if kind in self._adapters:
            logger.debug("Replacing adapter", extra={"kind": kind})
        self._adapters[kind] = adapter

    def adapter_for(self, kind: str) -> ResourceAdapter:
        """Get the adapter for kind.

        Raises:
            ProviderFatalError: If no adapter serves this kind.
        """
        try:
            return self._adapters[kind]
        except KeyError as e:
            raise ProviderFatalError(
                f"No adapter registered for kind '{kind}'. "
                f"Registered kinds: {sorted(self._adapters)}"
            ) from e

    @property
    def kinds(self) -> list[str]:
        return sorted(self._adapters)
