"""Three-state optional values for resource task fields.

A task field is either:
- UNSET: the task does not manage this field (no opinion)
- CLEARED: the task wants the field to carry no value
- SET: the task wants the field to hold a concrete value

Keeping "unset" apart from "set to the element default" (an empty string,
zero, an empty list) is what makes required-field checks and diffs correct.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class FieldState(str, Enum):
    """State of a single task field."""

    UNSET = "unset"
    CLEARED = "cleared"
    SET = "set"


@dataclass(frozen=True)
class Opt(Generic[T]):
    """Immutable three-state field value."""

    state: FieldState = FieldState.UNSET
    value: T | None = None

    def __post_init__(self) -> None:
        if self.state != FieldState.SET and self.value is not None:
            raise ValueError(f"Only SET fields can carry a value, got state {self.state.value}")

    @classmethod
    def of(cls, value: T) -> Opt[T]:
        """Build a SET field holding value."""
        return cls(FieldState.SET, value)

    @property
    def is_set(self) -> bool:
        return self.state == FieldState.SET

    @property
    def is_unset(self) -> bool:
        return self.state == FieldState.UNSET

    @property
    def is_cleared(self) -> bool:
        return self.state == FieldState.CLEARED

    def get(self, default: T | None = None) -> T | None:
        """Return the value if SET, else default."""
        return self.value if self.is_set else default

    def __repr__(self) -> str:
        if self.is_set:
            return f"Opt({self.value!r})"
        return self.state.name


UNSET: Opt[Any] = Opt()
CLEARED: Opt[Any] = Opt(FieldState.CLEARED)


def coerce(value: Any) -> Opt[Any]:
    """Wrap a plain value as a field.

    Opt instances pass through, None becomes UNSET and anything else
    becomes a SET field. Clearing a field must be requested with CLEARED.
    """
    if isinstance(value, Opt):
        return value
    if value is None:
        return UNSET
    return Opt.of(value)
