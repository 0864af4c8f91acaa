"""Resource tasks and change sets.

A task is the desired state of one infrastructure object. The reconciler
compares it against an "actual" task built from provider state and
derives a ChangeSet: one entry per managed field, classified as
unchanged, newly-set or modified.

DESIGN:
- Managed fields hold three-state Opt values (see fields.py)
- Each kind declares which fields are required, immutable or
  provider-assigned as class metadata
- Dependencies are a capability of the kind: a task enumerates the other
  tasks it must follow, by reference or by explicit link
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from .errors import CannotChangeFieldError
from .fields import UNSET, Opt, coerce


class Lifecycle(str, Enum):
    """How divergence between desired and actual state is treated."""

    # Resource must exist and match; divergence is an error
    EXISTS_AND_VALIDATES = "ExistsAndValidates"
    # Resource must exist; divergence is reported but not corrected
    EXISTS_AND_WARN_IF_CHANGES = "ExistsAndWarnIfChanges"
    # Divergence is corrected by create/update calls
    SYNC = "Sync"


class ChangeType(str, Enum):
    """Per-field change classification."""

    UNCHANGED = "Unchanged"
    NEW = "New"
    MODIFIED = "Modified"


@dataclass(frozen=True)
class FieldChange:
    """Classification of a single field between actual and expected."""

    field: str
    change_type: ChangeType
    before: Opt[Any] = UNSET
    after: Opt[Any] = UNSET

    @property
    def changed(self) -> bool:
        return self.change_type != ChangeType.UNCHANGED


def _holds_value(value: Opt[Any]) -> bool:
    """SET and not an empty collection.

    Providers do not distinguish an empty list or mapping from no value,
    so both read back the same way.
    """
    if not value.is_set:
        return False
    return not (isinstance(value.value, (list, tuple, dict, set, frozenset)) and not value.value)


def classify(before: Opt[Any], after: Opt[Any]) -> ChangeType:
    """Classify the move from an actual field value to an expected one."""
    if after.is_unset:
        return ChangeType.UNCHANGED
    if not _holds_value(after):
        return ChangeType.MODIFIED if _holds_value(before) else ChangeType.UNCHANGED
    if before == after:
        return ChangeType.UNCHANGED
    if not before.is_set:
        return ChangeType.NEW
    return ChangeType.MODIFIED


@dataclass
class ChangeSet:
    """Delta between actual (observed) and expected (desired) task state."""

    fields: dict[str, FieldChange] = field(default_factory=dict)

    @classmethod
    def compute(cls, actual: ResourceTask | None, expected: ResourceTask) -> ChangeSet:
        """Compare every managed field of expected against actual.

        An absent actual behaves as a task with every field UNSET.
        """
        changes = cls()
        for name in expected.managed_fields:
            after = getattr(expected, name)
            before = getattr(actual, name) if actual is not None else UNSET
            changes.fields[name] = FieldChange(
                field=name,
                change_type=classify(before, after),
                before=before,
                after=after,
            )
        return changes

    @property
    def changed(self) -> dict[str, FieldChange]:
        """Only the fields that differ."""
        return {name: change for name, change in self.fields.items() if change.changed}

    @property
    def is_empty(self) -> bool:
        return not self.changed

    def __contains__(self, name: object) -> bool:
        return name in self.changed

    def __iter__(self) -> Iterator[FieldChange]:
        return iter(self.changed.values())

    def __len__(self) -> int:
        return len(self.changed)

    def summary(self) -> dict[str, str]:
        """Field name to change type, changed fields only."""
        return {name: change.change_type.value for name, change in self.changed.items()}


@dataclass(eq=False)
class ResourceTask:
    """Desired state of one infrastructure resource.

    Tasks compare by identity: two tasks describing the same values are
    still different graph nodes.

    Subclasses declare:
        kind: Adapter selector (e.g. "loadbalancer").
        managed_fields: Fields compared by the diff, in order.
        required_fields: Fields that must be SET when creating.
        immutable_fields: Fields that cannot change once the resource exists.
        transient_fields: Provider-assigned fields, populated from responses.
    """

    kind: ClassVar[str] = "resource"
    managed_fields: ClassVar[tuple[str, ...]] = ("id", "name")
    required_fields: ClassVar[tuple[str, ...]] = ("name",)
    immutable_fields: ClassVar[tuple[str, ...]] = ("id", "name")
    transient_fields: ClassVar[tuple[str, ...]] = ()

    name: Opt[str] = UNSET
    id: Opt[str] = UNSET
    lifecycle: Lifecycle = Lifecycle.SYNC
    depends_on: list[ResourceTask] = field(default_factory=list)

    def __post_init__(self) -> None:
        for name in self.managed_fields + self.transient_fields:
            setattr(self, name, coerce(getattr(self, name)))

    def references(self) -> Iterable[ResourceTask]:
        """Tasks this task points at through its own fields."""
        return ()

    def dependencies(self, tasks: Mapping[str, ResourceTask]) -> Iterable[ResourceTask]:
        """Tasks that must reach a terminal state before this one starts.

        Args:
            tasks: The whole collection, for kinds that depend on
                other tasks by type rather than by reference.
        """
        yield from self.depends_on
        yield from self.references()

    def resolve_references(self) -> None:
        """Copy identifiers of referenced tasks into derived fields."""
        return None

    def assign_id(self, value: str) -> None:
        """Record the provider identifier.

        Raises:
            CannotChangeFieldError: If a different identifier is already set.
        """
        if self.id.is_set and self.id.value != value:
            raise CannotChangeFieldError("id")
        self.id = Opt.of(value)

    def display_name(self) -> str:
        return str(self.name.get(self.id.get("<unnamed>")))

    def __repr__(self) -> str:
        values = ", ".join(
            f"{name}={getattr(self, name)!r}"
            for name in self.managed_fields + self.transient_fields
            if not getattr(self, name).is_unset
        )
        return f"{type(self).__name__}({values})"
