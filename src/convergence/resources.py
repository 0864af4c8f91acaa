"""Concrete resource kinds.

Each kind bundles:
1. A ResourceTask subclass declaring its fields and references
2. A pydantic record model validating what the provider returns
3. A narrow adapter protocol documenting the record shapes it exchanges
4. A TaskReconciler subclass registered for the task type

Derived fields (network_id, vip_subnet_id) are filled from referenced
tasks just before Find, once those tasks have been reconciled.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Annotated, Any, ClassVar, Protocol

from pydantic import BaseModel, Field, field_validator

from .errors import RequiredFieldError
from .fields import UNSET, Opt
from .provider import Record, ResourceAdapter
from .reconciler import TaskReconciler, reconciles
from .tasks import ChangeSet, ResourceTask


def _resolve(reference: ResourceTask | None, derived_field: str) -> Opt[str] | None:
    """Identifier of a referenced task, or None when there is no reference."""
    if reference is None:
        return None
    if not reference.id.is_set:
        raise RequiredFieldError(derived_field)
    return Opt.of(reference.id.value)


# =============================================================================
# Record Models
# =============================================================================


class BaseRecord(BaseModel):
    """Fields every provider record carries."""

    model_config = {"extra": "ignore"}

    id: Annotated[str, Field(min_length=1)]
    name: str


class NetworkRecord(BaseRecord):
    """Network as returned by the provider."""

    admin_state_up: bool | None = None


class SubnetRecord(BaseRecord):
    """Subnet as returned by the provider."""

    network_id: Annotated[str, Field(min_length=1)]
    cidr: str
    dns_servers: list[str] | None = None

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        try:
            ipaddress.ip_network(v, strict=False)
        except ValueError as e:
            raise ValueError(f"cidr is not a valid network: {v}") from e
        return v

    @field_validator("dns_servers")
    @classmethod
    def empty_as_none(cls, v: list[str] | None) -> list[str] | None:
        return v or None


class LoadBalancerRecord(BaseRecord):
    """Load balancer as returned by the provider."""

    vip_subnet_id: Annotated[str, Field(min_length=1)]
    vip_port_id: str | None = None
    provisioning_status: str | None = None


class VolumeRecord(BaseRecord):
    """Block storage volume as returned by the provider."""

    size_gb: Annotated[int, Field(ge=1)]
    volume_type: str | None = None
    availability_zone: str | None = None
    tags: dict[str, str] | None = None

    @field_validator("tags")
    @classmethod
    def empty_as_none(cls, v: dict[str, str] | None) -> dict[str, str] | None:
        return v or None


# =============================================================================
# Adapter Protocols
# =============================================================================


class NetworkAdapter(ResourceAdapter, Protocol):
    """Network operations.

    create spec: name, admin_state_up. update delta: admin_state_up.
    """


class SubnetAdapter(ResourceAdapter, Protocol):
    """Subnet operations.

    create spec: name, network_id, cidr, dns_servers. update delta: dns_servers.
    """


class LoadBalancerAdapter(ResourceAdapter, Protocol):
    """Load balancer operations.

    create spec: name, vip_subnet_id. The response carries the VIP port
    allocated on the subnet as vip_port_id.
    """


class VolumeAdapter(ResourceAdapter, Protocol):
    """Volume operations.

    create spec: name, size_gb, volume_type, availability_zone, tags.
    update delta: tags only (metadata).
    """

    def update(self, resource_id: str, delta: Record) -> Record:
        """Replace the volume's tags with delta["tags"]."""
        ...


# =============================================================================
# Network
# =============================================================================


@dataclass(eq=False, repr=False)
class Network(ResourceTask):
    """Virtual network."""

    kind: ClassVar[str] = "network"
    managed_fields: ClassVar[tuple[str, ...]] = ("id", "name", "admin_state_up")
    required_fields: ClassVar[tuple[str, ...]] = ("name",)
    immutable_fields: ClassVar[tuple[str, ...]] = ("id", "name")

    admin_state_up: Opt[bool] = UNSET


@reconciles(Network)
class NetworkReconciler(TaskReconciler[Network]):
    record_model = NetworkRecord


# =============================================================================
# Subnet
# =============================================================================


@dataclass(eq=False, repr=False)
class Subnet(ResourceTask):
    """IP subnet inside a network."""

    kind: ClassVar[str] = "subnet"
    managed_fields: ClassVar[tuple[str, ...]] = ("id", "name", "network_id", "cidr", "dns_servers")
    required_fields: ClassVar[tuple[str, ...]] = ("name", "network_id", "cidr")
    immutable_fields: ClassVar[tuple[str, ...]] = ("id", "name", "network_id", "cidr")

    network_id: Opt[str] = UNSET
    cidr: Opt[str] = UNSET
    dns_servers: Opt[list[str]] = UNSET
    network: Network | None = None

    def references(self) -> Iterable[ResourceTask]:
        if self.network is not None:
            yield self.network

    def resolve_references(self) -> None:
        network_id = _resolve(self.network, "network_id")
        if network_id is not None:
            self.network_id = network_id


@reconciles(Subnet)
class SubnetReconciler(TaskReconciler[Subnet]):
    record_model = SubnetRecord


# =============================================================================
# Load Balancer
# =============================================================================


@dataclass(eq=False, repr=False)
class LoadBalancer(ResourceTask):
    """Load balancer with a virtual IP on a subnet.

    The load balancer follows every subnet in the run, not only the one
    carrying its VIP, since members may sit on any of them.
    """

    kind: ClassVar[str] = "loadbalancer"
    managed_fields: ClassVar[tuple[str, ...]] = ("id", "name", "vip_subnet_id")
    required_fields: ClassVar[tuple[str, ...]] = ("name", "vip_subnet_id")
    immutable_fields: ClassVar[tuple[str, ...]] = ("id", "name", "vip_subnet_id")
    transient_fields: ClassVar[tuple[str, ...]] = ("vip_port_id",)

    vip_subnet_id: Opt[str] = UNSET
    vip_port_id: Opt[str] = UNSET
    subnet: Subnet | None = None

    def references(self) -> Iterable[ResourceTask]:
        if self.subnet is not None:
            yield self.subnet

    def dependencies(self, tasks: Mapping[str, ResourceTask]) -> Iterable[ResourceTask]:
        yield from super().dependencies(tasks)
        yield from (task for task in tasks.values() if isinstance(task, Subnet))

    def resolve_references(self) -> None:
        vip_subnet_id = _resolve(self.subnet, "vip_subnet_id")
        if vip_subnet_id is not None:
            self.vip_subnet_id = vip_subnet_id


@reconciles(LoadBalancer)
class LoadBalancerReconciler(TaskReconciler[LoadBalancer]):
    record_model = LoadBalancerRecord


# =============================================================================
# Volume
# =============================================================================


@dataclass(eq=False, repr=False)
class Volume(ResourceTask):
    """Block storage volume."""

    kind: ClassVar[str] = "volume"
    managed_fields: ClassVar[tuple[str, ...]] = (
        "id",
        "name",
        "size_gb",
        "volume_type",
        "availability_zone",
        "tags",
    )
    required_fields: ClassVar[tuple[str, ...]] = ("name", "size_gb")
    immutable_fields: ClassVar[tuple[str, ...]] = (
        "id",
        "name",
        "size_gb",
        "volume_type",
        "availability_zone",
    )

    size_gb: Opt[int] = UNSET
    volume_type: Opt[str] = UNSET
    availability_zone: Opt[str] = UNSET
    tags: Opt[dict[str, str]] = UNSET


@reconciles(Volume)
class VolumeReconciler(TaskReconciler[Volume]):
    record_model = VolumeRecord

    def render_update(self, actual: Volume, expected: Volume, changes: ChangeSet) -> dict[str, Any]:
        """Volumes only accept metadata updates: the full tag set."""
        return {"tags": expected.tags.get() or {}}
