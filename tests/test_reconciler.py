"""Tests for Find, Diff and Apply on a single task."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

import pytest

from convergence.backoff import READ_BACKOFF, WRITE_BACKOFF, RetryExecutor
from convergence.errors import (
    CannotChangeFieldError,
    LifecycleViolationError,
    ProviderFatalError,
    RequiredFieldError,
    RetryExhaustedError,
    TransientProviderError,
)
from convergence.reconciler import (
    ApplyAction,
    TaskOutcome,
    TaskReconciler,
    TaskState,
    reconciler_for,
)
from convergence.resources import Network, NetworkReconciler, Volume, VolumeReconciler
from convergence.tasks import Lifecycle, ResourceTask
from provider_mock import AsyncMockAdapter, MockAdapter, MockProviderState


@pytest.fixture
def state() -> MockProviderState:
    return MockProviderState()


@pytest.fixture
def networks(state: MockProviderState, executor: RetryExecutor) -> NetworkReconciler:
    return NetworkReconciler(MockAdapter(state, "network"), executor=executor)


@pytest.fixture
def volumes(state: MockProviderState, executor: RetryExecutor) -> VolumeReconciler:
    return VolumeReconciler(MockAdapter(state, "volume"), executor=executor)


class TestTaskOutcome:
    """Tests for TaskOutcome."""

    def test_defaults(self) -> None:
        outcome = TaskOutcome(name="net", kind="network")
        assert outcome.state == TaskState.PENDING
        assert not outcome.success
        assert outcome.duration_seconds == 0.0

    def test_terminal_states(self) -> None:
        assert TaskState.APPLIED.terminal
        assert TaskState.SKIPPED.terminal
        assert TaskState.FAILED.terminal
        assert not TaskState.DIFFED.terminal

    def test_to_dict(self) -> None:
        outcome = TaskOutcome(name="net", kind="network")
        outcome.fail(RequiredFieldError("name"))

        data = outcome.to_dict()

        assert data["state"] == "Failed"
        assert data["error"] == "Field is required: name"
        assert data["error_type"] == "RequiredFieldError"
        assert "id" not in data


class TestCreate:
    """Tests for resources that do not exist yet."""

    @pytest.mark.asyncio
    async def test_creates_and_populates_id(
        self, networks: NetworkReconciler, state: MockProviderState
    ) -> None:
        task = Network(name="net", admin_state_up=True)

        outcome = await networks.reconcile("net", task)

        assert outcome.state == TaskState.APPLIED
        assert outcome.action == ApplyAction.CREATE
        assert outcome.resource_id == "network-1"
        assert outcome.changes == {"name": "New", "admin_state_up": "New"}
        assert task.id.value == "network-1"

        resource = state.get_resource("network-1")
        assert resource is not None
        assert resource.attributes == {"admin_state_up": True}

    @pytest.mark.asyncio
    async def test_create_spec_omits_unset_fields(
        self, volumes: VolumeReconciler, state: MockProviderState
    ) -> None:
        await volumes.reconcile("data", Volume(name="data", size_gb=20))

        assert state.get_resource("volume-1").attributes == {"size_gb": 20}

    @pytest.mark.asyncio
    async def test_missing_name_fails_before_any_call(
        self, volumes: VolumeReconciler, state: MockProviderState
    ) -> None:
        """Test an unset name is RequiredField with no provider call at all."""
        outcome = await volumes.reconcile("data", Volume(size_gb=20))

        assert outcome.state == TaskState.FAILED
        assert isinstance(outcome.error, RequiredFieldError)
        assert outcome.error.field == "name"
        assert state.call_count() == 0

    @pytest.mark.asyncio
    async def test_missing_required_field_fails_before_create(
        self, volumes: VolumeReconciler, state: MockProviderState
    ) -> None:
        outcome = await volumes.reconcile("data", Volume(name="data"))

        assert isinstance(outcome.error, RequiredFieldError)
        assert outcome.error.field == "size_gb"
        assert state.call_count("volume", "find") == 1
        assert state.write_count() == 0

    @pytest.mark.asyncio
    async def test_empty_string_satisfies_required(
        self, networks: NetworkReconciler, state: MockProviderState
    ) -> None:
        """Test a field set to its element default is not missing."""
        outcome = await networks.reconcile("net", Network(name=""))

        assert outcome.state == TaskState.APPLIED


class TestExisting:
    """Tests for resources that already exist."""

    @pytest.mark.asyncio
    async def test_no_changes_is_skipped(
        self, volumes: VolumeReconciler, state: MockProviderState
    ) -> None:
        """Test idempotence: a matching resource makes no write call."""
        state.add_resource("volume", "data", resource_id="vol-9", size_gb=20)
        task = Volume(name="data", size_gb=20)

        outcome = await volumes.reconcile("data", task)

        assert outcome.state == TaskState.SKIPPED
        assert outcome.action == ApplyAction.NONE
        assert outcome.changes == {}
        assert outcome.resource_id == "vol-9"
        assert task.id.value == "vol-9"
        assert state.write_count() == 0

    @pytest.mark.asyncio
    async def test_update_carries_only_changed_fields(
        self, volumes: VolumeReconciler, state: MockProviderState
    ) -> None:
        state.add_resource("volume", "data", resource_id="vol-9", size_gb=20, tags={"env": "dev"})
        task = Volume(name="data", size_gb=20, tags={"env": "prod"})

        outcome = await volumes.reconcile("data", task)

        assert outcome.state == TaskState.APPLIED
        assert outcome.action == ApplyAction.UPDATE
        assert outcome.changes == {"tags": "Modified"}
        assert state.call_count("volume", "update") == 1
        assert state.get_resource("vol-9").attributes["tags"] == {"env": "prod"}

    @pytest.mark.asyncio
    async def test_immutable_identifier(
        self, networks: NetworkReconciler, state: MockProviderState
    ) -> None:
        """Test a task naming an unknown identifier is rejected before any write."""
        state.add_resource("network", "net", resource_id="id-1")
        task = Network(name="net", id="id-2")

        outcome = await networks.reconcile("net", task)

        assert outcome.state == TaskState.FAILED
        assert isinstance(outcome.error, CannotChangeFieldError)
        assert outcome.error.field == "id"
        assert state.write_count() == 0
        assert state.resource_count == 1

    @pytest.mark.asyncio
    async def test_identifier_of_deleted_resource(
        self, networks: NetworkReconciler, state: MockProviderState
    ) -> None:
        """Test a task whose resource disappeared is not recreated."""
        outcome = await networks.reconcile("net", Network(name="net", id="network-9"))

        assert outcome.state == TaskState.FAILED
        assert isinstance(outcome.error, CannotChangeFieldError)
        assert state.calls("network", "find")[0].target == "id=network-9"
        assert state.write_count() == 0
        assert state.resource_count == 0

    @pytest.mark.asyncio
    async def test_immutable_field(
        self, volumes: VolumeReconciler, state: MockProviderState
    ) -> None:
        state.add_resource("volume", "data", resource_id="vol-9", size_gb=20)

        outcome = await volumes.reconcile("data", Volume(name="data", size_gb=40))

        assert isinstance(outcome.error, CannotChangeFieldError)
        assert outcome.error.field == "size_gb"
        assert state.write_count() == 0

    @pytest.mark.asyncio
    async def test_find_by_id(self, networks: NetworkReconciler, state: MockProviderState) -> None:
        state.add_resource("network", "renamed-elsewhere", resource_id="id-1")

        outcome = await networks.reconcile("net", Network(id="id-1"))

        assert outcome.state == TaskState.SKIPPED
        assert state.calls("network", "find")[0].target == "id=id-1"


class TestLifecycle:
    """Tests for lifecycle policies."""

    @pytest.mark.asyncio
    async def test_exists_policies_require_resource(
        self, networks: NetworkReconciler, state: MockProviderState
    ) -> None:
        for lifecycle in (Lifecycle.EXISTS_AND_VALIDATES, Lifecycle.EXISTS_AND_WARN_IF_CHANGES):
            outcome = await networks.reconcile("net", Network(name="net", lifecycle=lifecycle))

            assert isinstance(outcome.error, LifecycleViolationError)
            assert "was not found" in str(outcome.error)
        assert state.write_count() == 0

    @pytest.mark.asyncio
    async def test_validates_rejects_drift(
        self, volumes: VolumeReconciler, state: MockProviderState
    ) -> None:
        state.add_resource("volume", "data", size_gb=20, tags={"env": "dev"})
        task = Volume(
            name="data", size_gb=20, tags={"env": "prod"}, lifecycle=Lifecycle.EXISTS_AND_VALIDATES
        )

        outcome = await volumes.reconcile("data", task)

        assert outcome.state == TaskState.FAILED
        assert isinstance(outcome.error, LifecycleViolationError)
        assert state.write_count() == 0

    @pytest.mark.asyncio
    async def test_validates_accepts_match(
        self, volumes: VolumeReconciler, state: MockProviderState
    ) -> None:
        state.add_resource("volume", "data", resource_id="vol-9", size_gb=20)
        task = Volume(name="data", size_gb=20, lifecycle=Lifecycle.EXISTS_AND_VALIDATES)

        outcome = await volumes.reconcile("data", task)

        assert outcome.state == TaskState.SKIPPED
        assert task.id.value == "vol-9"

    @pytest.mark.asyncio
    async def test_warn_if_changes_skips_write(
        self, volumes: VolumeReconciler, state: MockProviderState
    ) -> None:
        state.add_resource("volume", "data", resource_id="vol-9", size_gb=20, tags={"env": "dev"})
        task = Volume(
            name="data",
            size_gb=20,
            tags={"env": "prod"},
            lifecycle=Lifecycle.EXISTS_AND_WARN_IF_CHANGES,
        )

        outcome = await volumes.reconcile("data", task)

        assert outcome.state == TaskState.SKIPPED
        assert len(outcome.warnings) == 1
        assert "will not be changed" in outcome.warnings[0]
        assert task.id.value == "vol-9"
        assert state.write_count() == 0


class TestProviderFailures:
    """Tests for retries and provider errors."""

    @pytest.mark.asyncio
    async def test_transient_create_is_retried(
        self, networks: NetworkReconciler, state: MockProviderState, sleeper
    ) -> None:
        state.inject_transient("network", "create", count=2)

        outcome = await networks.reconcile("net", Network(name="net"))

        assert outcome.state == TaskState.APPLIED
        assert state.call_count("network", "create") == 3
        assert len(sleeper.delays) == 2

    @pytest.mark.asyncio
    async def test_find_exhausts_read_budget(
        self, networks: NetworkReconciler, state: MockProviderState
    ) -> None:
        state.inject_transient("network", "find", count=100)

        outcome = await networks.reconcile("net", Network(name="net"))

        assert isinstance(outcome.error, RetryExhaustedError)
        assert state.call_count("network", "find") == READ_BACKOFF.max_attempts
        assert state.write_count() == 0

    @pytest.mark.asyncio
    async def test_create_exhausts_write_budget(
        self, networks: NetworkReconciler, state: MockProviderState
    ) -> None:
        state.inject_transient("network", "create", count=100)

        outcome = await networks.reconcile("net", Network(name="net"))

        assert isinstance(outcome.error, RetryExhaustedError)
        assert state.call_count("network", "create") == 5

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(
        self, networks: NetworkReconciler, state: MockProviderState, sleeper
    ) -> None:
        state.inject_fatal("network", "create", "Permission denied")

        outcome = await networks.reconcile("net", Network(name="net"))

        assert isinstance(outcome.error, ProviderFatalError)
        assert "Permission denied" in str(outcome.error)
        assert state.call_count("network", "create") == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_malformed_record(
        self, networks: NetworkReconciler, state: MockProviderState
    ) -> None:
        state.inject_malformed("network", "create")

        outcome = await networks.reconcile("net", Network(name="net"))

        assert isinstance(outcome.error, ProviderFatalError)
        assert "Malformed network record" in str(outcome.error)

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_task(self, executor: RetryExecutor) -> None:
        class BrokenAdapter(MockAdapter):
            def find(self, key):  # type: ignore[no-untyped-def]
                raise RuntimeError("boom")

        reconciler = NetworkReconciler(
            BrokenAdapter(MockProviderState(), "network"), executor=executor
        )

        outcome = await reconciler.reconcile("net", Network(name="net"))

        assert outcome.state == TaskState.FAILED
        assert isinstance(outcome.error, RuntimeError)


class TestAsyncAdapters:
    """Tests for coroutine adapters and call timeouts."""

    @pytest.mark.asyncio
    async def test_coroutine_adapter(
        self, state: MockProviderState, executor: RetryExecutor
    ) -> None:
        reconciler = NetworkReconciler(AsyncMockAdapter(state, "network"), executor=executor)

        outcome = await reconciler.reconcile("net", Network(name="net"))

        assert outcome.state == TaskState.APPLIED
        assert state.call_count("network", "create") == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_transient(
        self, state: MockProviderState, executor: RetryExecutor
    ) -> None:
        reconciler = NetworkReconciler(
            AsyncMockAdapter(state, "network", delay_seconds=5.0),
            executor=executor,
            read_backoff=READ_BACKOFF.without_jitter(),
            call_timeout_seconds=0.01,
        )

        outcome = await reconciler.reconcile("net", Network(name="net"))

        assert isinstance(outcome.error, RetryExhaustedError)
        assert isinstance(outcome.error.last_error, TransientProviderError)
        assert "timed out" in str(outcome.error)
        # The adapter never got past its delay, so nothing reached the state.
        assert state.call_count() == 0

    @pytest.mark.asyncio
    async def test_create_timeout_is_not_retried(
        self, state: MockProviderState, executor: RetryExecutor
    ) -> None:
        """Test a timed-out sync create is never issued a second time."""

        class SlowCreateAdapter(MockAdapter):
            def create(self, spec: dict[str, Any]) -> dict[str, Any]:
                time.sleep(0.5)
                return super().create(spec)

        reconciler = NetworkReconciler(
            SlowCreateAdapter(state, "network"),
            executor=executor,
            write_backoff=WRITE_BACKOFF.without_jitter(),
            call_timeout_seconds=0.1,
        )

        outcome = await reconciler.reconcile("net", Network(name="net"))
        # Let the abandoned worker thread finish its create.
        await asyncio.sleep(0.7)

        assert outcome.state == TaskState.FAILED
        assert isinstance(outcome.error, ProviderFatalError)
        assert "outcome unknown" in str(outcome.error)
        assert state.call_count("network", "create") == 1
        assert state.resource_count == 1


class TestRegistry:
    """Tests for reconciler lookup."""

    def test_registered_kinds(self) -> None:
        assert reconciler_for(Network) is NetworkReconciler
        assert reconciler_for(Volume) is VolumeReconciler

    def test_subclass_uses_base_reconciler(self) -> None:
        @dataclass(eq=False, repr=False)
        class TaggedNetwork(Network):
            pass

        assert reconciler_for(TaggedNetwork) is NetworkReconciler

    def test_unregistered_kind(self) -> None:
        @dataclass(eq=False, repr=False)
        class Unknown(ResourceTask):
            pass

        with pytest.raises(LookupError):
            reconciler_for(Unknown)

    def test_reconciler_binds_task_type(self) -> None:
        assert NetworkReconciler.task_type is Network
        assert issubclass(NetworkReconciler, TaskReconciler)
