"""Tests for the generic CRUD orchestrator, driven through route tables."""

from __future__ import annotations

import pytest

from azure_mock import FakeAzure, ScriptedOperation, fast_config, http_error, never_finishes, running
from provisioner.config import TimeoutsConfig
from provisioner.errors import (
    AlreadyExistsError,
    ImmutableFieldDriftError,
    MalformedResourceIdError,
    OperationTimeoutError,
    ProvisionerError,
    RemoteOperationError,
)
from provisioner.network_resources import RouteTableDescriptor
from provisioner.orchestrator import (
    LifecycleState,
    PlanAction,
    ResourceOrchestrator,
    ResourceState,
)

DESIRED = {
    "name": "rt-app",
    "resource_group_name": "rg-test",
    "location": "local",
    "route": [
        {
            "name": "default",
            "address_prefix": "0.0.0.0/0",
            "next_hop_type": "VirtualAppliance",
            "next_hop_in_ip_address": "10.0.0.4",
        }
    ],
    "tags": {"env": "dev"},
}


@pytest.fixture
def azure() -> FakeAzure:
    return FakeAzure()


@pytest.fixture
def orchestrator(azure: FakeAzure) -> ResourceOrchestrator:
    return ResourceOrchestrator(azure.ctx, RouteTableDescriptor())


def route_table_id(azure: FakeAzure) -> str:
    return azure.resource_id("routeTables", "rt-app")


def seed_route_table(azure: FakeAzure, location: str = "local") -> str:
    resource_id = route_table_id(azure)
    azure.arm.seed(
        resource_id,
        {
            "location": location,
            "tags": {"env": "dev"},
            "properties": {
                "routes": [
                    {
                        "name": "default",
                        "properties": {
                            "addressPrefix": "0.0.0.0/0",
                            "nextHopType": "VirtualAppliance",
                            "nextHopIpAddress": "10.0.0.4",
                        },
                    }
                ]
            },
        },
    )
    return resource_id


class TestCreate:
    """Tests for create."""

    @pytest.mark.asyncio
    async def test_creates_and_records_id(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        state = await orchestrator.create(DESIRED)

        assert state.id == route_table_id(azure)
        assert state.lifecycle == LifecycleState.RECONCILED
        assert state.attributes["route"] == DESIRED["route"]
        assert azure.arm.calls == [
            ("get", state.id),
            ("put", state.id),
            ("get", state.id),
        ]
        body = azure.arm.put_bodies[0]
        assert body["properties"]["routes"][0]["properties"]["nextHopIpAddress"] == "10.0.0.4"

    @pytest.mark.asyncio
    async def test_existing_resource_is_already_exists(
        self, azure: FakeAzure, orchestrator: ResourceOrchestrator
    ) -> None:
        resource_id = seed_route_table(azure)

        with pytest.raises(AlreadyExistsError) as exc_info:
            await orchestrator.create(DESIRED)

        assert exc_info.value.resource_id == resource_id
        assert "imported" in str(exc_info.value)
        assert azure.arm.count("put") == 0

    @pytest.mark.asyncio
    async def test_import_existing_adopts_without_write(
        self, azure: FakeAzure, orchestrator: ResourceOrchestrator
    ) -> None:
        resource_id = seed_route_table(azure)

        state = await orchestrator.create(DESIRED, import_existing=True)

        assert state.id == resource_id
        assert state.lifecycle == LifecycleState.RECONCILED
        assert azure.arm.count("put") == 0

    @pytest.mark.asyncio
    async def test_import_existing_converges_drift(
        self, azure: FakeAzure, orchestrator: ResourceOrchestrator
    ) -> None:
        seed_route_table(azure)

        state = await orchestrator.create({**DESIRED, "tags": {"env": "prod"}}, import_existing=True)

        assert azure.arm.count("put") == 1
        assert state.attributes["tags"] == {"env": "prod"}

    @pytest.mark.asyncio
    async def test_remote_failure(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        azure.arm.operations.append(ScriptedOperation(running(1, then="Failed")))

        with pytest.raises(RemoteOperationError) as exc_info:
            await orchestrator.create(DESIRED)

        assert not exc_info.value.outcome_unknown

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(
        self, azure: FakeAzure, orchestrator: ResourceOrchestrator
    ) -> None:
        azure.arm.fail_next("put", http_error(429, "TooManyRequests"))

        state = await orchestrator.create(DESIRED)

        assert state.lifecycle == LifecycleState.RECONCILED
        assert azure.arm.count("put") == 2

    @pytest.mark.asyncio
    async def test_rejected_request_is_remote_failure(
        self, azure: FakeAzure, orchestrator: ResourceOrchestrator
    ) -> None:
        azure.arm.fail_next("put", http_error(400, "InvalidRoute"))

        with pytest.raises(RemoteOperationError) as exc_info:
            await orchestrator.create(DESIRED)

        assert exc_info.value.status_code == 400
        assert "InvalidRoute" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_leaves_creating_without_id(self) -> None:
        azure = FakeAzure(
            fast_config(timeouts=TimeoutsConfig(create_seconds=0.1), lro_poll_interval_seconds=0.01)
        )
        orchestrator = ResourceOrchestrator(azure.ctx, RouteTableDescriptor())
        azure.arm.operations.append(never_finishes())
        state = ResourceState(resource_type=RouteTableDescriptor.type_name)

        with pytest.raises(OperationTimeoutError) as exc_info:
            await orchestrator.create(DESIRED, state=state)

        assert exc_info.value.outcome_unknown
        assert state.id is None
        assert state.lifecycle == LifecycleState.CREATING


class TestRead:
    """Tests for read."""

    @pytest.mark.asyncio
    async def test_refreshes_attributes(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        state = await orchestrator.create(DESIRED)
        azure.arm.stored(state.id)["tags"] = {"env": "changed"}

        await orchestrator.read(state)

        assert state.attributes["tags"] == {"env": "changed"}

    @pytest.mark.asyncio
    async def test_not_found_clears_id_without_error(
        self, azure: FakeAzure, orchestrator: ResourceOrchestrator
    ) -> None:
        state = await orchestrator.create(DESIRED)
        azure.arm.remove(state.id)

        result = await orchestrator.read(state)

        assert result.id is None
        assert result.lifecycle == LifecycleState.GONE
        assert not result.exists

    @pytest.mark.asyncio
    async def test_raw_404_is_not_found(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        state = await orchestrator.create(DESIRED)
        azure.arm.fail_next("get", http_error(404, "NotFound"))

        await orchestrator.read(state)

        assert state.lifecycle == LifecycleState.GONE

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        state = await orchestrator.create(DESIRED)
        azure.arm.fail_next("get", http_error(403, "AuthorizationFailed"))

        with pytest.raises(RemoteOperationError):
            await orchestrator.read(state)

        assert state.id is not None


class TestUpdate:
    """Tests for update."""

    @pytest.mark.asyncio
    async def test_patches_changed_attributes(
        self, azure: FakeAzure, orchestrator: ResourceOrchestrator
    ) -> None:
        state = await orchestrator.create(DESIRED)

        await orchestrator.update(state, {**DESIRED, "tags": {"env": "prod"}})

        assert state.lifecycle == LifecycleState.RECONCILED
        assert azure.arm.put_bodies[-1]["tags"] == {"env": "prod"}
        assert azure.arm.put_bodies[-1]["properties"]["routes"][0]["name"] == "default"

    @pytest.mark.asyncio
    async def test_no_change_sends_nothing(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        state = await orchestrator.create(DESIRED)

        await orchestrator.update(state, {**DESIRED, "location": "LOCAL"})

        assert azure.arm.count("put") == 1

    @pytest.mark.asyncio
    async def test_immutable_drift_sends_nothing(
        self, azure: FakeAzure, orchestrator: ResourceOrchestrator
    ) -> None:
        state = await orchestrator.create(DESIRED)

        with pytest.raises(ImmutableFieldDriftError) as exc_info:
            await orchestrator.update(state, {**DESIRED, "location": "westus", "tags": {}})

        assert [d.attribute for d in exc_info.value.drifts] == ["location"]
        assert azure.arm.count("put") == 1

    @pytest.mark.asyncio
    async def test_gone_before_update(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        state = await orchestrator.create(DESIRED)
        azure.arm.remove(state.id)

        await orchestrator.update(state, {**DESIRED, "tags": {"env": "prod"}})

        assert state.lifecycle == LifecycleState.GONE
        assert azure.arm.count("put") == 1

    @pytest.mark.asyncio
    async def test_timeout_keeps_id(self) -> None:
        azure = FakeAzure(
            fast_config(timeouts=TimeoutsConfig(update_seconds=0.1), lro_poll_interval_seconds=0.01)
        )
        orchestrator = ResourceOrchestrator(azure.ctx, RouteTableDescriptor())
        state = await orchestrator.create(DESIRED)
        resource_id = state.id
        azure.arm.operations.append(never_finishes())

        with pytest.raises(OperationTimeoutError):
            await orchestrator.update(state, {**DESIRED, "tags": {"env": "prod"}})

        assert state.id == resource_id
        assert state.lifecycle == LifecycleState.UPDATING


class TestDelete:
    """Tests for delete."""

    @pytest.mark.asyncio
    async def test_deletes(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        state = await orchestrator.create(DESIRED)
        resource_id = state.id

        await orchestrator.delete(state)

        assert state.id is None
        assert state.lifecycle == LifecycleState.GONE
        assert azure.arm.stored(resource_id) is None

    @pytest.mark.asyncio
    async def test_idempotent(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        state = await orchestrator.create(DESIRED)

        await orchestrator.delete(state)
        await orchestrator.delete(state)

        assert azure.arm.count("delete") == 1
        assert state.lifecycle == LifecycleState.GONE

    @pytest.mark.asyncio
    async def test_already_gone_remotely(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        state = await orchestrator.create(DESIRED)
        azure.arm.remove(state.id)

        await orchestrator.delete(state)

        assert state.lifecycle == LifecycleState.GONE

    @pytest.mark.asyncio
    async def test_timeout_keeps_id(self) -> None:
        azure = FakeAzure(
            fast_config(timeouts=TimeoutsConfig(delete_seconds=0.1), lro_poll_interval_seconds=0.01)
        )
        orchestrator = ResourceOrchestrator(azure.ctx, RouteTableDescriptor())
        state = await orchestrator.create(DESIRED)
        azure.arm.operations.append(never_finishes())

        with pytest.raises(OperationTimeoutError):
            await orchestrator.delete(state)

        assert state.id is not None
        assert state.lifecycle == LifecycleState.DELETING


class TestReconcile:
    """Tests for reconcile."""

    @pytest.mark.asyncio
    async def test_recreates_gone_resource(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        state = await orchestrator.create(DESIRED)
        azure.arm.remove(state.id)

        await orchestrator.reconcile(state, DESIRED)

        assert state.lifecycle == LifecycleState.RECONCILED
        assert azure.arm.count("put") == 2

    @pytest.mark.asyncio
    async def test_unknown_create_outcome_is_adopted(self) -> None:
        azure = FakeAzure(
            fast_config(timeouts=TimeoutsConfig(create_seconds=0.1), lro_poll_interval_seconds=0.01)
        )
        orchestrator = ResourceOrchestrator(azure.ctx, RouteTableDescriptor())
        azure.arm.operations.append(never_finishes())
        state = ResourceState(resource_type=RouteTableDescriptor.type_name)
        with pytest.raises(OperationTimeoutError):
            await orchestrator.create(DESIRED, state=state)

        # The remote create went through after all
        await orchestrator.reconcile(state, DESIRED)

        assert state.id == route_table_id(azure)
        assert state.lifecycle == LifecycleState.RECONCILED

    @pytest.mark.asyncio
    async def test_unmanaged_existing_resource_is_already_exists(
        self, azure: FakeAzure, orchestrator: ResourceOrchestrator
    ) -> None:
        seed_route_table(azure)

        with pytest.raises(AlreadyExistsError):
            await orchestrator.reconcile(ResourceState(RouteTableDescriptor.type_name), DESIRED)


class TestImport:
    """Tests for import_resource."""

    @pytest.mark.asyncio
    async def test_imports(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        resource_id = seed_route_table(azure)

        state = await orchestrator.import_resource(resource_id)

        assert state.id == resource_id
        assert state.lifecycle == LifecycleState.RECONCILED
        assert state.attributes["name"] == "rt-app"
        assert state.attributes["route"][0]["next_hop_in_ip_address"] == "10.0.0.4"

    @pytest.mark.asyncio
    async def test_missing_resource(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        with pytest.raises(ProvisionerError) as exc_info:
            await orchestrator.import_resource(route_table_id(azure))
        assert "does not exist" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_wrong_type(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        with pytest.raises(MalformedResourceIdError):
            await orchestrator.import_resource(azure.resource_id("virtualNetworks", "vnet"))


class TestPlan:
    """Tests for plan."""

    @pytest.mark.asyncio
    async def test_create_when_unmanaged(self, orchestrator: ResourceOrchestrator) -> None:
        plan = await orchestrator.plan(ResourceState(RouteTableDescriptor.type_name), DESIRED)
        assert plan.action == PlanAction.CREATE

    @pytest.mark.asyncio
    async def test_no_op_when_in_sync(self, orchestrator: ResourceOrchestrator) -> None:
        state = await orchestrator.create(DESIRED)
        plan = await orchestrator.plan(state, DESIRED)
        assert plan.action == PlanAction.NO_OP
        assert str(plan) == "no-op"

    @pytest.mark.asyncio
    async def test_update(self, azure: FakeAzure, orchestrator: ResourceOrchestrator) -> None:
        state = await orchestrator.create(DESIRED)

        plan = await orchestrator.plan(state, {**DESIRED, "tags": {"env": "prod"}})

        assert plan.action == PlanAction.UPDATE
        assert plan.diff.changed_attributes == ["tags"]
        assert azure.arm.count("put") == 1

    @pytest.mark.asyncio
    async def test_replace(self, orchestrator: ResourceOrchestrator) -> None:
        state = await orchestrator.create(DESIRED)
        plan = await orchestrator.plan(state, {**DESIRED, "location": "westus"})
        assert plan.action == PlanAction.REPLACE

    @pytest.mark.asyncio
    async def test_create_when_gone_does_not_touch_state(
        self, azure: FakeAzure, orchestrator: ResourceOrchestrator
    ) -> None:
        state = await orchestrator.create(DESIRED)
        azure.arm.remove(state.id)

        plan = await orchestrator.plan(state, DESIRED)

        assert plan.action == PlanAction.CREATE
        assert state.id is not None
        assert state.lifecycle == LifecycleState.RECONCILED

    @pytest.mark.asyncio
    async def test_delete(self, orchestrator: ResourceOrchestrator) -> None:
        state = await orchestrator.create(DESIRED)
        plan = await orchestrator.plan(state, None)
        assert plan.action == PlanAction.DELETE


class TestResourceState:
    """Tests for state serialization."""

    def test_roundtrip(self) -> None:
        state = ResourceState("azurestack_route_table", "/x", {"name": "rt"}, LifecycleState.UPDATING)
        assert ResourceState.from_dict(state.to_dict()) == state

    def test_missing_lifecycle_is_inferred(self) -> None:
        assert ResourceState.from_dict({"type": "t", "id": "/x"}).lifecycle == LifecycleState.RECONCILED
        assert ResourceState.from_dict({"type": "t"}).lifecycle == LifecycleState.UNMANAGED
