"""Generic CRUD orchestrator for Azure Stack resources.

One ResourceOrchestrator drives every resource type. Per-type behavior
lives in a ResourceDescriptor (ID rules, attribute projection, lock keys,
schema, optional custom delete), so the create/read/update/delete flow is
written once:

    create:  existence Get -> AlreadyExists unless importing -> lock ->
             CreateOrUpdate -> wait -> confirmatory Get -> id from response
    read:    Get -> NotFound means Gone (id cleared, not an error)
    update:  read -> reject force-new drift -> patch -> lock ->
             CreateOrUpdate -> wait -> confirmatory Get
    delete:  lock -> Delete (NotFound means Gone) -> wait

OUTCOME SEMANTICS:
A deadline hit raises OperationTimeoutError. The persisted id is never
cleared on timeout, and the lifecycle is left at the in-flight value
(Creating, Updating, Deleting) so the next run knows the outcome is
unknown.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Protocol, TypeVar

from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError

from .config import EngineConfig
from .diff import (
    AttributeDiff,
    ResourceSchema,
    build_patch,
    check_immutable,
    compute_diff,
    strip_computed,
)
from .errors import (
    AlreadyExistsError,
    ConfigurationError,
    OperationTimeoutError,
    ProvisionerError,
    RemoteOperationError,
    ResourceContext,
)
from .locks import LockKey, LockRegistry
from .lro import LongRunningOperation, OperationResult, wait_for_operation
from .resource_id import IdFormat, NestedItemId, ResourceId
from .retry import call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

Address = ResourceId | NestedItemId


class LifecycleState(str, Enum):
    UNMANAGED = "Unmanaged"
    CREATING = "Creating"
    RECONCILED = "Reconciled"
    UPDATING = "Updating"
    DELETING = "Deleting"
    GONE = "Gone"


@dataclass
class ResourceState:
    """Persisted record of one managed resource."""

    resource_type: str
    id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    lifecycle: LifecycleState = LifecycleState.UNMANAGED

    @property
    def exists(self) -> bool:
        return self.id is not None and self.lifecycle != LifecycleState.GONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.resource_type,
            "id": self.id,
            "attributes": self.attributes,
            "lifecycle": self.lifecycle.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ResourceState:
        lifecycle = data.get("lifecycle")
        resource_id = data.get("id")
        if lifecycle is None:
            lifecycle = LifecycleState.RECONCILED if resource_id else LifecycleState.UNMANAGED
        return cls(
            resource_type=data["type"],
            id=resource_id,
            attributes=dict(data.get("attributes") or {}),
            lifecycle=LifecycleState(lifecycle),
        )


def is_not_found(error: BaseException) -> bool:
    """True for the single NotFound signal: ResourceNotFoundError or a 404."""
    if isinstance(error, ResourceNotFoundError):
        return True
    return isinstance(error, HttpResponseError) and error.status_code == 404


class ResourceApi(Protocol):
    """Outbound control-plane collaborator.

    `get` raises azure.core.exceptions.ResourceNotFoundError when the
    resource does not exist.
    """

    async def get(self, address: Any) -> dict[str, Any]: ...

    async def begin_create_or_update(
        self, address: Any, body: dict[str, Any]
    ) -> LongRunningOperation: ...

    async def begin_delete(self, address: Any) -> LongRunningOperation: ...


@dataclass
class EngineContext:
    """Typed dependencies shared by every orchestrator."""

    config: EngineConfig
    locks: LockRegistry
    apis: Mapping[str, Any] = field(default_factory=dict)

    def api(self, name: str) -> Any:
        try:
            return self.apis[name]
        except KeyError as e:
            raise ConfigurationError(f"no API client registered under {name!r}") from e


class ResourceDescriptor:
    """Per-resource-type strategy consumed by ResourceOrchestrator.

    Subclasses set the class attributes and override the projection hooks.
    """

    type_name: ClassVar[str]
    label: ClassVar[str]
    schema: ClassVar[ResourceSchema]
    id_format: ClassVar[IdFormat | None] = None
    api_name: ClassVar[str] = "arm"
    # Re-read the target under lock and expand on top of it (association
    # resources that rewrite a parent object)
    read_modify_write: ClassVar[bool] = False
    # Data sources: looked up and recorded, never created, changed or deleted
    read_only: ClassVar[bool] = False

    def apply_defaults(self, ctx: EngineContext, attributes: Mapping[str, Any]) -> dict[str, Any]:
        """Fill in attributes the engine configuration supplies.

        Raises:
            ConfigurationError: `location` is neither declared nor configured.
        """
        resolved = dict(attributes)
        if "location" in self.schema and not resolved.get("location"):
            if not ctx.config.location:
                raise ConfigurationError(
                    f"{self.type_name}: location is not set and AZURE_LOCATION is not configured"
                )
            resolved["location"] = ctx.config.location
        return resolved

    async def address_from_attributes(
        self, ctx: EngineContext, attributes: Mapping[str, Any]
    ) -> Address:
        """Compute the address a resource with these attributes will have."""
        raise NotImplementedError

    def parse_id(self, resource_id: str) -> Address:
        if self.id_format is None:
            raise NotImplementedError(f"{self.label} does not define an ID format")
        return self.id_format.parse(resource_id)

    def expand(
        self, attributes: Mapping[str, Any], current: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        """Build the CreateOrUpdate request body."""
        raise NotImplementedError

    def target(self, address: Any) -> Any:
        """The object the ResourceApi is called with for this address."""
        return address

    def flatten(self, body: Mapping[str, Any], address: Any) -> dict[str, Any]:
        """Project a Get response onto the attribute map."""
        raise NotImplementedError

    def exists(self, body: Mapping[str, Any], address: Any) -> bool:
        """Whether a Get response represents this resource."""
        return True

    def state_id(self, body: Mapping[str, Any], address: Any) -> str | None:
        """The id persisted for this resource, taken from the Get response."""
        resource_id = body.get("id")
        return str(resource_id) if resource_id else None

    def lock_keys(
        self, attributes: Mapping[str, Any], observed: Mapping[str, Any] | None = None
    ) -> list[LockKey]:
        return []

    def context(self, address: Address | None, attributes: Mapping[str, Any]) -> ResourceContext:
        if isinstance(address, ResourceId):
            return ResourceContext(self.label, address.name, address.resource_group)
        if isinstance(address, NestedItemId):
            return ResourceContext(self.label, address.name, address.vault_base_url)
        return ResourceContext(
            self.label,
            str(attributes.get("name", "?")),
            attributes.get("resource_group_name"),
        )

    async def delete(self, ops: ResourceOperations, address: Address, state: ResourceState) -> None:
        """Remove the resource. Raise ResourceNotFoundError if already gone."""
        async with ops.hold(self.lock_keys(state.attributes)):
            await ops.remove(address)


class ResourceOperations:
    """Remote calls for one orchestrator operation, sharing its deadline.

    Handed to descriptor hooks that need more than the generic flow.
    """

    def __init__(
        self,
        ctx: EngineContext,
        api: ResourceApi,
        descriptor: ResourceDescriptor,
        context: ResourceContext,
        timeout_seconds: float,
    ) -> None:
        self.ctx = ctx
        self.api = api
        self.descriptor = descriptor
        self.context = context
        self.timeout_seconds = timeout_seconds
        self._deadline = time.monotonic() + timeout_seconds

    def remaining(self) -> float:
        return max(self._deadline - time.monotonic(), 0.0)

    def hold(self, keys: list[LockKey]) -> AbstractAsyncContextManager[list[LockKey]]:
        return self.ctx.locks.hold_all(keys)

    async def _call(self, call: Callable[[], Awaitable[T]], description: str) -> T:
        config = self.ctx.config
        try:
            return await call_with_retry(
                call,
                f"{description} {self.context}",
                attempts=config.transient_retry_attempts,
                base_backoff_seconds=config.transient_retry_backoff_seconds,
            )
        except HttpResponseError as e:
            if is_not_found(e):
                raise
            raise RemoteOperationError(
                f"{description} failed: {e.message}",
                status_code=e.status_code,
                context=self.context,
            ) from e
        except AzureError as e:
            raise RemoteOperationError(f"{description} failed: {e}", context=self.context) from e

    async def get(self, address: Address) -> dict[str, Any]:
        """Get the resource. ResourceNotFoundError propagates."""
        try:
            return await self._call(lambda: self.api.get(self.descriptor.target(address)), "retrieving")
        except HttpResponseError as e:
            if is_not_found(e) and not isinstance(e, ResourceNotFoundError):
                raise ResourceNotFoundError(message=e.message, response=e.response) from e
            raise

    async def wait(self, operation: LongRunningOperation) -> OperationResult:
        config = self.ctx.config
        return await wait_for_operation(
            operation,
            poll_interval=config.lro_poll_interval_seconds,
            timeout=self.remaining(),
            transport_retry_budget=config.lro_transport_retry_budget,
            context=self.context,
        )

    async def put(self, address: Address, body: dict[str, Any]) -> OperationResult:
        """CreateOrUpdate and wait for the operation to finish."""
        operation = await self._call(
            lambda: self.api.begin_create_or_update(self.descriptor.target(address), body), "creating/updating"
        )
        return await self.wait(operation)

    async def remove(self, address: Address) -> OperationResult:
        """Delete and wait. ResourceNotFoundError propagates."""
        operation = await self._call(lambda: self.api.begin_delete(self.descriptor.target(address)), "deleting")
        return await self.wait(operation)


class PlanAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    NO_OP = "no-op"
    DELETE = "delete"
    READ = "read"


@dataclass(frozen=True)
class Plan:
    action: PlanAction
    diff: AttributeDiff = field(default_factory=AttributeDiff)

    def __str__(self) -> str:
        if not self.diff:
            return self.action.value
        return f"{self.action.value}: " + ", ".join(str(c) for c in self.diff.changes)


class ResourceOrchestrator:
    """Drives the lifecycle of one resource type.

    Args:
        ctx: Shared engine dependencies.
        descriptor: Strategy for the resource type.
    """

    def __init__(self, ctx: EngineContext, descriptor: ResourceDescriptor) -> None:
        self._ctx = ctx
        self._descriptor = descriptor

    @property
    def descriptor(self) -> ResourceDescriptor:
        return self._descriptor

    def _operations(self, context: ResourceContext, timeout_seconds: float) -> ResourceOperations:
        api = self._ctx.api(self._descriptor.api_name)
        return ResourceOperations(self._ctx, api, self._descriptor, context, timeout_seconds)

    async def _with_deadline(
        self, coro: Awaitable[T], operation: str, ops: ResourceOperations
    ) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=ops.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.error(
                "Operation deadline exceeded",
                extra={
                    "operation": operation,
                    "resource": str(ops.context),
                    "timeout_seconds": ops.timeout_seconds,
                },
            )
            raise OperationTimeoutError(operation, ops.timeout_seconds, ops.context) from e

    async def _locate_unknown_create(self, state: ResourceState) -> bool:
        """Look for the object a create with an unknown outcome may have made.

        Sets `state.id` and returns True when it exists.
        """
        descriptor = self._descriptor
        address = await descriptor.address_from_attributes(self._ctx, state.attributes)
        context = descriptor.context(address, state.attributes)
        ops = self._operations(context, self._ctx.config.timeouts.read_seconds)

        async def _locate() -> bool:
            try:
                body = await ops.get(address)
            except ResourceNotFoundError:
                body = None
            if body is None or not descriptor.exists(body, address):
                logger.warning(
                    "Create outcome still unknown, nothing found at its address",
                    extra={"resource": str(context)},
                )
                return False
            state.id = descriptor.state_id(body, address) or str(address)
            logger.info(
                "Found resource from a create with unknown outcome",
                extra={"resource": str(context), "resource_id": state.id},
            )
            return True

        return await self._with_deadline(_locate(), f"lookup of {context}", ops)

    def _apply_observed(
        self, state: ResourceState, body: Mapping[str, Any], address: Address
    ) -> None:
        resource_id = self._descriptor.state_id(body, address)
        if not resource_id:
            raise RemoteOperationError(
                "cannot read the ID from the Get response",
                context=self._descriptor.context(address, state.attributes),
            )
        state.id = resource_id
        # Keep configuration-only attributes the service does not report
        state.attributes = {
            **strip_computed(self._descriptor.schema, state.attributes),
            **self._descriptor.flatten(body, address),
        }
        state.lifecycle = LifecycleState.RECONCILED

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    async def create(
        self,
        desired: Mapping[str, Any],
        import_existing: bool = False,
        state: ResourceState | None = None,
    ) -> ResourceState:
        """Create the resource, or adopt it when `import_existing` is set.

        Raises:
            AlreadyExistsError: The resource exists and was not imported.
            OperationTimeoutError: Outcome unknown.
        """
        descriptor = self._descriptor
        if descriptor.read_only:
            raise ProvisionerError(f"{descriptor.type_name} is a data source and cannot be created")
        state = state or ResourceState(resource_type=descriptor.type_name)
        address = await descriptor.address_from_attributes(self._ctx, desired)
        context = descriptor.context(address, desired)
        ops = self._operations(context, self._ctx.config.timeouts.create_seconds)

        async def _create() -> ResourceState:
            existing: dict[str, Any] | None
            try:
                existing = await ops.get(address)
            except ResourceNotFoundError:
                existing = None

            if existing is not None and descriptor.exists(existing, address):
                existing_id = descriptor.state_id(existing, address) or str(address)
                if not import_existing:
                    raise AlreadyExistsError(existing_id, context)
                logger.info(
                    "Adopting existing resource",
                    extra={"resource": str(context), "resource_id": existing_id},
                )
                state.attributes = strip_computed(descriptor.schema, desired)
                self._apply_observed(state, existing, address)
                return await self._update_observed(state, desired, existing, ops)

            state.lifecycle = LifecycleState.CREATING
            state.attributes = strip_computed(descriptor.schema, desired)
            logger.info("Creating resource", extra={"resource": str(context)})

            async with ops.hold(descriptor.lock_keys(desired, existing)):
                current = existing
                if descriptor.read_modify_write:
                    try:
                        current = await ops.get(address)
                    except ResourceNotFoundError:
                        current = None
                    if current is not None and descriptor.exists(current, address):
                        raise AlreadyExistsError(
                            descriptor.state_id(current, address) or str(address), context
                        )
                body = descriptor.expand(desired, current)
                await ops.put(address, body)

            observed = await ops.get(address)
            self._apply_observed(state, observed, address)
            logger.info(
                "Created resource", extra={"resource": str(context), "resource_id": state.id}
            )
            return state

        return await self._with_deadline(_create(), f"creation of {context}", ops)

    # ------------------------------------------------------------------
    # lookup (data sources)
    # ------------------------------------------------------------------

    async def lookup(
        self, desired: Mapping[str, Any], state: ResourceState | None = None
    ) -> ResourceState:
        """Read the object `desired` addresses and record it. Never writes.

        Raises:
            ProvisionerError: Nothing exists at that address.
        """
        descriptor = self._descriptor
        state = state or ResourceState(resource_type=descriptor.type_name)
        address = await descriptor.address_from_attributes(self._ctx, desired)
        context = descriptor.context(address, desired)
        ops = self._operations(context, self._ctx.config.timeouts.read_seconds)

        async def _lookup() -> ResourceState:
            try:
                body = await ops.get(address)
            except ResourceNotFoundError:
                body = None
            if body is None or not descriptor.exists(body, address):
                raise ProvisionerError(f"{descriptor.label} was not found", context)

            state.attributes = strip_computed(descriptor.schema, desired)
            self._apply_observed(state, body, address)
            logger.debug(
                "Looked up data source", extra={"resource": str(context), "resource_id": state.id}
            )
            return state

        return await self._with_deadline(_lookup(), f"lookup of {context}", ops)

    # ------------------------------------------------------------------
    # read
    # ------------------------------------------------------------------

    async def read(self, state: ResourceState) -> ResourceState:
        """Refresh attributes from the service.

        A missing resource (or one that no longer matches `exists`) moves the
        state to Gone and clears the id. This is not an error.

        A create with an unknown outcome (Creating, no id) is looked up at
        the address its attributes give. Whatever is found there is adopted;
        when nothing is found the state stays Creating.
        """
        if state.id is None:
            if state.lifecycle != LifecycleState.CREATING:
                state.lifecycle = LifecycleState.GONE
                return state
            if not await self._locate_unknown_create(state):
                return state

        descriptor = self._descriptor
        address = descriptor.parse_id(state.id)
        context = descriptor.context(address, state.attributes)
        ops = self._operations(context, self._ctx.config.timeouts.read_seconds)

        async def _read() -> ResourceState:
            try:
                body = await ops.get(address)
            except ResourceNotFoundError:
                body = None

            if body is None or not descriptor.exists(body, address):
                logger.info(
                    "Resource no longer exists, removing from state",
                    extra={"resource": str(context), "resource_id": state.id},
                )
                state.id = None
                state.lifecycle = LifecycleState.GONE
                return state

            state.id = descriptor.state_id(body, address) or state.id
            state.attributes = {
                **strip_computed(descriptor.schema, state.attributes),
                **descriptor.flatten(body, address),
            }
            if state.lifecycle in (LifecycleState.UNMANAGED, LifecycleState.GONE):
                state.lifecycle = LifecycleState.RECONCILED
            return state

        return await self._with_deadline(_read(), f"read of {context}", ops)

    # ------------------------------------------------------------------
    # update
    # ------------------------------------------------------------------

    async def update(self, state: ResourceState, desired: Mapping[str, Any]) -> ResourceState:
        """Converge an existing resource onto `desired` in place.

        Raises:
            ImmutableFieldDriftError: A force-new attribute differs. Nothing
                is sent to the service.
        """
        await self.read(state)
        if state.id is None:
            return state

        descriptor = self._descriptor
        address = descriptor.parse_id(state.id)
        context = descriptor.context(address, desired)
        ops = self._operations(context, self._ctx.config.timeouts.update_seconds)

        return await self._with_deadline(
            self._update_observed(state, desired, None, ops), f"update of {context}", ops
        )

    async def _update_observed(
        self,
        state: ResourceState,
        desired: Mapping[str, Any],
        observed_body: Mapping[str, Any] | None,
        ops: ResourceOperations,
    ) -> ResourceState:
        descriptor = self._descriptor
        schema = descriptor.schema
        context = ops.context

        check_immutable(schema, desired, state.attributes, context)

        patch = build_patch(schema, desired, state.attributes)
        if not patch:
            state.lifecycle = LifecycleState.RECONCILED
            logger.debug("Resource is up to date", extra={"resource": str(context)})
            return state

        logger.info(
            "Updating resource",
            extra={"resource": str(context), "changed_attributes": sorted(patch)},
        )
        address = descriptor.parse_id(state.id)
        state.lifecycle = LifecycleState.UPDATING

        async with ops.hold(descriptor.lock_keys(desired, observed_body)):
            try:
                current = await ops.get(address)
            except ResourceNotFoundError:
                logger.info(
                    "Resource vanished before update, removing from state",
                    extra={"resource": str(context)},
                )
                state.id = None
                state.lifecycle = LifecycleState.GONE
                return state
            body = descriptor.expand({**strip_computed(schema, state.attributes), **patch}, current)
            await ops.put(address, body)

        observed = await ops.get(address)
        self._apply_observed(state, observed, address)
        logger.info("Updated resource", extra={"resource": str(context), "resource_id": state.id})
        return state

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------

    async def delete(self, state: ResourceState) -> ResourceState:
        """Delete the resource. Deleting something already gone succeeds.

        A create with an unknown outcome is looked up first and deleted if it
        exists. When nothing is found the state stays Creating, since the
        create may still complete.

        A data source is only dropped from state; nothing remote is touched.
        """
        if self._descriptor.read_only:
            state.id = None
            state.lifecycle = LifecycleState.GONE
            return state

        if state.id is None:
            if state.lifecycle != LifecycleState.CREATING:
                state.lifecycle = LifecycleState.GONE
                return state
            if not await self._locate_unknown_create(state):
                return state

        descriptor = self._descriptor
        address = descriptor.parse_id(state.id)
        context = descriptor.context(address, state.attributes)
        ops = self._operations(context, self._ctx.config.timeouts.delete_seconds)

        async def _delete() -> ResourceState:
            state.lifecycle = LifecycleState.DELETING
            logger.info("Deleting resource", extra={"resource": str(context)})
            try:
                await descriptor.delete(ops, address, state)
            except ResourceNotFoundError:
                logger.info("Resource already gone", extra={"resource": str(context)})

            state.id = None
            state.lifecycle = LifecycleState.GONE
            logger.info("Deleted resource", extra={"resource": str(context)})
            return state

        return await self._with_deadline(_delete(), f"deletion of {context}", ops)

    # ------------------------------------------------------------------
    # reconcile / import / plan
    # ------------------------------------------------------------------

    async def reconcile(self, state: ResourceState, desired: Mapping[str, Any]) -> ResourceState:
        """Bring the resource to `desired`, creating it when missing.

        A previous create whose outcome was unknown (lifecycle Creating with
        no id) adopts whatever exists instead of failing with AlreadyExists.
        Data sources are looked up again instead.
        """
        if self._descriptor.read_only:
            return await self.lookup(desired, state)

        if state.id is None:
            adopt = state.lifecycle == LifecycleState.CREATING
            return await self.create(desired, import_existing=adopt, state=state)

        await self.read(state)
        if state.id is None:
            return await self.create(desired, state=state)

        return await self.update(state, desired)

    async def import_resource(self, resource_id: str) -> ResourceState:
        """Adopt an existing resource into state by its ID.

        Raises:
            MalformedResourceIdError: The ID does not match this type.
            ProvisionerError: Nothing exists at that ID.
        """
        descriptor = self._descriptor
        if descriptor.read_only:
            raise ProvisionerError(f"{descriptor.type_name} is a data source and cannot be imported")
        address = descriptor.parse_id(resource_id)
        state = ResourceState(resource_type=descriptor.type_name, id=str(address))
        await self.read(state)
        if state.id is None:
            raise ProvisionerError(
                "cannot import a resource that does not exist",
                descriptor.context(address, {}),
            )
        logger.info(
            "Imported resource",
            extra={"resource_type": descriptor.type_name, "resource_id": state.id},
        )
        return state

    async def plan(self, state: ResourceState, desired: Mapping[str, Any] | None) -> Plan:
        """Describe what reconcile (or destroy, when `desired` is None) would do.

        Reads the remote object but never mutates `state` or the service.
        """
        if self._descriptor.read_only:
            return Plan(PlanAction.NO_OP if desired is None else PlanAction.READ)

        if desired is None:
            pending = state.id is not None or state.lifecycle == LifecycleState.CREATING
            return Plan(PlanAction.DELETE if pending else PlanAction.NO_OP)

        if state.id is None:
            return Plan(PlanAction.CREATE)

        observed = copy.deepcopy(state)
        await self.read(observed)
        if observed.id is None:
            return Plan(PlanAction.CREATE)

        diff = compute_diff(self._descriptor.schema, desired, observed.attributes)
        if not diff:
            return Plan(PlanAction.NO_OP)
        if diff.requires_replacement:
            return Plan(PlanAction.REPLACE, diff)
        return Plan(PlanAction.UPDATE, diff)
