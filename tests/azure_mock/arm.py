"""In-memory ARM generic resource API.

Implements the ResourceApi protocol the orchestrator consumes. Resources
are stored by case-insensitive ID. Every call is recorded so tests can
assert on what was (or was not) sent.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from typing import Any

from provisioner.lro import CompletedOperation, LongRunningOperation
from provisioner.resource_id import ResourceId, parse_resource_id

from .operations import not_found


class FakeArmApi:
    """In-memory ResourceApi.

    Attributes:
        calls: (method, resource id) in call order.
        put_bodies: Request bodies of every CreateOrUpdate.
        errors: Per-method queues of exceptions raised before the call runs.
        operations: Queue of operations returned by the next mutations,
            in place of an already-completed one.
        put_delay: Seconds each CreateOrUpdate takes before returning.
    """

    def __init__(self) -> None:
        self.resources: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.put_bodies: list[dict[str, Any]] = []
        self.errors: dict[str, list[Exception]] = {}
        self.operations: list[LongRunningOperation] = []
        self.put_delay = 0.0
        self.on_put: Callable[[ResourceId, dict[str, Any]], None] | None = None

    # test helpers ------------------------------------------------------

    def seed(self, resource_id: str, body: dict[str, Any]) -> dict[str, Any]:
        """Store a resource as if it already existed remotely."""
        address = parse_resource_id(resource_id)
        stored = copy.deepcopy(body)
        stored.setdefault("id", resource_id)
        stored.setdefault("name", address.name)
        stored.setdefault("type", address.resource_type)
        self.resources[resource_id.lower()] = stored
        return stored

    def stored(self, resource_id: str) -> dict[str, Any] | None:
        return self.resources.get(str(resource_id).lower())

    def remove(self, resource_id: str) -> None:
        """Delete out-of-band, behind the engine's back."""
        self.resources.pop(str(resource_id).lower(), None)

    def count(self, method: str) -> int:
        return sum(1 for m, _ in self.calls if m == method)

    def fail_next(self, method: str, *errors: Exception) -> None:
        self.errors.setdefault(method, []).extend(errors)

    def _raise_injected(self, method: str) -> None:
        queue = self.errors.get(method)
        if queue:
            raise queue.pop(0)

    def _operation(self, body: Any, description: str) -> LongRunningOperation:
        if self.operations:
            return self.operations.pop(0)
        return CompletedOperation(body, description)

    # ResourceApi -------------------------------------------------------

    async def get(self, address: ResourceId) -> dict[str, Any]:
        self.calls.append(("get", str(address)))
        self._raise_injected("get")
        resource = self.resources.get(str(address).lower())
        if resource is None:
            raise not_found(f"{address} was not found")
        return copy.deepcopy(resource)

    async def begin_create_or_update(
        self, address: ResourceId, body: dict[str, Any]
    ) -> LongRunningOperation:
        self.calls.append(("put", str(address)))
        self._raise_injected("put")
        self.put_bodies.append(copy.deepcopy(body))
        if self.put_delay:
            await asyncio.sleep(self.put_delay)

        stored = copy.deepcopy(body)
        stored["id"] = str(address)
        stored["name"] = address.name
        stored["type"] = address.resource_type
        if self.on_put is not None:
            self.on_put(address, stored)
        self.resources[str(address).lower()] = stored
        return self._operation(copy.deepcopy(stored), f"CreateOrUpdate {address.name}")

    async def begin_delete(self, address: ResourceId) -> LongRunningOperation:
        self.calls.append(("delete", str(address)))
        self._raise_injected("delete")
        if self.resources.pop(str(address).lower(), None) is None:
            raise not_found(f"{address} was not found")
        return self._operation(None, f"Delete {address.name}")
