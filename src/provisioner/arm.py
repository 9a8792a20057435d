"""ARM generic resource adapter.

Implements the ResourceApi collaborator over azure-mgmt-resource's
`resources.*_by_id` operations, so every ARM-addressed resource type shares
one client. Calls are blocking and run in the default executor.

Azure Stack Hub lags public Azure, so each provider type is pinned to the
API version of the 2019-03-01-hybrid profile.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any

from azure.core.credentials import TokenCredential
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource

from .lro import LongRunningOperation, PollerOperation
from .resource_id import ResourceId

logger = logging.getLogger(__name__)

# Keyed by lower-cased resource type
API_VERSIONS: dict[str, str] = {
    "microsoft.network/virtualnetworks": "2017-10-01",
    "microsoft.network/virtualnetworks/subnets": "2017-10-01",
    "microsoft.network/virtualnetworks/virtualnetworkpeerings": "2017-10-01",
    "microsoft.network/routetables": "2017-10-01",
    "microsoft.network/networksecuritygroups": "2017-10-01",
    "microsoft.network/networkinterfaces": "2017-10-01",
    "microsoft.network/loadbalancers": "2017-10-01",
    "microsoft.network/publicipaddresses": "2017-10-01",
    "microsoft.keyvault/vaults": "2016-10-01",
    "microsoft.resources/resourcegroups": "2018-05-01",
}
DEFAULT_API_VERSION = "2018-05-01"


def api_version_for(resource_id: ResourceId) -> str:
    """Return the pinned API version for a resource's type."""
    return API_VERSIONS.get(resource_id.resource_type.lower(), DEFAULT_API_VERSION)


class ArmResourceApi:
    """ResourceApi backed by ResourceManagementClient.

    Args:
        client: Resource management client (injected for tests).
        api_versions: Overrides for the pinned API versions.
    """

    def __init__(
        self,
        client: ResourceManagementClient,
        api_versions: dict[str, str] | None = None,
    ) -> None:
        self._client = client
        self._api_versions = {k.lower(): v for k, v in (api_versions or {}).items()}

    @classmethod
    def create(
        cls,
        credential: TokenCredential,
        subscription_id: str,
        base_url: str | None = None,
    ) -> ArmResourceApi:
        """Build a client for a subscription, optionally at an Azure Stack endpoint."""
        kwargs: dict[str, Any] = {}
        if base_url:
            kwargs["base_url"] = base_url
        return cls(ResourceManagementClient(credential, subscription_id, **kwargs))

    def _api_version(self, address: ResourceId) -> str:
        return self._api_versions.get(address.resource_type.lower()) or api_version_for(address)

    async def _run(self, func: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, **kwargs))

    async def get(self, address: ResourceId) -> dict[str, Any]:
        resource = await self._run(
            self._client.resources.get_by_id,
            resource_id=str(address),
            api_version=self._api_version(address),
        )
        return resource.as_dict()

    async def begin_create_or_update(
        self, address: ResourceId, body: dict[str, Any]
    ) -> LongRunningOperation:
        logger.debug(
            "Submitting CreateOrUpdate",
            extra={"resource_id": str(address), "api_version": self._api_version(address)},
        )
        poller = await self._run(
            self._client.resources.begin_create_or_update_by_id,
            resource_id=str(address),
            api_version=self._api_version(address),
            parameters=GenericResource.from_dict(body),
        )
        return PollerOperation(poller, f"CreateOrUpdate {address.resource_type} {address.name!r}")

    async def begin_delete(self, address: ResourceId) -> LongRunningOperation:
        logger.debug("Submitting Delete", extra={"resource_id": str(address)})
        poller = await self._run(
            self._client.resources.begin_delete_by_id,
            resource_id=str(address),
            api_version=self._api_version(address),
        )
        return PollerOperation(poller, f"Delete {address.resource_type} {address.name!r}")
