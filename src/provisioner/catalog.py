"""Registry of supported resource types."""

from __future__ import annotations

from .errors import ManifestError
from .keyvault_resources import (
    KeyVaultDescriptor,
    KeyVaultKeyDataSource,
    KeyVaultKeyDescriptor,
    KeyVaultSecretDataSource,
    KeyVaultSecretDescriptor,
)
from .network_resources import (
    NetworkInterfaceBackendPoolAssociationDescriptor,
    PublicIpDescriptor,
    RouteTableDescriptor,
    SubnetDescriptor,
    SubnetRouteTableAssociationDescriptor,
    VirtualNetworkDescriptor,
    VirtualNetworkPeeringDescriptor,
)
from .orchestrator import ResourceDescriptor

DESCRIPTORS: dict[str, ResourceDescriptor] = {
    descriptor.type_name: descriptor
    for descriptor in (
        VirtualNetworkDescriptor(),
        RouteTableDescriptor(),
        SubnetDescriptor(),
        PublicIpDescriptor(),
        VirtualNetworkPeeringDescriptor(),
        SubnetRouteTableAssociationDescriptor(),
        NetworkInterfaceBackendPoolAssociationDescriptor(),
        KeyVaultDescriptor(),
        KeyVaultSecretDescriptor(),
        KeyVaultKeyDescriptor(),
        KeyVaultSecretDataSource(),
        KeyVaultKeyDataSource(),
    )
}


def get_descriptor(type_name: str) -> ResourceDescriptor:
    """Look up the descriptor for a resource type.

    Raises:
        ManifestError: If the type is not supported.
    """
    descriptor = DESCRIPTORS.get(type_name)
    if descriptor is None:
        raise ManifestError(
            f"Unknown resource type '{type_name}'. Supported types: {sorted(DESCRIPTORS)}"
        )
    return descriptor
