"""Azure resource identifier parsing and formatting.

ARM resource IDs are path-style strings of alternating key/value segments:

    /subscriptions/{sub}/resourceGroups/{rg}/providers/{namespace}/{type}/{name}[/{type}/{name}...]

Segment KEYS are case-insensitive (the API returns `resourcegroups` and
`resourceGroups` interchangeably), segment VALUES are case-preserving.
Parsing matches keys case-insensitively and never alters values, so a
typed format round-trips losslessly.

Key Vault items (secrets, keys, certificates) are addressed by data-plane
URLs instead; see NestedItemId.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

from .errors import MalformedResourceIdError

SUBSCRIPTIONS_KEY = "subscriptions"
RESOURCE_GROUPS_KEY = "resourceGroups"
PROVIDERS_KEY = "providers"

SUBSCRIPTION_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
NESTED_ITEM_NAME_PATTERN = re.compile(r"^[0-9a-zA-Z-]+$")
NESTED_ITEM_TYPES = ("secrets", "keys", "certificates")


@dataclass(frozen=True)
class ResourceId:
    """A parsed ARM resource identifier. Immutable; reconstruct to change."""

    subscription_id: str
    resource_group: str
    provider_namespace: str | None = None
    # (type, name) pairs after the provider namespace, outermost parent first
    segments: tuple[tuple[str, str], ...] = ()

    @property
    def name(self) -> str:
        """Name of the addressed resource (resource group name for RG IDs)."""
        if self.segments:
            return self.segments[-1][1]
        return self.resource_group

    @property
    def resource_type(self) -> str:
        """Full resource type, e.g. Microsoft.Network/virtualNetworks/subnets."""
        if self.provider_namespace is None:
            return "Microsoft.Resources/resourceGroups"
        return "/".join([self.provider_namespace, *(key for key, _ in self.segments)])

    @property
    def parent(self) -> ResourceId | None:
        """ID of the parent resource, None for top-level resources."""
        if len(self.segments) < 2:
            return None
        return ResourceId(
            subscription_id=self.subscription_id,
            resource_group=self.resource_group,
            provider_namespace=self.provider_namespace,
            segments=self.segments[:-1],
        )

    def segment(self, key: str) -> str | None:
        """Return the value of a segment key (case-insensitive) or None."""
        for seg_key, value in self.segments:
            if seg_key.lower() == key.lower():
                return value
        return None

    def with_child(self, key: str, name: str) -> ResourceId:
        """Return the ID of a child resource."""
        return ResourceId(
            subscription_id=self.subscription_id,
            resource_group=self.resource_group,
            provider_namespace=self.provider_namespace,
            segments=(*self.segments, (key, name)),
        )

    def __str__(self) -> str:
        return format_resource_id(self)


def _split_pairs(text: str) -> list[tuple[str, str]]:
    if not text or not text.startswith("/"):
        raise MalformedResourceIdError(text, "ID must start with '/'")
    components = text.strip("/").split("/")
    if len(components) % 2 != 0:
        raise MalformedResourceIdError(
            text, f"expected key/value pairs but got an odd number of segments ({len(components)})"
        )
    pairs = []
    for i in range(0, len(components), 2):
        key, value = components[i], components[i + 1]
        if not key:
            raise MalformedResourceIdError(text, f"segment {i} has an empty key")
        if not value:
            raise MalformedResourceIdError(text, f"segment {key!r} has an empty value")
        pairs.append((key, value))
    return pairs


def parse_resource_id(text: str, *, strict_subscription: bool = False) -> ResourceId:
    """Parse an ARM resource ID.

    Args:
        text: The resource ID string.
        strict_subscription: Require the subscription ID to be a GUID.

    Returns:
        Parsed ResourceId with value casing preserved.

    Raises:
        MalformedResourceIdError: Odd segment count, missing or empty
            `subscriptions`/`resourceGroups` segments, or bad subscription.
    """
    pairs = _split_pairs(text)

    key, subscription_id = pairs[0]
    if key.lower() != SUBSCRIPTIONS_KEY.lower():
        raise MalformedResourceIdError(text, "ID was missing the 'subscriptions' element")
    if strict_subscription and not SUBSCRIPTION_ID_PATTERN.match(subscription_id):
        raise MalformedResourceIdError(text, f"subscription ID {subscription_id!r} is not a GUID")

    if len(pairs) < 2 or pairs[1][0].lower() != RESOURCE_GROUPS_KEY.lower():
        raise MalformedResourceIdError(text, "ID was missing the 'resourceGroups' element")
    resource_group = pairs[1][1]

    rest = pairs[2:]
    if not rest:
        return ResourceId(subscription_id=subscription_id, resource_group=resource_group)

    key, namespace = rest[0]
    if key.lower() != PROVIDERS_KEY.lower():
        raise MalformedResourceIdError(text, f"expected 'providers' segment but got {key!r}")
    segments = tuple(rest[1:])
    if not segments:
        raise MalformedResourceIdError(text, "ID has a provider namespace but no resource type")

    return ResourceId(
        subscription_id=subscription_id,
        resource_group=resource_group,
        provider_namespace=namespace,
        segments=segments,
    )


def format_resource_id(resource_id: ResourceId) -> str:
    """Build the canonical string form of a ResourceId."""
    parts = [
        f"/{SUBSCRIPTIONS_KEY}/{resource_id.subscription_id}",
        f"/{RESOURCE_GROUPS_KEY}/{resource_id.resource_group}",
    ]
    if resource_id.provider_namespace is not None:
        parts.append(f"/{PROVIDERS_KEY}/{resource_id.provider_namespace}")
        parts.extend(f"/{key}/{value}" for key, value in resource_id.segments)
    return "".join(parts)


@dataclass(frozen=True)
class IdFormat:
    """Parsing rules for one resource type.

    `segments` maps each `/key/value` pair after the provider namespace to
    a field name. The last field is conventionally `name`.
    """

    label: str
    provider_namespace: str | None
    segments: tuple[tuple[str, str], ...] = ()

    @property
    def field_names(self) -> tuple[str, ...]:
        return ("subscription_id", "resource_group", *(f for _, f in self.segments))

    @property
    def resource_type(self) -> str:
        if self.provider_namespace is None:
            return "Microsoft.Resources/resourceGroups"
        return "/".join([self.provider_namespace, *(k for k, _ in self.segments)])

    def parse(self, text: str) -> ResourceId:
        """Parse and validate an ID of this type.

        Raises:
            MalformedResourceIdError: If the ID is not of this type.
        """
        rid = parse_resource_id(text)

        if self.provider_namespace is None:
            if rid.provider_namespace is not None:
                raise MalformedResourceIdError(text, f"expected a {self.label} ID")
            return rid

        if (rid.provider_namespace or "").lower() != self.provider_namespace.lower():
            raise MalformedResourceIdError(
                text, f"expected provider {self.provider_namespace!r} for a {self.label} ID"
            )
        if len(rid.segments) != len(self.segments):
            raise MalformedResourceIdError(
                text,
                f"expected {len(self.segments)} resource segments for a {self.label} ID, "
                f"got {len(rid.segments)}",
            )
        for (key, _), (expected_key, field_name) in zip(rid.segments, self.segments, strict=True):
            if key.lower() != expected_key.lower():
                raise MalformedResourceIdError(
                    text, f"ID was missing the {expected_key!r} element ({field_name})"
                )

        # Canonical key spelling, original value casing
        return ResourceId(
            subscription_id=rid.subscription_id,
            resource_group=rid.resource_group,
            provider_namespace=self.provider_namespace,
            segments=tuple(
                (expected_key, value)
                for (_, value), (expected_key, _) in zip(rid.segments, self.segments, strict=True)
            ),
        )

    def parse_fields(self, text: str) -> dict[str, str]:
        """Parse an ID into a field dict (subscription_id, resource_group, ...)."""
        return self.fields(self.parse(text))

    def fields(self, resource_id: ResourceId) -> dict[str, str]:
        result = {
            "subscription_id": resource_id.subscription_id,
            "resource_group": resource_id.resource_group,
        }
        for (_, value), (_, field_name) in zip(resource_id.segments, self.segments, strict=True):
            result[field_name] = value
        return result

    def build(self, **fields: Any) -> ResourceId:
        """Construct an ID from field values.

        Raises:
            MalformedResourceIdError: If a field is missing or empty.
        """
        missing = [name for name in self.field_names if not fields.get(name)]
        if missing:
            raise MalformedResourceIdError(
                repr(fields), f"missing value(s) for {self.label} ID: {', '.join(missing)}"
            )
        return ResourceId(
            subscription_id=str(fields["subscription_id"]),
            resource_group=str(fields["resource_group"]),
            provider_namespace=self.provider_namespace,
            segments=tuple((key, str(fields[field_name])) for key, field_name in self.segments),
        )

    def format_fields(self, fields: dict[str, Any]) -> str:
        return format_resource_id(self.build(**fields))


RESOURCE_GROUP_ID = IdFormat("Resource Group", None)
VIRTUAL_NETWORK_ID = IdFormat(
    "Virtual Network", "Microsoft.Network", (("virtualNetworks", "name"),)
)
SUBNET_ID = IdFormat(
    "Subnet",
    "Microsoft.Network",
    (("virtualNetworks", "virtual_network_name"), ("subnets", "name")),
)
VIRTUAL_NETWORK_PEERING_ID = IdFormat(
    "Virtual Network Peering",
    "Microsoft.Network",
    (("virtualNetworks", "virtual_network_name"), ("virtualNetworkPeerings", "name")),
)
ROUTE_TABLE_ID = IdFormat("Route Table", "Microsoft.Network", (("routeTables", "name"),))
NETWORK_SECURITY_GROUP_ID = IdFormat(
    "Network Security Group", "Microsoft.Network", (("networkSecurityGroups", "name"),)
)
NETWORK_INTERFACE_ID = IdFormat(
    "Network Interface", "Microsoft.Network", (("networkInterfaces", "name"),)
)
NETWORK_INTERFACE_IP_CONFIGURATION_ID = IdFormat(
    "Network Interface IP Configuration",
    "Microsoft.Network",
    (("networkInterfaces", "network_interface_name"), ("ipConfigurations", "name")),
)
LOAD_BALANCER_BACKEND_POOL_ID = IdFormat(
    "Load Balancer Backend Address Pool",
    "Microsoft.Network",
    (("loadBalancers", "load_balancer_name"), ("backendAddressPools", "name")),
)
PUBLIC_IP_ID = IdFormat("Public IP", "Microsoft.Network", (("publicIPAddresses", "name"),))
KEY_VAULT_ID = IdFormat("Key Vault", "Microsoft.KeyVault", (("vaults", "name"),))


@dataclass(frozen=True)
class NestedItemId:
    """Key Vault data-plane item ID.

    Example: https://myvault.vault.azure.net/secrets/db-password/fdf067c93bbb4b22bff4d8b7a9a56217
    """

    vault_base_url: str
    item_type: str
    name: str
    version: str | None = None

    @property
    def versionless(self) -> NestedItemId:
        return NestedItemId(self.vault_base_url, self.item_type, self.name)

    def __str__(self) -> str:
        segments = [self.vault_base_url.rstrip("/"), self.item_type, self.name]
        if self.version:
            segments.append(self.version)
        return "/".join(segments)


def parse_nested_item_id(text: str, *, require_version: bool = True) -> NestedItemId:
    """Parse a Key Vault nested item ID (secret, key or certificate).

    Raises:
        MalformedResourceIdError: If the URL is invalid, has the wrong number
            of path segments, or lacks a version when one is required.
    """
    parsed = urlparse(text)
    if not parsed.scheme or not parsed.netloc:
        raise MalformedResourceIdError(text, "Key Vault item ID must be an absolute URL")

    components = parsed.path.strip("/").split("/")
    if len(components) not in (2, 3) or not all(components):
        raise MalformedResourceIdError(
            text, f"Key Vault item ID should contain 2 or 3 path segments, got {parsed.path!r}"
        )
    if components[0].lower() not in NESTED_ITEM_TYPES:
        raise MalformedResourceIdError(
            text, f"unknown Key Vault item type {components[0]!r}"
        )

    version = components[2] if len(components) == 3 else None
    if require_version and not version:
        raise MalformedResourceIdError(text, "expected a versioned ID but no version was found")

    return NestedItemId(
        vault_base_url=f"{parsed.scheme}://{parsed.netloc}/",
        item_type=components[0].lower(),
        name=components[1],
        version=version,
    )


def validate_nested_item_name(name: str) -> None:
    """Key Vault item names may only contain alphanumerics and dashes."""
    if not NESTED_ITEM_NAME_PATTERN.match(name or ""):
        raise MalformedResourceIdError(
            name, "Key Vault item names may only contain alphanumeric characters and dashes"
        )
