"""Network resource descriptors.

Virtual networks, subnets, route tables, public IPs, peerings and the two
association resources that rewrite a parent object (subnet <-> route table,
network interface IP configuration <-> load balancer backend pool).
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from azure.core.exceptions import ResourceNotFoundError

from .diff import ResourceSchema, attr
from .errors import MalformedResourceIdError, ProvisionerError, ResourceContext
from .locks import LockCategory, LockKey
from .orchestrator import EngineContext, ResourceDescriptor, ResourceOperations, ResourceState
from .resource_id import (
    LOAD_BALANCER_BACKEND_POOL_ID,
    NETWORK_INTERFACE_ID,
    NETWORK_INTERFACE_IP_CONFIGURATION_ID,
    NETWORK_SECURITY_GROUP_ID,
    PUBLIC_IP_ID,
    ROUTE_TABLE_ID,
    SUBNET_ID,
    VIRTUAL_NETWORK_ID,
    VIRTUAL_NETWORK_PEERING_ID,
    ResourceId,
)

logger = logging.getLogger(__name__)


def _properties(body: Mapping[str, Any] | None) -> dict[str, Any]:
    if not body:
        return {}
    return dict(body.get("properties") or {})


def _ref_id(value: Any) -> str | None:
    """Extract the id of a `{"id": ...}` sub-resource reference."""
    if isinstance(value, Mapping):
        return value.get("id")
    return None


def _tags(attributes: Mapping[str, Any]) -> dict[str, str]:
    return dict(attributes.get("tags") or {})


class VirtualNetworkDescriptor(ResourceDescriptor):
    type_name = "azurestack_virtual_network"
    label = "Virtual Network"
    id_format = VIRTUAL_NETWORK_ID
    schema = ResourceSchema(
        [
            attr("name", force_new=True, required=True),
            attr("resource_group_name", force_new=True, required=True, case_insensitive=True),
            attr("location", force_new=True, case_insensitive=True),
            attr("address_space", required=True, unordered=True),
            attr("dns_servers"),
            attr("tags"),
            attr("subnet_ids", computed=True),
        ]
    )

    async def address_from_attributes(
        self, ctx: EngineContext, attributes: Mapping[str, Any]
    ) -> ResourceId:
        return VIRTUAL_NETWORK_ID.build(
            subscription_id=ctx.config.subscription_id,
            resource_group=attributes.get("resource_group_name"),
            name=attributes.get("name"),
        )

    def expand(
        self, attributes: Mapping[str, Any], current: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        properties: dict[str, Any] = {
            "addressSpace": {"addressPrefixes": list(attributes.get("address_space") or [])},
            "dhcpOptions": {"dnsServers": list(attributes.get("dns_servers") or [])},
        }
        # Subnets are managed as their own resources; a PUT without them deletes them
        existing_subnets = _properties(current).get("subnets")
        if existing_subnets:
            properties["subnets"] = existing_subnets
        return {
            "location": attributes.get("location"),
            "tags": _tags(attributes),
            "properties": properties,
        }

    def flatten(self, body: Mapping[str, Any], address: ResourceId) -> dict[str, Any]:
        props = _properties(body)
        return {
            "name": address.name,
            "resource_group_name": address.resource_group,
            "location": body.get("location"),
            "address_space": list((props.get("addressSpace") or {}).get("addressPrefixes") or []),
            "dns_servers": list((props.get("dhcpOptions") or {}).get("dnsServers") or []),
            "tags": dict(body.get("tags") or {}),
            "subnet_ids": [s.get("id") for s in props.get("subnets") or [] if s.get("id")],
        }

    def lock_keys(
        self, attributes: Mapping[str, Any], observed: Mapping[str, Any] | None = None
    ) -> list[LockKey]:
        return [LockKey(LockCategory.VIRTUAL_NETWORK, attributes["name"])]


class RouteTableDescriptor(ResourceDescriptor):
    type_name = "azurestack_route_table"
    label = "Route Table"
    id_format = ROUTE_TABLE_ID
    schema = ResourceSchema(
        [
            attr("name", force_new=True, required=True),
            attr("resource_group_name", force_new=True, required=True, case_insensitive=True),
            attr("location", force_new=True, case_insensitive=True),
            attr("route", unordered=True),
            attr("tags"),
            attr("subnets", computed=True),
        ]
    )

    async def address_from_attributes(
        self, ctx: EngineContext, attributes: Mapping[str, Any]
    ) -> ResourceId:
        return ROUTE_TABLE_ID.build(
            subscription_id=ctx.config.subscription_id,
            resource_group=attributes.get("resource_group_name"),
            name=attributes.get("name"),
        )

    def expand(
        self, attributes: Mapping[str, Any], current: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        routes = []
        for route in attributes.get("route") or []:
            route_properties = {
                "addressPrefix": route["address_prefix"],
                "nextHopType": route["next_hop_type"],
            }
            if route.get("next_hop_in_ip_address"):
                route_properties["nextHopIpAddress"] = route["next_hop_in_ip_address"]
            routes.append({"name": route["name"], "properties": route_properties})

        return {
            "location": attributes.get("location"),
            "tags": _tags(attributes),
            "properties": {"routes": routes},
        }

    def flatten(self, body: Mapping[str, Any], address: ResourceId) -> dict[str, Any]:
        props = _properties(body)
        routes = []
        for route in props.get("routes") or []:
            route_properties = route.get("properties") or {}
            flattened = {
                "name": route.get("name"),
                "address_prefix": route_properties.get("addressPrefix"),
                "next_hop_type": route_properties.get("nextHopType"),
            }
            if route_properties.get("nextHopIpAddress"):
                flattened["next_hop_in_ip_address"] = route_properties["nextHopIpAddress"]
            routes.append(flattened)

        return {
            "name": address.name,
            "resource_group_name": address.resource_group,
            "location": body.get("location"),
            "route": routes,
            "tags": dict(body.get("tags") or {}),
            "subnets": [s.get("id") for s in props.get("subnets") or [] if s.get("id")],
        }

    def lock_keys(
        self, attributes: Mapping[str, Any], observed: Mapping[str, Any] | None = None
    ) -> list[LockKey]:
        return [LockKey(LockCategory.ROUTE_TABLE, attributes["name"])]


DOMAIN_NAME_LABEL_PATTERN = re.compile(r"^[a-z0-9-]{1,61}$")


class PublicIpDescriptor(ResourceDescriptor):
    """Standard SKU addresses must be statically allocated."""

    type_name = "azurestack_public_ip"
    label = "Public IP"
    id_format = PUBLIC_IP_ID
    schema = ResourceSchema(
        [
            attr("name", force_new=True, required=True),
            attr("resource_group_name", force_new=True, required=True, case_insensitive=True),
            attr("location", force_new=True, case_insensitive=True),
            attr("allocation_method", required=True, case_insensitive=True),
            attr("sku", force_new=True, case_insensitive=True),
            attr("idle_timeout_in_minutes", numeric_string=True),
            attr("domain_name_label"),
            attr("reverse_fqdn"),
            attr("tags"),
            attr("ip_address", computed=True),
            attr("fqdn", computed=True),
        ]
    )

    async def address_from_attributes(
        self, ctx: EngineContext, attributes: Mapping[str, Any]
    ) -> ResourceId:
        return PUBLIC_IP_ID.build(
            subscription_id=ctx.config.subscription_id,
            resource_group=attributes.get("resource_group_name"),
            name=attributes.get("name"),
        )

    def expand(
        self, attributes: Mapping[str, Any], current: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        allocation = str(attributes.get("allocation_method") or "")
        if allocation.lower() not in ("static", "dynamic"):
            raise ProvisionerError(f"allocation_method must be Static or Dynamic, got {allocation!r}")
        sku = str(attributes.get("sku") or "Basic")
        if sku.lower() == "standard" and allocation.lower() != "static":
            raise ProvisionerError("Standard SKU public IPs must use Static allocation")

        idle_timeout = int(attributes.get("idle_timeout_in_minutes") or 4)
        if not 4 <= idle_timeout <= 30:
            raise ProvisionerError(
                f"idle_timeout_in_minutes must be between 4 and 30, got {idle_timeout}"
            )

        properties: dict[str, Any] = {
            "publicIPAllocationMethod": allocation.capitalize(),
            "idleTimeoutInMinutes": idle_timeout,
        }
        dns_settings = {}
        label = attributes.get("domain_name_label")
        if label:
            if not DOMAIN_NAME_LABEL_PATTERN.match(label) or label.endswith("-"):
                raise ProvisionerError(
                    f"domain_name_label must be lowercase letters, digits and inner hyphens: {label!r}"
                )
            dns_settings["domainNameLabel"] = label
        if attributes.get("reverse_fqdn"):
            dns_settings["reverseFqdn"] = attributes["reverse_fqdn"]
        if dns_settings:
            properties["dnsSettings"] = dns_settings

        return {
            "location": attributes.get("location"),
            "sku": {"name": sku.capitalize()},
            "tags": _tags(attributes),
            "properties": properties,
        }

    def flatten(self, body: Mapping[str, Any], address: ResourceId) -> dict[str, Any]:
        props = _properties(body)
        dns_settings = props.get("dnsSettings") or {}
        return {
            "name": address.name,
            "resource_group_name": address.resource_group,
            "location": body.get("location"),
            "allocation_method": props.get("publicIPAllocationMethod"),
            "sku": (body.get("sku") or {}).get("name"),
            "idle_timeout_in_minutes": props.get("idleTimeoutInMinutes"),
            "domain_name_label": dns_settings.get("domainNameLabel"),
            "reverse_fqdn": dns_settings.get("reverseFqdn"),
            "tags": dict(body.get("tags") or {}),
            "ip_address": props.get("ipAddress"),
            "fqdn": dns_settings.get("fqdn"),
        }


class SubnetDescriptor(ResourceDescriptor):
    """Subnet writes rewrite the parent virtual network.

    Locks the virtual network, plus the network security group and route
    table the subnet references.
    """

    type_name = "azurestack_subnet"
    label = "Subnet"
    id_format = SUBNET_ID
    schema = ResourceSchema(
        [
            attr("name", force_new=True, required=True),
            attr("resource_group_name", force_new=True, required=True, case_insensitive=True),
            attr("virtual_network_name", force_new=True, required=True),
            attr("address_prefix", required=True),
            attr("network_security_group_id", case_insensitive=True),
            attr("route_table_id", case_insensitive=True),
            attr("ip_configurations", computed=True),
        ]
    )

    async def address_from_attributes(
        self, ctx: EngineContext, attributes: Mapping[str, Any]
    ) -> ResourceId:
        return SUBNET_ID.build(
            subscription_id=ctx.config.subscription_id,
            resource_group=attributes.get("resource_group_name"),
            virtual_network_name=attributes.get("virtual_network_name"),
            name=attributes.get("name"),
        )

    def expand(
        self, attributes: Mapping[str, Any], current: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        current_props = _properties(current)
        properties: dict[str, Any] = {"addressPrefix": attributes.get("address_prefix")}

        # Unset references keep whatever is attached (e.g. by an association resource)
        for attribute, key in (
            ("network_security_group_id", "networkSecurityGroup"),
            ("route_table_id", "routeTable"),
        ):
            if attributes.get(attribute):
                properties[key] = {"id": attributes[attribute]}
            elif attribute not in attributes and current_props.get(key):
                properties[key] = current_props[key]

        return {"name": attributes.get("name"), "properties": properties}

    def flatten(self, body: Mapping[str, Any], address: ResourceId) -> dict[str, Any]:
        props = _properties(body)
        return {
            "name": address.name,
            "resource_group_name": address.resource_group,
            "virtual_network_name": address.segment("virtualNetworks"),
            "address_prefix": props.get("addressPrefix"),
            "network_security_group_id": _ref_id(props.get("networkSecurityGroup")),
            "route_table_id": _ref_id(props.get("routeTable")),
            "ip_configurations": sorted(
                c["id"] for c in props.get("ipConfigurations") or [] if c.get("id")
            ),
        }

    def lock_keys(
        self, attributes: Mapping[str, Any], observed: Mapping[str, Any] | None = None
    ) -> list[LockKey]:
        keys = [LockKey(LockCategory.VIRTUAL_NETWORK, attributes["virtual_network_name"])]
        if attributes.get("network_security_group_id"):
            nsg = NETWORK_SECURITY_GROUP_ID.parse(attributes["network_security_group_id"])
            keys.append(LockKey(LockCategory.NETWORK_SECURITY_GROUP, nsg.name))
        if attributes.get("route_table_id"):
            route_table = ROUTE_TABLE_ID.parse(attributes["route_table_id"])
            keys.append(LockKey(LockCategory.ROUTE_TABLE, route_table.name))
        return keys

    async def delete(self, ops: ResourceOperations, address: ResourceId, state: ResourceState) -> None:
        keys = [
            *self.lock_keys(state.attributes),
            LockKey(LockCategory.SUBNET, address.name),
        ]
        async with ops.hold(keys):
            if state.attributes.get("route_table_id"):
                # Azure Stack refuses to delete a subnet that still has a route table
                current = await ops.get(address)
                body = copy.deepcopy(dict(current))
                properties = body.setdefault("properties", {})
                if properties.pop("routeTable", None) is not None:
                    logger.debug(
                        "Disassociating route table before delete",
                        extra={"resource_id": str(address)},
                    )
                    await ops.put(address, body)
            await ops.remove(address)


class VirtualNetworkPeeringDescriptor(ResourceDescriptor):
    type_name = "azurestack_virtual_network_peering"
    label = "Virtual Network Peering"
    id_format = VIRTUAL_NETWORK_PEERING_ID
    schema = ResourceSchema(
        [
            attr("name", force_new=True, required=True),
            attr("resource_group_name", force_new=True, required=True, case_insensitive=True),
            attr("virtual_network_name", force_new=True, required=True),
            attr("remote_virtual_network_id", force_new=True, required=True, case_insensitive=True),
            attr("allow_virtual_network_access"),
            attr("allow_forwarded_traffic"),
            attr("allow_gateway_transit"),
            attr("use_remote_gateways"),
        ]
    )

    _FLAGS = (
        ("allow_virtual_network_access", "allowVirtualNetworkAccess"),
        ("allow_forwarded_traffic", "allowForwardedTraffic"),
        ("allow_gateway_transit", "allowGatewayTransit"),
        ("use_remote_gateways", "useRemoteGateways"),
    )

    async def address_from_attributes(
        self, ctx: EngineContext, attributes: Mapping[str, Any]
    ) -> ResourceId:
        return VIRTUAL_NETWORK_PEERING_ID.build(
            subscription_id=ctx.config.subscription_id,
            resource_group=attributes.get("resource_group_name"),
            virtual_network_name=attributes.get("virtual_network_name"),
            name=attributes.get("name"),
        )

    def expand(
        self, attributes: Mapping[str, Any], current: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        properties: dict[str, Any] = {
            "remoteVirtualNetwork": {"id": attributes.get("remote_virtual_network_id")},
        }
        for attribute, key in self._FLAGS:
            if attributes.get(attribute) is not None:
                properties[key] = bool(attributes[attribute])
        return {"name": attributes.get("name"), "properties": properties}

    def flatten(self, body: Mapping[str, Any], address: ResourceId) -> dict[str, Any]:
        props = _properties(body)
        flattened = {
            "name": address.name,
            "resource_group_name": address.resource_group,
            "virtual_network_name": address.segment("virtualNetworks"),
            "remote_virtual_network_id": _ref_id(props.get("remoteVirtualNetwork")),
        }
        for attribute, key in self._FLAGS:
            flattened[attribute] = props.get(key)
        return flattened

    def lock_keys(
        self, attributes: Mapping[str, Any], observed: Mapping[str, Any] | None = None
    ) -> list[LockKey]:
        return [LockKey(LockCategory.VIRTUAL_NETWORK_PEERING, attributes["name"])]


class SubnetRouteTableAssociationDescriptor(ResourceDescriptor):
    """Attaches a route table to an existing subnet.

    The association has no ARM object of its own: its id is the subnet id
    and it exists while the subnet references a route table.
    """

    type_name = "azurestack_subnet_route_table_association"
    label = "Subnet Route Table Association"
    id_format = SUBNET_ID
    read_modify_write = True
    schema = ResourceSchema(
        [
            attr("subnet_id", force_new=True, required=True, case_insensitive=True),
            attr("route_table_id", force_new=True, required=True, case_insensitive=True),
        ]
    )

    async def address_from_attributes(
        self, ctx: EngineContext, attributes: Mapping[str, Any]
    ) -> ResourceId:
        return SUBNET_ID.parse(attributes["subnet_id"])

    def exists(self, body: Mapping[str, Any], address: ResourceId) -> bool:
        return bool(_ref_id(_properties(body).get("routeTable")))

    def expand(
        self, attributes: Mapping[str, Any], current: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        if current is None:
            raise ProvisionerError(f"subnet {attributes.get('subnet_id')!r} was not found")
        body = copy.deepcopy(dict(current))
        body.setdefault("properties", {})["routeTable"] = {"id": attributes["route_table_id"]}
        return body

    def flatten(self, body: Mapping[str, Any], address: ResourceId) -> dict[str, Any]:
        return {
            "subnet_id": body.get("id") or str(address),
            "route_table_id": _ref_id(_properties(body).get("routeTable")),
        }

    def lock_keys(
        self, attributes: Mapping[str, Any], observed: Mapping[str, Any] | None = None
    ) -> list[LockKey]:
        subnet = SUBNET_ID.parse(attributes["subnet_id"])
        route_table_id = attributes.get("route_table_id") or _ref_id(
            _properties(observed).get("routeTable")
        )
        keys = [LockKey(LockCategory.VIRTUAL_NETWORK, subnet.segment("virtualNetworks"))]
        if route_table_id:
            keys.append(LockKey(LockCategory.ROUTE_TABLE, ROUTE_TABLE_ID.parse(route_table_id).name))
        return keys

    async def delete(self, ops: ResourceOperations, address: ResourceId, state: ResourceState) -> None:
        current = await ops.get(address)
        route_table_id = _ref_id(_properties(current).get("routeTable"))
        if not route_table_id:
            logger.debug("Subnet has no route table", extra={"resource_id": str(address)})
            return

        # Lock on the route table actually attached, then re-read under lock
        keys = self.lock_keys({"subnet_id": str(address), "route_table_id": route_table_id})
        async with ops.hold(keys):
            current = await ops.get(address)
            body = copy.deepcopy(dict(current))
            body.setdefault("properties", {}).pop("routeTable", None)
            await ops.put(address, body)


@dataclass(frozen=True)
class BackendPoolAssociationId:
    """Composite id: `{nic id}/ipConfigurations/{name}|{backend pool id}`."""

    network_interface: ResourceId
    ip_configuration_name: str
    backend_address_pool_id: str

    def __str__(self) -> str:
        return (
            f"{self.network_interface}/ipConfigurations/{self.ip_configuration_name}"
            f"|{self.backend_address_pool_id}"
        )


def parse_backend_pool_association_id(text: str) -> BackendPoolAssociationId:
    parts = text.split("|")
    if len(parts) != 2:
        raise MalformedResourceIdError(
            text, "expected `{ipConfigurationId}|{backendAddressPoolId}`"
        )
    ip_configuration = NETWORK_INTERFACE_IP_CONFIGURATION_ID.parse(parts[0])
    backend_pool = LOAD_BALANCER_BACKEND_POOL_ID.parse(parts[1])
    parent = ip_configuration.parent
    if parent is None:
        raise MalformedResourceIdError(text, "IP configuration ID has no network interface")
    return BackendPoolAssociationId(
        network_interface=parent,
        ip_configuration_name=ip_configuration.name,
        backend_address_pool_id=str(backend_pool),
    )


def _find_ip_configuration(body: Mapping[str, Any], name: str) -> dict[str, Any] | None:
    for ip_configuration in _properties(body).get("ipConfigurations") or []:
        if str(ip_configuration.get("name", "")).lower() == name.lower():
            return ip_configuration
    return None


def _pool_ids(ip_configuration: Mapping[str, Any]) -> list[str]:
    pools = (ip_configuration.get("properties") or {}).get("loadBalancerBackendAddressPools")
    return [p["id"] for p in pools or [] if p.get("id")]


class NetworkInterfaceBackendPoolAssociationDescriptor(ResourceDescriptor):
    """Adds a load balancer backend pool to a NIC IP configuration.

    Both create and delete rewrite the whole network interface under the
    network interface lock.
    """

    type_name = "azurestack_network_interface_backend_address_pool_association"
    label = "Network Interface Backend Address Pool Association"
    read_modify_write = True
    schema = ResourceSchema(
        [
            attr("network_interface_id", force_new=True, required=True, case_insensitive=True),
            attr("ip_configuration_name", force_new=True, required=True),
            attr("backend_address_pool_id", force_new=True, required=True, case_insensitive=True),
        ]
    )

    async def address_from_attributes(
        self, ctx: EngineContext, attributes: Mapping[str, Any]
    ) -> BackendPoolAssociationId:
        network_interface = NETWORK_INTERFACE_ID.parse(attributes["network_interface_id"])
        backend_pool = LOAD_BALANCER_BACKEND_POOL_ID.parse(attributes["backend_address_pool_id"])
        return BackendPoolAssociationId(
            network_interface=network_interface,
            ip_configuration_name=attributes["ip_configuration_name"],
            backend_address_pool_id=str(backend_pool),
        )

    def parse_id(self, resource_id: str) -> BackendPoolAssociationId:
        return parse_backend_pool_association_id(resource_id)

    def target(self, address: BackendPoolAssociationId) -> ResourceId:
        return address.network_interface

    def context(self, address: Any, attributes: Mapping[str, Any]) -> ResourceContext:
        if isinstance(address, BackendPoolAssociationId):
            nic = address.network_interface
            return ResourceContext(
                self.label, f"{nic.name}/{address.ip_configuration_name}", nic.resource_group
            )
        return super().context(address, attributes)

    def exists(self, body: Mapping[str, Any], address: BackendPoolAssociationId) -> bool:
        ip_configuration = _find_ip_configuration(body, address.ip_configuration_name)
        if ip_configuration is None:
            return False
        wanted = address.backend_address_pool_id.lower()
        return any(pool_id.lower() == wanted for pool_id in _pool_ids(ip_configuration))

    def state_id(self, body: Mapping[str, Any], address: BackendPoolAssociationId) -> str:
        return str(address)

    def expand(
        self, attributes: Mapping[str, Any], current: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        if current is None:
            raise ProvisionerError(
                f"network interface {attributes.get('network_interface_id')!r} was not found"
            )
        body = copy.deepcopy(dict(current))
        ip_configuration = _find_ip_configuration(body, attributes["ip_configuration_name"])
        if ip_configuration is None:
            raise ProvisionerError(
                f"IP configuration {attributes['ip_configuration_name']!r} was not found on "
                f"network interface {attributes.get('network_interface_id')!r}"
            )
        properties = ip_configuration.setdefault("properties", {})
        pools = list(properties.get("loadBalancerBackendAddressPools") or [])
        pools.append({"id": attributes["backend_address_pool_id"]})
        properties["loadBalancerBackendAddressPools"] = pools
        return body

    def flatten(self, body: Mapping[str, Any], address: BackendPoolAssociationId) -> dict[str, Any]:
        return {
            "network_interface_id": body.get("id") or str(address.network_interface),
            "ip_configuration_name": address.ip_configuration_name,
            "backend_address_pool_id": address.backend_address_pool_id,
        }

    def lock_keys(
        self, attributes: Mapping[str, Any], observed: Mapping[str, Any] | None = None
    ) -> list[LockKey]:
        network_interface = NETWORK_INTERFACE_ID.parse(attributes["network_interface_id"])
        return [LockKey(LockCategory.NETWORK_INTERFACE, network_interface.name)]

    async def delete(
        self, ops: ResourceOperations, address: BackendPoolAssociationId, state: ResourceState
    ) -> None:
        keys = [LockKey(LockCategory.NETWORK_INTERFACE, address.network_interface.name)]
        async with ops.hold(keys):
            current = await ops.get(address)
            body = copy.deepcopy(dict(current))
            ip_configuration = _find_ip_configuration(body, address.ip_configuration_name)
            if ip_configuration is None:
                raise ResourceNotFoundError(
                    f"IP configuration {address.ip_configuration_name!r} no longer exists"
                )
            wanted = address.backend_address_pool_id.lower()
            properties = ip_configuration.setdefault("properties", {})
            properties["loadBalancerBackendAddressPools"] = [
                pool
                for pool in properties.get("loadBalancerBackendAddressPools") or []
                if str(pool.get("id", "")).lower() != wanted
            ]
            await ops.put(address, body)
