"""Key Vault resource descriptors.

The vault itself is an ARM resource. Secrets and keys live on the vault's
data plane, are addressed by NestedItemId, and are removed through the
soft-delete state machine (optionally purging, per configuration). The
`data.` variants only read an existing secret or key.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .diff import ResourceSchema, attr
from .errors import ProvisionerError
from .locks import LockCategory, LockKey
from .orchestrator import EngineContext, ResourceDescriptor, ResourceOperations, ResourceState
from .resource_id import (
    KEY_VAULT_ID,
    SUBNET_ID,
    NestedItemId,
    ResourceId,
    parse_nested_item_id,
    validate_nested_item_name,
)
from .soft_delete import delete_then_optionally_purge


class KeyVaultDescriptor(ResourceDescriptor):
    """Key vaults lock their own name and every virtual network referenced
    by a network ACL rule (the ACL binds to subnets of those networks)."""

    type_name = "azurestack_key_vault"
    label = "Key Vault"
    id_format = KEY_VAULT_ID
    schema = ResourceSchema(
        [
            attr("name", force_new=True, required=True),
            attr("resource_group_name", force_new=True, required=True, case_insensitive=True),
            attr("location", force_new=True, case_insensitive=True),
            attr("sku_name", required=True, case_insensitive=True),
            attr("tenant_id", required=True, case_insensitive=True),
            attr("access_policy", unordered=True),
            attr("enabled_for_deployment"),
            attr("enabled_for_disk_encryption"),
            attr("enabled_for_template_deployment"),
            attr("network_acls"),
            attr("tags"),
            attr("vault_uri", computed=True),
        ]
    )

    async def address_from_attributes(
        self, ctx: EngineContext, attributes: Mapping[str, Any]
    ) -> ResourceId:
        return KEY_VAULT_ID.build(
            subscription_id=ctx.config.subscription_id,
            resource_group=attributes.get("resource_group_name"),
            name=attributes.get("name"),
        )

    def expand(
        self, attributes: Mapping[str, Any], current: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        properties: dict[str, Any] = {
            "tenantId": attributes.get("tenant_id"),
            "sku": {"family": "A", "name": attributes.get("sku_name")},
            "accessPolicies": [
                _expand_access_policy(p) for p in attributes.get("access_policy") or []
            ],
            "enabledForDeployment": bool(attributes.get("enabled_for_deployment")),
            "enabledForDiskEncryption": bool(attributes.get("enabled_for_disk_encryption")),
            "enabledForTemplateDeployment": bool(
                attributes.get("enabled_for_template_deployment")
            ),
        }
        if attributes.get("network_acls"):
            properties["networkAcls"] = _expand_network_acls(attributes["network_acls"])
        return {
            "location": attributes.get("location"),
            "tags": dict(attributes.get("tags") or {}),
            "properties": properties,
        }

    def flatten(self, body: Mapping[str, Any], address: ResourceId) -> dict[str, Any]:
        props = dict(body.get("properties") or {})
        return {
            "name": address.name,
            "resource_group_name": address.resource_group,
            "location": body.get("location"),
            "sku_name": (props.get("sku") or {}).get("name"),
            "tenant_id": props.get("tenantId"),
            "access_policy": [_flatten_access_policy(p) for p in props.get("accessPolicies") or []],
            "enabled_for_deployment": props.get("enabledForDeployment"),
            "enabled_for_disk_encryption": props.get("enabledForDiskEncryption"),
            "enabled_for_template_deployment": props.get("enabledForTemplateDeployment"),
            "network_acls": _flatten_network_acls(props.get("networkAcls")),
            "tags": dict(body.get("tags") or {}),
            "vault_uri": props.get("vaultUri"),
        }

    def lock_keys(
        self, attributes: Mapping[str, Any], observed: Mapping[str, Any] | None = None
    ) -> list[LockKey]:
        keys = [LockKey(LockCategory.KEY_VAULT, attributes["name"])]
        acls = attributes.get("network_acls") or {}
        for subnet_id in acls.get("virtual_network_subnet_ids") or []:
            subnet = SUBNET_ID.parse(subnet_id)
            keys.append(LockKey(LockCategory.VIRTUAL_NETWORK, subnet.segment("virtualNetworks")))
        return keys


def _expand_access_policy(policy: Mapping[str, Any]) -> dict[str, Any]:
    expanded: dict[str, Any] = {
        "tenantId": policy.get("tenant_id"),
        "objectId": policy.get("object_id"),
        "permissions": {
            "keys": list(policy.get("key_permissions") or []),
            "secrets": list(policy.get("secret_permissions") or []),
            "certificates": list(policy.get("certificate_permissions") or []),
        },
    }
    if policy.get("application_id"):
        expanded["applicationId"] = policy["application_id"]
    return expanded


def _flatten_access_policy(policy: Mapping[str, Any]) -> dict[str, Any]:
    permissions = policy.get("permissions") or {}
    flattened: dict[str, Any] = {
        "tenant_id": policy.get("tenantId"),
        "object_id": policy.get("objectId"),
        "key_permissions": list(permissions.get("keys") or []),
        "secret_permissions": list(permissions.get("secrets") or []),
        "certificate_permissions": list(permissions.get("certificates") or []),
    }
    if policy.get("applicationId"):
        flattened["application_id"] = policy["applicationId"]
    return flattened


def _expand_network_acls(acls: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "defaultAction": acls.get("default_action"),
        "bypass": acls.get("bypass"),
        "ipRules": [{"value": ip} for ip in acls.get("ip_rules") or []],
        "virtualNetworkRules": [
            {"id": subnet_id} for subnet_id in acls.get("virtual_network_subnet_ids") or []
        ],
    }


def _flatten_network_acls(acls: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not acls:
        return None
    return {
        "default_action": acls.get("defaultAction"),
        "bypass": acls.get("bypass"),
        "ip_rules": [rule.get("value") for rule in acls.get("ipRules") or []],
        "virtual_network_subnet_ids": [
            rule.get("id") for rule in acls.get("virtualNetworkRules") or []
        ],
    }


async def resolve_vault_uri(ctx: EngineContext, attributes: Mapping[str, Any]) -> str:
    """Return the data-plane URL of the vault an item belongs to.

    Uses `vault_uri` when given, otherwise looks up `key_vault_id` via ARM.
    """
    if attributes.get("vault_uri"):
        return str(attributes["vault_uri"])

    key_vault_id = attributes.get("key_vault_id")
    if not key_vault_id:
        raise ProvisionerError("either key_vault_id or vault_uri must be set")

    vault = await ctx.api("arm").get(KEY_VAULT_ID.parse(key_vault_id))
    vault_uri = (vault.get("properties") or {}).get("vaultUri")
    if not vault_uri:
        raise ProvisionerError(f"key vault {key_vault_id!r} did not report a vaultUri")
    return str(vault_uri)


class _NestedItemDescriptor(ResourceDescriptor):
    item_type: str

    async def address_from_attributes(
        self, ctx: EngineContext, attributes: Mapping[str, Any]
    ) -> NestedItemId:
        name = str(attributes.get("name") or "")
        validate_nested_item_name(name)
        vault_uri = await resolve_vault_uri(ctx, attributes)
        return NestedItemId(vault_base_url=vault_uri, item_type=self.item_type, name=name)

    def parse_id(self, resource_id: str) -> NestedItemId:
        # Stored ids are versioned; reads always target the latest version
        return parse_nested_item_id(resource_id, require_version=False).versionless

    async def delete(self, ops: ResourceOperations, address: NestedItemId, state: ResourceState) -> None:
        config = ops.ctx.config
        await delete_then_optionally_purge(
            f"{self.label} {address.name!r} (Key Vault {address.vault_base_url!r})",
            config.purge_soft_delete_on_destroy,
            ops.api.deleter(address),
            timeout=ops.remaining(),
            poll_interval=config.soft_delete_poll_interval_seconds,
            consecutive_observations=config.soft_delete_consecutive_observations,
            context=ops.context,
        )


_NESTED_ITEM_DATES = (attr("not_before_date"), attr("expiration_date"))


class KeyVaultSecretDescriptor(_NestedItemDescriptor):
    type_name = "azurestack_key_vault_secret"
    label = "Key Vault Secret"
    api_name = "keyvault_secrets"
    item_type = "secrets"
    schema = ResourceSchema(
        [
            attr("name", force_new=True, required=True),
            attr("key_vault_id", force_new=True, case_insensitive=True),
            attr("vault_uri", force_new=True, case_insensitive=True),
            attr("value", required=True, sensitive=True),
            attr("content_type"),
            *_NESTED_ITEM_DATES,
            attr("tags"),
            attr("version", computed=True),
        ]
    )

    def expand(
        self, attributes: Mapping[str, Any], current: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        body = {
            "content_type": attributes.get("content_type"),
            "not_before_date": attributes.get("not_before_date"),
            "expiration_date": attributes.get("expiration_date"),
            "tags": dict(attributes.get("tags") or {}),
        }
        # Only a changed value creates a new secret version
        if current is None or current.get("value") != attributes.get("value"):
            body["value"] = attributes.get("value")
        return body

    def flatten(self, body: Mapping[str, Any], address: NestedItemId) -> dict[str, Any]:
        return {
            "name": address.name,
            "vault_uri": address.vault_base_url,
            "value": body.get("value"),
            "content_type": body.get("content_type"),
            "not_before_date": body.get("not_before_date"),
            "expiration_date": body.get("expiration_date"),
            "tags": dict(body.get("tags") or {}),
            "version": body.get("version"),
        }


class KeyVaultKeyDescriptor(_NestedItemDescriptor):
    type_name = "azurestack_key_vault_key"
    label = "Key Vault Key"
    api_name = "keyvault_keys"
    item_type = "keys"
    schema = ResourceSchema(
        [
            attr("name", force_new=True, required=True),
            attr("key_vault_id", force_new=True, case_insensitive=True),
            attr("vault_uri", force_new=True, case_insensitive=True),
            attr("key_type", force_new=True, required=True, case_insensitive=True),
            attr("key_size", force_new=True, numeric_string=True),
            attr("curve", force_new=True, case_insensitive=True),
            attr("key_opts", required=True, unordered=True, case_insensitive=True),
            *_NESTED_ITEM_DATES,
            attr("tags"),
            attr("version", computed=True),
            attr("n", computed=True),
            attr("e", computed=True),
        ]
    )

    def expand(
        self, attributes: Mapping[str, Any], current: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "key_opts": list(attributes.get("key_opts") or []),
            "not_before_date": attributes.get("not_before_date"),
            "expiration_date": attributes.get("expiration_date"),
            "tags": dict(attributes.get("tags") or {}),
        }
        if current is None:
            body["key_type"] = attributes.get("key_type")
            body["key_size"] = attributes.get("key_size")
            body["curve"] = attributes.get("curve")
        return body

    def flatten(self, body: Mapping[str, Any], address: NestedItemId) -> dict[str, Any]:
        return {
            "name": address.name,
            "vault_uri": address.vault_base_url,
            "key_type": body.get("key_type"),
            "key_size": body.get("key_size"),
            "curve": body.get("curve"),
            "key_opts": list(body.get("key_opts") or []),
            "not_before_date": body.get("not_before_date"),
            "expiration_date": body.get("expiration_date"),
            "tags": dict(body.get("tags") or {}),
            "version": body.get("version"),
            "n": body.get("n"),
            "e": body.get("e"),
        }


class KeyVaultSecretDataSource(KeyVaultSecretDescriptor):
    """Latest version of an existing secret."""

    type_name = "data.azurestack_key_vault_secret"
    read_only = True
    schema = ResourceSchema(
        [
            attr("name", required=True),
            attr("key_vault_id", case_insensitive=True),
            attr("vault_uri", case_insensitive=True),
            attr("value", computed=True, sensitive=True),
            attr("content_type", computed=True),
            attr("not_before_date", computed=True),
            attr("expiration_date", computed=True),
            attr("tags", computed=True),
            attr("version", computed=True),
        ]
    )


class KeyVaultKeyDataSource(KeyVaultKeyDescriptor):
    type_name = "data.azurestack_key_vault_key"
    read_only = True
    schema = ResourceSchema(
        [
            attr("name", required=True),
            attr("key_vault_id", case_insensitive=True),
            attr("vault_uri", case_insensitive=True),
            attr("key_type", computed=True),
            attr("key_size", computed=True),
            attr("curve", computed=True),
            attr("key_opts", computed=True),
            attr("not_before_date", computed=True),
            attr("expiration_date", computed=True),
            attr("tags", computed=True),
            attr("version", computed=True),
            attr("n", computed=True),
            attr("e", computed=True),
        ]
    )
