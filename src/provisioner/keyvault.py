"""Key Vault data-plane adapters for secrets and keys.

Nested items are addressed by NestedItemId (vault URL + name), not by ARM
resource ID. Writes complete synchronously, so mutations return a
CompletedOperation. Deletion goes through the soft-delete machine instead of
begin_delete; see soft_delete.delete_then_optionally_purge.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Any

from azure.core.credentials import TokenCredential
from azure.keyvault.keys import KeyClient, KeyVaultKey
from azure.keyvault.secrets import KeyVaultSecret, SecretClient

from .lro import CompletedOperation, LongRunningOperation
from .resource_id import NestedItemId
from .soft_delete import KeyDeleter, NestedItemDeleter, SecretDeleter

logger = logging.getLogger(__name__)


def _parse_date(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    # Accept the trailing "Z" RFC 3339 form
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _format_date(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


async def _run(func: Any, *args: Any, **kwargs: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))


class _VaultClients:
    """Per-vault client cache."""

    def __init__(self, factory: Any) -> None:
        self._factory = factory
        self._clients: dict[str, Any] = {}

    def get(self, vault_url: str) -> Any:
        key = vault_url.rstrip("/").lower()
        client = self._clients.get(key)
        if client is None:
            client = self._factory(vault_url)
            self._clients[key] = client
        return client


def secret_to_dict(secret: KeyVaultSecret) -> dict[str, Any]:
    props = secret.properties
    return {
        "id": secret.id,
        "name": secret.name,
        "value": secret.value,
        "content_type": props.content_type,
        "enabled": props.enabled,
        "not_before_date": _format_date(props.not_before),
        "expiration_date": _format_date(props.expires_on),
        "tags": dict(props.tags or {}),
        "version": props.version,
    }


def key_to_dict(key: KeyVaultKey) -> dict[str, Any]:
    props = key.properties
    material = key.key
    key_size = None
    if material is not None and getattr(material, "n", None):
        key_size = len(material.n) * 8
    return {
        "id": key.id,
        "name": key.name,
        "key_type": _enum_value(key.key_type),
        "key_size": key_size,
        "curve": _enum_value(material.crv) if material is not None else None,
        "key_opts": [_enum_value(op) for op in (key.key_operations or [])],
        "enabled": props.enabled,
        "not_before_date": _format_date(props.not_before),
        "expiration_date": _format_date(props.expires_on),
        "tags": dict(props.tags or {}),
        "version": props.version,
        "n": material.n.hex() if material is not None and material.n else None,
        "e": material.e.hex() if material is not None and material.e else None,
    }


class KeyVaultSecretApi:
    """ResourceApi for Key Vault secrets."""

    def __init__(self, credential: TokenCredential | None = None, client_factory: Any = None) -> None:
        if client_factory is None:
            client_factory = partial(_secret_client, credential=credential)
        self._clients = _VaultClients(client_factory)

    def client(self, address: NestedItemId) -> SecretClient:
        return self._clients.get(address.vault_base_url)

    async def get(self, address: NestedItemId) -> dict[str, Any]:
        # Always the latest version; the stored id pins the version seen last
        secret = await _run(self.client(address).get_secret, address.name)
        return secret_to_dict(secret)

    async def begin_create_or_update(
        self, address: NestedItemId, body: dict[str, Any]
    ) -> LongRunningOperation:
        client = self.client(address)
        options = {
            "content_type": body.get("content_type"),
            "enabled": body.get("enabled"),
            "not_before": _parse_date(body.get("not_before_date")),
            "expires_on": _parse_date(body.get("expiration_date")),
            "tags": body.get("tags") or None,
        }
        if "value" in body:
            # A new value creates a new version
            secret = await _run(client.set_secret, address.name, body["value"], **options)
            result = secret_to_dict(secret)
        else:
            props = await _run(client.update_secret_properties, address.name, **options)
            result = {"id": props.id, "name": props.name, "version": props.version}
        return CompletedOperation(result, f"SetSecret {address.name!r}")

    async def begin_delete(self, address: NestedItemId) -> LongRunningOperation:
        await self.deleter(address).delete_nested_item()
        return CompletedOperation(None, f"DeleteSecret {address.name!r}")

    def deleter(self, address: NestedItemId) -> NestedItemDeleter:
        return SecretDeleter(self.client(address), address.name)


class KeyVaultKeyApi:
    """ResourceApi for Key Vault keys."""

    def __init__(self, credential: TokenCredential | None = None, client_factory: Any = None) -> None:
        if client_factory is None:
            client_factory = partial(_key_client, credential=credential)
        self._clients = _VaultClients(client_factory)

    def client(self, address: NestedItemId) -> KeyClient:
        return self._clients.get(address.vault_base_url)

    async def get(self, address: NestedItemId) -> dict[str, Any]:
        key = await _run(self.client(address).get_key, address.name)
        return key_to_dict(key)

    async def begin_create_or_update(
        self, address: NestedItemId, body: dict[str, Any]
    ) -> LongRunningOperation:
        client = self.client(address)
        options = {
            "key_operations": body.get("key_opts"),
            "enabled": body.get("enabled"),
            "not_before": _parse_date(body.get("not_before_date")),
            "expires_on": _parse_date(body.get("expiration_date")),
            "tags": body.get("tags") or None,
        }
        # key_type is only sent when a new key (or key version) is wanted
        if "key_type" in body:
            key_type = body["key_type"]
            kwargs: dict[str, Any] = dict(options)
            if body.get("key_size"):
                kwargs["size"] = int(body["key_size"])
            if body.get("curve"):
                kwargs["curve"] = body["curve"]
            key = await _run(client.create_key, address.name, key_type, **kwargs)
        else:
            key = await _run(client.update_key_properties, address.name, **options)
        return CompletedOperation(key_to_dict(key), f"CreateKey {address.name!r}")

    async def begin_delete(self, address: NestedItemId) -> LongRunningOperation:
        await self.deleter(address).delete_nested_item()
        return CompletedOperation(None, f"DeleteKey {address.name!r}")

    def deleter(self, address: NestedItemId) -> NestedItemDeleter:
        return KeyDeleter(self.client(address), address.name)


def _secret_client(vault_url: str, credential: TokenCredential) -> SecretClient:
    logger.debug("Creating secret client", extra={"vault_url": vault_url})
    return SecretClient(vault_url=vault_url, credential=credential)


def _key_client(vault_url: str, credential: TokenCredential) -> KeyClient:
    logger.debug("Creating key client", extra={"vault_url": vault_url})
    return KeyClient(vault_url=vault_url, credential=credential)
