"""Soft-delete and purge of Key Vault nested items.

Deleting a secret or key moves it through:

    Active -> Deleting -> SoftDeleted -> Purging -> Purged

An item can be recovered only while SoftDeleted. Purging is optional and
gated by the "purge on destroy" policy. The vault drives every transition;
this module only issues the delete/purge requests and polls until the store
reports the item absent a number of times in a row (reads are eventually
consistent, one NotFound is not proof).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from functools import partial
from typing import Any, Protocol

from azure.core.exceptions import ResourceNotFoundError
from azure.keyvault.keys import KeyClient
from azure.keyvault.secrets import SecretClient

from .errors import OperationTimeoutError, ResourceContext, SoftDeleteError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_CONSECUTIVE_OBSERVATIONS = 3


class SoftDeleteState(str, Enum):
    ACTIVE = "Active"
    DELETING = "Deleting"
    SOFT_DELETED = "SoftDeleted"
    PURGING = "Purging"
    PURGED = "Purged"


class NestedItemDeleter(Protocol):
    """Store operations for one nested item.

    Each method raises azure.core.exceptions.ResourceNotFoundError when the
    item is absent from the view it queries.
    """

    async def delete_nested_item(self) -> None: ...

    async def nested_item_has_been_deleted(self) -> None: ...

    async def purge_nested_item(self) -> None: ...

    async def nested_item_has_been_purged(self) -> None: ...


async def wait_for_absence(
    read: Callable[[], Awaitable[Any]],
    description: str,
    timeout: float,
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    consecutive_observations: int = DEFAULT_CONSECUTIVE_OBSERVATIONS,
    context: ResourceContext | None = None,
) -> int:
    """Poll `read` until it raises ResourceNotFoundError N times in a row.

    A successful read (item still visible) resets the count. Any other
    exception aborts the wait immediately.

    Returns:
        Number of reads made.

    Raises:
        OperationTimeoutError: Deadline reached before convergence.
    """
    polls = 0

    async def _converge() -> None:
        nonlocal polls
        observed = 0
        while True:
            polls += 1
            try:
                await read()
            except ResourceNotFoundError:
                observed += 1
                if observed >= consecutive_observations:
                    return
            else:
                observed = 0
            await asyncio.sleep(poll_interval)

    try:
        await asyncio.wait_for(_converge(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(description, timeout, context) from e
    return polls


async def delete_then_optionally_purge(
    description: str,
    should_purge: bool,
    helper: NestedItemDeleter,
    timeout: float,
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    consecutive_observations: int = DEFAULT_CONSECUTIVE_OBSERVATIONS,
    context: ResourceContext | None = None,
) -> SoftDeleteState | None:
    """Delete a nested item and, if `should_purge`, purge it.

    Both phases share one deadline.

    Returns:
        SOFT_DELETED or PURGED, or None if the item was already absent.

    Raises:
        SoftDeleteError: A delete, purge or read call failed.
        OperationTimeoutError: Deadline reached; outcome unknown.
    """
    deadline = time.monotonic() + timeout

    def remaining() -> float:
        return max(deadline - time.monotonic(), 0.0)

    logger.debug("Deleting nested item", extra={"item": description})
    try:
        await helper.delete_nested_item()
    except ResourceNotFoundError:
        logger.info("Nested item already absent", extra={"item": description})
        return None
    except Exception as e:
        raise SoftDeleteError(f"deleting {description}: {e}", context) from e

    logger.debug("Waiting for nested item to finish deleting", extra={"item": description})
    try:
        await wait_for_absence(
            helper.nested_item_has_been_deleted,
            f"deletion of {description}",
            remaining(),
            poll_interval,
            consecutive_observations,
            context,
        )
    except OperationTimeoutError:
        raise
    except Exception as e:
        raise SoftDeleteError(f"waiting for {description} to be deleted: {e}", context) from e
    logger.info(
        "Nested item soft-deleted",
        extra={"item": description, "state": SoftDeleteState.SOFT_DELETED.value},
    )

    if not should_purge:
        logger.debug("Skipping purge as opted out", extra={"item": description})
        return SoftDeleteState.SOFT_DELETED

    logger.debug("Purging nested item", extra={"item": description})
    try:
        await helper.purge_nested_item()
    except Exception as e:
        raise SoftDeleteError(f"purging {description}: {e}", context) from e

    try:
        await wait_for_absence(
            helper.nested_item_has_been_purged,
            f"purge of {description}",
            remaining(),
            poll_interval,
            consecutive_observations,
            context,
        )
    except OperationTimeoutError:
        raise
    except Exception as e:
        raise SoftDeleteError(f"waiting for {description} to finish purging: {e}", context) from e
    logger.info(
        "Nested item purged",
        extra={"item": description, "state": SoftDeleteState.PURGED.value},
    )
    return SoftDeleteState.PURGED


async def _run_blocking(func: Callable[..., Any], *args: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args))


class SecretDeleter:
    """NestedItemDeleter for a Key Vault secret."""

    def __init__(self, client: SecretClient, name: str) -> None:
        self._client = client
        self._name = name

    async def delete_nested_item(self) -> None:
        # The returned poller is not waited on; convergence is observed below
        await _run_blocking(self._client.begin_delete_secret, self._name)

    async def nested_item_has_been_deleted(self) -> None:
        await _run_blocking(self._client.get_secret, self._name)

    async def purge_nested_item(self) -> None:
        await _run_blocking(self._client.purge_deleted_secret, self._name)

    async def nested_item_has_been_purged(self) -> None:
        await _run_blocking(self._client.get_deleted_secret, self._name)


class KeyDeleter:
    """NestedItemDeleter for a Key Vault key."""

    def __init__(self, client: KeyClient, name: str) -> None:
        self._client = client
        self._name = name

    async def delete_nested_item(self) -> None:
        await _run_blocking(self._client.begin_delete_key, self._name)

    async def nested_item_has_been_deleted(self) -> None:
        await _run_blocking(self._client.get_key, self._name)

    async def purge_nested_item(self) -> None:
        await _run_blocking(self._client.purge_deleted_key, self._name)

    async def nested_item_has_been_purged(self) -> None:
        await _run_blocking(self._client.get_deleted_key, self._name)
