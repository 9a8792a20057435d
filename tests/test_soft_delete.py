"""Tests for the soft-delete / purge state machine."""

from __future__ import annotations

import pytest
from azure.core.exceptions import HttpResponseError

from azure_mock import FakeDeleter, FakeVault, http_error, not_found
from provisioner.errors import OperationTimeoutError, SoftDeleteError
from provisioner.soft_delete import SoftDeleteState, delete_then_optionally_purge, wait_for_absence

VAULT_URL = "https://kv-test.vault.local.azurestack.external/"


def vault_with(name: str, visibility_lag: int = 0) -> FakeVault:
    vault = FakeVault("secrets", visibility_lag)
    vault.write(VAULT_URL, name, {"value": "hunter2"})
    return vault


class ScriptedRead:
    """Read that returns (item visible) or raises NotFound per script."""

    def __init__(self, script: list[bool]) -> None:
        self._script = script
        self.calls = 0

    async def __call__(self) -> None:
        visible = self._script[min(self.calls, len(self._script) - 1)]
        self.calls += 1
        if not visible:
            raise not_found()


class TestWaitForAbsence:
    """Tests for the consecutive not-found convergence loop."""

    @pytest.mark.asyncio
    async def test_requires_consecutive_observations(self) -> None:
        read_item = ScriptedRead([False, True, False, False, False])

        polls = await wait_for_absence(read_item, "absence", timeout=5, poll_interval=0)

        # The reappearance at poll 2 resets the count
        assert polls == 5

    @pytest.mark.asyncio
    async def test_single_observation_when_configured(self) -> None:
        read_item = ScriptedRead([True, False])

        polls = await wait_for_absence(
            read_item, "absence", timeout=5, poll_interval=0, consecutive_observations=1
        )

        assert polls == 2

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        read_item = ScriptedRead([True])

        with pytest.raises(OperationTimeoutError):
            await wait_for_absence(read_item, "absence", timeout=0.05, poll_interval=0.01)

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self) -> None:
        async def read_item() -> None:
            raise http_error(403, "Forbidden")

        with pytest.raises(HttpResponseError) as exc_info:
            await wait_for_absence(read_item, "absence", timeout=5, poll_interval=0)

        assert exc_info.value.status_code == 403


class TestDeleteThenOptionallyPurge:
    """Tests for delete_then_optionally_purge."""

    @pytest.mark.asyncio
    async def test_purge_called_exactly_once(self) -> None:
        vault = vault_with("db-password", visibility_lag=2)

        result = await delete_then_optionally_purge(
            "secret db-password", True, FakeDeleter(vault, "db-password"), timeout=5, poll_interval=0
        )

        assert result == SoftDeleteState.PURGED
        assert vault.delete_calls["db-password"] == 1
        assert vault.purge_calls["db-password"] == 1
        assert "db-password" not in vault.active
        assert "db-password" not in vault.deleted

    @pytest.mark.asyncio
    async def test_purge_never_called_when_opted_out(self) -> None:
        vault = vault_with("db-password", visibility_lag=1)

        result = await delete_then_optionally_purge(
            "secret db-password", False, FakeDeleter(vault, "db-password"), timeout=5, poll_interval=0
        )

        assert result == SoftDeleteState.SOFT_DELETED
        assert vault.purge_calls["db-password"] == 0
        # Recoverable: still in the deleted view
        assert "db-password" in vault.deleted

    @pytest.mark.asyncio
    async def test_already_absent(self) -> None:
        vault = FakeVault("secrets")

        result = await delete_then_optionally_purge(
            "secret gone", True, FakeDeleter(vault, "gone"), timeout=5, poll_interval=0
        )

        assert result is None
        assert vault.purge_calls["gone"] == 0

    @pytest.mark.asyncio
    async def test_waits_for_eventual_consistency(self) -> None:
        vault = vault_with("db-password", visibility_lag=3)

        await delete_then_optionally_purge(
            "secret db-password",
            False,
            FakeDeleter(vault, "db-password"),
            timeout=5,
            poll_interval=0,
            consecutive_observations=3,
        )

        # 3 reads still see the item, then 3 consecutive not-found
        assert vault.reads["db-password"] == 6

    @pytest.mark.asyncio
    async def test_delete_failure_wrapped(self) -> None:
        class FailingDeleter(FakeDeleter):
            async def delete_nested_item(self) -> None:
                raise http_error(403, "Forbidden")

        with pytest.raises(SoftDeleteError) as exc_info:
            await delete_then_optionally_purge(
                "secret x", True, FailingDeleter(FakeVault(), "x"), timeout=5, poll_interval=0
            )
        assert "Forbidden" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_purge_failure_wrapped(self) -> None:
        vault = vault_with("x")

        class PurgeForbidden(FakeDeleter):
            async def purge_nested_item(self) -> None:
                raise http_error(403, "purge not permitted")

        with pytest.raises(SoftDeleteError) as exc_info:
            await delete_then_optionally_purge(
                "secret x", True, PurgeForbidden(vault, "x"), timeout=5, poll_interval=0
            )
        assert "purging" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_is_not_wrapped(self) -> None:
        vault = vault_with("x", visibility_lag=10_000)

        with pytest.raises(OperationTimeoutError):
            await delete_then_optionally_purge(
                "secret x", True, FakeDeleter(vault, "x"), timeout=0.05, poll_interval=0.01
            )

        assert vault.purge_calls["x"] == 0
