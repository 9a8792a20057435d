"""In-memory Azure fakes for engine tests.

- FakeArmApi: ARM generic resources (get / CreateOrUpdate / Delete by ID)
- FakeVault / FakeNestedItemApi / FakeDeleter: Key Vault secrets and keys
  with soft-delete and eventually-consistent reads
- ScriptedOperation: long-running operations with scripted poll results
- FakeAzure: everything above wired into an EngineContext

Usage:
    from azure_mock import FakeAzure

    azure = FakeAzure()
    orchestrator = ResourceOrchestrator(azure.ctx, RouteTableDescriptor())
    state = await orchestrator.create({...})
    assert azure.arm.count("put") == 1
"""

from .arm import FakeArmApi
from .context import RESOURCE_GROUP, SUBSCRIPTION_ID, VAULT_URL, FakeAzure, fast_config
from .keyvault import FakeDeleter, FakeNestedItemApi, FakeVault
from .operations import ScriptedOperation, http_error, never_finishes, not_found, running

__all__ = [
    "RESOURCE_GROUP",
    "SUBSCRIPTION_ID",
    "VAULT_URL",
    "FakeArmApi",
    "FakeAzure",
    "FakeDeleter",
    "FakeNestedItemApi",
    "FakeVault",
    "ScriptedOperation",
    "fast_config",
    "http_error",
    "never_finishes",
    "not_found",
    "running",
]
