"""Error taxonomy for resource reconciliation.

Every failure surfaced by the engine is one of the exceptions below.
Remote errors arrive as azure.core exceptions and are translated at the
orchestrator boundary; NotFound is the only remote condition that is
converted into a state change instead of an error (read/refresh paths).

OUTCOME SEMANTICS:
- RemoteOperationError: the control plane reported the operation failed.
- OperationTimeoutError: we stopped waiting. The remote operation may
  still succeed or fail later. Callers must verify manually, never
  assume a rollback happened.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ResourceContext:
    """Identifies the resource an error belongs to."""

    resource_type: str
    name: str
    scope: str | None = None

    def __str__(self) -> str:
        if self.scope:
            return f"{self.resource_type} {self.name!r} ({self.scope})"
        return f"{self.resource_type} {self.name!r}"


class ProvisionerError(Exception):
    """Base class for all engine errors."""

    # Remediation hint: True when retrying is safe without manual checks
    retryable: bool = False
    outcome_unknown: bool = False

    def __init__(self, message: str, context: ResourceContext | None = None) -> None:
        self.context = context
        if context is not None:
            message = f"{context}: {message}"
        super().__init__(message)


class ConfigurationError(ProvisionerError):
    """Raised when configuration validation fails."""

    pass


class MalformedResourceIdError(ProvisionerError, ValueError):
    """Raised when a resource identifier cannot be parsed."""

    def __init__(self, resource_id: str, reason: str) -> None:
        self.resource_id = resource_id
        self.reason = reason
        super().__init__(f"unable to parse resource ID {resource_id!r}: {reason}")


class AlreadyExistsError(ProvisionerError):
    """Raised when creation targets an object that already exists.

    The object must be imported into state to be managed.
    """

    def __init__(self, resource_id: str, context: ResourceContext | None = None) -> None:
        self.resource_id = resource_id
        super().__init__(
            f"a resource with the ID {resource_id!r} already exists - "
            f"to be managed it needs to be imported into state",
            context,
        )


@dataclass(frozen=True)
class FieldDrift:
    """A force-new attribute whose desired and observed values differ."""

    attribute: str
    observed: Any
    desired: Any

    def __str__(self) -> str:
        return f"{self.attribute}: observed={self.observed!r} desired={self.desired!r}"


class ImmutableFieldDriftError(ProvisionerError):
    """Raised when a force-new attribute differs on an update path."""

    def __init__(self, drifts: list[FieldDrift], context: ResourceContext | None = None) -> None:
        self.drifts = list(drifts)
        details = "; ".join(str(d) for d in self.drifts)
        super().__init__(
            f"attributes cannot be changed in place (destroy and recreate required): {details}",
            context,
        )


class RemoteOperationError(ProvisionerError):
    """Raised when the control plane reports a terminal failure."""

    def __init__(
        self,
        message: str,
        status: str | None = None,
        status_code: int | None = None,
        context: ResourceContext | None = None,
    ) -> None:
        self.status = status
        self.status_code = status_code
        super().__init__(message, context)


class TransportRetryExhaustedError(ProvisionerError):
    """Raised when transient transport errors outlast the retry budget."""

    retryable = True

    def __init__(
        self,
        message: str,
        attempts: int,
        status_code: int | None = None,
        context: ResourceContext | None = None,
    ) -> None:
        self.attempts = attempts
        self.status_code = status_code
        super().__init__(message, context)


class OperationTimeoutError(ProvisionerError):
    """Raised when waiting for a remote operation exceeds its deadline.

    The final remote state is UNKNOWN. This is never a remote failure.
    """

    outcome_unknown = True

    def __init__(
        self,
        operation: str,
        timeout_seconds: float,
        context: ResourceContext | None = None,
    ) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"timed out after {timeout_seconds:.0f}s waiting for {operation}; "
            f"the final remote state is unknown and must be verified manually",
            context,
        )


class LockTimeoutError(ProvisionerError):
    """Raised when a named lock cannot be acquired in time."""

    retryable = True

    def __init__(self, lock_key: str, timeout_seconds: float) -> None:
        self.lock_key = lock_key
        self.timeout_seconds = timeout_seconds
        super().__init__(f"timeout acquiring lock {lock_key} after {timeout_seconds:.0f}s")


class SoftDeleteError(ProvisionerError):
    """Raised when a soft-delete or purge step fails."""

    pass


class ManifestError(ProvisionerError):
    """Raised when a manifest cannot be loaded or validated."""

    pass


class StateFileError(ProvisionerError):
    """Raised when the persisted state file cannot be read or written."""

    pass
