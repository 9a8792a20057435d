"""Secretless credential acquisition.

The provisioner authenticates with a managed identity only. Secret-bearing
environment variables mean someone configured service principal or
password authentication, and startup is refused.
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class SecretlessViolationError(Exception):
    """Raised when a credential secret is present in the environment."""

    pass


def enforce_secretless() -> None:
    """Refuse to run when any forbidden credential variable is set.

    Raises:
        SecretlessViolationError: Names the offending variable.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless violation",
                extra={"security_event": "credential_detected", "env_var": env_var},
            )
            raise SecretlessViolationError(
                f"{env_var} is set. Only managed identity authentication is allowed; "
                f"remove credential variables and assign a managed identity instead."
            )


def get_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Return a ManagedIdentityCredential after the secretless check.

    Args:
        client_id: Client ID of a user-assigned identity. None selects the
            system-assigned identity.
    """
    enforce_secretless()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()
