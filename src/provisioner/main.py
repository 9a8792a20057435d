"""Process setup for the provisioner: logging, credentials, API clients.

SECRETLESS ARCHITECTURE:
Authentication uses a managed identity only. The credential check runs
before any Azure client is constructed.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

from .arm import ArmResourceApi
from .config import EngineConfig
from .keyvault import KeyVaultKeyApi, KeyVaultSecretApi
from .locks import LockRegistry
from .orchestrator import EngineContext
from .security import get_credential

# LogRecord attributes that are not `extra` fields
_RESERVED_RECORD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Install the JSON formatter on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level.upper())

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_context(config: EngineConfig) -> EngineContext:
    """Wire the API clients for a configuration.

    Raises:
        SecretlessViolationError: Credential secrets found in the environment.
    """
    credential = get_credential(config.managed_identity_client_id)
    return EngineContext(
        config=config,
        locks=LockRegistry(timeout_seconds=config.lock_timeout_seconds),
        apis={
            "arm": ArmResourceApi.create(credential, config.subscription_id, config.arm_endpoint),
            "keyvault_secrets": KeyVaultSecretApi(credential),
            "keyvault_keys": KeyVaultKeyApi(credential),
        },
    )
