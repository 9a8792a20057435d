"""Tests for logging setup and context wiring."""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Iterator
from unittest import mock

import pytest

from azure_mock import fast_config
from provisioner.arm import ArmResourceApi
from provisioner.keyvault import KeyVaultKeyApi, KeyVaultSecretApi
from provisioner.main import JsonFormatter, build_context, setup_logging
from provisioner.security import SecretlessViolationError


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def make_record(self, **extra: object) -> logging.LogRecord:
        record = logging.LogRecord("provisioner.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_basic_fields(self) -> None:
        data = json.loads(JsonFormatter().format(self.make_record()))

        assert data["message"] == "hello world"
        assert data["level"] == "INFO"
        assert data["logger"] == "provisioner.test"
        assert data["timestamp"].endswith("Z")

    def test_extra_fields_are_included(self) -> None:
        data = json.loads(JsonFormatter().format(self.make_record(resource_id="/x", attempt=2)))

        assert data["resource_id"] == "/x"
        assert data["attempt"] == 2
        assert "lineno" not in data

    def test_exception(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = self.make_record()
            record.exc_info = sys.exc_info()

        data = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: boom" in data["exception"]


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self) -> Iterator[None]:
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_installs_json_handler(self) -> None:
        setup_logging("debug")

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("azure").level == logging.WARNING


class TestBuildContext:
    """Tests for build_context."""

    @mock.patch("provisioner.security.ManagedIdentityCredential")
    def test_wires_apis(self, mock_credential_class: mock.Mock) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            ctx = build_context(fast_config())

        assert isinstance(ctx.api("arm"), ArmResourceApi)
        assert isinstance(ctx.api("keyvault_secrets"), KeyVaultSecretApi)
        assert isinstance(ctx.api("keyvault_keys"), KeyVaultKeyApi)

    def test_refuses_secrets(self) -> None:
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "s"}, clear=True):
            with pytest.raises(SecretlessViolationError):
                build_context(fast_config())
