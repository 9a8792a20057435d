"""Manifest loading with validation.

A manifest declares the resources to manage:

    resources:
      - type: azurestack_route_table
        name: rt
        attributes:
          name: rt-app
          resource_group_name: rg-app
          location: local
      - type: azurestack_subnet_route_table_association
        name: app-rt
        attributes:
          subnet_id: /subscriptions/.../subnets/app
          route_table_id: ${rt.id}

`${<resource>.<attribute>}` references another resource's persisted id or
attribute and implies a dependency on it.

`location` may be omitted when AZURE_LOCATION is configured. Types
prefixed `data.` are data sources: existing objects that are read and
recorded but never changed.

SECURITY: The file size is checked before reading.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .catalog import DESCRIPTORS
from .errors import ManifestError

logger = logging.getLogger(__name__)

MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024

REFERENCE_PATTERN = re.compile(r"\$\{([A-Za-z0-9_.-]+)\.([A-Za-z0-9_]+)\}")


def find_references(value: Any) -> set[str]:
    """Logical names referenced anywhere inside `value`."""
    if isinstance(value, str):
        return {m.group(1) for m in REFERENCE_PATTERN.finditer(value)}
    if isinstance(value, dict):
        return set().union(*(find_references(v) for v in value.values())) if value else set()
    if isinstance(value, list):
        return set().union(*(find_references(v) for v in value)) if value else set()
    return set()


class ResourceDeclaration(BaseModel):
    """One declared resource."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    type: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_.-]+$")]
    attributes: dict[str, Any] = Field(default_factory=dict)
    import_existing: bool = Field(False, alias="import")
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in DESCRIPTORS:
            raise ValueError(f"unknown resource type '{v}'. Supported types: {sorted(DESCRIPTORS)}")
        return v

    @model_validator(mode="after")
    def validate_attributes(self) -> ResourceDeclaration:
        descriptor = DESCRIPTORS[self.type]
        if descriptor.read_only and self.import_existing:
            raise ValueError(f"{self.type} is a data source and cannot be imported")
        schema = descriptor.schema
        unknown = sorted(k for k in self.attributes if k not in schema)
        if unknown:
            raise ValueError(f"unknown attributes for {self.type}: {unknown}")
        computed = sorted(a.name for a in schema.computed if a.name in self.attributes)
        if computed:
            raise ValueError(f"computed attributes cannot be set: {computed}")
        missing = sorted(a.name for a in schema.required if a.name not in self.attributes)
        if missing:
            raise ValueError(f"missing required attributes for {self.type}: {missing}")
        return self

    @property
    def dependencies(self) -> set[str]:
        return set(self.depends_on) | find_references(self.attributes)


class Manifest(BaseModel):
    """Top-level manifest."""

    model_config = {"extra": "forbid"}

    resources: list[ResourceDeclaration] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_graph(self) -> Manifest:
        names = [r.name for r in self.resources]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate resource names: {duplicates}")

        known = set(names)
        for resource in self.resources:
            missing = sorted(resource.dependencies - known)
            if missing:
                raise ValueError(f"resource '{resource.name}' depends on undeclared {missing}")

        self._check_acyclic()
        return self

    def _check_acyclic(self) -> None:
        graph = {r.name: r.dependencies for r in self.resources}
        visiting: set[str] = set()
        done: set[str] = set()

        def visit(name: str, path: list[str]) -> None:
            if name in done:
                return
            if name in visiting:
                cycle = " -> ".join([*path[path.index(name):], name])
                raise ValueError(f"dependency cycle: {cycle}")
            visiting.add(name)
            for dep in sorted(graph[name]):
                visit(dep, [*path, name])
            visiting.discard(name)
            done.add(name)

        for name in graph:
            visit(name, [])

    def get(self, name: str) -> ResourceDeclaration | None:
        for resource in self.resources:
            if resource.name == name:
                return resource
        return None


def parse_manifest(raw_data: Any, source: str = "<manifest>") -> Manifest:
    """Validate already-parsed YAML data.

    Raises:
        ManifestError: With one line per validation problem.
    """
    if not isinstance(raw_data, dict):
        raise ManifestError(f"Manifest must contain a YAML mapping: {source}")

    try:
        return Manifest.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}" if loc else f"  - {error['msg']}")
        error_list = "\n".join(errors)
        raise ManifestError(f"Validation failed for {source}:\n{error_list}") from e


def load_manifest(path: Path) -> Manifest:
    """Load and validate a manifest file.

    Raises:
        ManifestError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise ManifestError(f"Manifest file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestError(f"Failed to read manifest file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {path}: {e}") from e

    manifest = parse_manifest(raw_data, str(path))
    logger.info("Loaded manifest from %s", path, extra={"resources": len(manifest.resources)})
    return manifest
