"""Persisted state: logical resource name -> ResourceState.

The file is JSON and is replaced atomically, so a crash mid-write leaves
the previous version intact.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

from .errors import StateFileError
from .orchestrator import ResourceState

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateStore:
    """In-memory view of the state file.

    Args:
        path: Location of the JSON state file. Missing means empty state.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._resources: dict[str, ResourceState] = {}
        self._dependencies: dict[str, list[str]] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._resources

    def __iter__(self) -> Iterator[str]:
        return iter(self._resources)

    def __len__(self) -> int:
        return len(self._resources)

    def get(self, name: str) -> ResourceState | None:
        return self._resources.get(name)

    def set(self, name: str, state: ResourceState, depends_on: Iterable[str] | None = None) -> None:
        self._resources[name] = state
        if depends_on is not None:
            self._dependencies[name] = sorted(depends_on)

    def remove(self, name: str) -> None:
        self._resources.pop(name, None)
        self._dependencies.pop(name, None)

    def dependencies(self, name: str) -> list[str]:
        """Logical names `name` depended on when it was last applied."""
        return list(self._dependencies.get(name, []))

    @classmethod
    def load(cls, path: Path) -> StateStore:
        """Read the state file.

        Raises:
            StateFileError: If the file exists but cannot be read or parsed.
        """
        store = cls(path)
        if not path.exists():
            logger.info("No state file, starting empty", extra={"state_file": str(path)})
            return store

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateFileError(f"Failed to read state file {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateFileError(f"Invalid JSON in state file {path}: {e}") from e

        if not isinstance(raw, dict) or not isinstance(raw.get("resources"), dict):
            raise StateFileError(f"State file must contain a 'resources' mapping: {path}")

        version = raw.get("version", STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise StateFileError(f"Unsupported state format version {version!r} in {path}")

        for name, entry in raw["resources"].items():
            try:
                store._resources[name] = ResourceState.from_dict(entry)
                store._dependencies[name] = list(entry.get("depends_on") or [])
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise StateFileError(f"Invalid state entry {name!r} in {path}: {e}") from e

        logger.info(
            "Loaded state", extra={"state_file": str(path), "resources": len(store._resources)}
        )
        return store

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_FORMAT_VERSION,
            "resources": {
                name: {**state.to_dict(), "depends_on": self.dependencies(name)}
                for name, state in sorted(self._resources.items())
            },
        }

    def save(self) -> None:
        """Write the state file atomically.

        Raises:
            StateFileError: If the file cannot be written.
        """
        content = json.dumps(self.to_dict(), indent=2, sort_keys=False)
        directory = self.path.parent if str(self.path.parent) else Path(".")
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{self.path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateFileError(f"Failed to write state file {self.path}: {e}") from e

        logger.debug("Saved state", extra={"state_file": str(self.path), "resources": len(self)})
