"""Desired/observed attribute diffing and patch construction.

Each resource type declares a ResourceSchema: which attributes force a
replacement when changed, which are computed by the service, and how
values are normalized before comparison. ARM round-trips values with
quirks that are not real drift:

- empty list / empty dict / empty string / null / missing are equivalent
- enum-like strings change case ("Enabled" vs "enabled")
- collections come back reordered (address prefixes, DNS servers)
- numbers come back as strings ("100" vs 100)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import FieldDrift, ImmutableFieldDriftError, ResourceContext

logger = logging.getLogger(__name__)


class Normalization(str, Enum):
    """Value normalizations applied before comparison."""

    EMPTY_EQUIVALENCE = "empty_equivalence"
    CASE_INSENSITIVE = "case_insensitive"
    UNORDERED = "unordered"
    NUMERIC_STRING = "numeric_string"


@dataclass(frozen=True)
class AttributeSpec:
    """Schema entry for one attribute.

    Attributes:
        name: Attribute key in the flattened attribute map.
        force_new: Changing it requires destroy and recreate.
        computed: Set by the service only; never sent, never diffed.
        optional: Unset in desired config means "no opinion".
        sensitive: Value is redacted in logs and plans.
        normalizations: Applied to both sides before comparison.
    """

    name: str
    force_new: bool = False
    computed: bool = False
    optional: bool = True
    sensitive: bool = False
    normalizations: frozenset[Normalization] = field(
        default_factory=lambda: frozenset({Normalization.EMPTY_EQUIVALENCE})
    )

    @property
    def case_insensitive(self) -> bool:
        return Normalization.CASE_INSENSITIVE in self.normalizations

    @property
    def unordered(self) -> bool:
        return Normalization.UNORDERED in self.normalizations

    @property
    def empty_equivalence(self) -> bool:
        return Normalization.EMPTY_EQUIVALENCE in self.normalizations


def attr(
    name: str,
    *,
    force_new: bool = False,
    computed: bool = False,
    required: bool = False,
    sensitive: bool = False,
    case_insensitive: bool = False,
    unordered: bool = False,
    numeric_string: bool = False,
) -> AttributeSpec:
    """Shorthand constructor used by resource descriptors."""
    normalizations = {Normalization.EMPTY_EQUIVALENCE}
    if case_insensitive:
        normalizations.add(Normalization.CASE_INSENSITIVE)
    if unordered:
        normalizations.add(Normalization.UNORDERED)
    if numeric_string:
        normalizations.add(Normalization.NUMERIC_STRING)
    return AttributeSpec(
        name=name,
        force_new=force_new,
        computed=computed,
        optional=not required,
        sensitive=sensitive,
        normalizations=frozenset(normalizations),
    )


class ResourceSchema:
    """Ordered collection of AttributeSpecs for one resource type."""

    def __init__(self, attributes: Iterable[AttributeSpec]) -> None:
        self._attributes: dict[str, AttributeSpec] = {}
        for spec in attributes:
            if spec.name in self._attributes:
                raise ValueError(f"duplicate attribute {spec.name!r} in schema")
            self._attributes[spec.name] = spec

    def __iter__(self) -> Iterator[AttributeSpec]:
        return iter(self._attributes.values())

    def __contains__(self, name: object) -> bool:
        return name in self._attributes

    def get(self, name: str) -> AttributeSpec | None:
        return self._attributes.get(name)

    @property
    def force_new(self) -> list[AttributeSpec]:
        return [a for a in self if a.force_new and not a.computed]

    @property
    def computed(self) -> list[AttributeSpec]:
        return [a for a in self if a.computed]

    @property
    def settable(self) -> list[AttributeSpec]:
        return [a for a in self if not a.computed]

    @property
    def required(self) -> list[AttributeSpec]:
        return [a for a in self if not a.optional and not a.computed]


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str | list | tuple | dict) and len(value) == 0)


def _canonical(item: Any) -> str:
    """Sort key independent of dict key order."""
    return json.dumps(item, sort_keys=True, default=str)


def _normalize(value: Any, normalizations: frozenset[Normalization]) -> Any:
    if Normalization.EMPTY_EQUIVALENCE in normalizations and _is_empty(value):
        return None

    if isinstance(value, Mapping):
        return {k: _normalize(v, normalizations) for k, v in value.items()}

    if isinstance(value, list | tuple):
        items = [_normalize(v, normalizations) for v in value]
        if Normalization.UNORDERED in normalizations:
            return tuple(sorted(items, key=_canonical))
        return tuple(items)

    if isinstance(value, str):
        if Normalization.NUMERIC_STRING in normalizations:
            try:
                return float(value) if "." in value else int(value)
            except ValueError:
                pass
        if Normalization.CASE_INSENSITIVE in normalizations:
            return value.lower()

    return value


def normalize_value(spec: AttributeSpec, value: Any) -> Any:
    """Normalize a value according to the attribute's rules."""
    return _normalize(value, spec.normalizations)


def values_equal(spec: AttributeSpec, a: Any, b: Any) -> bool:
    """Check whether two values are semantically equal for this attribute."""
    return normalize_value(spec, a) == normalize_value(spec, b)


@dataclass(frozen=True)
class AttributeChange:
    """A single attribute whose observed value differs from desired."""

    attribute: str
    observed: Any
    desired: Any
    force_new: bool = False
    sensitive: bool = False

    def __str__(self) -> str:
        if self.sensitive:
            return f"{self.attribute}: (sensitive value)"
        return f"{self.attribute}: {self.observed!r} -> {self.desired!r}"


@dataclass(frozen=True)
class AttributeDiff:
    """Result of comparing desired and observed attributes."""

    changes: tuple[AttributeChange, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    @property
    def changed_attributes(self) -> list[str]:
        return [c.attribute for c in self.changes]

    @property
    def requires_replacement(self) -> bool:
        return any(c.force_new for c in self.changes)

    @property
    def force_new_changes(self) -> list[AttributeChange]:
        return [c for c in self.changes if c.force_new]


def compute_diff(
    schema: ResourceSchema,
    desired: Mapping[str, Any],
    observed: Mapping[str, Any],
) -> AttributeDiff:
    """Compare desired against observed.

    Computed attributes are never diffed. An optional attribute absent from
    `desired` is not drift; the service default stands. An attribute absent
    from `observed` is one the service does not report (for example a
    configuration-only reference) and is not diffed either.
    """
    changes: list[AttributeChange] = []

    for spec in schema.settable:
        if spec.name not in desired and spec.optional:
            continue
        if spec.name not in observed:
            continue

        desired_value = desired.get(spec.name)
        observed_value = observed.get(spec.name)
        if values_equal(spec, desired_value, observed_value):
            continue

        changes.append(
            AttributeChange(
                attribute=spec.name,
                observed=observed_value,
                desired=desired_value,
                force_new=spec.force_new,
                sensitive=spec.sensitive,
            )
        )

    return AttributeDiff(changes=tuple(changes))


def check_immutable(
    schema: ResourceSchema,
    desired: Mapping[str, Any],
    observed: Mapping[str, Any],
    context: ResourceContext | None = None,
) -> None:
    """Raise if any force-new attribute differs between desired and observed.

    Raises:
        ImmutableFieldDriftError: Lists every drifting attribute.
    """
    drifts = [
        FieldDrift(
            attribute=change.attribute,
            observed="(sensitive value)" if change.sensitive else change.observed,
            desired="(sensitive value)" if change.sensitive else change.desired,
        )
        for change in compute_diff(schema, desired, observed).force_new_changes
    ]
    if drifts:
        logger.warning(
            "Immutable attribute drift detected",
            extra={
                "resource": str(context) if context else None,
                "attributes": [d.attribute for d in drifts],
            },
        )
        raise ImmutableFieldDriftError(drifts, context)


def build_patch(
    schema: ResourceSchema,
    desired: Mapping[str, Any],
    observed: Mapping[str, Any],
) -> dict[str, Any]:
    """Return only the changed, non-computed attributes with desired values."""
    return {
        change.attribute: change.desired for change in compute_diff(schema, desired, observed).changes
    }


def strip_computed(schema: ResourceSchema, attributes: Mapping[str, Any]) -> dict[str, Any]:
    """Drop computed attributes (and unknown keys) from an attribute map."""
    return {
        key: value
        for key, value in attributes.items()
        if (spec := schema.get(key)) is not None and not spec.computed
    }
