"""Tests for attribute diffing and patch construction."""

from __future__ import annotations

import pytest

from provisioner.diff import (
    ResourceSchema,
    attr,
    build_patch,
    check_immutable,
    compute_diff,
    strip_computed,
    values_equal,
)
from provisioner.errors import ImmutableFieldDriftError, ResourceContext

SCHEMA = ResourceSchema(
    [
        attr("name", force_new=True, required=True),
        attr("location", force_new=True, required=True, case_insensitive=True),
        attr("address_space", required=True, unordered=True),
        attr("dns_servers"),
        attr("sku", case_insensitive=True),
        attr("size", numeric_string=True),
        attr("password", sensitive=True),
        attr("tags"),
        attr("etag", computed=True),
    ]
)

OBSERVED = {
    "name": "vnet-hub",
    "location": "Local",
    "address_space": ["10.1.0.0/16", "10.0.0.0/16"],
    "dns_servers": [],
    "sku": "Standard",
    "size": "100",
    "password": "old",
    "tags": {},
    "etag": 'W/"1"',
}


class TestNormalization:
    """Tests for value equivalence rules."""

    @pytest.mark.parametrize("a,b", [(None, []), ([], {}), ("", None), ({}, None)])
    def test_empty_values_are_equivalent(self, a: object, b: object) -> None:
        assert values_equal(attr("x"), a, b)

    def test_case_insensitive(self) -> None:
        assert values_equal(attr("sku", case_insensitive=True), "Standard", "standard")
        assert not values_equal(attr("sku"), "Standard", "standard")

    def test_unordered(self) -> None:
        spec = attr("prefixes", unordered=True)
        assert values_equal(spec, ["b", "a"], ["a", "b"])
        assert not values_equal(attr("prefixes"), ["b", "a"], ["a", "b"])

    def test_unordered_with_dicts(self) -> None:
        spec = attr("route", unordered=True)
        assert values_equal(spec, [{"name": "b"}, {"name": "a"}], [{"name": "a"}, {"name": "b"}])

    def test_unordered_dicts_with_different_key_order(self) -> None:
        """Key order inside items must not change how the list is sorted."""
        spec = attr("access_policy", unordered=True)
        desired = [{"object_id": "o1", "tenant_id": "t2"}, {"object_id": "o2", "tenant_id": "t1"}]
        observed = [{"tenant_id": "t2", "object_id": "o1"}, {"tenant_id": "t1", "object_id": "o2"}]

        assert values_equal(spec, desired, observed)
        assert values_equal(spec, desired, list(reversed(observed)))
        assert not values_equal(spec, desired, [{"object_id": "o1", "tenant_id": "t1"}])

    def test_numeric_string(self) -> None:
        spec = attr("size", numeric_string=True)
        assert values_equal(spec, "100", 100)
        assert values_equal(spec, "1.5", 1.5)
        assert not values_equal(spec, "100", 101)


class TestComputeDiff:
    """Tests for compute_diff."""

    def test_no_drift(self) -> None:
        desired = {
            "name": "vnet-hub",
            "location": "local",
            "address_space": ["10.0.0.0/16", "10.1.0.0/16"],
            "size": 100,
        }
        assert not compute_diff(SCHEMA, desired, OBSERVED)

    def test_unset_optional_attribute_is_not_drift(self) -> None:
        desired = {"name": "vnet-hub", "location": "local", "address_space": OBSERVED["address_space"]}
        assert not compute_diff(SCHEMA, desired, OBSERVED)

    def test_computed_attributes_are_never_diffed(self) -> None:
        desired = {**OBSERVED, "etag": "something else"}
        assert not compute_diff(SCHEMA, desired, OBSERVED)

    def test_attribute_not_reported_by_service_is_skipped(self) -> None:
        observed = {k: v for k, v in OBSERVED.items() if k != "password"}
        assert not compute_diff(SCHEMA, {**OBSERVED, "password": "new"}, observed)

    def test_update_change(self) -> None:
        diff = compute_diff(SCHEMA, {**OBSERVED, "dns_servers": ["10.0.0.4"]}, OBSERVED)
        assert diff.changed_attributes == ["dns_servers"]
        assert not diff.requires_replacement

    def test_force_new_change(self) -> None:
        diff = compute_diff(SCHEMA, {**OBSERVED, "location": "westus"}, OBSERVED)
        assert diff.requires_replacement
        assert [c.attribute for c in diff.force_new_changes] == ["location"]

    def test_sensitive_values_are_redacted(self) -> None:
        diff = compute_diff(SCHEMA, {**OBSERVED, "password": "new"}, OBSERVED)
        assert str(diff.changes[0]) == "password: (sensitive value)"


class TestCheckImmutable:
    """Tests for force-new drift detection."""

    def test_passes_without_drift(self) -> None:
        check_immutable(SCHEMA, {**OBSERVED, "tags": {"env": "dev"}}, OBSERVED)

    def test_lists_every_drifting_attribute(self) -> None:
        context = ResourceContext("Virtual Network", "vnet-hub", "rg-net")
        with pytest.raises(ImmutableFieldDriftError) as exc_info:
            check_immutable(
                SCHEMA, {**OBSERVED, "name": "vnet-spoke", "location": "westus"}, OBSERVED, context
            )

        error = exc_info.value
        assert [d.attribute for d in error.drifts] == ["name", "location"]
        assert error.drifts[0].observed == "vnet-hub"
        assert error.drifts[0].desired == "vnet-spoke"
        assert "vnet-hub" in str(error)


class TestBuildPatch:
    """Tests for build_patch."""

    def test_only_changed_attributes(self) -> None:
        desired = {**OBSERVED, "tags": {"env": "dev"}, "sku": "STANDARD"}
        assert build_patch(SCHEMA, desired, OBSERVED) == {"tags": {"env": "dev"}}

    def test_empty_when_in_sync(self) -> None:
        assert build_patch(SCHEMA, OBSERVED, OBSERVED) == {}


class TestSchema:
    """Tests for ResourceSchema helpers."""

    def test_duplicate_attribute_rejected(self) -> None:
        with pytest.raises(ValueError):
            ResourceSchema([attr("name"), attr("name")])

    def test_views(self) -> None:
        assert [a.name for a in SCHEMA.force_new] == ["name", "location"]
        assert [a.name for a in SCHEMA.computed] == ["etag"]
        assert [a.name for a in SCHEMA.required] == ["name", "location", "address_space"]

    def test_strip_computed_drops_unknown_keys(self) -> None:
        assert strip_computed(SCHEMA, {"name": "x", "etag": "y", "bogus": 1}) == {"name": "x"}
