"""Manifest runner.

Reconciles every declared resource as its own asyncio task. A resource's
task first waits for the tasks of the resources it depends on, then
resolves `${name.attribute}` references from their state. All tasks share
one LockRegistry, so resources that rewrite the same parent object are
serialized there, not here.

State is saved after every finished resource, so an interrupted run keeps
whatever already completed (and the in-flight lifecycle of whatever did
not).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from azure.core.exceptions import AzureError

from .catalog import get_descriptor
from .errors import ManifestError, ProvisionerError
from .manifest import REFERENCE_PATTERN, Manifest, ResourceDeclaration
from .orchestrator import (
    EngineContext,
    LifecycleState,
    Plan,
    PlanAction,
    ResourceOrchestrator,
    ResourceState,
)
from .state import StateStore

logger = logging.getLogger(__name__)


@dataclass
class ResourceOutcome:
    """Result of processing one resource."""

    name: str
    resource_type: str
    action: str
    resource_id: str | None = None
    plan: Plan | None = None
    error: str | None = None
    outcome_unknown: bool = False
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class RunResult:
    """Result of a plan/apply/refresh/destroy run."""

    command: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    outcomes: list[ResourceOutcome] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return all(o.success for o in self.outcomes)

    @property
    def outcome_unknown(self) -> bool:
        return any(o.outcome_unknown for o in self.outcomes)

    @property
    def failed(self) -> list[ResourceOutcome]:
        return [o for o in self.outcomes if not o.success]

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for outcome in self.outcomes:
            counts[outcome.action] = counts.get(outcome.action, 0) + 1
        return counts


def resolve_references(value: Any, state: StateStore) -> Any:
    """Substitute `${name.attribute}` references with values from state.

    A string that is exactly one reference takes the referenced value as
    is (lists stay lists). References inside a longer string are
    interpolated as text.

    Raises:
        ManifestError: The referenced resource or attribute is unknown.
    """
    if isinstance(value, dict):
        return {k: resolve_references(v, state) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(v, state) for v in value]
    if not isinstance(value, str):
        return value

    def lookup(name: str, attribute: str) -> Any:
        resource = state.get(name)
        if resource is None or not resource.exists:
            raise ManifestError(f"reference ${{{name}.{attribute}}}: '{name}' does not exist")
        if attribute == "id":
            return resource.id
        if attribute not in resource.attributes:
            raise ManifestError(f"reference ${{{name}.{attribute}}}: unknown attribute")
        return resource.attributes[attribute]

    whole = REFERENCE_PATTERN.fullmatch(value)
    if whole:
        return lookup(whole.group(1), whole.group(2))
    return REFERENCE_PATTERN.sub(lambda m: str(lookup(m.group(1), m.group(2))), value)


class Runner:
    """Drives a manifest against the state store.

    Args:
        ctx: Engine dependencies (config, lock registry, API clients).
        state: Loaded state store. Saved after each resource.
    """

    def __init__(self, ctx: EngineContext, state: StateStore) -> None:
        self._ctx = ctx
        self._state = state
        self._orchestrators: dict[str, ResourceOrchestrator] = {}

    def orchestrator(self, resource_type: str) -> ResourceOrchestrator:
        if resource_type not in self._orchestrators:
            self._orchestrators[resource_type] = ResourceOrchestrator(
                self._ctx, get_descriptor(resource_type)
            )
        return self._orchestrators[resource_type]

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------

    async def _run_graph(
        self,
        dependencies: Mapping[str, set[str]],
        worker: Callable[[str], Awaitable[ResourceOutcome]],
        skip: Callable[[str, list[str]], ResourceOutcome],
    ) -> list[ResourceOutcome]:
        """Run `worker` for every node once all of its dependencies succeeded."""
        tasks: dict[str, asyncio.Task[ResourceOutcome]] = {}

        async def run(name: str) -> ResourceOutcome:
            deps = sorted(d for d in dependencies[name] if d in dependencies)
            if deps:
                results = await asyncio.gather(*(tasks[d] for d in deps))
                failed = [r.name for r in results if not r.success]
                if failed:
                    return skip(name, failed)
            return await worker(name)

        for name in dependencies:
            tasks[name] = asyncio.create_task(run(name), name=f"resource:{name}")
        return list(await asyncio.gather(*tasks.values()))

    async def _guarded(
        self,
        name: str,
        resource_type: str,
        action: str,
        work: Callable[[], Awaitable[ResourceOutcome]],
    ) -> ResourceOutcome:
        """Run one resource's work, turning engine errors into an outcome."""
        started = time.monotonic()
        try:
            outcome = await work()
        except (ProvisionerError, AzureError) as e:
            logger.error(
                "Resource failed",
                extra={
                    "resource": name,
                    "resource_type": resource_type,
                    "action": action,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            outcome = ResourceOutcome(
                name=name,
                resource_type=resource_type,
                action=action,
                error=str(e),
                outcome_unknown=getattr(e, "outcome_unknown", False),
            )
        outcome.duration_seconds = time.monotonic() - started
        return outcome

    def _save(self) -> None:
        self._state.save()

    @staticmethod
    def _skip(resource_type_of: Callable[[str], str], action: str) -> Callable[[str, list[str]], ResourceOutcome]:
        def skip(name: str, failed: list[str]) -> ResourceOutcome:
            logger.warning(
                "Skipping resource, dependency failed",
                extra={"resource": name, "failed_dependencies": failed},
            )
            return ResourceOutcome(
                name=name,
                resource_type=resource_type_of(name),
                action=action,
                error=f"skipped: dependency failed: {', '.join(failed)}",
            )

        return skip

    def _desired(self, declaration: ResourceDeclaration) -> dict[str, Any]:
        descriptor = self.orchestrator(declaration.type).descriptor
        return descriptor.apply_defaults(
            self._ctx, resolve_references(declaration.attributes, self._state)
        )

    def _orphans(self, manifest: Manifest) -> list[str]:
        declared = {r.name for r in manifest.resources}
        return [name for name in self._state if name not in declared]

    def _reverse_dependencies(self, names: list[str]) -> dict[str, set[str]]:
        """Deletion graph: a resource waits until its dependents are gone."""
        reverse: dict[str, set[str]] = {name: set() for name in names}
        for name in names:
            for dep in self._state.dependencies(name):
                if dep in reverse:
                    reverse[dep].add(name)
        return reverse

    # ------------------------------------------------------------------
    # commands
    # ------------------------------------------------------------------

    async def plan(self, manifest: Manifest) -> RunResult:
        """Describe what apply would do. Mutates neither state nor Azure."""
        result = RunResult(command="plan")

        async def plan_one(name: str) -> ResourceOutcome:
            declaration = manifest.get(name)
            current = self._state.get(name)
            resource_type = declaration.type if declaration else current.resource_type

            async def work() -> ResourceOutcome:
                state = current or ResourceState(resource_type=resource_type)
                desired = None
                if declaration is not None:
                    # Unresolvable references are values only known after apply
                    try:
                        desired = self._desired(declaration)
                    except ManifestError:
                        if self.orchestrator(resource_type).descriptor.read_only:
                            action = PlanAction.READ
                        else:
                            action = PlanAction.UPDATE if state.id else PlanAction.CREATE
                        return ResourceOutcome(
                            name, resource_type, action.value, resource_id=state.id
                        )
                plan = await self.orchestrator(resource_type).plan(state, desired)
                return ResourceOutcome(
                    name, resource_type, plan.action.value, resource_id=state.id, plan=plan
                )

            return await self._guarded(name, resource_type, "plan", work)

        names = [r.name for r in manifest.resources] + self._orphans(manifest)
        result.outcomes = list(await asyncio.gather(*(plan_one(n) for n in names)))
        result.end_time = datetime.now(UTC)
        return result

    async def apply(self, manifest: Manifest) -> RunResult:
        """Converge Azure onto the manifest, then delete orphaned resources."""
        result = RunResult(command="apply")
        declarations = {r.name: r for r in manifest.resources}

        async def apply_one(name: str) -> ResourceOutcome:
            declaration = declarations[name]
            return await self._guarded(
                name, declaration.type, "apply", lambda: self._apply_resource(declaration)
            )

        result.outcomes = await self._run_graph(
            {name: d.dependencies for name, d in declarations.items()},
            apply_one,
            self._skip(lambda n: declarations[n].type, "apply"),
        )

        orphans = self._orphans(manifest)
        if orphans:
            logger.info("Deleting resources removed from the manifest", extra={"resources": orphans})
            result.outcomes.extend(await self._destroy_names(orphans))

        result.end_time = datetime.now(UTC)
        return result

    async def _apply_resource(self, declaration: ResourceDeclaration) -> ResourceOutcome:
        name = declaration.name
        orchestrator = self.orchestrator(declaration.type)
        desired = self._desired(declaration)

        state = self._state.get(name)
        if state is None or state.resource_type != declaration.type:
            state = ResourceState(resource_type=declaration.type)
        self._state.set(name, state, declaration.dependencies)

        try:
            if orchestrator.descriptor.read_only:
                state = await orchestrator.lookup(desired, state)
                action = "read"
            elif state.id is None and declaration.import_existing:
                state = await orchestrator.create(desired, import_existing=True, state=state)
                action = "import"
            else:
                had_id = state.id is not None
                state = await orchestrator.reconcile(state, desired)
                action = "reconcile" if had_id else "create"
        finally:
            self._save()

        return ResourceOutcome(name, declaration.type, action, resource_id=state.id)

    async def refresh(self) -> RunResult:
        """Re-read every resource in state. Vanished resources become Gone."""
        result = RunResult(command="refresh")

        async def refresh_one(name: str) -> ResourceOutcome:
            state = self._state.get(name)

            async def work() -> ResourceOutcome:
                try:
                    await self.orchestrator(state.resource_type).read(state)
                finally:
                    self._save()
                action = "gone" if state.lifecycle == LifecycleState.GONE else "refresh"
                return ResourceOutcome(name, state.resource_type, action, resource_id=state.id)

            return await self._guarded(name, state.resource_type, "refresh", work)

        result.outcomes = list(await asyncio.gather(*(refresh_one(n) for n in self._state)))
        result.end_time = datetime.now(UTC)
        return result

    async def destroy(self, names: list[str] | None = None) -> RunResult:
        """Delete resources in reverse dependency order (all of state by default)."""
        result = RunResult(command="destroy")
        selected = list(self._state) if names is None else names
        unknown = [n for n in selected if n not in self._state]
        if unknown:
            raise ManifestError(f"resources not in state: {unknown}")
        result.outcomes = await self._destroy_names(selected)
        result.end_time = datetime.now(UTC)
        return result

    async def _destroy_names(self, names: list[str]) -> list[ResourceOutcome]:
        async def destroy_one(name: str) -> ResourceOutcome:
            state = self._state.get(name)

            async def work() -> ResourceOutcome:
                try:
                    await self.orchestrator(state.resource_type).delete(state)
                    if state.lifecycle == LifecycleState.GONE:
                        self._state.remove(name)
                finally:
                    self._save()
                if state.lifecycle != LifecycleState.GONE:
                    return ResourceOutcome(
                        name,
                        state.resource_type,
                        "delete",
                        error="earlier create has an unknown outcome and nothing exists yet; "
                        "kept in state",
                        outcome_unknown=True,
                    )
                return ResourceOutcome(name, state.resource_type, "delete")

            return await self._guarded(name, state.resource_type, "delete", work)

        return await self._run_graph(
            self._reverse_dependencies(names),
            destroy_one,
            self._skip(lambda n: self._state.get(n).resource_type, "delete"),
        )

    async def import_resource(self, name: str, resource_type: str, resource_id: str) -> ResourceOutcome:
        """Adopt an existing resource into state under `name`.

        Raises:
            ManifestError: `name` is already tracked.
        """
        existing = self._state.get(name)
        if existing is not None and existing.id is not None:
            raise ManifestError(f"'{name}' is already managed as {existing.id}")

        state = await self.orchestrator(resource_type).import_resource(resource_id)
        self._state.set(name, state)
        self._save()
        return ResourceOutcome(name, resource_type, "import", resource_id=state.id)
