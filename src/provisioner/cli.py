"""Azure Stack provisioner CLI (azsp).

Usage:
    azsp plan -f resources.yaml       # Show what apply would change
    azsp apply -f resources.yaml      # Converge Azure Stack onto the manifest
    azsp refresh                      # Re-read everything in state
    azsp destroy [-t NAME]...         # Delete managed resources
    azsp import NAME TYPE ID          # Adopt an existing resource
    azsp parse-id ID [--type TYPE]    # Decode a resource identifier

Exit codes: 0 success, 1 failure, 2 security violation, 3 outcome unknown
(a deadline was hit; verify the remote state manually).
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click

from .catalog import DESCRIPTORS, get_descriptor
from .config import EngineConfig
from .errors import MalformedResourceIdError, ProvisionerError
from .main import build_context, setup_logging
from .manifest import load_manifest
from .resource_id import parse_nested_item_id, parse_resource_id
from .runner import ResourceOutcome, Runner, RunResult
from .security import SecretlessViolationError
from .state import StateStore

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_SECURITY_VIOLATION = 2
EXIT_OUTCOME_UNKNOWN = 3

PLAN_SYMBOLS = {
    "create": "+",
    "update": "~",
    "replace": "-/+",
    "delete": "-",
    "no-op": " ",
    "read": "<=",
}


def _load_config(state_file: Path | None) -> EngineConfig:
    config = EngineConfig.from_env()
    if state_file is not None:
        config = dataclasses.replace(config, state_file=state_file)
    setup_logging(config.log_level)
    return config


def _exit_code(result: RunResult) -> int:
    if result.outcome_unknown:
        return EXIT_OUTCOME_UNKNOWN
    return EXIT_SUCCESS if result.success else EXIT_FAILURE


def _echo_outcome(outcome: ResourceOutcome) -> None:
    if outcome.error:
        click.secho(f"  ✗ {outcome.name} ({outcome.resource_type}): {outcome.error}", fg="red")
        return
    suffix = f" {outcome.resource_id}" if outcome.resource_id else ""
    click.echo(f"  ✓ {outcome.name} ({outcome.resource_type}) {outcome.action}{suffix}")


def _echo_plan(outcome: ResourceOutcome) -> None:
    if outcome.error:
        click.secho(f"  ! {outcome.name} ({outcome.resource_type}): {outcome.error}", fg="red")
        return
    symbol = PLAN_SYMBOLS.get(outcome.action, "?")
    click.echo(f"  {symbol} {outcome.name} ({outcome.resource_type}) {outcome.action}")
    if outcome.plan is not None:
        for change in outcome.plan.diff.changes:
            marker = " (forces replacement)" if change.force_new else ""
            click.echo(f"      {change}{marker}")


def _echo_summary(result: RunResult) -> None:
    counts = ", ".join(f"{count} {action}" for action, count in sorted(result.counts().items()))
    click.echo(f"{result.command}: {counts or 'nothing to do'} in {result.duration_seconds:.1f}s")
    if result.outcome_unknown:
        click.secho(
            "Some operations timed out. Their final state is unknown; verify in Azure Stack "
            "before retrying.",
            fg="yellow",
        )


def _run(
    state_file: Path | None,
    command: Callable[[Runner], Awaitable[RunResult]],
    echo: Callable[[ResourceOutcome], None] = _echo_outcome,
) -> int:
    """Load config and state, run a runner command, report, return the exit code."""
    try:
        config = _load_config(state_file)
        state = StateStore.load(config.state_file)
        runner = Runner(build_context(config), state)
        result = asyncio.run(command(runner))
    except SecretlessViolationError as e:
        logger.critical("Security violation: credentials detected in environment")
        click.secho(str(e), fg="red", err=True)
        return EXIT_SECURITY_VIOLATION
    except ProvisionerError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        return EXIT_OUTCOME_UNKNOWN if e.outcome_unknown else EXIT_FAILURE

    for outcome in result.outcomes:
        echo(outcome)
    _echo_summary(result)
    return _exit_code(result)


# =============================================================================
# Main CLI Group
# =============================================================================

state_file_option = click.option(
    "--state-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="State file (default: $PROVISIONER_STATE_FILE or provisioner.state.json).",
)
manifest_option = click.option(
    "-f",
    "--manifest",
    "manifest_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Resource manifest (YAML).",
)


@click.group()
@click.version_option(version="0.1.0", prog_name="azsp")
def cli() -> None:
    """Azure Stack provisioner (azsp).

    Reconciles Azure Stack Hub network and Key Vault resources declared in
    a YAML manifest, persisting what it manages in a JSON state file.
    """
    pass


@cli.command()
@manifest_option
@state_file_option
@click.pass_context
def plan(ctx: click.Context, manifest_path: Path, state_file: Path | None) -> None:
    """Show what apply would do without changing anything."""
    try:
        manifest = load_manifest(manifest_path)
    except ProvisionerError as e:
        raise click.ClickException(str(e)) from e
    ctx.exit(_run(state_file, lambda runner: runner.plan(manifest), _echo_plan))


@cli.command()
@manifest_option
@state_file_option
@click.pass_context
def apply(ctx: click.Context, manifest_path: Path, state_file: Path | None) -> None:
    """Create, update and delete resources to match the manifest."""
    try:
        manifest = load_manifest(manifest_path)
    except ProvisionerError as e:
        raise click.ClickException(str(e)) from e
    ctx.exit(_run(state_file, lambda runner: runner.apply(manifest)))


@cli.command()
@state_file_option
@click.pass_context
def refresh(ctx: click.Context, state_file: Path | None) -> None:
    """Re-read every managed resource. Vanished ones are marked gone."""
    ctx.exit(_run(state_file, lambda runner: runner.refresh()))


@cli.command()
@click.option("-t", "--target", "targets", multiple=True, help="Only destroy these resources.")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@state_file_option
@click.pass_context
def destroy(
    ctx: click.Context, targets: tuple[str, ...], yes: bool, state_file: Path | None
) -> None:
    """Delete managed resources (all of them unless --target is given)."""
    what = ", ".join(targets) if targets else "ALL managed resources"
    if not yes:
        click.confirm(f"Destroy {what}?", abort=True)
    names = list(targets) or None
    ctx.exit(_run(state_file, lambda runner: runner.destroy(names)))


@cli.command(name="import")
@click.argument("name")
@click.argument(
    "resource_type", type=click.Choice(sorted(t for t, d in DESCRIPTORS.items() if not d.read_only))
)
@click.argument("resource_id")
@state_file_option
@click.pass_context
def import_command(
    ctx: click.Context, name: str, resource_type: str, resource_id: str, state_file: Path | None
) -> None:
    """Adopt an existing resource into state under NAME."""

    async def command(runner: Runner) -> RunResult:
        result = RunResult(command="import")
        result.outcomes.append(await runner.import_resource(name, resource_type, resource_id))
        return result

    ctx.exit(_run(state_file, command))


@cli.command(name="parse-id")
@click.argument("resource_id")
@click.option(
    "--type",
    "resource_type",
    type=click.Choice(sorted(DESCRIPTORS)),
    default=None,
    help="Validate against a resource type's ID format.",
)
def parse_id(resource_id: str, resource_type: str | None) -> None:
    """Decode a resource identifier and print its parts as JSON."""
    try:
        parsed = _parse_id(resource_id, resource_type)
    except MalformedResourceIdError as e:
        raise click.ClickException(str(e)) from e
    click.echo(json.dumps(parsed, indent=2))


def _parse_id(resource_id: str, resource_type: str | None) -> dict[str, Any]:
    if resource_type is not None:
        descriptor = get_descriptor(resource_type)
        if descriptor.id_format is not None:
            return descriptor.id_format.parse_fields(resource_id)
        return {"id": str(descriptor.parse_id(resource_id))}

    if resource_id.lower().startswith("https://"):
        item = parse_nested_item_id(resource_id, require_version=False)
        return {
            "vault_base_url": item.vault_base_url,
            "item_type": item.item_type,
            "name": item.name,
            "version": item.version,
        }

    parsed = parse_resource_id(resource_id)
    return {
        "subscription_id": parsed.subscription_id,
        "resource_group": parsed.resource_group,
        "provider_namespace": parsed.provider_namespace,
        "resource_type": parsed.resource_type,
        "name": parsed.name,
        "segments": [list(pair) for pair in parsed.segments],
    }


if __name__ == "__main__":
    cli()
