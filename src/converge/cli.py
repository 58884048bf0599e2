"""converge CLI.

Operator commands for inspecting and driving the reconciler by hand.

Usage:
    converge plan -d desired.yaml            # Show the staged plan
    converge apply -d desired.yaml           # Run one reconciliation cycle
    converge run                             # Run the loop (configured from env)
    converge state                           # List applied state records
    converge unlock                          # Break a lease left by a crash
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from .config import (
    DEFAULT_MAX_PARALLELISM,
    Config,
    ConfigurationError,
    DriftPolicy,
    ProviderName,
)
from .differ import compute_deltas
from .graph import GraphError, build_graph
from .main import build_provider, build_store, main, setup_logging
from .normalizer import FieldNormalizer
from .planner import PlanError, build_plan
from .reconciler import CycleStatus, Reconciler
from .spec_loader import SpecLoadError, load_document
from .state_store import FileStateStore

DEFAULT_STATE_DIR = "/var/lib/converge"

# Exit codes for `converge apply`
EXIT_CODES: dict[CycleStatus, int] = {
    CycleStatus.CONVERGED: 0,
    CycleStatus.FAILED: 1,
    CycleStatus.PARTIAL: 2,
    CycleStatus.DEFERRED: 3,
}

document_option = click.option(
    "--document",
    "-d",
    "document",
    type=click.Path(path_type=Path, dir_okay=False),
    envvar="DESIRED_STATE_PATH",
    required=True,
    help="Desired-state document (YAML or JSON)",
)
state_dir_option = click.option(
    "--state-dir",
    "-s",
    "state_dir",
    type=click.Path(path_type=Path, file_okay=False),
    envvar="STATE_DIR",
    default=DEFAULT_STATE_DIR,
    show_default=True,
    help="State store directory",
)
normalization_option = click.option(
    "--default-normalization/--no-default-normalization",
    "default_normalization",
    envvar="ENABLE_DEFAULT_NORMALIZATION_RULES",
    default=True,
    show_default=True,
    help="Treat semantically equal values (case, empty, numeric strings) as unchanged",
)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="converge")
@click.option("--verbose", "-v", is_flag=True, help="Log engine activity to stderr")
def cli(verbose: bool) -> None:
    """converge: reconcile infrastructure towards a desired-state document.

    \b
    Quick Start:
        converge plan -d desired.yaml     # What would change?
        converge apply -d desired.yaml    # Make it so, once
    """
    setup_logging(level=logging.INFO if verbose else logging.WARNING, stream=sys.stderr)


# =============================================================================
# Planning Commands
# =============================================================================


@cli.command()
@document_option
@state_dir_option
@normalization_option
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
def plan(document: Path, state_dir: Path, default_normalization: bool, as_json: bool) -> None:
    """Show the staged plan without calling the provider."""
    try:
        desired = load_document(document)
        graph = build_graph(desired)
        states = {state.name: state for state in FileStateStore(state_dir).list()}
        normalizer = FieldNormalizer(enable_default_rules=default_normalization)
        deltas = compute_deltas(graph, states, normalizer=normalizer)
        staged = build_plan(graph, deltas, states)
    except (SpecLoadError, GraphError, PlanError) as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        _echo_json(staged.to_dict())
        return

    if staged.is_empty and not staged.blocked:
        click.secho("✓ No changes. Infrastructure matches the desired state.", fg="green")
        return

    for stage in staged.stages:
        click.echo(f"Stage {stage.index} ({stage.phase.value}):")
        for op in stage.operations:
            reason = deltas[op.name].reason
            click.echo(f"  {op.action.value:<8} {op.name}" + (f"  # {reason}" if reason else ""))
    for name, root in sorted(staged.blocked.items()):
        click.secho(f"  Blocked  {name}  # fatal failure of '{root}'", fg="yellow")

    click.echo(f"\n{staged.operation_count} operation(s) in {len(staged.stages)} stage(s).")


@cli.command()
@document_option
@state_dir_option
@click.option(
    "--provider",
    type=click.Choice([p.value for p in ProviderName]),
    envvar="PROVIDER",
    default=ProviderName.AZURE.value,
    show_default=True,
    help="Provider to apply changes with",
)
@click.option("--subscription-id", envvar="AZURE_SUBSCRIPTION_ID", help="Azure subscription")
@click.option("--client-id", envvar="AZURE_CLIENT_ID", help="User-assigned identity client id")
@click.option(
    "--max-parallelism",
    type=int,
    envvar="MAX_PARALLELISM",
    default=DEFAULT_MAX_PARALLELISM,
    show_default=True,
    help="Concurrent operations per stage",
)
@click.option(
    "--drift-policy",
    type=click.Choice([p.value for p in DriftPolicy]),
    envvar="DRIFT_POLICY",
    default=DriftPolicy.TRUST.value,
    show_default=True,
    help="Trust stored state or refresh it from the provider",
)
@normalization_option
@click.option("--dry-run", is_flag=True, help="Plan only, make no provider calls")
@click.option("--force", is_flag=True, help="Retry resources blocked by a fatal failure")
def apply(
    document: Path,
    state_dir: Path,
    provider: str,
    subscription_id: str | None,
    client_id: str | None,
    max_parallelism: int,
    drift_policy: str,
    default_normalization: bool,
    dry_run: bool,
    force: bool,
) -> None:
    """Run a single reconciliation cycle and print its report.

    Exits 0 when converged, 1 when failed, 2 when partial and 3 when the
    state store is locked by another process.
    """
    try:
        config = Config(
            desired_state_path=document,
            state_dir=state_dir,
            provider=ProviderName(provider),
            subscription_id=subscription_id,
            client_id=client_id,
            max_parallelism=max_parallelism,
            drift_policy=DriftPolicy(drift_policy),
            dry_run=dry_run,
            enable_default_normalization_rules=default_normalization,
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    reconciler = Reconciler(config, build_provider(config), build_store(config))
    report = asyncio.run(reconciler.reconcile_once(force=force))

    _echo_json(report.to_dict())
    sys.exit(EXIT_CODES[report.status])


@cli.command()
def run() -> None:
    """Run the reconciliation loop (configured from environment)."""
    sys.exit(asyncio.run(main()))


# =============================================================================
# State Commands
# =============================================================================


@cli.command()
@state_dir_option
@click.argument("name", required=False)
@click.option("--unknown", is_flag=True, help="Only records with an unconfirmed operation")
def state(state_dir: Path, name: str | None, unknown: bool) -> None:
    """List applied state records, or show one in full."""
    store = FileStateStore(state_dir)

    if name:
        record = store.get(name)
        if record is None:
            raise click.ClickException(f"No state recorded for '{name}'")
        _echo_json(record.to_dict())
        return

    records = store.unknown() if unknown else store.list()
    if not records:
        click.echo("No state records.")
        return

    for record in records:
        flag = f"  (unconfirmed {record.in_flight.value})" if record.in_flight else ""
        click.echo(
            f"{record.name:<24} {record.kind.value:<18} {record.status.value:<8} "
            f"{record.provider_id or '-'}{flag}"
        )


@cli.command()
@state_dir_option
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def unlock(state_dir: Path, yes: bool) -> None:
    """Break the state store lease left behind by a crashed process."""
    store = FileStateStore(state_dir)
    current = store.current_lease()
    if current is None:
        click.echo("No lease held.")
        return

    if not yes:
        click.confirm(
            f"Break lease held by '{current.owner}' "
            f"(expires {current.expires_at.isoformat()})?",
            abort=True,
        )

    store.break_lease()
    click.secho(f"✓ Lease held by '{current.owner}' broken", fg="green")


if __name__ == "__main__":
    cli()
