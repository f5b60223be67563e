"""reef CLI — inspect and reconcile installed formations."""

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from reef import __version__

console = Console()
err_console = Console(stderr=True)


def _fail(message: str) -> None:
    err_console.print(f"[red]x[/] {message}")
    sys.exit(1)


def gateway_options(f):
    """Options shared by every command that may reach the gateway."""
    f = click.option("--gateway-password", default=None, help="Gateway password")(f)
    f = click.option("--gateway-token", default=None, help="Gateway auth token")(f)
    f = click.option("--gateway-url", default=None, help="Gateway WebSocket URL override")(f)
    return f


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def main(verbose: bool):
    """reef — formation lifecycle reconciliation.

    Compare installed formations against their manifests, detect drift in
    the runtime, and repair it from the last-applied state.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


def _open_store():
    from reef.config.paths import resolve_reef_state_dir
    from reef.sync.state_store import StateStore

    return StateStore(resolve_reef_state_dir())


def _resolve_state(store, identifier: str):
    from reef.sync.state_store import AmbiguousFormationError, FormationNotFoundError

    try:
        return store.resolve(identifier)
    except FormationNotFoundError as e:
        _fail(str(e))
    except AmbiguousFormationError as e:
        err_console.print(f"[red]x[/] {e}")
        for match in e.matches:
            err_console.print(f"  - {match.qualified_name}")
        _fail("Specify the full namespace/name.")


def _gateway_factory(state, config, gateway_url, gateway_token, gateway_password):
    """A gateway factory, or None when the formation has no cron jobs to check."""
    from reef.gateway import ExplicitCredentialsRequiredError, make_gateway_factory

    if not state.cron_jobs:
        return None
    try:
        return make_gateway_factory(
            config,
            gateway_url=gateway_url,
            gateway_token=gateway_token,
            gateway_password=gateway_password,
        )
    except ExplicitCredentialsRequiredError as e:
        _fail(str(e))


def _discrepancy_table(discrepancies) -> Table:
    table = Table(title=f"Discrepancies ({len(discrepancies)} found)")
    table.add_column("Kind", style="cyan")
    table.add_column("Type")
    table.add_column("Description")
    table.add_column("Fix")

    for d in discrepancies:
        if d.fixable:
            fix = f"[green]{d.fix_hint}[/]"
        elif d.needs_source:
            fix = f"[yellow]{d.fix_hint}[/]"
        else:
            fix = f"[red]{d.fix_hint}[/]"
        table.add_row(d.kind, d.type, d.description, fix)
    return table


# ── Diff ─────────────────────────────────────────────────────────────


_CHANGE_STYLES = {
    "add": "[green]+[/]",
    "remove": "[red]-[/]",
    "update": "[yellow]~[/]",
    "reapply": "[blue]*[/]",
}


@main.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@click.option("--namespace", "-n", default=None, help="Namespace the formation is installed under")
@click.option("--set", "sets", multiple=True, help="Variable override KEY=VALUE")
@click.option("--no-env", is_flag=True, help="Ignore the formation's .env file")
def diff(path: str, namespace: str | None, sets: tuple, no_env: bool):
    """Show what updating an installed formation to PATH would change."""
    from reef.models.manifest import ManifestLoadError
    from reef.sync.formation_diff import DiffValidationError, compute_formation_diff
    from reef.sync.planner import ChangeType
    from reef.sync.variables import parse_overrides

    try:
        result = compute_formation_diff(
            path,
            _open_store(),
            namespace=namespace,
            overrides=parse_overrides(sets),
            use_env_file=not no_env,
        )
    except (DiffValidationError, ManifestLoadError) as e:
        _fail(str(e))

    plan = result.plan
    if plan.is_empty:
        console.print("[green]v[/] No changes detected.")
        return

    title = f"{result.namespace}/{result.manifest.name}"
    if plan.version_change:
        title += f"  {plan.version_change.old} -> {plan.version_change.new}"
    console.print(f"\n[bold blue]reef[/] — Migration plan: {title}\n")

    changed_agents = [a for a in plan.agents if a.type != ChangeType.UNCHANGED]
    if changed_agents:
        console.print("[bold]Agents:[/]")
        for change in changed_agents:
            console.print(f"  {_CHANGE_STYLES[change.type]} {change.slug} ({change.agent_id})")
            for relative_path in change.changed_files:
                console.print(f"      {relative_path}")

    if plan.bindings:
        console.print("[bold]Bindings:[/]")
        for change in plan.bindings:
            console.print(
                f"  {_CHANGE_STYLES[change.type]} {change.binding.channel} -> {change.binding.agent_id}"
            )

    if plan.cron:
        console.print("[bold]Cron:[/]")
        for change in plan.cron:
            console.print(f"  {_CHANGE_STYLES[change.type]} {change.name}")

    if plan.a2a:
        console.print("[bold]Agent-to-agent:[/]")
        for change in plan.a2a:
            console.print(f"  {_CHANGE_STYLES[change.type]} {change.source} -> {change.target}")


# ── Drift ────────────────────────────────────────────────────────────


@main.command()
@click.argument("identifier")
@gateway_options
def drift(identifier: str, gateway_url, gateway_token, gateway_password):
    """Check an installed formation for drift against its last-applied state.

    IDENTIFIER is namespace/name, or a name unique across namespaces.
    """
    from reef.config.patcher import read_config
    from reef.sync.drift import DriftDetector

    state = _resolve_state(_open_store(), identifier)
    runtime = read_config()
    factory = _gateway_factory(state, runtime.config, gateway_url, gateway_token, gateway_password)

    report = asyncio.run(DriftDetector(runtime.config, factory).check(state))

    if not report.scheduler_reachable:
        console.print("[yellow]![/] Gateway not reachable — cron jobs were not verified")

    if not report.has_drift:
        console.print(f"  [green]OK[/] {report.summary()}")
        return

    console.print(f"  [red]DRIFT[/] {report.summary()}")
    console.print(_discrepancy_table(report.discrepancies))
    sys.exit(1)


# ── Repair ───────────────────────────────────────────────────────────


@main.command()
@click.argument("identifier")
@click.option(
    "--source", "-s", default=None,
    type=click.Path(exists=True, file_okay=False),
    help="Formation source directory, for redeploying workspace files",
)
@click.option("--dry-run", is_flag=True, help="Show discrepancies without repairing")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@gateway_options
def repair(
    identifier: str,
    source: str | None,
    dry_run: bool,
    yes: bool,
    gateway_url,
    gateway_token,
    gateway_password,
):
    """Repair drift in an installed formation from its last-applied state."""
    from reef.config.patcher import read_config
    from reef.sync.drift import DriftDetector
    from reef.sync.repair import RepairEngine

    store = _open_store()
    state = _resolve_state(store, identifier)
    runtime = read_config()
    factory = _gateway_factory(state, runtime.config, gateway_url, gateway_token, gateway_password)

    report = asyncio.run(DriftDetector(runtime.config, factory).check(state))
    if not report.scheduler_reachable:
        console.print("[yellow]![/] Gateway not reachable — cannot verify cron jobs")

    if not report.has_drift:
        console.print("[green]v[/] All resources healthy — nothing to repair")
        return

    console.print(_discrepancy_table(report.discrepancies))

    if dry_run:
        console.print("\nDry run — no changes applied.")
        return

    if not yes and not click.confirm("Repair these discrepancies?"):
        console.print("Aborted.")
        return

    engine = RepairEngine(store, runtime, gateway_factory=factory)
    outcome = asyncio.run(engine.repair(report.discrepancies, state, source=source))

    console.print(Panel(outcome.summary(), title=f"Repair: {state.qualified_name}"))
    for failure in outcome.failures:
        console.print(f"  [red]x[/] {failure}")
    if outcome.needs_source and not source:
        console.print("  Re-run with --source <path> to redeploy workspace files.")

    if outcome.failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
