"""VCD provisioner CLI (vcdp).

Offline tooling around the reconciliation core. Nothing here talks to the
platform.

Usage:
    vcdp validate specs/catalogs.yaml            # Validate a spec file
    vcdp plan specs/catalogs.yaml --state s.yaml # Plan against recorded state
    vcdp import-path acme.vdc1.web --positional  # Parse an import path
    vcdp describe vdc                            # Show a kind's attributes
"""

from __future__ import annotations

from pathlib import Path

import click

from .config import DEFAULT_IMPORT_SEPARATOR
from .descriptors import DESCRIPTORS, UnknownKindError, get_descriptor
from .errors import ProvisionerError
from .identity import ImportPathError, parse_import_path
from .planner import RequiresReplacementError, plan
from .spec_loader import SpecLoadError, load_spec, to_instance
from .state_store import InMemoryStateStore, StateStore, StateStoreError, YamlStateStore

CLI_VERSION = "0.1.0"


@click.group()
@click.version_option(version=CLI_VERSION, prog_name="vcdp")
def cli() -> None:
    """VCD provisioner CLI (vcdp).

    Validate resource specs, preview plans and parse import paths.

    \b
    Quick Start:
        vcdp validate specs/vdc.yaml
        vcdp plan specs/vdc.yaml --state state.yaml
    """
    pass


@cli.command()
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(spec_file: Path) -> None:
    """Load and validate a spec file."""
    try:
        spec = load_spec(spec_file)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    click.secho(f"✓ {spec_file}: {len(spec.resources)} resource(s) valid", fg="green")
    for entry in spec.resources:
        click.echo(f"  {entry.key} ({entry.kind})")


@cli.command("plan")
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--state",
    "state_file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="YAML state file with recorded observed state (default: nothing exists yet)",
)
def plan_command(spec_file: Path, state_file: Path | None) -> None:
    """Plan every resource of SPEC_FILE against recorded observed state."""
    try:
        spec = load_spec(spec_file)
        store: StateStore = YamlStateStore(state_file) if state_file else InMemoryStateStore()
    except (SpecLoadError, StateStoreError) as e:
        raise click.ClickException(str(e)) from e

    failures = 0
    for entry in spec.resources:
        fresh = to_instance(entry)
        recorded = store.get(entry.key)
        instance = (
            recorded.with_desired(fresh.desired, fresh.parent)
            if recorded is not None and not recorded.removed
            else fresh
        )

        try:
            operation_plan = plan(instance)
        except RequiresReplacementError as e:
            click.secho(
                f"! {entry.key} ({entry.kind}): replacement required, "
                f"immutable attribute(s) changed: {', '.join(e.attributes)}",
                fg="yellow",
            )
            continue
        except ProvisionerError as e:
            failures += 1
            click.secho(f"✗ {entry.key} ({entry.kind}): {e}", fg="red")
            continue

        if operation_plan.is_empty:
            click.echo(f"= {entry.key} ({entry.kind}): up to date")
            continue

        scope = f" [lock {operation_plan.lock_scope}]" if operation_plan.lock_scope else ""
        click.echo(f"~ {entry.key} ({entry.kind}){scope}")
        for position, description in enumerate(operation_plan.describe(), start=1):
            click.echo(f"    {position}. {description}")

    if failures:
        raise click.ClickException(f"{failures} resource(s) could not be planned")


@cli.command("import-path")
@click.argument("path")
@click.option("--parts", "-p", default=3, show_default=True, help="Number of named segments")
@click.option(
    "--separator",
    "-s",
    default=DEFAULT_IMPORT_SEPARATOR,
    envvar="VCD_IMPORT_SEPARATOR",
    show_default=True,
    help="Segment separator",
)
@click.option("--positional", is_flag=True, help="Accept a trailing 1-based position")
@click.option("--join-tail", is_flag=True, help="Join trailing segments (dotted versions)")
def import_path(path: str, parts: int, separator: str, positional: bool, join_tail: bool) -> None:
    """Parse an import path and show its segments."""
    try:
        parsed = parse_import_path(
            path, separator, parts, positional=positional, join_tail=join_tail
        )
    except ImportPathError as e:
        raise click.ClickException(str(e)) from e

    for index, segment in enumerate(parsed.segments, start=1):
        click.echo(f"segment {index}: {segment}")
    if parsed.position is not None:
        click.echo(f"position: {parsed.position}")
    if parsed.listing:
        click.echo("listing requested")


@cli.command()
@click.argument("kind", required=False)
def describe(kind: str | None) -> None:
    """Show the attributes of KIND, or list every kind."""
    if kind is None:
        for name in sorted(DESCRIPTORS):
            click.echo(name)
        return

    try:
        descriptor = get_descriptor(kind)
    except UnknownKindError as e:
        raise click.ClickException(str(e.args[0])) from e

    click.echo(f"{descriptor.kind}")
    click.echo("=" * 40)
    for attribute in descriptor.attributes:
        flags = f" references={attribute.references}" if attribute.references else ""
        if attribute.meaningful_zero:
            flags += " zero-is-set"
        click.echo(
            f"  {attribute.name:<32} {attribute.mutability.value:<9} "
            f"[{attribute.update_group}]{flags}"
        )
    for collection in descriptor.collections:
        default = f" default={collection.exclusivity_field}" if collection.exclusivity_field else ""
        click.echo(f"  {collection.name:<32} collection key={collection.key_field}{default}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
