"""BaaS operator CLI (baasctl).

Usage:
    baasctl apply manifest.yaml       # Create, update or replace declared resources
    baasctl destroy                   # Delete everything in the state file
    baasctl refresh                   # Re-read recorded resources, drop drifted ones
    baasctl show                      # Print the state file

Connection settings come from BAAS_* environment variables.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from .config import DEFAULT_STATE_FILE
from .main import render_state, run_apply, run_destroy, run_refresh, setup_logging
from .state import StateFileError, StateStore

LOG_FORMATS = ("json", "text")

state_option = click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_STATE_FILE,
    show_default=True,
    help="State file path",
)


@click.group()
@click.version_option(version="0.1.0", prog_name="baasctl")
@click.option(
    "--log-format",
    type=click.Choice(LOG_FORMATS),
    default="json",
    show_default=True,
    help="Log output format",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def cli(log_format: str, verbose: bool) -> None:
    """Reconcile blockchain-as-a-service resources from a YAML manifest.

    \b
    Commands:
      apply    Reconcile a manifest against the control plane
      destroy  Delete every resource recorded in the state file
      refresh  Re-read recorded resources
      show     Print recorded resources
    """
    setup_logging(log_format, verbose)


@cli.command()
@click.argument("manifest", type=click.Path(dir_okay=False, path_type=Path))
@state_option
def apply(manifest: Path, state_path: Path) -> None:
    """Reconcile MANIFEST against the control plane."""
    sys.exit(asyncio.run(run_apply(manifest, state_path)))


@cli.command()
@state_option
@click.confirmation_option(prompt="Delete every resource recorded in the state file?")
def destroy(state_path: Path) -> None:
    """Delete every resource recorded in the state file."""
    sys.exit(asyncio.run(run_destroy(state_path)))


@cli.command()
@state_option
def refresh(state_path: Path) -> None:
    """Re-read recorded resources and drop the ones removed remotely."""
    sys.exit(asyncio.run(run_refresh(state_path)))


@cli.command()
@state_option
def show(state_path: Path) -> None:
    """Print recorded resources."""
    try:
        store = StateStore.load(state_path)
    except StateFileError as e:
        raise click.ClickException(str(e)) from e
    click.echo(render_state(store))


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
