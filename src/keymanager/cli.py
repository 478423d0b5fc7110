"""Tenant key operator CLI (keyop).

One-shot commands for operators working against a single tenant. The
long-running loop lives in keymanager.main.

Usage:
    keyop apply             # Run one reconciliation pass
    keyop apply --dry-run   # Plan and log only
    keyop refresh           # Re-read keys into the persisted state
    keyop destroy           # Remove the managed root key
    keyop show              # Print the persisted state as JSON
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from pathlib import Path

import click

from .config import DEFAULT_STATE_DIR, Config, ConfigurationError
from .credentials import redact
from .main import setup_logging
from .reconciler import Reconciler, ReconcileResult
from .store import StateStore, StateStoreError

VERSION = "0.1.0"


def load_config(
    spec_path: str | None,
    state_dir: str | None,
    dry_run: bool | None,
) -> Config:
    """Load configuration from the environment with command-line overrides.

    Raises:
        click.ClickException: If the resulting configuration is invalid.
    """
    try:
        config = Config.from_env()
        overrides: dict[str, object] = {}
        if spec_path is not None:
            overrides["spec_path"] = Path(spec_path)
        if state_dir is not None:
            overrides["state_dir"] = Path(state_dir)
        if dry_run is not None:
            overrides["dry_run"] = dry_run
        if overrides:
            config = dataclasses.replace(config, **overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    return config


def make_reconciler(config: Config) -> Reconciler:
    return Reconciler(config)


def run_operation(config: Config, operation: str) -> ReconcileResult:
    """Run one reconciler operation to completion and raise on failure."""
    reconciler = make_reconciler(config)

    async def execute() -> ReconcileResult:
        try:
            return await getattr(reconciler, operation)()
        finally:
            reconciler.close()

    result = asyncio.run(execute())
    if result.error is not None:
        raise click.ClickException(f"{operation} failed: {result.error}")
    return result


def echo_result(result: ReconcileResult) -> None:
    prefix = "[dry run] " if result.dry_run else ""
    click.echo(f"{prefix}Tenant: {result.tenant}")
    click.echo(f"{prefix}Root key action: {result.action.kind.value}")
    if result.action.key_id:
        click.echo(f"{prefix}  Key: {result.action.key_id}")
    if result.rotated:
        click.echo(f"{prefix}Rotated all encryption keys")

    root = result.state.managed_root_key if result.state is not None else None
    if root is not None and root.has_key:
        click.echo(f"Managed root key: {root.key_id} ({root.state})")
        if root.public_wrapping_key:
            click.echo(f"Wrapping algorithm: {root.wrapping_algorithm}")
            click.echo("Public wrapping key:")
            click.echo(root.public_wrapping_key)


# Shared options; unset values fall back to the environment
spec_option = click.option(
    "--spec",
    "spec_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Declared configuration YAML (default: $SPEC_PATH)",
)
state_dir_option = click.option(
    "--state-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="State directory (default: $STATE_DIR)",
)
dry_run_option = click.option(
    "--dry-run/--no-dry-run",
    default=None,
    help="Plan and log only (default: $DRY_RUN)",
)


@click.group()
@click.version_option(version=VERSION, prog_name="keyop")
@click.option("--verbose", "-v", is_flag=True, help="Emit JSON logs on stdout")
def cli(verbose: bool) -> None:
    """Tenant key operator CLI (keyop).

    Manages the customer-provided root key and key rotation of one tenant.
    Tenant and credentials are read from AUTH0_* environment variables.

    \b
    Root key workflow:
        1. Declare an empty customerProvidedRootKey block, run apply
        2. Wrap your key material with the printed public wrapping key
        3. Set customerProvidedRootKey.wrappedKey, run apply again
    """
    if verbose:
        setup_logging(logging.INFO)


@cli.command()
@spec_option
@state_dir_option
@dry_run_option
def apply(spec_path: str | None, state_dir: str | None, dry_run: bool | None) -> None:
    """Run one reconciliation pass against the declared configuration."""
    config = load_config(spec_path, state_dir, dry_run)
    echo_result(run_operation(config, "reconcile_once"))


@cli.command()
@state_dir_option
@dry_run_option
def refresh(state_dir: str | None, dry_run: bool | None) -> None:
    """Re-read the tenant's keys into the persisted state."""
    config = load_config(None, state_dir, dry_run)
    result = run_operation(config, "refresh")
    count = len(result.state.encryption_keys) if result.state is not None else 0
    click.echo(f"Refreshed {count} encryption keys for {result.tenant}")


@cli.command()
@state_dir_option
@dry_run_option
@click.confirmation_option(prompt="Remove the managed root key for this tenant?")
def destroy(state_dir: str | None, dry_run: bool | None) -> None:
    """Remove the managed root key and forget the persisted state."""
    config = load_config(None, state_dir, dry_run)
    echo_result(run_operation(config, "destroy"))


@cli.command()
@click.option("--domain", envvar="AUTH0_DOMAIN", required=True, help="Tenant domain")
@click.option(
    "--state-dir",
    envvar="STATE_DIR",
    type=click.Path(file_okay=False),
    default=DEFAULT_STATE_DIR,
    help="State directory",
)
@click.option("--show-sensitive", is_flag=True, help="Print the wrapped key unredacted")
def show(domain: str, state_dir: str, show_sensitive: bool) -> None:
    """Print the persisted state as JSON."""
    try:
        state = StateStore(Path(state_dir)).load(domain)
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e

    if state is None:
        raise click.ClickException(f"No persisted state for {domain} in {state_dir}")

    data = state.model_dump(mode="json")
    root = data.get("managed_root_key")
    if root and root.get("wrapped_key") and not show_sensitive:
        root["wrapped_key"] = redact(root["wrapped_key"])
    click.echo(json.dumps(data, indent=2))


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
