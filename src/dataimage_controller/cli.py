"""DataImage controller CLI (dataimagectl).

Usage:
    dataimagectl run                      # Run the controller
    dataimagectl reconcile NAMESPACE NAME # Run a single pass and print the result
    dataimagectl config                   # Print the effective configuration
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any

import click
import yaml

from .config import Config, ConfigurationError
from .models import ObjectKey
from .reconciler import ReconcileResult

CLI_VERSION = "0.1.0"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def load_config() -> Config:
    """Load configuration from the environment.

    Raises:
        click.ClickException: If the configuration is invalid.
    """
    try:
        return Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def result_to_dict(result: ReconcileResult) -> dict[str, Any]:
    """Render a pass result for display."""
    return {
        "dataimage": str(result.key),
        "outcome": result.outcome.value,
        "requeue": result.requeue,
        "requeue_after_seconds": result.requeue_after,
        "error": str(result.error) if result.error else None,
        "events_recorded": result.events_recorded,
        "events_failed": result.events_failed,
        "duration_seconds": round(result.duration_seconds, 3),
    }


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=CLI_VERSION, prog_name="dataimagectl")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Log level for controller output.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str) -> None:
    """DataImage controller CLI (dataimagectl).

    Keeps DataImage resources in sync with the image attachment state the
    provisioning backend reports for the correlated BareMetalHost.
    """
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = getattr(logging, log_level.upper())


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run the controller until interrupted."""
    from .main import run_controller, setup_logging

    setup_logging(ctx.obj["log_level"])
    config = load_config()
    exit_code = asyncio.run(run_controller(config, logging.getLogger("dataimage_controller")))
    sys.exit(exit_code)


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.pass_context
def reconcile(ctx: click.Context, namespace: str, name: str) -> None:
    """Run one reconciliation pass for NAMESPACE/NAME and print the result."""
    from .main import build_reconciler, setup_logging

    setup_logging(ctx.obj["log_level"])
    config = load_config()
    key = ObjectKey(namespace=namespace, name=name)

    async def _once() -> ReconcileResult:
        async with build_reconciler(config) as (reconciler, _):
            return await reconciler.reconcile(key)

    result = asyncio.run(_once())
    click.echo(yaml.safe_dump(result_to_dict(result), sort_keys=False))
    if result.error is not None:
        sys.exit(1)


@cli.command("config")
def show_config() -> None:
    """Print the effective configuration as YAML."""
    config = load_config()
    click.echo(yaml.safe_dump(config.to_dict(), sort_keys=False))


if __name__ == "__main__":
    cli()
