"""
rentsettle/cli/config.py

rentsettle config — print the effective settlement configuration.

Defaults, then the --config YAML file, then RENTSETTLE_* environment
variables; the result is what a SettlementEngine built from this shell
would use.

    rentsettle config
    rentsettle --config settle.yaml config --format json
    RENTSETTLE_DISPUTE_TIMEOUT=6 rentsettle config
"""

import json
from dataclasses import asdict

import click

from rentsettle.core.config import SettlementConfig


@click.command(name="config")
@click.option(
    "--format", "fmt",
    type=click.Choice(["human", "json"], case_sensitive=False),
    default="human",
    show_default=True,
    help="Output format.",
)
@click.pass_obj
def config_command(settings: SettlementConfig, fmt: str) -> None:
    """Show the effective settlement configuration."""
    values = asdict(settings)
    if fmt == "json":
        click.echo(json.dumps({"rentsettle_config": values}, indent=2))
        return
    for name, value in values.items():
        click.echo(f"  {name:<22} {value}")
