"""
rentsettle/cli/__init__.py

RentSettle CLI — root Click command group.

Registered in pyproject.toml as:

    [project.scripts]
    rentsettle = "rentsettle.cli:cli"

Adding a new command:
    1. Create rentsettle/cli/your_command.py with a @click.command()
    2. Import it here
    3. cli.add_command(your_command)

The group resolves SettlementConfig once (defaults, --config YAML,
RENTSETTLE_* environment) and hands it to commands as ctx.obj.
"""

import logging
from typing import Optional

import click

from rentsettle.cli.config import config_command
from rentsettle.cli.digest import digest_command
from rentsettle.cli.verify import verify_command
from rentsettle.core.config import SettlementConfig
from rentsettle.core.exceptions import ConfigError


@click.group()
@click.version_option(package_name="rentsettle")
@click.option(
    "--verbose", "-v",
    is_flag=True,
    default=False,
    help="Log settlement activity to stderr.",
)
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="YAML settlement configuration. RENTSETTLE_* variables override it.",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Optional[str]) -> None:
    """
    RentSettle — escrow and payment-channel settlement tools.

    \b
    Commands:
      verify    Verify a persisted off-chain channel-update log.
      digest    Print the output-commitment digest of a distribution.
      config    Show the effective settlement configuration.

    \b
    Quick start:
      rentsettle verify channel.jsonl --owner-key HEX --counterparty-key HEX --capacity 10000
      rentsettle verify channel.jsonl ... --format json
      rentsettle digest outputs.json --change change-addr
      rentsettle --config settle.yaml config
    """
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    try:
        base = SettlementConfig.from_yaml(config_path) if config_path else SettlementConfig()
        ctx.obj = SettlementConfig.from_env(base)
    except ConfigError as exc:
        raise click.UsageError(str(exc), ctx=ctx) from exc


cli.add_command(verify_command)
cli.add_command(digest_command)
cli.add_command(config_command)
