"""
rentsettle/cli/digest.py

rentsettle digest — print the output-commitment digest of a distribution.

OUTPUTS_JSON holds a list of {"beneficiary": str, "amount": int} objects
in commitment order. Zero amounts are omitted, as in every commitment.

    rentsettle digest outputs.json
    rentsettle digest outputs.json --change change-addr
    cat outputs.json | rentsettle digest -
"""

import json
import sys
from typing import Optional

import click

from rentsettle.core.exceptions import ValidationError
from rentsettle.core.outputs import Output, OutputCommitment


@click.command(name="digest")
@click.argument("outputs_json", type=click.File("r", encoding="utf-8"))
@click.option("--change", default=None, help="Opaque change placeholder.")
@click.option("--show", is_flag=True, default=False,
              help="Also print the canonical commitment object.")
def digest_command(outputs_json, change: Optional[str], show: bool) -> None:
    """Print hex(SHA-256(JCS(commitment))) for OUTPUTS_JSON."""
    try:
        data = json.load(outputs_json)
        if not isinstance(data, list):
            raise ValidationError("OUTPUTS_JSON must contain a list")
        commitment = OutputCommitment(
            [Output.from_dict(item) for item in data], change=change
        )
    except (json.JSONDecodeError, KeyError, TypeError, ValidationError) as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(2)

    if show:
        click.echo(json.dumps(commitment.to_dict(), sort_keys=True))
    click.echo(commitment.digest())
