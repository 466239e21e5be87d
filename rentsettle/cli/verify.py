"""
rentsettle/cli/verify.py

rentsettle verify — Off-Chain Channel Ledger Verification
==========================================================

Replays a persisted channel-update log (one ChannelUpdate per JSON line)
and checks every update against the channel's parties and capacity.

Usage:
    rentsettle verify <ledger> --owner-key HEX --counterparty-key HEX --capacity N
    rentsettle verify <ledger> ... --channel-id channel-1234
    rentsettle verify <ledger> ... --format json
    rentsettle verify <ledger> ... --quiet

Exit codes:
    0  Log fully valid  (sequence + signatures + balances)
    1  Log has violations
    2  Error  (file missing, malformed line, bad key)
"""

import json
import sys
from pathlib import Path
from typing import Any, List, Optional

import click

from rentsettle.core.canonical import canonical_hash
from rentsettle.core.crypto import validate_public_key_hex
from rentsettle.core.exceptions import LedgerError, ValidationError
from rentsettle.ledger.channel_ledger import (
    ChannelUpdate,
    LedgerViolation,
    load_updates,
    verify_updates,
)


@click.command(name="verify")
@click.argument("ledger", type=click.Path(exists=False))
@click.option("--owner-key", required=True, metavar="HEX",
              help="Owner's Ed25519 public key, 64 hex chars.")
@click.option("--counterparty-key", required=True, metavar="HEX",
              help="Counterparty's Ed25519 public key, 64 hex chars.")
@click.option("--capacity", required=True, type=click.IntRange(min=0),
              help="Channel capacity every update must sum to.")
@click.option("--channel-id", default=None,
              help="Expected channel id. Defaults to the first update's.")
@click.option(
    "--format", "fmt",
    type=click.Choice(["human", "json"], case_sensitive=False),
    default="human",
    show_default=True,
    help="Output format.",
)
@click.option(
    "--quiet",
    is_flag=True,
    default=False,
    help="Suppress all output. Use exit code only (0=valid, 1=invalid, 2=error).",
)
def verify_command(
    ledger:           str,
    owner_key:        str,
    counterparty_key: str,
    capacity:         int,
    channel_id:       Optional[str],
    fmt:              str,
    quiet:            bool,
) -> None:
    """
    Verify an off-chain channel-update log.

    LEDGER is the path to a .jsonl file written by OffChainChannelLedger.
    """
    ledger_path = Path(ledger)

    if not ledger_path.exists():
        _emit_error(f"Ledger not found: {ledger}", fmt, quiet)
        sys.exit(2)

    try:
        owner_key        = validate_public_key_hex(owner_key.lower(), "owner_key")
        counterparty_key = validate_public_key_hex(counterparty_key.lower(), "counterparty_key")
        updates          = load_updates(ledger_path)
    except (ValidationError, LedgerError) as e:
        _emit_error(str(e), fmt, quiet)
        sys.exit(2)

    if channel_id is None:
        channel_id = updates[0].channel_id if updates else ""

    violations = verify_updates(
        updates, channel_id, owner_key, counterparty_key, capacity=capacity
    )
    valid = not violations

    if quiet:
        sys.exit(0 if valid else 1)

    if fmt == "json":
        _output_json(ledger_path, channel_id, capacity, updates, violations, valid)
    else:
        _output_human(ledger_path, channel_id, capacity, updates, violations, valid)

    sys.exit(0 if valid else 1)


def _head_hash(updates: List[ChannelUpdate]) -> Optional[str]:
    return canonical_hash(updates[-1].to_dict()) if updates else None


def _amount(value: Any) -> str:
    """Thousands-separated for integers; repr for anything a bad log holds."""
    if isinstance(value, int) and not isinstance(value, bool):
        return f"{value:,}"
    return repr(value)


# ── Human output ──────────────────────────────────────────────────────────────

def _output_human(
    ledger_path: Path,
    channel_id:  str,
    capacity:    int,
    updates:     List[ChannelUpdate],
    violations:  List[LedgerViolation],
    valid:       bool,
) -> None:
    bar = "─" * 60
    click.echo()
    click.echo(f"  Ledger       {ledger_path}")
    click.echo(f"  Channel      {channel_id or '-'}")
    click.echo(f"  Capacity     {capacity:,}")
    click.echo(f"  Updates      {len(updates):,}")
    if updates:
        head = updates[-1]
        click.echo(f"  Head         sequence {head.sequence}")
        click.echo(
            f"  Balances     owner={_amount(head.owner_balance)}  "
            f"counterparty={_amount(head.counterparty_balance)}"
        )
        click.echo(f"  Head hash    {_head_hash(updates)}")
    click.echo()

    if violations:
        click.echo(f"  {bar}")
        for v in violations:
            click.echo(f"  {str(v.at_sequence):>6}  {v.violation_type:<20}  {v.detail}")
        click.echo(f"  {bar}")
        click.echo()

    if valid:
        click.echo("  VALID  ·  0 violations")
    else:
        click.echo(f"  INVALID  ·  {len(violations)} violation(s)")
    click.echo()


# ── JSON output ───────────────────────────────────────────────────────────────

def _output_json(
    ledger_path: Path,
    channel_id:  str,
    capacity:    int,
    updates:     List[ChannelUpdate],
    violations:  List[LedgerViolation],
    valid:       bool,
) -> None:
    head = updates[-1] if updates else None
    out = {
        "rentsettle_verify": {
            "ledger":               str(ledger_path),
            "channel_id":           channel_id,
            "capacity":             capacity,
            "ledger_valid":         valid,
            "updates":              len(updates),
            "head_sequence":        head.sequence if head else 0,
            "owner_balance":        head.owner_balance if head else 0,
            "counterparty_balance": head.counterparty_balance if head else capacity,
            "head_hash":            _head_hash(updates),
            "violation_count":      len(violations),
            "violations": [
                {
                    "at_sequence":    v.at_sequence,
                    "violation_type": v.violation_type,
                    "detail":         v.detail,
                }
                for v in violations
            ],
        }
    }
    click.echo(json.dumps(out, indent=2))


# ── Error output ──────────────────────────────────────────────────────────────

def _emit_error(msg: str, fmt: str, quiet: bool) -> None:
    """Emit error in the requested format. Never raises."""
    if quiet:
        return
    if fmt == "json":
        click.echo(json.dumps({
            "rentsettle_verify": {
                "error":        msg,
                "ledger_valid": False,
            }
        }))
    else:
        click.echo(f"\n  ERROR: {msg}\n", err=True)
