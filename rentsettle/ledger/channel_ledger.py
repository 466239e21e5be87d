"""
rentsettle/ledger/channel_ledger.py

Off-Chain Channel Ledger — v1

A local, single-writer, append-only log of ChannelUpdate records for ONE
payment channel. It is the authority on "the latest valid state" that a
settlement attempt should submit on-chain.

Contract — append (create_update / stream_payment), in this exact order:
  1. Compute sequence = head.sequence + 1 (first update is 1)
  2. Verify BOTH signatures over channel_update_message(...)
  3. Append to the JSONL file, if the ledger is persistent
  4. Advance in-memory head, only after a confirmed write
  5. Return the ChannelUpdate

Nothing is ever rewritten or removed. History is kept for audit; only
the head is settled.

NOT thread-safe. Callers sharing a ledger across threads must serialize
access themselves, e.g. with LockedChannelLedger.transaction().
"""

import json
import logging
import os
import threading
import warnings
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from rentsettle.contracts.channel import PaymentChannel, channel_update_message
from rentsettle.core.canonical import canonical_hash
from rentsettle.core.crypto import Ed25519KeyManager, validate_public_key_hex
from rentsettle.core.exceptions import (
    BadSignatureError,
    InsufficientChannelBalanceError,
    LedgerError,
    ValidationError,
)
from rentsettle.core.outputs import validate_amount
from rentsettle.core.quorum import Signer, SignatureQuorum, message_bytes
from rentsettle.core.time import utc_timestamp


logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# ChannelUpdate
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ChannelUpdate:
    """One bilaterally signed balance split. Off-chain until settlement."""
    channel_id:           str
    owner_balance:        int
    counterparty_balance: int
    sequence:             int
    owner_sig:            str
    counterparty_sig:     str
    timestamp:            str

    def message(self) -> Dict[str, Any]:
        return channel_update_message(
            self.channel_id,
            self.owner_balance,
            self.counterparty_balance,
            self.sequence,
        )

    def is_fully_signed(self) -> bool:
        return bool(self.owner_sig) and bool(self.counterparty_sig)

    def verify_signatures(self, owner_key: str, counterparty_key: str) -> bool:
        """True iff both signatures verify. Never raises."""
        data = message_bytes(self.message())
        return (
            Ed25519KeyManager.verify_detached(data, self.owner_sig, owner_key)
            and Ed25519KeyManager.verify_detached(data, self.counterparty_sig, counterparty_key)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id":           self.channel_id,
            "owner_balance":        self.owner_balance,
            "counterparty_balance": self.counterparty_balance,
            "sequence":             self.sequence,
            "owner_sig":            self.owner_sig,
            "counterparty_sig":     self.counterparty_sig,
            "timestamp":            self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChannelUpdate":
        """Trusts persisted data. Callers run OffChainChannelLedger.verify()."""
        return cls(
            channel_id=           data["channel_id"],
            owner_balance=        data["owner_balance"],
            counterparty_balance= data["counterparty_balance"],
            sequence=             data["sequence"],
            owner_sig=            data.get("owner_sig", ""),
            counterparty_sig=     data.get("counterparty_sig", ""),
            timestamp=            data.get("timestamp", ""),
        )


@dataclass
class LedgerViolation:
    """A single problem found while verifying an update log."""
    at_sequence:    int
    violation_type: str   # "sequence_gap" | "invalid_signature" | "negative_balance" | "channel_mismatch" | "capacity_mismatch"
    detail:         str


def _scan_updates(path: Path) -> Tuple[List[ChannelUpdate], int, bool]:
    """
    Parse a JSONL update log.

    Returns (updates, good_end, terminated): good_end is the byte offset just
    past the last readable line; terminated is False when that line has no
    trailing newline.
    """
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as exc:
        raise LedgerError(f"Failed to read ledger {path}: {exc}") from exc

    lines = data.splitlines(keepends=True)
    last  = max((i for i, raw in enumerate(lines) if raw.strip()), default=-1)

    updates: List[ChannelUpdate] = []
    offset   = 0
    good_end = 0
    for index, raw in enumerate(lines):
        start   = offset
        offset += len(raw)
        if not raw.strip():
            continue
        try:
            updates.append(ChannelUpdate.from_dict(json.loads(raw.decode("utf-8"))))
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError) as exc:
            if index == last:
                warnings.warn(
                    f"dropped unreadable last line of {path}: {exc}",
                    RuntimeWarning,
                    stacklevel=3,
                )
                good_end = start
                break
            raise LedgerError(
                f"Invalid ledger line {index + 1}: {exc}",
                {"ledger": str(path)},
            ) from exc
        good_end = offset
    terminated = good_end == 0 or data[:good_end].endswith(b"\n")
    return updates, good_end, terminated


def load_updates(path: Union[str, Path]) -> List[ChannelUpdate]:
    """
    Read a JSONL update log.

    A truncated LAST line (crash mid-write) is dropped with a RuntimeWarning.
    A malformed line anywhere else raises LedgerError.
    """
    updates, _, _ = _scan_updates(Path(path))
    return updates


def verify_updates(
    updates:          List[ChannelUpdate],
    channel_id:       str,
    owner_key:        str,
    counterparty_key: str,
    capacity:         Optional[int] = None,
) -> List[LedgerViolation]:
    """
    Every violation in an update log. See OffChainChannelLedger.verify().

    With capacity, also flags updates whose balances do not sum to it:
    such an update is stored fine off-chain but update() would reject it.
    """
    violations: List[LedgerViolation] = []
    for expected, update in enumerate(updates, start=1):
        if update.sequence != expected:
            violations.append(LedgerViolation(
                update.sequence, "sequence_gap",
                f"expected sequence {expected}, got {update.sequence}",
            ))
        if update.channel_id != channel_id:
            violations.append(LedgerViolation(
                update.sequence, "channel_mismatch",
                f"update belongs to {update.channel_id!r}",
            ))
        if any(
            isinstance(b, bool) or not isinstance(b, int) or b < 0
            for b in (update.owner_balance, update.counterparty_balance)
        ):
            violations.append(LedgerViolation(
                update.sequence, "negative_balance",
                f"owner={update.owner_balance!r} counterparty={update.counterparty_balance!r}",
            ))
            continue
        if capacity is not None and update.owner_balance + update.counterparty_balance != capacity:
            violations.append(LedgerViolation(
                update.sequence, "capacity_mismatch",
                f"balances sum to {update.owner_balance + update.counterparty_balance}, "
                f"capacity is {capacity}",
            ))
        if not update.verify_signatures(owner_key, counterparty_key):
            violations.append(LedgerViolation(
                update.sequence, "invalid_signature",
                "owner or counterparty signature does not verify",
            ))
    return violations


# ─────────────────────────────────────────────────────────────
# OffChainChannelLedger
# ─────────────────────────────────────────────────────────────

class OffChainChannelLedger:
    """
    Append-only log of ChannelUpdates for one channel.

    In-memory by default. With ledger_path, every update is also written
    as one JSON line, and an existing file is replayed on construction.
    """

    def __init__(
        self,
        channel_id:       str,
        owner_key:        str,
        counterparty_key: str,
        capacity:         int,
        ledger_path:      Optional[Union[str, Path]] = None,
    ) -> None:
        if not isinstance(channel_id, str) or not channel_id:
            raise ValidationError("channel_id must be a non-empty string")
        self.channel_id       = channel_id
        self.owner_key        = validate_public_key_hex(owner_key, "owner_key")
        self.counterparty_key = validate_public_key_hex(counterparty_key, "counterparty_key")
        self.capacity         = validate_amount(capacity, "capacity")

        self._updates: List[ChannelUpdate]     = []
        self._current: Optional[ChannelUpdate] = None

        self._ledger_file: Optional[Path] = Path(ledger_path) if ledger_path else None
        if self._ledger_file is not None:
            self._ledger_file.parent.mkdir(parents=True, exist_ok=True)
            self._restore_state()

    @classmethod
    def for_channel(
        cls,
        channel:     PaymentChannel,
        ledger_path: Optional[Union[str, Path]] = None,
    ) -> "OffChainChannelLedger":
        return cls(
            channel_id=       channel.channel_id,
            owner_key=        channel.owner_key,
            counterparty_key= channel.counterparty_key,
            capacity=         channel.capacity,
            ledger_path=      ledger_path,
        )

    # ── Head ──────────────────────────────────────────────────

    @property
    def current(self) -> Optional[ChannelUpdate]:
        return self._current

    @property
    def next_sequence(self) -> int:
        """Sequence the next appended update will carry. Starts at 1."""
        return self._current.sequence + 1 if self._current else 1

    def current_balances(self) -> Tuple[int, int]:
        """(owner_balance, counterparty_balance) at the head, or the opening split."""
        if self._current is None:
            return 0, self.capacity
        return self._current.owner_balance, self._current.counterparty_balance

    def next_update_message(
        self,
        owner_balance:        int,
        counterparty_balance: int,
    ) -> Dict[str, Any]:
        """What both parties must sign for the next create_update()."""
        return channel_update_message(
            self.channel_id, owner_balance, counterparty_balance, self.next_sequence
        )

    def next_payment_message(self, amount: int) -> Dict[str, Any]:
        """What both parties must sign for the next stream_payment(amount)."""
        owner_balance, counterparty_balance = self.current_balances()
        return self.next_update_message(
            owner_balance + amount, counterparty_balance - amount
        )

    # ── Public API ────────────────────────────────────────────

    def create_update(
        self,
        owner_balance:        int,
        counterparty_balance: int,
        owner_sig:            str,
        counterparty_sig:     str,
    ) -> ChannelUpdate:
        """
        Append a new update at next_sequence and make it current.

        Raises:
            ValidationError   — negative or non-int balance
            BadSignatureError — either signature missing or invalid
            LedgerError       — persistence failed (head unchanged)
        """
        validate_amount(owner_balance, "owner_balance")
        validate_amount(counterparty_balance, "counterparty_balance")

        update = ChannelUpdate(
            channel_id=           self.channel_id,
            owner_balance=        owner_balance,
            counterparty_balance= counterparty_balance,
            sequence=             self.next_sequence,
            owner_sig=            owner_sig,
            counterparty_sig=     counterparty_sig,
            timestamp=            utc_timestamp(),
        )
        SignatureQuorum(update.message()).require([
            Signer("owner",        self.owner_key,        owner_sig),
            Signer("counterparty", self.counterparty_key, counterparty_sig),
        ])

        self._append_to_ledger(update)

        self._updates.append(update)
        self._current = update
        logger.debug(
            "channel %s off-chain update %d: owner=%d counterparty=%d",
            self.channel_id, update.sequence, owner_balance, counterparty_balance,
        )
        return update

    def stream_payment(
        self,
        amount:           int,
        owner_sig:        str,
        counterparty_sig: str,
    ) -> ChannelUpdate:
        """
        Move `amount` from counterparty to owner as a new update.

        Raises InsufficientChannelBalanceError, and appends nothing,
        if the counterparty balance would go negative.
        """
        validate_amount(amount, "amount")
        owner_balance, counterparty_balance = self.current_balances()
        if counterparty_balance - amount < 0:
            raise InsufficientChannelBalanceError(
                "Insufficient channel balance",
                {
                    "amount":               amount,
                    "counterparty_balance": counterparty_balance,
                },
            )
        return self.create_update(
            owner_balance + amount,
            counterparty_balance - amount,
            owner_sig,
            counterparty_sig,
        )

    def get_latest_state(self) -> Optional[ChannelUpdate]:
        """Highest-sequence update. This is what settlement submits."""
        return self._current

    def get_update(self, sequence: int) -> Optional[ChannelUpdate]:
        if 1 <= sequence <= len(self._updates):
            return self._updates[sequence - 1]
        return None

    def history(self) -> List[ChannelUpdate]:
        return self._updates.copy()

    def head_hash(self) -> Optional[str]:
        """Digest of the head update. Suitable for external anchoring."""
        if self._current is None:
            return None
        return canonical_hash(self._current.to_dict())

    def verify(self) -> List[LedgerViolation]:
        """
        Check the whole log.

        For each update verifies:
            - sequence is exactly 1, 2, 3, ...
            - channel_id matches this ledger
            - balances are non-negative ints
            - both signatures verify
        Returns every violation found; an empty list means clean.
        """
        return verify_updates(
            self._updates, self.channel_id, self.owner_key, self.counterparty_key
        )

    def get_stats(self) -> Dict[str, Any]:
        """Return current ledger state snapshot."""
        owner_balance, counterparty_balance = self.current_balances()
        return {
            "channel_id":           self.channel_id,
            "updates":              len(self._updates),
            "head_sequence":        self._current.sequence if self._current else 0,
            "owner_balance":        owner_balance,
            "counterparty_balance": counterparty_balance,
            "capacity":             self.capacity,
            "head_hash":            self.head_hash(),
            "ledger_file":          str(self._ledger_file) if self._ledger_file else None,
        }

    # ── Internal ──────────────────────────────────────────────

    def _restore_state(self) -> None:
        """
        Replay an existing JSONL file into memory.
        Any verification violation raises LedgerError: the head would
        not be trustworthy.
        """
        if not self._ledger_file.exists():
            return

        updates, good_end, terminated = _scan_updates(self._ledger_file)
        violations = verify_updates(
            updates, self.channel_id, self.owner_key, self.counterparty_key
        )
        if violations:
            first = violations[0]
            raise LedgerError(
                f"Ledger failed verification: {first.violation_type} at sequence {first.at_sequence}",
                {"violations": len(violations), "ledger": str(self._ledger_file)},
            )
        if good_end < self._ledger_file.stat().st_size or not terminated:
            self._repair_tail(good_end)
        self._updates = updates
        self._current = updates[-1] if updates else None

    def _repair_tail(self, good_end: int) -> None:
        """
        Cut the file back to the last readable line and make sure it ends
        in a newline, so the next append starts on a line of its own.
        """
        try:
            with open(self._ledger_file, "r+b") as f:
                f.truncate(good_end)
                if good_end:
                    f.seek(good_end - 1)
                    if f.read(1) != b"\n":
                        f.seek(good_end)
                        f.write(b"\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            raise LedgerError(
                f"OffChainChannelLedger: ledger tail repair failed: {exc}",
                {"ledger": str(self._ledger_file)},
            ) from exc
        logger.warning(
            "Repaired ledger tail: %s truncated to %d bytes",
            self._ledger_file, good_end,
        )

    def _append_to_ledger(self, update: ChannelUpdate) -> None:
        """
        Append one update as a newline-terminated JSON line.
        Raises LedgerError on any I/O failure. Head MUST NOT advance if this raises.
        """
        if self._ledger_file is None:
            return
        try:
            with open(self._ledger_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(update.to_dict()) + "\n")
        except OSError as exc:
            raise LedgerError(
                f"OffChainChannelLedger: ledger write failed: {exc}"
            ) from exc


# ─────────────────────────────────────────────────────────────
# LockedChannelLedger
# ─────────────────────────────────────────────────────────────

class LockedChannelLedger:
    """
    Serializes access to one OffChainChannelLedger (single process).

    Read the head, sign, and append under ONE lock hold:

        with locked.transaction() as ledger:
            msg = ledger.next_payment_message(amount)
            ledger.stream_payment(amount, owner.sign(...), renter.sign(...))
    """

    def __init__(self, ledger: OffChainChannelLedger) -> None:
        self._ledger = ledger
        self._lock   = threading.Lock()

    @contextmanager
    def transaction(self) -> Iterator[OffChainChannelLedger]:
        with self._lock:
            yield self._ledger

    def get_latest_state(self) -> Optional[ChannelUpdate]:
        with self._lock:
            return self._ledger.get_latest_state()

    def history(self) -> List[ChannelUpdate]:
        with self._lock:
            return self._ledger.history()
