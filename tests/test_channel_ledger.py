"""
tests/test_channel_ledger.py

Off-chain channel ledger: streaming, persistence, restore and audit.

  SEQUENCE    first update is 1, each append is head + 1
  BALANCE     a payment beyond the counterparty balance appends nothing
  DURABILITY  head advances only after a confirmed write; restart restores head
  AUDIT       verify() / verify_updates() report every violation
"""

import json
import warnings

import pytest

from rentsettle.contracts.channel import PaymentChannelStateMachine
from rentsettle.core.crypto import Ed25519KeyManager
from rentsettle.core.exceptions import (
    BadSignatureError,
    InsufficientChannelBalanceError,
    LedgerError,
    ValidationError,
)
from rentsettle.ledger.channel_ledger import (
    ChannelUpdate,
    OffChainChannelLedger,
    load_updates,
    verify_updates,
)

from helpers.parties import both_sign, make_channel


# ─────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────

@pytest.fixture
def owner():
    return Ed25519KeyManager.generate()


@pytest.fixture
def renter():
    return Ed25519KeyManager.generate()


@pytest.fixture
def channel(owner, renter):
    return make_channel(owner, renter, capacity=1000)


@pytest.fixture
def ledger(channel):
    return OffChainChannelLedger.for_channel(channel)


def pay(ledger, owner, renter, amount):
    """Both parties sign the next payment, then it is appended."""
    osig, csig = both_sign(owner, renter, ledger.next_payment_message(amount))
    return ledger.stream_payment(amount, osig, csig)


# ─────────────────────────────────────────────────────────────
# Streaming
# ─────────────────────────────────────────────────────────────

class TestStreaming:

    def test_three_payments_of_100(self, ledger, owner, renter):
        for _ in range(3):
            pay(ledger, owner, renter, 100)

        current = ledger.get_latest_state()
        assert current.owner_balance == 300
        assert current.counterparty_balance == 700
        assert current.sequence == 3
        assert [u.sequence for u in ledger.history()] == [1, 2, 3]

    def test_empty_ledger(self, ledger):
        assert ledger.current is None
        assert ledger.get_latest_state() is None
        assert ledger.next_sequence == 1
        assert ledger.current_balances() == (0, 1000)
        assert ledger.head_hash() is None

    def test_insufficient_balance_appends_nothing(self, ledger, owner, renter):
        pay(ledger, owner, renter, 900)
        before = ledger.current

        osig, csig = both_sign(owner, renter, ledger.next_payment_message(101))
        with pytest.raises(InsufficientChannelBalanceError):
            ledger.stream_payment(101, osig, csig)

        assert ledger.current is before
        assert len(ledger.history()) == 1

    def test_exact_remaining_balance_allowed(self, ledger, owner, renter):
        update = pay(ledger, owner, renter, 1000)
        assert (update.owner_balance, update.counterparty_balance) == (1000, 0)

    def test_negative_amount_rejected(self, ledger, owner, renter):
        with pytest.raises(ValidationError):
            ledger.stream_payment(-5, "a", "b")

    def test_bad_signature_appends_nothing(self, ledger, owner, renter):
        msg = ledger.next_payment_message(100)
        with pytest.raises(BadSignatureError):
            ledger.stream_payment(100, owner.sign(b"other"), renter.sign(b"other"))
        assert ledger.current is None
        osig, csig = both_sign(owner, renter, msg)
        assert ledger.stream_payment(100, osig, csig).sequence == 1

    def test_signature_for_old_sequence_rejected(self, ledger, owner, renter):
        osig, csig = both_sign(owner, renter, ledger.next_payment_message(100))
        ledger.stream_payment(100, osig, csig)
        with pytest.raises(BadSignatureError):
            ledger.stream_payment(100, osig, csig)

    def test_create_update_any_split(self, ledger, owner, renter):
        osig, csig = both_sign(owner, renter, ledger.next_update_message(600, 400))
        update = ledger.create_update(600, 400, osig, csig)
        assert update.sequence == 1
        assert ledger.current_balances() == (600, 400)

    def test_get_update(self, ledger, owner, renter):
        pay(ledger, owner, renter, 10)
        pay(ledger, owner, renter, 20)
        assert ledger.get_update(2).owner_balance == 30
        assert ledger.get_update(0) is None
        assert ledger.get_update(3) is None

    def test_latest_update_settles_on_chain(self, ledger, channel, owner, renter):
        for _ in range(3):
            pay(ledger, owner, renter, 100)
        latest = ledger.get_latest_state()

        machine = PaymentChannelStateMachine(channel)
        machine.update(
            latest.owner_balance, latest.counterparty_balance, latest.sequence,
            latest.owner_sig, latest.counterparty_sig,
        )
        assert machine.channel.sequence == 3
        assert machine.channel.owner_balance == 300

    def test_stats(self, ledger, owner, renter):
        pay(ledger, owner, renter, 250)
        stats = ledger.get_stats()
        assert stats["updates"] == 1
        assert stats["head_sequence"] == 1
        assert stats["owner_balance"] == 250
        assert stats["counterparty_balance"] == 750
        assert stats["head_hash"] == ledger.head_hash()
        assert stats["ledger_file"] is None


# ─────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────

class TestPersistence:

    def test_each_update_is_one_json_line(self, channel, owner, renter, tmp_path):
        path = tmp_path / "channel.jsonl"
        ledger = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        pay(ledger, owner, renter, 100)
        pay(ledger, owner, renter, 100)

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["sequence"] == 2
        assert ChannelUpdate.from_dict(json.loads(lines[0])) == ledger.get_update(1)

    def test_restart_restores_head(self, channel, owner, renter, tmp_path):
        path = tmp_path / "channel.jsonl"
        first = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        for _ in range(3):
            pay(first, owner, renter, 100)

        second = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        assert second.current == first.current
        assert second.next_sequence == 4
        assert second.head_hash() == first.head_hash()
        pay(second, owner, renter, 50)
        assert second.current_balances() == (350, 650)

    def test_truncated_last_line_dropped_with_warning(self, channel, owner, renter, tmp_path):
        path = tmp_path / "channel.jsonl"
        ledger = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        pay(ledger, owner, renter, 100)
        with open(path, "a", encoding="utf-8") as f:
            f.write('{"channel_id": "trunc')

        with pytest.warns(RuntimeWarning):
            restored = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        assert restored.current.sequence == 1

    def test_append_after_truncated_tail_survives_restart(self, channel, owner, renter, tmp_path):
        path = tmp_path / "channel.jsonl"
        ledger = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        pay(ledger, owner, renter, 100)
        with open(path, "a", encoding="utf-8") as f:
            f.write('{"channel_id": "trunc')

        with pytest.warns(RuntimeWarning):
            restored = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        assert pay(restored, owner, renter, 200).sequence == 2

        # the fragment is gone, so the second restart reads every line cleanly
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            again = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        assert again.current.sequence == 2
        assert again.current_balances() == (300, 700)
        assert len(path.read_text().splitlines()) == 2

    def test_unterminated_last_line_gets_newline(self, channel, owner, renter, tmp_path):
        path = tmp_path / "channel.jsonl"
        ledger = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        pay(ledger, owner, renter, 100)
        path.write_text(path.read_text().rstrip("\n"))

        restored = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        pay(restored, owner, renter, 100)

        again = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        assert again.current.sequence == 2
        assert again.current_balances() == (200, 800)

    def test_malformed_middle_line_raises(self, channel, owner, renter, tmp_path):
        path = tmp_path / "channel.jsonl"
        ledger = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        pay(ledger, owner, renter, 100)
        pay(ledger, owner, renter, 100)
        lines = path.read_text().splitlines()
        path.write_text(lines[0] + "\nnot json\n" + lines[1] + "\n")

        with pytest.raises(LedgerError):
            OffChainChannelLedger.for_channel(channel, ledger_path=path)

    def test_tampered_balance_refuses_restore(self, channel, owner, renter, tmp_path):
        path = tmp_path / "channel.jsonl"
        ledger = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        pay(ledger, owner, renter, 100)

        entry = json.loads(path.read_text())
        entry["owner_balance"] = 1000
        entry["counterparty_balance"] = 0
        path.write_text(json.dumps(entry) + "\n")

        with pytest.raises(LedgerError, match="invalid_signature"):
            OffChainChannelLedger.for_channel(channel, ledger_path=path)

    def test_failed_write_leaves_head_unchanged(self, channel, owner, renter, tmp_path):
        path = tmp_path / "channel.jsonl"
        ledger = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        pay(ledger, owner, renter, 100)
        before = ledger.current

        # a directory cannot be opened for append
        ledger._ledger_file = tmp_path
        osig, csig = both_sign(owner, renter, ledger.next_payment_message(100))
        with pytest.raises(LedgerError):
            ledger.stream_payment(100, osig, csig)
        assert ledger.current is before
        assert len(ledger.history()) == 1

    def test_load_updates_missing_file(self, tmp_path):
        with pytest.raises(LedgerError):
            load_updates(tmp_path / "missing.jsonl")

    def test_load_updates_skips_blank_lines(self, channel, owner, renter, tmp_path):
        path = tmp_path / "channel.jsonl"
        ledger = OffChainChannelLedger.for_channel(channel, ledger_path=path)
        pay(ledger, owner, renter, 100)
        path.write_text("\n" + path.read_text() + "\n\n")
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            assert len(load_updates(path)) == 1


# ─────────────────────────────────────────────────────────────
# Audit
# ─────────────────────────────────────────────────────────────

class TestVerify:

    def _updates(self, ledger, owner, renter, n=3):
        for _ in range(n):
            pay(ledger, owner, renter, 100)
        return ledger.history()

    def test_clean_ledger(self, ledger, owner, renter):
        self._updates(ledger, owner, renter)
        assert ledger.verify() == []

    def test_sequence_gap(self, ledger, channel, owner, renter):
        updates = self._updates(ledger, owner, renter)
        del updates[1]
        violations = verify_updates(
            updates, channel.channel_id, owner.public_key_hex, renter.public_key_hex
        )
        assert [v.violation_type for v in violations] == ["sequence_gap"]
        assert violations[0].at_sequence == 3

    def test_swapped_keys_are_invalid_signatures(self, ledger, channel, owner, renter):
        updates = self._updates(ledger, owner, renter, n=2)
        violations = verify_updates(
            updates, channel.channel_id, renter.public_key_hex, owner.public_key_hex
        )
        assert {v.violation_type for v in violations} == {"invalid_signature"}
        assert len(violations) == 2

    def test_channel_mismatch(self, ledger, owner, renter):
        updates = self._updates(ledger, owner, renter, n=1)
        violations = verify_updates(
            updates, "channel-other", owner.public_key_hex, renter.public_key_hex
        )
        assert "channel_mismatch" in [v.violation_type for v in violations]

    def test_negative_balance(self, ledger, channel, owner, renter):
        updates = self._updates(ledger, owner, renter, n=1)
        data = updates[0].to_dict()
        data["counterparty_balance"] = -1
        violations = verify_updates(
            [ChannelUpdate.from_dict(data)],
            channel.channel_id, owner.public_key_hex, renter.public_key_hex,
        )
        assert [v.violation_type for v in violations] == ["negative_balance"]

    def test_capacity_mismatch_only_when_capacity_given(self, ledger, channel, owner, renter):
        updates = self._updates(ledger, owner, renter, n=1)
        args = (updates, channel.channel_id, owner.public_key_hex, renter.public_key_hex)
        assert verify_updates(*args) == []
        assert verify_updates(*args, capacity=1000) == []
        violations = verify_updates(*args, capacity=999)
        assert [v.violation_type for v in violations] == ["capacity_mismatch"]

    def test_fully_signed(self, ledger, owner, renter):
        update = self._updates(ledger, owner, renter, n=1)[0]
        assert update.is_fully_signed()
        assert update.verify_signatures(owner.public_key_hex, renter.public_key_hex)


class TestConstruction:

    def test_bad_key_rejected(self, owner):
        with pytest.raises(ValidationError):
            OffChainChannelLedger("channel-1", owner.public_key_hex, "nothex", 1000)

    def test_empty_channel_id_rejected(self, owner, renter):
        with pytest.raises(ValidationError):
            OffChainChannelLedger("", owner.public_key_hex, renter.public_key_hex, 1000)
