"""
rentsettle/core/quorum.py

Signature Quorum — pure verification primitive.

CONTRACT — Transition message (locked)
    message = {
        "domain":      "rentsettle/v1",
        "contract":    "escrow" | "channel",
        "contract_id": <id of the contract instance>,
        "action":      <transition name>,
        ...action-specific fields...
    }
    bytes_signed = JCS(message)

CONTRACT — Quorum
    Every required signer must produce a valid Ed25519 signature over the
    SAME bytes under its OWN key. There is no "any k of n": a quorum of two
    parties means exactly both. Failure raises BadSignatureError and never
    touches contract state.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from rentsettle.core.canonical import canonicalize
from rentsettle.core.crypto import Ed25519KeyManager
from rentsettle.core.exceptions import BadSignatureError


MESSAGE_DOMAIN = "rentsettle/v1"


def transition_message(
    contract:    str,
    contract_id: str,
    action:      str,
    **fields:    Any,
) -> Dict[str, Any]:
    """Build the canonical message dict for one transition."""
    message: Dict[str, Any] = {
        "domain":      MESSAGE_DOMAIN,
        "contract":    contract,
        "contract_id": contract_id,
        "action":      action,
    }
    for name, value in fields.items():
        if name in message:
            raise ValueError(f"field '{name}' is reserved in transition messages")
        message[name] = value
    return message


def message_bytes(message: Dict[str, Any]) -> bytes:
    """THE ONLY path from a transition message to the bytes that get signed."""
    return canonicalize(message)


def sign_message(key_manager: Ed25519KeyManager, message: Dict[str, Any]) -> str:
    """Sign a transition message. Used by parties and by tests."""
    return key_manager.sign(message_bytes(message))


@dataclass(frozen=True)
class Signer:
    """One required signature: who, under which key, and what they supplied."""
    role:       str
    public_key: str
    signature:  Optional[str]

    def verifies(self, data: bytes) -> bool:
        if not self.signature:
            return False
        return Ed25519KeyManager.verify_detached(data, self.signature, self.public_key)


class SignatureQuorum:
    """
    All-of-N signature check over one canonical message.

    Usage:
        SignatureQuorum(message).require([
            Signer("owner",        owner_key,        owner_sig),
            Signer("counterparty", counterparty_key, counterparty_sig),
        ])
    """

    def __init__(self, message: Dict[str, Any]) -> None:
        self.message = message
        self._data   = message_bytes(message)

    def failing_roles(self, signers: Iterable[Signer]) -> List[str]:
        """Roles whose signature does not verify. Empty list means quorum met."""
        return [s.role for s in signers if not s.verifies(self._data)]

    def is_satisfied(self, signers: Iterable[Signer]) -> bool:
        signers = list(signers)
        return bool(signers) and not self.failing_roles(signers)

    def require(self, signers: Iterable[Signer]) -> None:
        """Raise BadSignatureError unless every signer verifies."""
        signers = list(signers)
        if not signers:
            raise BadSignatureError(
                "Quorum requires at least one signer",
                {"action": self.message.get("action")},
            )
        failing = self.failing_roles(signers)
        if failing:
            raise BadSignatureError(
                f"Invalid signature from {', '.join(failing)}",
                {
                    "action":      self.message.get("action"),
                    "contract_id": self.message.get("contract_id"),
                },
            )


def verify_any(
    message: Dict[str, Any],
    candidates: Iterable[Signer],
) -> Signer:
    """
    Return the first candidate whose signature verifies over message.

    Used where exactly one of several parties may act alone
    (channel finalize_close). Raises BadSignatureError if none verifies.
    """
    data = message_bytes(message)
    candidates = list(candidates)
    for signer in candidates:
        if signer.verifies(data):
            return signer
    raise BadSignatureError(
        "Signature does not verify under any permitted party key",
        {
            "action":  message.get("action"),
            "allowed": ", ".join(s.role for s in candidates),
        },
    )
