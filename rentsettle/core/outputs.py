"""
rentsettle/core/outputs.py

Output Commitments — v1

An output commitment binds a state transition to the exact value
movement the external ledger is asked to perform.

CONTRACT — Encoding (locked)
    commitment_dict = {
        "change":  <opaque ledger change placeholder or None>,
        "outputs": [{"amount": int, "beneficiary": str}, ...],   # in order
    }
    digest = hex(SHA-256(JCS(commitment_dict)))

    Zero-amount outputs are DROPPED before encoding. A distribution that
    lists a zero output and one that omits it encode to the same bytes,
    so committer and verifier never disagree about "the same" distribution.

    Order is significant: [(a, 1), (b, 2)] != [(b, 2), (a, 1)].

There is exactly one encoding. No fallback.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from rentsettle.core.canonical import canonical_hash
from rentsettle.core.exceptions import OutputMismatchError, ValidationError


def validate_amount(value, field_name: str = "amount") -> int:
    """Return value if it is a non-negative int (bool excluded). Raise ValidationError otherwise."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(
            f"{field_name} must be a non-negative integer",
            {"field": field_name, "value": repr(value)},
        )
    return value


@dataclass(frozen=True)
class Output:
    """One (beneficiary, amount) pair of a settling transaction."""
    beneficiary: str
    amount:      int

    def __post_init__(self) -> None:
        if not isinstance(self.beneficiary, str) or not self.beneficiary:
            raise ValidationError("beneficiary must be a non-empty string")
        validate_amount(self.amount)

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": self.amount, "beneficiary": self.beneficiary}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Output":
        return cls(beneficiary=data["beneficiary"], amount=data["amount"])


OutputLike = Union[Output, Tuple[str, int]]


def _coerce(outputs: Iterable[OutputLike]) -> Tuple[Output, ...]:
    coerced = []
    for item in outputs:
        if isinstance(item, Output):
            coerced.append(item)
        else:
            beneficiary, amount = item
            coerced.append(Output(beneficiary=beneficiary, amount=amount))
    return tuple(coerced)


class OutputCommitment:
    """
    Ordered list of outputs plus an optional change placeholder.

    Not persisted. Built fresh on every transition check.
    """

    def __init__(
        self,
        outputs: Iterable[OutputLike],
        change:  Optional[str] = None,
    ) -> None:
        if change is not None and not isinstance(change, str):
            raise ValidationError(
                f"change placeholder must be str or None, got {type(change).__name__}"
            )
        self._outputs: Tuple[Output, ...] = tuple(
            o for o in _coerce(outputs) if o.amount > 0
        )
        self._change: Optional[str] = change

    @property
    def outputs(self) -> Tuple[Output, ...]:
        """Non-zero outputs, in commitment order."""
        return self._outputs

    @property
    def change(self) -> Optional[str]:
        return self._change

    @property
    def total(self) -> int:
        """Sum of committed amounts. Change is not counted."""
        return sum(o.amount for o in self._outputs)

    def to_dict(self) -> Dict[str, Any]:
        """THE dict that is hashed. See module docstring."""
        return {
            "change":  self._change,
            "outputs": [o.to_dict() for o in self._outputs],
        }

    def digest(self) -> str:
        return canonical_hash(self.to_dict())

    def with_change(self, change: Optional[str]) -> "OutputCommitment":
        """Same distribution, different change placeholder."""
        return OutputCommitment(self._outputs, change=change)

    def __eq__(self, other) -> bool:
        if not isinstance(other, OutputCommitment):
            return NotImplemented
        return self.digest() == other.digest()

    def __hash__(self) -> int:
        return hash(self.digest())

    def __repr__(self) -> str:
        pairs = ", ".join(f"{o.beneficiary[:8]}…={o.amount}" for o in self._outputs)
        return f"OutputCommitment([{pairs}], change={self._change!r})"


def commit_outputs(
    outputs: Iterable[OutputLike],
    change:  Optional[str] = None,
) -> str:
    """Digest of a distribution. Shorthand for OutputCommitment(...).digest()."""
    return OutputCommitment(outputs, change=change).digest()


# ─────────────────────────────────────────────────────────────
# Ledger context: what the external ledger supplies per transition
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LedgerContext:
    """
    Inputs the external ledger supplies when a transition is evaluated.

        clock   — current monotonic ledger height/time
        outputs — outputs of the settling transaction, in order
        change  — ledger-defined change placeholder (opaque)

    Transitions read the clock and proposed outputs from here and
    nowhere else.
    """
    clock:   int
    outputs: Tuple[Output, ...] = field(default_factory=tuple)
    change:  Optional[str]      = None

    def __post_init__(self) -> None:
        validate_amount(self.clock, "clock")
        object.__setattr__(self, "outputs", _coerce(self.outputs))

    def commitment(self) -> OutputCommitment:
        return OutputCommitment(self.outputs, change=self.change)

    def outputs_digest(self) -> str:
        return self.commitment().digest()


def require_matching_outputs(
    expected: OutputCommitment,
    ctx:      LedgerContext,
) -> OutputCommitment:
    """
    Raise OutputMismatchError unless the proposed outputs commit to exactly
    the expected distribution (plus the ledger's own change placeholder).

    Returns the expected commitment bound to the ledger's change.
    """
    bound    = expected.with_change(ctx.change)
    proposed = ctx.outputs_digest()
    if bound.digest() != proposed:
        raise OutputMismatchError(
            "Proposed outputs do not match the committed distribution",
            {
                "expected": bound.digest()[:16],
                "proposed": proposed[:16],
            },
        )
    return bound
