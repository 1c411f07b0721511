"""
Transfer Fee Calculator

Computes the fee the Token-2022 transfer-fee extension withholds from a
transfer:

    fee = min(floor(amount * basis_points / 10000), maximum_fee)

Python integers are arbitrary precision, so the product never overflows even
for supplies near the u64 limit.
"""
from dataclasses import dataclass
from typing import Any, Dict

from fee_orchestrator.exceptions import ValidationError

MAX_FEE_BASIS_POINTS = 10_000
U64_MAX = 2**64 - 1


def validate_amount(amount: int, name: str = "amount") -> int:
    """Reject non-integer, negative or u64-overflowing token amounts"""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"{name} must be an integer, got {type(amount).__name__}")
    if amount < 0:
        raise ValidationError(f"{name} must be non-negative, got {amount}")
    if amount > U64_MAX:
        raise ValidationError(f"{name} exceeds u64 range: {amount}")
    return amount


def validate_fee_parameters(fee_basis_points: int, maximum_fee: int) -> None:
    """Check basis points lie in [0, 10000] and the fee cap is a valid u64"""
    if isinstance(fee_basis_points, bool) or not isinstance(fee_basis_points, int):
        raise ValidationError("fee_basis_points must be an integer")
    if not 0 <= fee_basis_points <= MAX_FEE_BASIS_POINTS:
        raise ValidationError(
            f"fee_basis_points must be between 0 and {MAX_FEE_BASIS_POINTS}, got {fee_basis_points}"
        )
    validate_amount(maximum_fee, "maximum_fee")


def calculate_fee(amount: int, fee_basis_points: int, maximum_fee: int) -> int:
    """Fee withheld for a transfer of ``amount``, clamped to ``maximum_fee``"""
    validate_amount(amount)
    validate_fee_parameters(fee_basis_points, maximum_fee)
    if amount == 0 or fee_basis_points == 0:
        return 0
    raw_fee = amount * fee_basis_points // MAX_FEE_BASIS_POINTS
    return min(raw_fee, maximum_fee)


@dataclass(frozen=True)
class TransferFeeQuote:
    """Expected outcome of a fee-bearing transfer"""
    amount: int
    fee: int

    @property
    def net_amount(self) -> int:
        """Amount credited to the destination's balance"""
        return self.amount - self.fee

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "fee": self.fee,
            "net_amount": self.net_amount,
        }


def quote_transfer(amount: int, fee_basis_points: int, maximum_fee: int) -> TransferFeeQuote:
    """Compute fee and net delivery for a transfer"""
    return TransferFeeQuote(
        amount=amount,
        fee=calculate_fee(amount, fee_basis_points, maximum_fee),
    )


def check_expected_fee(amount: int, fee: int, fee_basis_points: int, maximum_fee: int) -> int:
    """Verify a caller-supplied fee against the local computation.

    A mismatch is a client bug; the program would reject the transfer anyway,
    so fail before building it.
    """
    expected = calculate_fee(amount, fee_basis_points, maximum_fee)
    if fee != expected:
        raise ValidationError(
            f"fee {fee} does not match computed fee {expected} for amount {amount} "
            f"({fee_basis_points} bps, max {maximum_fee})"
        )
    return expected
