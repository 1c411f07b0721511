"""Unit tests for transfer fee calculation"""
import pytest

from fee_orchestrator.exceptions import ValidationError
from fee_orchestrator.services.fees import (
    U64_MAX,
    TransferFeeQuote,
    calculate_fee,
    check_expected_fee,
    quote_transfer,
    validate_amount,
    validate_fee_parameters,
)


class TestCalculateFee:
    """Tests for calculate_fee"""

    def test_fee_clamped_to_maximum(self):
        """50 bps of 1,000,000 is exactly the 5,000 cap"""
        assert calculate_fee(1_000_000, 50, 5_000) == 5_000

    def test_fee_below_maximum(self):
        assert calculate_fee(100_000, 50, 5_000) == 500

    def test_fee_above_maximum_is_clamped(self):
        assert calculate_fee(10_000_000, 50, 5_000) == 5_000

    def test_fee_rounds_down(self):
        # 199 * 50 / 10000 = 0.995
        assert calculate_fee(199, 50, 5_000) == 0
        assert calculate_fee(201, 50, 5_000) == 1

    def test_zero_amount(self):
        assert calculate_fee(0, 50, 5_000) == 0

    def test_zero_basis_points(self):
        assert calculate_fee(1_000_000, 0, 5_000) == 0

    def test_zero_maximum_fee(self):
        assert calculate_fee(1_000_000, 50, 0) == 0

    def test_full_basis_points_takes_whole_amount_up_to_cap(self):
        assert calculate_fee(1_234, 10_000, U64_MAX) == 1_234
        assert calculate_fee(1_234, 10_000, 1_000) == 1_000

    def test_no_overflow_near_u64_max(self):
        """The intermediate product exceeds u64 but the result is exact"""
        assert calculate_fee(U64_MAX, 10_000, U64_MAX) == U64_MAX
        assert calculate_fee(U64_MAX, 1, U64_MAX) == U64_MAX // 10_000

    def test_fee_never_exceeds_amount(self):
        for amount in (0, 1, 7, 999, 10_000, 123_456_789, U64_MAX):
            for bps in (0, 1, 50, 9_999, 10_000):
                fee = calculate_fee(amount, bps, U64_MAX)
                assert 0 <= fee <= amount

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError):
            calculate_fee(-1, 50, 5_000)

    def test_basis_points_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            calculate_fee(1_000, 10_001, 5_000)
        with pytest.raises(ValidationError):
            calculate_fee(1_000, -1, 5_000)

    def test_non_integer_inputs_rejected(self):
        with pytest.raises(ValidationError):
            calculate_fee(1_000.0, 50, 5_000)
        with pytest.raises(ValidationError):
            calculate_fee(True, 50, 5_000)


class TestValidation:
    """Tests for amount and parameter validation"""

    def test_validate_amount_returns_value(self):
        assert validate_amount(42) == 42

    def test_validate_amount_rejects_overflow(self):
        with pytest.raises(ValidationError, match="u64"):
            validate_amount(U64_MAX + 1)

    def test_validate_amount_names_field(self):
        with pytest.raises(ValidationError, match="maximum_fee"):
            validate_amount(-5, "maximum_fee")

    def test_validate_fee_parameters_bounds(self):
        validate_fee_parameters(0, 0)
        validate_fee_parameters(10_000, U64_MAX)
        with pytest.raises(ValidationError):
            validate_fee_parameters(50, U64_MAX + 1)

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            validate_amount(-1)


class TestQuote:
    """Tests for transfer quotes"""

    def test_quote_net_amount(self):
        """Transferring 1,000,000 at 50 bps / max 5,000 delivers 995,000"""
        quote = quote_transfer(1_000_000, 50, 5_000)
        assert quote == TransferFeeQuote(amount=1_000_000, fee=5_000)
        assert quote.net_amount == 995_000

    def test_quote_to_dict(self):
        assert quote_transfer(100_000, 50, 5_000).to_dict() == {
            "amount": 100_000,
            "fee": 500,
            "net_amount": 99_500,
        }

    def test_check_expected_fee_accepts_match(self):
        assert check_expected_fee(1_000_000, 5_000, 50, 5_000) == 5_000

    def test_check_expected_fee_rejects_mismatch(self):
        with pytest.raises(ValidationError, match="does not match"):
            check_expected_fee(1_000_000, 4_999, 50, 5_000)
