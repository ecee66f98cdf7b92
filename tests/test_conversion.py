from decimal import Decimal

import pytest

from marksapi.core.exceptions import (
    BelowMinimumError,
    InvalidAddressError,
    InvalidAmountError,
    NotMultipleError,
    ValidationError,
)
from marksapi.utils.conversion import (
    MarksPolicy,
    cap_credit,
    convert,
    external_to_marks,
    split_boost,
    validate_address,
    validate_amount,
    validate_boost,
)


class TestConvert:
    def test_500_marks_after_fee(self):
        result = convert(500)

        assert result.gross_external == Decimal("5")
        assert result.platform_fee == Decimal("1")
        assert result.net_external == Decimal("4")
        assert result.net_external_minor_units == 4 * 10**18

    def test_minor_units_are_exact(self):
        """부동소수점 오차 없이 wei 단위 정수"""
        result = convert(1500)

        assert result.net_external == Decimal("12")
        assert result.net_external_minor_units == 12_000_000_000_000_000_000

    def test_minor_units_never_round_up(self):
        result = convert(1, MarksPolicy(rate=3, fee_percent=Decimal("0")))

        # 1/3 WLD = 0.333... -> 내림
        assert result.net_external_minor_units == 333333333333333333

    def test_external_to_marks_floors(self):
        assert external_to_marks(Decimal("0.999")) == 99
        assert external_to_marks(Decimal("4.5")) == 450


class TestValidateAmount:
    def test_valid_amounts(self):
        assert validate_amount(500) == 500
        assert validate_amount(1500) == 1500

    def test_below_minimum(self):
        with pytest.raises(BelowMinimumError) as exc_info:
            validate_amount(499)
        assert exc_info.value.error_code == "WITHDRAWAL_BELOW_MINIMUM"

    def test_zero_is_below_minimum(self):
        with pytest.raises(BelowMinimumError):
            validate_amount(0)

    def test_not_multiple(self):
        with pytest.raises(NotMultipleError) as exc_info:
            validate_amount(750)
        assert exc_info.value.error_code == "WITHDRAWAL_NOT_MULTIPLE"

    @pytest.mark.parametrize("value", [500.0, "500", True, None])
    def test_non_integer_rejected(self, value):
        with pytest.raises(InvalidAmountError):
            validate_amount(value)


class TestValidateAddress:
    def test_valid_address(self):
        address = "0x" + "aB" * 20
        assert validate_address(address) == address

    @pytest.mark.parametrize(
        "address",
        ["", None, "0x123", "ab" * 21, "0x" + "zz" * 20, "0x" + "ab" * 21],
    )
    def test_invalid_address(self, address):
        with pytest.raises(InvalidAddressError) as exc_info:
            validate_address(address)
        assert exc_info.value.status_code == 400


class TestSplitBoost:
    def test_commission_and_per_helper(self):
        split = split_boost(100, 10)

        assert split.commission == 4
        assert split.per_helper == 9
        assert split.total_distributed == 90
        assert split.remainder == 6

    def test_accounts_for_every_mark(self):
        split = split_boost(3000, 7)

        assert split.commission == 120
        assert split.per_helper == 411
        assert split.commission + split.total_distributed + split.remainder == 3000

    def test_invalid_goal(self):
        with pytest.raises(ValidationError):
            split_boost(100, 0)

    def test_boost_limits(self):
        assert validate_boost(3000) == 3000
        with pytest.raises(ValidationError):
            validate_boost(0)
        with pytest.raises(ValidationError):
            validate_boost(3001)


class TestCapCredit:
    def test_within_cap(self):
        assert cap_credit(100, 50, 500) == 50

    def test_partially_capped(self):
        assert cap_credit(495, 9, 500) == 5

    def test_at_cap(self):
        assert cap_credit(500, 9, 500) == 0
