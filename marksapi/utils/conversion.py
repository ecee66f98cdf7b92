"""
마크 환산 및 출금 입력 검증 (순수 함수)

- 마크 -> WLD 환산과 플랫폼 수수료 계산
- 출금 수량/지갑 주소 검증
- 설문 부스트 풀의 수수료/헬퍼 분배 계산

I/O 가 없으므로 DB 나 게이트웨이 없이 바로 단위 테스트할 수 있습니다.
금액 계산은 모두 Decimal 로 하고, wei 환산은 내림만 합니다 (과지급 방지).
"""

import re
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Optional

from marksapi.core.exceptions import (
    BelowMinimumError,
    InvalidAddressError,
    InvalidAmountError,
    NotMultipleError,
    ValidationError,
)

# 0x + 20바이트 hex
WALLET_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


@dataclass(frozen=True)
class MarksPolicy:
    """마크 정책 상수 묶음"""

    rate: int = 100  # 100 marks = 1 WLD
    fee_percent: Decimal = Decimal("20")
    min_withdrawal: int = 500
    withdrawal_multiple: int = 500
    max_cap: int = 500
    commission_rate: Decimal = Decimal("0.04")
    max_boost: int = 3000
    decimals: int = 18

    @classmethod
    def from_settings(cls, settings: Any) -> "MarksPolicy":
        return cls(
            rate=settings.MARKS_TO_WLD_RATE,
            fee_percent=Decimal(str(settings.PLATFORM_FEE_PERCENT)),
            min_withdrawal=settings.MIN_WITHDRAWAL_MARKS,
            withdrawal_multiple=settings.WITHDRAWAL_MULTIPLE,
            max_cap=settings.MAX_MARKS_CAP,
            commission_rate=Decimal(str(settings.SURVEY_COMMISSION_RATE)),
            max_boost=settings.SURVEY_MAX_BOOST_MARKS,
            decimals=settings.WLD_DECIMALS,
        )


DEFAULT_POLICY = MarksPolicy()


@dataclass(frozen=True)
class Conversion:
    marks: int
    gross_external: Decimal
    platform_fee: Decimal
    net_external: Decimal
    net_external_minor_units: int


@dataclass(frozen=True)
class BoostSplit:
    boost_marks: int
    goal_count: int
    commission: int
    per_helper: int
    total_distributed: int
    remainder: int  # 내림으로 분배되지 않고 남는 마크


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def marks_to_external(marks: int, policy: MarksPolicy = DEFAULT_POLICY) -> Decimal:
    return Decimal(marks) / Decimal(policy.rate)


def external_to_marks(amount: Decimal, policy: MarksPolicy = DEFAULT_POLICY) -> int:
    return _floor(Decimal(str(amount)) * Decimal(policy.rate))


def convert(marks: int, policy: MarksPolicy = DEFAULT_POLICY) -> Conversion:
    """마크 수량을 WLD 총액/수수료/실수령액/wei 로 환산"""
    gross = marks_to_external(marks, policy)
    fee = gross * policy.fee_percent / Decimal(100)
    net = gross - fee
    net_minor = _floor(net * (Decimal(10) ** policy.decimals))

    return Conversion(
        marks=marks,
        gross_external=gross,
        platform_fee=fee,
        net_external=net,
        net_external_minor_units=net_minor,
    )


def validate_amount(marks: Any, policy: MarksPolicy = DEFAULT_POLICY) -> int:
    """출금 수량 검증. 통과하면 정수 마크를 반환"""
    if isinstance(marks, bool) or not isinstance(marks, int):
        raise InvalidAmountError(
            "Withdrawal amount must be a whole number of marks",
            details={"marks": str(marks)},
        )

    if marks < policy.min_withdrawal:
        raise BelowMinimumError(
            f"Minimum withdrawal is {policy.min_withdrawal} marks",
            details={"marks": marks, "minimum": policy.min_withdrawal},
        )

    if marks % policy.withdrawal_multiple != 0:
        raise NotMultipleError(
            f"Withdrawal amount must be a multiple of {policy.withdrawal_multiple} marks",
            details={"marks": marks, "multiple": policy.withdrawal_multiple},
        )

    return marks


def validate_address(address: Optional[str]) -> str:
    if not address:
        raise InvalidAddressError("Wallet address is required")

    if not isinstance(address, str) or not WALLET_ADDRESS_PATTERN.match(address):
        raise InvalidAddressError(
            "Invalid wallet address format", details={"wallet_address": str(address)}
        )

    return address


def validate_boost(boost_marks: int, policy: MarksPolicy = DEFAULT_POLICY) -> int:
    if boost_marks < 1:
        raise ValidationError("Boost amount must be at least 1 mark.")
    if boost_marks > policy.max_boost:
        raise ValidationError(f"Maximum boost is {policy.max_boost} marks per survey.")
    return boost_marks


def split_boost(
    boost_marks: int, goal_count: int, policy: MarksPolicy = DEFAULT_POLICY
) -> BoostSplit:
    """부스트 풀 분배: 수수료를 먼저 떼고 나머지를 목표 인원으로 내림 분배"""
    if goal_count <= 0:
        raise ValidationError("Survey goal count must be positive", details={"goal_count": goal_count})
    if boost_marks < 0:
        raise ValidationError("Boost amount cannot be negative", details={"boost_marks": boost_marks})

    commission = _floor(Decimal(boost_marks) * policy.commission_rate)
    per_helper = (boost_marks - commission) // goal_count
    total_distributed = per_helper * goal_count

    return BoostSplit(
        boost_marks=boost_marks,
        goal_count=goal_count,
        commission=commission,
        per_helper=per_helper,
        total_distributed=total_distributed,
        remainder=boost_marks - commission - total_distributed,
    )


def cap_credit(current_marks: int, requested: int, max_cap: int) -> int:
    """한도를 넘지 않도록 실제 적립 가능한 수량"""
    available_space = max(0, max_cap - current_marks)
    return max(0, min(requested, available_space))
