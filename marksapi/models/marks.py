"""
마크 원장 데이터 모델

mark_transactions 는 마크 잔액 변동의 감사 기록입니다.
- 모든 잔액 변경은 같은 DB 트랜잭션 안에서 이 테이블에 한 행을 남김
- 종결 상태(COMPLETED/FAILED/REJECTED/CANCELLED)의 행은 다시 변경되지 않음
- nonce 는 멱등성 키 (출금 요청 nonce, purchase:{tx}, survey_help:{survey}:{user} 등)
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from marksapi.models.base import BaseModel


class MarkTransactionType(str, enum.Enum):
    PURCHASE = "PURCHASE"
    WITHDRAWAL = "WITHDRAWAL"
    SURVEY_HELP = "SURVEY_HELP"
    SURVEY_BOOST = "SURVEY_BOOST"
    COMMISSION = "COMMISSION"


class MarkTransactionStatus(str, enum.Enum):
    PENDING = "PENDING"  # 수동 승인 대기 (레거시 경로)
    PROCESSING = "PROCESSING"  # 예약 완료, 외부 정산 진행/확인 중
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self not in ACTIVE_STATUSES


ACTIVE_STATUSES = (MarkTransactionStatus.PENDING, MarkTransactionStatus.PROCESSING)

_ACTIVE_WITHDRAWAL_WHERE = text(
    "type = 'WITHDRAWAL' AND status IN ('PENDING', 'PROCESSING')"
)


def _new_id() -> str:
    return str(uuid.uuid4())


class MarkTransaction(BaseModel):
    __tablename__ = "mark_transactions"
    __table_args__ = (
        Index("idx_mark_tx_user_type_status", "user_id", "type", "status"),
        # 사용자당 진행 중인 출금은 최대 1건
        Index(
            "uq_mark_tx_one_active_withdrawal",
            "user_id",
            unique=True,
            postgresql_where=_ACTIVE_WITHDRAWAL_WHERE,
            sqlite_where=_ACTIVE_WITHDRAWAL_WHERE,
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    # COMMISSION 은 플랫폼 소유라 user_id 가 없음
    user_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=True
    )
    survey_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    type: Mapped[MarkTransactionType] = mapped_column(
        Enum(MarkTransactionType, name="mark_transaction_type", native_enum=False, length=20),
        nullable=False,
    )
    status: Mapped[MarkTransactionStatus] = mapped_column(
        Enum(MarkTransactionStatus, name="mark_transaction_status", native_enum=False, length=20),
        nullable=False,
        default=MarkTransactionStatus.COMPLETED,
    )
    # 양수 = 적립, 음수 = 차감
    marks_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    # 외부 통화(WLD) 금액. 출금이면 수수료 차감 후 실수령액
    external_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(36, 18), nullable=True
    )
    gross_external_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(36, 18), nullable=True
    )
    platform_fee: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(36, 18), nullable=True
    )
    # wei 단위 정수 (문자열로 보관해 자릿수 손실 방지)
    net_external_minor_units: Mapped[Optional[str]] = mapped_column(
        String(78), nullable=True
    )

    external_tx_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    nonce: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    deadline: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), nullable=True
    )

    def __repr__(self):
        return (
            f"<MarkTransaction(id={self.id}, user_id={self.user_id}, type={self.type}, "
            f"marks={self.marks_amount}, status={self.status})>"
        )
