from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from marksapi.models.marks import MarkTransactionStatus, MarkTransactionType


class MarksBalanceResponse(BaseModel):
    """마크 잔액 응답"""

    balance: int = Field(..., description="현재 마크 잔액")
    max_cap: int = Field(..., description="보유 한도")


class MarkTransactionResponse(BaseModel):
    """마크 원장 항목"""

    id: str
    user_id: Optional[int] = None
    survey_id: Optional[int] = None
    type: MarkTransactionType
    status: MarkTransactionStatus
    marks_amount: int = Field(..., description="마크 변동량 (양수: 적립, 음수: 차감)")
    external_amount: Optional[Decimal] = Field(None, description="WLD 금액")
    external_tx_ref: Optional[str] = Field(None, description="외부 트랜잭션 참조")
    wallet_address: Optional[str] = None
    nonce: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WithdrawalRecord(MarkTransactionResponse):
    """출금 거래 (예약 시점의 환산 결과 포함)"""

    gross_external_amount: Optional[Decimal] = None
    platform_fee: Optional[Decimal] = None
    net_external_minor_units: Optional[str] = None
    deadline: Optional[datetime] = None

    class Config:
        from_attributes = True


class MarkTransactionListResponse(BaseModel):
    balance: int = Field(..., description="현재 잔액")
    entries: List[MarkTransactionResponse] = Field(..., description="원장 항목 목록 (최신순)")
    total_count: int = Field(..., description="전체 항목 수")
    has_next: bool = Field(..., description="다음 페이지 존재 여부")


class CreditResult(BaseModel):
    """적립 결과 - credited 는 한도 적용 후 실제 적립량"""

    transaction_id: Optional[str] = None
    requested: int
    credited: int
    new_balance: int
    capped: bool = False
    already_processed: bool = False


class WithdrawalQuoteResponse(BaseModel):
    marks: int
    gross_amount: Decimal
    platform_fee: Decimal
    net_amount: Decimal
    net_amount_wei: str
    balance: int
    eligible: bool
    reason: Optional[str] = None


class WithdrawalRequest(BaseModel):
    """출금 요청"""

    marks: int = Field(..., description="출금할 마크 (최소/배수 정책 적용)")
    wallet_address: str = Field(..., description="수령 지갑 주소 (0x...)")
    nonce: str = Field(..., min_length=8, max_length=128, description="멱등성 키")


class WithdrawalResponse(BaseModel):
    withdrawal_id: str
    status: MarkTransactionStatus
    marks: int
    gross_amount: Optional[Decimal] = None
    platform_fee: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    tx_ref: Optional[str] = None
    new_balance: int
    message: str


class PurchaseConfirmRequest(BaseModel):
    package_id: str = Field(..., description="구매 패키지 ID")
    payment_reference: str = Field(..., min_length=1, max_length=100)
    transaction_id: str = Field(..., min_length=1, max_length=100, description="결제 트랜잭션 ID")
    amount: Decimal = Field(..., gt=0, description="결제 WLD 금액")


class PurchaseResponse(BaseModel):
    added: int
    new_balance: int
    package_name: str
    already_processed: bool = False
    message: str


class WorldIdProof(BaseModel):
    merkle_root: str
    nullifier_hash: str
    proof: str
    verification_level: Optional[str] = None
    credential_type: Optional[str] = None


class SurveyHelpAwardRequest(BaseModel):
    """설문 완료 이벤트 -> 헬퍼 마크 지급 요청"""

    user_id: int = Field(..., gt=0)
    boost_marks: int = Field(..., ge=0)
    goal_count: int = Field(..., gt=0)
    proof: WorldIdProof
    signal: Optional[str] = None


class SurveyHelpAwardResponse(BaseModel):
    awarded: int = Field(..., description="실제 적립된 마크")
    requested: int = Field(..., description="헬퍼 1인당 배정 마크")
    commission: int = Field(..., description="플랫폼 수수료 (설문당 1회 기록)")
    commission_recorded: bool = False
    remainder: int = Field(0, description="내림 분배로 남는 마크 (플랫폼 귀속)")
    capped: bool = False
    new_balance: Optional[int] = None


class SurveyBoostResponse(BaseModel):
    survey_id: int
    staked: int
    new_balance: int
    already_processed: bool = False


class AdminWithdrawalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class AdminResolveRequest(BaseModel):
    action: AdminWithdrawalAction
    external_ref: Optional[str] = Field(None, max_length=100, description="승인 시 송금 트랜잭션 해시")
    reason: Optional[str] = Field(None, max_length=255)


class AdminResolveResponse(BaseModel):
    withdrawal_id: str
    status: MarkTransactionStatus
    message: str


class ReconcileResult(BaseModel):
    withdrawal_id: str
    previous_status: MarkTransactionStatus
    status: MarkTransactionStatus
    gateway_status: Optional[str] = None
    message: str


class ReconcileBatchResponse(BaseModel):
    checked: int
    completed: int
    failed: int
    unchanged: int
    results: List[ReconcileResult]


class MarksIntegrityResponse(BaseModel):
    """잔액 = 완료 거래 합계 + 진행 중 출금 예약분 이어야 함"""

    status: str = Field(..., description="OK | MISMATCH")
    user_id: int
    balance: int
    completed_total: int
    reserved_total: int
    expected_balance: int
    verified_at: datetime
