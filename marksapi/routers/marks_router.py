"""
마크 API 라우터

사용자용 엔드포인트:
- GET /marks/balance: 내 마크 잔액
- GET /marks/transactions: 내 마크 거래 내역
- GET /marks/withdrawals/quote: 출금 환산 견적
- POST /marks/withdrawals: 출금 요청 (즉시 정산)
- POST /marks/withdrawals/manual: 수동 승인 출금 요청 (PENDING)
- GET /marks/withdrawals/{withdrawal_id}: 내 출금 상태
- POST /marks/withdrawals/{withdrawal_id}/reconcile: 정산 상태 재확인
- POST /marks/purchases/confirm: 마크 패키지 구매 확정
- POST /marks/surveys/{survey_id}/boost: 설문 부스트 스테이킹

내부 호출 엔드포인트:
- POST /marks/surveys/{survey_id}/help: 설문 완료 헬퍼 보상 (X-Internal-Token)

DB 세션은 요청마다 get_db 로 받고, 서비스는 컨테이너의 팩토리로 생성합니다.
외부 HTTP 호출이 있는 엔드포인트는 동기 함수로 두어 스레드풀에서 실행됩니다.
"""

import logging
from typing import Callable

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session

from marksapi.containers import Container
from marksapi.core.security import get_current_active_user, verify_internal_token
from marksapi.database.session import get_db
from marksapi.schemas.marks import (
    MarkTransactionListResponse,
    MarksBalanceResponse,
    PurchaseConfirmRequest,
    PurchaseResponse,
    ReconcileResult,
    SurveyBoostResponse,
    SurveyHelpAwardRequest,
    SurveyHelpAwardResponse,
    WithdrawalQuoteResponse,
    WithdrawalRecord,
    WithdrawalRequest,
    WithdrawalResponse,
)
from marksapi.schemas.user import User as UserSchema
from marksapi.services.award_service import AwardService
from marksapi.services.marks_service import MarksService
from marksapi.services.withdrawal_service import WithdrawalService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/marks", tags=["marks"])


@router.get("/balance", response_model=MarksBalanceResponse)
@inject
async def get_my_balance(
    current_user: UserSchema = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    marks_service: Callable[..., MarksService] = Depends(
        Provide[Container.services.marks_service.provider]
    ),
) -> MarksBalanceResponse:
    """
    내 마크 잔액 조회

    인증 필요: Bearer 토큰

    HTTP Status:
        200: 성공
        401: 인증 실패
    """
    return marks_service(db=db).get_balance(current_user.id)


@router.get("/transactions", response_model=MarkTransactionListResponse)
@inject
async def get_my_transactions(
    limit: int = Query(50, ge=1, le=100, description="페이지 크기"),
    offset: int = Query(0, ge=0, description="오프셋"),
    current_user: UserSchema = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    marks_service: Callable[..., MarksService] = Depends(
        Provide[Container.services.marks_service.provider]
    ),
) -> MarkTransactionListResponse:
    """내 마크 거래 내역 (최신순)"""
    return marks_service(db=db).get_transactions(
        current_user.id, limit=limit, offset=offset
    )


@router.get("/withdrawals/quote", response_model=WithdrawalQuoteResponse)
@inject
async def get_withdrawal_quote(
    marks: int = Query(..., description="출금할 마크"),
    current_user: UserSchema = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    withdrawal_service: Callable[..., WithdrawalService] = Depends(
        Provide[Container.services.withdrawal_service.provider]
    ),
) -> WithdrawalQuoteResponse:
    """
    출금 견적 - 수수료 차감 후 실수령 WLD 와 현재 출금 가능 여부

    상태를 변경하지 않습니다.
    """
    return withdrawal_service(db=db).quote(current_user.id, marks)


@router.post("/withdrawals", response_model=WithdrawalResponse)
@inject
def request_withdrawal(
    request: WithdrawalRequest,
    current_user: UserSchema = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    withdrawal_service: Callable[..., WithdrawalService] = Depends(
        Provide[Container.services.withdrawal_service.provider]
    ),
) -> WithdrawalResponse:
    """
    마크 출금 요청

    처리 순서:
    1. 수량(최소 500, 500 단위)과 지갑 주소 검증
    2. 잔액 차감 + 출금 예약 (사용자당 진행 중 출금 1건)
    3. 트레저리 송금
    4. 성공 시 COMPLETED, 실패 시 FAILED + 환불, 결과 불명 시 PROCESSING

    HTTP Status:
        200: 처리됨 (status 필드로 결과 확인)
        400: 검증 실패 / 잔액 부족
        409: 진행 중 출금 존재 / 중복 nonce
    """
    return withdrawal_service(db=db).process_withdrawal(
        user_id=current_user.id,
        marks=request.marks,
        wallet_address=request.wallet_address,
        nonce=request.nonce,
    )


@router.post("/withdrawals/manual", response_model=WithdrawalResponse)
@inject
async def request_manual_withdrawal(
    request: WithdrawalRequest,
    current_user: UserSchema = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    withdrawal_service: Callable[..., WithdrawalService] = Depends(
        Provide[Container.services.withdrawal_service.provider]
    ),
) -> WithdrawalResponse:
    """
    수동 승인 출금 요청

    잔액을 차감하고 PENDING 으로 예약만 합니다. 송금은 관리자가
    /admin/withdrawals/{withdrawal_id}/resolve 로 승인하거나 거절합니다.

    HTTP Status:
        200: 예약됨 (status=PENDING)
        400: 검증 실패 / 잔액 부족
        409: 진행 중 출금 존재 / 중복 nonce
    """
    return withdrawal_service(db=db).request_manual_withdrawal(
        user_id=current_user.id,
        marks=request.marks,
        wallet_address=request.wallet_address,
        nonce=request.nonce,
    )


@router.get("/withdrawals/{withdrawal_id}", response_model=WithdrawalRecord)
@inject
async def get_my_withdrawal(
    withdrawal_id: str = Path(..., description="출금 ID"),
    current_user: UserSchema = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    withdrawal_service: Callable[..., WithdrawalService] = Depends(
        Provide[Container.services.withdrawal_service.provider]
    ),
) -> WithdrawalRecord:
    return withdrawal_service(db=db).get_withdrawal(withdrawal_id, current_user.id)


@router.post("/withdrawals/{withdrawal_id}/reconcile", response_model=ReconcileResult)
@inject
def reconcile_my_withdrawal(
    withdrawal_id: str = Path(..., description="출금 ID"),
    current_user: UserSchema = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    withdrawal_service: Callable[..., WithdrawalService] = Depends(
        Provide[Container.services.withdrawal_service.provider]
    ),
) -> ReconcileResult:
    """처리 중(PROCESSING) 출금의 정산 상태를 다시 확인"""
    return withdrawal_service(db=db).reconcile_withdrawal(
        withdrawal_id, user_id=current_user.id
    )


@router.post("/purchases/confirm", response_model=PurchaseResponse)
@inject
async def confirm_purchase(
    request: PurchaseConfirmRequest,
    current_user: UserSchema = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    award_service: Callable[..., AwardService] = Depends(
        Provide[Container.services.award_service.provider]
    ),
) -> PurchaseResponse:
    """
    마크 패키지 구매 확정

    같은 transaction_id 로 재요청하면 추가 적립 없이 처음 결과를 already_processed=True 로 반환합니다.

    HTTP Status:
        200: 성공 (또는 이미 처리됨)
        400: 보유 한도 초과
        422: 잘못된 패키지 / 금액 불일치
    """
    return award_service(db=db).award_purchase(
        user_id=current_user.id,
        package_id=request.package_id,
        payment_reference=request.payment_reference,
        transaction_id=request.transaction_id,
        amount=request.amount,
    )


@router.post("/surveys/{survey_id}/boost", response_model=SurveyBoostResponse)
@inject
async def stake_survey_boost(
    survey_id: int = Path(..., gt=0),
    boost_marks: int = Query(..., description="스테이킹할 마크"),
    current_user: UserSchema = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    award_service: Callable[..., AwardService] = Depends(
        Provide[Container.services.award_service.provider]
    ),
) -> SurveyBoostResponse:
    """설문 부스트 스테이킹 - 설문 작성자 잔액에서 차감 (설문당 1회)"""
    return award_service(db=db).stake_survey_boost(
        current_user.id, survey_id, boost_marks
    )


@router.post(
    "/surveys/{survey_id}/help",
    response_model=SurveyHelpAwardResponse,
    dependencies=[Depends(verify_internal_token)],
)
@inject
def award_survey_help(
    request: SurveyHelpAwardRequest,
    survey_id: int = Path(..., gt=0),
    db: Session = Depends(get_db),
    award_service: Callable[..., AwardService] = Depends(
        Provide[Container.services.award_service.provider]
    ),
) -> SurveyHelpAwardResponse:
    """
    설문 완료 헬퍼 보상 (설문 서비스 내부 호출)

    헬퍼의 World ID 증명을 먼저 검증하고, 통과하면 마크를 적립합니다.
    적립 자체의 실패는 설문 흐름을 막지 않도록 awarded=0 으로 응답합니다.
    """
    return award_service(db=db).verify_and_award_survey_help(survey_id, request)
