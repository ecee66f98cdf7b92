"""
관리자 API 라우터

- GET /admin/withdrawals: 출금 목록 (상태 필터)
- POST /admin/withdrawals/{withdrawal_id}/resolve: 수동 승인 출금 승인/거절
- POST /admin/withdrawals/reconcile: 오래된 PROCESSING 출금 일괄 재확인
- GET /admin/marks/integrity/{user_id}: 사용자 잔액 정합성 검증

모든 엔드포인트는 role=admin 사용자만 호출할 수 있습니다.
"""

import logging
from typing import Callable, List, Optional

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session

from marksapi.containers import Container
from marksapi.core.security import require_admin
from marksapi.database.session import get_db
from marksapi.models.marks import MarkTransactionStatus
from marksapi.schemas.marks import (
    AdminResolveRequest,
    AdminResolveResponse,
    MarksIntegrityResponse,
    ReconcileBatchResponse,
    WithdrawalRecord,
)
from marksapi.schemas.user import User as UserSchema
from marksapi.services.marks_service import MarksService
from marksapi.services.withdrawal_service import WithdrawalService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/withdrawals", response_model=List[WithdrawalRecord])
@inject
async def list_withdrawals(
    status: Optional[MarkTransactionStatus] = Query(None, description="상태 필터"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _: UserSchema = Depends(require_admin),
    db: Session = Depends(get_db),
    withdrawal_service: Callable[..., WithdrawalService] = Depends(
        Provide[Container.services.withdrawal_service.provider]
    ),
) -> List[WithdrawalRecord]:
    return withdrawal_service(db=db).list_withdrawals(
        status=status, limit=limit, offset=offset
    )


@router.post(
    "/withdrawals/{withdrawal_id}/resolve", response_model=AdminResolveResponse
)
@inject
async def resolve_withdrawal(
    request: AdminResolveRequest,
    withdrawal_id: str = Path(..., description="출금 ID"),
    admin: UserSchema = Depends(require_admin),
    db: Session = Depends(get_db),
    withdrawal_service: Callable[..., WithdrawalService] = Depends(
        Provide[Container.services.withdrawal_service.provider]
    ),
) -> AdminResolveResponse:
    """
    수동 승인(PENDING) 출금 처리

    - approve: COMPLETED (external_ref 에 송금 해시 기록)
    - reject: CANCELLED + 마크 환불

    HTTP Status:
        200: 처리됨 (같은 처리 반복 시에도 200)
        404: 출금 없음
        409: 처리할 수 없는 상태 (PROCESSING, 또는 이미 반대로 종결됨)
    """
    logger.info(
        f"Admin {admin.id} resolving withdrawal {withdrawal_id}: {request.action.value}"
    )
    return withdrawal_service(db=db).admin_resolve(
        withdrawal_id,
        request.action,
        external_ref=request.external_ref,
        reason=request.reason,
    )


@router.post("/withdrawals/reconcile", response_model=ReconcileBatchResponse)
@inject
def reconcile_withdrawals(
    limit: Optional[int] = Query(None, ge=1, le=500),
    _: UserSchema = Depends(require_admin),
    db: Session = Depends(get_db),
    withdrawal_service: Callable[..., WithdrawalService] = Depends(
        Provide[Container.services.withdrawal_service.provider]
    ),
) -> ReconcileBatchResponse:
    """결과 불명 출금 일괄 재확인 (스케줄러에서도 호출)"""
    return withdrawal_service(db=db).reconcile_stale_withdrawals(limit=limit)


@router.get("/marks/integrity/{user_id}", response_model=MarksIntegrityResponse)
@inject
async def verify_marks_integrity(
    user_id: int = Path(..., gt=0),
    _: UserSchema = Depends(require_admin),
    db: Session = Depends(get_db),
    marks_service: Callable[..., MarksService] = Depends(
        Provide[Container.services.marks_service.provider]
    ),
) -> MarksIntegrityResponse:
    return marks_service(db=db).verify_integrity(user_id)
