"""
출금 오케스트레이터

상태 흐름:
    요청 --검증--> 예약(PROCESSING) --송금 성공--> COMPLETED
                                   --송금 실패--> FAILED (환불)
                                   --결과 불명--> PROCESSING 유지 (재확인 대상)
    PROCESSING --재확인--> COMPLETED | FAILED(환불) | PROCESSING
    PENDING(수동 승인) --승인--> COMPLETED
                      --거절--> CANCELLED (환불)

예약(잔액 차감)은 외부 송금 호출 전에 커밋됩니다. 송금 결과를 알 수 없을 때는
절대 자동 환불하지 않고, 재확인(reconcile)으로만 종결합니다.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from marksapi.config import settings
from marksapi.core.exceptions import (
    GatewayError,
    GatewayUnknownError,
    InvalidStateTransitionError,
    NotFoundError,
    WithdrawalValidationError,
)
from marksapi.models.marks import MarkTransactionStatus, MarkTransactionType
from marksapi.providers.settlement.treasury import TreasuryGateway
from marksapi.repositories.marks_repository import Completed, Failed, MarksRepository
from marksapi.schemas.marks import (
    AdminResolveResponse,
    AdminWithdrawalAction,
    ReconcileBatchResponse,
    ReconcileResult,
    WithdrawalQuoteResponse,
    WithdrawalRecord,
    WithdrawalResponse,
)
from marksapi.schemas.treasury import GatewayTransferStatus
from marksapi.utils.conversion import (
    DEFAULT_POLICY,
    Conversion,
    MarksPolicy,
    convert,
    validate_address,
    validate_amount,
)
from marksapi.utils.timezone_utils import is_past, minutes_from_now, utc_now

logger = logging.getLogger(__name__)


class WithdrawalService:
    def __init__(
        self,
        db: Session,
        gateway: TreasuryGateway,
        policy: MarksPolicy = DEFAULT_POLICY,
    ):
        self.db = db
        self.gateway = gateway
        self.policy = policy
        self.marks_repo = MarksRepository(db, policy)
        self.deadline_minutes = settings.WITHDRAWAL_DEADLINE_MINUTES
        self.reconcile_after_seconds = settings.RECONCILE_AFTER_SECONDS
        self.batch_size = settings.RECONCILE_BATCH_SIZE

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    def quote(self, user_id: int, marks: int) -> WithdrawalQuoteResponse:
        """출금 환산 견적 + 현재 출금 가능 여부"""
        balance = self.marks_repo.get_balance(user_id)
        conversion = convert(max(marks, 0), self.policy)

        reason: Optional[str] = None
        try:
            validate_amount(marks, self.policy)
        except WithdrawalValidationError as e:
            reason = e.message

        if reason is None and balance < marks:
            reason = f"Insufficient marks. You have {balance} marks"

        return WithdrawalQuoteResponse(
            marks=marks,
            gross_amount=conversion.gross_external,
            platform_fee=conversion.platform_fee,
            net_amount=conversion.net_external,
            net_amount_wei=str(conversion.net_external_minor_units),
            balance=balance,
            eligible=reason is None,
            reason=reason,
        )

    def get_withdrawal(
        self, withdrawal_id: str, user_id: Optional[int] = None
    ) -> WithdrawalRecord:
        """출금 조회 - user_id 가 주어지면 본인 출금만"""
        record = self.marks_repo.get_transaction(withdrawal_id)
        if (
            record is None
            or record.type != MarkTransactionType.WITHDRAWAL
            or (user_id is not None and record.user_id != user_id)
        ):
            raise NotFoundError(f"Withdrawal not found: {withdrawal_id}")
        return record

    def list_withdrawals(
        self,
        status: Optional[MarkTransactionStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WithdrawalRecord]:
        return self.marks_repo.list_withdrawals(
            status=status, limit=min(limit, 500), offset=offset
        )

    # ------------------------------------------------------------------
    # 출금 요청
    # ------------------------------------------------------------------

    def _validate(self, marks: int, wallet_address: str) -> Conversion:
        validate_amount(marks, self.policy)
        validate_address(wallet_address)
        return convert(marks, self.policy)

    def _response(
        self, record: WithdrawalRecord, message: str
    ) -> WithdrawalResponse:
        return WithdrawalResponse(
            withdrawal_id=record.id,
            status=record.status,
            marks=abs(record.marks_amount),
            gross_amount=record.gross_external_amount,
            platform_fee=record.platform_fee,
            net_amount=record.external_amount,
            tx_ref=record.external_tx_ref,
            new_balance=self.marks_repo.get_balance(record.user_id),
            message=message,
        )

    def process_withdrawal(
        self, user_id: int, marks: int, wallet_address: str, nonce: str
    ) -> WithdrawalResponse:
        """
        출금 요청 처리: 검증 -> 예약 -> 송금 -> 확정/환불

        Raises:
            WithdrawalValidationError: 수량/주소 검증 실패 (변경 없음)
            InsufficientBalanceError, ConflictingWithdrawalError, DuplicateNonceError:
                예약 단계 거절 (변경 없음)

        송금 단계 실패는 예외가 아니라 응답 status 로 보고됩니다.
        """
        conversion = self._validate(marks, wallet_address)

        record = self.marks_repo.reserve_for_withdrawal(
            user_id=user_id,
            marks=marks,
            wallet_address=wallet_address,
            nonce=nonce,
            conversion=conversion,
            deadline=minutes_from_now(self.deadline_minutes),
        )
        logger.info(
            f"Reserved withdrawal {record.id}: user={user_id}, marks={marks}, "
            f"net={conversion.net_external} WLD"
        )

        try:
            tx_ref = self.gateway.transfer(
                wallet_address, conversion.net_external_minor_units, idempotency_key=nonce
            )
        except GatewayUnknownError as e:
            logger.warning(
                f"Withdrawal {record.id} outcome unknown, left PROCESSING for reconciliation: {e.message}"
            )
            return self._response(
                record, "Withdrawal is being processed. Please check back later."
            )
        except GatewayError as e:
            failed = self.marks_repo.finalize_withdrawal(record.id, Failed(e.message))
            logger.warning(
                f"Withdrawal {record.id} failed, refunded {marks} marks to user {user_id}: {e.message}"
            )
            return self._response(
                failed, "Withdrawal failed. Your marks have been refunded."
            )
        except Exception as e:
            # 송금 여부를 알 수 없으므로 환불하지 않음
            logger.error(
                f"Unexpected error during transfer for withdrawal {record.id}: {str(e)}",
                exc_info=True,
            )
            return self._response(
                record, "Withdrawal is being processed. Please check back later."
            )

        try:
            completed = self.marks_repo.finalize_withdrawal(record.id, Completed(tx_ref))
        except Exception as e:
            # 송금은 나갔지만 확정 기록 실패 - 재확인이 COMPLETED 로 종결
            logger.error(
                f"Failed to record completion of withdrawal {record.id} (ref={tx_ref}): {str(e)}",
                exc_info=True,
            )
            return self._response(
                record.model_copy(update={"external_tx_ref": tx_ref}),
                "Withdrawal is being processed. Please check back later.",
            )

        logger.info(f"Withdrawal {record.id} completed: ref={tx_ref}")
        return self._response(
            completed, f"Successfully withdrew {conversion.net_external} WLD"
        )

    def request_manual_withdrawal(
        self, user_id: int, marks: int, wallet_address: str, nonce: str
    ) -> WithdrawalResponse:
        """수동 승인 출금 요청 - PENDING 으로 예약만 하고 관리자 처리를 기다림"""
        conversion = self._validate(marks, wallet_address)

        record = self.marks_repo.reserve_for_withdrawal(
            user_id=user_id,
            marks=marks,
            wallet_address=wallet_address,
            nonce=nonce,
            conversion=conversion,
            status=MarkTransactionStatus.PENDING,
        )
        logger.info(
            f"Manual withdrawal {record.id} requested: user={user_id}, marks={marks}"
        )
        return self._response(
            record, "Withdrawal request submitted. It will be processed by an administrator."
        )

    # ------------------------------------------------------------------
    # 관리자 처리 (PENDING 전용)
    # ------------------------------------------------------------------

    def admin_resolve(
        self,
        withdrawal_id: str,
        action: AdminWithdrawalAction,
        external_ref: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> AdminResolveResponse:
        """
        수동 승인 출금 처리

        - approve: COMPLETED (+ 송금 해시), 잔액 변동 없음
        - reject: CANCELLED + 환불

        게이트웨이로 진행 중(PROCESSING)인 출금은 재확인으로만 종결되므로 거부합니다.
        같은 처리를 반복하면 아무 것도 바꾸지 않고 현재 상태를 반환합니다.
        """
        record = self.get_withdrawal(withdrawal_id)

        if record.status == MarkTransactionStatus.PROCESSING:
            raise InvalidStateTransitionError(
                "Gateway-initiated withdrawals are resolved by reconciliation",
                details={"withdrawal_id": withdrawal_id, "status": record.status.value},
            )

        if action == AdminWithdrawalAction.APPROVE:
            result = self.marks_repo.finalize_withdrawal(
                withdrawal_id, Completed(external_ref or "")
            )
            message = "Withdrawal approved"
        else:
            result = self.marks_repo.reject_withdrawal(
                withdrawal_id,
                status=MarkTransactionStatus.CANCELLED,
                reason=reason,
            )
            message = "Withdrawal rejected and marks refunded"

        logger.info(
            f"Admin resolved withdrawal {withdrawal_id}: {action.value} -> {result.status.value}"
        )
        return AdminResolveResponse(
            withdrawal_id=withdrawal_id, status=result.status, message=message
        )

    # ------------------------------------------------------------------
    # 재확인
    # ------------------------------------------------------------------

    def reconcile_withdrawal(
        self, withdrawal_id: str, user_id: Optional[int] = None
    ) -> ReconcileResult:
        """
        결과 불명 출금의 송금 상태를 확인하여 종결

        - confirmed -> COMPLETED
        - failed -> FAILED + 환불
        - not_found -> 기한(deadline) 이 지났으면 FAILED + 환불, 아니면 유지
        - pending / 조회 실패 -> 유지 (다음 재확인에서 다시 시도)
        """
        record = self.get_withdrawal(withdrawal_id, user_id)
        previous = record.status

        if record.status != MarkTransactionStatus.PROCESSING:
            return ReconcileResult(
                withdrawal_id=withdrawal_id,
                previous_status=previous,
                status=record.status,
                message="Nothing to reconcile",
            )

        reference = record.external_tx_ref or record.nonce
        try:
            gateway_status = self.gateway.get_transaction_status(reference)
        except GatewayError as e:
            logger.warning(f"Reconcile lookup failed for withdrawal {withdrawal_id}: {e.message}")
            return ReconcileResult(
                withdrawal_id=withdrawal_id,
                previous_status=previous,
                status=previous,
                message="Settlement status unavailable, will retry",
            )

        outcome = None
        if gateway_status.status == GatewayTransferStatus.CONFIRMED:
            outcome = Completed(gateway_status.transaction_hash or reference)
        elif gateway_status.status == GatewayTransferStatus.FAILED:
            outcome = Failed(gateway_status.error or "Transfer failed")
        elif gateway_status.status == GatewayTransferStatus.NOT_FOUND and is_past(
            record.deadline
        ):
            outcome = Failed("Transfer not found after deadline")

        if outcome is None:
            return ReconcileResult(
                withdrawal_id=withdrawal_id,
                previous_status=previous,
                status=previous,
                gateway_status=gateway_status.status.value,
                message="Settlement still pending",
            )

        try:
            final = self.marks_repo.finalize_withdrawal(withdrawal_id, outcome)
        except InvalidStateTransitionError:
            # 다른 재확인이 먼저 반대 결과로 종결함
            final = self.get_withdrawal(withdrawal_id)
            logger.warning(
                f"Withdrawal {withdrawal_id} was already finalized as {final.status.value}"
            )

        if final.status == MarkTransactionStatus.FAILED:
            logger.warning(
                f"Reconciled withdrawal {withdrawal_id} as FAILED, refunded {abs(final.marks_amount)} marks"
            )
        else:
            logger.info(f"Reconciled withdrawal {withdrawal_id} as {final.status.value}")

        return ReconcileResult(
            withdrawal_id=withdrawal_id,
            previous_status=previous,
            status=final.status,
            gateway_status=gateway_status.status.value,
            message=f"Withdrawal {final.status.value.lower()}",
        )

    def reconcile_stale_withdrawals(
        self, older_than: Optional[datetime] = None, limit: Optional[int] = None
    ) -> ReconcileBatchResponse:
        """오래된 PROCESSING 출금 일괄 재확인"""
        if older_than is None:
            older_than = utc_now() - timedelta(seconds=self.reconcile_after_seconds)

        stale = self.marks_repo.find_stale_withdrawals(
            older_than=older_than, limit=limit or self.batch_size
        )

        results: List[ReconcileResult] = []
        for record in stale:
            try:
                results.append(self.reconcile_withdrawal(record.id))
            except Exception as e:
                logger.error(f"Reconcile failed for withdrawal {record.id}: {str(e)}")
                results.append(
                    ReconcileResult(
                        withdrawal_id=record.id,
                        previous_status=record.status,
                        status=record.status,
                        message="Reconcile error, will retry",
                    )
                )

        completed = sum(1 for r in results if r.status == MarkTransactionStatus.COMPLETED)
        failed = sum(1 for r in results if r.status == MarkTransactionStatus.FAILED)

        logger.info(
            f"Reconciled {len(results)} stale withdrawals: completed={completed}, failed={failed}"
        )
        return ReconcileBatchResponse(
            checked=len(results),
            completed=completed,
            failed=failed,
            unchanged=len(results) - completed - failed,
            results=results,
        )
