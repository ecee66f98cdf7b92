"""
마크 원장 리포지토리 - 잔액과 거래 내역의 유일한 변경 경로

이 파일은 마크 잔액을 바꾸는 모든 연산을 담당합니다:
1. 출금 예약 (잔액 즉시 차감 + PROCESSING/PENDING 거래 생성)
2. 출금 확정 / 실패 환불 / 관리자 거절 환불
3. 한도(MAX_CAP)를 지키는 적립 (설문 헬퍼 보상, 구매)
4. 설문 부스트 스테이킹 차감, 플랫폼 수수료 기록
5. 거래 내역 조회 및 정합성 검증

핵심 특징:
- 각 연산은 하나의 DB 트랜잭션이며 users 행을 SELECT ... FOR UPDATE 로 먼저 잠급니다
  (같은 사용자에 대한 요청은 직렬화, 다른 사용자끼리는 병렬)
- 잔액 갱신은 조건부 UPDATE 로 수행하여 음수/한도 초과를 DB 수준에서도 막습니다
- nonce 는 유니크 인덱스로 멱등성을 보장합니다
- 진행 중 출금 예약분도 한도 계산에 포함하여 환불 시에도 한도를 넘지 않습니다
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import desc, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marksapi.core.exceptions import (
    ConflictError,
    ConflictingWithdrawalError,
    DuplicateNonceError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
)
from marksapi.models.marks import (
    ACTIVE_STATUSES,
    MarkTransaction,
    MarkTransactionStatus,
    MarkTransactionType,
)
from marksapi.models.user import User
from marksapi.repositories.base import BaseRepository
from marksapi.schemas.marks import (
    CreditResult,
    MarkTransactionListResponse,
    MarkTransactionResponse,
    MarksIntegrityResponse,
    WithdrawalRecord,
)
from marksapi.utils.conversion import DEFAULT_POLICY, Conversion, MarksPolicy, cap_credit
from marksapi.utils.timezone_utils import utc_now


@dataclass(frozen=True)
class Completed:
    """정산 성공 - 외부 트랜잭션 참조 보관, 잔액 변동 없음"""

    external_ref: str


@dataclass(frozen=True)
class Failed:
    """정산 실패 - 예약된 마크 환불"""

    reason: str


WithdrawalOutcome = Union[Completed, Failed]


def commission_nonce(survey_id: int) -> str:
    return f"commission:survey:{survey_id}"


class MarksRepository(BaseRepository[MarkTransaction, WithdrawalRecord]):
    """마크 원장 리포지토리"""

    def __init__(self, db: Session, policy: MarksPolicy = DEFAULT_POLICY):
        super().__init__(MarkTransaction, WithdrawalRecord, db)
        self.policy = policy

    # ------------------------------------------------------------------
    # 내부 헬퍼 (열린 트랜잭션 안에서만 호출)
    # ------------------------------------------------------------------

    def _lock_user(self, user_id: int) -> User:
        user = (
            self.db.query(User)
            .filter(User.id == user_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if user is None:
            raise NotFoundError(f"User not found: {user_id}")
        return user

    def _lock_transaction(self, tx_id: str) -> MarkTransaction:
        tx = (
            self.db.query(MarkTransaction)
            .filter(MarkTransaction.id == tx_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if tx is None:
            raise NotFoundError(f"Transaction not found: {tx_id}")
        return tx

    def _find_by_nonce(self, nonce: str) -> Optional[MarkTransaction]:
        return (
            self.db.query(MarkTransaction)
            .filter(MarkTransaction.nonce == nonce)
            .first()
        )

    def _active_withdrawal(self, user_id: int) -> Optional[MarkTransaction]:
        return (
            self.db.query(MarkTransaction)
            .filter(
                MarkTransaction.user_id == user_id,
                MarkTransaction.type == MarkTransactionType.WITHDRAWAL,
                MarkTransaction.status.in_(ACTIVE_STATUSES),
            )
            .first()
        )

    def _reserved_marks(self, user_id: int) -> int:
        """진행 중 출금으로 묶여 있는 마크 (양수)"""
        total = (
            self.db.query(func.coalesce(func.sum(MarkTransaction.marks_amount), 0))
            .filter(
                MarkTransaction.user_id == user_id,
                MarkTransaction.type == MarkTransactionType.WITHDRAWAL,
                MarkTransaction.status.in_(ACTIVE_STATUSES),
            )
            .scalar()
        )
        return -int(total or 0)

    def _apply_delta(self, user: User, delta: int) -> int:
        """
        잠긴 사용자 행에 조건부 UPDATE 로 잔액 반영 후 새 잔액 반환

        차감은 잔액이 충분할 때만, 적립은 한도를 넘지 않을 때만 반영됩니다.
        """
        query = self.db.query(User).filter(User.id == user.id)
        if delta < 0:
            query = query.filter(User.marks >= -delta)
        else:
            query = query.filter(User.marks + delta <= self.policy.max_cap)

        updated = query.update(
            {"marks": User.marks + delta}, synchronize_session=False
        )
        if updated != 1:
            if delta < 0:
                raise InsufficientBalanceError(
                    f"Insufficient marks. Required: {-delta}",
                    details={"required": -delta},
                )
            raise ConflictError("Concurrent balance update detected, please retry")

        self.db.expire(user, ["marks"])
        return user.marks

    def _refund(self, user: User, tx: MarkTransaction) -> int:
        # 예약분은 한도 계산에 이미 포함되어 있으므로 한도 검사 없이 되돌림
        amount = abs(tx.marks_amount)
        self.db.query(User).filter(User.id == user.id).update(
            {"marks": User.marks + amount}, synchronize_session=False
        )
        self.db.expire(user, ["marks"])
        return user.marks

    def _capped_amount(self, user: User, requested: int) -> int:
        holdings = user.marks + self._reserved_marks(user.id)
        return cap_credit(holdings, requested, self.policy.max_cap)

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    def get_balance(self, user_id: int) -> int:
        marks = self.db.query(User.marks).filter(User.id == user_id).scalar()
        if marks is None:
            raise NotFoundError(f"User not found: {user_id}")
        return int(marks)

    def get_transaction(self, tx_id: str) -> Optional[WithdrawalRecord]:
        return self.get_by_id(tx_id)

    def get_transaction_by_nonce(self, nonce: str) -> Optional[WithdrawalRecord]:
        return self._to_schema(self._find_by_nonce(nonce))

    def list_user_transactions(
        self, user_id: int, limit: int = 50, offset: int = 0
    ) -> MarkTransactionListResponse:
        base_query = self.db.query(MarkTransaction).filter(
            MarkTransaction.user_id == user_id
        )
        total_count = base_query.count()
        rows = (
            base_query.order_by(desc(MarkTransaction.created_at))
            .limit(limit)
            .offset(offset)
            .all()
        )

        return MarkTransactionListResponse(
            balance=self.get_balance(user_id),
            entries=[MarkTransactionResponse.model_validate(row) for row in rows],
            total_count=total_count,
            has_next=offset + limit < total_count,
        )

    def list_withdrawals(
        self,
        status: Optional[MarkTransactionStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WithdrawalRecord]:
        query = self.db.query(MarkTransaction).filter(
            MarkTransaction.type == MarkTransactionType.WITHDRAWAL
        )
        if status is not None:
            query = query.filter(MarkTransaction.status == status)

        rows = (
            query.order_by(MarkTransaction.created_at)
            .limit(limit)
            .offset(offset)
            .all()
        )
        return [self._to_schema(row) for row in rows]

    def find_stale_withdrawals(
        self, older_than: datetime, limit: int = 50
    ) -> List[WithdrawalRecord]:
        """older_than 이전에 생성되어 아직 PROCESSING 인 출금 (정산 확인 대상)"""
        rows = (
            self.db.query(MarkTransaction)
            .filter(
                MarkTransaction.type == MarkTransactionType.WITHDRAWAL,
                MarkTransaction.status == MarkTransactionStatus.PROCESSING,
                MarkTransaction.created_at <= older_than,
            )
            .order_by(MarkTransaction.created_at)
            .limit(limit)
            .all()
        )
        return [self._to_schema(row) for row in rows]

    # ------------------------------------------------------------------
    # 출금
    # ------------------------------------------------------------------

    def reserve_for_withdrawal(
        self,
        user_id: int,
        marks: int,
        wallet_address: str,
        nonce: str,
        conversion: Conversion,
        deadline: Optional[datetime] = None,
        status: MarkTransactionStatus = MarkTransactionStatus.PROCESSING,
    ) -> WithdrawalRecord:
        """
        출금 예약 - 검증 통과 시 잔액을 즉시 차감하고 출금 거래를 생성

        실패 시 (모두 변경 전):
        - DuplicateNonceError: 이미 사용된 nonce
        - ConflictingWithdrawalError: 진행 중(PENDING/PROCESSING) 출금 존재
        - InsufficientBalanceError: 잔액 부족
        """
        if status not in ACTIVE_STATUSES:
            raise InvalidStateTransitionError(f"Cannot reserve withdrawal as {status.value}")

        try:
            with self._atomic():
                user = self._lock_user(user_id)

                if self._find_by_nonce(nonce) is not None:
                    raise DuplicateNonceError(details={"nonce": nonce})

                active = self._active_withdrawal(user_id)
                if active is not None:
                    raise ConflictingWithdrawalError(
                        "You have a pending withdrawal. Please wait for it to be processed before submitting another.",
                        details={"withdrawal_id": active.id},
                    )

                balance_before = user.marks
                if balance_before < marks:
                    raise InsufficientBalanceError(
                        f"Insufficient marks. You have {balance_before} marks but requested {marks}",
                        details={"balance": balance_before, "requested": marks},
                    )

                balance_after = self._apply_delta(user, -marks)

                tx = MarkTransaction(
                    user_id=user_id,
                    type=MarkTransactionType.WITHDRAWAL,
                    status=status,
                    marks_amount=-marks,
                    external_amount=conversion.net_external,
                    gross_external_amount=conversion.gross_external,
                    platform_fee=conversion.platform_fee,
                    net_external_minor_units=str(conversion.net_external_minor_units),
                    wallet_address=wallet_address,
                    nonce=nonce,
                    deadline=deadline,
                    details={
                        "balance_before": balance_before,
                        "balance_after": balance_after,
                    },
                )
                self.db.add(tx)
                self.db.flush()
                record = self._to_schema(tx)
        except IntegrityError:
            # 잠금 밖의 경쟁(다른 사용자의 동일 nonce, 부분 유니크 인덱스) 을 도메인 오류로 변환
            if self._find_by_nonce(nonce) is not None:
                raise DuplicateNonceError(details={"nonce": nonce})
            if self._active_withdrawal(user_id) is not None:
                raise ConflictingWithdrawalError()
            raise

        return record

    def finalize_withdrawal(
        self, tx_id: str, outcome: WithdrawalOutcome
    ) -> WithdrawalRecord:
        """
        출금 종결

        - Completed: COMPLETED + 외부 참조 기록 (잔액은 예약 시 이미 차감됨)
        - Failed: FAILED + 예약 마크 환불 (상태 변경과 환불이 같은 트랜잭션)

        이미 같은 결과로 종결된 거래는 그대로 반환 (재시도 안전),
        다른 결과로 종결된 거래는 InvalidStateTransitionError.
        """
        if isinstance(outcome, Completed):
            target = MarkTransactionStatus.COMPLETED
        elif isinstance(outcome, Failed):
            target = MarkTransactionStatus.FAILED
        else:
            raise ValueError(f"Unknown withdrawal outcome: {outcome!r}")

        return self._finish_withdrawal(
            tx_id,
            target,
            external_ref=getattr(outcome, "external_ref", None),
            reason=getattr(outcome, "reason", None),
        )

    def reject_withdrawal(
        self,
        tx_id: str,
        status: MarkTransactionStatus = MarkTransactionStatus.CANCELLED,
        reason: Optional[str] = None,
    ) -> WithdrawalRecord:
        """관리자 거절 - CANCELLED/REJECTED + 환불"""
        if status not in (MarkTransactionStatus.CANCELLED, MarkTransactionStatus.REJECTED):
            raise InvalidStateTransitionError(f"Cannot reject withdrawal as {status.value}")
        return self._finish_withdrawal(tx_id, status, reason=reason or "Rejected by admin")

    def _finish_withdrawal(
        self,
        tx_id: str,
        target: MarkTransactionStatus,
        external_ref: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> WithdrawalRecord:
        self._ensure_clean_session()
        owner_id = (
            self.db.query(MarkTransaction.user_id)
            .filter(MarkTransaction.id == tx_id)
            .scalar()
        )

        with self._atomic():
            # 잠금 순서: users -> mark_transactions (예약과 동일)
            user = self._lock_user(owner_id) if owner_id is not None else None
            tx = self._lock_transaction(tx_id)

            if tx.type != MarkTransactionType.WITHDRAWAL or user is None:
                raise InvalidStateTransitionError(
                    f"Transaction {tx_id} is not a withdrawal"
                )

            if tx.status.is_terminal:
                if tx.status == target:
                    return self._to_schema(tx)
                raise InvalidStateTransitionError(
                    f"Withdrawal {tx_id} is already {tx.status.value}",
                    details={"status": tx.status.value, "requested": target.value},
                )

            details = dict(tx.details or {})
            if target == MarkTransactionStatus.COMPLETED:
                if external_ref:
                    tx.external_tx_ref = external_ref
            else:
                details["refunded_marks"] = abs(tx.marks_amount)
                details["balance_after_refund"] = self._refund(user, tx)
                tx.failure_reason = reason

            details["finalized_at"] = utc_now().isoformat()
            tx.details = details
            tx.status = target
            self.db.flush()
            return self._to_schema(tx)

    # ------------------------------------------------------------------
    # 적립 / 차감
    # ------------------------------------------------------------------

    def _credit_locked(
        self,
        user: User,
        amount: int,
        tx_type: MarkTransactionType,
        metadata: Optional[Dict[str, Any]],
        nonce: Optional[str],
        survey_id: Optional[int],
        external_amount=None,
        external_tx_ref: Optional[str] = None,
    ) -> CreditResult:
        credited = self._capped_amount(user, amount)
        new_balance = self._apply_delta(user, credited) if credited > 0 else user.marks

        details = dict(metadata or {})
        details["requested_marks"] = amount
        tx = MarkTransaction(
            user_id=user.id,
            survey_id=survey_id,
            type=tx_type,
            status=MarkTransactionStatus.COMPLETED,
            marks_amount=credited,
            external_amount=external_amount,
            external_tx_ref=external_tx_ref,
            nonce=nonce,
            details=details,
        )
        self.db.add(tx)
        self.db.flush()

        return CreditResult(
            transaction_id=tx.id,
            requested=amount,
            credited=credited,
            new_balance=new_balance,
            capped=credited < amount,
        )

    def _replayed(self, existing: MarkTransaction, user: User) -> CreditResult:
        if existing.user_id != user.id:
            raise DuplicateNonceError(details={"nonce": existing.nonce})
        requested = (existing.details or {}).get("requested_marks", abs(existing.marks_amount))
        return CreditResult(
            transaction_id=existing.id,
            requested=requested,
            credited=existing.marks_amount,
            new_balance=user.marks,
            capped=abs(existing.marks_amount) < requested,
            already_processed=True,
        )

    def credit_marks(
        self,
        user_id: int,
        amount: int,
        tx_type: MarkTransactionType,
        metadata: Optional[Dict[str, Any]] = None,
        nonce: Optional[str] = None,
        survey_id: Optional[int] = None,
        external_amount=None,
        external_tx_ref: Optional[str] = None,
        require_full: bool = False,
    ) -> CreditResult:
        """
        마크 적립 - 한도(MAX_CAP)를 넘는 부분은 잘라내고 실제 적립량을 반환

        nonce 가 이미 처리된 경우 기존 결과를 already_processed=True 로 반환합니다.
        require_full=True 이면 전액 적립이 불가할 때 아무것도 바꾸지 않고
        credited=0 결과를 반환합니다 (호출자가 거절 처리).
        """
        if amount < 0:
            raise ValueError("credit amount must not be negative")

        with self._atomic():
            user = self._lock_user(user_id)

            if nonce is not None:
                existing = self._find_by_nonce(nonce)
                if existing is not None:
                    return self._replayed(existing, user)

            if require_full and self._capped_amount(user, amount) < amount:
                return CreditResult(
                    requested=amount,
                    credited=0,
                    new_balance=user.marks,
                    capped=True,
                )

            return self._credit_locked(
                user,
                amount,
                tx_type,
                metadata,
                nonce,
                survey_id,
                external_amount=external_amount,
                external_tx_ref=external_tx_ref,
            )

    def credit_survey_help(
        self,
        user_id: int,
        survey_id: int,
        amount: int,
        commission: int,
        metadata: Optional[Dict[str, Any]] = None,
        commission_metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[CreditResult, bool]:
        """
        설문 헬퍼 적립 + 설문 수수료 기록을 한 트랜잭션으로 처리

        Returns:
            (헬퍼 적립 결과, 이번 호출에서 수수료가 새로 기록되었는지)
        """
        help_nonce = f"survey_help:{survey_id}:{user_id}"

        with self._atomic():
            user = self._lock_user(user_id)

            existing = self._find_by_nonce(help_nonce)
            if existing is not None:
                return self._replayed(existing, user), False

            result = self._credit_locked(
                user,
                amount,
                MarkTransactionType.SURVEY_HELP,
                metadata,
                help_nonce,
                survey_id,
            )
            commission_recorded = self._insert_commission(
                survey_id, commission, commission_metadata or metadata
            )
            return result, commission_recorded

    def _insert_commission(
        self, survey_id: int, amount: int, metadata: Optional[Dict[str, Any]]
    ) -> bool:
        if amount <= 0 and not (metadata or {}).get("undistributed_remainder"):
            return False

        nonce = commission_nonce(survey_id)
        if self._find_by_nonce(nonce) is not None:
            return False

        # savepoint: 동시에 같은 설문 수수료가 기록되면 이 삽입만 취소
        try:
            with self.db.begin_nested():
                self.db.add(
                    MarkTransaction(
                        user_id=None,
                        survey_id=survey_id,
                        type=MarkTransactionType.COMMISSION,
                        status=MarkTransactionStatus.COMPLETED,
                        marks_amount=amount,
                        nonce=nonce,
                        details=dict(metadata or {}),
                    )
                )
        except IntegrityError:
            return False
        return True

    def record_commission(
        self, survey_id: int, amount: int, metadata: Optional[Dict[str, Any]] = None
    ) -> Tuple[Optional[WithdrawalRecord], bool]:
        """플랫폼 수수료 단독 기록 (설문당 1회)"""
        with self._atomic():
            created = self._insert_commission(survey_id, amount, metadata)
            row = self._find_by_nonce(commission_nonce(survey_id))
            return self._to_schema(row), created

    def debit_marks(
        self,
        user_id: int,
        amount: int,
        tx_type: MarkTransactionType,
        nonce: str,
        metadata: Optional[Dict[str, Any]] = None,
        survey_id: Optional[int] = None,
    ) -> CreditResult:
        """즉시 확정되는 차감 (부스트 스테이킹 등) - nonce 멱등"""
        if amount <= 0:
            raise ValueError("debit amount must be positive")

        with self._atomic():
            user = self._lock_user(user_id)

            existing = self._find_by_nonce(nonce)
            if existing is not None:
                return self._replayed(existing, user)

            if user.marks < amount:
                raise InsufficientBalanceError(
                    f"Insufficient marks. You have {user.marks} marks but need {amount}",
                    details={"balance": user.marks, "requested": amount},
                )

            new_balance = self._apply_delta(user, -amount)
            details = dict(metadata or {})
            details["requested_marks"] = amount
            tx = MarkTransaction(
                user_id=user_id,
                survey_id=survey_id,
                type=tx_type,
                status=MarkTransactionStatus.COMPLETED,
                marks_amount=-amount,
                nonce=nonce,
                details=details,
            )
            self.db.add(tx)
            self.db.flush()

            return CreditResult(
                transaction_id=tx.id,
                requested=amount,
                credited=-amount,
                new_balance=new_balance,
            )

    # ------------------------------------------------------------------
    # 정합성
    # ------------------------------------------------------------------

    def verify_user_integrity(self, user_id: int) -> MarksIntegrityResponse:
        """
        잔액 정합성 검증

        잔액 = COMPLETED 거래 합계 + 진행 중 출금(PENDING/PROCESSING) 예약분
        (실패/거절된 출금은 환불되었으므로 합계에서 제외)
        """
        balance = self.get_balance(user_id)

        completed_total = (
            self.db.query(func.coalesce(func.sum(MarkTransaction.marks_amount), 0))
            .filter(
                MarkTransaction.user_id == user_id,
                MarkTransaction.status == MarkTransactionStatus.COMPLETED,
            )
            .scalar()
        )
        reserved_total = -self._reserved_marks(user_id)
        expected = int(completed_total or 0) + reserved_total

        return MarksIntegrityResponse(
            status="OK" if expected == balance else "MISMATCH",
            user_id=user_id,
            balance=balance,
            completed_total=int(completed_total or 0),
            reserved_total=reserved_total,
            expected_balance=expected,
            verified_at=utc_now(),
        )
