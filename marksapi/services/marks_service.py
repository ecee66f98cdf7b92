import logging

from sqlalchemy.orm import Session

from marksapi.core.exceptions import BaseAPIException, InternalServerError
from marksapi.repositories.marks_repository import MarksRepository
from marksapi.schemas.marks import (
    MarkTransactionListResponse,
    MarksBalanceResponse,
    MarksIntegrityResponse,
)
from marksapi.utils.conversion import DEFAULT_POLICY, MarksPolicy

logger = logging.getLogger(__name__)


class MarksService:
    """마크 잔액/내역 조회 서비스"""

    def __init__(self, db: Session, policy: MarksPolicy = DEFAULT_POLICY):
        self.db = db
        self.policy = policy
        self.marks_repo = MarksRepository(db, policy)

    def get_balance(self, user_id: int) -> MarksBalanceResponse:
        """사용자 마크 잔액 조회

        Args:
            user_id: 사용자 ID

        Returns:
            MarksBalanceResponse: 잔액과 보유 한도
        """
        balance = self.marks_repo.get_balance(user_id)
        return MarksBalanceResponse(balance=balance, max_cap=self.policy.max_cap)

    def get_transactions(
        self, user_id: int, limit: int = 50, offset: int = 0
    ) -> MarkTransactionListResponse:
        """사용자 마크 거래 내역 조회 (최신순, 최대 100건)"""
        if limit > 100:
            limit = 100

        try:
            history = self.marks_repo.list_user_transactions(
                user_id=user_id, limit=limit, offset=offset
            )
            logger.info(
                f"Retrieved marks history for user {user_id}: {history.total_count} entries"
            )
            return history
        except BaseAPIException:
            raise
        except Exception as e:
            logger.error(f"Failed to get marks history for user {user_id}: {str(e)}")
            raise InternalServerError("Failed to retrieve marks history")

    def verify_integrity(self, user_id: int) -> MarksIntegrityResponse:
        result = self.marks_repo.verify_user_integrity(user_id)
        if result.status != "OK":
            logger.error(
                f"Marks integrity mismatch for user {user_id}: "
                f"balance={result.balance}, expected={result.expected_balance}"
            )
        return result
