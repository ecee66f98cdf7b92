"""
마크 적립 서비스

- 설문 헬퍼 보상: 부스트 풀에서 수수료를 떼고 목표 인원으로 분배, 한도 내 적립
- 마크 패키지 구매 확정: 결제 금액 검증 후 전액 적립 (한도 초과 시 거절)
- 설문 부스트 스테이킹: 설문 작성자의 마크 차감
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from marksapi.core.exceptions import (
    BaseAPIException,
    CapExceededError,
    IdentityVerificationError,
    InternalServerError,
    ValidationError,
)
from marksapi.core.packages import get_package
from marksapi.models.marks import MarkTransactionType
from marksapi.providers.identity.world_id import WorldIdVerifier
from marksapi.repositories.marks_repository import MarksRepository
from marksapi.schemas.marks import (
    PurchaseResponse,
    SurveyBoostResponse,
    SurveyHelpAwardRequest,
    SurveyHelpAwardResponse,
)
from marksapi.utils.conversion import (
    DEFAULT_POLICY,
    MarksPolicy,
    split_boost,
    validate_boost,
)

logger = logging.getLogger(__name__)


class AwardService:
    def __init__(
        self,
        db: Session,
        identity_verifier: Optional[WorldIdVerifier] = None,
        policy: MarksPolicy = DEFAULT_POLICY,
    ):
        self.db = db
        self.policy = policy
        self.identity_verifier = identity_verifier
        self.marks_repo = MarksRepository(db, policy)

    def award_survey_help(
        self, user_id: int, survey_id: int, boost_marks: int, goal_count: int
    ) -> SurveyHelpAwardResponse:
        """
        설문 완료 헬퍼에게 마크 지급

        수수료 = floor(boost * 4%), 1인당 = floor((boost - 수수료) / 목표 인원).
        같은 (설문, 헬퍼) 이벤트가 재전달되어도 한 번만 적립되고,
        수수료는 설문당 한 번만 기록됩니다.

        적립 실패는 설문 흐름을 막지 않도록 로그만 남기고 awarded=0 으로 반환합니다.
        """
        try:
            split = split_boost(boost_marks, goal_count, self.policy)
        except ValidationError as e:
            logger.error(
                f"Invalid boost split for survey {survey_id} (boost={boost_marks}, goal={goal_count}): {e.message}"
            )
            return SurveyHelpAwardResponse(awarded=0, requested=0, commission=0)

        metadata = {
            "boost_marks": boost_marks,
            "goal_count": goal_count,
            "per_helper": split.per_helper,
        }
        commission_metadata = {
            **metadata,
            "undistributed_remainder": split.remainder,
        }

        try:
            result, commission_recorded = self.marks_repo.credit_survey_help(
                user_id=user_id,
                survey_id=survey_id,
                amount=split.per_helper,
                commission=split.commission,
                metadata=metadata,
                commission_metadata=commission_metadata,
            )
        except Exception as e:
            logger.error(
                f"Failed to award survey help marks (user={user_id}, survey={survey_id}): {str(e)}"
            )
            return SurveyHelpAwardResponse(
                awarded=0,
                requested=split.per_helper,
                commission=split.commission,
                remainder=split.remainder,
            )

        if result.already_processed:
            logger.info(
                f"Survey help already awarded (user={user_id}, survey={survey_id})"
            )
        elif result.capped:
            logger.info(
                f"Survey help award capped for user {user_id}: "
                f"{result.credited}/{result.requested} marks, balance={result.new_balance}"
            )
        else:
            logger.info(
                f"Awarded {result.credited} marks to user {user_id} for survey {survey_id}, "
                f"balance={result.new_balance}"
            )

        return SurveyHelpAwardResponse(
            awarded=0 if result.already_processed else result.credited,
            requested=split.per_helper,
            commission=split.commission,
            commission_recorded=commission_recorded,
            remainder=split.remainder,
            capped=result.capped,
            new_balance=result.new_balance,
        )

    def verify_and_award_survey_help(
        self, survey_id: int, request: SurveyHelpAwardRequest
    ) -> SurveyHelpAwardResponse:
        """World ID 증명 검증 후 헬퍼 보상 (검증 실패 시 적립 없음)"""
        if self.identity_verifier is None:
            raise InternalServerError("Identity verifier is not configured")

        verification = self.identity_verifier.verify(
            request.proof, signal=request.signal
        )
        if not verification.success:
            raise IdentityVerificationError(
                "World ID verification failed",
                details={"code": verification.code, "detail": verification.detail},
            )

        return self.award_survey_help(
            user_id=request.user_id,
            survey_id=survey_id,
            boost_marks=request.boost_marks,
            goal_count=request.goal_count,
        )

    def award_purchase(
        self,
        user_id: int,
        package_id: str,
        payment_reference: str,
        transaction_id: str,
        amount: Decimal,
    ) -> PurchaseResponse:
        """
        마크 패키지 구매 확정

        Args:
            user_id: 구매자 ID
            package_id: 패키지 ID (marks_tiny ~ marks_xlarge)
            payment_reference: 결제 요청 참조
            transaction_id: 결제 트랜잭션 ID (멱등성 키)
            amount: 실제 결제된 WLD 금액 (패키지 가격과 일치해야 함)

        Raises:
            ValidationError: 알 수 없는 패키지, 금액 불일치
            CapExceededError: 한도 때문에 패키지 전액을 적립할 수 없음
        """
        package = get_package(package_id)
        if package is None:
            raise ValidationError(
                "Invalid package ID", details={"package_id": package_id}
            )

        if Decimal(str(amount)) != package.price_wld:
            logger.warning(
                f"Purchase amount mismatch for user {user_id}: paid {amount}, expected {package.price_wld}"
            )
            raise ValidationError(
                "Payment amount does not match package price",
                details={"expected": str(package.price_wld), "paid": str(amount)},
            )

        try:
            result = self.marks_repo.credit_marks(
                user_id=user_id,
                amount=package.marks,
                tx_type=MarkTransactionType.PURCHASE,
                metadata={
                    "package_id": package.package_id,
                    "package_name": package.name,
                    "payment_reference": payment_reference,
                },
                nonce=f"purchase:{transaction_id}",
                external_amount=package.price_wld,
                external_tx_ref=transaction_id,
                require_full=True,
            )
        except BaseAPIException:
            raise
        except Exception as e:
            logger.error(f"Failed to credit purchase for user {user_id}: {str(e)}")
            raise InternalServerError("Failed to confirm purchase")

        if result.already_processed:
            logger.info(f"Purchase {transaction_id} already processed for user {user_id}")
            return PurchaseResponse(
                added=result.credited,
                new_balance=result.new_balance,
                package_name=package.name,
                already_processed=True,
                message="This purchase was already processed",
            )

        if result.credited < package.marks:
            logger.warning(
                f"Purchase refused by cap for user {user_id}: balance={result.new_balance}, package={package.marks}"
            )
            raise CapExceededError(
                f"Cannot purchase: would exceed maximum of {self.policy.max_cap} marks",
                details={
                    "balance": result.new_balance,
                    "package_marks": package.marks,
                    "max_cap": self.policy.max_cap,
                },
            )

        logger.info(
            f"Purchase confirmed for user {user_id}: +{result.credited} marks ({package.name}), "
            f"balance={result.new_balance}"
        )
        return PurchaseResponse(
            added=result.credited,
            new_balance=result.new_balance,
            package_name=package.name,
            message=f"Added {result.credited} marks",
        )

    def stake_survey_boost(
        self, user_id: int, survey_id: int, boost_marks: int
    ) -> SurveyBoostResponse:
        """설문 작성자가 부스트 마크를 스테이킹 (설문당 1회)"""
        validate_boost(boost_marks, self.policy)

        result = self.marks_repo.debit_marks(
            user_id=user_id,
            amount=boost_marks,
            tx_type=MarkTransactionType.SURVEY_BOOST,
            nonce=f"survey_boost:{survey_id}",
            metadata={"boost_marks": boost_marks},
            survey_id=survey_id,
        )

        if not result.already_processed:
            logger.info(
                f"User {user_id} staked {boost_marks} marks on survey {survey_id}, "
                f"balance={result.new_balance}"
            )

        return SurveyBoostResponse(
            survey_id=survey_id,
            staked=abs(result.credited),
            new_balance=result.new_balance,
            already_processed=result.already_processed,
        )
