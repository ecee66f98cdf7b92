from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class BaseAPIException(HTTPException):
    """Base exception for API errors"""

    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}

        super().__init__(
            status_code=status_code,
            detail={
                "success": False,
                "error": {
                    "code": error_code,
                    "message": message,
                    "details": self.details,
                },
            },
        )

    def __str__(self) -> str:  # Ensure str(e) returns the human message
        return self.message


class AuthenticationError(BaseAPIException):
    """Authentication related errors"""

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code="AUTH_001",
            message=message,
            details=details,
        )


class AuthorizationError(BaseAPIException):
    """Authorization related errors"""

    def __init__(self, message: str = "Access forbidden", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="AUTH_002",
            message=message,
            details=details,
        )


class ValidationError(BaseAPIException):
    """Validation errors"""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="VALIDATION_001",
            message=message,
            details=details,
        )


class IdentityVerificationError(BaseAPIException):
    """World ID proof rejected"""

    def __init__(self, message: str = "Identity verification failed", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="IDENTITY_001",
            message=message,
            details=details,
        )


class WithdrawalValidationError(BaseAPIException):
    """출금 입력 검증 실패 - 상태 변경 없음, 수정 후 재시도 가능"""

    code = "INVALID"

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code=f"WITHDRAWAL_{self.code}",
            message=message,
            details=details,
        )


class InvalidAmountError(WithdrawalValidationError):
    code = "INVALID_AMOUNT"


class BelowMinimumError(WithdrawalValidationError):
    code = "BELOW_MINIMUM"


class NotMultipleError(WithdrawalValidationError):
    code = "NOT_MULTIPLE"


class InvalidAddressError(WithdrawalValidationError):
    code = "INVALID_ADDRESS"


class NotFoundError(BaseAPIException):
    """Resource not found errors"""

    def __init__(self, message: str = "Resource not found", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="NOT_FOUND_001",
            message=message,
            details=details,
        )


class ConflictError(BaseAPIException):
    """Resource conflict errors"""

    def __init__(
        self,
        message: str = "Resource conflict",
        details: Optional[Dict] = None,
        error_code: str = "CONFLICT_001",
    ):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error_code=error_code,
            message=message,
            details=details,
        )


class ConflictingWithdrawalError(ConflictError):
    """진행 중인 출금이 이미 있음"""

    def __init__(self, message: str = "A withdrawal is already in progress", details: Optional[Dict] = None):
        super().__init__(message=message, details=details, error_code="WITHDRAWAL_CONFLICT")


class DuplicateNonceError(ConflictError):
    """이미 사용된 멱등성 키"""

    def __init__(self, message: str = "Duplicate transaction detected", details: Optional[Dict] = None):
        super().__init__(message=message, details=details, error_code="DUPLICATE_NONCE")


class InvalidStateTransitionError(ConflictError):
    """허용되지 않는 거래 상태 전이"""

    def __init__(self, message: str = "Invalid state transition", details: Optional[Dict] = None):
        super().__init__(message=message, details=details, error_code="STATE_001")


class InternalServerError(BaseAPIException):
    """Internal server errors"""

    def __init__(self, message: str = "Internal server error", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="INTERNAL_001",
            message=message,
            details=details,
        )


class InsufficientBalanceError(BaseAPIException):
    """Insufficient balance errors"""

    def __init__(self, message: str = "Insufficient balance", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="BALANCE_001",
            message=message,
            details=details,
        )


class CapExceededError(BaseAPIException):
    """보유 한도 초과로 전액 적립 불가 (구매처럼 부분 적립이 허용되지 않는 경우)"""

    def __init__(self, message: str = "Marks cap exceeded", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="MARKS_CAP",
            message=message,
            details=details,
        )


class GatewayError(Exception):
    """정산 게이트웨이가 송금을 확정적으로 거절/실패함 - 환불 대상"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class GatewayUnknownError(GatewayError):
    """타임아웃 등으로 송금 결과를 알 수 없음 - 환불하지 말고 재확인(reconcile) 대상"""
